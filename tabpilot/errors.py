from typing import Any, Dict, Optional


class OrchestrationError(Exception):
    """Base for errors that end an orchestration run."""

    def __init__(self, message: str, snapshot: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.snapshot = snapshot or {}


class ClassificationError(OrchestrationError):
    pass


class PlanGenerationError(OrchestrationError):
    """No usable task plan, subtask plan or search result list."""


class ReasoningError(Exception):
    """The provider call failed or never produced a valid structured output."""


class RoundTripLimitExceeded(ReasoningError):
    def __init__(self, rounds: int):
        super().__init__(f"round-trip limit of {rounds} reached without a result")
        self.rounds = rounds


class ToolExecutionError(Exception):
    """Raised by the browser client; converted to a failed ToolResult at the tool boundary."""
