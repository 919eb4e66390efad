import logging
from typing import Any, Dict, List

from . import agents
from .errors import ClassificationError, ReasoningError
from .reasoning import ReasoningProvider
from .schemas import ModeDecision, Mode


logger = logging.getLogger("uvicorn.error")


async def classify_mode(
    provider: ReasoningProvider,
    conversation: List[Dict[str, Any]],
    *,
    max_rounds: int = 3,
) -> Mode:
    """Pick the action or research pipeline for a request. No state is touched."""
    try:
        result = await provider.invoke(
            conversation,
            system_prompt=agents.ROUTER_SYSTEM,
            schema=ModeDecision,
            max_rounds=max_rounds,
        )
    except ReasoningError as exc:
        logger.warning("Router failed: %s", exc)
        raise ClassificationError(f"could not classify request: {exc}") from exc
    return result.structured.mode
