from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


PlanStatus = Literal["pending", "in_progress", "completed", "failed"]
Mode = Literal["action", "research"]
Outcome = Literal["running", "completed", "failed"]
ResearchStatus = Literal["running", "completed"]


class PlanItem(BaseModel):
    """A Task or a Subtask. Ids are decimal strings assigned in list order."""

    id: str
    label: str
    description: str = ""
    status: PlanStatus = "pending"
    results: List[str] = Field(default_factory=list)


class PlanDraft(BaseModel):
    label: str
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"label": data, "description": data}
        if isinstance(data, dict) and not data.get("label") and data.get("description"):
            data = {**data, "label": str(data["description"])[:80]}
        return data


def number_plan(drafts: List[PlanDraft]) -> List[PlanItem]:
    return [
        PlanItem(id=str(idx), label=draft.label.strip(), description=draft.description.strip())
        for idx, draft in enumerate(drafts, start=1)
    ]


class OrchestrationState(BaseModel):
    task_plan: List[PlanItem] = Field(default_factory=list)
    subtask_plan: List[PlanItem] = Field(default_factory=list)
    current_task_index: int = 0
    current_subtask_index: int = 0
    replan_attempts: Dict[str, int] = Field(default_factory=dict)
    outcome: Outcome = "running"

    def current_task(self) -> Optional[PlanItem]:
        if 0 <= self.current_task_index < len(self.task_plan):
            return self.task_plan[self.current_task_index]
        return None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "task_plan": [item.model_dump() for item in self.task_plan],
            "subtask_plan": [item.model_dump() for item in self.subtask_plan],
            "current_task_index": self.current_task_index,
            "current_subtask_index": self.current_subtask_index,
            "outcome": self.outcome,
        }


class SearchResult(BaseModel):
    url: str
    title: str = ""


class PageSummary(BaseModel):
    url: str
    summary: str
    accessible: bool = True


class ResearchState(BaseModel):
    search_results: List[SearchResult] = Field(default_factory=list)
    page_summaries: List[PageSummary] = Field(default_factory=list)
    processed_urls: List[str] = Field(default_factory=list)
    final_report: str = ""
    status: ResearchStatus = "running"

    def ready_for_synthesis(self) -> bool:
        return len(self.processed_urls) >= len(self.search_results)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "search_results": [r.model_dump() for r in self.search_results],
            "processed_urls": list(self.processed_urls),
            "final_report": self.final_report,
            "status": self.status,
        }


# Structured outputs requested from the reasoning provider


class ModeDecision(BaseModel):
    mode: Mode
    reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("mode"), str):
            data = {**data, "mode": data["mode"].strip().lower()}
        return data


class TaskPlanOutput(BaseModel):
    task_plan: List[PlanDraft]


class SubtaskPlanOutput(BaseModel):
    subtask_plan: List[PlanDraft]


class SubtaskVerdict(BaseModel):
    is_successful: bool
    explanation: str = "No explanation provided"


class SearchResultsOutput(BaseModel):
    search_results: List[SearchResult]


class PageSummaryOutput(BaseModel):
    summary: str
    accessible: bool = True


class ReportOutput(BaseModel):
    final_report: str


class StartRunRequest(BaseModel):
    goal: str
    conversation: List[Dict[str, Any]] = Field(default_factory=list)
    session_id: Optional[str] = None
    tab_id: Optional[str] = None
    mode: Optional[Mode] = None
