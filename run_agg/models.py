from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

StepType = Literal["Extraction", "Score", "Decision", "Final", "Meta"]
StepStatus = Literal["queued", "running", "finalized", "failed"]
PromptType = Literal["ExtractionPrompt", "ScoringPrompt", "DecisionPrompt"]

PROMPT_STEP_TYPES = {
    "ExtractionPrompt": "Extraction",
    "ScoringPrompt": "Score",
    "DecisionPrompt": "Decision",
}


class Evidence(BaseModel):
    page: Optional[int] = None
    quote: Optional[str] = None
    bbox: Optional[List[float]] = None


class Attempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt_no: int = Field(ge=0)
    candidate_value: Any = None  # Scalar or {value, page?, quote?, bbox?, source?}
    candidate_key: Optional[str] = None
    candidate_confidence: Optional[float] = None
    source: str = "llm"
    is_final: bool = False


class StepDefinition(BaseModel):
    prompt_id: Optional[Union[int, str]] = None
    prompt_type: Optional[str] = None
    prompt_text: Optional[str] = None
    json_key: Optional[str] = None
    weight: Optional[float] = None


class Step(BaseModel):
    id: Union[int, str]
    order_index: int = 0
    step_type: StepType
    status: StepStatus = "queued"
    final_key: Optional[str] = None
    final_value: Any = None
    final_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    attempts: List[Attempt] = Field(default_factory=list)
    definition: Optional[StepDefinition] = None
    route: Optional[str] = None
    evidence: Optional[Evidence] = None
    error: Optional[str] = None


class RunCore(BaseModel):
    id: Optional[Union[int, str]] = None
    pipeline_id: Optional[Union[int, str]] = None
    pdf_id: Optional[Union[int, str]] = None
    status: str = "finished"
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    overall_score: Optional[float] = None
    final_extraction: Dict[str, Any] = Field(default_factory=dict)
    final_scores: Dict[str, float] = Field(default_factory=dict)
    final_decisions: Dict[str, bool] = Field(default_factory=dict)
    error: Optional[str] = None


class RunDetail(BaseModel):
    run: RunCore
    steps: List[Step] = Field(default_factory=list)


class PipelineStepDef(BaseModel):
    """One step of a pipeline definition as the editor stores it."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Union[int, str]
    type: str
    label: Optional[str] = None
    prompt_id: Optional[Union[int, str]] = Field(default=None, alias="promptId")
    route: Optional[str] = None
    yes_key: Optional[str] = Field(default=None, alias="yesKey")
    no_key: Optional[str] = Field(default=None, alias="noKey")
    merge_key: Optional[Union[bool, str]] = Field(default=None, alias="mergeKey")
    merge_to: Optional[Union[int, str]] = Field(default=None, alias="mergeTo")
    targets: Dict[str, Optional[Union[int, str]]] = Field(default_factory=dict)

    def branch_keys(self) -> List[str]:
        return [k for k in (self.yes_key, self.no_key) if k] + [
            k for k in self.targets if k not in (self.yes_key, self.no_key)
        ]

    def has_merge_marker(self) -> bool:
        return bool(self.merge_key) or self.merge_to is not None


class LayoutRow(BaseModel):
    step: PipelineStepDef
    depth: int = Field(ge=0)
    row_idx: int = Field(ge=1)
    row_label: str
    warnings: List[str] = Field(default_factory=list)


class BranchRow(BaseModel):
    step: Optional[PipelineStepDef] = None
    depth: int = Field(ge=0)
    row_label: str = ""
    branch_key: Optional[str] = None
    is_branch_header: bool = False
    is_branch_end: bool = False
    c_key: Optional[str] = None
