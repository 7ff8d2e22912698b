"""Pydantic request models for API endpoints."""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, Field


def _strip_required(value: str) -> str:
    cleaned = str(value or "").strip()
    if not cleaned:
        raise ValueError("must not be empty")
    return cleaned


NonEmptyStr = Annotated[str, AfterValidator(_strip_required)]


class CreateVersionRequest(BaseModel):
    """Register an uploaded revision of an asset."""
    storage_key: NonEmptyStr
    note: Optional[str] = None
    file_size_bytes: int = Field(default=0, ge=0)
    requires_processing: bool = False
    priority: Union[int, str] = "HIGH"
    activate: bool = False


class EnqueueRequest(BaseModel):
    asset_id: NonEmptyStr
    source_key: NonEmptyStr
    priority: Union[int, str] = "NORMAL"
    stage: Literal["compress", "stream"] = "compress"
    version_id: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1, le=100)


class FlowTransitionInput(BaseModel):
    to_step_name: str
    condition: str = "SUCCESS"


class FlowStepInput(BaseModel):
    name: NonEmptyStr
    description: Optional[str] = None
    role_id: Optional[str] = None
    transitions: List[FlowTransitionInput] = Field(default_factory=list)


class CreateFlowChainRequest(BaseModel):
    name: NonEmptyStr
    description: Optional[str] = None
    steps: List[FlowStepInput] = Field(min_length=1)


class AssignWorkflowRequest(BaseModel):
    asset_id: str
    asset_type: Literal["VIDEO", "DOCUMENT"]
    flow_chain_id: str


class AdvanceWorkflowRequest(BaseModel):
    target_step_id: str
    reason: Optional[str] = None


class ManualApproveRequest(BaseModel):
    """Admin override that skips the flow chain forward to a chosen step."""
    asset_id: str
    asset_type: Literal["VIDEO", "DOCUMENT"]
    workflow_id: str
    target_step_id: str
    reason: NonEmptyStr


class RejectWorkflowRequest(BaseModel):
    reason: Optional[str] = None
