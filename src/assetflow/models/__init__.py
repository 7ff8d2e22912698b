"""Pydantic request models for API endpoints."""

from assetflow.models.requests import (
    AdvanceWorkflowRequest,
    AssignWorkflowRequest,
    CreateFlowChainRequest,
    CreateVersionRequest,
    EnqueueRequest,
    FlowStepInput,
    FlowTransitionInput,
    ManualApproveRequest,
    RejectWorkflowRequest,
)

__all__ = [
    "AdvanceWorkflowRequest",
    "AssignWorkflowRequest",
    "CreateFlowChainRequest",
    "CreateVersionRequest",
    "EnqueueRequest",
    "FlowStepInput",
    "FlowTransitionInput",
    "ManualApproveRequest",
    "RejectWorkflowRequest",
]
