"""Asset approval workflow endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from assetflow.database import get_db
from assetflow.dependencies import get_current_employee, get_tenant, require_admin
from assetflow.errors import AssetFlowError, ForbiddenError
from assetflow.metadata import Asset, Employee, FlowStep, Tenant, WorkflowHistory, WorkflowState
from assetflow.models.requests import (
    AdvanceWorkflowRequest,
    AssignWorkflowRequest,
    ManualApproveRequest,
    RejectWorkflowRequest,
)
from assetflow.notifications import NotificationDispatcher, get_dispatcher
from assetflow.routers.http_errors import raise_http_error
from assetflow.workflow_engine import AdvanceResult, WorkflowEngine

router = APIRouter(prefix="/api/v1/workflows", tags=["workflows"])


def step_role_authorizer(db: Session, employee: Employee):
    """Allow admins, or holders of the role bound to the workflow's current step."""

    def authorize(state: WorkflowState, target_step: FlowStep, actor_id: Optional[str]) -> None:
        if employee.is_admin:
            return
        current = db.query(FlowStep).filter(FlowStep.id == state.current_step_id).first()
        required_role_id = current.role_id if current is not None else None
        if required_role_id and employee.role_id != required_role_id:
            raise ForbiddenError("You do not hold the role assigned to the current step")

    return authorize


def _serialize_state(state: WorkflowState) -> dict:
    step = state.current_step
    return {
        "id": state.id,
        "asset_id": state.asset_id,
        "asset_type": state.asset_type,
        "flow_chain_id": state.flow_chain_id,
        "current_step_id": state.current_step_id,
        "current_step_name": step.name if step is not None else None,
        "assigned_to_role_id": state.assigned_to_role_id,
        "assigned_to_employee_id": state.assigned_to_employee_id,
        "status": state.status,
        "started_at": state.started_at,
        "completed_at": state.completed_at,
        "updated_at": state.updated_at,
    }


def _serialize_history(entry: WorkflowHistory) -> dict:
    return {
        "id": entry.id,
        "action": entry.action,
        "actor_id": entry.actor_id,
        "from_step_id": entry.from_step_id,
        "to_step_id": entry.to_step_id,
        "comment": entry.comment,
        "created_at": entry.created_at,
    }


def _state_or_404(engine: WorkflowEngine, tenant: Tenant, workflow_id: str) -> WorkflowState:
    try:
        return engine.get_state(workflow_id, tenant_id=tenant.id)
    except AssetFlowError as exc:
        raise_http_error(engine.db, exc)


def _asset_title(db: Session, asset_id: str) -> str:
    asset = db.query(Asset).filter(Asset.id == asset_id).first()
    return asset.title if asset is not None else asset_id


def _notify_advance(
    db: Session,
    notifier: NotificationDispatcher,
    result: AdvanceResult,
    actor: Employee,
) -> None:
    title = _asset_title(db, result.state.asset_id)
    actor_name = actor.display_name or actor.email
    if result.completed:
        notifier.workflow_completed(title, actor_name)
    else:
        notifier.workflow_advanced(title, result.current_step.name, actor_name)


def _advance_response(result: AdvanceResult) -> dict:
    return {
        "success": True,
        "message": result.message,
        "completed": result.completed,
        "previous_step": {"id": result.previous_step.id, "name": result.previous_step.name},
        "current_step": {"id": result.current_step.id, "name": result.current_step.name},
        "workflow": _serialize_state(result.state),
    }


@router.get("")
async def get_workflow_for_asset(
    asset_id: str,
    asset_type: Optional[str] = None,
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    state = WorkflowEngine(db).get_state_for_asset(asset_id, asset_type)
    if state is None or state.tenant_id != tenant.id:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return _serialize_state(state)


@router.post("/assign")
async def assign_workflow(
    body: AssignWorkflowRequest,
    tenant: Tenant = Depends(get_tenant),
    admin: Employee = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Start (or restart) an asset's workflow at the first step of a chain."""
    asset = db.query(Asset).filter(Asset.id == body.asset_id, Asset.tenant_id == tenant.id).first()
    if asset is None:
        raise HTTPException(status_code=404, detail="Asset not found")
    engine = WorkflowEngine(db)
    try:
        state = engine.assign_workflow(asset.id, body.asset_type, body.flow_chain_id, admin.id)
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    db.refresh(state)
    return {"success": True, "workflow": _serialize_state(state)}


@router.post("/manual-approve")
async def manual_approve(
    body: ManualApproveRequest,
    tenant: Tenant = Depends(get_tenant),
    admin: Employee = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
):
    """Admin override: move an asset forward to any later step of its chain."""
    engine = WorkflowEngine(db)
    state = _state_or_404(engine, tenant, body.workflow_id)
    if state.asset_id != body.asset_id or state.asset_type != body.asset_type:
        raise HTTPException(status_code=400, detail="Asset and workflow mismatch")
    try:
        result = engine.advance(
            state.id,
            body.target_step_id,
            admin.id,
            body.reason,
            action="MANUAL_APPROVAL",
        )
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    _notify_advance(db, notifier, result, admin)
    return _advance_response(result)


@router.post("/{workflow_id}/advance")
async def advance_workflow(
    workflow_id: str,
    body: AdvanceWorkflowRequest,
    tenant: Tenant = Depends(get_tenant),
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
):
    """Approve the current step and move to ``target_step_id``."""
    engine = WorkflowEngine(db, authorize=step_role_authorizer(db, employee))
    state = _state_or_404(engine, tenant, workflow_id)
    try:
        result = engine.advance(state.id, body.target_step_id, employee.id, body.reason)
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    _notify_advance(db, notifier, result, employee)
    return _advance_response(result)


@router.post("/{workflow_id}/reject")
async def reject_workflow(
    workflow_id: str,
    body: RejectWorkflowRequest,
    tenant: Tenant = Depends(get_tenant),
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
):
    """Record a rejection at the current step. The workflow stays where it is."""
    engine = WorkflowEngine(db, authorize=step_role_authorizer(db, employee))
    state = _state_or_404(engine, tenant, workflow_id)
    try:
        entry = engine.reject(state.id, employee.id, body.reason)
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    db.refresh(state)
    step_name = state.current_step.name if state.current_step is not None else state.current_step_id
    notifier.workflow_rejected(
        _asset_title(db, state.asset_id),
        step_name,
        body.reason,
        employee.display_name or employee.email,
    )
    return {
        "success": True,
        "history": _serialize_history(entry),
        "workflow": _serialize_state(state),
    }


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    state = _state_or_404(WorkflowEngine(db), tenant, workflow_id)
    return _serialize_state(state)


@router.get("/{workflow_id}/history")
async def get_workflow_history(
    workflow_id: str,
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    engine = WorkflowEngine(db)
    state = _state_or_404(engine, tenant, workflow_id)
    return {
        "workflow_id": state.id,
        "history": [_serialize_history(entry) for entry in engine.history(state.id)],
    }
