"""Flow chain administration endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from assetflow.database import get_db
from assetflow.dependencies import get_tenant, require_admin
from assetflow.errors import AssetFlowError
from assetflow.metadata import Employee, FlowChain, FlowStep, Tenant
from assetflow.models.requests import CreateFlowChainRequest
from assetflow.routers.http_errors import raise_http_error
from assetflow.workflow_engine import WorkflowEngine

router = APIRouter(prefix="/api/v1/flowchains", tags=["flowchains"])


def serialize_step(step: FlowStep) -> dict:
    return {
        "id": step.id,
        "name": step.name,
        "description": step.description,
        "role_id": step.role_id,
        "role_name": step.role.name if step.role is not None else None,
        "sequence": step.sequence,
        "transitions": [
            {
                "id": transition.id,
                "to_step_id": transition.to_step_id,
                "condition": transition.condition,
            }
            for transition in step.next_transitions
        ],
    }


def serialize_chain(chain: FlowChain, steps: list[FlowStep]) -> dict:
    return {
        "id": chain.id,
        "name": chain.name,
        "description": chain.description,
        "created_at": chain.created_at,
        "steps": [serialize_step(step) for step in steps],
    }


@router.get("")
async def list_flow_chains(
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    engine = WorkflowEngine(db)
    return [serialize_chain(chain, engine.chain_steps(chain.id)) for chain in engine.list_flow_chains(tenant.id)]


@router.post("", status_code=201)
async def create_flow_chain(
    body: CreateFlowChainRequest,
    tenant: Tenant = Depends(get_tenant),
    admin: Employee = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Create a flow chain with its steps (in order) and transitions."""
    engine = WorkflowEngine(db)
    try:
        chain = engine.create_flow_chain(
            tenant.id,
            body.name,
            [step.model_dump() for step in body.steps],
            description=body.description,
        )
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    return serialize_chain(chain, engine.chain_steps(chain.id))


@router.get("/{chain_id}")
async def get_flow_chain(
    chain_id: str,
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    engine = WorkflowEngine(db)
    try:
        chain = engine.get_flow_chain(chain_id, tenant_id=tenant.id)
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    return serialize_chain(chain, engine.chain_steps(chain.id))
