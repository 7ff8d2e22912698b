"""Flow-chain approval workflows.

An asset sits on one step of a flow chain at a time. Steps are ordered by
creation (``created_at`` then ``sequence``) and, by default, a workflow
only moves forward in that order. ``graph`` mode routes through the
chain's transitions instead.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.orm import Session

from assetflow.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from assetflow.metadata import (
    ASSET_TYPES,
    Asset,
    FlowChain,
    FlowStep,
    FlowTransition,
    Role,
    WORKFLOW_COMPLETED,
    WORKFLOW_IN_PROGRESS,
    WorkflowHistory,
    WorkflowState,
)
from assetflow.settings import settings

logger = logging.getLogger(__name__)

MODE_CREATION_ORDER = "creation_order"
MODE_GRAPH = "graph"
TRANSITION_MODES = (MODE_CREATION_ORDER, MODE_GRAPH)

DEFAULT_CONDITION = "SUCCESS"

Authorizer = Callable[[WorkflowState, FlowStep, Optional[str]], None]


def _now_utc() -> datetime:
    return datetime.utcnow()


@dataclass
class AdvanceResult:
    state: WorkflowState
    message: str
    previous_step: FlowStep
    current_step: FlowStep
    completed: bool


def _clean_text(value: Any) -> str:
    return str(value or "").strip()


def _step_field(step: Any, key: str, default: Any = None) -> Any:
    if isinstance(step, dict):
        return step.get(key, default)
    return getattr(step, key, default)


class WorkflowEngine:
    """Moves assets through flow chains and keeps the audit trail.

    ``authorize(state, target_step, actor_id)`` is called before a move is
    written and may raise ``ForbiddenError``; the engine itself does not
    know about roles or admins. Like the other core components it flushes
    and leaves commit to the caller.
    """

    def __init__(
        self,
        db: Session,
        *,
        mode: str | None = None,
        authorize: Authorizer | None = None,
    ):
        resolved_mode = str(mode or settings.workflow_transition_mode or MODE_CREATION_ORDER).strip().lower()
        if resolved_mode not in TRANSITION_MODES:
            raise ValueError(f"Unknown workflow transition mode: {mode}")
        self.db = db
        self.mode = resolved_mode
        self.authorize = authorize

    # Flow chains

    def create_flow_chain(
        self,
        tenant_id: str,
        name: str,
        steps: Iterable[Any],
        description: str | None = None,
    ) -> FlowChain:
        """Create a chain, its steps in the given order and their transitions.

        Each step is a mapping (or object) with ``name``, optional
        ``description``, ``role_id`` and ``transitions``; a transition names
        its target by ``to_step_name`` and defaults to condition SUCCESS.
        """
        chain_name = _clean_text(name)
        if not chain_name:
            raise ValidationError("Flow chain name is required")
        step_defs = list(steps or [])
        if not step_defs:
            raise ValidationError("Flow chain requires at least one step")

        names: list[str] = []
        for step_def in step_defs:
            step_name = _clean_text(_step_field(step_def, "name"))
            if not step_name:
                raise ValidationError("Each flow step requires a name")
            if step_name in names:
                raise ValidationError(f"Duplicate step name: {step_name}")
            names.append(step_name)

        role_ids = {
            _clean_text(_step_field(step_def, "role_id"))
            for step_def in step_defs
            if _clean_text(_step_field(step_def, "role_id"))
        }
        if role_ids:
            known = {
                row[0]
                for row in self.db.query(Role.id)
                .filter(Role.tenant_id == str(tenant_id), Role.id.in_(list(role_ids)))
                .all()
            }
            missing = sorted(role_ids - known)
            if missing:
                raise NotFoundError(f"Role {missing[0]} not found", reason="role_not_found")

        chain = FlowChain(
            tenant_id=str(tenant_id),
            name=chain_name,
            description=_clean_text(description) or None,
        )
        self.db.add(chain)
        self.db.flush()

        # Shared timestamp: sequence alone decides order within the chain.
        created_at = _now_utc()
        step_by_name: dict[str, FlowStep] = {}
        for position, (step_name, step_def) in enumerate(zip(names, step_defs)):
            step = FlowStep(
                chain_id=chain.id,
                name=step_name,
                description=_clean_text(_step_field(step_def, "description")) or None,
                role_id=_clean_text(_step_field(step_def, "role_id")) or None,
                sequence=position,
                created_at=created_at,
            )
            self.db.add(step)
            step_by_name[step_name] = step
        self.db.flush()

        for step_name, step_def in zip(names, step_defs):
            for transition in _step_field(step_def, "transitions") or []:
                target_name = _clean_text(_step_field(transition, "to_step_name"))
                target = step_by_name.get(target_name)
                if target is None:
                    raise ValidationError(f"Transition from {step_name} targets unknown step: {target_name or '-'}")
                self.db.add(
                    FlowTransition(
                        from_step_id=step_by_name[step_name].id,
                        to_step_id=target.id,
                        condition=_clean_text(_step_field(transition, "condition")) or DEFAULT_CONDITION,
                    )
                )
        self.db.flush()
        logger.info("Created flow chain %s (%s) with %s step(s)", chain.id, chain.name, len(names))
        return chain

    def list_flow_chains(self, tenant_id: str) -> list[FlowChain]:
        return (
            self.db.query(FlowChain)
            .filter(FlowChain.tenant_id == str(tenant_id))
            .order_by(FlowChain.created_at.asc(), FlowChain.name.asc())
            .all()
        )

    def get_flow_chain(self, chain_id: str, *, tenant_id: str | None = None) -> FlowChain:
        query = self.db.query(FlowChain).filter(FlowChain.id == str(chain_id))
        if tenant_id is not None:
            query = query.filter(FlowChain.tenant_id == str(tenant_id))
        chain = query.first()
        if chain is None:
            raise NotFoundError("Flow chain not found", reason="flow_chain_not_found")
        return chain

    def chain_steps(self, chain_id: str) -> list[FlowStep]:
        return (
            self.db.query(FlowStep)
            .filter(FlowStep.chain_id == str(chain_id))
            .order_by(FlowStep.created_at.asc(), FlowStep.sequence.asc())
            .all()
        )

    # Workflow states

    def get_state(self, workflow_id: str, *, tenant_id: str | None = None) -> WorkflowState:
        query = self.db.query(WorkflowState).filter(WorkflowState.id == str(workflow_id))
        if tenant_id is not None:
            query = query.filter(WorkflowState.tenant_id == str(tenant_id))
        state = query.first()
        if state is None:
            raise NotFoundError("Workflow not found", reason="workflow_not_found")
        return state

    def get_state_for_asset(self, asset_id: str, asset_type: str | None = None) -> WorkflowState | None:
        query = self.db.query(WorkflowState).filter(WorkflowState.asset_id == str(asset_id))
        if asset_type:
            query = query.filter(WorkflowState.asset_type == str(asset_type).upper())
        return query.first()

    def history(self, workflow_id: str) -> list[WorkflowHistory]:
        state = self.get_state(workflow_id)
        return (
            self.db.query(WorkflowHistory)
            .filter(WorkflowHistory.workflow_state_id == state.id)
            .order_by(WorkflowHistory.created_at.asc())
            .all()
        )

    def _lock_state(self, workflow_id: str) -> WorkflowState:
        state = (
            self.db.query(WorkflowState)
            .filter(WorkflowState.id == str(workflow_id))
            .with_for_update()
            .first()
        )
        if state is None:
            raise NotFoundError("Workflow not found", reason="workflow_not_found")
        return state

    def _record(
        self,
        state: WorkflowState,
        action: str,
        actor_id: Optional[str],
        from_step_id: Optional[str],
        to_step_id: Optional[str],
        comment: Optional[str],
    ) -> WorkflowHistory:
        entry = WorkflowHistory(
            workflow_state_id=state.id,
            action=action,
            actor_id=actor_id,
            from_step_id=from_step_id,
            to_step_id=to_step_id,
            comment=comment,
        )
        self.db.add(entry)
        return entry

    def _sync_asset_status(self, state: WorkflowState) -> None:
        asset = self.db.query(Asset).filter(Asset.id == state.asset_id).first()
        if asset is not None:
            asset.workflow_status = state.status

    def assign_workflow(
        self,
        asset_id: str,
        asset_type: str,
        flow_chain_id: str,
        actor_id: Optional[str],
    ) -> WorkflowState:
        """Put an asset at the first step of a chain, resetting any earlier workflow."""
        normalized_type = _clean_text(asset_type).upper()
        if normalized_type not in ASSET_TYPES:
            raise ValidationError("Invalid asset type. Must be VIDEO or DOCUMENT")

        asset = self.db.query(Asset).filter(Asset.id == str(asset_id)).first()
        if asset is None:
            raise NotFoundError("Asset not found", reason="asset_not_found")
        if asset.asset_type != normalized_type:
            raise ValidationError(f"Asset {asset.id} is a {asset.asset_type}, not a {normalized_type}")

        chain = self.get_flow_chain(flow_chain_id, tenant_id=asset.tenant_id)
        steps = self.chain_steps(chain.id)
        if not steps:
            raise ValidationError("Flow chain has no steps", reason="flow_chain_empty")
        first_step = steps[0]

        state = (
            self.db.query(WorkflowState)
            .filter(
                WorkflowState.asset_id == asset.id,
                WorkflowState.asset_type == normalized_type,
            )
            .with_for_update()
            .first()
        )
        if state is None:
            state = WorkflowState(
                tenant_id=asset.tenant_id,
                asset_id=asset.id,
                asset_type=normalized_type,
                flow_chain_id=chain.id,
                current_step_id=first_step.id,
                assigned_to_role_id=first_step.role_id,
                assigned_to_employee_id=None,
                status=WORKFLOW_IN_PROGRESS,
            )
            self.db.add(state)
            self.db.flush()
            action = "ASSIGN"
            from_step_id = None
        else:
            from_step_id = state.current_step_id
            state.flow_chain_id = chain.id
            state.current_step_id = first_step.id
            state.assigned_to_role_id = first_step.role_id
            state.assigned_to_employee_id = None
            state.status = WORKFLOW_IN_PROGRESS
            state.started_at = _now_utc()
            state.completed_at = None
            action = "REASSIGN"

        self._record(
            state,
            action,
            actor_id,
            from_step_id,
            first_step.id,
            f"Assigned to flow chain {chain.name}",
        )
        self._sync_asset_status(state)
        self.db.flush()
        logger.info(
            "%s asset %s (%s) to flow chain %s at step %s",
            action,
            asset.id,
            normalized_type,
            chain.id,
            first_step.name,
        )
        return state

    def _reachable_step_ids(self, start_step_id: str, chain_step_ids: set[str]) -> set[str]:
        edges: dict[str, set[str]] = {}
        rows = (
            self.db.query(FlowTransition.from_step_id, FlowTransition.to_step_id)
            .filter(FlowTransition.from_step_id.in_(list(chain_step_ids)))
            .all()
        )
        for from_id, to_id in rows:
            if to_id in chain_step_ids:
                edges.setdefault(from_id, set()).add(to_id)

        reachable: set[str] = set()
        pending = deque(edges.get(start_step_id, ()))
        while pending:
            step_id = pending.popleft()
            if step_id in reachable:
                continue
            reachable.add(step_id)
            pending.extend(edges.get(step_id, ()))
        return reachable

    def _has_outgoing(self, step_id: str) -> bool:
        return (
            self.db.query(FlowTransition.id)
            .filter(FlowTransition.from_step_id == step_id)
            .first()
            is not None
        )

    def advance(
        self,
        workflow_id: str,
        target_step_id: str,
        actor_id: Optional[str],
        reason: Optional[str],
        *,
        action: str = "ADVANCE",
    ) -> AdvanceResult:
        """Move a workflow forward to ``target_step_id``."""
        if action not in {"ADVANCE", "MANUAL_APPROVAL"}:
            raise ValueError(f"Unsupported advance action: {action}")

        state = self._lock_state(workflow_id)
        if state.status == WORKFLOW_COMPLETED:
            raise InvalidTransitionError("Workflow is already completed", reason="workflow_completed")

        target = self.db.query(FlowStep).filter(FlowStep.id == str(target_step_id)).first()
        if target is None:
            raise NotFoundError("Target step not found", reason="step_not_found")
        if target.chain_id != state.flow_chain_id:
            raise ValidationError(
                "Target step does not belong to this workflow's flow chain",
                reason="step_not_in_chain",
            )

        steps = self.chain_steps(state.flow_chain_id)
        step_ids = [step.id for step in steps]
        try:
            current_index = step_ids.index(state.current_step_id)
        except ValueError:
            raise NotFoundError("Current step not found in flow chain", reason="step_not_found")
        current = steps[current_index]
        target_index = step_ids.index(target.id)

        if self.mode == MODE_GRAPH:
            if target.id not in self._reachable_step_ids(current.id, set(step_ids)):
                raise InvalidTransitionError(
                    f"Step {target.name} is not reachable from {current.name}",
                    reason="step_not_reachable",
                )
            is_last = not self._has_outgoing(target.id)
        else:
            if target_index <= current_index:
                raise InvalidTransitionError("Target step must be after current step")
            is_last = target_index == len(steps) - 1

        if self.authorize is not None:
            self.authorize(state, target, actor_id)

        state.current_step_id = target.id
        state.assigned_to_role_id = target.role_id
        state.assigned_to_employee_id = None
        if is_last:
            state.status = WORKFLOW_COMPLETED
            state.completed_at = _now_utc()
        else:
            state.status = WORKFLOW_IN_PROGRESS

        comment = _clean_text(reason) or None
        if action == "MANUAL_APPROVAL" and comment:
            comment = f"Manual approval: {comment}"
        self._record(state, action, actor_id, current.id, target.id, comment)
        self._sync_asset_status(state)
        self.db.flush()

        message = "workflow completed" if is_last else f"advanced to {target.name}"
        logger.info(
            "Workflow %s %s -> %s by %s (%s)",
            state.id,
            current.name,
            target.name,
            actor_id or "-",
            action,
        )
        return AdvanceResult(
            state=state,
            message=message,
            previous_step=current,
            current_step=target,
            completed=is_last,
        )

    def reject(self, workflow_id: str, actor_id: Optional[str], reason: Optional[str]) -> WorkflowHistory:
        """Record a rejection at the current step; the workflow does not move."""
        state = self._lock_state(workflow_id)
        if state.status == WORKFLOW_COMPLETED:
            raise InvalidTransitionError("Workflow is already completed", reason="workflow_completed")
        current = self.db.query(FlowStep).filter(FlowStep.id == state.current_step_id).first()
        if self.authorize is not None and current is not None:
            self.authorize(state, current, actor_id)
        entry = self._record(
            state,
            "REJECT",
            actor_id,
            state.current_step_id,
            state.current_step_id,
            _clean_text(reason) or None,
        )
        self.db.flush()
        logger.info("Workflow %s rejected at step %s by %s", state.id, state.current_step_id, actor_id or "-")
        return entry
