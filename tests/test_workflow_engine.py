"""Tests for flow chains and the workflow engine."""

import pytest

from assetflow.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from assetflow.metadata import FlowChain, WORKFLOW_COMPLETED, WORKFLOW_IN_PROGRESS, WorkflowHistory
from assetflow.workflow_engine import WorkflowEngine


def _linear_chain(engine, tenant, roles=None, names=("Draft", "Review", "Approved"), back_edges=()):
    roles = roles or {}
    steps = []
    for index, name in enumerate(names):
        transitions = []
        if index + 1 < len(names):
            transitions.append({"to_step_name": names[index + 1]})
        transitions.extend({"to_step_name": target} for source, target in back_edges if source == name)
        steps.append({"name": name, "role_id": roles.get(name), "transitions": transitions})
    return engine.create_flow_chain(tenant.id, "Campaign approval", steps)


def _steps_by_name(engine, chain):
    return {step.name: step for step in engine.chain_steps(chain.id)}


@pytest.fixture
def engine(test_db):
    return WorkflowEngine(test_db)


@pytest.fixture
def chain(engine, tenant):
    return _linear_chain(engine, tenant)


@pytest.fixture
def workflow(engine, chain, asset):
    return engine.assign_workflow(asset.id, "VIDEO", chain.id, None)


class TestFlowChains:
    def test_steps_keep_creation_order_and_transitions(self, engine, tenant, test_db):
        chain = _linear_chain(engine, tenant)
        test_db.commit()

        steps = engine.chain_steps(chain.id)

        assert [step.name for step in steps] == ["Draft", "Review", "Approved"]
        assert [step.sequence for step in steps] == [0, 1, 2]
        assert [t.to_step_id for t in steps[0].next_transitions] == [steps[1].id]
        assert steps[0].next_transitions[0].condition == "SUCCESS"
        assert steps[2].next_transitions == []

    def test_step_roles(self, engine, tenant, make_role):
        reviewer = make_role("Reviewer")
        chain = _linear_chain(engine, tenant, roles={"Review": reviewer.id})

        steps = _steps_by_name(engine, chain)

        assert steps["Review"].role_id == reviewer.id
        assert steps["Draft"].role_id is None

    def test_duplicate_step_names(self, engine, tenant):
        with pytest.raises(ValidationError):
            engine.create_flow_chain(tenant.id, "Dupes", [{"name": "Draft"}, {"name": "Draft"}])

    def test_unknown_transition_target(self, engine, tenant):
        with pytest.raises(ValidationError):
            engine.create_flow_chain(
                tenant.id,
                "Broken",
                [{"name": "Draft", "transitions": [{"to_step_name": "Nowhere"}]}],
            )

    def test_requires_steps_and_name(self, engine, tenant):
        with pytest.raises(ValidationError):
            engine.create_flow_chain(tenant.id, "Empty", [])
        with pytest.raises(ValidationError):
            engine.create_flow_chain(tenant.id, "  ", [{"name": "Draft"}])

    def test_unknown_role(self, engine, tenant):
        with pytest.raises(NotFoundError):
            engine.create_flow_chain(tenant.id, "Roles", [{"name": "Draft", "role_id": "missing"}])

    def test_chains_are_tenant_scoped(self, engine, tenant, chain):
        assert [row.id for row in engine.list_flow_chains(tenant.id)] == [chain.id]
        with pytest.raises(NotFoundError):
            engine.get_flow_chain(chain.id, tenant_id="other-tenant")


class TestAssignWorkflow:
    def test_starts_at_first_step(self, engine, asset, make_role, tenant, test_db):
        drafter = make_role("Drafter")
        chain = _linear_chain(engine, tenant, roles={"Draft": drafter.id})

        state = engine.assign_workflow(asset.id, "video", chain.id, None)
        test_db.commit()

        steps = _steps_by_name(engine, chain)
        assert state.current_step_id == steps["Draft"].id
        assert state.assigned_to_role_id == drafter.id
        assert state.status == WORKFLOW_IN_PROGRESS
        assert [entry.action for entry in engine.history(state.id)] == ["ASSIGN"]
        test_db.refresh(asset)
        assert asset.workflow_status == WORKFLOW_IN_PROGRESS

    def test_reassignment_resets_to_first_step(self, engine, chain, workflow, asset):
        steps = _steps_by_name(engine, chain)
        engine.advance(workflow.id, steps["Approved"].id, None, "ship it")

        state = engine.assign_workflow(asset.id, "VIDEO", chain.id, None)

        assert state.id == workflow.id
        assert state.current_step_id == steps["Draft"].id
        assert state.status == WORKFLOW_IN_PROGRESS
        assert state.completed_at is None
        assert [entry.action for entry in engine.history(state.id)] == ["ASSIGN", "ADVANCE", "REASSIGN"]

    def test_invalid_asset_type(self, engine, chain, asset):
        with pytest.raises(ValidationError):
            engine.assign_workflow(asset.id, "IMAGE", chain.id, None)

    def test_asset_type_must_match(self, engine, chain, asset):
        with pytest.raises(ValidationError):
            engine.assign_workflow(asset.id, "DOCUMENT", chain.id, None)

    def test_unknown_chain_and_asset(self, engine, chain, asset):
        with pytest.raises(NotFoundError):
            engine.assign_workflow(asset.id, "VIDEO", "missing", None)
        with pytest.raises(NotFoundError):
            engine.assign_workflow("missing", "VIDEO", chain.id, None)

    def test_chain_without_steps(self, engine, asset, tenant, test_db):
        empty = FlowChain(tenant_id=tenant.id, name="Empty")
        test_db.add(empty)
        test_db.commit()

        with pytest.raises(ValidationError):
            engine.assign_workflow(asset.id, "VIDEO", empty.id, None)


class TestAdvance:
    def test_advance_to_next_step(self, engine, chain, workflow, make_employee):
        actor = make_employee("reviewer@example.com")
        steps = _steps_by_name(engine, chain)

        result = engine.advance(workflow.id, steps["Review"].id, actor.id, "looks good")

        assert result.message == "advanced to Review"
        assert result.completed is False
        assert result.previous_step.id == steps["Draft"].id
        assert result.state.current_step_id == steps["Review"].id
        assert result.state.assigned_to_employee_id is None
        entry = engine.history(workflow.id)[-1]
        assert (entry.action, entry.actor_id, entry.comment) == ("ADVANCE", actor.id, "looks good")
        assert (entry.from_step_id, entry.to_step_id) == (steps["Draft"].id, steps["Review"].id)

    def test_skip_to_last_step_completes(self, engine, chain, workflow, asset, test_db):
        steps = _steps_by_name(engine, chain)

        result = engine.advance(workflow.id, steps["Approved"].id, None, None)
        assert result.state.completed_at.tzinfo is None
        assert result.state.completed_at >= result.state.started_at
        test_db.commit()

        assert result.completed is True
        assert result.message == "workflow completed"
        assert result.state.status == WORKFLOW_COMPLETED
        assert result.state.completed_at is not None
        test_db.refresh(asset)
        assert asset.workflow_status == WORKFLOW_COMPLETED

    def test_backward_move_rejected_even_with_edge(self, test_db, tenant, asset):
        engine = WorkflowEngine(test_db, mode="creation_order")
        chain = _linear_chain(engine, tenant, back_edges=[("Review", "Draft")])
        steps = _steps_by_name(engine, chain)
        state = engine.assign_workflow(asset.id, "VIDEO", chain.id, None)
        engine.advance(state.id, steps["Review"].id, None, None)

        with pytest.raises(InvalidTransitionError):
            engine.advance(state.id, steps["Draft"].id, None, "rework")
        with pytest.raises(InvalidTransitionError):
            engine.advance(state.id, steps["Review"].id, None, "again")

        assert state.current_step_id == steps["Review"].id

    def test_completed_workflow_cannot_advance(self, engine, chain, workflow):
        steps = _steps_by_name(engine, chain)
        engine.advance(workflow.id, steps["Approved"].id, None, None)

        with pytest.raises(InvalidTransitionError) as exc_info:
            engine.advance(workflow.id, steps["Review"].id, None, None)

        assert exc_info.value.reason == "workflow_completed"

    def test_target_from_other_chain(self, engine, tenant, chain, workflow):
        other = _linear_chain(engine, tenant, names=("Brief", "Sign-off"))
        foreign_step = engine.chain_steps(other.id)[1]

        with pytest.raises(ValidationError):
            engine.advance(workflow.id, foreign_step.id, None, None)

    def test_unknown_target_and_workflow(self, engine, chain, workflow):
        with pytest.raises(NotFoundError):
            engine.advance(workflow.id, "missing", None, None)
        with pytest.raises(NotFoundError):
            engine.advance("missing", engine.chain_steps(chain.id)[1].id, None, None)

    def test_authorize_hook_can_refuse(self, test_db, chain, workflow):
        def deny(state, target_step, actor_id):
            raise ForbiddenError("not your step")

        engine = WorkflowEngine(test_db, authorize=deny)
        steps = _steps_by_name(engine, chain)

        with pytest.raises(ForbiddenError):
            engine.advance(workflow.id, steps["Review"].id, "someone", None)

        assert workflow.current_step_id == steps["Draft"].id
        assert test_db.query(WorkflowHistory).filter(WorkflowHistory.action == "ADVANCE").count() == 0

    def test_manual_approval_comment(self, engine, chain, workflow):
        steps = _steps_by_name(engine, chain)

        engine.advance(workflow.id, steps["Review"].id, None, "client deadline", action="MANUAL_APPROVAL")

        entry = engine.history(workflow.id)[-1]
        assert entry.action == "MANUAL_APPROVAL"
        assert entry.comment == "Manual approval: client deadline"


class TestGraphMode:
    @pytest.fixture
    def graph_engine(self, test_db):
        return WorkflowEngine(test_db, mode="graph")

    @pytest.fixture
    def branching_chain(self, graph_engine, tenant):
        return graph_engine.create_flow_chain(
            tenant.id,
            "Branching",
            [
                {"name": "Draft", "transitions": [{"to_step_name": "Review"}]},
                {"name": "Review", "transitions": [
                    {"to_step_name": "Approved"},
                    {"to_step_name": "Draft", "condition": "CHANGES_REQUESTED"},
                ]},
                {"name": "Legal", "transitions": [{"to_step_name": "Approved"}]},
                {"name": "Approved"},
            ],
        )

    def test_unreachable_step_rejected(self, graph_engine, branching_chain, asset):
        steps = _steps_by_name(graph_engine, branching_chain)
        state = graph_engine.assign_workflow(asset.id, "VIDEO", branching_chain.id, None)

        with pytest.raises(InvalidTransitionError):
            graph_engine.advance(state.id, steps["Legal"].id, None, None)

    def test_follows_edges_including_rework_loop(self, graph_engine, branching_chain, asset):
        steps = _steps_by_name(graph_engine, branching_chain)
        state = graph_engine.assign_workflow(asset.id, "VIDEO", branching_chain.id, None)

        graph_engine.advance(state.id, steps["Review"].id, None, None)
        result = graph_engine.advance(state.id, steps["Draft"].id, None, "changes requested")

        assert result.completed is False
        assert state.current_step_id == steps["Draft"].id

    def test_step_without_outgoing_edges_completes(self, graph_engine, branching_chain, asset):
        steps = _steps_by_name(graph_engine, branching_chain)
        state = graph_engine.assign_workflow(asset.id, "VIDEO", branching_chain.id, None)

        result = graph_engine.advance(state.id, steps["Approved"].id, None, None)

        assert result.completed is True
        assert state.status == WORKFLOW_COMPLETED

    def test_creation_order_mode_allows_what_graph_refuses(self, engine, branching_chain, asset):
        steps = _steps_by_name(engine, branching_chain)
        state = engine.assign_workflow(asset.id, "VIDEO", branching_chain.id, None)

        result = engine.advance(state.id, steps["Legal"].id, None, None)

        assert result.completed is False


def test_unknown_mode(test_db):
    with pytest.raises(ValueError):
        WorkflowEngine(test_db, mode="freeform")


def test_reject_keeps_step(engine, chain, workflow):
    steps = _steps_by_name(engine, chain)
    engine.advance(workflow.id, steps["Review"].id, None, None)

    entry = engine.reject(workflow.id, None, "wrong logo")

    assert entry.action == "REJECT"
    assert entry.comment == "wrong logo"
    assert entry.from_step_id == entry.to_step_id == steps["Review"].id
    assert workflow.current_step_id == steps["Review"].id
    assert workflow.status == WORKFLOW_IN_PROGRESS


def test_reject_completed_workflow(engine, chain, workflow):
    steps = _steps_by_name(engine, chain)
    engine.advance(workflow.id, steps["Approved"].id, None, None)

    with pytest.raises(InvalidTransitionError):
        engine.reject(workflow.id, None, "too late")


def test_draft_review_approved_scenario(engine, chain, workflow, make_employee):
    steps = _steps_by_name(engine, chain)
    assert workflow.current_step_id == steps["Draft"].id
    actor = make_employee("x@example.com")

    result = engine.advance(workflow.id, steps["Approved"].id, actor.id, None)

    assert result.state.status == WORKFLOW_COMPLETED
    assert engine.get_state_for_asset(workflow.asset_id, "VIDEO").id == workflow.id
