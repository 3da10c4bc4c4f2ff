"""Tests for planstate.state.manager module.

Every test gets its own StateManager rooted in tmp_path (see conftest.py).
"""

import json
from unittest.mock import patch

import pytest

from planstate.errors import (
    CircularDependencyError,
    DependencyScopeError,
    InvalidTransitionError,
    NotInitializedError,
    PlanInvalidStateError,
    PlanNotFoundError,
    ProjectInvalidStateError,
    StagingInvalidStateError,
    StagingOrderError,
    StateFileError,
    TaskInvalidStateError,
    ValidationError,
)
from planstate.lib.config import EngineConfig
from planstate.state.manager import StateManager
from planstate.state.models import (
    HistoryEntryType,
    ModelType,
    PlanStatus,
    StagingStatus,
    TaskPriority,
    TaskStatus,
)


class TestInitialization:
    """Tests for project initialization and loading."""

    def test_uninitialized(self, tmp_path):
        mgr = StateManager(tmp_path)
        assert not mgr.is_initialized
        assert mgr.get_plan("plan-abcd1234") is None
        assert mgr.list_plans() == []
        with pytest.raises(NotInitializedError):
            mgr.create_plan("Anything")

    def test_init_writes_document(self, manager, tmp_path):
        state_file = tmp_path / ".claude" / "state.json"
        data = json.loads(state_file.read_text())
        assert data["version"] == "2.0.0"
        assert data["project"]["name"] == "shop"
        assert data["history"][0]["type"] == "project_initialized"
        assert (tmp_path / ".claude" / "plans").is_dir()

    def test_reinit_requires_overwrite(self, manager):
        with pytest.raises(ProjectInvalidStateError):
            manager.init_project("again")
        manager.init_project("again", overwrite=True)
        assert manager.get_project().name == "again"

    def test_empty_name_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            StateManager(tmp_path).init_project("")

    def test_reload_matches_memory(self, manager, two_staging_plan, tmp_path):
        reloaded = StateManager(tmp_path)
        assert reloaded.document.to_dict() == manager.document.to_dict()

    def test_corrupted_file(self, tmp_path):
        state_file = tmp_path / ".claude" / "state.json"
        state_file.parent.mkdir()
        state_file.write_text("{truncated")
        with pytest.raises(StateFileError):
            StateManager(tmp_path)

    def test_update_project(self, manager):
        project = manager.update_project(description="Updated", goals=["A", "B"])
        assert project.description == "Updated"
        assert project.goals == ["A", "B"]
        assert manager.history(limit=1)[0].details == {"fields": ["description", "goals"]}


class TestCreatePlan:
    """Tests for create_plan() with nested stagings and tasks."""

    def test_structure(self, manager, two_staging_plan):
        plan, first, second = two_staging_plan
        assert plan.status == PlanStatus.DRAFT
        assert plan.stagings == [first.id, second.id]
        assert plan.artifacts_root == f".claude/plans/{plan.id}/artifacts"
        assert (first.order, second.order) == (0, 1)
        assert second.artifacts_path == f".claude/plans/{plan.id}/artifacts/{second.id}"
        assert [r.staging_id for r in second.depends_on_stagings] == [first.id]

    def test_cross_task_refs_resolved(self, manager, two_staging_plan):
        _, first, second = two_staging_plan
        api_task = manager.get_task(second.tasks[0])
        assert [(r.task_id, r.staging_id) for r in api_task.cross_staging_refs] == [(first.tasks[0], first.id)]

    def test_task_defaults(self, manager, two_staging_plan):
        _, _, second = two_staging_plan
        docs = manager.get_task(second.tasks[1])
        assert docs.priority == TaskPriority.LOW
        assert docs.status == TaskStatus.PENDING
        assert docs.order == 1

    def test_staging_default_model_applied(self, manager):
        plan = manager.create_plan("P", stagings=[{"name": "S", "default_model": "haiku", "tasks": [{"title": "t"}]}])
        staging = manager.get_plan_stagings(plan.id)[0]
        assert manager.get_task(staging.tasks[0]).model == ModelType.HAIKU

    def test_history_counts(self, manager, two_staging_plan):
        entry = manager.history(limit=1)[0]
        assert entry.type == HistoryEntryType.PLAN_CREATED
        assert entry.details["stagingCount"] == 2
        assert entry.details["taskCount"] == 3

    @pytest.mark.parametrize("stagings", [
        [{"name": ""}],
        [{"name": "S", "tasks": [{"title": "t", "depends_on_index": [5]}]}],
        [{"name": "S", "depends_on_staging_indices": [0]}],
        [{"name": "S", "tasks": [{"title": "t", "cross_staging_task_refs": [{"staging_index": 0, "task_index": 0}]}]}],
        [{"name": "S", "unknown": True}],
        [{"name": "S", "recommended_sessions": 20}],
    ])
    def test_invalid_definitions_rejected(self, manager, stagings):
        with pytest.raises(ValidationError):
            manager.create_plan("P", stagings=stagings)
        assert manager.list_plans() == []

    def test_cyclic_index_dependencies_rejected(self, manager):
        with pytest.raises(CircularDependencyError):
            manager.create_plan("P", stagings=[{"name": "S", "tasks": [
                {"title": "a", "depends_on_index": [1]},
                {"title": "b", "depends_on_index": [0]},
            ]}])
        assert manager.list_plans() == []


class TestLifecycleScenarios:
    """End-to-end lifecycle through the manager, persisted after every call."""

    def test_sequential_staging_to_plan_completion(self, manager, sequential_plan, tmp_path):
        plan, staging, task_a, task_b = sequential_plan

        manager.start_staging(plan.id, staging.id)
        assert manager.get_executable_tasks(staging.id) == [task_a]

        manager.update_task_status(task_a.id, "in_progress")
        manager.update_task_status(task_a.id, TaskStatus.DONE)
        assert manager.get_executable_tasks(staging.id) == [task_b]

        manager.update_task_status(task_b.id, "in_progress")
        change = manager.update_task_status(task_b.id, "done")

        assert change.staging_completed
        assert change.plan_completed
        reloaded = StateManager(tmp_path)
        assert reloaded.get_staging(staging.id).status == StagingStatus.COMPLETED
        assert reloaded.get_plan(plan.id).status == PlanStatus.COMPLETED

    def test_done_task_cannot_reopen(self, manager, sequential_plan, tmp_path):
        plan, staging, task_a, _ = sequential_plan
        manager.start_staging(plan.id, staging.id)
        manager.update_task_status(task_a.id, "in_progress")
        manager.update_task_status(task_a.id, "done")

        with pytest.raises(InvalidTransitionError) as exc_info:
            manager.update_task_status(task_a.id, "in_progress")

        assert exc_info.value.from_state == "done"
        assert manager.get_task(task_a.id).status == TaskStatus.DONE
        assert StateManager(tmp_path).get_task(task_a.id).status == TaskStatus.DONE

    def test_cycle_rejected_without_mutation(self, manager, tmp_path):
        plan = manager.create_plan("P", stagings=[{"name": "S"}])
        staging = manager.get_plan_stagings(plan.id)[0]
        task_x = manager.add_task(staging.id, "X")
        task_y = manager.add_task(staging.id, "Y", depends_on=[task_x.id])

        with pytest.raises(CircularDependencyError) as exc_info:
            manager.update_task_details(task_x.id, depends_on=[task_y.id], title="X renamed")

        assert exc_info.value.chain == [task_x.id, task_y.id, task_x.id]
        assert manager.get_task(task_x.id).depends_on == []
        assert manager.get_task(task_x.id).title == "X"
        assert manager.get_task(task_y.id).depends_on == [task_x.id]
        assert StateManager(tmp_path).get_task(task_x.id).depends_on == []

    def test_staging_order_enforced(self, manager, two_staging_plan):
        plan, first, second = two_staging_plan
        with pytest.raises(StagingOrderError):
            manager.start_staging(plan.id, second.id)

        manager.start_staging(plan.id, first.id)
        completion = manager.complete_staging(first.id)
        assert completion.next_staging_id == second.id
        assert not completion.plan_completed

        started = manager.start_staging(plan.id, second.id)
        assert started.status == StagingStatus.IN_PROGRESS
        assert [s.status for s in manager.get_plan_stagings(plan.id)] == [
            StagingStatus.COMPLETED, StagingStatus.IN_PROGRESS
        ]

    def test_start_creates_artifacts_dir(self, manager, two_staging_plan, tmp_path):
        plan, first, _ = two_staging_plan
        manager.start_staging(plan.id, first.id)
        assert (tmp_path / ".claude" / "plans" / plan.id / "artifacts" / first.id).is_dir()

    def test_fail_and_restart(self, manager, two_staging_plan):
        plan, first, _ = two_staging_plan
        manager.start_staging(plan.id, first.id)
        assert manager.fail_staging(first.id, "build broke").status == StagingStatus.FAILED
        assert manager.start_staging(plan.id, first.id).status == StagingStatus.IN_PROGRESS

    def test_unknown_status_string(self, manager, sequential_plan):
        _, _, task_a, _ = sequential_plan
        with pytest.raises(ValidationError):
            manager.update_task_status(task_a.id, "finished")

    def test_self_transition_does_not_write(self, manager, sequential_plan):
        _, _, task_a, _ = sequential_plan
        before = len(manager.document.history)
        change = manager.update_task_status(task_a.id, "pending")
        assert not change.changed
        assert len(manager.document.history) == before


class TestWriteFailure:
    """A failed durable write propagates and discards the in-memory change."""

    def test_interrupted_write_keeps_committed_state(self, manager, sequential_plan, tmp_path):
        _, _, task_a, _ = sequential_plan
        state_file = tmp_path / ".claude" / "state.json"
        committed = state_file.read_text()

        with patch("planstate.state.persistence.os.replace", side_effect=OSError("power loss")):
            with pytest.raises(OSError):
                manager.update_task_status(task_a.id, "in_progress")

        assert state_file.read_text() == committed
        assert list(state_file.parent.glob(".state.json.*.tmp")) == []
        assert manager.get_task(task_a.id).status == TaskStatus.PENDING
        assert StateManager(tmp_path).get_task(task_a.id).status == TaskStatus.PENDING


class TestPlanEditing:
    """Tests for update_plan() and cancel_plan()."""

    def test_update_plan(self, manager, two_staging_plan):
        plan, _, _ = two_staging_plan
        updated = manager.update_plan(plan.id, title="Catalog v2")
        assert updated.title == "Catalog v2"
        assert updated.description == "Product catalog"

    def test_update_cancelled_plan_rejected(self, manager, two_staging_plan):
        plan, _, _ = two_staging_plan
        manager.cancel_plan(plan.id)
        with pytest.raises(PlanInvalidStateError):
            manager.update_plan(plan.id, title="nope")

    def test_cancel_plan(self, manager, two_staging_plan):
        plan, first, _ = two_staging_plan
        manager.start_staging(plan.id, first.id)

        result = manager.cancel_plan(plan.id, reason="deprioritized")

        assert len(result.affected_stagings) == 2
        assert len(result.affected_tasks) == 3
        assert not result.archived
        assert manager.get_plan(plan.id).status == PlanStatus.CANCELLED
        assert manager.document.context.current_plan_id is None

    def test_cancel_and_archive_in_one_call(self, manager, two_staging_plan, tmp_path):
        plan, _, _ = two_staging_plan
        result = manager.cancel_plan(plan.id, archive_immediately=True)
        assert result.archived
        assert result.archive_path == f".claude/archive/{plan.id}"
        assert StateManager(tmp_path).get_plan(plan.id).status == PlanStatus.ARCHIVED


class TestStagingEditing:
    """Tests for add/update/remove staging."""

    def test_add_staging_in_middle(self, manager, two_staging_plan):
        plan, first, second = two_staging_plan
        middle = manager.add_staging(plan.id, "Review", insert_at=1, tasks=[{"title": "Check"}])
        assert [s.name for s in manager.get_plan_stagings(plan.id)] == ["Design", "Review", "Build"]
        assert [s.order for s in manager.get_plan_stagings(plan.id)] == [0, 1, 2]
        assert manager.get_plan(plan.id).stagings == [first.id, middle.id, second.id]

    def test_add_staging_out_of_range(self, manager, two_staging_plan):
        plan, _, _ = two_staging_plan
        with pytest.raises(ValidationError):
            manager.add_staging(plan.id, "Late", insert_at=5)

    def test_update_staging(self, manager, two_staging_plan):
        _, first, _ = two_staging_plan
        updated = manager.update_staging(first.id, execution_type="sequential", recommended_sessions=2)
        assert updated.execution_type.value == "sequential"
        assert updated.recommended_sessions == 2

    def test_update_completed_staging_rejected(self, manager, two_staging_plan):
        _, first, _ = two_staging_plan
        manager.complete_staging(first.id)
        with pytest.raises(StagingInvalidStateError):
            manager.update_staging(first.id, name="late")

    def test_remove_staging_drops_references(self, manager, two_staging_plan):
        plan, first, second = two_staging_plan
        removed_task = first.tasks[0]

        removal = manager.remove_staging(first.id)

        assert removal.removed_tasks == [removed_task]
        assert manager.get_task(removed_task) is None
        assert manager.get_plan(plan.id).stagings == [second.id]
        assert second.order == 0
        assert second.depends_on_stagings == []
        assert manager.get_task(second.tasks[0]).cross_staging_refs == []

    def test_removing_last_open_staging_completes_plan(self, manager, two_staging_plan, tmp_path):
        plan, first, second = two_staging_plan
        manager.complete_staging(first.id)
        assert manager.get_plan(plan.id).status == PlanStatus.DRAFT

        manager.remove_staging(second.id)

        assert manager.get_plan(plan.id).status == PlanStatus.COMPLETED
        assert manager.history(limit=1)[0].type == HistoryEntryType.PLAN_COMPLETED
        assert StateManager(tmp_path).get_plan(plan.id).status == PlanStatus.COMPLETED
        manager.archive_plan(plan.id)
        assert manager.get_plan(plan.id).status == PlanStatus.ARCHIVED

    def test_removing_only_staging_leaves_plan_open(self, manager):
        plan = manager.create_plan("Solo", stagings=[{"name": "Only", "tasks": [{"title": "t"}]}])
        manager.remove_staging(plan.stagings[0])
        assert manager.get_plan(plan.id).status == PlanStatus.DRAFT

    def test_remove_in_progress_staging_rejected(self, manager, two_staging_plan):
        plan, first, _ = two_staging_plan
        manager.start_staging(plan.id, first.id)
        with pytest.raises(StagingInvalidStateError):
            manager.remove_staging(first.id)


class TestTaskEditing:
    """Tests for add/update/remove task and bulk status."""

    def test_add_task_appends(self, manager, sequential_plan):
        _, staging, task_a, _ = sequential_plan
        task = manager.add_task(staging.id, "C", depends_on=[task_a.id], priority="high")
        assert task.order == 2
        assert task.depends_on == [task_a.id]
        assert manager.get_staging(staging.id).tasks[-1] == task.id

    def test_add_task_cross_staging_dependency_rejected(self, manager, two_staging_plan):
        _, first, second = two_staging_plan
        with pytest.raises(DependencyScopeError):
            manager.add_task(second.id, "Bad", depends_on=[first.tasks[0]])

    def test_add_task_to_completed_staging_rejected(self, manager, two_staging_plan):
        _, first, _ = two_staging_plan
        manager.complete_staging(first.id)
        with pytest.raises(StagingInvalidStateError):
            manager.add_task(first.id, "Late")

    def test_remove_task_cleans_dependents(self, manager, sequential_plan):
        _, staging, task_a, task_b = sequential_plan
        manager.remove_task(task_a.id)
        assert manager.get_staging(staging.id).tasks == [task_b.id]
        assert task_b.depends_on == []
        assert task_b.order == 0

    def test_removing_last_open_task_completes_staging(self, manager, sequential_plan):
        plan, staging, task_a, task_b = sequential_plan
        manager.start_staging(plan.id, staging.id)
        manager.update_task_status(task_a.id, "in_progress")
        manager.update_task_status(task_a.id, "done")
        assert staging.status == StagingStatus.IN_PROGRESS

        manager.remove_task(task_b.id)

        assert manager.get_staging(staging.id).status == StagingStatus.COMPLETED
        assert manager.get_plan(plan.id).status == PlanStatus.COMPLETED
        assert [e.type for e in manager.history(limit=3)] == [
            HistoryEntryType.PLAN_COMPLETED,
            HistoryEntryType.STAGING_COMPLETED,
            HistoryEntryType.TASK_REMOVED,
        ]

    def test_removing_only_task_leaves_staging_open(self, manager, sequential_plan):
        plan, staging, task_a, task_b = sequential_plan
        manager.start_staging(plan.id, staging.id)
        manager.remove_task(task_b.id)
        manager.remove_task(task_a.id)
        assert manager.get_staging(staging.id).status == StagingStatus.IN_PROGRESS

    def test_status_change_in_cancelled_plan_rejected(self, manager, sequential_plan):
        plan, _, task_a, _ = sequential_plan
        manager.cancel_plan(plan.id)
        with pytest.raises(PlanInvalidStateError):
            manager.update_task_status(task_a.id, "in_progress")
        assert task_a.status == TaskStatus.CANCELLED

    def test_remove_in_progress_task_rejected(self, manager, sequential_plan):
        _, _, task_a, _ = sequential_plan
        manager.update_task_status(task_a.id, "in_progress")
        with pytest.raises(TaskInvalidStateError):
            manager.remove_task(task_a.id)

    def test_update_done_task_rejected(self, manager, sequential_plan):
        _, _, task_a, _ = sequential_plan
        manager.update_task_status(task_a.id, "in_progress")
        manager.update_task_status(task_a.id, "done")
        with pytest.raises(TaskInvalidStateError):
            manager.update_task_details(task_a.id, title="rename")

    def test_update_task_details(self, manager, sequential_plan):
        _, _, task_a, _ = sequential_plan
        task = manager.update_task_details(task_a.id, description="details", memory_tags=["api"])
        assert task.description == "details"
        assert task.memory_tags == ["api"]

    def test_bulk_update(self, manager, sequential_plan):
        _, _, task_a, task_b = sequential_plan
        result = manager.bulk_update_task_status([task_a.id, task_b.id, "task-zzzzzzzz"], "blocked")
        assert result["updated"] == [task_a.id, task_b.id]
        assert result["failed"][0]["taskId"] == "task-zzzzzzzz"
        assert result["failed"][0]["code"] == "NOT_FOUND"
        assert task_a.status == TaskStatus.BLOCKED


class TestOutputs:
    """Tests for task outputs and cross-staging reads."""

    def test_save_and_read_output(self, manager, sequential_plan, tmp_path):
        plan, staging, task_a, _ = sequential_plan
        manager.save_task_output(task_a.id, {"status": "success", "summary": "Built", "artifacts": ["api/spec.yaml"]})

        output_file = tmp_path / ".claude" / "plans" / plan.id / "artifacts" / staging.id / f"{task_a.id}-output.json"
        assert json.loads(output_file.read_text())["summary"] == "Built"
        assert manager.get_task_output(task_a.id).summary == "Built"
        assert set(manager.get_staging_outputs(staging.id)) == {task_a.id}
        assert manager.list_staging_artifacts(staging.id) == [f"{task_a.id}-output.json"]

    def test_artifact_paths_stored_with_forward_slashes(self, manager, sequential_plan, tmp_path):
        _, _, task_a, _ = sequential_plan
        record = manager.save_task_output(task_a.id, {
            "status": "success",
            "summary": "Cart API",
            "artifacts": ["src\\api\\cart.py", "docs/cart.md"],
        })
        assert record.artifacts == ["src/api/cart.py", "docs/cart.md"]
        stored = json.loads((tmp_path / ".claude" / "state.json").read_text())
        assert stored["tasks"][task_a.id]["output"]["artifacts"] == ["src/api/cart.py", "docs/cart.md"]

    def test_missing_output_is_none(self, manager, sequential_plan):
        _, staging, _, task_b = sequential_plan
        assert manager.get_task_output(task_b.id) is None
        assert manager.get_staging_outputs(staging.id) == {}
        assert manager.list_staging_artifacts(staging.id) == []

    def test_invalid_output_rejected(self, manager, sequential_plan):
        _, _, task_a, _ = sequential_plan
        with pytest.raises(ValidationError):
            manager.save_task_output(task_a.id, {"status": "great", "summary": "x"})

    def test_cross_staging_reads(self, manager, two_staging_plan):
        _, first, second = two_staging_plan
        design_task = first.tasks[0]
        manager.save_task_output(design_task, {"status": "success", "summary": "Schema ready"})

        related = manager.get_related_staging_artifacts(second.id)
        assert related[0]["stagingId"] == first.id
        assert related[0]["taskOutputs"][design_task].summary == "Schema ready"

        refs = manager.get_cross_referenced_outputs(second.tasks[0])
        assert refs[0]["taskId"] == design_task
        assert refs[0]["output"].summary == "Schema ready"


class TestDecisionsAndMemories:
    """Tests for decisions, memories and the project summary."""

    def test_decisions(self, manager, two_staging_plan):
        plan, _, _ = two_staging_plan
        decision = manager.add_decision("Transport", "REST", rationale="simple", related_plan_id=plan.id)
        assert decision.id.startswith("dec-")
        assert manager.list_decisions(plan.id) == [decision]
        with pytest.raises(PlanNotFoundError):
            manager.add_decision("x", "y", related_plan_id="plan-zzzzzzzz")

    def test_memory_crud(self, manager):
        memory = manager.add_memory("coding", "Style", "Use black", tags=["python"])
        assert memory.priority == 50
        manager.update_memory(memory.id, priority=90, enabled=False)
        assert manager.get_memory(memory.id).priority == 90
        assert manager.list_memories(category="coding") == []
        assert manager.list_memories(category="coding", enabled_only=False) == [memory]
        manager.remove_memory(memory.id)
        assert manager.get_memory(memory.id) is None

    def test_memory_selection(self, manager):
        general = manager.add_memory("general", "Be terse", "Short answers", priority=40)
        coding = manager.add_memory("coding", "Tests", "Write tests", priority=80, tags=["python"])
        review = manager.add_memory("review", "Diffs", "Read the diff", priority=60, tags=["python"])

        assert manager.memories_for_context("coding") == [coding, general]
        assert manager.memories_for_context("all") == [coding, review, general]
        assert manager.memories_for_event("task-start", tags=["python"]) == [coding, review, general]
        assert manager.always_applied_memories() == [general]

    def test_categories_include_custom(self, manager):
        manager.add_memory("security", "Secrets", "Never log tokens")
        categories = manager.categories()
        assert "security" in categories
        assert "general" in categories

    def test_project_summary(self, manager, two_staging_plan):
        manager.add_memory("coding", "Typed code", "Annotate", priority=80)
        manager.add_decision("Transport", "REST")

        summary = manager.save_project_summary()

        assert summary.category == "project-summary"
        assert summary.priority == 100
        assert summary.title == "shop - Project Summary"
        assert "## Goals\n- Ship checkout" in summary.content
        assert "- Tasks: 0/3 completed" in summary.content
        assert "**Typed code** (coding)" in summary.content
        assert "- Transport: REST" in summary.content

        again = manager.save_project_summary("custom")
        assert again.id == summary.id
        assert again.content == "custom"
        assert len([m for m in manager.list_memories() if m.category == "project-summary"]) == 1


class TestSessionsAndHistory:
    """Tests for sessions and the history view."""

    def test_session_summary(self, manager):
        manager.start_session()
        manager.end_session("Planned checkout")
        assert manager.document.context.session_summary == "Planned checkout"
        latest = manager.history(limit=1)[0]
        assert latest.type == HistoryEntryType.SESSION_ENDED

    def test_history_filter(self, manager, two_staging_plan):
        created = manager.history(entry_type="plan_created")
        assert len(created) == 1
        assert manager.history()[-1].type == HistoryEntryType.PROJECT_INITIALIZED

    def test_history_capped(self, tmp_path):
        mgr = StateManager(tmp_path, config=EngineConfig(history_limit=3))
        mgr.init_project("capped")
        for _ in range(5):
            mgr.start_session()
        assert len(mgr.document.history) == 3
        assert all(h.type == HistoryEntryType.SESSION_STARTED for h in mgr.document.history)


class TestQueries:
    """Tests for the manager's query entry points."""

    def test_paginate_tasks(self, manager, two_staging_plan):
        page = manager.paginate_tasks(page=1, page_size=2)
        assert page.total == 3
        assert len(page.items) == 2
        assert page.has_next
        assert page.total_pages == 2

    def test_paginate_filters(self, manager, two_staging_plan):
        _, _, second = two_staging_plan
        page = manager.paginate_tasks(staging_id=second.id, priority="low")
        assert [t.title for t in page.items] == ["Write docs"]
