"""Tests for planstate.workflow.archive module and the manager's archive/restore."""

import logging
from unittest.mock import patch

import pytest

from planstate.errors import InvalidIdError, PlanInvalidStateError
from planstate.state.manager import StateManager
from planstate.state.models import HistoryEntryType, PlanStatus, TaskStatus
from planstate.workflow.archive import MoveStatus, move_tree


def _snapshot(root):
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


class TestMoveTree:
    """Tests for move_tree()."""

    def test_moves_contents(self, tmp_path):
        source = tmp_path / "src"
        (source / "nested").mkdir(parents=True)
        (source / "nested" / "a.bin").write_bytes(b"\x00\x01")
        destination = tmp_path / "dst" / "plan"

        result = move_tree(source, destination)

        assert result.status == MoveStatus.MOVED
        assert not source.exists()
        assert (destination / "nested" / "a.bin").read_bytes() == b"\x00\x01"

    def test_missing_source(self, tmp_path, caplog):
        caplog.set_level(logging.INFO)
        result = move_tree(tmp_path / "absent", tmp_path / "dst")
        assert result.status == MoveStatus.NO_ARTIFACTS
        assert not (tmp_path / "dst").exists()
        assert "No artifacts" in caplog.text

    def test_overwrites_existing_destination(self, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "f.txt").write_text("new")
        destination = tmp_path / "dst"
        destination.mkdir()
        (destination / "f.txt").write_text("old")

        assert move_tree(source, destination).status == MoveStatus.MOVED
        assert (destination / "f.txt").read_text() == "new"

    def test_copy_failure_reported(self, tmp_path, caplog):
        caplog.set_level(logging.WARNING)
        source = tmp_path / "src"
        source.mkdir()
        (source / "f.txt").write_text("keep")

        with patch("planstate.workflow.archive.shutil.copytree", side_effect=OSError("read-only fs")):
            result = move_tree(source, tmp_path / "dst")

        assert result.status == MoveStatus.FAILED
        assert "read-only fs" in result.error
        assert (source / "f.txt").read_text() == "keep"
        assert "[ARCHIVE] Failed to move" in caplog.text


class TestArchivePlan:
    """Tests for StateManager.archive_plan() / unarchive_plan()."""

    @pytest.fixture
    def finished_plan(self, manager, sequential_plan):
        plan, staging, task_a, task_b = sequential_plan
        manager.start_staging(plan.id, staging.id)
        for task in (task_a, task_b):
            manager.update_task_status(task.id, "in_progress")
            manager.update_task_status(task.id, "done")
        manager.save_task_output(task_a.id, {"status": "success", "summary": "ok"})
        manager.artifacts.save_file(plan.id, staging.id, "notes/design.md", "# Design\n")
        assert manager.get_plan(plan.id).status == PlanStatus.COMPLETED
        return plan

    def test_round_trip_is_byte_identical(self, manager, finished_plan, tmp_path):
        plan_dir = tmp_path / ".claude" / "plans" / finished_plan.id
        archive_dir = tmp_path / ".claude" / "archive" / finished_plan.id
        before = _snapshot(plan_dir)
        assert before

        archived = manager.archive_plan(finished_plan.id)
        assert archived.status == MoveStatus.MOVED
        assert archived.path == f".claude/archive/{finished_plan.id}"
        assert archived.archived_at is not None
        assert not plan_dir.exists()
        assert _snapshot(archive_dir) == before
        assert StateManager(tmp_path).get_plan(finished_plan.id).status == PlanStatus.ARCHIVED

        restored = manager.unarchive_plan(finished_plan.id)
        assert restored.status == MoveStatus.MOVED
        assert _snapshot(plan_dir) == before
        assert not archive_dir.exists()
        plan = manager.get_plan(finished_plan.id)
        assert plan.status == PlanStatus.COMPLETED
        assert plan.archived_at is None

    def test_archive_without_artifacts(self, manager, two_staging_plan):
        plan, _, _ = two_staging_plan
        manager.cancel_plan(plan.id)
        result = manager.archive_plan(plan.id)
        assert result.status == MoveStatus.NO_ARTIFACTS
        assert manager.get_plan(plan.id).status == PlanStatus.ARCHIVED
        entry = manager.history(limit=1)[0]
        assert entry.type == HistoryEntryType.PLAN_ARCHIVED
        assert entry.details["artifacts"] == "no_artifacts"

    def test_archive_reason_recorded(self, manager, finished_plan):
        manager.archive_plan(finished_plan.id, reason="released in v2")
        entry = manager.history(limit=1)[0]
        assert entry.type == HistoryEntryType.PLAN_ARCHIVED
        assert entry.details["reason"] == "released in v2"

    def test_task_status_frozen_once_archived(self, manager, two_staging_plan):
        plan, first, _ = two_staging_plan
        manager.cancel_plan(plan.id, archive_immediately=True)
        with pytest.raises(PlanInvalidStateError):
            manager.update_task_status(first.tasks[0], "in_progress")
        assert manager.get_task(first.tasks[0]).status == TaskStatus.CANCELLED

    def test_archive_requires_finished_plan(self, manager, two_staging_plan):
        plan, _, _ = two_staging_plan
        with pytest.raises(PlanInvalidStateError):
            manager.archive_plan(plan.id)
        assert manager.get_plan(plan.id).status == PlanStatus.DRAFT

    def test_unarchive_requires_archived(self, manager, finished_plan):
        with pytest.raises(PlanInvalidStateError):
            manager.unarchive_plan(finished_plan.id)

    def test_failed_move_still_archives(self, manager, finished_plan, caplog):
        caplog.set_level(logging.WARNING)
        with patch("planstate.workflow.archive.shutil.copytree", side_effect=OSError("disk error")):
            result = manager.archive_plan(finished_plan.id)
        assert result.status == MoveStatus.FAILED
        assert manager.get_plan(finished_plan.id).status == PlanStatus.ARCHIVED
        assert "disk error" in caplog.text

    @pytest.mark.parametrize("bad_id", ["../../etc", "plan/../x", ""])
    def test_unsafe_id_rejected_before_filesystem(self, manager, bad_id):
        with patch("planstate.workflow.archive.shutil.copytree") as copytree:
            with pytest.raises(InvalidIdError):
                manager.archive_plan(bad_id)
            with pytest.raises(InvalidIdError):
                manager.unarchive_plan(bad_id)
        copytree.assert_not_called()
