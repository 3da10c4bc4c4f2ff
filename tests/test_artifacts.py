"""Tests for planstate.state.artifacts module."""

import logging

import pytest

from planstate.errors import PathTraversalError
from planstate.lib.paths import ProjectPaths
from planstate.state.artifacts import ArtifactStore
from planstate.state.models import OutputStatus, TaskOutput

PLAN = "plan-abcd1234"
STAGING = "staging-ab12"
TASK = "task-abcd1234"


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(ProjectPaths(tmp_path))


class TestTaskOutputs:
    """Tests for task output files."""

    def test_write_then_read(self, store):
        output = TaskOutput(status=OutputStatus.PARTIAL, summary="half", data={"lines": 10})
        path = store.write_task_output(PLAN, STAGING, TASK, output)
        assert path == f".claude/plans/{PLAN}/artifacts/{STAGING}/{TASK}-output.json"
        assert store.read_task_output(PLAN, STAGING, TASK) == output

    def test_missing_is_none(self, store):
        assert store.read_task_output(PLAN, STAGING, TASK) is None

    def test_corrupted_file_skipped(self, store, caplog):
        caplog.set_level(logging.WARNING)
        directory = store.ensure_staging_dir(PLAN, STAGING)
        (directory / f"{TASK}-output.json").write_text("{oops")
        (directory / "task-good0000-output.json").write_text(
            '{"status": "success", "summary": "fine", "completedAt": "2025-01-01T00:00:00.000Z"}'
        )

        assert store.read_task_output(PLAN, STAGING, TASK) is None
        assert set(store.staging_outputs(PLAN, STAGING)) == {"task-good0000"}
        assert "Skipping unreadable task output" in caplog.text


class TestFiles:
    """Tests for arbitrary artifact files."""

    def test_save_and_list(self, store):
        store.save_file(PLAN, STAGING, "docs/api.md", "# API")
        store.save_file(PLAN, STAGING, "b.txt", "b")
        assert store.list_files(PLAN, STAGING) == ["b.txt", "docs/api.md"]
        assert store.read_file(PLAN, STAGING, "docs/api.md") == "# API"

    def test_read_missing(self, store):
        assert store.read_file(PLAN, STAGING, "nothing.txt") is None

    @pytest.mark.parametrize("name", ["../escape.txt", "../../../state.json", ""])
    def test_escape_rejected(self, store, name):
        with pytest.raises(PathTraversalError):
            store.save_file(PLAN, STAGING, name, "x")

    def test_ensure_dir_failure_is_best_effort(self, store, tmp_path, caplog):
        caplog.set_level(logging.WARNING)
        # A regular file where the plans directory should be
        (tmp_path / ".claude").mkdir()
        (tmp_path / ".claude" / "plans").write_text("not a dir")
        assert store.ensure_staging_dir(PLAN, STAGING) is None
        assert "Could not create" in caplog.text
