"""
Filesystem layout for a planstate project.

This is the only module that turns ids into paths. Every id is checked
against the safe-id allow-list before it is joined onto a path, and every
resolved path is checked to stay inside the managed directory:

    <root>/<state_dir>/state.json
    <root>/<state_dir>/plans/<planId>/artifacts/<stagingId>/<taskId>-output.json
    <root>/<state_dir>/archive/<planId>/...

Paths stored in the state document are relative to the project root and
always use forward slashes.
"""

from pathlib import Path, PurePosixPath

from planstate.errors import InvalidIdError, PathTraversalError
from planstate.lib.constants import (
    ARCHIVE_DIR_NAME,
    ARTIFACTS_DIR_NAME,
    DEFAULT_STATE_DIR,
    PLANS_DIR_NAME,
    STATE_FILE_NAME,
    TASK_OUTPUT_SUFFIX,
)
from planstate.lib.ids import is_safe_id


def to_posix(path: str | Path) -> str:
    """Normalize a path string to forward slashes."""
    return str(path).replace("\\", "/")


def _require_safe(value: str, id_type: str) -> str:
    if not is_safe_id(value):
        raise InvalidIdError(value, id_type)
    return value


def relative_artifacts_root(plan_id: str, state_dir: str = DEFAULT_STATE_DIR) -> str:
    """Document-stored artifacts root for a plan."""
    _require_safe(plan_id, "plan")
    return f"{state_dir}/{PLANS_DIR_NAME}/{plan_id}/{ARTIFACTS_DIR_NAME}"


def relative_staging_artifacts(plan_id: str, staging_id: str, state_dir: str = DEFAULT_STATE_DIR) -> str:
    """Document-stored artifacts path for a staging."""
    _require_safe(staging_id, "staging")
    return f"{relative_artifacts_root(plan_id, state_dir)}/{staging_id}"


class ProjectPaths:
    """Path builder bound to one project root."""

    def __init__(self, root: str | Path, state_dir: str = DEFAULT_STATE_DIR):
        self.root = Path(root).resolve()
        self.state_dir = state_dir
        self.managed_dir = self.root / state_dir

    @property
    def state_file(self) -> Path:
        return self.managed_dir / STATE_FILE_NAME

    @property
    def plans_dir(self) -> Path:
        return self.managed_dir / PLANS_DIR_NAME

    @property
    def archive_dir(self) -> Path:
        return self.managed_dir / ARCHIVE_DIR_NAME

    def ensure_within(self, path: Path) -> Path:
        """Resolve `path` and reject it if it leaves the managed directory."""
        resolved = path.resolve()
        if resolved != self.managed_dir and not resolved.is_relative_to(self.managed_dir):
            raise PathTraversalError(to_posix(path))
        return resolved

    def plan_dir(self, plan_id: str) -> Path:
        _require_safe(plan_id, "plan")
        return self.ensure_within(self.plans_dir / plan_id)

    def plan_archive_dir(self, plan_id: str) -> Path:
        _require_safe(plan_id, "plan")
        return self.ensure_within(self.archive_dir / plan_id)

    def plan_artifacts_dir(self, plan_id: str) -> Path:
        return self.ensure_within(self.plan_dir(plan_id) / ARTIFACTS_DIR_NAME)

    def staging_artifacts_dir(self, plan_id: str, staging_id: str) -> Path:
        _require_safe(staging_id, "staging")
        return self.ensure_within(self.plan_artifacts_dir(plan_id) / staging_id)

    def task_output_file(self, plan_id: str, staging_id: str, task_id: str) -> Path:
        _require_safe(task_id, "task")
        return self.ensure_within(
            self.staging_artifacts_dir(plan_id, staging_id) / f"{task_id}{TASK_OUTPUT_SUFFIX}"
        )

    def resolve_relative(self, posix_path: str) -> Path:
        """Resolve a document-stored relative path against the project root.

        Absolute paths and paths escaping the managed directory are rejected.
        """
        if not posix_path or PurePosixPath(posix_path).is_absolute() or Path(posix_path).is_absolute():
            raise PathTraversalError(posix_path)
        return self.ensure_within(self.root.joinpath(*PurePosixPath(posix_path).parts))

    def relative(self, path: Path) -> str:
        """Forward-slash path of `path` relative to the project root."""
        return to_posix(path.resolve().relative_to(self.root).as_posix())
