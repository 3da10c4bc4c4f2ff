"""
Staging artifact files.

Task outputs live next to any other files a task produced, under the
staging's artifacts directory. Reads are tolerant: a missing or unreadable
file yields None/empty so callers can ask before anything was written.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from planstate.errors import PathTraversalError
from planstate.lib.constants import TASK_OUTPUT_SUFFIX
from planstate.lib.paths import ProjectPaths, to_posix
from planstate.state.models import TaskOutput
from planstate.state.persistence import atomic_write_text, dump_json

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Reads and writes files under `<state_dir>/plans/<planId>/artifacts/`."""

    def __init__(self, paths: ProjectPaths):
        self.paths = paths

    def ensure_staging_dir(self, plan_id: str, staging_id: str) -> Optional[Path]:
        """Create the staging artifacts directory. Best-effort: returns None on OSError."""
        target = self.paths.staging_artifacts_dir(plan_id, staging_id)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"[ARTIFACTS] Could not create {target}: {e}")
            return None
        return target

    def write_task_output(self, plan_id: str, staging_id: str, task_id: str, output: TaskOutput) -> str:
        """Atomically write `<taskId>-output.json`. Returns its project-relative path."""
        target = self.paths.task_output_file(plan_id, staging_id, task_id)
        atomic_write_text(target, dump_json(output.to_dict()))
        logger.info(f"[ARTIFACTS] Saved output for {task_id} to {target}")
        return self.paths.relative(target)

    def _read_output_file(self, path: Path) -> Optional[TaskOutput]:
        try:
            return TaskOutput.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"[ARTIFACTS] Skipping unreadable task output {path}: {e}")
            return None

    def read_task_output(self, plan_id: str, staging_id: str, task_id: str) -> Optional[TaskOutput]:
        target = self.paths.task_output_file(plan_id, staging_id, task_id)
        if not target.is_file():
            return None
        return self._read_output_file(target)

    def staging_outputs(self, plan_id: str, staging_id: str) -> dict[str, TaskOutput]:
        """All task outputs found in a staging's directory, keyed by task id."""
        directory = self.paths.staging_artifacts_dir(plan_id, staging_id)
        if not directory.is_dir():
            return {}
        outputs: dict[str, TaskOutput] = {}
        for path in sorted(directory.glob(f"*{TASK_OUTPUT_SUFFIX}")):
            output = self._read_output_file(path)
            if output is not None:
                outputs[path.name[: -len(TASK_OUTPUT_SUFFIX)]] = output
        return outputs

    def list_files(self, plan_id: str, staging_id: str) -> list[str]:
        """Files in a staging's directory, relative to it, forward-slash separated."""
        directory = self.paths.staging_artifacts_dir(plan_id, staging_id)
        if not directory.is_dir():
            return []
        return sorted(to_posix(p.relative_to(directory).as_posix()) for p in directory.rglob("*") if p.is_file())

    def _artifact_path(self, plan_id: str, staging_id: str, filename: str) -> Path:
        directory = self.paths.staging_artifacts_dir(plan_id, staging_id)
        target = (directory / filename).resolve()
        if not filename or not target.is_relative_to(directory) or target == directory:
            raise PathTraversalError(filename)
        return target

    def save_file(self, plan_id: str, staging_id: str, filename: str, content: str) -> str:
        """Write an arbitrary text artifact inside the staging directory."""
        target = self._artifact_path(plan_id, staging_id, filename)
        atomic_write_text(target, content)
        return self.paths.relative(target)

    def read_file(self, plan_id: str, staging_id: str, filename: str) -> Optional[str]:
        target = self._artifact_path(plan_id, staging_id, filename)
        if not target.is_file():
            return None
        try:
            return target.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"[ARTIFACTS] Could not read {target}: {e}")
            return None
