"""
Archive/restore mover for plan artifact directories.

Moving artifacts is best-effort: the state document is the source of truth,
so a failed move is reported as a status value and logged instead of
aborting the plan's status change.
"""

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class MoveStatus(str, Enum):
    MOVED = "moved"
    NO_ARTIFACTS = "no_artifacts"  # Plan never produced an artifacts directory
    FAILED = "failed"


@dataclass
class MoveResult:
    status: MoveStatus
    source: Path
    destination: Path
    error: Optional[str] = None


@dataclass
class ArchiveResult:
    """Outcome of archive_plan / unarchive_plan."""
    plan_id: str
    path: str                    # forward-slash path relative to the project root
    status: MoveStatus
    archived_at: Optional[str] = None


def move_tree(source: Path, destination: Path) -> MoveResult:
    """Copy `source` into `destination`, then delete `source`.

    Existing files at the destination are overwritten. A missing source is
    not an error. OSError during copy or delete yields a FAILED result.
    """
    if not source.exists():
        logger.info(f"[ARCHIVE] No artifacts at {source}, nothing to move")
        return MoveResult(MoveStatus.NO_ARTIFACTS, source, destination)

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, destination, dirs_exist_ok=True)
        shutil.rmtree(source)
    except OSError as e:
        logger.warning(f"[ARCHIVE] Failed to move {source} -> {destination}: {e}")
        return MoveResult(MoveStatus.FAILED, source, destination, error=str(e))

    logger.info(f"[ARCHIVE] Moved {source} -> {destination}")
    return MoveResult(MoveStatus.MOVED, source, destination)
