"""
Durable storage for the state document.

The whole document is one JSON file. Writes go to a temporary sibling file
that is fsynced and then renamed over the target, so the file on disk is
always either the previous committed document or the new one.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from planstate.errors import StateFileError
from planstate.lib.validate import validate, validate_before_write

logger = logging.getLogger(__name__)

SCHEMA_NAME = "state"


def atomic_write_text(path: Path, text: str) -> None:
    """Write `text` to `path` via temp file + rename.

    The temp file is removed if anything fails before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def dump_json(data) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def load_document(path: Path) -> dict | None:
    """Read and validate the state document.

    Returns None when the file does not exist (engine uninitialized).

    Raises:
        StateFileError: unreadable file or invalid JSON
        ValidationError: document does not match the schema
    """
    if not path.exists():
        logger.debug(f"[STATE] No state file at {path}")
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise StateFileError(str(path), f"invalid JSON: {e}") from None
    except OSError as e:
        raise StateFileError(str(path), str(e)) from e

    if not isinstance(data, dict):
        raise StateFileError(str(path), "top-level value is not an object")

    validate(data, SCHEMA_NAME)
    return data


def save_document(path: Path, data: dict) -> None:
    """Validate then atomically write the state document."""
    validate_before_write(data, SCHEMA_NAME, path)
    atomic_write_text(path, dump_json(data))
    logger.debug(f"[STATE] Wrote {path}")
