"""
Identifier generation for plan state entities.

All random components come from the `secrets` module so ids stay
collision-resistant under rapid successive creation. Ids are assigned once
and never reused or rewritten.
"""

import secrets
import time
from typing import Callable, Container

from planstate.lib.constants import (
    ID_ALPHABET,
    MEMORY_ID_PATTERN,
    PLAN_ID_PATTERN,
    SAFE_ID_PATTERN,
    STAGING_ID_PATTERN,
    TASK_ID_PATTERN,
)

# Upper bound on regeneration attempts before giving up
MAX_ID_ATTEMPTS = 32


def generate_secure_id(length: int) -> str:
    """Return `length` random lowercase alphanumeric characters."""
    if length < 1:
        raise ValueError(f"id length must be positive, got {length}")
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def new_plan_id() -> str:
    return f"plan-{generate_secure_id(8)}"


def new_staging_id() -> str:
    return f"staging-{generate_secure_id(4)}"


def new_task_id() -> str:
    return f"task-{generate_secure_id(8)}"


def new_memory_id() -> str:
    return f"mem-{generate_secure_id(8)}"


def new_history_id() -> str:
    return f"hist-{int(time.time() * 1000)}-{generate_secure_id(4)}"


def new_decision_id() -> str:
    return f"dec-{int(time.time() * 1000)}-{generate_secure_id(4)}"


def unique_id(factory: Callable[[], str], taken: Container[str]) -> str:
    """Generate an id with `factory` that is not already in `taken`.

    Staging ids only carry four random characters, so a collision with an
    existing document entry is unlikely but possible.
    """
    for _ in range(MAX_ID_ATTEMPTS):
        candidate = factory()
        if candidate not in taken:
            return candidate
    raise RuntimeError(f"Could not generate a unique id after {MAX_ID_ATTEMPTS} attempts")


def is_plan_id(value: str) -> bool:
    return bool(PLAN_ID_PATTERN.fullmatch(value))


def is_staging_id(value: str) -> bool:
    return bool(STAGING_ID_PATTERN.fullmatch(value))


def is_task_id(value: str) -> bool:
    return bool(TASK_ID_PATTERN.fullmatch(value))


def is_memory_id(value: str) -> bool:
    return bool(MEMORY_ID_PATTERN.fullmatch(value))


def is_safe_id(value: str | None) -> bool:
    """Check an id against the filesystem allow-list."""
    if not value or not isinstance(value, str):
        return False
    return bool(SAFE_ID_PATTERN.fullmatch(value))
