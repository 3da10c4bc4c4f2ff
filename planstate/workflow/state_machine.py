"""Destination-based transition API over the machines in fsm.py.

Callers name the status they want; this module finds the trigger for the
(current, target) pair, fires it, and raises a taxonomy error when the
table has no such edge.

Usage:
    from planstate.workflow.state_machine import transition_task

    transition_task(task, TaskStatus.IN_PROGRESS, reason="picked up")
"""

import logging
from typing import Callable

from transitions import MachineError

from planstate.errors import (
    InvalidTransitionError,
    PlanInvalidStateError,
    PlanStateError,
    StagingInvalidStateError,
)
from planstate.state.models import Plan, PlanStatus, Staging, StagingStatus, Task, TaskStatus
from planstate.workflow.fsm import (
    PLAN_ALLOWED,
    PLAN_TRIGGER_FOR,
    STAGING_ALLOWED,
    STAGING_TRIGGER_FOR,
    TASK_ALLOWED,
    TASK_TRIGGER_FOR,
    EntityFSM,
    PlanFSM,
    StagingFSM,
    TaskFSM,
    allowed_sources,
    allowed_targets,
)

logger = logging.getLogger(__name__)


def parse_task_status(value: str | None) -> TaskStatus | None:
    """Parse a status string into TaskStatus.

    Returns None if status is unknown.
    """
    if value is None:
        return None
    for status in TaskStatus:
        if status.value == value:
            return status
    return None


def _transition(
    fsm_cls: type[EntityFSM],
    trigger_for: dict[tuple[str, str], str],
    entity,
    to_state,
    reason: str,
    make_error: Callable[[str], PlanStateError],
) -> bool:
    """Fire the trigger that moves `entity` to `to_state`.

    Returns False for a self-transition (no-op), True when the status changed.
    """
    current = entity.status.value
    reason_str = f" ({reason})" if reason else ""

    # Self-transition is a no-op
    if current == to_state.value:
        logger.debug(f"[STATE] {fsm_cls.KIND} {entity.id}: already in {current}, no-op")
        return False

    trigger = trigger_for.get((current, to_state.value))
    if trigger is None:
        raise make_error(current)

    fsm = fsm_cls(entity)
    try:
        logger.info(f"[STATE] {fsm_cls.KIND} {entity.id}: {current} -> {to_state.value}{reason_str}")
        getattr(fsm, trigger)()
    except MachineError as e:
        raise make_error(current) from e
    return True


def transition_task(task: Task, to_state: TaskStatus, reason: str = "") -> bool:
    """Move a task along the transition table.

    Raises:
        InvalidTransitionError: edge not in the table (names source, target and allowed targets)
    """
    return _transition(
        TaskFSM, TASK_TRIGGER_FOR, task, to_state, reason,
        lambda current: InvalidTransitionError(
            task.id, current, to_state.value, allowed_targets(TASK_ALLOWED, current)
        ),
    )


def transition_staging(staging: Staging, to_state: StagingStatus, reason: str = "") -> bool:
    """Move a staging along its transition table.

    Raises:
        StagingInvalidStateError: current status does not allow the target
    """
    return _transition(
        StagingFSM, STAGING_TRIGGER_FOR, staging, to_state, reason,
        lambda current: StagingInvalidStateError(
            staging.id, current, allowed_sources(STAGING_ALLOWED, to_state.value),
            operation=f"move to {to_state.value}",
        ),
    )


def transition_plan(plan: Plan, to_state: PlanStatus, reason: str = "") -> bool:
    """Move a plan along its transition table.

    Raises:
        PlanInvalidStateError: current status does not allow the target
    """
    return _transition(
        PlanFSM, PLAN_TRIGGER_FOR, plan, to_state, reason,
        lambda current: PlanInvalidStateError(
            plan.id, current, allowed_sources(PLAN_ALLOWED, to_state.value),
            operation=f"move to {to_state.value}",
        ),
    )


def can_transition_task(task: Task, to_state: TaskStatus) -> bool:
    """Check if a task transition is valid. Self-transition is always valid (no-op)."""
    if task.status == to_state:
        return True
    return TASK_ALLOWED.get((task.status.value, to_state.value), False)


def can_transition_staging(staging: Staging, to_state: StagingStatus) -> bool:
    if staging.status == to_state:
        return True
    return STAGING_ALLOWED.get((staging.status.value, to_state.value), False)


def can_transition_plan(plan: Plan, to_state: PlanStatus) -> bool:
    if plan.status == to_state:
        return True
    return PLAN_ALLOWED.get((plan.status.value, to_state.value), False)
