"""
Lifecycle transforms over an in-memory StateDocument.

Everything here mutates the document in place and does no I/O. Each
function checks all of its preconditions before touching any entity, so a
raised error leaves the document as it was. The history entries a transform
produces are returned to the caller, which appends them and persists.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from planstate.errors import (
    PlanInvalidStateError,
    StagingInvalidStateError,
    StagingOrderError,
    StagingPlanMismatchError,
)
from planstate.lib.ids import new_history_id
from planstate.state.models import (
    ExecutionType,
    HistoryEntry,
    HistoryEntryType,
    Plan,
    PlanStatus,
    Staging,
    StagingStatus,
    StateDocument,
    Task,
    TaskStatus,
    now_iso,
)
from planstate.workflow.state_machine import (
    can_transition_plan,
    can_transition_staging,
    transition_plan,
    transition_staging,
    transition_task,
)

logger = logging.getLogger(__name__)

_TASK_HISTORY = {
    TaskStatus.IN_PROGRESS: HistoryEntryType.TASK_STARTED,
    TaskStatus.DONE: HistoryEntryType.TASK_COMPLETED,
    TaskStatus.BLOCKED: HistoryEntryType.TASK_BLOCKED,
}


def history_entry(entry_type: HistoryEntryType, details: dict[str, Any]) -> HistoryEntry:
    return HistoryEntry(id=new_history_id(), type=entry_type, details=details)


@dataclass
class StagingStart:
    staging: Staging
    plan: Plan
    history: list[HistoryEntry] = field(default_factory=list)


@dataclass
class StagingCompletion:
    staging: Staging
    plan_completed: bool = False
    next_staging_id: Optional[str] = None
    history: list[HistoryEntry] = field(default_factory=list)


@dataclass
class TaskStatusChange:
    task: Task
    previous_status: TaskStatus
    changed: bool = True
    staging_completed: bool = False
    plan_completed: bool = False
    next_staging_id: Optional[str] = None
    history: list[HistoryEntry] = field(default_factory=list)


@dataclass
class PlanCancellation:
    plan: Plan
    affected_stagings: list[str] = field(default_factory=list)
    affected_tasks: list[str] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)


def _clear_pointers_for(document: StateDocument, plan: Plan) -> None:
    plan.current_staging_id = None
    if document.context.current_plan_id == plan.id:
        document.context.clear_pointers()


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------

def start_staging(document: StateDocument, plan_id: str, staging_id: str) -> StagingStart:
    """Move a staging to in_progress and activate its plan.

    Raises:
        StagingPlanMismatchError: staging belongs to another plan
        PlanInvalidStateError: plan is not draft/active
        StagingInvalidStateError: staging is not pending/failed
        StagingOrderError: previous staging has not completed
    """
    plan = document.require_plan(plan_id)
    staging = document.require_staging(staging_id)

    if staging.plan_id != plan.id:
        raise StagingPlanMismatchError(staging.id, plan.id, staging.plan_id)
    if plan.status not in (PlanStatus.DRAFT, PlanStatus.ACTIVE):
        raise PlanInvalidStateError(
            plan.id, plan.status.value, [PlanStatus.DRAFT.value, PlanStatus.ACTIVE.value], "start staging"
        )
    if staging.status not in (StagingStatus.PENDING, StagingStatus.FAILED):
        raise StagingInvalidStateError(
            staging.id, staging.status.value,
            [StagingStatus.PENDING.value, StagingStatus.FAILED.value], "start",
        )
    if staging.order > 0:
        previous = next((s for s in document.plan_stagings(plan.id) if s.order == staging.order - 1), None)
        if previous is not None and previous.status != StagingStatus.COMPLETED:
            raise StagingOrderError(staging.id, previous.id, previous.status.value)

    now = now_iso()
    transition_staging(staging, StagingStatus.IN_PROGRESS, reason="start")
    staging.started_at = now
    transition_plan(plan, PlanStatus.ACTIVE, reason=f"staging {staging.id} started")
    plan.current_staging_id = staging.id
    plan.updated_at = now
    document.context.current_plan_id = plan.id
    document.context.current_staging_id = staging.id

    return StagingStart(
        staging=staging,
        plan=plan,
        history=[history_entry(HistoryEntryType.STAGING_STARTED, {
            "planId": plan.id,
            "stagingId": staging.id,
            "stagingName": staging.name,
        })],
    )


def complete_staging(document: StateDocument, staging_id: str) -> StagingCompletion:
    """Complete a staging and cascade to its plan.

    When every staging of the plan is completed the plan completes too and
    the current plan/staging pointers are cleared.
    """
    staging = document.require_staging(staging_id)
    if staging.status not in (StagingStatus.PENDING, StagingStatus.IN_PROGRESS):
        raise StagingInvalidStateError(
            staging.id, staging.status.value,
            [StagingStatus.PENDING.value, StagingStatus.IN_PROGRESS.value], "complete",
        )
    plan = document.require_plan(staging.plan_id)

    now = now_iso()
    transition_staging(staging, StagingStatus.COMPLETED, reason="complete")
    staging.completed_at = now
    outcome = StagingCompletion(staging=staging)
    outcome.history.append(history_entry(HistoryEntryType.STAGING_COMPLETED, {
        "planId": plan.id,
        "stagingId": staging.id,
        "stagingName": staging.name,
    }))

    stagings = document.plan_stagings(plan.id)
    following = next((s for s in stagings if s.order == staging.order + 1), None)
    outcome.next_staging_id = following.id if following else None

    entry = recheck_plan(document, plan.id)
    if entry is not None:
        outcome.plan_completed = True
        outcome.history.append(entry)
    plan.updated_at = now
    return outcome


def recheck_staging(document: StateDocument, staging_id: str) -> Optional[StagingCompletion]:
    """Complete a staging whose tasks are all done. Returns None when nothing changed.

    A staging with no tasks is left alone.
    """
    staging = document.require_staging(staging_id)
    tasks = document.staging_tasks(staging.id)
    if not tasks or not all(t.status == TaskStatus.DONE for t in tasks):
        return None
    if staging.status == StagingStatus.COMPLETED or not can_transition_staging(staging, StagingStatus.COMPLETED):
        logger.debug(
            f"[STATE] staging {staging.id}: all tasks done but status is {staging.status.value}, "
            "not auto-completing"
        )
        return None
    return complete_staging(document, staging.id)


def recheck_plan(document: StateDocument, plan_id: str) -> Optional[HistoryEntry]:
    """Complete a draft/active plan whose stagings are all completed.

    Returns the plan_completed history entry, or None. A plan with no
    stagings is left alone.
    """
    plan = document.require_plan(plan_id)
    if plan.status not in (PlanStatus.DRAFT, PlanStatus.ACTIVE):
        return None
    stagings = document.plan_stagings(plan.id)
    if not stagings or not all(s.status == StagingStatus.COMPLETED for s in stagings):
        return None
    now = now_iso()
    transition_plan(plan, PlanStatus.COMPLETED, reason="all stagings completed")
    plan.completed_at = now
    plan.updated_at = now
    _clear_pointers_for(document, plan)
    return history_entry(HistoryEntryType.PLAN_COMPLETED, {"planId": plan.id})


def fail_staging(document: StateDocument, staging_id: str, reason: str = "") -> list[HistoryEntry]:
    staging = document.require_staging(staging_id)
    if staging.status != StagingStatus.IN_PROGRESS:
        raise StagingInvalidStateError(
            staging.id, staging.status.value, [StagingStatus.IN_PROGRESS.value], "fail"
        )
    transition_staging(staging, StagingStatus.FAILED, reason=reason)
    details: dict[str, Any] = {"planId": staging.plan_id, "stagingId": staging.id}
    if reason:
        details["reason"] = reason
    return [history_entry(HistoryEntryType.STAGING_FAILED, details)]


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

def apply_task_status(
    document: StateDocument,
    task_id: str,
    status: TaskStatus,
    notes: Optional[str] = None,
) -> TaskStatusChange:
    """Move a task to `status` and auto-complete its staging when all tasks are done.

    Raises:
        PlanInvalidStateError: owning plan is cancelled or archived
        InvalidTransitionError: status change not in the task table
    """
    task = document.require_task(task_id)
    plan = document.require_plan(task.plan_id)
    if plan.status in (PlanStatus.CANCELLED, PlanStatus.ARCHIVED):
        raise PlanInvalidStateError(
            plan.id, plan.status.value,
            [PlanStatus.DRAFT.value, PlanStatus.ACTIVE.value, PlanStatus.COMPLETED.value], "update task status",
        )
    previous = task.status
    outcome = TaskStatusChange(task=task, previous_status=previous)

    if not transition_task(task, status, reason=notes or ""):
        outcome.changed = False
        return outcome

    now = now_iso()
    task.updated_at = now
    if notes:
        task.notes = notes
    if status == TaskStatus.IN_PROGRESS:
        task.started_at = now
    elif status == TaskStatus.DONE:
        task.completed_at = now

    details: dict[str, Any] = {
        "taskId": task.id,
        "stagingId": task.staging_id,
        "from": previous.value,
        "to": status.value,
    }
    if notes:
        details["notes"] = notes
    outcome.history.append(history_entry(_TASK_HISTORY.get(status, HistoryEntryType.TASK_UPDATED), details))

    if status == TaskStatus.DONE:
        completion = recheck_staging(document, task.staging_id)
        if completion is not None:
            outcome.staging_completed = True
            outcome.plan_completed = completion.plan_completed
            outcome.next_staging_id = completion.next_staging_id
            outcome.history.extend(completion.history)
    return outcome


def executable_tasks(document: StateDocument, staging_id: str) -> list[Task]:
    """Tasks that can be picked up right now. Derived view, never mutates.

    Empty unless the staging is in_progress. Parallel stagings expose every
    pending task; sequential stagings only pending tasks whose dependencies
    are all done.
    """
    staging = document.require_staging(staging_id)
    if staging.status != StagingStatus.IN_PROGRESS:
        return []

    pending = [t for t in document.staging_tasks(staging.id) if t.status == TaskStatus.PENDING]
    if staging.execution_type == ExecutionType.PARALLEL:
        return pending

    def deps_done(task: Task) -> bool:
        for dep_id in task.depends_on:
            dep = document.tasks.get(dep_id)
            if dep is None or dep.status != TaskStatus.DONE:
                return False
        return True

    return [t for t in pending if deps_done(t)]


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

def cancel_plan(document: StateDocument, plan_id: str, reason: str = "") -> PlanCancellation:
    """Cancel a plan with its unfinished stagings and tasks."""
    plan = document.require_plan(plan_id)
    if not can_transition_plan(plan, PlanStatus.CANCELLED) or plan.status == PlanStatus.CANCELLED:
        raise PlanInvalidStateError(
            plan.id, plan.status.value,
            [PlanStatus.DRAFT.value, PlanStatus.ACTIVE.value, PlanStatus.COMPLETED.value], "cancel",
        )

    outcome = PlanCancellation(plan=plan)
    now = now_iso()
    for staging in document.plan_stagings(plan.id):
        if staging.status in (StagingStatus.PENDING, StagingStatus.IN_PROGRESS):
            transition_staging(staging, StagingStatus.CANCELLED, reason=reason)
            outcome.affected_stagings.append(staging.id)
        for task in document.staging_tasks(staging.id):
            if task.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED):
                transition_task(task, TaskStatus.CANCELLED, reason=reason)
                task.updated_at = now
                outcome.affected_tasks.append(task.id)

    transition_plan(plan, PlanStatus.CANCELLED, reason=reason)
    plan.updated_at = now
    _clear_pointers_for(document, plan)

    details: dict[str, Any] = {
        "planId": plan.id,
        "affectedStagings": len(outcome.affected_stagings),
        "affectedTasks": len(outcome.affected_tasks),
    }
    if reason:
        details["reason"] = reason
    outcome.history.append(history_entry(HistoryEntryType.PLAN_CANCELLED, details))
    return outcome


def check_archivable(plan: Plan) -> None:
    if plan.status not in (PlanStatus.COMPLETED, PlanStatus.CANCELLED):
        raise PlanInvalidStateError(
            plan.id, plan.status.value, [PlanStatus.COMPLETED.value, PlanStatus.CANCELLED.value], "archive"
        )


def check_unarchivable(plan: Plan) -> None:
    if plan.status != PlanStatus.ARCHIVED:
        raise PlanInvalidStateError(plan.id, plan.status.value, [PlanStatus.ARCHIVED.value], "unarchive")


def mark_archived(document: StateDocument, plan: Plan) -> str:
    """Flip a plan to archived. Returns the archive timestamp."""
    check_archivable(plan)
    now = now_iso()
    transition_plan(plan, PlanStatus.ARCHIVED, reason="archive")
    plan.archived_at = now
    plan.updated_at = now
    _clear_pointers_for(document, plan)
    return now


def mark_unarchived(plan: Plan) -> None:
    """Restore an archived plan to completed."""
    check_unarchivable(plan)
    transition_plan(plan, PlanStatus.COMPLETED, reason="unarchive")
    plan.archived_at = None
    plan.updated_at = now_iso()
