"""
Error taxonomy for the plan state engine.

Every failure the engine can report is a distinct exception class carrying a
machine-readable `code` and structured `details`, so the tool layer can build
an actionable message without re-querying state.
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class PlanStateError(Exception):
    """Base class for all engine errors."""

    code = "PLAN_STATE_ERROR"

    def __init__(self, message: str, details: dict | None = None, suggestion: str | None = None):
        self.message = message
        self.details = details or {}
        self.suggestion = suggestion
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "suggestion": self.suggestion,
        }


# ---------------------------------------------------------------------------
# State document
# ---------------------------------------------------------------------------

class NotInitializedError(PlanStateError):
    """No state document is loaded."""

    code = "NOT_INITIALIZED"

    def __init__(self, project_root: str | None = None):
        super().__init__(
            "Project not initialized",
            {"projectRoot": project_root} if project_root else {},
            suggestion="Initialize the project before creating plans",
        )


class StateFileError(PlanStateError):
    """The state file exists but cannot be read or parsed."""

    code = "STATE_FILE_ERROR"

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Cannot read state file {path}: {reason}", {"path": path, "reason": reason})


class ValidationError(PlanStateError):
    """Malformed input or schema violation."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, schema_name: str | None = None,
                 details: dict | None = None):
        self.field = field
        self.schema_name = schema_name
        merged = dict(details or {})
        if field:
            merged["field"] = field
        if schema_name:
            merged["schema"] = schema_name
        prefix = f"[{schema_name}] " if schema_name else ""
        suffix = f" at {field}" if field else ""
        super().__init__(f"{prefix}{message}{suffix}", merged)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class NotFoundError(PlanStateError):
    """Referenced id is absent from the current store."""

    code = "NOT_FOUND"
    entity = "entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(
            f"{self.entity.capitalize()} not found: {entity_id}",
            {"entity": self.entity, "id": entity_id},
        )


class PlanNotFoundError(NotFoundError):
    entity = "plan"


class StagingNotFoundError(NotFoundError):
    entity = "staging"


class TaskNotFoundError(NotFoundError):
    entity = "task"


class MemoryNotFoundError(NotFoundError):
    entity = "memory"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class InvalidStateError(PlanStateError):
    """Entity status does not permit the requested operation."""

    code = "INVALID_STATE"
    entity = "entity"

    def __init__(self, entity_id: str, current_state: str, expected_states: list[str],
                 operation: str | None = None):
        self.entity_id = entity_id
        self.current_state = current_state
        self.expected_states = list(expected_states)
        op = f" cannot {operation}:" if operation else ""
        super().__init__(
            f"{self.entity.capitalize()} {entity_id}{op} is in '{current_state}' state, "
            f"expected one of: {', '.join(self.expected_states)}",
            {
                "entity": self.entity,
                "id": entity_id,
                "currentState": current_state,
                "expectedStates": self.expected_states,
                "operation": operation,
            },
        )


class ProjectInvalidStateError(InvalidStateError):
    entity = "project"


class PlanInvalidStateError(InvalidStateError):
    entity = "plan"


class StagingInvalidStateError(InvalidStateError):
    entity = "staging"


class TaskInvalidStateError(InvalidStateError):
    entity = "task"


class InvalidTransitionError(PlanStateError):
    """Task status change not permitted by the transition table."""

    code = "INVALID_TRANSITION"

    def __init__(self, task_id: str, from_state: str, to_state: str, allowed: list[str]):
        self.task_id = task_id
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = list(allowed)
        allowed_str = ", ".join(self.allowed) if self.allowed else "none (terminal state)"
        super().__init__(
            f"Invalid transition for task {task_id}: {from_state} -> {to_state}. Allowed: {allowed_str}",
            {
                "taskId": task_id,
                "fromState": from_state,
                "toState": to_state,
                "allowedTransitions": self.allowed,
            },
        )


class StagingOrderError(PlanStateError):
    """A staging was started before its predecessor completed."""

    code = "STAGING_ORDER"

    def __init__(self, staging_id: str, previous_staging_id: str, previous_status: str):
        self.staging_id = staging_id
        self.previous_staging_id = previous_staging_id
        super().__init__(
            f"Cannot start staging {staging_id}: previous staging {previous_staging_id} "
            f"is '{previous_status}', not completed",
            {
                "stagingId": staging_id,
                "previousStagingId": previous_staging_id,
                "previousStatus": previous_status,
            },
            suggestion="Complete the previous staging first or cancel the plan",
        )


class StagingPlanMismatchError(PlanStateError):
    """A staging was addressed under a plan it does not belong to."""

    code = "MISMATCH"

    def __init__(self, staging_id: str, expected_plan_id: str, actual_plan_id: str):
        self.staging_id = staging_id
        self.expected_plan_id = expected_plan_id
        self.actual_plan_id = actual_plan_id
        super().__init__(
            f"Staging {staging_id} does not belong to plan {expected_plan_id}",
            {
                "stagingId": staging_id,
                "expectedPlanId": expected_plan_id,
                "actualPlanId": actual_plan_id,
            },
        )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

class CircularDependencyError(PlanStateError):
    """Proposed depends_on edges would form a cycle."""

    code = "CIRCULAR_DEPENDENCY"

    def __init__(self, task_id: str, chain: list[str]):
        self.task_id = task_id
        self.chain = list(chain)
        super().__init__(
            f"Circular dependency detected for task {task_id}: {' -> '.join(self.chain)}",
            {"taskId": task_id, "dependencyChain": self.chain},
        )


class DependencyScopeError(PlanStateError):
    """A dependency points outside the task's own staging."""

    code = "DEPENDENCY_SCOPE"

    def __init__(self, task_id: str, dependency_id: str, staging_id: str, dependency_staging_id: str):
        self.task_id = task_id
        self.dependency_id = dependency_id
        super().__init__(
            f"Task {task_id} cannot depend on {dependency_id}: it belongs to staging "
            f"{dependency_staging_id}, not {staging_id}",
            {
                "taskId": task_id,
                "dependencyId": dependency_id,
                "stagingId": staging_id,
                "dependencyStagingId": dependency_staging_id,
            },
            suggestion="Use cross-staging references for artifacts of other stagings",
        )


# ---------------------------------------------------------------------------
# Filesystem safety
# ---------------------------------------------------------------------------

class PathTraversalError(PlanStateError):
    """A resolved path would escape the managed directory."""

    code = "PATH_TRAVERSAL"

    def __init__(self, path: str):
        self.path = path
        super().__init__("Invalid path: potential path traversal detected", {"path": path})


class InvalidIdError(PlanStateError):
    """An id failed the safe-id pattern check."""

    code = "INVALID_ID"

    def __init__(self, entity_id: str, id_type: str):
        self.entity_id = entity_id
        self.id_type = id_type
        super().__init__(f"Invalid {id_type} ID format: {entity_id!r}", {"id": entity_id, "idType": id_type})


# ---------------------------------------------------------------------------
# Structured results for the tool layer
# ---------------------------------------------------------------------------

def error_result(error: BaseException) -> dict:
    """Convert an exception into the structured failure shape."""
    if isinstance(error, PlanStateError):
        return {"success": False, "error": error.to_dict()}
    return {
        "success": False,
        "error": {
            "error": type(error).__name__,
            "code": "UNEXPECTED_ERROR",
            "message": f"Unexpected error: {error}",
            "details": {"originalError": repr(error)},
            "suggestion": None,
        },
    }


def run_operation(operation: Callable[[], Any], context: str) -> dict:
    """Run `operation` and wrap its outcome for the tool layer.

    Engine errors are expected outcomes and logged at WARNING; anything else
    is logged with its traceback.
    """
    try:
        data = operation()
    except PlanStateError as e:
        logger.warning(f"[{context}] {e.code}: {e.message}")
        return error_result(e)
    except Exception as e:
        logger.exception(f"[{context}] Unexpected error: {e}")
        return error_result(e)
    return {"success": True, "data": data}
