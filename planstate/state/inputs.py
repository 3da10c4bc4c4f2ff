"""
Input schemas for caller-supplied data.

The tool layer hands the engine plain dicts. These pydantic models check
required fields, ranges and enum values before any entity is looked up or
touched; failures surface as planstate ValidationError.
"""

from typing import Any, Optional, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from planstate.errors import ValidationError
from planstate.state.models import (
    ExecutionType,
    ModelType,
    OutputStatus,
    SessionBudget,
    TaskPriority,
)

M = TypeVar("M", bound=BaseModel)


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProjectInput(_Input):
    """Input schema for project initialization."""
    name: str = Field(min_length=1)
    description: str = ""
    goals: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)


class ProjectUpdate(_Input):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    goals: Optional[list[str]] = None
    constraints: Optional[list[str]] = None


class CrossTaskIndexRef(_Input):
    """Creation-time pointer to a task of an earlier staging, by position."""
    staging_index: int = Field(ge=0)
    task_index: int = Field(ge=0)


class TaskInput(_Input):
    """Task definition nested inside a staging definition or passed to add_task."""
    title: str = Field(min_length=1)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    execution_mode: ExecutionType = ExecutionType.PARALLEL
    model: Optional[ModelType] = None
    depends_on_index: list[int] = Field(default_factory=list)
    cross_staging_task_refs: list[CrossTaskIndexRef] = Field(default_factory=list)
    memory_tags: list[str] = Field(default_factory=list)


class StagingInput(_Input):
    name: str = Field(min_length=1)
    description: str = ""
    execution_type: ExecutionType = ExecutionType.PARALLEL
    default_model: Optional[ModelType] = None
    session_budget: Optional[SessionBudget] = None
    recommended_sessions: Optional[float] = Field(default=None, ge=0.5, le=10)
    depends_on_staging_indices: list[int] = Field(default_factory=list)
    auto_include_artifacts: bool = True
    tasks: list[TaskInput] = Field(default_factory=list)


class PlanInput(_Input):
    title: str = Field(min_length=1)
    description: str = ""
    stagings: list[StagingInput] = Field(default_factory=list)


class PlanUpdate(_Input):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None


class StagingUpdate(_Input):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    execution_type: Optional[ExecutionType] = None
    default_model: Optional[ModelType] = None
    session_budget: Optional[SessionBudget] = None
    recommended_sessions: Optional[float] = Field(default=None, ge=0.5, le=10)
    auto_include_artifacts: Optional[bool] = None


class TaskUpdate(_Input):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    execution_mode: Optional[ExecutionType] = None
    model: Optional[ModelType] = None
    depends_on: Optional[list[str]] = None
    memory_tags: Optional[list[str]] = None
    notes: Optional[str] = None


class TaskOutputInput(_Input):
    status: OutputStatus
    summary: str
    artifacts: list[str] = Field(default_factory=list)
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class MemoryInput(_Input):
    category: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str
    tags: list[str] = Field(default_factory=list)
    priority: Optional[int] = Field(default=None, ge=0, le=100)
    enabled: bool = True


class MemoryUpdate(_Input):
    category: Optional[str] = Field(default=None, min_length=1)
    title: Optional[str] = Field(default=None, min_length=1)
    content: Optional[str] = None
    tags: Optional[list[str]] = None
    priority: Optional[int] = Field(default=None, ge=0, le=100)
    enabled: Optional[bool] = None


class DecisionInput(_Input):
    title: str = Field(min_length=1)
    decision: str = Field(min_length=1)
    rationale: Optional[str] = None
    related_plan_id: Optional[str] = None
    related_staging_id: Optional[str] = None


def parse_input(model_cls: type[M], data: Any) -> M:
    """Validate `data` against `model_cls`.

    Accepts an existing instance unchanged. Pydantic errors are converted to
    ValidationError pointing at the first offending field.
    """
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except pydantic.ValidationError as e:
        errors = e.errors()
        first = errors[0] if errors else {"loc": (), "msg": str(e)}
        field_path = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(
            first.get("msg", "invalid input"),
            field=field_path,
            details={
                "input": model_cls.__name__,
                "errors": [
                    {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
                    for err in errors
                ],
            },
        ) from None


def changed_fields(update: BaseModel) -> dict[str, Any]:
    """Fields the caller actually supplied on an update model. None means "leave as is"."""
    return {
        name: getattr(update, name)
        for name in update.model_fields_set
        if getattr(update, name) is not None
    }
