"""
Data models for the plan state document.

Entities are plain dataclasses keyed by id inside one StateDocument. Keys in
`to_dict()` output follow the persisted JSON format (camelCase timestamps and
parent ids, snake_case planning fields); optional fields that are unset are
omitted from the output.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from planstate.errors import (
    MemoryNotFoundError,
    PlanNotFoundError,
    StagingNotFoundError,
    TaskNotFoundError,
)
from planstate.lib.constants import STATE_VERSION


def now_iso() -> str:
    """UTC timestamp with millisecond precision, e.g. 2025-01-01T12:00:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _compact(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class StagingStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlanStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    CANCELLED = "cancelled"


class ExecutionType(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class ModelType(str, Enum):
    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"


class SessionBudget(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    EXTENSIVE = "extensive"


class OutputStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


class HistoryEntryType(str, Enum):
    PROJECT_INITIALIZED = "project_initialized"
    PROJECT_UPDATED = "project_updated"
    PLAN_CREATED = "plan_created"
    PLAN_UPDATED = "plan_updated"
    PLAN_COMPLETED = "plan_completed"
    PLAN_ARCHIVED = "plan_archived"
    PLAN_UNARCHIVED = "plan_unarchived"
    PLAN_CANCELLED = "plan_cancelled"
    STAGING_STARTED = "staging_started"
    STAGING_COMPLETED = "staging_completed"
    STAGING_FAILED = "staging_failed"
    STAGING_UPDATED = "staging_updated"
    STAGING_ADDED = "staging_added"
    STAGING_REMOVED = "staging_removed"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_BLOCKED = "task_blocked"
    TASK_ADDED = "task_added"
    TASK_REMOVED = "task_removed"
    TASK_UPDATED = "task_updated"
    DECISION_ADDED = "decision_added"
    MEMORY_ADDED = "memory_added"
    MEMORY_UPDATED = "memory_updated"
    MEMORY_REMOVED = "memory_removed"
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"


def _opt_enum(enum_cls, value):
    return enum_cls(value) if value is not None else None


def _opt_value(member: Optional[Enum]):
    return member.value if member is not None else None


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Project:
    """Singleton project metadata."""
    name: str
    description: str = ""
    goals: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "goals": list(self.goals),
            "constraints": list(self.constraints),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            goals=list(data.get("goals", [])),
            constraints=list(data.get("constraints", [])),
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
        )


@dataclass
class CrossStagingRef:
    """Read-only pointer from a staging to an earlier staging's artifacts."""
    staging_id: str
    task_ids: Optional[list[str]] = None        # None means all tasks

    def to_dict(self) -> dict:
        return _compact({"stagingId": self.staging_id, "taskIds": self.task_ids})

    @classmethod
    def from_dict(cls, data: dict) -> "CrossStagingRef":
        task_ids = data.get("taskIds")
        return cls(staging_id=data["stagingId"], task_ids=list(task_ids) if task_ids is not None else None)


@dataclass
class CrossTaskRef:
    """Read-only pointer from a task to a task output in another staging."""
    task_id: str
    staging_id: str

    def to_dict(self) -> dict:
        return {"taskId": self.task_id, "stagingId": self.staging_id}

    @classmethod
    def from_dict(cls, data: dict) -> "CrossTaskRef":
        return cls(task_id=data["taskId"], staging_id=data["stagingId"])


@dataclass
class TaskOutput:
    """Result recorded for a finished (or partially finished) task."""
    status: OutputStatus
    summary: str
    artifacts: list[str] = field(default_factory=list)   # forward-slash paths
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    completed_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return _compact({
            "status": self.status.value,
            "summary": self.summary,
            "artifacts": list(self.artifacts),
            "data": self.data,
            "error": self.error,
            "completedAt": self.completed_at,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "TaskOutput":
        return cls(
            status=OutputStatus(data["status"]),
            summary=data["summary"],
            artifacts=list(data.get("artifacts", [])),
            data=data.get("data"),
            error=data.get("error"),
            completed_at=data["completedAt"],
        )


@dataclass
class Task:
    """Smallest unit of work. Parent ids never change after creation."""
    id: str                                      # task-xxxxxxxx
    plan_id: str
    staging_id: str
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    execution_mode: ExecutionType = ExecutionType.PARALLEL
    model: Optional[ModelType] = None
    depends_on: list[str] = field(default_factory=list)
    cross_staging_refs: list[CrossTaskRef] = field(default_factory=list)
    memory_tags: list[str] = field(default_factory=list)
    order: int = 0
    notes: Optional[str] = None
    output: Optional[TaskOutput] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return _compact({
            "id": self.id,
            "planId": self.plan_id,
            "stagingId": self.staging_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status.value,
            "execution_mode": self.execution_mode.value,
            "model": _opt_value(self.model),
            "depends_on": list(self.depends_on),
            "cross_staging_refs": [r.to_dict() for r in self.cross_staging_refs],
            "memory_tags": list(self.memory_tags),
            "order": self.order,
            "notes": self.notes,
            "output": self.output.to_dict() if self.output else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        output = data.get("output")
        return cls(
            id=data["id"],
            plan_id=data["planId"],
            staging_id=data["stagingId"],
            title=data["title"],
            description=data.get("description", ""),
            priority=TaskPriority(data.get("priority", "medium")),
            status=TaskStatus(data.get("status", "pending")),
            execution_mode=ExecutionType(data.get("execution_mode", "parallel")),
            model=_opt_enum(ModelType, data.get("model")),
            depends_on=list(data.get("depends_on", [])),
            cross_staging_refs=[CrossTaskRef.from_dict(r) for r in data.get("cross_staging_refs", [])],
            memory_tags=list(data.get("memory_tags", [])),
            order=data.get("order", 0),
            notes=data.get("notes"),
            output=TaskOutput.from_dict(output) if output else None,
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


@dataclass
class Staging:
    """Ordered phase of a plan. Owned by the plan's `stagings` list."""
    id: str                                      # staging-xxxx
    plan_id: str
    name: str
    order: int
    description: str = ""
    execution_type: ExecutionType = ExecutionType.PARALLEL
    status: StagingStatus = StagingStatus.PENDING
    tasks: list[str] = field(default_factory=list)
    depends_on_stagings: list[CrossStagingRef] = field(default_factory=list)
    default_model: Optional[ModelType] = None
    session_budget: Optional[SessionBudget] = None
    recommended_sessions: Optional[float] = None
    auto_include_artifacts: bool = True
    artifacts_path: str = ""
    created_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return _compact({
            "id": self.id,
            "planId": self.plan_id,
            "name": self.name,
            "description": self.description,
            "order": self.order,
            "execution_type": self.execution_type.value,
            "status": self.status.value,
            "tasks": list(self.tasks),
            "depends_on_stagings": [r.to_dict() for r in self.depends_on_stagings],
            "default_model": _opt_value(self.default_model),
            "session_budget": _opt_value(self.session_budget),
            "recommended_sessions": self.recommended_sessions,
            "auto_include_artifacts": self.auto_include_artifacts,
            "artifacts_path": self.artifacts_path,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "Staging":
        return cls(
            id=data["id"],
            plan_id=data["planId"],
            name=data["name"],
            description=data.get("description", ""),
            order=data["order"],
            execution_type=ExecutionType(data.get("execution_type", "parallel")),
            status=StagingStatus(data.get("status", "pending")),
            tasks=list(data.get("tasks", [])),
            depends_on_stagings=[CrossStagingRef.from_dict(r) for r in data.get("depends_on_stagings", [])],
            default_model=_opt_enum(ModelType, data.get("default_model")),
            session_budget=_opt_enum(SessionBudget, data.get("session_budget")),
            recommended_sessions=data.get("recommended_sessions"),
            auto_include_artifacts=data.get("auto_include_artifacts", True),
            artifacts_path=data.get("artifacts_path", ""),
            created_at=data["createdAt"],
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


@dataclass
class Plan:
    """Top-level unit of work composed of ordered stagings."""
    id: str                                      # plan-xxxxxxxx
    title: str
    description: str = ""
    status: PlanStatus = PlanStatus.DRAFT
    stagings: list[str] = field(default_factory=list)
    current_staging_id: Optional[str] = None
    artifacts_root: str = ""
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None
    archived_at: Optional[str] = None

    def to_dict(self) -> dict:
        return _compact({
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "stagings": list(self.stagings),
            "currentStagingId": self.current_staging_id,
            "artifacts_root": self.artifacts_root,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "completedAt": self.completed_at,
            "archivedAt": self.archived_at,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "Plan":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            status=PlanStatus(data.get("status", "draft")),
            stagings=list(data.get("stagings", [])),
            current_staging_id=data.get("currentStagingId"),
            artifacts_root=data.get("artifacts_root", ""),
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
            completed_at=data.get("completedAt"),
            archived_at=data.get("archivedAt"),
        )


@dataclass
class HistoryEntry:
    id: str
    type: HistoryEntryType
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {"id": self.id, "timestamp": self.timestamp, "type": self.type.value, "details": self.details}

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        return cls(
            id=data["id"],
            type=HistoryEntryType(data["type"]),
            details=dict(data.get("details", {})),
            timestamp=data["timestamp"],
        )


@dataclass
class Decision:
    id: str
    title: str
    decision: str
    rationale: Optional[str] = None
    related_plan_id: Optional[str] = None
    related_staging_id: Optional[str] = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return _compact({
            "id": self.id,
            "title": self.title,
            "decision": self.decision,
            "rationale": self.rationale,
            "relatedPlanId": self.related_plan_id,
            "relatedStagingId": self.related_staging_id,
            "timestamp": self.timestamp,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "Decision":
        return cls(
            id=data["id"],
            title=data["title"],
            decision=data["decision"],
            rationale=data.get("rationale"),
            related_plan_id=data.get("relatedPlanId"),
            related_staging_id=data.get("relatedStagingId"),
            timestamp=data["timestamp"],
        )


@dataclass
class Memory:
    """Context-injection rule. Higher priority is applied first."""
    id: str                                      # mem-xxxxxxxx
    category: str
    title: str
    content: str
    tags: list[str] = field(default_factory=list)
    priority: int = 50                           # 0..100
    enabled: bool = True
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "priority": self.priority,
            "enabled": self.enabled,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Memory":
        return cls(
            id=data["id"],
            category=data["category"],
            title=data["title"],
            content=data["content"],
            tags=list(data.get("tags", [])),
            priority=data.get("priority", 50),
            enabled=data.get("enabled", True),
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
        )


@dataclass
class Context:
    """Current pointers plus decisions and memories."""
    last_updated: str = field(default_factory=now_iso)
    active_files: list[str] = field(default_factory=list)
    current_plan_id: Optional[str] = None
    current_staging_id: Optional[str] = None
    decisions: list[Decision] = field(default_factory=list)
    memories: list[Memory] = field(default_factory=list)
    session_summary: Optional[str] = None

    def clear_pointers(self) -> None:
        self.current_plan_id = None
        self.current_staging_id = None

    def to_dict(self) -> dict:
        return _compact({
            "lastUpdated": self.last_updated,
            "activeFiles": list(self.active_files),
            "currentPlanId": self.current_plan_id,
            "currentStagingId": self.current_staging_id,
            "decisions": [d.to_dict() for d in self.decisions],
            "memories": [m.to_dict() for m in self.memories],
            "sessionSummary": self.session_summary,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "Context":
        return cls(
            last_updated=data["lastUpdated"],
            active_files=list(data.get("activeFiles", [])),
            current_plan_id=data.get("currentPlanId"),
            current_staging_id=data.get("currentStagingId"),
            decisions=[Decision.from_dict(d) for d in data.get("decisions", [])],
            memories=[Memory.from_dict(m) for m in data.get("memories", [])],
            session_summary=data.get("sessionSummary"),
        )


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

@dataclass
class StateDocument:
    """The whole persisted state: one project, id-keyed entity maps, history, context."""
    project: Project
    plans: dict[str, Plan] = field(default_factory=dict)
    stagings: dict[str, Staging] = field(default_factory=dict)
    tasks: dict[str, Task] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)
    context: Context = field(default_factory=Context)
    version: str = STATE_VERSION

    # Lookups raise on a missing id; callers that tolerate absence use .get on the maps.

    def require_plan(self, plan_id: str) -> Plan:
        plan = self.plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def require_staging(self, staging_id: str) -> Staging:
        staging = self.stagings.get(staging_id)
        if staging is None:
            raise StagingNotFoundError(staging_id)
        return staging

    def require_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def require_memory(self, memory_id: str) -> Memory:
        for memory in self.context.memories:
            if memory.id == memory_id:
                return memory
        raise MemoryNotFoundError(memory_id)

    def plan_stagings(self, plan_id: str) -> list[Staging]:
        """Stagings of a plan in `order`."""
        plan = self.require_plan(plan_id)
        stagings = [self.stagings[sid] for sid in plan.stagings if sid in self.stagings]
        return sorted(stagings, key=lambda s: s.order)

    def staging_tasks(self, staging_id: str) -> list[Task]:
        """Tasks of a staging in `order`."""
        staging = self.require_staging(staging_id)
        tasks = [self.tasks[tid] for tid in staging.tasks if tid in self.tasks]
        return sorted(tasks, key=lambda t: t.order)

    def touch(self) -> None:
        self.context.last_updated = now_iso()

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "project": self.project.to_dict(),
            "plans": {pid: p.to_dict() for pid, p in self.plans.items()},
            "stagings": {sid: s.to_dict() for sid, s in self.stagings.items()},
            "tasks": {tid: t.to_dict() for tid, t in self.tasks.items()},
            "history": [h.to_dict() for h in self.history],
            "context": self.context.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StateDocument":
        return cls(
            version=data["version"],
            project=Project.from_dict(data["project"]),
            plans={pid: Plan.from_dict(p) for pid, p in data.get("plans", {}).items()},
            stagings={sid: Staging.from_dict(s) for sid, s in data.get("stagings", {}).items()},
            tasks={tid: Task.from_dict(t) for tid, t in data.get("tasks", {}).items()},
            history=[HistoryEntry.from_dict(h) for h in data.get("history", [])],
            context=Context.from_dict(data["context"]),
        )
