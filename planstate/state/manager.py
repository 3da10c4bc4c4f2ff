"""
State manager: the single writer of a project's plan state.

One StateManager instance owns one in-memory copy of the document. Every
mutating call validates its inputs, looks up the entities it needs, applies
the business rule, mutates the document, appends history and then writes
the whole document atomically before returning. If that write fails the
manager reloads the last committed document from disk and re-raises, so it
never keeps state the caller could not confirm.

There is no cross-process locking: two managers pointed at the same state
file overwrite each other's writes (last writer wins).

Usage:
    manager = StateManager(project_root)
    manager.init_project("shop")
    plan = manager.create_plan("Checkout", stagings=[{"name": "API", "tasks": [{"title": "Cart"}]}])
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from planstate import query
from planstate.errors import (
    NotInitializedError,
    PlanInvalidStateError,
    PlanStateError,
    ProjectInvalidStateError,
    StagingInvalidStateError,
    TaskInvalidStateError,
    ValidationError,
)
from planstate.lib.config import EngineConfig, load_engine_config
from planstate.lib.constants import PROJECT_SUMMARY_PRIORITY
from planstate.lib.ids import (
    new_decision_id,
    new_memory_id,
    new_plan_id,
    new_staging_id,
    new_task_id,
    unique_id,
)
from planstate.lib.paths import ProjectPaths, relative_artifacts_root, relative_staging_artifacts, to_posix
from planstate.query import Page, SearchQuery, SearchResult
from planstate.state import memory as memory_view
from planstate.state.artifacts import ArtifactStore
from planstate.state.inputs import (
    DecisionInput,
    MemoryInput,
    MemoryUpdate,
    PlanInput,
    PlanUpdate,
    ProjectInput,
    ProjectUpdate,
    StagingInput,
    StagingUpdate,
    TaskInput,
    TaskOutputInput,
    TaskUpdate,
    changed_fields,
    parse_input,
)
from planstate.state.models import (
    Context,
    CrossStagingRef,
    CrossTaskRef,
    Decision,
    HistoryEntry,
    HistoryEntryType,
    Memory,
    Plan,
    PlanStatus,
    Project,
    Staging,
    StagingStatus,
    StateDocument,
    Task,
    TaskOutput,
    TaskStatus,
    now_iso,
)
from planstate.state.persistence import load_document, save_document
from planstate.workflow import lifecycle
from planstate.workflow.archive import ArchiveResult, move_tree
from planstate.workflow.dependencies import (
    check_acyclic,
    resolve_index_dependencies,
    validate_dependencies,
)
from planstate.workflow.lifecycle import StagingCompletion, TaskStatusChange, history_entry
from planstate.workflow.state_machine import parse_task_status

logger = logging.getLogger(__name__)


@dataclass
class CancelResult:
    plan_id: str
    affected_stagings: list[str] = field(default_factory=list)
    affected_tasks: list[str] = field(default_factory=list)
    archived: bool = False
    archive_path: Optional[str] = None


@dataclass
class StagingRemoval:
    staging_id: str
    plan_id: str
    removed_tasks: list[str] = field(default_factory=list)


def _task_input_fields(**kwargs) -> dict:
    return {k: v for k, v in kwargs.items() if v is not None}


class StateManager:
    """Owns and persists the plan state of one project root."""

    def __init__(self, project_root: str | Path, config: Optional[EngineConfig] = None):
        self.project_root = Path(project_root)
        self.config = config or load_engine_config(self.project_root)
        self.paths = ProjectPaths(self.project_root, self.config.state_dir)
        self.artifacts = ArtifactStore(self.paths)
        self._document: Optional[StateDocument] = None
        self.load()

    # ------------------------------------------------------------------
    # Document handling
    # ------------------------------------------------------------------

    def load(self) -> Optional[StateDocument]:
        """(Re)read the document from disk. None when the project is uninitialized."""
        data = load_document(self.paths.state_file)
        self._document = StateDocument.from_dict(data) if data is not None else None
        if self._document is not None:
            logger.debug(
                f"[STATE] Loaded {self.paths.state_file}: {len(self._document.plans)} plans, "
                f"{len(self._document.tasks)} tasks"
            )
        return self._document

    @property
    def is_initialized(self) -> bool:
        return self._document is not None

    @property
    def document(self) -> StateDocument:
        if self._document is None:
            raise NotInitializedError(str(self.project_root))
        return self._document

    def _append_history(self, entries: list[HistoryEntry]) -> None:
        history = self.document.history
        history.extend(entries)
        overflow = len(history) - self.config.history_limit
        if overflow > 0:
            del history[:overflow]

    def _commit(self, entries: Optional[list[HistoryEntry]] = None) -> None:
        """Append history and write the document. On failure, reload and re-raise."""
        document = self.document
        if entries:
            self._append_history(entries)
        document.touch()
        try:
            save_document(self.paths.state_file, document.to_dict())
        except Exception as e:
            logger.error(f"[STATE] Write to {self.paths.state_file} failed, discarding in-memory changes: {e}")
            self._restore_committed()
            raise

    def _restore_committed(self) -> None:
        try:
            self.load()
        except PlanStateError as e:
            logger.error(f"[STATE] Could not reload committed state: {e}")
            self._document = None

    # ------------------------------------------------------------------
    # Project
    # ------------------------------------------------------------------

    def init_project(
        self,
        name: str,
        description: str = "",
        goals: Optional[list[str]] = None,
        constraints: Optional[list[str]] = None,
        overwrite: bool = False,
    ) -> Project:
        """Create a fresh state document. Refuses to replace an existing one unless `overwrite`."""
        data = parse_input(ProjectInput, {
            "name": name,
            "description": description,
            "goals": goals or [],
            "constraints": constraints or [],
        })
        if self._document is not None and not overwrite:
            raise ProjectInvalidStateError(
                self._document.project.name, "initialized", ["uninitialized"], "initialize"
            )

        project = Project(
            name=data.name,
            description=data.description,
            goals=list(data.goals),
            constraints=list(data.constraints),
        )
        self._document = StateDocument(project=project, context=Context())
        self._commit([history_entry(HistoryEntryType.PROJECT_INITIALIZED, {"projectName": project.name})])
        self.paths.plans_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"[STATE] Initialized project '{project.name}' at {self.paths.state_file}")
        return project

    def get_project(self) -> Optional[Project]:
        return self._document.project if self._document else None

    def update_project(self, **changes) -> Project:
        updates = changed_fields(parse_input(ProjectUpdate, changes))
        project = self.document.project
        for key, value in updates.items():
            setattr(project, key, list(value) if isinstance(value, list) else value)
        project.updated_at = now_iso()
        self._commit([history_entry(HistoryEntryType.PROJECT_UPDATED, {"fields": sorted(updates)})])
        return project

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def _build_stagings(
        self,
        plan_id: str,
        staging_inputs: list[StagingInput],
        existing: list[Staging],
        first_order: int,
    ) -> tuple[list[Staging], list[Task]]:
        """Turn staging definitions into entities without touching the document.

        `existing` are the plan's stagings before the new ones (by order);
        creation-time indices address them followed by the new definitions.
        """
        document = self.document
        taken_stagings = set(document.stagings)
        taken_tasks = set(document.tasks)

        staging_ids: list[str] = []
        task_ids: list[list[str]] = []
        for definition in staging_inputs:
            sid = unique_id(new_staging_id, taken_stagings)
            taken_stagings.add(sid)
            staging_ids.append(sid)
            ids = []
            for _ in definition.tasks:
                tid = unique_id(new_task_id, taken_tasks)
                taken_tasks.add(tid)
                ids.append(tid)
            task_ids.append(ids)

        # Index space: existing stagings first, then the new ones
        all_staging_ids = [s.id for s in existing] + staging_ids
        all_task_ids = [list(s.tasks) for s in existing] + task_ids

        stagings: list[Staging] = []
        tasks: list[Task] = []
        for i, definition in enumerate(staging_inputs):
            position = len(existing) + i
            sid = staging_ids[i]

            refs = []
            for index in definition.depends_on_staging_indices:
                if index < 0 or index >= position:
                    raise ValidationError(
                        f"depends_on_staging_indices {index} must reference an earlier staging",
                        field=f"stagings.{i}.depends_on_staging_indices",
                    )
                ref_id = all_staging_ids[index]
                if ref_id not in [r.staging_id for r in refs]:
                    refs.append(CrossStagingRef(staging_id=ref_id))

            staging = Staging(
                id=sid,
                plan_id=plan_id,
                name=definition.name,
                description=definition.description,
                order=first_order + i,
                execution_type=definition.execution_type,
                tasks=list(task_ids[i]),
                depends_on_stagings=refs,
                default_model=definition.default_model,
                session_budget=definition.session_budget,
                recommended_sessions=definition.recommended_sessions,
                auto_include_artifacts=definition.auto_include_artifacts,
                artifacts_path=relative_staging_artifacts(plan_id, sid, self.config.state_dir),
            )

            graph: dict[str, list[str]] = {}
            for k, task_def in enumerate(definition.tasks):
                depends_on = resolve_index_dependencies(task_ids[i], task_def.depends_on_index, k)
                graph[task_ids[i][k]] = depends_on

                cross_refs = []
                for ref in task_def.cross_staging_task_refs:
                    if ref.staging_index >= position:
                        raise ValidationError(
                            f"cross_staging_task_refs staging_index {ref.staging_index} must reference an earlier staging",
                            field=f"stagings.{i}.tasks.{k}.cross_staging_task_refs",
                        )
                    target_tasks = all_task_ids[ref.staging_index]
                    if ref.task_index >= len(target_tasks):
                        raise ValidationError(
                            f"cross_staging_task_refs task_index {ref.task_index} out of range",
                            field=f"stagings.{i}.tasks.{k}.cross_staging_task_refs",
                        )
                    cross_refs.append(CrossTaskRef(
                        task_id=target_tasks[ref.task_index],
                        staging_id=all_staging_ids[ref.staging_index],
                    ))

                tasks.append(Task(
                    id=task_ids[i][k],
                    plan_id=plan_id,
                    staging_id=sid,
                    title=task_def.title,
                    description=task_def.description,
                    priority=task_def.priority,
                    execution_mode=task_def.execution_mode,
                    model=task_def.model or definition.default_model,
                    depends_on=depends_on,
                    cross_staging_refs=cross_refs,
                    memory_tags=list(task_def.memory_tags),
                    order=k,
                ))
            check_acyclic(graph)
            stagings.append(staging)
        return stagings, tasks

    def create_plan(self, title: str, description: str = "", stagings: Optional[list] = None) -> Plan:
        """Create a draft plan with nested staging and task definitions.

        Task `depends_on_index` values are positions within the same staging;
        staging `depends_on_staging_indices` and task `cross_staging_task_refs`
        may only point at earlier stagings.
        """
        data = parse_input(PlanInput, {"title": title, "description": description, "stagings": stagings or []})
        document = self.document

        plan_id = unique_id(new_plan_id, document.plans)
        new_stagings, new_tasks = self._build_stagings(plan_id, data.stagings, [], 0)
        plan = Plan(
            id=plan_id,
            title=data.title,
            description=data.description,
            stagings=[s.id for s in new_stagings],
            artifacts_root=relative_artifacts_root(plan_id, self.config.state_dir),
        )

        document.plans[plan.id] = plan
        for staging in new_stagings:
            document.stagings[staging.id] = staging
        for task in new_tasks:
            document.tasks[task.id] = task
        self._commit([history_entry(HistoryEntryType.PLAN_CREATED, {
            "planId": plan.id,
            "title": plan.title,
            "stagingCount": len(new_stagings),
            "taskCount": len(new_tasks),
        })])
        logger.info(f"[STATE] Created plan {plan.id} '{plan.title}' ({len(new_stagings)} stagings, {len(new_tasks)} tasks)")
        return plan

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self._document.plans.get(plan_id) if self._document else None

    def list_plans(self, status: Optional[PlanStatus] = None) -> list[Plan]:
        if self._document is None:
            return []
        plans = list(self._document.plans.values())
        if status is not None:
            plans = [p for p in plans if p.status == PlanStatus(status)]
        return plans

    def update_plan(self, plan_id: str, **changes) -> Plan:
        updates = changed_fields(parse_input(PlanUpdate, changes))
        plan = self.document.require_plan(plan_id)
        if plan.status in (PlanStatus.ARCHIVED, PlanStatus.CANCELLED):
            raise PlanInvalidStateError(
                plan.id, plan.status.value,
                [PlanStatus.DRAFT.value, PlanStatus.ACTIVE.value, PlanStatus.COMPLETED.value], "update",
            )
        for key, value in updates.items():
            setattr(plan, key, value)
        plan.updated_at = now_iso()
        self._commit([history_entry(HistoryEntryType.PLAN_UPDATED, {"planId": plan.id, "fields": sorted(updates)})])
        return plan

    def _archive(self, plan: Plan, reason: str = "") -> tuple[ArchiveResult, HistoryEntry]:
        """Move artifacts to the archive area and flip status. Caller commits."""
        source = self.paths.plan_dir(plan.id)
        destination = self.paths.plan_archive_dir(plan.id)
        lifecycle.check_archivable(plan)
        moved = move_tree(source, destination)
        archived_at = lifecycle.mark_archived(self.document, plan)
        path = self.paths.relative(destination)
        details: dict[str, Any] = {
            "planId": plan.id,
            "archivePath": path,
            "artifacts": moved.status.value,
        }
        if reason:
            details["reason"] = reason
        entry = history_entry(HistoryEntryType.PLAN_ARCHIVED, details)
        return ArchiveResult(plan.id, path, moved.status, archived_at), entry

    def archive_plan(self, plan_id: str, reason: str = "") -> ArchiveResult:
        """Archive a completed or cancelled plan and move its artifacts.

        The id is checked against the safe-id pattern before any lookup or
        filesystem access. A plan without an artifacts directory archives
        with status NO_ARTIFACTS.
        """
        self.paths.plan_dir(plan_id)
        plan = self.document.require_plan(plan_id)
        result, entry = self._archive(plan, reason)
        self._commit([entry])
        logger.info(f"[ARCHIVE] Archived plan {plan.id} ({result.status.value})")
        return result

    def unarchive_plan(self, plan_id: str) -> ArchiveResult:
        """Restore an archived plan to completed and move its artifacts back."""
        destination = self.paths.plan_dir(plan_id)
        source = self.paths.plan_archive_dir(plan_id)
        plan = self.document.require_plan(plan_id)
        lifecycle.check_unarchivable(plan)

        moved = move_tree(source, destination)
        lifecycle.mark_unarchived(plan)
        path = self.paths.relative(destination)
        self._commit([history_entry(HistoryEntryType.PLAN_UNARCHIVED, {
            "planId": plan.id,
            "restoredPath": path,
            "artifacts": moved.status.value,
        })])
        logger.info(f"[ARCHIVE] Unarchived plan {plan.id} ({moved.status.value})")
        return ArchiveResult(plan.id, path, moved.status)

    def cancel_plan(self, plan_id: str, reason: str = "", archive_immediately: bool = False) -> CancelResult:
        """Cancel a plan and its unfinished stagings/tasks, optionally archiving it in the same write."""
        if archive_immediately:
            self.paths.plan_dir(plan_id)
        outcome = lifecycle.cancel_plan(self.document, plan_id, reason)
        result = CancelResult(
            plan_id=plan_id,
            affected_stagings=outcome.affected_stagings,
            affected_tasks=outcome.affected_tasks,
        )
        entries = list(outcome.history)
        if archive_immediately:
            archived, entry = self._archive(outcome.plan, reason)
            entries.append(entry)
            result.archived = True
            result.archive_path = archived.path
        self._commit(entries)
        logger.info(
            f"[STATE] Cancelled plan {plan_id}: {len(result.affected_stagings)} stagings, "
            f"{len(result.affected_tasks)} tasks"
        )
        return result

    # ------------------------------------------------------------------
    # Stagings
    # ------------------------------------------------------------------

    def get_staging(self, staging_id: str) -> Optional[Staging]:
        return self._document.stagings.get(staging_id) if self._document else None

    def get_plan_stagings(self, plan_id: str) -> list[Staging]:
        if self._document is None or plan_id not in self._document.plans:
            return []
        return self._document.plan_stagings(plan_id)

    def start_staging(self, plan_id: str, staging_id: str) -> Staging:
        """Start a staging. The previous staging (by order) must be completed."""
        started = lifecycle.start_staging(self.document, plan_id, staging_id)
        self._commit(started.history)
        self.artifacts.ensure_staging_dir(plan_id, staging_id)
        return started.staging

    def complete_staging(self, staging_id: str) -> StagingCompletion:
        completion = lifecycle.complete_staging(self.document, staging_id)
        self._commit(completion.history)
        return completion

    def fail_staging(self, staging_id: str, reason: str = "") -> Staging:
        entries = lifecycle.fail_staging(self.document, staging_id, reason)
        self._commit(entries)
        return self.document.stagings[staging_id]

    def update_staging(self, staging_id: str, **changes) -> Staging:
        updates = changed_fields(parse_input(StagingUpdate, changes))
        staging = self.document.require_staging(staging_id)
        if staging.status in (StagingStatus.COMPLETED, StagingStatus.CANCELLED):
            raise StagingInvalidStateError(
                staging.id, staging.status.value,
                [StagingStatus.PENDING.value, StagingStatus.IN_PROGRESS.value, StagingStatus.FAILED.value],
                "update",
            )
        for key, value in updates.items():
            setattr(staging, key, value)
        self._commit([history_entry(HistoryEntryType.STAGING_UPDATED, {
            "stagingId": staging.id,
            "fields": sorted(updates),
        })])
        return staging

    def _renumber_stagings(self, plan: Plan) -> None:
        for order, sid in enumerate(plan.stagings):
            self.document.stagings[sid].order = order

    def add_staging(self, plan_id: str, name: str, insert_at: Optional[int] = None, **definition) -> Staging:
        """Add a staging to a draft or active plan at `insert_at` (default: end)."""
        data = parse_input(StagingInput, {"name": name, **definition})
        document = self.document
        plan = document.require_plan(plan_id)
        if plan.status not in (PlanStatus.DRAFT, PlanStatus.ACTIVE):
            raise PlanInvalidStateError(
                plan.id, plan.status.value, [PlanStatus.DRAFT.value, PlanStatus.ACTIVE.value], "add staging"
            )
        existing = document.plan_stagings(plan.id)
        position = len(existing) if insert_at is None else insert_at
        if position < 0 or position > len(existing):
            raise ValidationError(f"insert_at {insert_at} out of range 0..{len(existing)}", field="insert_at")

        (staging,), tasks = self._build_stagings(plan.id, [data], existing[:position], position)
        document.stagings[staging.id] = staging
        for task in tasks:
            document.tasks[task.id] = task
        plan.stagings = [s.id for s in existing]
        plan.stagings.insert(position, staging.id)
        self._renumber_stagings(plan)
        plan.updated_at = now_iso()
        self._commit([history_entry(HistoryEntryType.STAGING_ADDED, {
            "planId": plan.id,
            "stagingId": staging.id,
            "name": staging.name,
            "order": staging.order,
        })])
        return staging

    def remove_staging(self, staging_id: str) -> StagingRemoval:
        """Delete a staging and its tasks, dropping every reference to them."""
        document = self.document
        staging = document.require_staging(staging_id)
        if staging.status == StagingStatus.IN_PROGRESS:
            raise StagingInvalidStateError(
                staging.id, staging.status.value,
                [StagingStatus.PENDING.value, StagingStatus.COMPLETED.value,
                 StagingStatus.FAILED.value, StagingStatus.CANCELLED.value],
                "remove",
            )
        plan = document.require_plan(staging.plan_id)
        removed_tasks = set(staging.tasks)

        for task_id in staging.tasks:
            document.tasks.pop(task_id, None)
        del document.stagings[staging.id]
        plan.stagings = [sid for sid in plan.stagings if sid != staging.id]
        self._renumber_stagings(plan)

        for other in document.stagings.values():
            other.depends_on_stagings = [r for r in other.depends_on_stagings if r.staging_id != staging.id]
        for task in document.tasks.values():
            task.cross_staging_refs = [
                r for r in task.cross_staging_refs
                if r.staging_id != staging.id and r.task_id not in removed_tasks
            ]

        if plan.current_staging_id == staging.id:
            plan.current_staging_id = None
        if document.context.current_staging_id == staging.id:
            document.context.current_staging_id = None
        plan.updated_at = now_iso()

        entries = [history_entry(HistoryEntryType.STAGING_REMOVED, {
            "planId": plan.id,
            "stagingId": staging.id,
            "name": staging.name,
            "removedTasks": len(removed_tasks),
        })]
        completed = lifecycle.recheck_plan(document, plan.id)
        if completed is not None:
            entries.append(completed)
            logger.info(f"[STATE] Plan {plan.id} completed after removing staging {staging.id}")
        self._commit(entries)
        return StagingRemoval(staging.id, plan.id, sorted(removed_tasks))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._document.tasks.get(task_id) if self._document else None

    def get_staging_tasks(self, staging_id: str) -> list[Task]:
        if self._document is None or staging_id not in self._document.stagings:
            return []
        return self._document.staging_tasks(staging_id)

    def get_executable_tasks(self, staging_id: str) -> list[Task]:
        return lifecycle.executable_tasks(self.document, staging_id)

    def _coerce_status(self, status) -> TaskStatus:
        parsed = parse_task_status(status.value if isinstance(status, TaskStatus) else status)
        if parsed is None:
            raise ValidationError(f"Unknown task status: {status!r}", field="status")
        return parsed

    def update_task_status(self, task_id: str, status, notes: Optional[str] = None) -> TaskStatusChange:
        """Move a task along the transition table.

        Completing the last open task of a staging completes the staging, and
        completing the last staging of a plan completes the plan.
        """
        target = self._coerce_status(status)
        change = lifecycle.apply_task_status(self.document, task_id, target, notes)
        if change.changed:
            self._commit(change.history)
        return change

    def bulk_update_task_status(self, task_ids: list[str], status, notes: Optional[str] = None) -> dict:
        """Apply one status to many tasks independently, with a single write at the end."""
        target = self._coerce_status(status)
        updated: list[str] = []
        failed: list[dict] = []
        entries: list[HistoryEntry] = []
        for task_id in task_ids:
            try:
                change = lifecycle.apply_task_status(self.document, task_id, target, notes)
            except PlanStateError as e:
                failed.append({"taskId": task_id, "error": e.message, "code": e.code})
                continue
            if change.changed:
                entries.extend(change.history)
            updated.append(task_id)
        if entries:
            self._commit(entries)
        return {"updated": updated, "failed": failed}

    def _check_task_editable(self, task: Task, operation: str) -> None:
        if task.status in (TaskStatus.DONE, TaskStatus.CANCELLED):
            raise TaskInvalidStateError(
                task.id, task.status.value,
                [TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value, TaskStatus.BLOCKED.value],
                operation,
            )

    def add_task(
        self,
        staging_id: str,
        title: str,
        description: str = "",
        priority=None,
        execution_mode=None,
        model=None,
        depends_on: Optional[list[str]] = None,
        memory_tags: Optional[list[str]] = None,
    ) -> Task:
        data = parse_input(TaskInput, _task_input_fields(
            title=title,
            description=description,
            priority=priority,
            execution_mode=execution_mode,
            model=model,
            memory_tags=memory_tags,
        ))
        document = self.document
        staging = document.require_staging(staging_id)
        if staging.status in (StagingStatus.COMPLETED, StagingStatus.CANCELLED):
            raise StagingInvalidStateError(
                staging.id, staging.status.value,
                [StagingStatus.PENDING.value, StagingStatus.IN_PROGRESS.value, StagingStatus.FAILED.value],
                "add task",
            )

        task_id = unique_id(new_task_id, document.tasks)
        deps = validate_dependencies(document, task_id, staging.id, depends_on or [])
        task = Task(
            id=task_id,
            plan_id=staging.plan_id,
            staging_id=staging.id,
            title=data.title,
            description=data.description,
            priority=data.priority,
            execution_mode=data.execution_mode,
            model=data.model or staging.default_model,
            depends_on=deps,
            memory_tags=list(data.memory_tags),
            order=len(staging.tasks),
        )
        document.tasks[task.id] = task
        staging.tasks.append(task.id)
        self._commit([history_entry(HistoryEntryType.TASK_ADDED, {
            "taskId": task.id,
            "stagingId": staging.id,
            "title": task.title,
        })])
        return task

    def remove_task(self, task_id: str) -> Task:
        document = self.document
        task = document.require_task(task_id)
        if task.status == TaskStatus.IN_PROGRESS:
            raise TaskInvalidStateError(
                task.id, task.status.value,
                [TaskStatus.PENDING.value, TaskStatus.BLOCKED.value, TaskStatus.DONE.value, TaskStatus.CANCELLED.value],
                "remove",
            )
        staging = document.require_staging(task.staging_id)

        del document.tasks[task.id]
        staging.tasks = [tid for tid in staging.tasks if tid != task.id]
        for order, sibling in enumerate(document.staging_tasks(staging.id)):
            sibling.order = order
            if task.id in sibling.depends_on:
                sibling.depends_on = [d for d in sibling.depends_on if d != task.id]
        for other in document.tasks.values():
            other.cross_staging_refs = [r for r in other.cross_staging_refs if r.task_id != task.id]
        for other in document.stagings.values():
            for ref in other.depends_on_stagings:
                if ref.task_ids and task.id in ref.task_ids:
                    ref.task_ids = [t for t in ref.task_ids if t != task.id]

        entries = [history_entry(HistoryEntryType.TASK_REMOVED, {
            "taskId": task.id,
            "stagingId": staging.id,
            "title": task.title,
        })]
        completion = lifecycle.recheck_staging(document, staging.id)
        if completion is not None:
            entries.extend(completion.history)
            logger.info(f"[STATE] Staging {staging.id} completed after removing task {task.id}")
        self._commit(entries)
        return task

    def update_task_details(self, task_id: str, **changes) -> Task:
        """Edit a task that is not done/cancelled.

        A new depends_on list is fully validated before any field changes, so a
        rejected update leaves the task untouched.
        """
        updates = changed_fields(parse_input(TaskUpdate, changes))
        document = self.document
        task = document.require_task(task_id)
        self._check_task_editable(task, "update")

        if "depends_on" in updates:
            updates["depends_on"] = validate_dependencies(
                document, task.id, task.staging_id, updates["depends_on"]
            )
        for key, value in updates.items():
            setattr(task, key, list(value) if isinstance(value, list) else value)
        task.updated_at = now_iso()
        self._commit([history_entry(HistoryEntryType.TASK_UPDATED, {
            "taskId": task.id,
            "stagingId": task.staging_id,
            "fields": sorted(updates),
        })])
        return task

    # ------------------------------------------------------------------
    # Task outputs and artifacts
    # ------------------------------------------------------------------

    def save_task_output(self, task_id: str, output: Any) -> TaskOutput:
        """Record a task's output on the task and as `<taskId>-output.json`."""
        data = parse_input(TaskOutputInput, output)
        document = self.document
        task = document.require_task(task_id)

        record = TaskOutput(
            status=data.status,
            summary=data.summary,
            artifacts=[to_posix(a) for a in data.artifacts],
            data=data.data,
            error=data.error,
        )
        path = self.artifacts.write_task_output(task.plan_id, task.staging_id, task.id, record)
        task.output = record
        task.updated_at = now_iso()
        self._commit([history_entry(HistoryEntryType.TASK_UPDATED, {
            "taskId": task.id,
            "stagingId": task.staging_id,
            "output": record.status.value,
            "outputPath": path,
        })])
        return record

    def get_task_output(self, task_id: str) -> Optional[TaskOutput]:
        """Output file contents, falling back to the output stored on the task."""
        task = self.get_task(task_id)
        if task is None:
            return None
        return self.artifacts.read_task_output(task.plan_id, task.staging_id, task.id) or task.output

    def get_staging_outputs(self, staging_id: str) -> dict[str, TaskOutput]:
        staging = self.get_staging(staging_id)
        if staging is None:
            return {}
        return self.artifacts.staging_outputs(staging.plan_id, staging.id)

    def list_staging_artifacts(self, staging_id: str) -> list[str]:
        staging = self.get_staging(staging_id)
        if staging is None:
            return []
        return self.artifacts.list_files(staging.plan_id, staging.id)

    def get_related_staging_artifacts(self, staging_id: str) -> list[dict]:
        """Outputs of the stagings this staging references, filtered by their task lists."""
        staging = self.get_staging(staging_id)
        if staging is None:
            return []
        results = []
        for ref in staging.depends_on_stagings:
            target = self.document.stagings.get(ref.staging_id)
            if target is None:
                continue
            wanted = ref.task_ids if ref.task_ids is not None else list(target.tasks)
            outputs = {
                t.id: t.output for t in self.document.staging_tasks(target.id)
                if t.id in wanted and t.output is not None
            }
            results.append({"stagingId": target.id, "stagingName": target.name, "taskOutputs": outputs})
        return results

    def get_cross_referenced_outputs(self, task_id: str) -> list[dict]:
        task = self.get_task(task_id)
        if task is None:
            return []
        results = []
        for ref in task.cross_staging_refs:
            target = self.document.tasks.get(ref.task_id)
            if target is None:
                continue
            results.append({
                "taskId": target.id,
                "taskTitle": target.title,
                "stagingId": ref.staging_id,
                "output": target.output,
            })
        return results

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def add_decision(
        self,
        title: str,
        decision: str,
        rationale: Optional[str] = None,
        related_plan_id: Optional[str] = None,
        related_staging_id: Optional[str] = None,
    ) -> Decision:
        data = parse_input(DecisionInput, {
            "title": title,
            "decision": decision,
            "rationale": rationale,
            "related_plan_id": related_plan_id,
            "related_staging_id": related_staging_id,
        })
        document = self.document
        if data.related_plan_id:
            document.require_plan(data.related_plan_id)
        if data.related_staging_id:
            document.require_staging(data.related_staging_id)

        record = Decision(
            id=new_decision_id(),
            title=data.title,
            decision=data.decision,
            rationale=data.rationale,
            related_plan_id=data.related_plan_id,
            related_staging_id=data.related_staging_id,
        )
        document.context.decisions.append(record)
        self._commit([history_entry(HistoryEntryType.DECISION_ADDED, {"decisionId": record.id, "title": record.title})])
        return record

    def list_decisions(self, plan_id: Optional[str] = None) -> list[Decision]:
        if self._document is None:
            return []
        decisions = self._document.context.decisions
        if plan_id:
            decisions = [d for d in decisions if d.related_plan_id == plan_id]
        return list(decisions)

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def add_memory(
        self,
        category: str,
        title: str,
        content: str,
        tags: Optional[list[str]] = None,
        priority: Optional[int] = None,
        enabled: bool = True,
    ) -> Memory:
        data = parse_input(MemoryInput, {
            "category": category,
            "title": title,
            "content": content,
            "tags": tags or [],
            "priority": priority,
            "enabled": enabled,
        })
        document = self.document
        taken = {m.id for m in document.context.memories}
        record = Memory(
            id=unique_id(new_memory_id, taken),
            category=data.category,
            title=data.title,
            content=data.content,
            tags=list(data.tags),
            priority=data.priority if data.priority is not None else self.config.default_memory_priority,
            enabled=data.enabled,
        )
        document.context.memories.append(record)
        self._commit([history_entry(HistoryEntryType.MEMORY_ADDED, {
            "memoryId": record.id,
            "category": record.category,
            "title": record.title,
        })])
        return record

    def update_memory(self, memory_id: str, **changes) -> Memory:
        updates = changed_fields(parse_input(MemoryUpdate, changes))
        record = self.document.require_memory(memory_id)
        for key, value in updates.items():
            setattr(record, key, list(value) if isinstance(value, list) else value)
        record.updated_at = now_iso()
        self._commit([history_entry(HistoryEntryType.MEMORY_UPDATED, {
            "memoryId": record.id,
            "fields": sorted(updates),
        })])
        return record

    def remove_memory(self, memory_id: str) -> Memory:
        document = self.document
        record = document.require_memory(memory_id)
        document.context.memories = [m for m in document.context.memories if m.id != memory_id]
        self._commit([history_entry(HistoryEntryType.MEMORY_REMOVED, {"memoryId": record.id, "title": record.title})])
        return record

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        if self._document is None:
            return None
        return next((m for m in self._document.context.memories if m.id == memory_id), None)

    def _memories(self) -> list[Memory]:
        return self._document.context.memories if self._document else []

    def list_memories(
        self,
        category: Optional[str] = None,
        tags: Optional[list[str]] = None,
        enabled_only: bool = True,
    ) -> list[Memory]:
        return memory_view.filter_memories(self._memories(), category, tags, enabled_only)

    def memories_for_context(self, context: str) -> list[Memory]:
        return memory_view.for_context(self._memories(), context)

    def memories_for_event(self, event: str, tags: Optional[list[str]] = None) -> list[Memory]:
        return memory_view.for_event(self._memories(), event, tags)

    def always_applied_memories(self) -> list[Memory]:
        return memory_view.always_applied(self._memories())

    def categories(self) -> list[str]:
        return memory_view.categories(self._memories())

    def generate_project_summary(self) -> str:
        return memory_view.render_project_summary(self.document)

    def save_project_summary(self, content: Optional[str] = None) -> Memory:
        """Create or refresh the project-summary memory."""
        document = self.document
        text = content if content is not None else memory_view.render_project_summary(document)
        title = memory_view.summary_title(document)
        existing = memory_view.find_summary(document.context.memories)
        if existing is not None:
            return self.update_memory(existing.id, content=text, title=title)
        return self.add_memory(
            memory_view.SUMMARY_CATEGORY,
            title,
            text,
            tags=list(memory_view.SUMMARY_TAGS),
            priority=PROJECT_SUMMARY_PRIORITY,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search(self, search_query: SearchQuery) -> SearchResult:
        return query.search(self.document, search_query, max_limit=self.config.max_page_size)

    def paginate_tasks(self, page: int = 1, page_size: Optional[int] = None, **criteria) -> Page:
        size = min(page_size or self.config.default_page_size, self.config.max_page_size)
        return query.paginate(query.list_tasks(self.document, **criteria), page, size)

    # ------------------------------------------------------------------
    # Sessions and history
    # ------------------------------------------------------------------

    def start_session(self) -> HistoryEntry:
        entry = history_entry(HistoryEntryType.SESSION_STARTED, {})
        self._commit([entry])
        return entry

    def end_session(self, summary: Optional[str] = None) -> HistoryEntry:
        document = self.document
        if summary:
            document.context.session_summary = summary
        entry = history_entry(HistoryEntryType.SESSION_ENDED, {"summary": summary} if summary else {})
        self._commit([entry])
        return entry

    def history(self, limit: Optional[int] = None, entry_type: Optional[HistoryEntryType] = None) -> list[HistoryEntry]:
        """History newest-first, optionally filtered by type and truncated to `limit`."""
        if self._document is None:
            return []
        entries = list(reversed(self._document.history))
        if entry_type is not None:
            wanted = HistoryEntryType(entry_type)
            entries = [e for e in entries if e.type == wanted]
        if limit is not None:
            entries = entries[:max(limit, 0)]
        return entries
