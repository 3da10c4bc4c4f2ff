"""
Read-only query layer over a loaded StateDocument.

Search works on the persisted (wire) form of each entity, so filter and
sort fields use the same names as the JSON document: `status`, `planId`,
`priority`, `createdAt` and so on. Nothing in this module mutates the
document.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from planstate.errors import ValidationError
from planstate.state.models import (
    PlanStatus,
    StagingStatus,
    StateDocument,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("plan", "staging", "task", "memory", "decision")

# Text fields searched per entity type, in descending weight
TEXT_FIELDS = {
    "plan": ("title", "description"),
    "staging": ("name", "description"),
    "task": ("title", "description", "notes"),
    "memory": ("title", "content"),
    "decision": ("title", "decision", "rationale"),
}

TITLE_WEIGHT = 1.0
BODY_WEIGHT = 0.5
SNIPPET_RADIUS = 30

# camelCase spellings accepted from the tool layer
_OPERATOR_ALIASES = {"startsWith": "startswith", "endsWith": "endswith", "notIn": "not_in"}


@dataclass
class SearchFilter:
    field: str
    operator: str
    value: Any = None


@dataclass
class SortSpec:
    field: str
    order: str = "asc"


@dataclass
class SearchQuery:
    text: Optional[str] = None
    entity_types: Optional[list[str]] = None
    filters: list[SearchFilter] = field(default_factory=list)
    sort: list[SortSpec] = field(default_factory=list)
    limit: int = 20
    offset: int = 0
    include_archived: bool = False


@dataclass
class SearchHit:
    entity_type: str
    entity_id: str
    score: float
    matches: list[dict]
    data: dict


@dataclass
class SearchResult:
    hits: list[SearchHit]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.hits) < self.total


@dataclass
class Page:
    items: list
    total: int
    page: int
    page_size: int
    has_next: bool

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.page_size))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _archived_plan_ids(document: StateDocument) -> set[str]:
    return {pid for pid, p in document.plans.items() if p.status == PlanStatus.ARCHIVED}


def _records(document: StateDocument, entity_type: str, include_archived: bool) -> list[dict]:
    """Wire-form dicts for one entity type, tagged with entityType."""
    archived = set() if include_archived else _archived_plan_ids(document)
    if entity_type == "plan":
        rows = [dict(p.to_dict(), planId=p.id) for p in document.plans.values() if p.id not in archived]
    elif entity_type == "staging":
        rows = [dict(s.to_dict(), stagingId=s.id) for s in document.stagings.values() if s.plan_id not in archived]
    elif entity_type == "task":
        rows = [dict(t.to_dict(), taskId=t.id) for t in document.tasks.values() if t.plan_id not in archived]
    elif entity_type == "memory":
        rows = [m.to_dict() for m in document.context.memories]
    elif entity_type == "decision":
        rows = [d.to_dict() for d in document.context.decisions]
    else:
        raise ValidationError(f"Unknown entity type: {entity_type}", field="entity_types")
    for row in rows:
        row["entityType"] = entity_type
    return rows


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def _snippet(text: str, start: int, length: int) -> str:
    lo = max(0, start - SNIPPET_RADIUS)
    hi = min(len(text), start + length + SNIPPET_RADIUS)
    return text[lo:hi]


def _text_score(record: dict, needle: str) -> tuple[float, list[dict]]:
    """Relevance of `record` for a lowercase `needle`: title hits weigh double."""
    fields = TEXT_FIELDS[record["entityType"]]
    score = 0.0
    matches = []
    for index, name in enumerate(fields):
        value = record.get(name)
        if not isinstance(value, str):
            continue
        pos = value.lower().find(needle)
        if pos < 0:
            continue
        score += TITLE_WEIGHT if index == 0 else BODY_WEIGHT
        matches.append({"field": name, "snippet": _snippet(value, pos, len(needle))})
    max_score = TITLE_WEIGHT + BODY_WEIGHT * (len(fields) - 1)
    return score / max_score, matches


def _compare(actual, expected, op) -> bool:
    try:
        return op(actual, expected)
    except TypeError:
        return False


def matches_filter(record: dict, flt: SearchFilter) -> bool:
    operator = _OPERATOR_ALIASES.get(flt.operator, flt.operator)
    actual = record.get(flt.field)
    expected = flt.value

    if operator == "exists":
        present = actual is not None
        return present if expected is None else present == bool(expected)
    if operator == "eq":
        return actual == expected
    if operator == "neq":
        return actual != expected
    if operator == "contains":
        if isinstance(actual, list):
            return expected in actual
        return isinstance(actual, str) and str(expected).lower() in actual.lower()
    if operator == "startswith":
        return isinstance(actual, str) and actual.lower().startswith(str(expected).lower())
    if operator == "endswith":
        return isinstance(actual, str) and actual.lower().endswith(str(expected).lower())
    if operator == "gt":
        return actual is not None and _compare(actual, expected, lambda a, b: a > b)
    if operator == "gte":
        return actual is not None and _compare(actual, expected, lambda a, b: a >= b)
    if operator == "lt":
        return actual is not None and _compare(actual, expected, lambda a, b: a < b)
    if operator == "lte":
        return actual is not None and _compare(actual, expected, lambda a, b: a <= b)
    if operator in ("in", "not_in"):
        if not isinstance(expected, (list, tuple, set)):
            raise ValidationError(f"Operator '{flt.operator}' needs a list value", field=f"filters.{flt.field}")
        hit = any(v in expected for v in actual) if isinstance(actual, list) else actual in expected
        return hit if operator == "in" else not hit
    if operator == "regex":
        if not isinstance(actual, str):
            return False
        try:
            return re.search(str(expected), actual) is not None
        except re.error as e:
            raise ValidationError(f"Invalid regex {expected!r}: {e}", field=f"filters.{flt.field}") from None
    raise ValidationError(f"Unknown filter operator: {flt.operator}", field=f"filters.{flt.field}")


def _sort_key(value):
    # Numbers before strings; anything non-numeric compares by str
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value, "")
    return (1, 0, str(value))


def _apply_sort(hits: list[SearchHit], specs: list[SortSpec], by_score: bool) -> list[SearchHit]:
    if specs:
        for spec in reversed(specs):
            if spec.order not in ("asc", "desc"):
                raise ValidationError(f"Unknown sort order: {spec.order}", field=f"sort.{spec.field}")
            present = [h for h in hits if h.data.get(spec.field) is not None]
            missing = [h for h in hits if h.data.get(spec.field) is None]
            present.sort(key=lambda h: _sort_key(h.data.get(spec.field)), reverse=spec.order == "desc")
            hits = present + missing
        return hits
    if by_score:
        return sorted(hits, key=lambda h: -h.score)
    return hits


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

def search(document: StateDocument, query: SearchQuery, max_limit: int = 100) -> SearchResult:
    """Free-text + filter search across entity types with sorting and pagination."""
    if query.limit < 1 or query.limit > max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}", field="limit")
    if query.offset < 0:
        raise ValidationError("offset must be >= 0", field="offset")

    types = query.entity_types or list(ENTITY_TYPES)
    needle = query.text.strip().lower() if query.text else ""

    hits: list[SearchHit] = []
    for entity_type in types:
        for record in _records(document, entity_type, query.include_archived):
            if not all(matches_filter(record, f) for f in query.filters):
                continue
            score, matches = (0.0, [])
            if needle:
                score, matches = _text_score(record, needle)
                if not matches:
                    continue
            hits.append(SearchHit(entity_type, record["id"], score, matches, record))

    hits = _apply_sort(hits, query.sort, by_score=bool(needle))
    total = len(hits)
    page = hits[query.offset:query.offset + query.limit]
    logger.debug(f"[STATE] search {needle!r} over {types}: {total} hits, returning {len(page)}")
    return SearchResult(hits=page, total=total, limit=query.limit, offset=query.offset)


def list_tasks(
    document: StateDocument,
    status: Optional[TaskStatus] = None,
    priority=None,
    plan_id: Optional[str] = None,
    staging_id: Optional[str] = None,
) -> list[Task]:
    """Tasks matching every given criterion, in plan/staging/task order."""
    tasks = []
    for plan in document.plans.values():
        if plan_id and plan.id != plan_id:
            continue
        for staging in document.plan_stagings(plan.id):
            if staging_id and staging.id != staging_id:
                continue
            tasks.extend(document.staging_tasks(staging.id))
    if status is not None:
        tasks = [t for t in tasks if t.status == TaskStatus(status)]
    if priority is not None:
        tasks = [t for t in tasks if t.priority == priority or t.priority.value == priority]
    return tasks


def paginate(items: list, page: int = 1, page_size: int = 20) -> Page:
    """Slice `items` into 1-based pages."""
    if page < 1:
        raise ValidationError("page must be >= 1", field="page")
    if page_size < 1:
        raise ValidationError("page_size must be >= 1", field="page_size")
    start = (page - 1) * page_size
    chunk = items[start:start + page_size]
    return Page(items=chunk, total=len(items), page=page, page_size=page_size,
                has_next=start + page_size < len(items))


# ---------------------------------------------------------------------------
# Progress views
# ---------------------------------------------------------------------------

def plan_progress(document: StateDocument, plan_id: str) -> dict:
    stagings = document.plan_stagings(plan_id)
    tasks = [t for s in stagings for t in document.staging_tasks(s.id)]
    done = sum(1 for t in tasks if t.status == TaskStatus.DONE)
    return {
        "planId": plan_id,
        "totalStagings": len(stagings),
        "completedStagings": sum(1 for s in stagings if s.status == StagingStatus.COMPLETED),
        "totalTasks": len(tasks),
        "doneTasks": done,
        "percent": round(done * 100 / len(tasks)) if tasks else 0,
    }


def plan_detail(document: StateDocument, plan_id: str) -> dict:
    """Plan with its stagings and their tasks nested, plus progress."""
    plan = document.require_plan(plan_id)
    detail = plan.to_dict()
    detail["stagings"] = [
        dict(s.to_dict(), tasks=[t.to_dict() for t in document.staging_tasks(s.id)])
        for s in document.plan_stagings(plan.id)
    ]
    detail["progress"] = plan_progress(document, plan.id)
    return detail


def status_overview(document: StateDocument) -> dict:
    plans_by_status = {s.value: 0 for s in PlanStatus}
    for plan in document.plans.values():
        plans_by_status[plan.status.value] += 1
    tasks_by_status = {s.value: 0 for s in TaskStatus}
    for task in document.tasks.values():
        tasks_by_status[task.status.value] += 1
    return {
        "project": document.project.name,
        "plans": plans_by_status,
        "tasks": tasks_by_status,
        "currentPlanId": document.context.current_plan_id,
        "currentStagingId": document.context.current_staging_id,
        "activePlans": [
            plan_progress(document, p.id) for p in document.plans.values() if p.status == PlanStatus.ACTIVE
        ],
        "lastUpdated": document.context.last_updated,
    }
