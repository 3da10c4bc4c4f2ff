"""
Memory selection and project summary rendering.

Read-only helpers over the document's memories. The manager owns adding,
updating and removing them.
"""

from typing import Iterable, Optional

from planstate.lib.constants import DEFAULT_MEMORY_CATEGORIES
from planstate.state.models import (
    Memory,
    PlanStatus,
    StagingStatus,
    StateDocument,
    TaskStatus,
)

GENERAL_CATEGORY = "general"
SUMMARY_CATEGORY = "project-summary"
SUMMARY_TAGS = ["auto-generated", "summary"]

# Memories at or above this priority are listed as key rules in the summary
KEY_RULE_PRIORITY = 70
MAX_KEY_RULES = 5
MAX_RECENT_DECISIONS = 3


def by_priority(memories: Iterable[Memory]) -> list[Memory]:
    """Highest priority first; ties keep insertion order."""
    return sorted(memories, key=lambda m: -m.priority)


def filter_memories(
    memories: list[Memory],
    category: Optional[str] = None,
    tags: Optional[list[str]] = None,
    enabled_only: bool = True,
) -> list[Memory]:
    result = [m for m in memories if m.enabled or not enabled_only]
    if category:
        result = [m for m in result if m.category == category]
    if tags:
        result = [m for m in result if any(tag in m.tags for tag in tags)]
    return by_priority(result)


def for_context(memories: list[Memory], context: str) -> list[Memory]:
    """General memories plus those of `context`. "all" returns every enabled memory."""
    enabled = [m for m in memories if m.enabled]
    if context == "all":
        return by_priority(enabled)
    return by_priority(m for m in enabled if m.category in (GENERAL_CATEGORY, context))


def for_event(memories: list[Memory], event: str, tags: Optional[list[str]] = None) -> list[Memory]:
    """General plus event-category memories, extended with any enabled memory matching `tags`."""
    enabled = [m for m in memories if m.enabled]
    result = [m for m in enabled if m.category in (GENERAL_CATEGORY, event)]
    if tags:
        seen = {m.id for m in result}
        result.extend(m for m in enabled if m.id not in seen and any(t in m.tags for t in tags))
    return by_priority(result)


def always_applied(memories: list[Memory]) -> list[Memory]:
    return by_priority(m for m in memories if m.enabled and m.category in (GENERAL_CATEGORY, SUMMARY_CATEGORY))


def categories(memories: list[Memory]) -> list[str]:
    return sorted(set(DEFAULT_MEMORY_CATEGORIES) | {m.category for m in memories})


def find_summary(memories: list[Memory]) -> Optional[Memory]:
    return next((m for m in memories if m.category == SUMMARY_CATEGORY), None)


def summary_title(document: StateDocument) -> str:
    return f"{document.project.name} - Project Summary"


def render_project_summary(document: StateDocument) -> str:
    """Markdown overview of the project: goals, status counts, active work, key rules, decisions."""
    project = document.project
    plans = list(document.plans.values())
    active_plans = [p for p in plans if p.status == PlanStatus.ACTIVE]
    completed_plans = [p for p in plans if p.status == PlanStatus.COMPLETED]
    total_tasks = len(document.tasks)
    done_tasks = sum(1 for t in document.tasks.values() if t.status == TaskStatus.DONE)

    lines = [f"# {project.name}"]
    if project.description:
        lines.append(f"\n{project.description}")

    if project.goals:
        lines.append("\n## Goals")
        lines.extend(f"- {g}" for g in project.goals)

    if project.constraints:
        lines.append("\n## Constraints")
        lines.extend(f"- {c}" for c in project.constraints)

    lines.append("\n## Status")
    lines.append(f"- Active Plans: {len(active_plans)}")
    lines.append(f"- Completed Plans: {len(completed_plans)}")
    lines.append(f"- Tasks: {done_tasks}/{total_tasks} completed")

    if active_plans:
        lines.append("\n## Active Work")
        for plan in active_plans:
            lines.append(f"- **{plan.title}**")
            current = next(
                (s for s in document.plan_stagings(plan.id) if s.status == StagingStatus.IN_PROGRESS), None
            )
            if current is None:
                continue
            lines.append(f"  - Current: {current.name}")
            running = [t.title for t in document.staging_tasks(current.id) if t.status == TaskStatus.IN_PROGRESS]
            if running:
                lines.append(f"  - Tasks: {', '.join(running)}")

    key_rules = [
        m for m in by_priority(document.context.memories)
        if m.enabled and m.category != SUMMARY_CATEGORY and m.priority >= KEY_RULE_PRIORITY
    ]
    if key_rules:
        lines.append("\n## Key Rules")
        lines.extend(f"- **{m.title}** ({m.category})" for m in key_rules[:MAX_KEY_RULES])

    recent = document.context.decisions[-MAX_RECENT_DECISIONS:]
    if recent:
        lines.append("\n## Recent Decisions")
        lines.extend(f"- {d.title}: {d.decision}" for d in recent)

    return "\n".join(lines)
