"""Task, staging and plan state machines using transitions library.

Each entity kind gets a trigger table. A machine is bound to one entity for
the duration of a transition and writes the new status back onto it in the
`after_state_change` callback.

Usage:
    from planstate.workflow.fsm import TaskFSM

    fsm = TaskFSM(task)
    fsm.start()     # pending -> in_progress
    fsm.complete()  # in_progress -> done
"""

import logging
from enum import Enum
from typing import Callable

from transitions import Machine

from planstate.state.models import PlanStatus, StagingStatus, TaskStatus

logger = logging.getLogger(__name__)


TASK_STATES = [s.value for s in TaskStatus]

# done and cancelled are terminal: no row has them as a source
TASK_TRANSITIONS = [
    {"trigger": "start", "source": "pending", "dest": "in_progress"},
    {"trigger": "block", "source": "pending", "dest": "blocked"},
    {"trigger": "cancel", "source": "pending", "dest": "cancelled"},

    {"trigger": "complete", "source": "in_progress", "dest": "done"},
    {"trigger": "block", "source": "in_progress", "dest": "blocked"},
    {"trigger": "cancel", "source": "in_progress", "dest": "cancelled"},

    {"trigger": "resume", "source": "blocked", "dest": "in_progress"},
    {"trigger": "cancel", "source": "blocked", "dest": "cancelled"},
]


STAGING_STATES = [s.value for s in StagingStatus]

STAGING_TRANSITIONS = [
    {"trigger": "start", "source": "pending", "dest": "in_progress"},
    {"trigger": "start", "source": "failed", "dest": "in_progress"},  # Restart after failure

    # Manual completion may skip the in_progress step
    {"trigger": "complete", "source": "pending", "dest": "completed"},
    {"trigger": "complete", "source": "in_progress", "dest": "completed"},

    {"trigger": "fail", "source": "in_progress", "dest": "failed"},

    {"trigger": "cancel", "source": "pending", "dest": "cancelled"},
    {"trigger": "cancel", "source": "in_progress", "dest": "cancelled"},
]


PLAN_STATES = [s.value for s in PlanStatus]

PLAN_TRANSITIONS = [
    {"trigger": "activate", "source": "draft", "dest": "active"},

    {"trigger": "complete", "source": "draft", "dest": "completed"},
    {"trigger": "complete", "source": "active", "dest": "completed"},

    {"trigger": "cancel", "source": "draft", "dest": "cancelled"},
    {"trigger": "cancel", "source": "active", "dest": "cancelled"},
    {"trigger": "cancel", "source": "completed", "dest": "cancelled"},

    {"trigger": "archive", "source": "completed", "dest": "archived"},
    {"trigger": "archive", "source": "cancelled", "dest": "archived"},

    # Archived plans always come back as completed
    {"trigger": "unarchive", "source": "archived", "dest": "completed"},
]


def _build_trigger_lookup(transitions: list[dict]) -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in transitions:
        key = (t["source"], t["dest"])
        if key not in lookup:  # First trigger wins for a given source->dest
            lookup[key] = t["trigger"]
    return lookup


def _build_allow_map(states: list[str], transitions: list[dict]) -> dict[tuple[str, str], bool]:
    """Build the full (source, dest) -> allowed matrix over every state pair."""
    edges = {(t["source"], t["dest"]) for t in transitions}
    return {(src, dst): (src, dst) in edges for src in states for dst in states}


TASK_TRIGGER_FOR = _build_trigger_lookup(TASK_TRANSITIONS)
STAGING_TRIGGER_FOR = _build_trigger_lookup(STAGING_TRANSITIONS)
PLAN_TRIGGER_FOR = _build_trigger_lookup(PLAN_TRANSITIONS)

TASK_ALLOWED = _build_allow_map(TASK_STATES, TASK_TRANSITIONS)
STAGING_ALLOWED = _build_allow_map(STAGING_STATES, STAGING_TRANSITIONS)
PLAN_ALLOWED = _build_allow_map(PLAN_STATES, PLAN_TRANSITIONS)


def allowed_targets(allow_map: dict[tuple[str, str], bool], source: str) -> list[str]:
    """Targets reachable in one step from `source`, in declaration order of states."""
    return [dst for (src, dst), ok in allow_map.items() if src == source and ok]


def allowed_sources(allow_map: dict[tuple[str, str], bool], dest: str) -> list[str]:
    """States from which `dest` is reachable in one step."""
    return [src for (src, dst), ok in allow_map.items() if dst == dest and ok]


class EntityFSM:
    """State machine bound to a single entity with a `status` enum field.

    Subclasses declare the state/transition tables and the status enum.
    """

    KIND = "entity"
    STATES: list[str] = []
    TRANSITIONS: list[dict] = []
    STATUS_ENUM: type[Enum]

    def __init__(self, entity, on_transition: Callable[[str, str, str], None] | None = None):
        """Initialize FSM for an entity.

        Args:
            entity: Task, Staging or Plan whose `status` drives the machine
            on_transition: Optional callback(from_state, to_state, trigger) called after transitions
        """
        self.entity = entity
        self.entity_id = entity.id
        self.on_transition = on_transition

        initial = entity.status.value
        if initial not in self.STATES:
            raise ValueError(f"{self.KIND} {self.entity_id}: unknown state '{initial}'")

        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial=initial,
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        """Write the new status back onto the entity and log the transition."""
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        self.entity.status = self.STATUS_ENUM(to_state)
        logger.info(f"[FSM] {self.KIND} {self.entity_id}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        return self.machine.get_triggers(self.state)


class TaskFSM(EntityFSM):
    KIND = "task"
    STATES = TASK_STATES
    TRANSITIONS = TASK_TRANSITIONS
    STATUS_ENUM = TaskStatus


class StagingFSM(EntityFSM):
    KIND = "staging"
    STATES = STAGING_STATES
    TRANSITIONS = STAGING_TRANSITIONS
    STATUS_ENUM = StagingStatus


class PlanFSM(EntityFSM):
    KIND = "plan"
    STATES = PLAN_STATES
    TRANSITIONS = PLAN_TRANSITIONS
    STATUS_ENUM = PlanStatus
