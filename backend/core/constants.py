"""Constants and enums for the campaign execution engine."""

from enum import Enum


class NodeType(str, Enum):
    """Type of a node in a flow graph."""

    START = "start"
    ACTION = "action"
    DELAY = "delay"
    CONDITION = "condition"
    END = "end"


class DelayUnit(str, Enum):
    """Unit of a delay node duration."""

    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


# Seconds per delay unit
DELAY_UNIT_SECONDS: dict[str, int] = {
    DelayUnit.MINUTES.value: 60,
    DelayUnit.HOURS.value: 60 * 60,
    DelayUnit.DAYS.value: 24 * 60 * 60,
    DelayUnit.WEEKS.value: 7 * 24 * 60 * 60,
}


class PredicateType(str, Enum):
    """Predicates a condition node can evaluate."""

    ACTION_OPENED = "action_opened"
    ACTION_CLICKED = "action_clicked"
    CONVERSION_OCCURRED = "conversion_occurred"
    IDLE_SINCE = "idle_since"


class Branch(str, Enum):
    """Label on a condition node's outgoing edge."""

    TRUE = "true"
    FALSE = "false"


class FlowStatus(str, Enum):
    """Lifecycle status of a flow."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    QUEUED = "queued"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class RunStatus(str, Enum):
    """Status of one run of a flow for one subject."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    """Event types recorded in the event log."""

    # Written by the engine
    STARTED = "started"
    ACTION_DISPATCHED = "action_dispatched"
    DELAY_SCHEDULED = "delay_scheduled"
    CONDITION_EVALUATED = "condition_evaluated"
    COMPLETED = "completed"
    LOOP_GUARD_TRIPPED = "loop_guard_tripped"
    RUN_ERRORED = "run_errored"

    # Tracked from outside (delivery receipts, site activity)
    ACTION_OPENED = "action_opened"
    ACTION_CLICKED = "action_clicked"
    CONVERSION = "conversion"
    PAGE_VIEW = "page_view"
    CUSTOM = "custom"


TRACKABLE_EVENT_TYPES: frozenset[str] = frozenset({
    EventType.ACTION_OPENED.value,
    EventType.ACTION_CLICKED.value,
    EventType.CONVERSION.value,
    EventType.PAGE_VIEW.value,
    EventType.CUSTOM.value,
})


class FailedTaskKind(str, Enum):
    """Origin of a permanent failure record."""

    DEFERRED = "deferred"
    JOB = "job"


class RunOutcome(str, Enum):
    """What happened when the engine processed a run."""

    COMPLETED = "completed"
    SUSPENDED = "suspended"  # waiting on a deferred task
    RETRY = "retry"          # transient failure, run left in place
    ERRORED = "errored"
    NOOP = "noop"            # stale or already-advanced work
    REJECTED = "rejected"    # flow definition failed to parse
