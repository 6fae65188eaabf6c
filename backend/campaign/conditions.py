"""Condition evaluation against a subject's recent event history."""

from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import structlog

from core.constants import EventType, PredicateType

logger = structlog.get_logger(__name__)

DEFAULT_IDLE_DAYS = 7

# Predicate -> event type that satisfies it
_MATCHING_EVENT = {
    PredicateType.ACTION_OPENED.value: EventType.ACTION_OPENED.value,
    PredicateType.ACTION_CLICKED.value: EventType.ACTION_CLICKED.value,
    PredicateType.CONVERSION_OCCURRED.value: EventType.CONVERSION.value,
}


def _idle_days(params: dict[str, Any]) -> float:
    try:
        days = float(params.get("days", DEFAULT_IDLE_DAYS))
    except (TypeError, ValueError):
        return DEFAULT_IDLE_DAYS
    return days if days >= 0 else DEFAULT_IDLE_DAYS


def evaluate_condition(
    predicate_type: str,
    params: Optional[dict[str, Any]],
    events: Iterable[Any],
    now: datetime,
) -> bool:
    """Evaluate a condition node's predicate.

    Args:
        predicate_type: One of ``PredicateType``
        params: Predicate parameters (``days`` for ``idle_since``)
        events: Events in the lookback window; anything with ``type`` and
            ``timestamp`` attributes
        now: Evaluation time (naive UTC)

    Returns:
        The predicate result. Unknown predicates evaluate to False.
    """
    params = params or {}
    events = list(events)

    wanted = _MATCHING_EVENT.get(predicate_type)
    if wanted is not None:
        return any(e.type == wanted for e in events)

    if predicate_type == PredicateType.IDLE_SINCE.value:
        if not events:
            return True
        latest = max(e.timestamp for e in events)
        return now - latest >= timedelta(days=_idle_days(params))

    logger.warning("Unknown predicate type, evaluating to false", predicate_type=predicate_type)
    return False
