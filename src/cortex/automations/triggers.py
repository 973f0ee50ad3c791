"""Trigger evaluation — determine if a unit's trigger matches an event."""

from __future__ import annotations

import logging

from cortex.automations.expressions import evaluate
from cortex.automations.models import (
    SCHEDULE_EVENT_TYPE,
    SCHEDULE_SOURCE,
    CompoundTrigger,
    Event,
    EventTrigger,
    ScheduleTrigger,
    Trigger,
)
from cortex.automations.schedule import cron_matches
from cortex.errors import ExpressionError

logger = logging.getLogger(__name__)


def evaluate_trigger(trigger: Trigger, event: Event) -> bool:
    """Evaluate whether *trigger* matches *event*."""
    if isinstance(trigger, EventTrigger):
        return _match_event_trigger(trigger, event)
    if isinstance(trigger, ScheduleTrigger):
        return _match_schedule_trigger(trigger, event)
    if isinstance(trigger, CompoundTrigger):
        return _match_compound_trigger(trigger, event)
    raise TypeError(f"Unhandled trigger type: {type(trigger).__name__}")


def _match_event_trigger(trigger: EventTrigger, event: Event) -> bool:
    """Source/type equality plus the optional payload filter.

    A filter that fails to parse is treated as a non-match.
    """
    if trigger.source != event.source or trigger.event_type != event.event_type:
        return False
    if not trigger.filter:
        return True
    try:
        return evaluate(trigger.filter, {"payload": event.payload})
    except ExpressionError as exc:
        logger.warning("Trigger filter %r rejected: %s", trigger.filter, exc.message)
        return False


def _match_schedule_trigger(trigger: ScheduleTrigger, event: Event) -> bool:
    """Schedule ticks match when the cron covers the tick's minute."""
    if event.source != SCHEDULE_SOURCE or event.event_type != SCHEDULE_EVENT_TYPE:
        return False
    try:
        return cron_matches(trigger.cron, event.timestamp, trigger.timezone)
    except ValueError as exc:
        logger.warning("Schedule trigger %r rejected: %s", trigger.cron, exc)
        return False


def _match_compound_trigger(trigger: CompoundTrigger, event: Event) -> bool:
    if trigger.all_of and not all(evaluate_trigger(t, event) for t in trigger.all_of):
        return False
    if trigger.any_of and not any(evaluate_trigger(t, event) for t in trigger.any_of):
        return False
    return True
