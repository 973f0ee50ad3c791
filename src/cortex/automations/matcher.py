"""Automation matcher — turn an event into pending runs."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from cortex.automations.conditions import ConditionEvaluator
from cortex.automations.models import (
    SCHEDULE_EVENT_TYPE,
    SCHEDULE_SOURCE,
    Event,
    Run,
    Unit,
)
from cortex.automations.triggers import evaluate_trigger
from cortex.storage.rules import RuleStore

logger = logging.getLogger(__name__)


def schedule_tick(owner_id: str, now: datetime) -> Event:
    """Build the per-owner schedule event for the minute containing *now*."""
    minute = now.astimezone(UTC).replace(second=0, microsecond=0)
    stamp = minute.strftime("%Y%m%dT%H%M")
    return Event(
        id=f"tick_{owner_id}_{stamp}",
        source=SCHEDULE_SOURCE,
        event_type=SCHEDULE_EVENT_TYPE,
        owner_id=owner_id,
        payload={"minute": minute.isoformat()},
        timestamp=minute,
        dedupe_key=f"schedule:{owner_id}:{stamp}",
    )


class AutomationMatcher:
    """Finds the units an event fires and creates one pending run for each.

    Candidates come from the rule store's trigger index, which only returns
    active units for the event's owner. Each candidate's trigger and
    conditions are evaluated concurrently and independently; an evaluation
    error only drops that unit. A run is persisted before it is returned,
    and the (unit, event) uniqueness constraint keeps a replayed event from
    producing a second run.
    """

    def __init__(self, rules: RuleStore, conditions: ConditionEvaluator) -> None:
        self._rules = rules
        self._conditions = conditions

    async def match(self, event: Event) -> list[Run]:
        """Return the new pending runs created for *event*."""
        candidates = self._rules.find_candidate_units(
            event.owner_id, event.source, event.event_type
        )
        if not candidates:
            logger.debug("No candidate units for %s/%s", event.source, event.event_type)
            return []

        verdicts = await asyncio.gather(*(self._unit_fires(u, event) for u in candidates))
        runs: list[Run] = []
        for unit, fires in zip(candidates, verdicts, strict=True):
            if not fires:
                continue
            run = Run.for_event(unit.id, event)
            if self._rules.create_run(run):
                logger.info(
                    "Unit %s (%s) matched event %s -> run %s", unit.id, unit.name, event.id, run.id
                )
                runs.append(run)
            else:
                logger.debug("Run for unit %s and event %s already exists", unit.id, event.id)
        return runs

    async def _unit_fires(self, unit: Unit, event: Event) -> bool:
        """Trigger and conditions for one unit; any error counts as not fired."""
        if not unit.is_active:
            return False
        try:
            if not evaluate_trigger(unit.trigger, event):
                logger.debug("Trigger of unit %s did not match event %s", unit.id, event.id)
                return False
            return await self._conditions.evaluate_all(unit.conditions, event)
        except Exception:
            logger.exception("Evaluating unit %s against event %s failed", unit.id, event.id)
            return False

    def schedule_ticks(self, now: datetime | None = None) -> list[Event]:
        """One tick event per owner that has active schedule-triggered units."""
        now = now or datetime.now(UTC)
        return [schedule_tick(owner, now) for owner in self._rules.schedule_owners()]
