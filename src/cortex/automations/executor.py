"""Run executor — drives a run's action chain through its state machine.

States: ``pending -> in_progress -> {success, failed}``, with
``in_progress <-> paused`` for waits. Every transition is persisted before
the next step starts, so a crash leaves the run resumable at
``current_step``. Claims are conditional status updates in the rule store:
only the caller that moves a run out of ``pending`` or ``paused`` drives it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from cortex.automations.actions import ActionRunner
from cortex.automations.models import Event, Run, RunStep, Unit, action_to_dict
from cortex.errors import CortexError
from cortex.storage.rules import RuleStore

logger = logging.getLogger(__name__)


def _log_context(run: Run, **fields: object) -> dict[str, object]:
    """``extra=`` fields picked up by the JSON log formatter."""
    return {
        "run_id": run.id,
        "unit_id": run.unit_id,
        "event_id": run.event_id,
        "owner_id": run.owner_id,
        **fields,
    }


class RunExecutor:
    """Executes runs step by step against the rule store."""

    def __init__(
        self,
        rules: RuleStore,
        actions: ActionRunner,
        clock: Callable[[], datetime] | None = None,
        max_concurrent_runs: int = 16,
    ) -> None:
        self._rules = rules
        self._actions = actions
        self._clock = clock or (lambda: datetime.now(UTC))
        # Shared by fresh and resumed runs
        self._slots = asyncio.Semaphore(max_concurrent_runs)

    async def execute(self, run: Run) -> Run:
        """Claim a pending run and drive it until it finishes or pauses.

        A run that someone else already claimed is returned as stored,
        without executing anything.
        """
        if not self._rules.claim_run(run.id, "pending"):
            logger.debug("Run %s already claimed", run.id)
            return self._rules.get_run(run.id) or run
        claimed = self._rules.get_run(run.id)
        if claimed is None:
            raise CortexError(f"Run {run.id} vanished after claim")
        logger.info(
            "Executing run %s for unit %s",
            claimed.id,
            claimed.unit_id,
            extra=_log_context(claimed),
        )
        async with self._slots:
            return await self._drive(claimed)

    async def resume_waiting_runs(self, now: datetime | None = None) -> list[Run]:
        """Resume every paused run whose ``resume_at`` has passed.

        Each due run is claimed ``paused -> in_progress``; runs claimed by a
        concurrent sweep are skipped. A run whose resumption raises is logged
        and left out of the result without affecting the others.
        """
        now = now or self._clock()
        due = self._rules.due_runs(now)
        if not due:
            return []
        logger.debug("%d paused run(s) due for resumption", len(due))
        results = await asyncio.gather(
            *(self._resume(run, now) for run in due), return_exceptions=True
        )
        resumed: list[Run] = []
        for run, result in zip(due, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Resuming run %s failed: %s", run.id, result)
            elif result is not None:
                resumed.append(result)
        return resumed

    async def _resume(self, run: Run, now: datetime) -> Run | None:
        if not self._rules.claim_run(run.id, "paused"):
            logger.debug("Paused run %s claimed elsewhere", run.id)
            return None

        wait_step = self._rules.get_step(run.id, run.current_step)
        if wait_step is not None:
            wait_step.status = "success"
            wait_step.completed_at = now
            self._rules.upsert_step(wait_step)

        run.status = "in_progress"
        run.resume_at = None
        run.current_step += 1
        self._rules.save_run(run)
        logger.info(
            "Resumed run %s at step %d",
            run.id,
            run.current_step,
            extra=_log_context(run, step_index=run.current_step),
        )
        async with self._slots:
            return await self._drive(run)

    async def rerun(self, run_id: str) -> Run:
        """Execute the unit of *run_id* again on the event it originally saw."""
        previous = self._rules.get_run(run_id)
        if previous is None:
            raise CortexError(f"Run not found: {run_id}")
        if not previous.is_terminal:
            raise CortexError(
                f"Run {run_id} is still {previous.status}; only finished runs can be rerun"
            )
        if not previous.original_event:
            raise CortexError(f"Run {run_id} has no stored event to replay")

        event = Event.from_dict(previous.original_event)
        run = Run.for_event(previous.unit_id, event, event_id=f"rerun_{previous.event_id}")
        if not self._rules.create_run(run):
            raise CortexError(f"Run {run_id} has already been rerun")
        logger.info("Rerunning run %s as %s", run_id, run.id)
        return await self.execute(run)

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _drive(self, run: Run) -> Run:
        unit = self._rules.get_unit(run.unit_id, owner_id=run.owner_id)
        if unit is None:
            return self._finish(run, None, "failed", error=f"Unit not found: {run.unit_id}")

        while run.current_step < len(unit.actions):
            index = run.current_step
            action = unit.actions[index]
            step = RunStep(
                run_id=run.id,
                step_index=index,
                action_type=action.type,
                action_config=action_to_dict(action),
                started_at=self._clock(),
            )
            self._rules.upsert_step(step)

            try:
                resolved = self._actions.resolve(action, run.context)
                outcome = await self._actions.execute(resolved, run)
            except CortexError as exc:
                return self._fail_step(run, unit, step, exc.message)
            except Exception as exc:  # noqa: BLE001 - a failing step fails the run, not the sweep
                return self._fail_step(run, unit, step, str(exc) or type(exc).__name__)

            if outcome.resume_at is not None:
                step.status = "waiting"
                step.result = outcome.result
                self._rules.upsert_step(step)
                run.status = "paused"
                run.resume_at = outcome.resume_at
                self._rules.save_run(run)
                logger.info(
                    "Run %s paused at step %d until %s",
                    run.id,
                    index,
                    run.resume_at,
                    extra=_log_context(run, step_index=index),
                )
                return run

            step.status = "success"
            step.result = outcome.result
            step.completed_at = self._clock()
            self._rules.upsert_step(step)

            if outcome.store_as:
                run.context[outcome.store_as] = outcome.result
            run.current_step = index + 1

            if outcome.stop:
                logger.info("Run %s stopped early by check at step %d", run.id, index)
                return self._finish(run, unit, "success")
            self._rules.save_run(run)

        return self._finish(run, unit, "success")

    def _fail_step(self, run: Run, unit: Unit, step: RunStep, message: str) -> Run:
        step.status = "failed"
        step.error = message
        step.completed_at = self._clock()
        self._rules.upsert_step(step)
        logger.warning(
            "Run %s failed at step %d (%s): %s",
            run.id,
            step.step_index,
            step.action_type,
            message,
            extra=_log_context(run, step_index=step.step_index),
        )
        return self._finish(run, unit, "failed", error=message)

    def _finish(self, run: Run, unit: Unit | None, status: str, error: str | None = None) -> Run:
        now = self._clock()
        run.status = status
        run.completed_at = now
        run.error = error
        run.resume_at = None
        self._rules.save_run(run)
        if unit is not None:
            self._rules.record_unit_run(unit.id, status, now)
        logger.info("Run %s finished: %s", run.id, status, extra=_log_context(run))
        return run
