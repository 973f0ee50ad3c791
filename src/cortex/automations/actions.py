"""Action execution — carry out one step of a run."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from cortex.automations.expressions import evaluate
from cortex.automations.models import (
    Action,
    CheckAction,
    FetchAction,
    LLMAction,
    LogAction,
    NotifyAction,
    Run,
    ToolAction,
    WaitAction,
    action_from_dict,
    action_to_dict,
)
from cortex.automations.schedule import parse_duration
from cortex.automations.templates import resolve_value
from cortex.cache.fetch_dedup import FetchRequest
from cortex.cache.fetcher import CachingFetcher
from cortex.errors import ActionError
from cortex.protocols import NotificationSink, TextGenerator, ToolExecutor, call_tool

logger = logging.getLogger(__name__)

LLM_INSTRUCTIONS: dict[str, str] = {
    "summarize": "Summarize this concisely in 2-3 sentences.",
    "draft_reply": "Draft a professional, friendly reply to this email.",
    "extract_action_items": "List the action items from this text as bullet points.",
    "analyze_sentiment": "Analyze the sentiment and key points.",
}


@dataclass
class StepOutcome:
    """What a step produced and how the run should proceed."""

    result: Any = None
    store_as: str | None = None
    resume_at: datetime | None = None  # set by wait: pause the run
    stop: bool = False  # set by check: finish the run early with success


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class ActionRunner:
    """Dispatches actions to the collaborators that perform them.

    Placeholders in the action config are resolved against the run context
    first; an unresolvable reference fails the step before anything runs.
    Missing collaborators fail the step with :class:`ActionError`.
    """

    def __init__(
        self,
        tool_executor: ToolExecutor | None = None,
        text_generator: TextGenerator | None = None,
        notifier: NotificationSink | None = None,
        fetcher: CachingFetcher | None = None,
        tool_timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tools = tool_executor
        self._llm = text_generator
        self._notifier = notifier
        self._fetcher = fetcher
        self._tool_timeout = tool_timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    @staticmethod
    def resolve(action: Action, context: dict[str, Any]) -> Action:
        """Return *action* with every placeholder resolved against *context*."""
        if isinstance(action, CheckAction):
            # Check expressions read the context directly.
            return action
        return action_from_dict(resolve_value(action_to_dict(action), context))

    async def execute(self, action: Action, run: Run) -> StepOutcome:
        """Execute a resolved action for *run*."""
        if isinstance(action, ToolAction):
            return await self._action_tool(action, run)
        if isinstance(action, LLMAction):
            return await self._action_llm(action)
        if isinstance(action, NotifyAction):
            return await self._action_notify(action, run)
        if isinstance(action, WaitAction):
            return self._action_wait(action)
        if isinstance(action, CheckAction):
            return self._action_check(action, run)
        if isinstance(action, FetchAction):
            return await self._action_fetch(action, run)
        if isinstance(action, LogAction):
            return self._action_log(action, run)
        raise ActionError(f"Unknown action type: {type(action).__name__}")

    async def _action_tool(self, action: ToolAction, run: Run) -> StepOutcome:
        if self._tools is None:
            raise ActionError("No tool executor configured", action_type="tool")
        result = await call_tool(
            self._tools, action.tool, action.args, run.owner_id, timeout=self._tool_timeout
        )
        return StepOutcome(result=result, store_as=action.store_as)

    async def _action_llm(self, action: LLMAction) -> StepOutcome:
        if self._llm is None:
            raise ActionError("No language model configured", action_type="llm")
        instruction = LLM_INSTRUCTIONS.get(action.prompt, action.prompt)
        text = await self._llm.generate(instruction, _as_text(action.input))
        return StepOutcome(result=text, store_as=action.store_as)

    async def _action_notify(self, action: NotifyAction, run: Run) -> StepOutcome:
        if self._notifier is None:
            raise ActionError("No notification sink configured", action_type="notify")
        await self._notifier.notify(run.owner_id, action.message, action.channel)
        return StepOutcome(result={"delivered": True, "channel": action.channel})

    def _action_wait(self, action: WaitAction) -> StepOutcome:
        try:
            delay = parse_duration(action.duration)
        except ValueError as exc:
            raise ActionError(str(exc), action_type="wait") from exc
        resume_at = self._clock() + delay
        return StepOutcome(result={"resume_at": resume_at.isoformat()}, resume_at=resume_at)

    @staticmethod
    def _action_check(action: CheckAction, run: Run) -> StepOutcome:
        passed = evaluate(action.that, run.context)
        outcome = action.then if passed else action.otherwise
        return StepOutcome(result={"passed": passed, "outcome": outcome}, stop=outcome == "stop")

    async def _action_fetch(self, action: FetchAction, run: Run) -> StepOutcome:
        if self._fetcher is None:
            raise ActionError("No fetcher configured", action_type="fetch")
        request = FetchRequest(tool=action.tool, provider=action.provider, args=action.args)
        entities = await self._fetcher.fetch(
            run.owner_id, request, action.entity_type, run.owner_id
        )
        return StepOutcome(result=[e.to_dict() for e in entities], store_as=action.store_as)

    @staticmethod
    def _action_log(action: LogAction, run: Run) -> StepOutcome:
        logger.info("Run %s: %s", run.id, action.message)
        return StepOutcome(result=action.message)
