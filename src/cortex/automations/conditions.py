"""Condition evaluation — determine if all of a unit's conditions pass."""

from __future__ import annotations

import asyncio
import logging

from cortex.automations.expressions import evaluate
from cortex.automations.models import Condition, EvalCondition, Event, SemanticCondition
from cortex.automations.templates import resolve_value
from cortex.errors import ExpressionError, TemplateResolutionError
from cortex.protocols import SemanticClassifier

logger = logging.getLogger(__name__)

DEFAULT_SEMANTIC_INPUT = "{{payload.body_text}}"
MAX_CLASSIFIER_INPUT = 2000

SEMANTIC_PROMPTS: dict[str, str] = {
    "urgency": "Does this require urgent attention? Reply with exactly one word: urgent or normal.",
    "sentiment": (
        "What is the sentiment of this text? Reply with exactly one word: "
        "positive, negative or neutral."
    ),
    "intent": (
        "What is the sender's primary intent? Reply with exactly one word, "
        "for example: request, question, complaint, update or other."
    ),
}


class ConditionEvaluator:
    """Evaluates conditions in order, failing closed on classifier trouble.

    Args:
        classifier: Semantic classifier, or None to fail every semantic condition
        timeout: Seconds to wait for one classification
    """

    def __init__(self, classifier: SemanticClassifier | None = None, timeout: float = 15.0):
        self._classifier = classifier
        self._timeout = timeout

    async def evaluate_all(self, conditions: list[Condition], event: Event) -> bool:
        """Evaluate ALL conditions (AND logic). Empty list returns True."""
        for condition in conditions:
            if not await self.evaluate(condition, event):
                logger.debug("Condition %s not met for event %s", condition.type, event.id)
                return False
        return True

    async def evaluate(self, condition: Condition, event: Event) -> bool:
        """Evaluate a single condition."""
        if isinstance(condition, EvalCondition):
            return self._check_eval(condition, event)
        if isinstance(condition, SemanticCondition):
            return await self._check_semantic(condition, event)
        raise TypeError(f"Unhandled condition type: {type(condition).__name__}")

    @staticmethod
    def _check_eval(condition: EvalCondition, event: Event) -> bool:
        try:
            return evaluate(condition.expr, {"payload": event.payload, "event": event.to_dict()})
        except ExpressionError as exc:
            logger.warning("Eval condition %r rejected: %s", condition.expr, exc.message)
            return False

    async def _check_semantic(self, condition: SemanticCondition, event: Event) -> bool:
        if self._classifier is None:
            logger.warning("No semantic classifier; %s condition not met", condition.check)
            return False

        prompt = condition.prompt or SEMANTIC_PROMPTS.get(condition.check, "")
        source = condition.input or DEFAULT_SEMANTIC_INPUT
        try:
            text = resolve_value(source, {"payload": event.payload})
        except TemplateResolutionError:
            text = ""
        text = str(text or "")[:MAX_CLASSIFIER_INPUT]

        try:
            return bool(
                await asyncio.wait_for(
                    self._classifier.classify(prompt, text, condition.expect),
                    timeout=self._timeout,
                )
            )
        except Exception as exc:  # noqa: BLE001 - fail closed
            logger.warning(
                "Semantic classifier unavailable for %s check on event %s: %s",
                condition.check,
                event.id,
                exc,
            )
            return False
