"""Ollama client for llm actions and semantic conditions."""

from __future__ import annotations

import logging

import httpx

from cortex.errors import ClassifierUnavailableError

logger = logging.getLogger(__name__)


class OllamaClient:
    """Ollama chat API client.

    Satisfies both :class:`~cortex.protocols.TextGenerator` and
    :class:`~cortex.protocols.SemanticClassifier`.
    """

    def __init__(
        self,
        model: str = "llama3.1:8b",
        host: str = "http://localhost:11434",
        classifier_model: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._model = model
        self._classifier_model = classifier_model or model
        self._host = host.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def _chat(self, model: str, system: str, user: str, max_tokens: int) -> str:
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "stream": False,
            "options": {"num_predict": max_tokens},
        }
        async with httpx.AsyncClient(transport=self._transport) as client:
            resp = await client.post(f"{self._host}/api/chat", json=payload, timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
        return data.get("message", {}).get("content", "")

    async def generate(self, instruction: str, text: str) -> str:
        """Apply *instruction* to *text*. HTTP failures propagate."""
        return await self._chat(self._model, instruction, text, max_tokens=1024)

    async def classify(self, prompt: str, text: str, expected: str) -> bool:
        """Ask the classifier model *prompt* about *text*.

        The answer matches when it contains any of the comma-separated
        *expected* labels, case-insensitively.

        Raises:
            ClassifierUnavailableError: if Ollama cannot be reached or errors.
        """
        try:
            answer = await self._chat(self._classifier_model, prompt, text, max_tokens=16)
        except httpx.HTTPError as exc:
            raise ClassifierUnavailableError(f"Ollama classify failed: {exc}") from exc

        answer = answer.strip().lower()
        labels = [label.strip().lower() for label in expected.split(",") if label.strip()]
        matched = any(label in answer for label in labels)
        logger.debug("Classifier answered %r (expected %r): %s", answer, expected, matched)
        return matched
