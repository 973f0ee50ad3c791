"""Contracts for the external collaborators the engine calls into."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

from cortex.errors import ToolExecutionError


@runtime_checkable
class SemanticClassifier(Protocol):
    """Boolean oracle behind ``semantic`` conditions."""

    async def classify(self, prompt: str, text: str, expected: str) -> bool:
        """Return True if *text* answers *prompt* with the *expected* label."""
        ...


@runtime_checkable
class TextGenerator(Protocol):
    """Language model behind ``llm`` actions."""

    async def generate(self, instruction: str, text: str) -> str:
        """Apply *instruction* to *text* and return the generated text."""
        ...


@runtime_checkable
class ToolExecutor(Protocol):
    """Runs provider tools (send email, fetch records, ...)."""

    async def execute(self, tool: str, args: dict[str, Any], owner_id: str) -> Any:
        """Execute *tool* for *owner_id*. Raises on failure."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Fire-and-forget message delivery."""

    async def notify(self, owner_id: str, message: str, channel: str | None = None) -> None:
        """Deliver *message* to *owner_id*."""
        ...


async def call_tool(
    executor: ToolExecutor,
    tool: str,
    args: dict[str, Any],
    owner_id: str,
    timeout: float | None = None,
) -> Any:
    """Run *tool* through *executor*, normalizing failures to ToolExecutionError.

    The executor's own error message is kept verbatim.
    """
    try:
        return await asyncio.wait_for(executor.execute(tool, args, owner_id), timeout=timeout)
    except ToolExecutionError:
        raise
    except TimeoutError as exc:
        raise ToolExecutionError(f"Tool {tool} timed out after {timeout}s", tool=tool) from exc
    except Exception as exc:  # noqa: BLE001 - any executor failure fails the step
        raise ToolExecutionError(str(exc) or type(exc).__name__, tool=tool) from exc
