"""Shared test fixtures for the Cortex test suite."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from cortex.automations.models import Event, Unit
from cortex.storage.kv import MemoryKV
from cortex.storage.rules import RuleStore


class FakeClock:
    """Settable clock returning both epoch seconds and aware datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()


class FakeTools:
    """Tool executor that records calls and returns canned results."""

    def __init__(self, results: dict[str, Any] | None = None) -> None:
        self.results = results or {}
        self.calls: list[tuple[str, dict[str, Any], str]] = []

    async def execute(self, tool: str, args: dict[str, Any], owner_id: str) -> Any:
        self.calls.append((tool, args, owner_id))
        result = self.results.get(tool, {"ok": True})
        if isinstance(result, Exception):
            raise result
        return result


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str | None]] = []

    async def notify(self, owner_id: str, message: str, channel: str | None = None) -> None:
        self.sent.append((owner_id, message, channel))


class FakeLLM:
    """Text generator and classifier in one."""

    def __init__(self, answer: str = "generated", verdict: bool = True) -> None:
        self.answer = answer
        self.verdict = verdict
        self.prompts: list[tuple[str, str]] = []

    async def generate(self, instruction: str, text: str) -> str:
        self.prompts.append((instruction, text))
        return self.answer

    async def classify(self, prompt: str, text: str, expected: str) -> bool:
        self.prompts.append((prompt, text))
        return self.verdict


def make_event(
    payload: dict[str, Any] | None = None,
    source: str = "gmail",
    event_type: str = "new_email",
    owner_id: str = "u1",
    **kwargs: Any,
) -> Event:
    return Event(
        source=source,
        event_type=event_type,
        owner_id=owner_id,
        payload=payload if payload is not None else {"from": "a@x.com", "subject": "Invoice 42"},
        **kwargs,
    )


def make_unit(
    actions: list[dict[str, Any]] | None = None,
    trigger: dict[str, Any] | None = None,
    conditions: list[dict[str, Any]] | None = None,
    owner_id: str = "u1",
    **kwargs: Any,
) -> Unit:
    data: dict[str, Any] = {
        "owner_id": owner_id,
        "name": kwargs.pop("name", "test unit"),
        "trigger": trigger or {"type": "event", "source": "gmail", "event_type": "new_email"},
        "conditions": conditions or [],
        "actions": actions or [{"type": "log", "message": "hi"}],
    }
    data.update(kwargs)
    return Unit.from_dict(data)


@pytest.fixture
def rules(tmp_path: Path) -> Iterator[RuleStore]:
    store = RuleStore(tmp_path / "cortex.db")
    yield store
    store.close()


@pytest.fixture
def kv() -> MemoryKV:
    return MemoryKV()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
