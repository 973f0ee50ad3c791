"""Automation data models: events, units, runs and their tagged unions."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from cortex.errors import UnitValidationError

UNIT_STATUSES = ("active", "paused", "disabled")
RUN_STATUSES = ("pending", "in_progress", "success", "failed", "paused")
STEP_STATUSES = ("running", "waiting", "success", "failed")
TERMINAL_RUN_STATUSES = ("success", "failed")

# Schedule sub-triggers are indexed under this pseudo source/type pair, which
# is also the shape of the tick events the runtime emits every minute.
SCHEDULE_SOURCE = "schedule"
SCHEDULE_EVENT_TYPE = "tick"


def _now() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ======================================================================
# Event
# ======================================================================


@dataclass(frozen=True)
class Event:
    """An inbound event as produced by ingestion. Immutable once built."""

    source: str
    event_type: str
    owner_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=_now)
    dedupe_key: str = ""

    def __post_init__(self) -> None:
        if not self.dedupe_key:
            object.__setattr__(self, "dedupe_key", f"{self.source}:{self.event_type}:{self.id}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "event_type": self.event_type,
            "owner_id": self.owner_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "dedupe_key": self.dedupe_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        return cls(
            id=data["id"],
            source=data["source"],
            event_type=data["event_type"],
            owner_id=data["owner_id"],
            payload=data.get("payload") or {},
            timestamp=_parse_dt(data.get("timestamp")) or _now(),
            dedupe_key=data.get("dedupe_key", ""),
        )


# ======================================================================
# Triggers
# ======================================================================


@dataclass
class EventTrigger:
    """Fires on events with a given source and type, optionally filtered."""

    source: str
    event_type: str
    filter: str | None = None
    type: str = field(default="event", init=False)


@dataclass
class ScheduleTrigger:
    """Fires on the schedule tick whose minute matches a cron expression."""

    cron: str
    timezone: str = "UTC"
    type: str = field(default="schedule", init=False)


@dataclass
class CompoundTrigger:
    """Fires when any (or all) of its sub-triggers match."""

    any_of: list[EventTrigger | ScheduleTrigger] = field(default_factory=list)
    all_of: list[EventTrigger | ScheduleTrigger] = field(default_factory=list)
    type: str = field(default="compound", init=False)

    def leaves(self) -> list[EventTrigger | ScheduleTrigger]:
        return [*self.any_of, *self.all_of]


Trigger = EventTrigger | ScheduleTrigger | CompoundTrigger


def _simple_trigger_from_dict(data: dict[str, Any]) -> EventTrigger | ScheduleTrigger:
    kind = data.get("type")
    if kind == "event":
        if not data.get("source") or not data.get("event_type"):
            raise UnitValidationError("event trigger requires source and event_type")
        return EventTrigger(
            source=data["source"], event_type=data["event_type"], filter=data.get("filter")
        )
    if kind == "schedule":
        if not data.get("cron"):
            raise UnitValidationError("schedule trigger requires cron")
        return ScheduleTrigger(cron=data["cron"], timezone=data.get("timezone", "UTC"))
    raise UnitValidationError(f"Unknown trigger type: {kind!r}", {"trigger": data})


def trigger_from_dict(data: dict[str, Any]) -> Trigger:
    """Build a trigger from its JSON shape, rejecting unknown types."""
    if data.get("type") == "compound":
        trigger = CompoundTrigger(
            any_of=[_simple_trigger_from_dict(t) for t in data.get("any") or []],
            all_of=[_simple_trigger_from_dict(t) for t in data.get("all") or []],
        )
        if not trigger.leaves():
            raise UnitValidationError("compound trigger requires at least one sub-trigger")
        return trigger
    return _simple_trigger_from_dict(data)


def trigger_to_dict(trigger: Trigger) -> dict[str, Any]:
    if isinstance(trigger, CompoundTrigger):
        return {
            "type": "compound",
            "any": [asdict(t) for t in trigger.any_of],
            "all": [asdict(t) for t in trigger.all_of],
        }
    return asdict(trigger)


# ======================================================================
# Conditions
# ======================================================================


@dataclass
class EvalCondition:
    """Restricted boolean expression over the event payload."""

    expr: str
    type: str = field(default="eval", init=False)


@dataclass
class SemanticCondition:
    """Boolean question delegated to the semantic classifier."""

    check: str  # "urgency" | "sentiment" | "intent" | "custom"
    expect: str
    prompt: str | None = None
    input: str | None = None
    type: str = field(default="semantic", init=False)


Condition = EvalCondition | SemanticCondition

SEMANTIC_CHECKS = ("urgency", "sentiment", "intent", "custom")


def condition_from_dict(data: dict[str, Any]) -> Condition:
    kind = data.get("type")
    if kind == "eval":
        if not data.get("expr"):
            raise UnitValidationError("eval condition requires expr")
        return EvalCondition(expr=data["expr"])
    if kind == "semantic":
        check = data.get("check", "custom")
        if check not in SEMANTIC_CHECKS:
            raise UnitValidationError(f"Unknown semantic check: {check!r}")
        if check == "custom" and not data.get("prompt"):
            raise UnitValidationError("custom semantic condition requires prompt")
        return SemanticCondition(
            check=check,
            expect=str(data.get("expect", "")),
            prompt=data.get("prompt"),
            input=data.get("input"),
        )
    raise UnitValidationError(f"Unknown condition type: {kind!r}", {"condition": data})


# ======================================================================
# Actions
# ======================================================================


@dataclass
class ToolAction:
    tool: str
    args: dict[str, Any] = field(default_factory=dict)
    store_as: str | None = None
    type: str = field(default="tool", init=False)


@dataclass
class LLMAction:
    prompt: str  # summarize | draft_reply | extract_action_items | analyze_sentiment | raw text
    input: str = ""
    store_as: str | None = None
    type: str = field(default="llm", init=False)


@dataclass
class NotifyAction:
    message: str
    channel: str | None = None
    type: str = field(default="notify", init=False)


@dataclass
class WaitAction:
    duration: str  # "30m", "2h", "1d", "1w"
    type: str = field(default="wait", init=False)


@dataclass
class CheckAction:
    that: str
    then: str = "continue"
    otherwise: str = "stop"
    type: str = field(default="check", init=False)


@dataclass
class FetchAction:
    """Fetch records through the caching fetcher and store the entities."""

    tool: str
    provider: str
    entity_type: str
    args: dict[str, Any] = field(default_factory=dict)
    store_as: str | None = None
    type: str = field(default="fetch", init=False)


@dataclass
class LogAction:
    message: str
    type: str = field(default="log", init=False)


Action = ToolAction | LLMAction | NotifyAction | WaitAction | CheckAction | FetchAction | LogAction

_CHECK_OUTCOMES = ("continue", "stop")


def _require(data: dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if data.get(k) in (None, "")]
    if missing:
        raise UnitValidationError(
            f"{data.get('type')} action missing required field(s): {', '.join(missing)}",
            {"action": data},
        )


def action_from_dict(data: dict[str, Any]) -> Action:
    """Build an action from its JSON shape, rejecting unknown types."""
    kind = data.get("type")
    store_as = data.get("as", data.get("store_as"))
    if kind == "tool":
        _require(data, "tool")
        return ToolAction(tool=data["tool"], args=data.get("args") or {}, store_as=store_as)
    if kind == "llm":
        _require(data, "prompt")
        return LLMAction(prompt=data["prompt"], input=data.get("input", ""), store_as=store_as)
    if kind == "notify":
        _require(data, "message")
        return NotifyAction(message=data["message"], channel=data.get("channel"))
    if kind == "wait":
        _require(data, "duration")
        return WaitAction(duration=str(data["duration"]))
    if kind == "check":
        _require(data, "that")
        then = data.get("then", "continue")
        otherwise = data.get("else", data.get("otherwise", "stop"))
        if then not in _CHECK_OUTCOMES or otherwise not in _CHECK_OUTCOMES:
            raise UnitValidationError("check outcomes must be 'continue' or 'stop'")
        return CheckAction(that=data["that"], then=then, otherwise=otherwise)
    if kind == "fetch":
        _require(data, "tool", "provider", "entity_type")
        return FetchAction(
            tool=data["tool"],
            provider=data["provider"],
            entity_type=data["entity_type"],
            args=data.get("args") or {},
            store_as=store_as,
        )
    if kind == "log":
        _require(data, "message")
        return LogAction(message=data["message"])
    raise UnitValidationError(f"Unknown action type: {kind!r}", {"action": data})


def action_to_dict(action: Action) -> dict[str, Any]:
    data = asdict(action)
    if "store_as" in data:
        data["as"] = data.pop("store_as")
    if isinstance(action, CheckAction):
        data["else"] = data.pop("otherwise")
    return data


def condition_to_dict(condition: Condition) -> dict[str, Any]:
    return asdict(condition)


# ======================================================================
# Unit
# ======================================================================


@dataclass
class Unit:
    """A stored automation: trigger -> conditions -> actions."""

    owner_id: str
    name: str
    trigger: Trigger
    actions: list[Action]
    conditions: list[Condition] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    description: str = ""
    status: str = "active"
    run_count: int = 0
    last_run_at: datetime | None = None
    last_run_status: str | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.status not in UNIT_STATUSES:
            raise UnitValidationError(f"Invalid unit status: {self.status!r}")
        if not self.actions:
            raise UnitValidationError("unit requires at least one action")

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "trigger": trigger_to_dict(self.trigger),
            "conditions": [condition_to_dict(c) for c in self.conditions],
            "actions": [action_to_dict(a) for a in self.actions],
            "status": self.status,
            "run_count": self.run_count,
            "last_run_at": _iso(self.last_run_at),
            "last_run_status": self.last_run_status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Unit:
        """Build a Unit from compiled rule JSON.

        Raises:
            UnitValidationError: if the trigger, a condition or an action is malformed.
        """
        if not isinstance(data.get("trigger"), dict):
            raise UnitValidationError("unit requires a trigger object")
        if not data.get("owner_id"):
            raise UnitValidationError("unit requires owner_id")
        kwargs: dict[str, Any] = {
            "owner_id": data["owner_id"],
            "name": data.get("name", ""),
            "description": data.get("description", ""),
            "trigger": trigger_from_dict(data["trigger"]),
            "conditions": [condition_from_dict(c) for c in data.get("conditions") or []],
            "actions": [action_from_dict(a) for a in data.get("actions") or []],
            "status": data.get("status", "active"),
            "run_count": data.get("run_count", 0),
            "last_run_at": _parse_dt(data.get("last_run_at")),
            "last_run_status": data.get("last_run_status"),
        }
        if data.get("id"):
            kwargs["id"] = data["id"]
        if data.get("created_at"):
            kwargs["created_at"] = _parse_dt(data["created_at"])
        if data.get("updated_at"):
            kwargs["updated_at"] = _parse_dt(data["updated_at"])
        return cls(**kwargs)


# ======================================================================
# Runs
# ======================================================================


@dataclass
class Run:
    """One execution of a Unit against one Event."""

    unit_id: str
    event_id: str
    owner_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = "pending"
    current_step: int = 0
    context: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    error: str | None = None
    resume_at: datetime | None = None
    original_event: dict[str, Any] | None = None

    @classmethod
    def for_event(cls, unit_id: str, event: Event, event_id: str | None = None) -> Run:
        """New pending run whose context exposes the event as ``payload`` and ``event``."""
        return cls(
            unit_id=unit_id,
            event_id=event_id or event.id,
            owner_id=event.owner_id,
            context={
                "payload": event.payload,
                "event": {
                    "id": event.id,
                    "source": event.source,
                    "event_type": event.event_type,
                    "timestamp": event.timestamp.isoformat(),
                },
            },
            original_event=event.to_dict(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "unit_id": self.unit_id,
            "event_id": self.event_id,
            "owner_id": self.owner_id,
            "status": self.status,
            "current_step": self.current_step,
            "context": self.context,
            "started_at": self.started_at.isoformat(),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "resume_at": _iso(self.resume_at),
        }


@dataclass
class RunStep:
    """Audit record of one executed action within a Run."""

    run_id: str
    step_index: int
    action_type: str
    action_config: dict[str, Any]
    status: str = "running"
    result: Any = None
    error: str | None = None
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "step_index": self.step_index,
            "action_type": self.action_type,
            "action_config": self.action_config,
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": _iso(self.completed_at),
        }
