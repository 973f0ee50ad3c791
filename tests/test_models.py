"""Tests for automation data models and their JSON shapes."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from conftest import make_event, make_unit

from cortex.automations.models import (
    CheckAction,
    CompoundTrigger,
    EventTrigger,
    FetchAction,
    LLMAction,
    Run,
    RunStep,
    ScheduleTrigger,
    SemanticCondition,
    ToolAction,
    Unit,
    WaitAction,
    action_from_dict,
    action_to_dict,
    condition_from_dict,
    trigger_from_dict,
    trigger_to_dict,
)
from cortex.errors import UnitValidationError

# ===========================================================================
# Event
# ===========================================================================


class TestEvent:
    def test_defaults(self) -> None:
        event = make_event()
        assert event.id
        assert event.timestamp.tzinfo is not None
        assert event.dedupe_key == f"gmail:new_email:{event.id}"

    def test_explicit_dedupe_key_kept(self) -> None:
        event = make_event(dedupe_key="gmail:msg-1")
        assert event.dedupe_key == "gmail:msg-1"

    def test_is_immutable(self) -> None:
        event = make_event()
        with pytest.raises(AttributeError):
            event.source = "other"  # type: ignore[misc]

    def test_dict_roundtrip(self) -> None:
        event = make_event({"body_text": "hello"}, dedupe_key="k1")
        restored = type(event).from_dict(event.to_dict())
        assert restored == event


# ===========================================================================
# Triggers
# ===========================================================================


class TestTriggers:
    def test_event_trigger(self) -> None:
        trigger = trigger_from_dict(
            {"type": "event", "source": "gmail", "event_type": "new_email", "filter": "true"}
        )
        assert isinstance(trigger, EventTrigger)
        assert trigger.filter == "true"

    def test_schedule_trigger_default_timezone(self) -> None:
        trigger = trigger_from_dict({"type": "schedule", "cron": "0 9 * * 1"})
        assert isinstance(trigger, ScheduleTrigger)
        assert trigger.timezone == "UTC"

    def test_compound_trigger(self) -> None:
        trigger = trigger_from_dict(
            {
                "type": "compound",
                "any": [
                    {"type": "event", "source": "gmail", "event_type": "new_email"},
                    {"type": "schedule", "cron": "*/5 * * * *"},
                ],
            }
        )
        assert isinstance(trigger, CompoundTrigger)
        assert len(trigger.leaves()) == 2
        assert trigger_to_dict(trigger)["any"][1]["cron"] == "*/5 * * * *"

    def test_empty_compound_rejected(self) -> None:
        with pytest.raises(UnitValidationError):
            trigger_from_dict({"type": "compound", "any": [], "all": []})

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(UnitValidationError, match="Unknown trigger type"):
            trigger_from_dict({"type": "webhook"})

    def test_event_trigger_requires_source(self) -> None:
        with pytest.raises(UnitValidationError):
            trigger_from_dict({"type": "event", "event_type": "new_email"})


# ===========================================================================
# Conditions and actions
# ===========================================================================


class TestConditions:
    def test_semantic_condition(self) -> None:
        cond = condition_from_dict({"type": "semantic", "check": "urgency", "expect": "urgent"})
        assert isinstance(cond, SemanticCondition)
        assert cond.prompt is None

    def test_custom_semantic_requires_prompt(self) -> None:
        with pytest.raises(UnitValidationError):
            condition_from_dict({"type": "semantic", "check": "custom", "expect": "yes"})

    def test_unknown_check_rejected(self) -> None:
        with pytest.raises(UnitValidationError):
            condition_from_dict({"type": "semantic", "check": "mood", "expect": "yes"})

    def test_unknown_condition_type_rejected(self) -> None:
        with pytest.raises(UnitValidationError):
            condition_from_dict({"type": "regex", "pattern": "x"})


class TestActions:
    def test_tool_action_accepts_as(self) -> None:
        action = action_from_dict({"type": "tool", "tool": "send_email", "as": "sent"})
        assert isinstance(action, ToolAction)
        assert action.store_as == "sent"
        assert action.args == {}

    def test_llm_action(self) -> None:
        action = action_from_dict(
            {"type": "llm", "prompt": "summarize", "input": "{{payload.body_text}}", "as": "s"}
        )
        assert isinstance(action, LLMAction)
        assert action.input == "{{payload.body_text}}"

    def test_check_action_else_key(self) -> None:
        action = action_from_dict({"type": "check", "that": "x == 1", "else": "continue"})
        assert isinstance(action, CheckAction)
        assert action.otherwise == "continue"
        assert action_to_dict(action)["else"] == "continue"

    def test_check_action_bad_outcome(self) -> None:
        with pytest.raises(UnitValidationError):
            action_from_dict({"type": "check", "that": "x", "then": "jump"})

    def test_wait_and_fetch(self) -> None:
        wait = action_from_dict({"type": "wait", "duration": "30m"})
        fetch = action_from_dict(
            {"type": "fetch", "tool": "fetch_emails", "provider": "gmail", "entity_type": "email"}
        )
        assert isinstance(wait, WaitAction)
        assert isinstance(fetch, FetchAction)

    def test_missing_required_field(self) -> None:
        with pytest.raises(UnitValidationError, match="tool"):
            action_from_dict({"type": "tool"})

    def test_unknown_action_rejected(self) -> None:
        with pytest.raises(UnitValidationError, match="Unknown action type"):
            action_from_dict({"type": "teleport"})

    def test_to_dict_uses_as(self) -> None:
        data = action_to_dict(ToolAction(tool="t", store_as="out"))
        assert data["as"] == "out"
        assert "store_as" not in data


# ===========================================================================
# Unit
# ===========================================================================


class TestUnit:
    def test_from_dict_defaults(self) -> None:
        unit = make_unit()
        assert unit.status == "active"
        assert unit.is_active
        assert unit.run_count == 0
        assert unit.last_run_at is None

    def test_requires_action(self) -> None:
        with pytest.raises(UnitValidationError):
            Unit(owner_id="u1", name="n", trigger=EventTrigger("a", "b"), actions=[])

    def test_invalid_status(self) -> None:
        with pytest.raises(UnitValidationError):
            make_unit(status="deleted")

    def test_requires_owner(self) -> None:
        with pytest.raises(UnitValidationError):
            Unit.from_dict({"trigger": {"type": "schedule", "cron": "* * * * *"}, "actions": []})

    def test_roundtrip(self) -> None:
        unit = make_unit(
            actions=[
                {"type": "tool", "tool": "t", "args": {"to": "{{payload.from}}"}, "as": "r"},
                {"type": "check", "that": "r.ok", "then": "continue", "else": "stop"},
            ],
            conditions=[{"type": "eval", "expr": "payload.subject.includes('Invoice')"}],
        )
        restored = Unit.from_dict(unit.to_dict())
        assert restored.id == unit.id
        assert restored.actions == unit.actions
        assert restored.conditions == unit.conditions
        assert restored.trigger == unit.trigger


# ===========================================================================
# Run
# ===========================================================================


class TestRun:
    def test_for_event_context(self) -> None:
        event = make_event({"from": "a@x.com"})
        run = Run.for_event("unit-1", event)
        assert run.status == "pending"
        assert run.current_step == 0
        assert run.event_id == event.id
        assert run.owner_id == "u1"
        assert run.context["payload"] == {"from": "a@x.com"}
        assert run.context["event"]["source"] == "gmail"
        assert run.original_event == event.to_dict()

    def test_for_event_override_event_id(self) -> None:
        run = Run.for_event("unit-1", make_event(), event_id="rerun_x")
        assert run.event_id == "rerun_x"

    def test_terminal(self) -> None:
        run = Run.for_event("unit-1", make_event())
        assert not run.is_terminal
        run.status = "failed"
        assert run.is_terminal

    def test_step_to_dict(self) -> None:
        step = RunStep(run_id="r", step_index=0, action_type="log", action_config={})
        step.completed_at = datetime(2026, 1, 1, tzinfo=UTC)
        data = step.to_dict()
        assert data["status"] == "running"
        assert data["completed_at"].startswith("2026-01-01")
