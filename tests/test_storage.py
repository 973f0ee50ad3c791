"""Tests for the key-value backends, the event store and the rule store."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import make_event, make_unit
from redis.exceptions import ConnectionError as RedisConnectionError

from cortex.automations.models import Run, RunStep
from cortex.errors import StoreUnavailableError
from cortex.storage.events import EventStore
from cortex.storage.kv import MemoryKV, RedisKV, create_kv
from cortex.storage.rules import RuleStore

# ===========================================================================
# MemoryKV
# ===========================================================================


class TestMemoryKV:
    @pytest.mark.asyncio()
    async def test_set_get_delete(self) -> None:
        kv = MemoryKV()
        await kv.set("a", {"x": 1})
        assert await kv.get("a") == {"x": 1}
        assert await kv.delete("a") is True
        assert await kv.get("a") is None
        assert await kv.delete("a") is False

    @pytest.mark.asyncio()
    async def test_ttl_expiry(self) -> None:
        now = [1000.0]
        kv = MemoryKV(clock=lambda: now[0])
        await kv.set("a", 1, ttl=10)
        assert await kv.get("a") == 1
        now[0] += 10
        assert await kv.get("a") is None
        assert await kv.keys("") == []

    @pytest.mark.asyncio()
    async def test_set_if_absent(self) -> None:
        now = [0.0]
        kv = MemoryKV(clock=lambda: now[0])
        assert await kv.set_if_absent("k", "first", ttl=5) is True
        assert await kv.set_if_absent("k", "second", ttl=5) is False
        assert await kv.get("k") == "first"
        now[0] = 6
        assert await kv.set_if_absent("k", "third", ttl=5) is True

    @pytest.mark.asyncio()
    async def test_mget_and_keys(self) -> None:
        kv = MemoryKV()
        await kv.set("p:1", 1)
        await kv.set("p:2", 2)
        await kv.set("q:1", 3)
        assert await kv.mget(["p:1", "missing", "p:2"]) == [1, None, 2]
        assert sorted(await kv.keys("p:")) == ["p:1", "p:2"]

    def test_create_kv(self) -> None:
        assert isinstance(create_kv("memory"), MemoryKV)
        assert isinstance(create_kv("redis", "redis://localhost:6379/1"), RedisKV)
        with pytest.raises(ValueError):
            create_kv("memcached")


# ===========================================================================
# RedisKV
# ===========================================================================


class TestRedisKV:
    @pytest.mark.asyncio()
    async def test_prefix_and_json(self) -> None:
        client = MagicMock()
        client.get = AsyncMock(return_value=b'{"x": 1}')
        client.set = AsyncMock(return_value=True)
        kv = RedisKV(prefix="cx:", client=client)

        assert await kv.get("a") == {"x": 1}
        client.get.assert_awaited_once_with("cx:a")

        assert await kv.set_if_absent("b", [1], ttl=30) is True
        client.set.assert_awaited_once_with("cx:b", "[1]", ex=30, nx=True)

    @pytest.mark.asyncio()
    async def test_set_if_absent_lost(self) -> None:
        client = MagicMock()
        client.set = AsyncMock(return_value=None)
        kv = RedisKV(client=client)
        assert await kv.set_if_absent("b", 1) is False

    @pytest.mark.asyncio()
    async def test_keys_strip_prefix(self) -> None:
        client = MagicMock()
        client.scan = AsyncMock(side_effect=[(5, [b"cx:e:1"]), (0, [b"cx:e:2"])])
        kv = RedisKV(prefix="cx:", client=client)
        assert await kv.keys("e:") == ["e:1", "e:2"]

    @pytest.mark.asyncio()
    async def test_errors_become_store_unavailable(self) -> None:
        client = MagicMock()
        client.get = AsyncMock(side_effect=RedisConnectionError("refused"))
        kv = RedisKV(client=client)
        with pytest.raises(StoreUnavailableError) as exc_info:
            await kv.get("a")
        assert exc_info.value.store == "redis"


# ===========================================================================
# EventStore
# ===========================================================================


class TestEventStore:
    @pytest.mark.asyncio()
    async def test_first_write_accepted(self, kv: MemoryKV) -> None:
        store = EventStore(kv)
        event = make_event(dedupe_key="gmail:m1")
        assert await store.write_event(event) is True
        assert await kv.get("dedupe:gmail:m1") is not None
        stored = await store.get_event(event.id)
        assert stored is not None
        assert stored.payload == event.payload

    @pytest.mark.asyncio()
    async def test_duplicate_rejected(self, kv: MemoryKV) -> None:
        store = EventStore(kv)
        first = make_event(dedupe_key="gmail:m1")
        second = make_event(dedupe_key="gmail:m1")
        assert await store.write_event(first) is True
        assert await store.write_event(second) is False
        assert await store.get_event(second.id) is None

    @pytest.mark.asyncio()
    async def test_concurrent_writes_accept_once(self, kv: MemoryKV) -> None:
        store = EventStore(kv)
        events = [make_event(dedupe_key="gmail:same") for _ in range(20)]
        results = await asyncio.gather(*(store.write_event(e) for e in events))
        assert results.count(True) == 1

    @pytest.mark.asyncio()
    async def test_dedupe_expires(self) -> None:
        now = [0.0]
        store = EventStore(MemoryKV(clock=lambda: now[0]), dedupe_ttl=60, event_ttl=60)
        assert await store.write_event(make_event(dedupe_key="k"))
        now[0] = 61
        assert await store.write_event(make_event(dedupe_key="k"))

    @pytest.mark.asyncio()
    async def test_backend_failure_propagates(self) -> None:
        kv = MagicMock()
        kv.set_if_absent = AsyncMock(side_effect=StoreUnavailableError("down", store="redis"))
        store = EventStore(kv)
        with pytest.raises(StoreUnavailableError):
            await store.write_event(make_event())


# ===========================================================================
# RuleStore: units
# ===========================================================================


class TestRuleStoreUnits:
    def test_add_and_get(self, rules: RuleStore) -> None:
        unit = make_unit(description="forward invoices")
        rules.add_unit(unit)
        loaded = rules.get_unit(unit.id)
        assert loaded is not None
        assert loaded.name == unit.name
        assert loaded.description == "forward invoices"
        assert loaded.actions == unit.actions

    def test_get_scoped_to_owner(self, rules: RuleStore) -> None:
        unit = make_unit(owner_id="u1")
        rules.add_unit(unit)
        assert rules.get_unit(unit.id, owner_id="u1") is not None
        assert rules.get_unit(unit.id, owner_id="u2") is None

    def test_list_filters(self, rules: RuleStore) -> None:
        a = make_unit(owner_id="u1")
        b = make_unit(owner_id="u2")
        rules.add_unit(a)
        rules.add_unit(b)
        rules.set_unit_status(b.id, "paused")
        assert [u.id for u in rules.list_units(owner_id="u1")] == [a.id]
        assert [u.id for u in rules.list_units(status="paused")] == [b.id]
        assert len(rules.list_units()) == 2

    def test_set_status(self, rules: RuleStore) -> None:
        unit = make_unit()
        rules.add_unit(unit)
        assert rules.set_unit_status(unit.id, "disabled") is True
        assert rules.get_unit(unit.id).status == "disabled"
        assert rules.set_unit_status("missing", "paused") is False
        with pytest.raises(ValueError):
            rules.set_unit_status(unit.id, "archived")

    def test_remove(self, rules: RuleStore) -> None:
        unit = make_unit()
        rules.add_unit(unit)
        assert rules.remove_unit(unit.id) is True
        assert rules.get_unit(unit.id) is None
        assert rules.find_candidate_units("u1", "gmail", "new_email") == []
        assert rules.remove_unit(unit.id) is False

    def test_candidates_only_active_and_owned(self, rules: RuleStore) -> None:
        active = make_unit()
        paused = make_unit(status="paused")
        other_owner = make_unit(owner_id="u2")
        other_source = make_unit(
            trigger={"type": "event", "source": "slack", "event_type": "message"}
        )
        for unit in (active, paused, other_owner, other_source):
            rules.add_unit(unit)
        found = rules.find_candidate_units("u1", "gmail", "new_email")
        assert [u.id for u in found] == [active.id]

    def test_compound_trigger_indexed_per_leaf(self, rules: RuleStore) -> None:
        unit = make_unit(
            trigger={
                "type": "compound",
                "any": [
                    {"type": "event", "source": "gmail", "event_type": "new_email"},
                    {"type": "event", "source": "slack", "event_type": "message"},
                    {"type": "schedule", "cron": "0 9 * * *"},
                ],
            }
        )
        rules.add_unit(unit)
        assert rules.find_candidate_units("u1", "slack", "message")[0].id == unit.id
        assert rules.find_candidate_units("u1", "schedule", "tick")[0].id == unit.id
        assert rules.schedule_owners() == ["u1"]

    def test_replace_rebuilds_index(self, rules: RuleStore) -> None:
        unit = make_unit()
        rules.add_unit(unit)
        data = unit.to_dict()
        data["trigger"] = {"type": "event", "source": "slack", "event_type": "message"}
        rules.add_unit(type(unit).from_dict(data))
        assert rules.find_candidate_units("u1", "gmail", "new_email") == []
        assert len(rules.find_candidate_units("u1", "slack", "message")) == 1

    def test_record_unit_run(self, rules: RuleStore) -> None:
        unit = make_unit()
        rules.add_unit(unit)
        at = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
        rules.record_unit_run(unit.id, "success", at)
        rules.record_unit_run(unit.id, "failed", at + timedelta(minutes=1))
        loaded = rules.get_unit(unit.id)
        assert loaded.run_count == 2
        assert loaded.last_run_status == "failed"
        assert loaded.last_run_at == at + timedelta(minutes=1)


# ===========================================================================
# RuleStore: runs and steps
# ===========================================================================


class TestRuleStoreRuns:
    def test_create_run_unique_per_unit_event(self, rules: RuleStore) -> None:
        event = make_event()
        assert rules.create_run(Run.for_event("unit-1", event)) is True
        assert rules.create_run(Run.for_event("unit-1", event)) is False
        assert rules.create_run(Run.for_event("unit-2", event)) is True

    def test_roundtrip(self, rules: RuleStore) -> None:
        run = Run.for_event("unit-1", make_event({"n": 1}))
        rules.create_run(run)
        loaded = rules.get_run(run.id)
        assert loaded.context == run.context
        assert loaded.original_event == run.original_event
        assert loaded.started_at == run.started_at

    def test_claim_is_exclusive(self, rules: RuleStore) -> None:
        run = Run.for_event("unit-1", make_event())
        rules.create_run(run)
        assert rules.claim_run(run.id, "pending") is True
        assert rules.claim_run(run.id, "pending") is False
        assert rules.get_run(run.id).status == "in_progress"

    def test_due_runs(self, rules: RuleStore) -> None:
        now = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
        due = Run.for_event("unit-1", make_event())
        later = Run.for_event("unit-2", make_event())
        schedule = ((due, now - timedelta(seconds=1)), (later, now + timedelta(hours=1)))
        for run, resume_at in schedule:
            rules.create_run(run)
            run.status = "paused"
            run.resume_at = resume_at
            rules.save_run(run)
        assert [r.id for r in rules.due_runs(now)] == [due.id]

    def test_list_runs_newest_first(self, rules: RuleStore) -> None:
        base = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
        older = Run.for_event("unit-1", make_event())
        older.started_at = base
        newer = Run.for_event("unit-1", make_event())
        newer.started_at = base + timedelta(minutes=5)
        rules.create_run(older)
        rules.create_run(newer)
        assert [r.id for r in rules.list_runs(unit_id="unit-1")] == [newer.id, older.id]
        assert rules.list_runs(status="failed") == []

    def test_upsert_step(self, rules: RuleStore) -> None:
        run = Run.for_event("unit-1", make_event())
        rules.create_run(run)
        step = RunStep(run_id=run.id, step_index=0, action_type="tool", action_config={"a": 1})
        rules.upsert_step(step)
        step.status = "success"
        step.result = {"ok": True}
        rules.upsert_step(step)
        steps = rules.list_steps(run.id)
        assert len(steps) == 1
        assert steps[0].status == "success"
        assert steps[0].result == {"ok": True}
        assert rules.get_step(run.id, 1) is None

    def test_invalid_statuses_rejected(self, rules: RuleStore) -> None:
        run = Run.for_event("unit-1", make_event())
        run.status = "done"
        with pytest.raises(ValueError, match="run status"):
            rules.create_run(run)
        run.status = "pending"
        rules.create_run(run)
        step = RunStep(run_id=run.id, step_index=0, action_type="log", action_config={})
        step.status = "skipped"
        with pytest.raises(ValueError, match="step status"):
            rules.upsert_step(step)
        assert rules.list_steps(run.id) == []

    def test_sqlite_errors_wrapped(self, rules: RuleStore) -> None:
        rules.close()
        with pytest.raises(StoreUnavailableError):
            rules.add_unit(make_unit())
