"""Rule store: SQLite persistence for units, runs and run steps."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cortex.automations.models import (
    SCHEDULE_EVENT_TYPE,
    SCHEDULE_SOURCE,
    RUN_STATUSES,
    STEP_STATUSES,
    UNIT_STATUSES,
    CompoundTrigger,
    EventTrigger,
    Run,
    RunStep,
    ScheduleTrigger,
    Unit,
)
from cortex.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value else None


def _dt(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value is not None else None


def _check_status(status: str, allowed: tuple[str, ...], kind: str) -> None:
    if status not in allowed:
        raise ValueError(f"Invalid {kind} status: {status!r}")


class RuleStore:
    """CRUD persistence for units and the run/step audit trail.

    Run claims are conditional ``UPDATE ... WHERE status = ?`` statements:
    the first writer wins and everyone else sees ``rowcount == 0``.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        """Create unit, trigger index, run and run step tables."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS units (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                definition TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                run_count INTEGER NOT NULL DEFAULT 0,
                last_run_at REAL,
                last_run_status TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS unit_triggers (
                unit_id TEXT NOT NULL REFERENCES units(id) ON DELETE CASCADE,
                owner_id TEXT NOT NULL,
                source TEXT NOT NULL,
                event_type TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_unit_triggers_lookup
                ON unit_triggers (owner_id, source, event_type);
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                unit_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step INTEGER NOT NULL DEFAULT 0,
                context TEXT NOT NULL DEFAULT '{}',
                original_event TEXT,
                started_at REAL NOT NULL,
                completed_at REAL,
                error TEXT,
                resume_at REAL,
                UNIQUE (unit_id, event_id)
            );
            CREATE INDEX IF NOT EXISTS idx_runs_resume ON runs (status, resume_at);
            CREATE TABLE IF NOT EXISTS run_steps (
                run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
                step_index INTEGER NOT NULL,
                action_type TEXT NOT NULL,
                action_config TEXT NOT NULL,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                started_at REAL NOT NULL,
                completed_at REAL,
                PRIMARY KEY (run_id, step_index)
            );
        """)
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._conn:
                yield self._conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Rule store error: {exc}", store="sqlite") from exc

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_unit(row: sqlite3.Row) -> Unit:
        data = json.loads(row["definition"])
        data.update(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
            status=row["status"],
            run_count=row["run_count"],
            last_run_at=_dt(row["last_run_at"]),
            last_run_status=row["last_run_status"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )
        return Unit.from_dict(data)

    @staticmethod
    def _index_rows(unit: Unit) -> list[tuple[str, str, str, str]]:
        leaves = (
            unit.trigger.leaves() if isinstance(unit.trigger, CompoundTrigger) else [unit.trigger]
        )
        keys: set[tuple[str, str]] = set()
        for leaf in leaves:
            if isinstance(leaf, EventTrigger):
                keys.add((leaf.source, leaf.event_type))
            elif isinstance(leaf, ScheduleTrigger):
                keys.add((SCHEDULE_SOURCE, SCHEDULE_EVENT_TYPE))
        return [(unit.id, unit.owner_id, source, etype) for source, etype in sorted(keys)]

    def add_unit(self, unit: Unit) -> None:
        """Add or replace a unit and rebuild its trigger index rows."""
        full = unit.to_dict()
        definition = {k: full[k] for k in ("trigger", "conditions", "actions")}
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO units
                   (id, owner_id, name, description, definition, status, run_count,
                    last_run_at, last_run_status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    unit.id,
                    unit.owner_id,
                    unit.name,
                    unit.description,
                    json.dumps(definition),
                    unit.status,
                    unit.run_count,
                    _ts(unit.last_run_at),
                    unit.last_run_status,
                    _ts(unit.created_at),
                    _ts(unit.updated_at),
                ),
            )
            conn.execute("DELETE FROM unit_triggers WHERE unit_id = ?", (unit.id,))
            conn.executemany(
                "INSERT INTO unit_triggers (unit_id, owner_id, source, event_type) "
                "VALUES (?, ?, ?, ?)",
                self._index_rows(unit),
            )
        logger.debug("Saved unit %s (%s)", unit.id, unit.name)

    def get_unit(self, unit_id: str, owner_id: str | None = None) -> Unit | None:
        """Get a unit by ID, optionally restricted to one owner."""
        sql = "SELECT * FROM units WHERE id = ?"
        params: list[Any] = [unit_id]
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        row = self._conn.execute(sql, params).fetchone()
        return self._row_to_unit(row) if row else None

    def list_units(self, owner_id: str | None = None, status: str | None = None) -> list[Unit]:
        sql = "SELECT * FROM units WHERE 1 = 1"
        params: list[Any] = []
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at"
        return [self._row_to_unit(r) for r in self._conn.execute(sql, params).fetchall()]

    def set_unit_status(self, unit_id: str, status: str) -> bool:
        """Change a unit's status. Returns True if the unit exists."""
        _check_status(status, UNIT_STATUSES, "unit")
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE units SET status = ?, updated_at = ? WHERE id = ?",
                (status, datetime.now(UTC).timestamp(), unit_id),
            )
        return cursor.rowcount > 0

    def remove_unit(self, unit_id: str) -> bool:
        """Remove a unit by ID. Returns True if found."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM units WHERE id = ?", (unit_id,))
        return cursor.rowcount > 0

    def find_candidate_units(self, owner_id: str, source: str, event_type: str) -> list[Unit]:
        """Indexed lookup of the owner's active units listening for source/type."""
        rows = self._conn.execute(
            """SELECT DISTINCT u.* FROM unit_triggers t
               JOIN units u ON u.id = t.unit_id
               WHERE t.owner_id = ? AND t.source = ? AND t.event_type = ?
                 AND u.status = 'active'
               ORDER BY u.created_at""",
            (owner_id, source, event_type),
        ).fetchall()
        return [self._row_to_unit(r) for r in rows]

    def schedule_owners(self) -> list[str]:
        """Owners that have at least one active schedule-triggered unit."""
        rows = self._conn.execute(
            """SELECT DISTINCT t.owner_id FROM unit_triggers t
               JOIN units u ON u.id = t.unit_id
               WHERE t.source = ? AND t.event_type = ? AND u.status = 'active'
               ORDER BY t.owner_id""",
            (SCHEDULE_SOURCE, SCHEDULE_EVENT_TYPE),
        ).fetchall()
        return [r["owner_id"] for r in rows]

    def record_unit_run(self, unit_id: str, status: str, at: datetime) -> None:
        """Bump run statistics once a run reaches a terminal state."""
        with self._transaction() as conn:
            conn.execute(
                """UPDATE units
                   SET run_count = run_count + 1, last_run_at = ?, last_run_status = ?
                   WHERE id = ?""",
                (at.timestamp(), status, unit_id),
            )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            unit_id=row["unit_id"],
            event_id=row["event_id"],
            owner_id=row["owner_id"],
            status=row["status"],
            current_step=row["current_step"],
            context=json.loads(row["context"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            error=row["error"],
            resume_at=_dt(row["resume_at"]),
            original_event=json.loads(row["original_event"]) if row["original_event"] else None,
        )

    def create_run(self, run: Run) -> bool:
        """Insert a new run. Returns False if the (unit, event) pair already has one."""
        _check_status(run.status, RUN_STATUSES, "run")
        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO runs
                   (id, unit_id, event_id, owner_id, status, current_step, context,
                    original_event, started_at, completed_at, error, resume_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run.id,
                    run.unit_id,
                    run.event_id,
                    run.owner_id,
                    run.status,
                    run.current_step,
                    json.dumps(run.context, default=str),
                    json.dumps(run.original_event) if run.original_event is not None else None,
                    _ts(run.started_at),
                    _ts(run.completed_at),
                    run.error,
                    _ts(run.resume_at),
                ),
            )
        return cursor.rowcount > 0

    def save_run(self, run: Run) -> None:
        """Persist the mutable fields of a run."""
        _check_status(run.status, RUN_STATUSES, "run")
        with self._transaction() as conn:
            conn.execute(
                """UPDATE runs SET status = ?, current_step = ?, context = ?,
                   completed_at = ?, error = ?, resume_at = ? WHERE id = ?""",
                (
                    run.status,
                    run.current_step,
                    json.dumps(run.context, default=str),
                    _ts(run.completed_at),
                    run.error,
                    _ts(run.resume_at),
                    run.id,
                ),
            )

    def claim_run(self, run_id: str, from_status: str) -> bool:
        """Atomically move a run from *from_status* to ``in_progress``.

        Returns True only for the caller that performed the transition.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE runs SET status = 'in_progress', resume_at = NULL "
                "WHERE id = ? AND status = ?",
                (run_id, from_status),
            )
        return cursor.rowcount == 1

    def get_run(self, run_id: str) -> Run | None:
        row = self._conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(
        self,
        unit_id: str | None = None,
        owner_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[Run]:
        """Return runs, newest first."""
        sql = "SELECT * FROM runs WHERE 1 = 1"
        params: list[Any] = []
        for column, value in (("unit_id", unit_id), ("owner_id", owner_id), ("status", status)):
            if value is not None:
                sql += f" AND {column} = ?"
                params.append(value)
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_run(r) for r in self._conn.execute(sql, params).fetchall()]

    def due_runs(self, now: datetime) -> list[Run]:
        """Paused runs whose ``resume_at`` has passed."""
        rows = self._conn.execute(
            "SELECT * FROM runs WHERE status = 'paused' AND resume_at <= ? ORDER BY resume_at",
            (now.timestamp(),),
        ).fetchall()
        return [self._row_to_run(r) for r in rows]

    # ------------------------------------------------------------------
    # Run steps
    # ------------------------------------------------------------------

    def upsert_step(self, step: RunStep) -> None:
        """Insert or update the step keyed by (run_id, step_index)."""
        _check_status(step.status, STEP_STATUSES, "step")
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO run_steps
                   (run_id, step_index, action_type, action_config, status, result,
                    error, started_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (run_id, step_index) DO UPDATE SET
                     status = excluded.status,
                     result = excluded.result,
                     error = excluded.error,
                     completed_at = excluded.completed_at""",
                (
                    step.run_id,
                    step.step_index,
                    step.action_type,
                    json.dumps(step.action_config, default=str),
                    step.status,
                    json.dumps(step.result, default=str) if step.result is not None else None,
                    step.error,
                    _ts(step.started_at),
                    _ts(step.completed_at),
                ),
            )

    def get_step(self, run_id: str, step_index: int) -> RunStep | None:
        row = self._conn.execute(
            "SELECT * FROM run_steps WHERE run_id = ? AND step_index = ?", (run_id, step_index)
        ).fetchone()
        return self._row_to_step(row) if row else None

    def list_steps(self, run_id: str) -> list[RunStep]:
        rows = self._conn.execute(
            "SELECT * FROM run_steps WHERE run_id = ? ORDER BY step_index", (run_id,)
        ).fetchall()
        return [self._row_to_step(r) for r in rows]

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> RunStep:
        return RunStep(
            run_id=row["run_id"],
            step_index=row["step_index"],
            action_type=row["action_type"],
            action_config=json.loads(row["action_config"]),
            status=row["status"],
            result=json.loads(row["result"]) if row["result"] is not None else None,
            error=row["error"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
        )
