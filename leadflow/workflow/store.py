from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from leadflow.workflow.errors import GraphFormatError, PersistenceError
from leadflow.workflow.models import ExecutionState, RecordContext, WorkflowGraph, graph_from_dict


@dataclass(slots=True)
class WorkflowStats:
    workflow_id: str
    runs: int
    successes: int
    failures: int


@dataclass(slots=True)
class RecordEvent:
    id: int
    record_id: str
    event_type: str
    payload: object
    received_at: datetime


@dataclass(slots=True)
class StoredTestRun:
    test_run_id: str
    workflow_id: str
    record_id: str | None
    status: str
    trace: object
    error_text: str | None
    duration_ms: int | None
    created_at: str
    finished_at: str | None


class TaskQueue(Protocol):
    def submit(self, queue: str, payload: Mapping[str, Any]) -> str: ...


class WorkflowStore(Protocol):
    def load_graph(self, workflow_id: str) -> WorkflowGraph | None: ...

    def load_record(self, record_id: str) -> RecordContext | None: ...

    def update_record(self, record_id: str, patch: Mapping[str, Any]) -> dict[str, Any]: ...

    def add_activity(
        self,
        record_id: str,
        activity_type: str,
        description: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> None: ...

    def recent_events(self, record_id: str, since: datetime) -> list[RecordEvent]: ...

    def add_audience_member(self, audience_id: str, record_id: str) -> bool: ...

    def remove_audience_member(self, audience_id: str, record_id: str) -> bool: ...

    def audience_members(self, audience_id: str, limit: int = 100) -> list[str]: ...

    def find_records(self, filters: Mapping[str, Any], limit: int = 100) -> list[str]: ...

    def save_paused_state(self, state: ExecutionState) -> None: ...

    def load_paused_state(self, workflow_id: str, record_id: str) -> ExecutionState | None: ...

    def claim_paused_state(self, workflow_id: str, record_id: str, version: int) -> bool: ...

    def clear_paused_state(self, workflow_id: str, record_id: str) -> None: ...

    def increment_workflow_stats(self, workflow_id: str, succeeded: bool) -> None: ...


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SQLiteWorkflowStore:
    """SQLite persistence for workflows, records, paused runs, and the task queue."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not open workflow store: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    workflow_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    definition_json TEXT NOT NULL,
                    runs INTEGER NOT NULL DEFAULT 0,
                    successes INTEGER NOT NULL DEFAULT 0,
                    failures INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    record_id TEXT PRIMARY KEY,
                    workspace_id TEXT,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS activities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL,
                    activity_type TEXT NOT NULL,
                    description TEXT NOT NULL,
                    metadata_json TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS record_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    payload_json TEXT,
                    received_at TEXT NOT NULL
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audience_members (
                    audience_id TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    added_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (audience_id, record_id)
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    queue TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS paused_states (
                    workflow_id TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    pause_node_id TEXT,
                    resume_at TEXT,
                    state_json TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (workflow_id, record_id)
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS test_runs (
                    test_run_id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    record_id TEXT,
                    status TEXT NOT NULL,
                    trace_json TEXT,
                    error_text TEXT,
                    duration_ms INTEGER,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    finished_at TEXT
                )
                """
            )

            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_record_events_record_received
                ON record_events(record_id, received_at DESC)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_paused_states_resume_at
                ON paused_states(resume_at)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_test_runs_workflow_created
                ON test_runs(workflow_id, created_at DESC)
                """
            )

    # Workflows

    def save_graph(self, graph: WorkflowGraph | Mapping[str, Any]) -> str:
        document = graph.to_dict() if isinstance(graph, WorkflowGraph) else dict(graph)
        workflow_id = str(document.get("id") or "").strip()
        if not workflow_id:
            raise ValueError("Workflow definition must contain a non-empty 'id'.")
        name = str(document.get("name") or "").strip() or workflow_id
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (workflow_id, name, definition_json)
                VALUES (?, ?, ?)
                ON CONFLICT(workflow_id) DO UPDATE SET
                    name = excluded.name,
                    definition_json = excluded.definition_json,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (workflow_id, name, self._dump(document)),
            )
        return workflow_id

    def load_graph(self, workflow_id: str) -> WorkflowGraph | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition_json FROM workflows WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()
        if not row:
            return None
        document = self._load(row["definition_json"])
        if not isinstance(document, dict):
            raise GraphFormatError(f"Stored workflow '{workflow_id}' is not a mapping.")
        return graph_from_dict(document, workflow_id=workflow_id)

    def increment_workflow_stats(self, workflow_id: str, succeeded: bool) -> None:
        column = "successes" if succeeded else "failures"
        with self._connect() as conn:
            conn.execute(
                f"""
                UPDATE workflows
                SET runs = runs + 1, {column} = {column} + 1
                WHERE workflow_id = ?
                """,
                (workflow_id,),
            )

    def get_workflow_stats(self, workflow_id: str) -> WorkflowStats | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT workflow_id, runs, successes, failures FROM workflows WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()
        if not row:
            return None
        return WorkflowStats(
            workflow_id=row["workflow_id"],
            runs=int(row["runs"]),
            successes=int(row["successes"]),
            failures=int(row["failures"]),
        )

    # Records

    def save_record(self, record_id: str, data: Mapping[str, Any], workspace_id: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO records (record_id, workspace_id, data_json)
                VALUES (?, ?, ?)
                ON CONFLICT(record_id) DO UPDATE SET
                    workspace_id = excluded.workspace_id,
                    data_json = excluded.data_json,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (record_id, workspace_id, self._dump(dict(data))),
            )

    def load_record(self, record_id: str) -> RecordContext | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT record_id, workspace_id, data_json FROM records WHERE record_id = ?",
                (record_id,),
            ).fetchone()
        if not row:
            return None
        data = self._load(row["data_json"])
        return RecordContext(
            record_id=row["record_id"],
            data=data if isinstance(data, dict) else {},
            workspace_id=row["workspace_id"],
        )

    def update_record(self, record_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data_json FROM records WHERE record_id = ?",
                (record_id,),
            ).fetchone()
            if not row:
                raise PersistenceError(f"Record '{record_id}' was not found.")
            data = self._load(row["data_json"])
            merged = dict(data) if isinstance(data, dict) else {}
            for key, value in patch.items():
                if key == "customFields" and isinstance(value, Mapping):
                    custom = dict(merged.get("customFields") or {})
                    custom.update(value)
                    merged["customFields"] = custom
                else:
                    merged[key] = value
            conn.execute(
                "UPDATE records SET data_json = ?, updated_at = CURRENT_TIMESTAMP WHERE record_id = ?",
                (self._dump(merged), record_id),
            )
        return merged

    def find_records(self, filters: Mapping[str, Any], limit: int = 100) -> list[str]:
        """Return record ids whose top-level fields match ``filters``.

        ``tags`` matches when every listed tag is present on the record.
        """
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT record_id, data_json FROM records ORDER BY record_id ASC",
            ).fetchall()

        matched: list[str] = []
        for row in rows:
            data = self._load(row["data_json"])
            if not isinstance(data, dict):
                continue
            if self._record_matches(data, filters):
                matched.append(row["record_id"])
                if len(matched) >= max(1, limit):
                    break
        return matched

    def _record_matches(self, data: dict[str, Any], filters: Mapping[str, Any]) -> bool:
        for key, expected in filters.items():
            if key == "tags":
                wanted = expected if isinstance(expected, list) else [expected]
                present = data.get("tags") or []
                if not all(tag in present for tag in wanted):
                    return False
                continue
            if data.get(key) != expected:
                return False
        return True

    # Activities and events

    def add_activity(
        self,
        record_id: str,
        activity_type: str,
        description: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activities (record_id, activity_type, description, metadata_json)
                VALUES (?, ?, ?, ?)
                """,
                (record_id, activity_type, description, self._dump(dict(metadata or {}))),
            )

    def list_activities(self, record_id: str, limit: int = 50) -> list[dict[str, object]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT activity_type, description, metadata_json, created_at
                FROM activities
                WHERE record_id = ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (record_id, max(1, limit)),
            ).fetchall()
        return [
            {
                "activity_type": row["activity_type"],
                "description": row["description"],
                "metadata": self._load(row["metadata_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def record_event(
        self,
        record_id: str,
        event_type: str,
        payload: object = None,
        received_at: datetime | None = None,
    ) -> None:
        ts = _utc(received_at or datetime.now(timezone.utc))
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO record_events (record_id, event_type, payload_json, received_at)
                VALUES (?, ?, ?, ?)
                """,
                (record_id, event_type, self._dump(payload), ts.isoformat()),
            )

    def recent_events(self, record_id: str, since: datetime) -> list[RecordEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, record_id, event_type, payload_json, received_at
                FROM record_events
                WHERE record_id = ? AND received_at >= ?
                ORDER BY received_at DESC, id DESC
                """,
                (record_id, _utc(since).isoformat()),
            ).fetchall()
        return [
            RecordEvent(
                id=int(row["id"]),
                record_id=row["record_id"],
                event_type=row["event_type"],
                payload=self._load(row["payload_json"]),
                received_at=datetime.fromisoformat(row["received_at"]),
            )
            for row in rows
        ]

    # Audiences

    def add_audience_member(self, audience_id: str, record_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audience_members (audience_id, record_id)
                VALUES (?, ?)
                ON CONFLICT(audience_id, record_id) DO NOTHING
                """,
                (audience_id, record_id),
            )
            return cursor.rowcount > 0

    def remove_audience_member(self, audience_id: str, record_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM audience_members WHERE audience_id = ? AND record_id = ?",
                (audience_id, record_id),
            )
            return cursor.rowcount > 0

    def audience_members(self, audience_id: str, limit: int = 100) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT record_id FROM audience_members
                WHERE audience_id = ?
                ORDER BY added_at ASC, record_id ASC
                LIMIT ?
                """,
                (audience_id, max(1, limit)),
            ).fetchall()
        return [row["record_id"] for row in rows]

    # Task queue

    def submit(self, queue: str, payload: Mapping[str, Any]) -> str:
        task_id = f"task-{uuid.uuid4()}"
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO tasks (task_id, queue, payload_json) VALUES (?, ?, ?)",
                (task_id, queue, self._dump(dict(payload))),
            )
        return task_id

    def list_tasks(self, queue: str | None = None, limit: int = 100) -> list[dict[str, object]]:
        query = "SELECT task_id, queue, payload_json, status, created_at FROM tasks"
        params: list[object] = []
        if queue is not None:
            query += " WHERE queue = ?"
            params.append(queue)
        query += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(max(1, limit))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "task_id": row["task_id"],
                "queue": row["queue"],
                "payload": self._load(row["payload_json"]),
                "status": row["status"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    # Paused execution states

    def save_paused_state(self, state: ExecutionState) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT version FROM paused_states WHERE workflow_id = ? AND record_id = ?",
                (state.workflow_id, state.record_id),
            ).fetchone()
            version = int(row["version"]) + 1 if row else max(1, state.version + 1)
            state.version = version
            conn.execute(
                """
                INSERT INTO paused_states (workflow_id, record_id, pause_node_id, resume_at, state_json, version)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(workflow_id, record_id) DO UPDATE SET
                    pause_node_id = excluded.pause_node_id,
                    resume_at = excluded.resume_at,
                    state_json = excluded.state_json,
                    version = excluded.version,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    state.workflow_id,
                    state.record_id,
                    state.pause_node_id,
                    _utc(state.resume_at).isoformat() if state.resume_at else None,
                    self._dump(state.to_dict()),
                    version,
                ),
            )

    def load_paused_state(self, workflow_id: str, record_id: str) -> ExecutionState | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT state_json, version FROM paused_states WHERE workflow_id = ? AND record_id = ?",
                (workflow_id, record_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_state(row)

    def claim_paused_state(self, workflow_id: str, record_id: str, version: int) -> bool:
        """Remove the paused state only if it still has ``version``.

        Exactly one of several concurrent resumers sees ``True``.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM paused_states WHERE workflow_id = ? AND record_id = ? AND version = ?",
                (workflow_id, record_id, int(version)),
            )
            return cursor.rowcount == 1

    def clear_paused_state(self, workflow_id: str, record_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM paused_states WHERE workflow_id = ? AND record_id = ?",
                (workflow_id, record_id),
            )

    def due_paused_states(self, now: datetime, limit: int = 20) -> list[ExecutionState]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT state_json, version FROM paused_states
                WHERE resume_at IS NOT NULL AND resume_at <= ?
                ORDER BY resume_at ASC
                LIMIT ?
                """,
                (_utc(now).isoformat(), max(1, limit)),
            ).fetchall()
        return [self._row_to_state(row) for row in rows]

    # Test runs

    def create_test_run(self, workflow_id: str, record_id: str | None) -> str:
        test_run_id = f"test-{uuid.uuid4()}"
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO test_runs (test_run_id, workflow_id, record_id, status)
                VALUES (?, ?, ?, 'pending')
                """,
                (test_run_id, workflow_id, record_id),
            )
        return test_run_id

    def update_test_run(
        self,
        test_run_id: str,
        *,
        status: str,
        trace: object = None,
        error_text: str | None = None,
        duration_ms: int | None = None,
    ) -> None:
        finished = status in {"completed", "failed"}
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE test_runs
                SET status = ?, trace_json = COALESCE(?, trace_json), error_text = ?,
                    duration_ms = COALESCE(?, duration_ms),
                    finished_at = CASE WHEN ? THEN CURRENT_TIMESTAMP ELSE finished_at END
                WHERE test_run_id = ?
                """,
                (
                    status,
                    self._dump(trace) if trace is not None else None,
                    error_text,
                    duration_ms,
                    1 if finished else 0,
                    test_run_id,
                ),
            )

    def get_test_run(self, test_run_id: str) -> StoredTestRun | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT test_run_id, workflow_id, record_id, status, trace_json, error_text,
                       duration_ms, created_at, finished_at
                FROM test_runs
                WHERE test_run_id = ?
                """,
                (test_run_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_test_run(row)

    def list_test_runs(self, workflow_id: str, limit: int = 10, offset: int = 0) -> list[StoredTestRun]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT test_run_id, workflow_id, record_id, status, trace_json, error_text,
                       duration_ms, created_at, finished_at
                FROM test_runs
                WHERE workflow_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (workflow_id, max(1, limit), max(0, offset)),
            ).fetchall()
        return [self._row_to_test_run(row) for row in rows]

    def _row_to_state(self, row: sqlite3.Row) -> ExecutionState:
        payload = self._load(row["state_json"])
        if not isinstance(payload, dict):
            raise PersistenceError("Stored paused state is not a mapping.")
        state = ExecutionState.from_dict(payload)
        state.version = int(row["version"])
        return state

    def _row_to_test_run(self, row: sqlite3.Row) -> StoredTestRun:
        return StoredTestRun(
            test_run_id=row["test_run_id"],
            workflow_id=row["workflow_id"],
            record_id=row["record_id"],
            status=row["status"],
            trace=self._load(row["trace_json"]),
            error_text=row["error_text"],
            duration_ms=row["duration_ms"],
            created_at=row["created_at"],
            finished_at=row["finished_at"],
        )

    def _dump(self, value: object) -> str:
        try:
            return json.dumps(value, ensure_ascii=False)
        except TypeError:
            sanitized = self._sanitize_for_json(value)
            return json.dumps(sanitized, ensure_ascii=False)

    def _load(self, value: str | None) -> object:
        if value is None:
            return None
        return json.loads(value)

    def _sanitize_for_json(self, value: object) -> object:
        if isinstance(value, dict):
            return {str(key): self._sanitize_for_json(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._sanitize_for_json(item) for item in value]
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, (str, int, float, bool)) or value is None:
            return value
        return str(value)
