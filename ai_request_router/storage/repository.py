"""
Repository pattern for data access.

Handles database operations and data persistence logic. Every state
change that can race (task transitions, usage increments, context
updates) is expressed as a single conditional statement or an
immediate transaction so concurrent writers never lose updates.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal, ROUND_UP
from typing import Any, Dict, Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ContextSnapshot,
    ConversationContext,
    GenerationTask,
    SpendEntry,
    TaskResult,
    TaskStatus,
    TaskType,
    UsageCounter,
    WindowKind,
)

MICROS_PER_USD = Decimal("1000000")

_TASK_COLUMNS = """
    id, owner, project_id, task_type, status, input_prompt, input_params,
    result_url, result_content, error_message, cost_deducted_micros,
    created_at, started_at, completed_at
"""


def utc_now() -> datetime:
    """Return timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_micros(amount: Decimal) -> int:
    """Convert USD to integer micro-dollars, rounding UP."""
    return int((Decimal(amount) * MICROS_PER_USD).quantize(Decimal("1"), rounding=ROUND_UP))


def from_micros(micros: Optional[int]) -> Decimal:
    """Convert integer micro-dollars back to USD."""
    return Decimal(micros or 0) / MICROS_PER_USD


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError("datetimes must be timezone-aware (UTC)")
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS generation_task (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                project_id TEXT,
                task_type TEXT NOT NULL,
                status TEXT NOT NULL,
                input_prompt TEXT NOT NULL,
                input_params TEXT NOT NULL DEFAULT '{}',
                result_url TEXT,
                result_content TEXT,
                error_message TEXT,
                cost_deducted_micros INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_task_owner_status
                ON generation_task (owner, status);
            CREATE INDEX IF NOT EXISTS idx_task_project_status
                ON generation_task (project_id, status);

            CREATE TABLE IF NOT EXISTS usage_counter (
                owner TEXT NOT NULL,
                feature TEXT NOT NULL,
                window_kind TEXT NOT NULL,
                window_start TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (owner, feature, window_kind)
            );

            CREATE TABLE IF NOT EXISTS usage_ledger (
                idempotency_key TEXT NOT NULL,
                feature TEXT NOT NULL,
                owner TEXT NOT NULL,
                recorded_at TEXT NOT NULL,
                PRIMARY KEY (idempotency_key, feature)
            );

            CREATE TABLE IF NOT EXISTS spend_ledger (
                idempotency_key TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                model TEXT NOT NULL,
                amount_micros INTEGER NOT NULL,
                charged_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_spend_owner_time
                ON spend_ledger (owner, charged_at);

            CREATE TABLE IF NOT EXISTS conversation_context (
                project_id TEXT NOT NULL,
                owner TEXT NOT NULL,
                long_term TEXT NOT NULL DEFAULT '{}',
                short_term TEXT NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL,
                history TEXT NOT NULL DEFAULT '[]',
                updated_at TEXT NOT NULL,
                PRIMARY KEY (project_id, owner)
            );
        """)
    finally:
        conn.close()


class TaskRepository:
    """Keyed storage for GenerationTask records.

    Transition methods return True only for the caller whose conditional
    update actually changed the row; every other caller gets False.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, task: GenerationTask) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO generation_task ({_TASK_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                task.id,
                task.owner,
                task.project_id,
                task.task_type.value,
                task.status.value,
                task.input_prompt,
                _dumps(task.input_params),
                task.result_url,
                task.result_content,
                task.error_message,
                to_micros(task.cost_deducted),
                _iso(task.created_at),
                _iso(task.started_at),
                _iso(task.completed_at),
            ))
        finally:
            conn.close()

    def get(self, task_id: str) -> Optional[GenerationTask]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM generation_task WHERE id = ?",
                (task_id,),
            ).fetchone()
            return _row_to_task(row) if row else None
        finally:
            conn.close()

    def list_by_owner(
        self,
        owner: str,
        statuses: Optional[Iterable[TaskStatus]] = None,
        limit: int = 100
    ) -> List[GenerationTask]:
        """List an owner's tasks, newest first, optionally filtered by status."""
        query = f"SELECT {_TASK_COLUMNS} FROM generation_task WHERE owner = ?"
        params: List[Any] = [owner]
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_row_to_task(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def list_completed_for_project(
        self,
        project_id: str,
        since: Optional[datetime] = None,
        limit: int = 20
    ) -> List[GenerationTask]:
        query = f"""
            SELECT {_TASK_COLUMNS} FROM generation_task
            WHERE project_id = ? AND status = ?
        """
        params: List[Any] = [project_id, TaskStatus.COMPLETED.value]
        if since is not None:
            query += " AND completed_at >= ?"
            params.append(_iso(since))
        query += " ORDER BY completed_at DESC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_row_to_task(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def list_processing_started_before(self, cutoff: datetime) -> List[GenerationTask]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                SELECT {_TASK_COLUMNS} FROM generation_task
                WHERE status = ? AND started_at < ?
                ORDER BY started_at
            """, (TaskStatus.PROCESSING.value, _iso(cutoff))).fetchall()
            return [_row_to_task(row) for row in rows]
        finally:
            conn.close()

    def transition_to_processing(self, task_id: str, started_at: datetime) -> bool:
        return self._conditional_update(
            task_id,
            "status = ?, started_at = ?",
            [TaskStatus.PROCESSING.value, _iso(started_at)],
            [TaskStatus.PENDING],
        )

    def transition_to_completed(
        self,
        task_id: str,
        result: TaskResult,
        completed_at: datetime
    ) -> bool:
        return self._conditional_update(
            task_id,
            "status = ?, result_url = ?, result_content = ?, "
            "cost_deducted_micros = ?, completed_at = ?",
            [
                TaskStatus.COMPLETED.value,
                result.url,
                result.content,
                to_micros(result.cost),
                _iso(completed_at),
            ],
            [TaskStatus.PROCESSING],
        )

    def transition_to_failed(self, task_id: str, error: str, completed_at: datetime) -> bool:
        return self._conditional_update(
            task_id,
            "status = ?, error_message = ?, completed_at = ?",
            [TaskStatus.FAILED.value, error, _iso(completed_at)],
            [TaskStatus.PENDING, TaskStatus.PROCESSING],
        )

    def _conditional_update(
        self,
        task_id: str,
        assignments: str,
        values: List[Any],
        allowed_from: List[TaskStatus]
    ) -> bool:
        placeholders = ", ".join("?" for _ in allowed_from)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE generation_task SET {assignments} "
                f"WHERE id = ? AND status IN ({placeholders})",
                values + [task_id] + [status.value for status in allowed_from],
            )
            return cursor.rowcount == 1
        finally:
            conn.close()


def _row_to_task(row) -> GenerationTask:
    return GenerationTask(
        id=row[0],
        owner=row[1],
        project_id=row[2],
        task_type=TaskType(row[3]),
        status=TaskStatus(row[4]),
        input_prompt=row[5],
        input_params=json.loads(row[6] or "{}"),
        result_url=row[7],
        result_content=row[8],
        error_message=row[9],
        cost_deducted=from_micros(row[10]),
        created_at=_parse_dt(row[11]),
        started_at=_parse_dt(row[12]),
        completed_at=_parse_dt(row[13]),
    )


class UsageRepository:
    """Windowed usage counters and the spend ledger.

    A counter row exists once per (owner, feature, window_kind); its
    ``window_start`` marks the active window. Writing into a newer window
    resets the count in the same statement.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_counter(
        self,
        owner: str,
        feature: str,
        window_kind: WindowKind,
        window_start: datetime
    ) -> UsageCounter:
        """Return the counter for the given window, zero if it rolled over."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT window_start, count FROM usage_counter
                WHERE owner = ? AND feature = ? AND window_kind = ?
            """, (owner, feature, window_kind.value)).fetchone()
        finally:
            conn.close()

        count = 0
        if row is not None and row[0] == _iso(window_start):
            count = int(row[1])
        return UsageCounter(
            owner=owner,
            feature=feature,
            window_kind=window_kind,
            window_start=window_start,
            count=count,
        )

    def increment(
        self,
        owner: str,
        feature: str,
        windows: Dict[WindowKind, datetime],
        idempotency_key: str,
        amount: int = 1
    ) -> bool:
        """Atomically bump every window counter once per idempotency key.

        Returns:
            False when the key was already recorded (a replay), True otherwise
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        now = _iso(utc_now())
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO usage_ledger
                    (idempotency_key, feature, owner, recorded_at)
                    VALUES (?, ?, ?, ?)
                """, (idempotency_key, feature, owner, now))
                if cursor.rowcount == 0:
                    conn.execute("ROLLBACK")
                    return False

                for window_kind, window_start in windows.items():
                    conn.execute("""
                        INSERT INTO usage_counter
                        (owner, feature, window_kind, window_start, count)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT (owner, feature, window_kind) DO UPDATE SET
                            count = CASE
                                WHEN usage_counter.window_start = excluded.window_start
                                    THEN usage_counter.count + excluded.count
                                WHEN usage_counter.window_start < excluded.window_start
                                    THEN excluded.count
                                ELSE usage_counter.count
                            END,
                            window_start = MAX(usage_counter.window_start, excluded.window_start)
                    """, (owner, feature, window_kind.value, _iso(window_start), amount))
                conn.execute("COMMIT")
                return True
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def has_usage_key(self, idempotency_key: str, feature: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT 1 FROM usage_ledger WHERE idempotency_key = ? AND feature = ?
            """, (idempotency_key, feature)).fetchone()
            return row is not None
        finally:
            conn.close()

    def record_spend(self, entry: SpendEntry) -> bool:
        """Append a spend entry; replays with the same key are ignored."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO spend_ledger
                (idempotency_key, owner, model, amount_micros, charged_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                entry.idempotency_key,
                entry.owner,
                entry.model,
                to_micros(entry.amount),
                _iso(entry.charged_at),
            ))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def get_spend_since(self, owner: str, since: datetime) -> Decimal:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT SUM(amount_micros) FROM spend_ledger
                WHERE owner = ? AND charged_at >= ?
            """, (owner, _iso(since))).fetchone()
            return from_micros(row[0])
        finally:
            conn.close()


class ContextRepository:
    """Versioned conversation context storage."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, project_id: str, owner: str) -> Optional[ConversationContext]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT long_term, short_term, version, history, updated_at
                FROM conversation_context
                WHERE project_id = ? AND owner = ?
            """, (project_id, owner)).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return ConversationContext(
            project_id=project_id,
            owner=owner,
            long_term=json.loads(row[0]),
            short_term=json.loads(row[1]),
            version=int(row[2]),
            history=[_snapshot_from_dict(item) for item in json.loads(row[3])],
            updated_at=_parse_dt(row[4]),
        )

    def compare_and_set(
        self,
        context: ConversationContext,
        expected_version: int,
        history_limit: int
    ) -> bool:
        """Persist ``context`` only if the stored version still equals
        ``expected_version``. History is capped to the newest entries.
        """
        history = [_snapshot_to_dict(s) for s in context.history[-history_limit:]] if history_limit > 0 else []
        values = (
            _dumps(context.long_term),
            _dumps(context.short_term),
            context.version,
            _dumps(history),
            _iso(context.updated_at or utc_now()),
        )
        conn = get_connection(self.db_path)
        try:
            if expected_version == 0:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO conversation_context
                    (long_term, short_term, version, history, updated_at, project_id, owner)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, values + (context.project_id, context.owner))
            else:
                cursor = conn.execute("""
                    UPDATE conversation_context
                    SET long_term = ?, short_term = ?, version = ?, history = ?, updated_at = ?
                    WHERE project_id = ? AND owner = ? AND version = ?
                """, values + (context.project_id, context.owner, expected_version))
            return cursor.rowcount == 1
        finally:
            conn.close()


def _snapshot_to_dict(snapshot: ContextSnapshot) -> Dict[str, Any]:
    return {
        "version": snapshot.version,
        "long_term": snapshot.long_term,
        "short_term": snapshot.short_term,
        "saved_at": _iso(snapshot.saved_at),
        "change_reason": snapshot.change_reason,
    }


def _snapshot_from_dict(data: Dict[str, Any]) -> ContextSnapshot:
    return ContextSnapshot(
        version=int(data["version"]),
        long_term=data.get("long_term") or {},
        short_term=data.get("short_term") or {},
        saved_at=_parse_dt(data.get("saved_at")),
        change_reason=data.get("change_reason"),
    )
