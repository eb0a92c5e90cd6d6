"""Database repository - all SQL queries."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, List, TypeVar

import aiosqlite

from platewise.db.models import (
    DeliveryRecord,
    Device,
    Event,
    EventName,
    UserState,
    Workflow,
    WorkflowStatus,
)
from platewise.utils.constants import (
    DEVICE_ACTIVE_DAYS,
    TRANSACTION_MAX_ATTEMPTS,
    NotificationPref,
)
from platewise.utils.time_utils import from_db, to_db

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite host parameter limit is 999 on older builds
_IN_CHUNK = 500


def _is_contention(error: aiosqlite.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class Repository:
    """Database access layer.

    Simple reads and single-statement writes go through one long-lived
    connection. Each atomic transaction gets its own short-lived connection
    holding the write lock from BEGIN IMMEDIATE until COMMIT.
    """

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._db: aiosqlite.Connection | None = None
        # Strong references to in-flight background writes
        self._background_tasks: set[asyncio.Task] = set()

    async def connect(self) -> None:
        """Open database connection."""
        self._db = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout)
        self._db.row_factory = aiosqlite.Row
        logger.info(f"Connected to database at {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Database connection closed")

    @property
    def db(self) -> aiosqlite.Connection:
        """Get the database connection."""
        if self._db is None:
            raise RuntimeError("Database not connected")
        return self._db

    # Transactions

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a serializable transaction on a dedicated connection."""
        conn = await aiosqlite.connect(
            self.db_path, timeout=self.busy_timeout, isolation_level=None
        )
        conn.row_factory = aiosqlite.Row
        try:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")
        finally:
            await conn.close()

    async def run_in_transaction(
        self,
        fn: Callable[[aiosqlite.Connection], Awaitable[T]],
        max_attempts: int = TRANSACTION_MAX_ATTEMPTS,
    ) -> T:
        """Run fn inside a transaction, re-executing it on lock contention.

        fn must be safe to run again from scratch: it only sees the
        connection and must derive every write from what it reads there.
        """
        for attempt in range(1, max_attempts + 1):
            try:
                async with self.transaction() as conn:
                    return await fn(conn)
            except aiosqlite.OperationalError as e:
                if not _is_contention(e) or attempt == max_attempts:
                    raise
                delay = 0.05 * 2 ** (attempt - 1)
                logger.warning(
                    f"Transaction contention (attempt {attempt}/{max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")

    # Background writes

    def spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        """Run coro as a task owned by this repository."""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain_background_tasks(self) -> None:
        """Wait for all in-flight background writes to finish."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks))

    # User operations

    async def get_user(
        self, user_id: str, conn: aiosqlite.Connection | None = None
    ) -> UserState | None:
        """Get a user's state by id."""
        async with (conn or self.db).execute(
            "SELECT * FROM users WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_user(row)
            return None

    async def save_user(
        self,
        user: UserState,
        now: datetime,
        conn: aiosqlite.Connection | None = None,
    ) -> None:
        """Insert or fully overwrite a user's state."""
        db = conn or self.db
        prefs = (
            json.dumps(
                {
                    t: {"enabled": p.enabled, "hour": p.hour, "minute": p.minute}
                    for t, p in user.notification_prefs.items()
                }
            )
            if user.notification_prefs is not None
            else None
        )
        await db.execute(
            """
            INSERT INTO users (
                user_id, display_name, current_streak, last_log_date, total_logs,
                timezone, last_active_at, notification_prefs, next_notification_utc,
                next_notification_types, last_notification_window, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                display_name = excluded.display_name,
                current_streak = excluded.current_streak,
                last_log_date = excluded.last_log_date,
                total_logs = excluded.total_logs,
                timezone = excluded.timezone,
                last_active_at = excluded.last_active_at,
                notification_prefs = excluded.notification_prefs,
                next_notification_utc = excluded.next_notification_utc,
                next_notification_types = excluded.next_notification_types,
                last_notification_window = excluded.last_notification_window,
                updated_at = excluded.updated_at
            """,
            (
                user.user_id,
                user.display_name,
                user.current_streak,
                user.last_log_date.isoformat() if user.last_log_date else None,
                user.total_logs,
                user.timezone,
                to_db(user.last_active_at) if user.last_active_at else None,
                prefs,
                to_db(user.next_notification_utc) if user.next_notification_utc else None,
                json.dumps(list(user.next_notification_types)),
                user.last_notification_window,
                to_db(now),
                to_db(now),
            ),
        )
        if conn is None:
            await db.commit()

    async def set_display_name(self, user_id: str, display_name: str | None) -> None:
        """Update the name used to personalize notifications."""
        await self.db.execute(
            "UPDATE users SET display_name = ? WHERE user_id = ?",
            (display_name, user_id),
        )
        await self.db.commit()

    async def get_due_users(self, now: datetime) -> List[UserState]:
        """Get users whose next notification is due (driver query)."""
        async with self.db.execute(
            """
            SELECT * FROM users
            WHERE next_notification_utc IS NOT NULL
            AND next_notification_utc <= ?
            ORDER BY next_notification_utc
            """,
            (to_db(now),),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_user(row) for row in rows]

    async def get_users_without_prefs(self) -> List[UserState]:
        """Get users that never stored notification preferences."""
        async with self.db.execute(
            "SELECT * FROM users WHERE notification_prefs IS NULL ORDER BY user_id"
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_user(row) for row in rows]

    # Event operations

    async def event_exists(self, event_id: str, conn: aiosqlite.Connection) -> bool:
        """Check whether an event id was already written."""
        async with conn.execute(
            "SELECT 1 FROM events WHERE event_id = ?", (event_id,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def insert_event(self, event: Event, conn: aiosqlite.Connection) -> None:
        """Write an event record."""
        await conn.execute(
            """
            INSERT INTO events (
                event_id, user_id, event_name, event_timestamp_utc, event_local_date,
                ingested_at, timezone, session_id, platform, metadata,
                schema_version, metadata_version
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.user_id,
                event.event_name.value,
                to_db(event.event_timestamp_utc),
                event.event_local_date.isoformat(),
                to_db(event.ingested_at),
                event.timezone,
                event.session_id,
                event.platform,
                json.dumps(event.metadata),
                event.schema_version,
                event.metadata_version,
            ),
        )

    async def get_event(self, event_id: str) -> Event | None:
        """Get an event by id."""
        async with self.db.execute(
            "SELECT * FROM events WHERE event_id = ?", (event_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_event(row)
            return None

    async def get_events_by_user(self, user_id: str) -> List[Event]:
        """Get a user's events in chronological order."""
        async with self.db.execute(
            "SELECT * FROM events WHERE user_id = ? ORDER BY event_timestamp_utc",
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_event(row) for row in rows]

    # Device operations

    async def upsert_device(
        self,
        user_id: str,
        device_id: str,
        push_token: str,
        platform: str,
        now: datetime,
    ) -> None:
        """Register a device, claiming it for the current user."""
        await self.db.execute(
            """
            INSERT INTO devices (device_id, user_id, push_token, platform, created_at, last_seen_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(device_id) DO UPDATE SET
                user_id = excluded.user_id,
                push_token = excluded.push_token,
                platform = excluded.platform,
                last_seen_at = excluded.last_seen_at
            """,
            (device_id, user_id, push_token, platform, to_db(now), to_db(now)),
        )
        await self.db.commit()
        logger.info(f"Registered device {device_id} for user {user_id}")

    async def get_active_devices(
        self,
        user_ids: List[str],
        now: datetime,
        active_days: int = DEVICE_ACTIVE_DAYS,
    ) -> dict[str, List[Device]]:
        """Get devices seen recently, grouped by owning user."""
        cutoff = to_db(now - timedelta(days=active_days))
        devices: dict[str, List[Device]] = {}

        for i in range(0, len(user_ids), _IN_CHUNK):
            chunk = user_ids[i:i + _IN_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            async with self.db.execute(
                f"""
                SELECT * FROM devices
                WHERE user_id IN ({placeholders})
                AND last_seen_at >= ?
                ORDER BY device_id
                """,
                (*chunk, cutoff),
            ) as cursor:
                rows = await cursor.fetchall()
                for row in rows:
                    device = Device(
                        device_id=row["device_id"],
                        user_id=row["user_id"],
                        push_token=row["push_token"],
                        platform=row["platform"],
                        created_at=from_db(row["created_at"]),
                        last_seen_at=from_db(row["last_seen_at"]),
                    )
                    devices.setdefault(device.user_id, []).append(device)

        return devices

    # Delivery log operations

    async def log_delivery(self, record: DeliveryRecord) -> bool:
        """Append a delivery record.

        Returns False when a record with the same notification id exists,
        i.e. the attempt belongs to a window that was already dispatched.
        """
        async with self.db.execute(
            """
            INSERT OR IGNORE INTO notifications (
                notification_id, device_id, user_id, notification_type, title, body,
                link, delivery_status, error_message, sent_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.notification_id,
                record.device_id,
                record.user_id,
                record.notification_type,
                record.title,
                record.body,
                record.link,
                record.delivery_status,
                record.error_message,
                to_db(record.sent_at),
            ),
        ) as cursor:
            inserted = cursor.rowcount == 1
        await self.db.commit()
        return inserted

    async def get_deliveries(self, user_id: str) -> List[DeliveryRecord]:
        """Get delivery history for a user."""
        async with self.db.execute(
            "SELECT * FROM notifications WHERE user_id = ? ORDER BY sent_at",
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                DeliveryRecord(
                    notification_id=row["notification_id"],
                    device_id=row["device_id"],
                    user_id=row["user_id"],
                    notification_type=row["notification_type"],
                    title=row["title"],
                    body=row["body"],
                    link=row["link"],
                    delivery_status=row["delivery_status"],
                    error_message=row["error_message"],
                    sent_at=from_db(row["sent_at"]),
                )
                for row in rows
            ]

    # Workflow operations

    async def create_workflow(self, workflow: Workflow) -> None:
        """Persist a new workflow."""
        await self.db.execute(
            """
            INSERT INTO workflows (
                id, type, status, payload, user_id, campaign_id, created_at,
                expires_at, max_resolves, click_count, resolve_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                workflow.id,
                workflow.type,
                workflow.status.value,
                json.dumps(workflow.payload),
                workflow.user_id,
                workflow.campaign_id,
                to_db(workflow.created_at),
                to_db(workflow.expires_at),
                workflow.max_resolves,
                workflow.click_count,
                workflow.resolve_count,
            ),
        )
        await self.db.commit()

    async def get_workflow(
        self, workflow_id: str, conn: aiosqlite.Connection | None = None
    ) -> Workflow | None:
        """Get a workflow by id."""
        async with (conn or self.db).execute(
            "SELECT * FROM workflows WHERE id = ?", (workflow_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_workflow(row)
            return None

    async def record_workflow_resolve(self, workflow_id: str, now: datetime) -> None:
        """Atomically bump the resolve counter."""
        await self.db.execute(
            """
            UPDATE workflows SET
                resolve_count = resolve_count + 1,
                last_resolved_at = ?
            WHERE id = ?
            """,
            (to_db(now), workflow_id),
        )
        await self.db.commit()

    async def mark_workflow_completed(
        self, workflow_id: str, now: datetime, conn: aiosqlite.Connection
    ) -> None:
        """Persist the ACTIVE -> COMPLETED transition."""
        await conn.execute(
            "UPDATE workflows SET status = ?, completed_at = ? WHERE id = ?",
            (WorkflowStatus.COMPLETED.value, to_db(now), workflow_id),
        )

    # Helper methods

    def _row_to_user(self, row: aiosqlite.Row) -> UserState:
        """Convert a database row to a UserState object."""
        prefs = None
        if row["notification_prefs"]:
            prefs = {
                t: NotificationPref(p["enabled"], p["hour"], p["minute"])
                for t, p in json.loads(row["notification_prefs"]).items()
            }
        return UserState(
            user_id=row["user_id"],
            display_name=row["display_name"],
            current_streak=row["current_streak"],
            last_log_date=date.fromisoformat(row["last_log_date"])
            if row["last_log_date"]
            else None,
            total_logs=row["total_logs"],
            timezone=row["timezone"],
            last_active_at=from_db(row["last_active_at"]),
            notification_prefs=prefs,
            next_notification_utc=from_db(row["next_notification_utc"]),
            next_notification_types=json.loads(row["next_notification_types"]),
            last_notification_window=row["last_notification_window"],
        )

    def _row_to_event(self, row: aiosqlite.Row) -> Event:
        """Convert a database row to an Event object."""
        return Event(
            event_id=row["event_id"],
            user_id=row["user_id"],
            event_name=EventName(row["event_name"]),
            event_timestamp_utc=from_db(row["event_timestamp_utc"]),
            event_local_date=date.fromisoformat(row["event_local_date"]),
            ingested_at=from_db(row["ingested_at"]),
            timezone=row["timezone"],
            session_id=row["session_id"],
            platform=row["platform"],
            metadata=json.loads(row["metadata"]),
            schema_version=row["schema_version"],
            metadata_version=row["metadata_version"],
        )

    def _row_to_workflow(self, row: aiosqlite.Row) -> Workflow:
        """Convert a database row to a Workflow object."""
        return Workflow(
            id=row["id"],
            type=row["type"],
            status=WorkflowStatus(row["status"]),
            payload=json.loads(row["payload"]),
            user_id=row["user_id"],
            campaign_id=row["campaign_id"],
            created_at=from_db(row["created_at"]),
            expires_at=from_db(row["expires_at"]),
            completed_at=from_db(row["completed_at"]),
            max_resolves=row["max_resolves"],
            click_count=row["click_count"],
            resolve_count=row["resolve_count"],
            last_resolved_at=from_db(row["last_resolved_at"]),
        )
