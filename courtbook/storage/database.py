import datetime as dt
import logging
from pathlib import Path

import aiosqlite

from courtbook.models.enums import (
    InstanceStatus,
    PartyType,
    Recurrence,
    TemplateStatus,
)
from courtbook.models.instance import BookingInstance
from courtbook.models.template import BookingTemplate

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def to_db_timestamp(value: dt.datetime) -> str:
    """Fixed-width UTC text, so SQL string comparison is chronological."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC).strftime(_TIMESTAMP_FORMAT)


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


_TEMPLATE_NOT_CANCELLED = """NOT EXISTS (
    SELECT 1 FROM booking_templates t
    WHERE t.id = booking_instances.template_id AND t.status = 'cancelled')"""


class DatabaseManager:
    """Async SQLite database manager with typed repository methods.

    All SQL in the application lives in this class. Other layers
    call typed methods that accept and return Pydantic models.

    Every instance state transition is a conditional ``UPDATE`` on the
    current status and reports whether it applied, so concurrent
    schedulers (even in separate processes) cannot both win one row.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        self.connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection, enable WAL mode and foreign keys, execute schema."""
        self.connection = await aiosqlite.connect(self.db_path)
        self.connection.row_factory = aiosqlite.Row
        schema_path = Path(__file__).parent / "schema.sql"
        schema_sql = schema_path.read_text()
        await self.connection.executescript(schema_sql)
        await self.connection.execute("PRAGMA journal_mode=WAL")
        await self.connection.execute("PRAGMA foreign_keys=ON")
        await self.connection.execute("PRAGMA busy_timeout=5000")
        await self.connection.commit()
        logger.info(f"Database initialized at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None

    async def __aenter__(self) -> "DatabaseManager":
        await self.initialize()
        return self

    async def __aexit__(
        self, exc_type: type | None, exc_val: Exception | None, exc_tb: object
    ) -> None:
        await self.close()

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a single SQL statement and commit."""
        assert self.connection is not None
        cursor = await self.connection.execute(sql, params)
        await self.connection.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> dict | None:
        """Execute a query and return a single row as a dict, or None."""
        assert self.connection is not None
        cursor = await self.connection.execute(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a query and return all rows as list of dicts."""
        assert self.connection is not None
        cursor = await self.connection.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ── Booking Templates ─────────────────────────────────────────────────

    def _row_to_template(self, row: dict) -> BookingTemplate:
        return BookingTemplate(
            id=row["id"],
            owner_id=row["owner_id"],
            preferred_unit=row["preferred_unit"],
            accept_any_unit=bool(row["accept_any_unit"]),
            date=dt.date.fromisoformat(row["date"]),
            time_of_day=row["time_of_day"],
            party_type=PartyType(row["party_type"]),
            duration_minutes=row["duration_minutes"],
            recurrence=Recurrence(row["recurrence"]),
            recurrence_end_date=(
                dt.date.fromisoformat(row["recurrence_end_date"])
                if row["recurrence_end_date"] else None
            ),
            status=TemplateStatus(row["status"]),
            expanded=bool(row["expanded"]),
            created_at=dt.datetime.fromisoformat(row["created_at"]),
        )

    async def save_template(self, template: BookingTemplate) -> int:
        now = to_db_timestamp(_utc_now())
        cursor = await self.execute(
            """INSERT INTO booking_templates
               (owner_id, preferred_unit, accept_any_unit, date, time_of_day,
                party_type, duration_minutes, recurrence, recurrence_end_date,
                status, expanded, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                template.owner_id,
                template.preferred_unit,
                template.accept_any_unit,
                template.date.isoformat(),
                template.time_of_day,
                template.party_type.value,
                template.duration_minutes,
                template.recurrence.value,
                template.recurrence_end_date.isoformat() if template.recurrence_end_date else None,
                template.status.value,
                template.expanded,
                now,
                now,
            ),
        )
        return cursor.lastrowid  # type: ignore[return-value]

    async def get_template(self, template_id: int) -> BookingTemplate | None:
        row = await self.fetch_one(
            "SELECT * FROM booking_templates WHERE id = ?", (template_id,)
        )
        if not row:
            return None
        return self._row_to_template(row)

    async def list_templates(
        self, owner_id: str, status: TemplateStatus | None = None
    ) -> list[BookingTemplate]:
        sql = "SELECT * FROM booking_templates WHERE owner_id = ?"
        params: list = [owner_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY date, time_of_day"
        rows = await self.fetch_all(sql, tuple(params))
        return [self._row_to_template(r) for r in rows]

    async def mark_template_expanded(self, template_id: int) -> bool:
        """Flag a template as expanded. Returns False if it already was."""
        cursor = await self.execute(
            """UPDATE booking_templates SET expanded = 1, updated_at = ?
               WHERE id = ? AND expanded = 0""",
            (to_db_timestamp(_utc_now()), template_id),
        )
        return cursor.rowcount == 1

    async def cancel_template(self, template_id: int) -> bool:
        cursor = await self.execute(
            """UPDATE booking_templates SET status = 'cancelled', updated_at = ?
               WHERE id = ? AND status = 'active'""",
            (to_db_timestamp(_utc_now()), template_id),
        )
        return cursor.rowcount == 1

    # ── Booking Instances ─────────────────────────────────────────────────

    def _row_to_instance(self, row: dict) -> BookingInstance:
        return BookingInstance(
            id=row["id"],
            template_id=row["template_id"],
            owner_id=row["owner_id"],
            preferred_unit=row["preferred_unit"],
            accept_any_unit=bool(row["accept_any_unit"]),
            date=dt.date.fromisoformat(row["date"]),
            time_of_day=row["time_of_day"],
            party_type=PartyType(row["party_type"]),
            duration_minutes=row["duration_minutes"],
            scheduled_execute_time=dt.datetime.fromisoformat(row["scheduled_execute_time"]),
            status=InstanceStatus(row["status"]),
            retry_count=row["retry_count"],
            confirmation_id=row["confirmation_id"],
            actual_unit=row["actual_unit"],
            error_detail=row["error_detail"],
            created_at=dt.datetime.fromisoformat(row["created_at"]),
            updated_at=dt.datetime.fromisoformat(row["updated_at"]),
        )

    async def insert_instances(self, instances: list[BookingInstance]) -> int:
        """Insert instances, skipping any ``(template_id, date)`` already stored.

        Returns:
            Number of rows actually inserted.
        """
        assert self.connection is not None
        now = to_db_timestamp(_utc_now())
        inserted = 0
        for inst in instances:
            cursor = await self.connection.execute(
                """INSERT OR IGNORE INTO booking_instances
                   (template_id, owner_id, preferred_unit, accept_any_unit, date,
                    time_of_day, party_type, duration_minutes, scheduled_execute_time,
                    status, retry_count, error_detail, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    inst.template_id,
                    inst.owner_id,
                    inst.preferred_unit,
                    inst.accept_any_unit,
                    inst.date.isoformat(),
                    inst.time_of_day,
                    inst.party_type.value,
                    inst.duration_minutes,
                    to_db_timestamp(inst.scheduled_execute_time),
                    inst.status.value,
                    inst.retry_count,
                    inst.error_detail,
                    now,
                    now,
                ),
            )
            inserted += cursor.rowcount
        await self.connection.commit()
        return inserted

    async def get_instance(self, instance_id: int) -> BookingInstance | None:
        row = await self.fetch_one(
            "SELECT * FROM booking_instances WHERE id = ?", (instance_id,)
        )
        if not row:
            return None
        return self._row_to_instance(row)

    async def list_instances(
        self,
        owner_id: str | None = None,
        template_id: int | None = None,
        status: InstanceStatus | None = None,
    ) -> list[BookingInstance]:
        clauses: list[str] = []
        params: list = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if template_id is not None:
            clauses.append("template_id = ?")
            params.append(template_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        sql = "SELECT * FROM booking_instances"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY date, time_of_day, id"
        rows = await self.fetch_all(sql, tuple(params))
        return [self._row_to_instance(r) for r in rows]

    async def get_due_instances(
        self, now: dt.datetime, limit: int | None = None
    ) -> list[BookingInstance]:
        """Pending instances whose execute time has arrived, oldest first."""
        sql = """SELECT * FROM booking_instances
                 WHERE status = 'pending' AND scheduled_execute_time <= ?
                 ORDER BY scheduled_execute_time, id"""
        params: tuple = (to_db_timestamp(now),)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        rows = await self.fetch_all(sql, params)
        return [self._row_to_instance(r) for r in rows]

    async def claim_instance(self, instance_id: int) -> bool:
        """Atomically move ``pending -> processing``. True only for the winner."""
        cursor = await self.execute(
            """UPDATE booking_instances SET status = 'processing', updated_at = ?
               WHERE id = ? AND status = 'pending'""",
            (to_db_timestamp(_utc_now()), instance_id),
        )
        return cursor.rowcount == 1

    async def complete_instance(
        self, instance_id: int, confirmation_id: str | None, actual_unit: int | None
    ) -> bool:
        cursor = await self.execute(
            """UPDATE booking_instances
               SET status = 'confirmed', confirmation_id = ?, actual_unit = ?,
                   error_detail = NULL, updated_at = ?
               WHERE id = ? AND status = 'processing'""",
            (confirmation_id, actual_unit, to_db_timestamp(_utc_now()), instance_id),
        )
        return cursor.rowcount == 1

    async def reschedule_instance(
        self,
        instance_id: int,
        execute_at: dt.datetime,
        retry_count: int,
        error_detail: str | None,
    ) -> bool:
        """Return a processing instance to ``pending`` for a later attempt.

        Refused when the parent template has been cancelled.
        """
        cursor = await self.execute(
            f"""UPDATE booking_instances
               SET status = 'pending', scheduled_execute_time = ?,
                   retry_count = MAX(retry_count, ?), error_detail = ?, updated_at = ?
               WHERE id = ? AND status = 'processing' AND {_TEMPLATE_NOT_CANCELLED}""",
            (
                to_db_timestamp(execute_at),
                retry_count,
                error_detail,
                to_db_timestamp(_utc_now()),
                instance_id,
            ),
        )
        return cursor.rowcount == 1

    async def fail_instance(
        self,
        instance_id: int,
        retry_count: int,
        error_detail: str | None,
        status: InstanceStatus = InstanceStatus.FAILED,
    ) -> bool:
        """Finish a processing instance without a booking.

        *status* is ``failed`` normally, or ``cancelled`` when the parent
        template was cancelled while the attempt was in flight. A ``failed``
        write is refused once the template has been cancelled.
        """
        guard = "" if status == InstanceStatus.CANCELLED else f" AND {_TEMPLATE_NOT_CANCELLED}"
        cursor = await self.execute(
            f"""UPDATE booking_instances
               SET status = ?, retry_count = MAX(retry_count, ?),
                   error_detail = ?, updated_at = ?
               WHERE id = ? AND status = 'processing'{guard}""",
            (
                status.value,
                retry_count,
                error_detail,
                to_db_timestamp(_utc_now()),
                instance_id,
            ),
        )
        return cursor.rowcount == 1

    async def cancel_instance(self, instance_id: int) -> bool:
        """User cancel. Only pending or failed instances can be cancelled."""
        cursor = await self.execute(
            """UPDATE booking_instances SET status = 'cancelled', updated_at = ?
               WHERE id = ? AND status IN ('pending', 'failed')""",
            (to_db_timestamp(_utc_now()), instance_id),
        )
        return cursor.rowcount == 1

    async def cancel_template_instances(self, template_id: int) -> int:
        cursor = await self.execute(
            """UPDATE booking_instances SET status = 'cancelled', updated_at = ?
               WHERE template_id = ? AND status IN ('pending', 'failed')""",
            (to_db_timestamp(_utc_now()), template_id),
        )
        return cursor.rowcount

    async def reset_instance_for_retry(
        self, instance_id: int, execute_at: dt.datetime
    ) -> bool:
        """User retry: ``failed -> pending`` with a fresh retry budget."""
        cursor = await self.execute(
            """UPDATE booking_instances
               SET status = 'pending', retry_count = 0, error_detail = NULL,
                   scheduled_execute_time = ?, updated_at = ?
               WHERE id = ? AND status = 'failed'""",
            (to_db_timestamp(execute_at), to_db_timestamp(_utc_now()), instance_id),
        )
        return cursor.rowcount == 1
