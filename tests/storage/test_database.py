import datetime as dt

import pytest

from courtbook.models.enums import InstanceStatus, Recurrence, TemplateStatus
from courtbook.storage.database import DatabaseManager, to_db_timestamp
from tests.factories import NOW, make_instance, make_template


async def _stored_instance(db: DatabaseManager, **overrides):  # type: ignore[no-untyped-def]
    await db.insert_instances([make_instance(**overrides)])
    return (await db.list_instances())[-1]


# ── Core Methods ─────────────────────────────────────────────────────────────


class TestCoreMethods:
    async def test_initialize_creates_tables(self, db: DatabaseManager):
        rows = await db.fetch_all("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {r["name"] for r in rows}
        assert {"booking_templates", "booking_instances", "portal_credentials"} <= tables

    async def test_context_manager(self):
        async with DatabaseManager(":memory:") as manager:
            assert manager.connection is not None
        assert manager.connection is None

    async def test_initialize_is_repeatable(self, tmp_path):
        path = tmp_path / "courtbook.db"
        async with DatabaseManager(path):
            pass
        async with DatabaseManager(path) as manager:
            assert await manager.fetch_all("SELECT * FROM booking_templates") == []

    async def test_fetch_one_none(self, db: DatabaseManager):
        assert await db.fetch_one("SELECT * FROM booking_templates WHERE id = 1") is None


class TestTimestamps:
    def test_fixed_width_utc(self):
        assert to_db_timestamp(NOW) == "2025-11-01T12:00:00.000000+00:00"

    def test_converts_offsets_to_utc(self):
        eastern = dt.datetime(2025, 11, 1, 8, 0, tzinfo=dt.timezone(dt.timedelta(hours=-4)))
        assert to_db_timestamp(eastern) == to_db_timestamp(NOW)

    def test_naive_treated_as_utc(self):
        assert to_db_timestamp(NOW.replace(tzinfo=None)) == to_db_timestamp(NOW)

    def test_lexical_order_is_chronological(self):
        earlier = to_db_timestamp(NOW)
        later = to_db_timestamp(NOW + dt.timedelta(microseconds=1))
        assert earlier < later


# ── Booking Templates ───────────────────────────────────────────────────────


class TestTemplates:
    async def test_save_and_get(self, db: DatabaseManager):
        template_id = await db.save_template(
            make_template(recurrence=Recurrence.WEEKLY, recurrence_end_date=dt.date(2025, 12, 5))
        )
        stored = await db.get_template(template_id)
        assert stored.id == template_id
        assert stored.recurrence == Recurrence.WEEKLY
        assert stored.recurrence_end_date == dt.date(2025, 12, 5)
        assert stored.status == TemplateStatus.ACTIVE
        assert stored.expanded is False
        assert stored.created_at is not None

    async def test_get_missing(self, db: DatabaseManager):
        assert await db.get_template(42) is None

    async def test_list_by_owner_and_status(self, db: DatabaseManager):
        first = await db.save_template(make_template())
        await db.save_template(make_template(date=dt.date(2025, 11, 8)))
        await db.save_template(make_template(owner_id="user-2"))
        await db.cancel_template(first)

        assert len(await db.list_templates("user-1")) == 2
        active = await db.list_templates("user-1", TemplateStatus.ACTIVE)
        assert [t.date for t in active] == [dt.date(2025, 11, 8)]

    async def test_mark_expanded_once(self, db: DatabaseManager):
        template_id = await db.save_template(make_template())
        assert await db.mark_template_expanded(template_id) is True
        assert await db.mark_template_expanded(template_id) is False

    async def test_cancel_once(self, db: DatabaseManager):
        template_id = await db.save_template(make_template())
        assert await db.cancel_template(template_id) is True
        assert await db.cancel_template(template_id) is False


# ── Booking Instances ───────────────────────────────────────────────────────


class TestInstances:
    async def test_insert_and_get(self, db: DatabaseManager):
        inst = await _stored_instance(db, accept_any_unit=True)
        stored = await db.get_instance(inst.id)
        assert stored.status == InstanceStatus.PENDING
        assert stored.accept_any_unit is True
        assert stored.scheduled_execute_time == NOW
        assert stored.confirmation_id is None

    async def test_insert_skips_duplicate_template_dates(self, db: DatabaseManager):
        template_id = await db.save_template(make_template())
        instance = make_instance(template_id=template_id)
        assert await db.insert_instances([instance]) == 1
        assert await db.insert_instances([instance]) == 0
        assert len(await db.list_instances(template_id=template_id)) == 1

    async def test_list_filters(self, db: DatabaseManager):
        await _stored_instance(db)
        await _stored_instance(db, owner_id="user-2")
        await _stored_instance(db, status=InstanceStatus.FAILED, date=dt.date(2025, 11, 8))
        assert len(await db.list_instances(owner_id="user-1")) == 2
        failed = await db.list_instances(status=InstanceStatus.FAILED)
        assert [i.date for i in failed] == [dt.date(2025, 11, 8)]

    async def test_due_instances(self, db: DatabaseManager):
        due = await _stored_instance(db)
        await _stored_instance(db, scheduled_execute_time=NOW + dt.timedelta(seconds=1))
        await _stored_instance(db, status=InstanceStatus.FAILED)
        assert [i.id for i in await db.get_due_instances(NOW)] == [due.id]

    async def test_due_instances_oldest_first_with_limit(self, db: DatabaseManager):
        newer = await _stored_instance(db)
        older = await _stored_instance(db, scheduled_execute_time=NOW - dt.timedelta(hours=1))
        assert [i.id for i in await db.get_due_instances(NOW)] == [older.id, newer.id]
        assert len(await db.get_due_instances(NOW, limit=1)) == 1


class TestTransitions:
    async def test_claim_once(self, db: DatabaseManager):
        inst = await _stored_instance(db)
        assert await db.claim_instance(inst.id) is True
        assert await db.claim_instance(inst.id) is False
        assert (await db.get_instance(inst.id)).status == InstanceStatus.PROCESSING

    async def test_complete_requires_processing(self, db: DatabaseManager):
        inst = await _stored_instance(db)
        assert await db.complete_instance(inst.id, "278886", 3) is False
        await db.claim_instance(inst.id)
        assert await db.complete_instance(inst.id, "278886", 3) is True
        stored = await db.get_instance(inst.id)
        assert (stored.status, stored.confirmation_id, stored.actual_unit) == (
            InstanceStatus.CONFIRMED, "278886", 3
        )

    async def test_confirmed_is_terminal(self, db: DatabaseManager):
        inst = await _stored_instance(db)
        await db.claim_instance(inst.id)
        await db.complete_instance(inst.id, "1", 3)
        assert await db.cancel_instance(inst.id) is False
        assert await db.reset_instance_for_retry(inst.id, NOW) is False
        assert await db.claim_instance(inst.id) is False
        assert await db.fail_instance(inst.id, 1, "late") is False

    async def test_reschedule(self, db: DatabaseManager):
        inst = await _stored_instance(db)
        await db.claim_instance(inst.id)
        later = NOW + dt.timedelta(minutes=1)
        assert await db.reschedule_instance(inst.id, later, 1, "timeout") is True
        stored = await db.get_instance(inst.id)
        assert stored.status == InstanceStatus.PENDING
        assert stored.scheduled_execute_time == later
        assert stored.retry_count == 1

    async def test_cancelled_template_refuses_reschedule_and_fail(self, db: DatabaseManager):
        template_id = await db.save_template(make_template())
        inst = await _stored_instance(db, template_id=template_id)
        await db.claim_instance(inst.id)
        await db.cancel_template(template_id)

        assert await db.reschedule_instance(inst.id, NOW, 1, "timeout") is False
        assert await db.fail_instance(inst.id, 1, "boom") is False
        assert await db.fail_instance(
            inst.id, 1, "boom", status=InstanceStatus.CANCELLED
        ) is True
        assert (await db.get_instance(inst.id)).status == InstanceStatus.CANCELLED

    async def test_fail_never_lowers_retry_count(self, db: DatabaseManager):
        inst = await _stored_instance(db, retry_count=2)
        await db.claim_instance(inst.id)
        await db.fail_instance(inst.id, 1, "boom")
        assert (await db.get_instance(inst.id)).retry_count == 2

    @pytest.mark.parametrize(
        ("status", "cancellable"),
        [
            (InstanceStatus.PENDING, True),
            (InstanceStatus.FAILED, True),
            (InstanceStatus.PROCESSING, False),
            (InstanceStatus.CANCELLED, False),
        ],
    )
    async def test_cancel(self, db: DatabaseManager, status, cancellable):
        inst = await _stored_instance(db, status=status)
        assert await db.cancel_instance(inst.id) is cancellable

    async def test_reset_for_retry(self, db: DatabaseManager):
        inst = await _stored_instance(db, status=InstanceStatus.FAILED, retry_count=3)
        later = NOW + dt.timedelta(days=1)
        assert await db.reset_instance_for_retry(inst.id, later) is True
        stored = await db.get_instance(inst.id)
        assert stored.status == InstanceStatus.PENDING
        assert stored.retry_count == 0
        assert stored.error_detail is None
        assert stored.scheduled_execute_time == later

    async def test_cancel_template_instances(self, db: DatabaseManager):
        template_id = await db.save_template(make_template(recurrence=Recurrence.WEEKLY))
        dates = [dt.date(2025, 11, 7) + dt.timedelta(weeks=i) for i in range(3)]
        await db.insert_instances([make_instance(template_id=template_id, date=d) for d in dates])
        first, *_ = await db.list_instances(template_id=template_id)
        await db.claim_instance(first.id)

        assert await db.cancel_template_instances(template_id) == 2
        statuses = [i.status for i in await db.list_instances(template_id=template_id)]
        assert statuses == [
            InstanceStatus.PROCESSING, InstanceStatus.CANCELLED, InstanceStatus.CANCELLED
        ]
