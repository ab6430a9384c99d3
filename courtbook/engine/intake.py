"""Template intake and the user actions that act on templates and instances."""

import datetime as dt
import logging
from collections.abc import Callable

from pydantic import ValidationError as PydanticValidationError

from courtbook.clients.resilience import ValidationError
from courtbook.config import Settings
from courtbook.engine.clock import utc_now
from courtbook.engine.recurrence import expand_template
from courtbook.engine.schedule import PAST_DATE_DETAIL, ScheduleCalculator
from courtbook.models.enums import InstanceStatus
from courtbook.models.instance import BookingInstance
from courtbook.models.template import BookingTemplate
from courtbook.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def _preferred_unit(payload: dict) -> object:
    selector = payload.get("resource_selector", payload.get("preferred_unit"))
    if isinstance(selector, dict):
        return selector.get("preferred_unit", selector.get("unit"))
    return selector


def _accept_any_unit(payload: dict) -> bool:
    selector = payload.get("resource_selector")
    if isinstance(selector, dict) and "accept_any_unit" in selector:
        return bool(selector["accept_any_unit"])
    return bool(payload.get("accept_any_unit", False))


def _duration_minutes(value: object) -> object:
    """Accept minutes (60, 90) or the mobile app's hours (1, 1.5)."""
    if isinstance(value, int | float) and not isinstance(value, bool) and 0 < value < 10:
        return int(round(value * 60))
    return value


def _format_errors(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"]) or "template"
        parts.append(f"{field}: {err['msg']}")
    return "; ".join(parts)


def validate_template(
    payload: dict,
    now: dt.datetime,
    settings: Settings,
    calculator: ScheduleCalculator | None = None,
) -> BookingTemplate:
    """Validate an intake payload and build an unsaved template.

    Raises:
        ValidationError: On any malformed or out-of-range field.
    """
    calculator = calculator or ScheduleCalculator.from_settings(settings)
    fields = {
        "owner_id": payload.get("owner_id"),
        "preferred_unit": _preferred_unit(payload),
        "accept_any_unit": _accept_any_unit(payload),
        "date": payload.get("date"),
        "time_of_day": payload.get("time_of_day"),
        "party_type": payload.get("party_type", "singles"),
        "duration_minutes": _duration_minutes(
            payload.get("duration", payload.get("duration_minutes", 60))
        ),
        "recurrence": payload.get("recurrence", "once"),
        "recurrence_end_date": payload.get("recurrence_end_date") or None,
    }
    try:
        template = BookingTemplate(**fields)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid booking template: {_format_errors(exc)}") from exc

    today = calculator.today(now)
    if template.date < today:
        raise ValidationError(f"{PAST_DATE_DETAIL}: {template.date.isoformat()}")
    latest = today + dt.timedelta(days=settings.max_advance_days)
    if template.date > latest:
        raise ValidationError(
            f"Booking date {template.date.isoformat()} is more than "
            f"{settings.max_advance_days} days ahead"
        )
    return template


class TemplateService:
    """Creates templates and applies the idempotent user actions.

    Args:
        db: Store for templates and instances.
        settings: Application settings.
        calculator: Schedule calculator (defaults from settings).
        now: Time source; the server passes the portal-synced clock.
    """

    def __init__(
        self,
        db: DatabaseManager,
        settings: Settings,
        calculator: ScheduleCalculator | None = None,
        now: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.db = db
        self.settings = settings
        self.calculator = calculator or ScheduleCalculator.from_settings(settings)
        self._now = now

    async def create_template(
        self, payload: dict
    ) -> tuple[BookingTemplate, list[BookingInstance]]:
        """Validate, store and expand a template. Instances are scheduled here, once."""
        now = self._now()
        template = validate_template(payload, now, self.settings, self.calculator)
        template_id = await self.db.save_template(template)
        template = template.model_copy(update={"id": template_id})
        instances = await self.expand(template, now)
        logger.info(
            "Created template %s for %s: %d instance(s) from %s",
            template_id, template.owner_id, len(instances), template.date,
        )
        return template, instances

    async def expand(self, template: BookingTemplate, now: dt.datetime) -> list[BookingInstance]:
        """Store the template's instances unless it has been expanded already."""
        assert template.id is not None
        stored = await self.db.get_template(template.id)
        if stored is not None and stored.expanded:
            logger.info("Template %s already expanded, skipping", template.id)
            return await self.db.list_instances(template_id=template.id)

        instances = expand_template(
            template,
            self.calculator,
            now,
            max_instances=self.settings.recurrence_max_instances,
            monthly_stride_days=self.settings.monthly_stride_days,
        )
        await self.db.insert_instances(instances)
        await self.db.mark_template_expanded(template.id)
        return await self.db.list_instances(template_id=template.id)

    async def cancel_template(self, template_id: int, owner_id: str) -> int | None:
        """Cancel a template and its not-yet-run instances.

        Returns:
            Number of instances cancelled by this call, or None if the
            template does not exist for *owner_id*.
        """
        template = await self.db.get_template(template_id)
        if template is None or template.owner_id != owner_id:
            return None
        await self.db.cancel_template(template_id)
        cancelled = await self.db.cancel_template_instances(template_id)
        logger.info("Cancelled template %s (%d instance(s))", template_id, cancelled)
        return cancelled

    async def cancel_instance(self, instance_id: int, owner_id: str) -> BookingInstance | None:
        """Cancel a pending or failed instance. Other statuses are left as they are."""
        instance = await self.db.get_instance(instance_id)
        if instance is None or instance.owner_id != owner_id:
            return None
        if await self.db.cancel_instance(instance_id):
            logger.info("Cancelled instance %s", instance_id)
        return await self.db.get_instance(instance_id)

    async def retry_instance(self, instance_id: int, owner_id: str) -> tuple[BookingInstance, bool] | None:
        """Put a failed instance back in the queue with a fresh retry budget.

        Returns:
            The instance as stored afterwards and whether it was reset, or
            None if it does not exist for *owner_id*.

        Raises:
            ValidationError: If the slot has already started.
        """
        instance = await self.db.get_instance(instance_id)
        if instance is None or instance.owner_id != owner_id:
            return None
        if instance.status != InstanceStatus.FAILED:
            return instance, False

        decision = self.calculator.decide(instance.date, instance.time_of_day, self._now())
        if decision.past:
            raise ValidationError(PAST_DATE_DETAIL)
        applied = await self.db.reset_instance_for_retry(instance_id, decision.execute_at)
        if applied:
            logger.info("Instance %s reset for retry at %s", instance_id, decision.execute_at)
        refreshed = await self.db.get_instance(instance_id)
        assert refreshed is not None
        return refreshed, applied
