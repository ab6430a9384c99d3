"""MCP tools for booking templates and their dated instances."""

import logging
from zoneinfo import ZoneInfo

from fastmcp import FastMCP

from courtbook.server import get_clock, get_db

logger = logging.getLogger(__name__)


def _get_service() -> "TemplateService":  # noqa: F821
    """Build a TemplateService on the live database and portal clock."""
    from courtbook.config import get_settings
    from courtbook.engine.clock import utc_now
    from courtbook.engine.intake import TemplateService

    clock = get_clock()
    return TemplateService(
        get_db(), get_settings(), now=clock.now if clock is not None else utc_now
    )


def _format_instance(instance, tz: ZoneInfo) -> str:  # type: ignore[no-untyped-def]
    """One display line for a booking instance."""
    from courtbook.models.enums import InstanceStatus
    from courtbook.tools.error_messages import describe_error_detail

    court = instance.actual_unit or instance.preferred_unit
    line = (
        f"- #{instance.id} {instance.date.isoformat()} {instance.time_of_day} "
        f"Court {court} [{instance.status.value}]"
    )
    if instance.status == InstanceStatus.PENDING:
        runs_at = instance.scheduled_execute_time.astimezone(tz)
        line += f" books at {runs_at:%Y-%m-%d %H:%M %Z}"
    elif instance.status == InstanceStatus.CONFIRMED:
        line += f" confirmation {instance.confirmation_id or 'unknown'}"
        if instance.actual_unit and instance.actual_unit != instance.preferred_unit:
            line += f" (Court {instance.preferred_unit} was unavailable)"
    friendly = describe_error_detail(instance.error_detail)
    if friendly and instance.status != InstanceStatus.CONFIRMED:
        line += f" ({friendly})"
    if instance.retry_count:
        line += f" retries: {instance.retry_count}"
    return line


def register_booking_tools(mcp: FastMCP) -> None:  # noqa: C901
    """Register booking template and instance tools on the MCP server."""

    @mcp.tool
    async def create_booking(
        owner_id: str,
        court: int,
        date: str,
        time_of_day: str,
        party_type: str = "singles",
        duration_minutes: int = 60,
        recurrence: str = "once",
        recurrence_end_date: str | None = None,
        accept_any_court: bool = False,
    ) -> str:
        """Schedule a court reservation, once or on a repeating basis.
        The booking is submitted automatically when the portal opens
        the date for reservations.

        Args:
            owner_id: Account the booking belongs to.
            court: Preferred court number, e.g. 3.
            date: First date to book, e.g. "2025-11-07".
            time_of_day: Start time in 24h HH:MM, e.g. "18:00".
            party_type: "singles" or "doubles".
            duration_minutes: 60 or 90.
            recurrence: "once", "weekly", "biweekly" or "monthly".
            recurrence_end_date: Last date to book (inclusive), optional.
            accept_any_court: Book another free court if the preferred one is taken.

        Returns:
            The created template and each scheduled booking.
        """
        from courtbook.clients.resilience import ValidationError
        from courtbook.config import get_settings
        from courtbook.tools.error_messages import get_user_message

        service = _get_service()
        try:
            template, instances = await service.create_template(
                {
                    "owner_id": owner_id,
                    "preferred_unit": court,
                    "accept_any_unit": accept_any_court,
                    "date": date,
                    "time_of_day": time_of_day,
                    "party_type": party_type,
                    "duration": duration_minutes,
                    "recurrence": recurrence,
                    "recurrence_end_date": recurrence_end_date,
                }
            )
        except ValidationError as exc:
            return get_user_message(exc)

        tz = ZoneInfo(get_settings().portal_timezone)
        lines = [
            f"Booking template #{template.id} created: Court {template.preferred_unit}, "
            f"{template.party_type.value}, {template.duration_minutes} min at "
            f"{template.time_of_day}, {template.recurrence.value} from {template.date}.",
            f"{len(instances)} booking(s) scheduled:",
        ]
        lines.extend(_format_instance(inst, tz) for inst in instances)
        return "\n".join(lines)

    @mcp.tool
    async def list_bookings(owner_id: str, status: str | None = None) -> str:
        """List your scheduled and past court bookings.

        Args:
            owner_id: Account whose bookings to list.
            status: Optional filter: pending, processing, confirmed,
                    failed or cancelled.

        Returns:
            One line per booking with its status and any error.
        """
        from courtbook.config import get_settings
        from courtbook.models.enums import InstanceStatus

        db = get_db()
        status_filter = None
        if status:
            try:
                status_filter = InstanceStatus(status.lower())
            except ValueError:
                valid = ", ".join(s.value for s in InstanceStatus)
                return f"Unknown status '{status}'. Use one of: {valid}."

        instances = await db.list_instances(owner_id=owner_id, status=status_filter)
        if not instances:
            return "No bookings found."
        tz = ZoneInfo(get_settings().portal_timezone)
        return "\n".join(_format_instance(inst, tz) for inst in instances)

    @mcp.tool
    async def cancel_booking_template(owner_id: str, template_id: int) -> str:
        """Cancel a booking template and every booking of it not yet made.
        Bookings already confirmed on the portal are not affected.

        Args:
            owner_id: Account the template belongs to.
            template_id: Template number from create_booking.

        Returns:
            How many scheduled bookings were cancelled.
        """
        cancelled = await _get_service().cancel_template(template_id, owner_id)
        if cancelled is None:
            return f"No booking template #{template_id} found."
        return f"Booking template #{template_id} cancelled ({cancelled} scheduled booking(s) cancelled)."

    @mcp.tool
    async def cancel_booking_instance(owner_id: str, instance_id: int) -> str:
        """Cancel one scheduled booking.

        Args:
            owner_id: Account the booking belongs to.
            instance_id: Booking number from list_bookings.

        Returns:
            The booking's resulting status.
        """
        from courtbook.models.enums import InstanceStatus

        instance = await _get_service().cancel_instance(instance_id, owner_id)
        if instance is None:
            return f"No booking #{instance_id} found."
        if instance.status == InstanceStatus.CANCELLED:
            return f"Booking #{instance_id} cancelled."
        return (
            f"Booking #{instance_id} is {instance.status.value} and can no longer be cancelled."
        )

    @mcp.tool
    async def retry_booking_instance(owner_id: str, instance_id: int) -> str:
        """Retry a failed booking with a fresh set of attempts.

        Args:
            owner_id: Account the booking belongs to.
            instance_id: Booking number from list_bookings.

        Returns:
            When the booking will be attempted again.
        """
        from courtbook.clients.resilience import ValidationError
        from courtbook.config import get_settings
        from courtbook.tools.error_messages import get_user_message

        try:
            outcome = await _get_service().retry_instance(instance_id, owner_id)
        except ValidationError as exc:
            return get_user_message(exc)
        if outcome is None:
            return f"No booking #{instance_id} found."
        instance, applied = outcome
        if not applied:
            return f"Booking #{instance_id} is {instance.status.value}; only failed bookings can be retried."
        tz = ZoneInfo(get_settings().portal_timezone)
        return "Booking queued for retry:\n" + _format_instance(instance, tz)
