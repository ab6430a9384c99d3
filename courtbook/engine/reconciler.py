"""Turn the portal's terminal response into instance state and retry bookkeeping."""

import datetime as dt
import logging
import re

from courtbook.clients.resilience import (
    ChallengeTokenRejected,
    EngineError,
    UnknownPortalError,
)
from courtbook.config import Settings
from courtbook.engine.schedule import ScheduleCalculator
from courtbook.models.enums import InstanceStatus, TemplateStatus
from courtbook.models.instance import BookingInstance
from courtbook.models.portal import SubmissionResponse, SubmissionResult
from courtbook.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

_REDIRECT_CODES = {301, 302, 303, 307, 308}
_CONFIRMATION_ID_RE = re.compile(r"id/(\d+)")


def interpret_response(response: SubmissionResponse, court_number: int) -> SubmissionResult:
    """Classify the submission's terminal response.

    Returns:
        The confirmation when the portal redirected to its confirmation page.

    Raises:
        ChallengeTokenRejected: Redirected anywhere else (the portal's error page).
        UnknownPortalError: Any non-redirect response.
    """
    location = response.location
    if response.status_code not in _REDIRECT_CODES or not location:
        raise UnknownPortalError(f"unexpected_response_{response.status_code}")

    if "/confirmation" in location:
        match = _CONFIRMATION_ID_RE.search(location)
        confirmation_id = match.group(1) if match else None
        if confirmation_id is None:
            logger.warning("Confirmation redirect without an id: %s", location)
        return SubmissionResult(
            confirmation_id=confirmation_id,
            court_number=court_number,
        )

    reason = response.reason or f"Booking rejected by portal (redirected to {location})"
    raise ChallengeTokenRejected(reason)


class RetryPolicy:
    """Capped exponential backoff: ``delay(n) = min(base * 2**(n-1), max)``.

    ``n`` is the retry count after the failure being handled; an instance
    is retried while ``n < max_retries``, so ``max_retries`` bounds the
    total number of attempts.
    """

    def __init__(
        self, max_retries: int = 3, base_delay: float = 30.0, max_delay: float = 600.0
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def delay(self, retry_count: int) -> dt.timedelta:
        exponent = max(retry_count - 1, 0)
        return dt.timedelta(seconds=min(self.base_delay * (2**exponent), self.max_delay))


class ResultReconciler:
    """Writes execution outcomes back to the store.

    Every write is conditional on the instance still being ``processing``;
    a lost write is logged and reported as ``None``.
    """

    def __init__(
        self, db: DatabaseManager, policy: RetryPolicy, calculator: ScheduleCalculator
    ) -> None:
        self.db = db
        self.policy = policy
        self.calculator = calculator

    async def record_success(
        self, instance: BookingInstance, result: SubmissionResult
    ) -> InstanceStatus | None:
        assert instance.id is not None
        applied = await self.db.complete_instance(
            instance.id, result.confirmation_id, result.court_number
        )
        if not applied:
            logger.warning("Instance %s was not processing; confirmation %s not recorded",
                           instance.id, result.confirmation_id)
            return None
        logger.info(
            "Instance %s confirmed: id=%s court=%d (token gap %sms)",
            instance.id, result.confirmation_id, result.court_number, result.token_gap_ms,
        )
        return InstanceStatus.CONFIRMED

    async def record_failure(
        self, instance: BookingInstance, error: EngineError, now: dt.datetime
    ) -> InstanceStatus | None:
        """Apply the retry policy to a failed attempt.

        Permanent errors fail the instance. Transient errors reschedule it
        with backoff while retries remain and the new attempt would still
        start before the slot. If the template was cancelled during the
        attempt the instance ends ``cancelled`` instead.
        """
        assert instance.id is not None
        retry_count = instance.retry_count + 1
        detail = str(error) or type(error).__name__

        if await self._template_cancelled(instance):
            status = InstanceStatus.CANCELLED
            applied = await self.db.fail_instance(instance.id, retry_count, detail, status=status)
        elif error.retryable and self.policy.should_retry(retry_count):
            execute_at = now + self.policy.delay(retry_count)
            if execute_at < self.calculator.slot_start(instance.date, instance.time_of_day):
                status = InstanceStatus.PENDING
                applied = await self.db.reschedule_instance(
                    instance.id, execute_at, retry_count, detail
                )
            else:
                status = InstanceStatus.FAILED
                detail = f"{detail} (no time left to retry before the slot)"
                applied = await self.db.fail_instance(instance.id, retry_count, detail)
        else:
            status = InstanceStatus.FAILED
            applied = await self.db.fail_instance(instance.id, retry_count, detail)

        if not applied and await self._template_cancelled(instance):
            # template cancelled between the check above and the write
            status = InstanceStatus.CANCELLED
            applied = await self.db.fail_instance(instance.id, retry_count, detail, status=status)
        if not applied:
            logger.warning("Instance %s was not processing; failure not recorded: %s",
                           instance.id, detail)
            return None
        logger.info(
            "Instance %s -> %s after %s (retry %d/%d): %s",
            instance.id, status.value, type(error).__name__,
            retry_count, self.policy.max_retries, detail,
        )
        return status

    async def _template_cancelled(self, instance: BookingInstance) -> bool:
        if instance.template_id is None:
            return False
        template = await self.db.get_template(instance.template_id)
        return template is not None and template.status == TemplateStatus.CANCELLED
