"""The per-instance reservation workflow against the portal.

Steps run strictly in order, each feeding the next:

1. look up the owner's credentials;
2. log in;
3. fetch availability and pick a court;
4. load the booking form and snapshot its hidden fields and cookies;
5. mint the challenge token (always last, it expires within seconds);
6. submit once and interpret the response.
"""

import logging
import time
from collections.abc import Callable
from typing import Protocol

from courtbook.clients.challenge import ChallengeSolver
from courtbook.clients.payload import build_reservation_payload
from courtbook.clients.portal import PortalSession
from courtbook.clients.resilience import ChallengeTokenRejected, CredentialsMissingError
from courtbook.config import Settings
from courtbook.engine.availability import select_court
from courtbook.engine.reconciler import interpret_response
from courtbook.models.instance import BookingInstance
from courtbook.models.portal import PortalCredentials, SubmissionResult

logger = logging.getLogger(__name__)


class CredentialLookup(Protocol):
    async def get(self, owner_id: str) -> PortalCredentials | None:
        """Return decrypted credentials for *owner_id*, or None."""
        ...


SessionFactory = Callable[[], PortalSession]


class SubmissionWorkflow:
    """Executes one booking instance end to end inside its own portal session.

    Args:
        credentials: Source of decrypted portal credentials.
        solver: Challenge-token minter.
        settings: Application settings (portal URL, payload constants).
        session_factory: Builds a fresh ``PortalSession`` per execution.
    """

    def __init__(
        self,
        credentials: CredentialLookup,
        solver: ChallengeSolver,
        settings: Settings,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.credentials = credentials
        self.solver = solver
        self.settings = settings
        self._session_factory = session_factory or self._default_session

    def _default_session(self) -> PortalSession:
        return PortalSession(
            self.settings.portal_base_url,
            sport_id=self.settings.portal_sport_id,
            timeout=self.settings.request_timeout_seconds,
        )

    async def execute(self, instance: BookingInstance) -> SubmissionResult:
        """Run the full workflow once.

        Raises:
            PermanentPortalError: Credentials missing or rejected, or no court free.
            TransientPortalError: Anything worth retrying on a later attempt.
        """
        creds = await self.credentials.get(instance.owner_id)
        if creds is None:
            raise CredentialsMissingError("Credentials not found for this account")

        logger.info(
            "Executing instance %s: %s %s court %d (%s, %d min)",
            instance.id, instance.date, instance.time_of_day, instance.preferred_unit,
            instance.party_type.value, instance.duration_minutes,
        )
        async with self._session_factory() as session:
            await session.login(creds)

            courts = await session.fetch_court_data(instance.date)
            court = select_court(
                courts,
                instance.preferred_unit,
                instance.accept_any_unit,
                instance.start_minutes,
                instance.duration_minutes,
            )

            form = await session.load_booking_form(
                court.portal_id, instance.date, instance.start_minutes
            )
            cookies = session.cookies()

            # Nothing but payload assembly may run between here and submit.
            token = await self.solver.acquire(form, cookies)
            if token.expired():
                raise ChallengeTokenRejected(
                    f"Challenge token expired {-token.remaining():.1f}s before submission"
                )

            payload = build_reservation_payload(
                form,
                token,
                booking_date=instance.date.isoformat(),
                start_minutes=instance.start_minutes,
                duration_minutes=instance.duration_minutes,
                party_type=instance.party_type,
                slot_granularity=self.settings.slot_granularity_minutes,
                sport_id=self.settings.portal_sport_id,
                guest_name=self.settings.guest_name,
            )
            response = await session.submit(payload, referer=form.url)
            token_gap_ms = int((time.monotonic() - token.acquired_at) * 1000)

        logger.info(
            "Instance %s submitted: HTTP %d, token gap %dms",
            instance.id, response.status_code, token_gap_ms,
        )
        result = interpret_response(response, court.number)
        result.token_gap_ms = token_gap_ms
        return result
