"""Resilience primitives: exception hierarchy, retry, circuit breaker, response classification."""

import logging
import time
from enum import StrEnum

import httpx
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


# ── Exception Hierarchy ──────────────────────────────────────────────────────


class EngineError(Exception):
    """Base class for every failure the booking engine records."""

    retryable = False


class ValidationError(EngineError):
    """Malformed template intake. Rejected at creation, never scheduled."""


class PermanentPortalError(EngineError):
    """Non-retriable portal failure. The instance fails immediately."""


class AuthenticationError(PermanentPortalError):
    """The portal rejected the owner's credentials."""


class CredentialsMissingError(PermanentPortalError):
    """No platform credentials are stored for the instance owner."""


class AvailabilityConflictError(PermanentPortalError):
    """Requested court is taken and no substitute is allowed or free."""


class TransientPortalError(EngineError):
    """Retriable failure. Rescheduled with backoff up to the retry cap."""

    retryable = True


class TransientTransportError(TransientPortalError):
    """Timeouts, connection errors, 429 and 5xx responses."""


class ChallengeTokenRejected(TransientPortalError):
    """Token expired or refused. The next attempt must mint a fresh one."""


class UnknownPortalError(TransientPortalError):
    """The portal answered with something we do not recognise."""


class CircuitOpenError(TransientPortalError):
    """Circuit breaker is open; calls are being shed."""


TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


# ── Response Classification ──────────────────────────────────────────────────


def classify_response(response: object) -> None:
    """Raise an appropriate error based on HTTP status code.

    Redirects are not errors here; the portal uses them for both success
    and failure and callers inspect the ``Location`` header themselves.

    Args:
        response: An object with a ``status_code`` attribute (e.g. httpx.Response).

    Raises:
        AuthenticationError: On 401.
        TransientTransportError: On 408, 429, 5xx.
        UnknownPortalError: On any other 4xx.
    """
    status = getattr(response, "status_code", None)
    if status is None or 200 <= status < 400:
        return

    if status == 401:
        raise AuthenticationError(f"Authentication failed (HTTP {status})")
    if status in TRANSIENT_STATUS_CODES:
        raise TransientTransportError(f"Transient error (HTTP {status})")
    if 400 <= status < 500:
        raise UnknownPortalError(f"Client error (HTTP {status})")
    raise TransientTransportError(f"Server error (HTTP {status})")


def translate_transport_error(exc: httpx.HTTPError) -> TransientTransportError:
    """Wrap an httpx transport failure so it carries our retry semantics."""
    if isinstance(exc, httpx.TimeoutException):
        return TransientTransportError(f"Portal request timed out: {exc!r}")
    return TransientTransportError(f"Portal request failed: {exc!r}")


# ── Retry ─────────────────────────────────────────────────────────────────


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` callback that logs each retry."""
    attempt = retry_state.attempt_number
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("Retry attempt %d after error: %s", attempt, exc)


resilient_request = retry(
    retry=retry_if_exception_type(TransientTransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    before_sleep=log_retry_attempt,
    reraise=True,
)
"""Tenacity decorator for idempotent portal reads. Never wrap the submission."""


# ── Circuit Breaker ──────────────────────────────────────────────────────────


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Lightweight async circuit breaker.

    Only transient failures count towards opening the circuit; a wrong
    password or a taken court says nothing about the portal's health.

    Args:
        name: Human-readable name for logging.
        fail_max: Consecutive failures before opening.
        reset_timeout: Seconds to wait before trying again (half-open).
    """

    def __init__(
        self, name: str, fail_max: int = 5, reset_timeout: float = 60.0
    ) -> None:
        self.name = name
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout

        self._state = CircuitState.CLOSED
        self._fail_count = 0
        self._last_failure_time: float = 0.0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self.reset_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._fail_count = 0

    async def call_async(self, coro):  # type: ignore[no-untyped-def]
        """Execute *coro*, applying circuit-breaker logic.

        Raises:
            CircuitOpenError: If the circuit is OPEN.
        """
        current = self.state
        if current == CircuitState.OPEN:
            coro.close()
            raise CircuitOpenError(f"Circuit '{self.name}' is open")

        try:
            result = await coro
        except TransientPortalError:
            self._fail_count += 1
            self._last_failure_time = time.monotonic()
            if self._fail_count >= self.fail_max:
                self._state = CircuitState.OPEN
                logger.warning("Circuit '%s' opened after %d failures", self.name, self._fail_count)
            elif current == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning("Circuit '%s' re-opened on half-open failure", self.name)
            raise

        self._fail_count = 0
        self._state = CircuitState.CLOSED
        return result


portal_breaker = CircuitBreaker("portal", fail_max=5, reset_timeout=60.0)
