"""User-friendly error messages for tool output."""

from courtbook.clients.resilience import (
    AuthenticationError,
    AvailabilityConflictError,
    ChallengeTokenRejected,
    CircuitOpenError,
    CredentialsMissingError,
    PermanentPortalError,
    TransientPortalError,
    ValidationError,
)

# (substrings, message) checked in order against stored error details.
_DETAIL_MESSAGES: list[tuple[tuple[str, ...], str]] = [
    (
        ("booking date is in the past", "no time left to retry"),
        "Booking time has passed. Please schedule a new booking.",
    ),
    (
        ("credentials not found", "username or password not configured"),
        "Portal credentials not set up. Please add your credentials.",
    ),
    (
        ("login failed", "still on auth page", "check credentials"),
        "Invalid portal credentials. Please update your credentials.",
    ),
    (
        ("is not available", "no courts available"),
        "Court not available. All courts may be booked.",
    ),
    (
        ("booking rejected", "bookerror"),
        "The portal rejected the booking.",
    ),
    (
        ("recaptcha", "token"),
        "Security verification failed. Please try again.",
    ),
    (
        ("timed out", "timeout", "browser", "playwright"),
        "Booking system temporarily unavailable. Please try again.",
    ),
    (
        ("request failed", "connection", "network"),
        "Network connection issue reaching the portal.",
    ),
    (
        ("missing hidden fields", "form"),
        "The booking form could not be read. Please try again.",
    ),
    (
        ("http 5", "server error"),
        "Portal server error. Please try again later.",
    ),
]


def describe_error_detail(detail: str | None) -> str | None:
    """Translate an instance's stored ``error_detail`` for display."""
    if not detail:
        return None
    lowered = detail.lower()
    for needles, message in _DETAIL_MESSAGES:
        if any(needle in lowered for needle in needles):
            return message
    if len(detail) < 60 and "Error:" not in detail:
        return detail
    return "Booking failed. Please try again or contact support."


def get_user_message(error: Exception, context: dict | None = None) -> str:
    """Map an exception to a user-friendly message.

    Args:
        error: The exception to translate.
        context: Optional dict with extra info (e.g. {"court": 3}).

    Returns:
        A human-readable error message.
    """
    court = (context or {}).get("court")
    court_label = f"Court {court}" if court else "the court"

    if isinstance(error, ValidationError):
        return f"Invalid booking request. {error}"
    if isinstance(error, CredentialsMissingError):
        return "Portal credentials not set up. Please add them with store_portal_credentials."
    if isinstance(error, AuthenticationError):
        return (
            "Your portal login was rejected. "
            "Please re-enter it with store_portal_credentials."
        )
    if isinstance(error, AvailabilityConflictError):
        return f"{court_label} is not available at that time. {error}"
    if isinstance(error, ChallengeTokenRejected):
        return "Security verification failed. The booking will be retried if time allows."
    if isinstance(error, CircuitOpenError):
        return (
            "The booking portal is temporarily unavailable. "
            "Please try again in a few minutes."
        )
    if isinstance(error, TransientPortalError):
        return "There was a temporary issue reaching the booking portal. Please try again shortly."
    if isinstance(error, PermanentPortalError):
        return f"Could not complete the request. {error}"
    return "Something went wrong. Please try again or contact support."
