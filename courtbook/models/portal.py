import time

from pydantic import BaseModel, ConfigDict, Field


class PortalCredentials(BaseModel):
    username: str
    password: str = Field(repr=False)


class Interval(BaseModel):
    """Half-open ``[start, end)`` span in minutes from midnight."""

    start: int
    end: int


class Court(BaseModel):
    number: int
    portal_id: str
    name: str = ""
    operating: list[Interval] = []
    booked: list[Interval] = []


class FreeWindow(BaseModel):
    court_number: int
    portal_id: str
    start: int
    end: int


class BookingForm(BaseModel):
    """Hidden fields scraped from the booking form, captured before the token."""

    url: str
    court_id: str
    temp: str
    user_id: str
    user_name: str = ""


class ChallengeToken(BaseModel):
    """Single-use anti-automation token with a short validity window."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(repr=False)
    acquired_at: float = Field(default_factory=time.monotonic)
    ttl_seconds: float = 3.0

    @property
    def deadline(self) -> float:
        return self.acquired_at + self.ttl_seconds

    def remaining(self, now: float | None = None) -> float:
        current = time.monotonic() if now is None else now
        return self.deadline - current

    def expired(self, now: float | None = None) -> bool:
        return self.remaining(now) <= 0


class SubmissionResponse(BaseModel):
    status_code: int
    location: str | None = None
    reason: str | None = None


class SubmissionResult(BaseModel):
    confirmation_id: str | None = None
    court_number: int
    token_gap_ms: int | None = None
