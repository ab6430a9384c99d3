import datetime as dt
import re

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from courtbook.models.enums import PartyType, Recurrence, TemplateStatus

ALLOWED_DURATIONS = (60, 90)

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class BookingTemplate(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    owner_id: str
    preferred_unit: int
    accept_any_unit: bool = False
    date: dt.date
    time_of_day: str
    party_type: PartyType = PartyType.SINGLES
    duration_minutes: int = 60
    recurrence: Recurrence = Recurrence.ONCE
    recurrence_end_date: dt.date | None = None
    status: TemplateStatus = TemplateStatus.ACTIVE
    expanded: bool = False
    created_at: dt.datetime | None = None

    @field_validator("owner_id")
    @classmethod
    def _owner_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("owner_id must not be empty")
        return value

    @field_validator("preferred_unit")
    @classmethod
    def _unit_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("preferred unit must be a positive court number")
        return value

    @field_validator("time_of_day")
    @classmethod
    def _valid_time(cls, value: str) -> str:
        if not _TIME_RE.match(value):
            raise ValueError(f"time_of_day must be HH:MM (24h), got {value!r}")
        return value

    @field_validator("duration_minutes")
    @classmethod
    def _valid_duration(cls, value: int) -> int:
        if value not in ALLOWED_DURATIONS:
            raise ValueError(f"duration must be one of {ALLOWED_DURATIONS} minutes")
        return value

    @field_validator("recurrence", mode="before")
    @classmethod
    def _normalise_recurrence(cls, value: object) -> object:
        # The mobile app sends "bi-weekly"
        if isinstance(value, str):
            return value.strip().lower().replace("-", "")
        return value

    @model_validator(mode="after")
    def _end_after_start(self) -> "BookingTemplate":
        if self.recurrence_end_date is not None and self.recurrence_end_date < self.date:
            raise ValueError("recurrence_end_date must not be before date")
        return self

    @property
    def start_minutes(self) -> int:
        """Start time as minutes from midnight, the portal's time unit."""
        hours, minutes = self.time_of_day.split(":")
        return int(hours) * 60 + int(minutes)
