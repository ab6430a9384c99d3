import datetime as dt

from pydantic import BaseModel, ConfigDict

from courtbook.models.enums import InstanceStatus, PartyType


class BookingInstance(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    template_id: int | None = None
    owner_id: str
    preferred_unit: int
    accept_any_unit: bool = False
    date: dt.date
    time_of_day: str
    party_type: PartyType = PartyType.SINGLES
    duration_minutes: int = 60
    scheduled_execute_time: dt.datetime
    status: InstanceStatus = InstanceStatus.PENDING
    retry_count: int = 0
    confirmation_id: str | None = None
    actual_unit: int | None = None
    error_detail: str | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None

    @property
    def start_minutes(self) -> int:
        hours, minutes = self.time_of_day.split(":")
        return int(hours) * 60 + int(minutes)
