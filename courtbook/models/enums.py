from enum import StrEnum


class Recurrence(StrEnum):
    ONCE = "once"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class InstanceStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TemplateStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class PartyType(StrEnum):
    SINGLES = "singles"
    DOUBLES = "doubles"
