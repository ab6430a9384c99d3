from courtbook.models.enums import (
    InstanceStatus,
    PartyType,
    Recurrence,
    TemplateStatus,
)
from courtbook.models.instance import BookingInstance
from courtbook.models.portal import (
    BookingForm,
    ChallengeToken,
    Court,
    FreeWindow,
    Interval,
    PortalCredentials,
    SubmissionResponse,
    SubmissionResult,
)
from courtbook.models.template import BookingTemplate

__all__ = [
    "BookingForm",
    "BookingInstance",
    "BookingTemplate",
    "ChallengeToken",
    "Court",
    "FreeWindow",
    "InstanceStatus",
    "Interval",
    "PartyType",
    "PortalCredentials",
    "Recurrence",
    "SubmissionResponse",
    "SubmissionResult",
    "TemplateStatus",
]
