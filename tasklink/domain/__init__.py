"""Domain models and DTOs."""

from tasklink.domain.actor import ActorContext
from tasklink.domain.matching import MatchingCriteria, SortKey, TimePreference
from tasklink.domain.notification import NotificationPayload, NotificationType
from tasklink.domain.profile import Availability, Profile, UserRole, VerificationLevel
from tasklink.domain.task import (
    Booking,
    BookingStatus,
    Task,
    TaskStatus,
    TimeSlot,
    Urgency,
    WeeklyAvailability,
)
from tasklink.domain.verification import (
    ArtifactStatus,
    DocumentType,
    VerificationArtifact,
    VerificationStep,
)


__all__ = [
    "ActorContext",
    "ArtifactStatus",
    "Availability",
    "Booking",
    "BookingStatus",
    "DocumentType",
    "MatchingCriteria",
    "NotificationPayload",
    "NotificationType",
    "Profile",
    "SortKey",
    "Task",
    "TaskStatus",
    "TimePreference",
    "TimeSlot",
    "Urgency",
    "UserRole",
    "VerificationArtifact",
    "VerificationLevel",
    "VerificationStep",
    "WeeklyAvailability",
]
