"""Pydantic models for service layer return types.

These models give typed results at the service boundary instead of raw
repository dictionaries.
"""

from typing import Generic, TypeVar

from pydantic import BaseModel

from tasklink.core.errors import TaskLinkError, classify_error_with_response
from tasklink.domain.profile import Profile, VerificationLevel
from tasklink.domain.task import Booking, TimeSlot


T = TypeVar("T")


class OperationResult(BaseModel, Generic[T]):
    """Outcome of a fallible core operation: either data or an error description."""

    success: bool
    data: T | None = None
    error: str | None = None
    code: str | None = None
    suggestion: str | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> "OperationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exception: Exception) -> "OperationResult[T]":
        """Build a failed result, keeping the exception's own message for core errors."""
        response = classify_error_with_response(exception)
        message = str(exception) if isinstance(exception, TaskLinkError) and str(exception) else response.message
        return cls(success=False, error=message, code=response.code, suggestion=response.suggestion)


class TrustResult(BaseModel):
    """Trust score and verification tier computed from approved artifacts."""

    trust_score: int
    verification_level: VerificationLevel


class VerificationProgress(BaseModel):
    """How far a user is through the required verification steps."""

    completed: int
    total: int
    percentage: int
    is_complete: bool


class VerificationOutcome(BaseModel):
    """Decision returned by a document verifier."""

    approved: bool
    confidence: int
    reason: str | None = None


class MatchBreakdown(BaseModel):
    """Normalized factor values (0..1) that make up a match score."""

    distance: float
    trust: float
    rating: float
    price: float
    skills: float
    language: float
    availability: float


class RankedCandidate(BaseModel):
    """A provider with its match score against a search."""

    profile: Profile
    match_score: int
    breakdown: MatchBreakdown


class NotificationResult(BaseModel):
    """Result of delivering a notification."""

    user_id: str
    success: bool
    notification_id: str | None = None
    pushed: int = 0
    error: str | None = None


class ProviderSchedule(BaseModel):
    """Calendar view of a provider: offered slots plus bookings."""

    availability: list[TimeSlot]
    bookings: list[Booking]
