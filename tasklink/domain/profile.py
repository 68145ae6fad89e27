"""Profile domain models and enums."""

from enum import IntEnum, StrEnum

from pydantic import BaseModel, Field, field_validator


class UserRole(StrEnum):
    """Marketplace role of a user."""

    CLIENT = "client"
    PROVIDER = "provider"


class VerificationLevel(IntEnum):
    """Ordered verification tier; the integer is the artifact level that unlocks it."""

    BASIC = 1
    GOVERNMENT = 2
    ENHANCED = 3
    COMMUNITY = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "VerificationLevel":
        return cls[label.upper()]


class Availability(StrEnum):
    """Provider presence as shown in search results."""

    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class Profile(BaseModel):
    """Client or provider profile."""

    id: str = Field(..., description="Unique profile ID")
    role: UserRole = Field(..., description="client or provider")
    full_name: str = Field(default="", description="Display name")
    trust_score: int = Field(default=0, ge=0, le=100, description="Recomputed from approved artifacts")
    verification_level: VerificationLevel = Field(
        default=VerificationLevel.BASIC, description="Highest verification tier reached"
    )
    is_verified: bool = Field(default=False, description="At least one artifact approved")
    skills: set[str] = Field(default_factory=set, description="Offered skills / service keywords")
    languages: set[str] = Field(default_factory=set, description="Spoken languages")
    availability: Availability = Field(default=Availability.OFFLINE, description="Current presence")
    rating: float = Field(default=0.0, ge=0.0, le=5.0, description="Average public review rating")
    review_count: int = Field(default=0, ge=0, description="Number of public reviews")
    distance_km: float = Field(default=0.0, ge=0.0, description="Distance to the searching client")
    response_time_minutes: int = Field(default=0, ge=0, description="Typical response time")
    completed_tasks: int = Field(default=0, ge=0, description="Number of completed tasks")
    price: int = Field(default=0, ge=0, description="Quoted price in whole currency units")

    @field_validator("verification_level", mode="before")
    @classmethod
    def parse_level_label(cls, v: object) -> object:
        """Accept stored labels such as 'government' as well as integers."""
        if isinstance(v, str) and not v.isdigit():
            return VerificationLevel.from_label(v)
        return v
