"""Search criteria for provider matching."""

from enum import StrEnum

from pydantic import BaseModel, Field, model_validator

from tasklink.domain.task import Urgency


class TimePreference(StrEnum):
    """Preferred time of day for the service."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    ANYTIME = "anytime"


class SortKey(StrEnum):
    """Active sort order of a ranked result list."""

    MATCH = "match"
    PRICE = "price"
    RATING = "rating"
    DISTANCE = "distance"


class MatchingCriteria(BaseModel):
    """A client's provider search request."""

    location: str = Field(default="", description="Free-form search location")
    budget_min: int = Field(default=0, ge=0, description="Lower bound of the budget range")
    budget_max: int = Field(..., ge=0, description="Upper bound of the budget range")
    urgency: Urgency = Field(default=Urgency.NORMAL, description="How soon the service is needed")
    required_skills: set[str] = Field(default_factory=set, description="Skills the provider should offer")
    language: str | None = Field(default=None, description="Requested language")
    time_preference: TimePreference = Field(default=TimePreference.ANYTIME, description="Preferred time of day")
    min_rating: float = Field(default=0.0, ge=0.0, le=5.0, description="Hard filter on provider rating")
    min_trust_score: int = Field(default=0, ge=0, le=100, description="Hard filter on provider trust score")

    @model_validator(mode="after")
    def check_budget_range(self) -> "MatchingCriteria":
        if self.budget_min > self.budget_max:
            msg = f"budget_min ({self.budget_min}) must not exceed budget_max ({self.budget_max})"
            raise ValueError(msg)
        return self
