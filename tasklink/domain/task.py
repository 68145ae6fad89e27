"""Task, time slot, and booking domain models."""

from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class TaskStatus(StrEnum):
    """Task lifecycle state."""

    DRAFT = "draft"
    POSTED = "posted"
    APPLICATIONS = "applications"
    SELECTED = "selected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class Urgency(StrEnum):
    """How soon the client needs the service."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class BookingStatus(StrEnum):
    """Status of a provider booking."""

    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"


class TimeSlot(BaseModel):
    """A provider's bookable calendar interval.

    Dates are ISO dates (YYYY-MM-DD) and times are 24h HH:MM strings, so plain
    string comparison orders them correctly.
    """

    id: str | None = Field(default=None, description="Slot record ID once persisted")
    provider_id: str = Field(..., description="Owning provider")
    date: str = Field(..., description="Slot date (YYYY-MM-DD)")
    start_time: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="Start time (HH:MM)")
    end_time: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="End time (HH:MM)")
    is_available: bool = Field(default=True, description="Provider offers this slot")
    is_booked: bool = Field(default=False, description="Held by a non-cancelled task")
    task_id: str | None = Field(default=None, description="Task holding the slot")
    version: int = Field(default=0, description="Repository version")

    @model_validator(mode="after")
    def check_interval(self) -> "TimeSlot":
        if self.end_time <= self.start_time:
            msg = f"Slot end {self.end_time} must be after start {self.start_time}"
            raise ValueError(msg)
        return self

    @property
    def natural_key(self) -> dict[str, str]:
        return {
            "provider_id": self.provider_id,
            "date": self.date,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }

    def overlaps(self, date: str, start_time: str, end_time: str) -> bool:
        return self.date == date and self.start_time < end_time and self.end_time > start_time


class Task(BaseModel):
    """Task data transfer object."""

    id: str = Field(..., description="Unique task ID")
    client_id: str = Field(..., description="Client who posted the task")
    provider_id: str | None = Field(default=None, description="Assigned provider")
    title: str = Field(..., description="Task title")
    description: str = Field(default="", description="Detailed task description")
    status: TaskStatus = Field(default=TaskStatus.POSTED, description="Current lifecycle state")
    budget_min: int = Field(default=0, ge=0, description="Lower bound of the budget range")
    budget_max: int = Field(default=0, ge=0, description="Upper bound of the budget range")
    urgency: Urgency = Field(default=Urgency.NORMAL, description="How soon the service is needed")
    location: str = Field(default="", description="Free-form service location")
    created_at: str | None = Field(default=None, description="Creation timestamp (ISO format)")
    responded_at: str | None = Field(default=None, description="Provider response timestamp")
    started_at: str | None = Field(default=None, description="Service start timestamp")
    completed_at: str | None = Field(default=None, description="Completion timestamp")
    cancellation_reason: str | None = Field(default=None, description="Reason given on cancel")
    scheduled_slot: TimeSlot | None = Field(default=None, description="Booked slot, if any")
    version: int = Field(default=0, description="Repository version")


class Booking(BaseModel):
    """A provider booking created when a task is accepted on a slot."""

    id: str = Field(..., description="Unique booking ID")
    task_id: str = Field(..., description="Booked task")
    client_id: str = Field(..., description="Client of the task")
    provider_id: str = Field(..., description="Booked provider")
    slot_id: str | None = Field(default=None, description="Time slot record holding the booking")
    date: str = Field(..., description="Booking date (YYYY-MM-DD)")
    start_time: str = Field(..., description="Start time (HH:MM)")
    end_time: str = Field(..., description="End time (HH:MM)")
    status: BookingStatus = Field(default=BookingStatus.CONFIRMED, description="Booking status")
    notes: str = Field(default="", description="Free-form notes, including cancellation reasons")


class WeeklyAvailability(BaseModel):
    """Recurring weekly opening hours for one day of the week."""

    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday ... 6 = Saturday")
    start_time: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="Opening time (HH:MM)")
    end_time: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="Closing time (HH:MM)")
    is_available: bool = Field(default=True, description="Provider works on this day")
