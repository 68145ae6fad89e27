"""Notification payload models."""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class NotificationType(StrEnum):
    """Category of an in-app notification."""

    TASK_UPDATE = "task_update"
    MESSAGE = "message"
    PAYMENT = "payment"
    REVIEW = "review"
    ALERT = "alert"


class NotificationPayload(BaseModel):
    """Content handed to the notification sink."""

    title: str = Field(..., description="Short headline")
    message: str = Field(..., description="Body text")
    type: NotificationType = Field(default=NotificationType.TASK_UPDATE, description="Notification category")
    data: dict[str, Any] = Field(default_factory=dict, description="Structured context (task_id, etc.)")
