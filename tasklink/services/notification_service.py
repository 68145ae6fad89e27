"""Notification sink: in-app notifications plus optional Expo push delivery."""

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from tasklink.core.config import Settings, constants, settings
from tasklink.core.errors import NotificationError
from tasklink.core.logging import span
from tasklink.core.repository import Repository
from tasklink.domain.actor import ActorContext
from tasklink.domain.notification import NotificationPayload, NotificationType
from tasklink.domain.task import Task, TaskStatus
from tasklink.models.service_models import NotificationResult


logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Fire-and-forget delivery of a notification to a user."""

    async def notify(self, user_id: str, payload: NotificationPayload) -> NotificationResult:
        """Deliver a notification. May raise; callers log and move on."""
        ...


class PushResult(BaseModel):
    """Result of sending one push message."""

    success: bool = Field(..., description="Whether the push service accepted the message")
    error: str | None = Field(None, description="Error message if failed")


class ExpoPushSender:
    """Send push messages through the Expo push API to a user's active tokens."""

    def __init__(self, *, repository: Repository, config: Settings | None = None) -> None:
        self._repository = repository
        self._config = config or settings

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self._config.expo_access_token:
            headers["Authorization"] = f"Bearer {self._config.expo_access_token}"
        return headers

    async def _send_to_token(self, client: httpx.AsyncClient, token: str, payload: NotificationPayload) -> PushResult:
        message = {
            "to": token,
            "sound": "default",
            "title": payload.title,
            "body": payload.message,
            "data": payload.data,
        }
        try:
            response = await client.post(self._config.expo_push_url, json=message, headers=self._headers())
        except httpx.HTTPError as e:
            return PushResult(success=False, error=f"Push request failed: {e!s}")

        if not response.is_success:
            return PushResult(success=False, error=f"Push rejected ({response.status_code}): {response.text}")
        return PushResult(success=True)

    async def send(self, user_id: str, payload: NotificationPayload) -> int:
        """Push to every active token of a user and return how many were accepted."""
        tokens = await self._repository.get("push_tokens", {"user_id": user_id, "is_active": True})
        if not tokens:
            logger.info("No active push tokens for user %s", user_id)
            return 0

        delivered = 0
        async with httpx.AsyncClient(timeout=constants.API_TIMEOUT_SECONDS) as client:
            for token in tokens:
                result = await self._send_to_token(client, token["token"], payload)
                if result.success:
                    delivered += 1
                else:
                    logger.warning("Push to user=%s failed: %s", user_id, result.error)
        return delivered


class RepositoryNotificationSink:
    """Store in-app notifications in the repository and optionally push them."""

    def __init__(self, *, repository: Repository, push_sender: ExpoPushSender | None = None) -> None:
        self._repository = repository
        self._push_sender = push_sender

    async def notify(self, user_id: str, payload: NotificationPayload) -> NotificationResult:
        """Create the notification record, then push it if a sender is configured.

        Raises:
            NotificationError: If the notification record cannot be stored
        """
        with span("notification_service.notify"):
            try:
                record = await self._repository.insert(
                    "notifications",
                    {
                        "user_id": user_id,
                        "title": payload.title,
                        "message": payload.message,
                        "type": payload.type,
                        "data": payload.data,
                        "is_read": False,
                    },
                )
            except Exception as e:
                msg = f"Failed to store notification for user {user_id}: {e}"
                raise NotificationError(msg) from e

            pushed = 0
            if self._push_sender is not None:
                try:
                    pushed = await self._push_sender.send(user_id, payload)
                except Exception as e:
                    logger.warning("Push delivery failed for user=%s: %s", user_id, e)

            logger.info("Notified user=%s title=%r pushed=%d", user_id, payload.title, pushed)
            return NotificationResult(user_id=user_id, success=True, notification_id=record["id"], pushed=pushed)


_STATUS_MESSAGES: dict[TaskStatus, tuple[str, str]] = {
    TaskStatus.APPLICATIONS: ("Request accepted", 'Your request "{title}" was accepted by a provider'),
    TaskStatus.SELECTED: ("You were selected", 'The client selected you for "{title}"'),
    TaskStatus.IN_PROGRESS: ("Service started", 'The service for "{title}" has started'),
    TaskStatus.COMPLETED: ("Service completed", 'The service for "{title}" is complete'),
    TaskStatus.CANCELLED: ("Request cancelled", 'The request "{title}" was cancelled'),
    TaskStatus.DISPUTED: ("Task disputed", 'The task "{title}" has been disputed'),
}


def counterpart_of(task: Task, actor: ActorContext) -> str | None:
    """Return the participant of the task who is not the actor."""
    if actor.user_id == task.client_id:
        return task.provider_id
    return task.client_id


def build_status_change_notification(
    *,
    task: Task,
    old_status: TaskStatus,
    new_status: TaskStatus,
    actor: ActorContext,
    extra: dict[str, Any] | None = None,
) -> tuple[str, NotificationPayload] | None:
    """Build the notification for a transition, addressed to the non-acting party.

    Returns:
        (recipient_id, payload), or None when the task has no counterpart yet
    """
    recipient = counterpart_of(task, actor)
    if recipient is None:
        return None

    title, template = _STATUS_MESSAGES.get(
        new_status, ("Task status updated", '"{title}" is now ' + str(new_status).replace("_", " "))
    )
    data: dict[str, Any] = {
        "task_id": task.id,
        "task_title": task.title,
        "old_status": old_status,
        "new_status": new_status,
        "actor_id": actor.user_id,
    }
    if extra:
        data.update(extra)

    payload = NotificationPayload(
        title=title,
        message=template.format(title=task.title),
        type=NotificationType.TASK_UPDATE,
        data=data,
    )
    return recipient, payload
