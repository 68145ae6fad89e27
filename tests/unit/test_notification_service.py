"""Tests for notification building and delivery."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from tasklink.core.config import Settings
from tasklink.core.errors import NotificationError
from tasklink.domain.actor import ActorContext
from tasklink.domain.notification import NotificationPayload, NotificationType
from tasklink.domain.profile import UserRole
from tasklink.domain.task import Task, TaskStatus
from tasklink.services.notification_service import (
    ExpoPushSender,
    RepositoryNotificationSink,
    build_status_change_notification,
    counterpart_of,
)


CLIENT = ActorContext(user_id="client-1", role=UserRole.CLIENT)
PROVIDER = ActorContext(user_id="provider-1", role=UserRole.PROVIDER)


@pytest.fixture
def task() -> Task:
    return Task(id="t1", client_id="client-1", provider_id="provider-1", title="Fix kitchen sink")


@pytest.fixture
def payload() -> NotificationPayload:
    return NotificationPayload(
        title="Request accepted",
        message='Your request "Fix kitchen sink" was accepted by a provider',
        type=NotificationType.TASK_UPDATE,
        data={"task_id": "t1"},
    )


@pytest.mark.unit
class TestBuildStatusChangeNotification:
    """Tests for recipient selection and message text."""

    def test_counterpart(self, task):
        assert counterpart_of(task, CLIENT) == "provider-1"
        assert counterpart_of(task, PROVIDER) == "client-1"

    def test_accepted_goes_to_client(self, task):
        recipient, payload = build_status_change_notification(
            task=task,
            old_status=TaskStatus.POSTED,
            new_status=TaskStatus.APPLICATIONS,
            actor=PROVIDER,
            extra={"scheduled_date": "2026-03-05"},
        )

        assert recipient == "client-1"
        assert payload.title == "Request accepted"
        assert "Fix kitchen sink" in payload.message
        assert payload.type == NotificationType.TASK_UPDATE
        assert payload.data["old_status"] == TaskStatus.POSTED
        assert payload.data["new_status"] == TaskStatus.APPLICATIONS
        assert payload.data["actor_id"] == "provider-1"
        assert payload.data["scheduled_date"] == "2026-03-05"

    def test_cancel_by_client_goes_to_provider(self, task):
        recipient, payload = build_status_change_notification(
            task=task, old_status=TaskStatus.SELECTED, new_status=TaskStatus.CANCELLED, actor=CLIENT
        )

        assert recipient == "provider-1"
        assert payload.title == "Request cancelled"

    def test_no_counterpart_yet(self):
        unassigned = Task(id="t2", client_id="client-1", title="Paint fence")

        built = build_status_change_notification(
            task=unassigned, old_status=TaskStatus.POSTED, new_status=TaskStatus.CANCELLED, actor=CLIENT
        )

        assert built is None

    def test_fallback_title(self, task):
        _, payload = build_status_change_notification(
            task=task, old_status=TaskStatus.DRAFT, new_status=TaskStatus.POSTED, actor=PROVIDER
        )

        assert payload.title == "Task status updated"
        assert payload.message == '"Fix kitchen sink" is now posted'


@pytest.mark.unit
class TestRepositoryNotificationSink:
    """Tests for storing in-app notifications."""

    @pytest.mark.asyncio
    async def test_stores_unread_notification(self, in_memory_repo, payload):
        sink = RepositoryNotificationSink(repository=in_memory_repo)

        result = await sink.notify("client-1", payload)

        assert result.success is True
        stored = in_memory_repo.peek("notifications", result.notification_id)
        assert stored["user_id"] == "client-1"
        assert stored["is_read"] is False
        assert stored["type"] == "task_update"
        assert stored["data"] == {"task_id": "t1"}

    @pytest.mark.asyncio
    async def test_store_failure_raises_notification_error(self, in_memory_repo, payload):
        in_memory_repo.fail_next("insert", "notifications")
        sink = RepositoryNotificationSink(repository=in_memory_repo)

        with pytest.raises(NotificationError, match="client-1"):
            await sink.notify("client-1", payload)

    @pytest.mark.asyncio
    async def test_push_failure_is_not_fatal(self, in_memory_repo, payload):
        push_sender = AsyncMock(spec=ExpoPushSender)
        push_sender.send.side_effect = RuntimeError("push down")
        sink = RepositoryNotificationSink(repository=in_memory_repo, push_sender=push_sender)

        result = await sink.notify("client-1", payload)

        assert result.success is True
        assert result.pushed == 0

    @pytest.mark.asyncio
    async def test_push_count_reported(self, in_memory_repo, payload):
        push_sender = AsyncMock(spec=ExpoPushSender)
        push_sender.send.return_value = 2
        sink = RepositoryNotificationSink(repository=in_memory_repo, push_sender=push_sender)

        result = await sink.notify("client-1", payload)

        assert result.pushed == 2
        push_sender.send.assert_awaited_once_with("client-1", payload)


@pytest.mark.unit
class TestExpoPushSender:
    """Tests for Expo push delivery via httpx."""

    @pytest.fixture
    def sender(self, in_memory_repo):
        config = Settings(expo_push_url="https://push.example.test/send", expo_access_token="expo-token")
        return ExpoPushSender(repository=in_memory_repo, config=config)

    @pytest.mark.asyncio
    async def test_no_tokens(self, sender, payload):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            delivered = await sender.send("client-1", payload)

        assert delivered == 0
        mock_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_pushes_to_each_active_token(self, sender, payload, in_memory_repo):
        in_memory_repo.seed("push_tokens", {"user_id": "client-1", "token": "ExponentPushToken[a]", "is_active": True})
        in_memory_repo.seed("push_tokens", {"user_id": "client-1", "token": "ExponentPushToken[b]", "is_active": True})
        in_memory_repo.seed("push_tokens", {"user_id": "client-1", "token": "ExponentPushToken[c]", "is_active": False})

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(200, json={"data": {"status": "ok"}})
            delivered = await sender.send("client-1", payload)

        assert delivered == 2
        assert mock_post.await_count == 2
        url = mock_post.await_args.args[0]
        kwargs = mock_post.await_args.kwargs
        assert url == "https://push.example.test/send"
        assert kwargs["json"]["to"] == "ExponentPushToken[b]"
        assert kwargs["json"]["title"] == "Request accepted"
        assert kwargs["headers"]["Authorization"] == "Bearer expo-token"

    @pytest.mark.asyncio
    async def test_failures_are_counted_out(self, sender, payload, in_memory_repo):
        for token in ("a", "b", "c"):
            in_memory_repo.seed(
                "push_tokens", {"user_id": "client-1", "token": f"ExponentPushToken[{token}]", "is_active": True}
            )

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = [
                httpx.Response(200),
                httpx.Response(500, text="Internal error"),
                httpx.ConnectError("Connection refused"),
            ]
            delivered = await sender.send("client-1", payload)

        assert delivered == 1
        assert mock_post.await_count == 3
