"""Pytest configuration and fixtures for unit tests."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from tasklink.domain.actor import ActorContext
from tasklink.domain.profile import UserRole
from tasklink.domain.task import TaskStatus
from tasklink.models.service_models import NotificationResult
from tasklink.services.task_lifecycle_service import TaskLifecycleManager
from tests.unit.mocks import InMemoryRepository


FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)


@pytest.fixture
def in_memory_repo():
    """Provides a fresh InMemoryRepository for each test."""
    return InMemoryRepository()


@pytest.fixture
def mock_notifier():
    """Notification sink that records calls and always succeeds."""
    notifier = AsyncMock()
    notifier.notify.side_effect = lambda user_id, payload: NotificationResult(user_id=user_id, success=True)
    return notifier


@pytest.fixture
def manager(in_memory_repo, mock_notifier):
    """Lifecycle manager on the in-memory repository with a fixed clock."""
    return TaskLifecycleManager(repository=in_memory_repo, notifier=mock_notifier, clock=lambda: FIXED_NOW)


@pytest.fixture
def client_actor():
    return ActorContext(user_id="client-1", role=UserRole.CLIENT)


@pytest.fixture
def provider_actor():
    return ActorContext(user_id="provider-1", role=UserRole.PROVIDER)


@pytest.fixture
def other_provider_actor():
    return ActorContext(user_id="provider-2", role=UserRole.PROVIDER)


@pytest.fixture
def make_task(in_memory_repo):
    """Seed a task in the given status and return its record."""

    def _make(status: TaskStatus = TaskStatus.POSTED, **fields):
        record = {
            "client_id": "client-1",
            "provider_id": None,
            "title": "Fix kitchen sink",
            "status": status,
            "budget_min": 5000,
            "budget_max": 15000,
            "urgency": "normal",
            "created_at": "2026-03-01T08:00:00Z",
            **fields,
        }
        return in_memory_repo.seed("tasks", record)

    return _make


@pytest.fixture
def make_slot(in_memory_repo):
    """Seed a time slot for provider-1 and return its record."""

    def _make(**fields):
        record = {
            "provider_id": "provider-1",
            "date": "2026-03-05",
            "start_time": "10:00",
            "end_time": "12:00",
            "is_available": True,
            "is_booked": False,
            **fields,
        }
        return in_memory_repo.seed("time_slots", record)

    return _make
