"""Tests for startup validation and engine wiring."""

from unittest.mock import patch

import pytest

from tasklink.core.config import Settings
from tasklink.domain.actor import ActorContext
from tasklink.domain.profile import UserRole
from tasklink.main import create_engine, validate_startup_configuration
from tasklink.services.notification_service import ExpoPushSender


def test_default_settings_are_valid() -> None:
    validate_startup_configuration(Settings())


def test_non_positive_cutoff_rejected() -> None:
    with pytest.raises(ValueError, match="MATCH_DISTANCE_CUTOFF_KM"):
        validate_startup_configuration(Settings(match_distance_cutoff_km=0))


def test_non_positive_window_rejected() -> None:
    with pytest.raises(ValueError, match="AVAILABILITY_WINDOW_DAYS"):
        validate_startup_configuration(Settings(availability_window_days=0))


def test_push_without_url_rejected() -> None:
    with pytest.raises(ValueError, match="EXPO_PUSH_URL"):
        validate_startup_configuration(Settings(enable_push_notifications=True, expo_push_url=""))


def test_production_push_requires_access_token() -> None:
    config = Settings(enable_push_notifications=True, environment="production", expo_access_token=None)

    with pytest.raises(ValueError, match="Expo push credential not configured"):
        validate_startup_configuration(config)


@pytest.mark.asyncio
async def test_create_engine_wires_components(tmp_path) -> None:
    """Engine shares one SQLite repository between notifier and lifecycle manager."""
    config = Settings(sqlite_db_path=str(tmp_path / "engine.db"), enable_push_notifications=True)

    with patch("tasklink.main.configure_logfire") as mock_configure:
        engine = await create_engine(config)

    try:
        mock_configure.assert_called_once_with(config)
        assert isinstance(engine.notifier._push_sender, ExpoPushSender)

        client = ActorContext(user_id="client-1", role=UserRole.CLIENT)
        result = await engine.lifecycle.create_task(client, title="Fix kitchen sink", budget_min=0, budget_max=100)

        assert result.success is True
        stored = await engine.repository.get_one("tasks", result.data.id)
        assert stored["status"] == "posted"
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_create_engine_rejects_invalid_config(tmp_path) -> None:
    config = Settings(sqlite_db_path=str(tmp_path / "engine.db"), availability_window_days=-1)

    with patch("tasklink.main.configure_logfire"), pytest.raises(ValueError, match="AVAILABILITY_WINDOW_DAYS"):
        await create_engine(config)

    assert not (tmp_path / "engine.db").exists()
