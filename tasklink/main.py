"""tasklink - provider matching, trust scoring, and task lifecycle engine."""

import logging
from dataclasses import dataclass

from tasklink.core.config import Settings, settings
from tasklink.core.db_client import SQLiteRepository
from tasklink.core.logging import configure_logfire
from tasklink.services.notification_service import ExpoPushSender, RepositoryNotificationSink
from tasklink.services.task_lifecycle_service import TaskLifecycleManager


logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Wired core components sharing one repository."""

    config: Settings
    repository: SQLiteRepository
    notifier: RepositoryNotificationSink
    lifecycle: TaskLifecycleManager

    async def close(self) -> None:
        """Detach realtime subscriptions and close the repository connection."""
        self.lifecycle.close()
        await self.repository.close()
        logger.info("Engine closed")


def validate_startup_configuration(config: Settings) -> None:
    """Validate configuration before anything touches the database.

    Raises:
        ValueError: If a setting is missing or out of range
    """
    logger.info("startup_validation_begin")

    if config.match_distance_cutoff_km <= 0:
        msg = "MATCH_DISTANCE_CUTOFF_KM must be positive"
        raise ValueError(msg)
    if config.availability_window_days <= 0:
        msg = "AVAILABILITY_WINDOW_DAYS must be positive"
        raise ValueError(msg)
    if config.enable_push_notifications:
        if not config.expo_push_url:
            msg = "EXPO_PUSH_URL must be set when push notifications are enabled"
            raise ValueError(msg)
        if config.environment == "production":
            config.require_credential("expo_access_token", "Expo push")

    logger.info("startup_validation_complete", extra={"status": "ok"})


async def create_engine(config: Settings | None = None) -> Engine:
    """Configure observability, open the database, and wire the lifecycle manager."""
    config = config or settings

    # Configure logging first so validation logs are captured
    configure_logfire(config)
    validate_startup_configuration(config)

    repository = SQLiteRepository(config.sqlite_db_path)
    await repository.connect()
    logger.info("Database initialized")

    push_sender = ExpoPushSender(repository=repository, config=config) if config.enable_push_notifications else None
    notifier = RepositoryNotificationSink(repository=repository, push_sender=push_sender)
    lifecycle = TaskLifecycleManager(repository=repository, notifier=notifier, config=config)

    return Engine(config=config, repository=repository, notifier=notifier, lifecycle=lifecycle)
