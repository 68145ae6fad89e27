from tasklink.services import (
    booking_service,
    match_service,
    notification_service,
    task_state_machine,
    trust_score_service,
    verification_service,
)
from tasklink.services.task_lifecycle_service import TaskLifecycleManager


__all__ = [
    "TaskLifecycleManager",
    "booking_service",
    "match_service",
    "notification_service",
    "task_state_machine",
    "trust_score_service",
    "verification_service",
]
