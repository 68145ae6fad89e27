"""Pure state transition rules for the task lifecycle."""

from tasklink.core.errors import InvalidTransitionError
from tasklink.domain.task import TaskStatus


# Allowed transitions; anything not listed is rejected, never coerced
TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.DRAFT: {TaskStatus.POSTED, TaskStatus.CANCELLED},
    TaskStatus.POSTED: {TaskStatus.APPLICATIONS, TaskStatus.CANCELLED},
    TaskStatus.APPLICATIONS: {TaskStatus.SELECTED, TaskStatus.CANCELLED},
    TaskStatus.SELECTED: {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.DISPUTED},
    TaskStatus.COMPLETED: {TaskStatus.DISPUTED},
    TaskStatus.DISPUTED: {TaskStatus.COMPLETED, TaskStatus.CANCELLED},
    TaskStatus.CANCELLED: set(),
}

# Timestamp stamped on the task when it enters a status
STATUS_TIMESTAMPS: dict[TaskStatus, str] = {
    TaskStatus.APPLICATIONS: "responded_at",
    TaskStatus.IN_PROGRESS: "started_at",
    TaskStatus.COMPLETED: "completed_at",
}


def can_transition(current: TaskStatus, requested: TaskStatus) -> bool:
    return requested in TRANSITIONS[current]


def validate_transition(current: TaskStatus, requested: TaskStatus, *, task_id: str | None = None) -> None:
    """Raise InvalidTransitionError unless `requested` is reachable from `current`."""
    if not can_transition(current, requested):
        raise InvalidTransitionError(current, requested, task_id=task_id)


def is_terminal(status: TaskStatus) -> bool:
    """A status is terminal when nothing can follow it.

    Completed is not terminal because it can still be disputed.
    """
    return not TRANSITIONS[status]
