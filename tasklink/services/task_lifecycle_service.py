"""Task lifecycle orchestration: transitions, bookings, notifications, and realtime reconciliation."""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from tasklink.core.config import Settings, settings
from tasklink.core.errors import (
    NotFoundError,
    NotificationError,
    PermissionDeniedError,
    PersistenceError,
    SlotConflictError,
    TaskLinkError,
    ValidationError,
)
from tasklink.core.logging import log_with_user_context, span
from tasklink.core.repository import (
    ChangeEvent,
    ChangeType,
    DatabaseError,
    RecordNotFoundError,
    Repository,
    Subscription,
)
from tasklink.domain.actor import ActorContext
from tasklink.domain.task import Task, TaskStatus, TimeSlot, Urgency
from tasklink.models.service_models import OperationResult
from tasklink.services import booking_service
from tasklink.services.notification_service import NotificationSink, build_status_change_notification
from tasklink.services.task_state_machine import STATUS_TIMESTAMPS, validate_transition


logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]

# Fields only the lifecycle manager may write
MANAGED_FIELDS = frozenset(
    {
        "id",
        "client_id",
        "provider_id",
        "status",
        "version",
        "created",
        "updated",
        "created_at",
        "responded_at",
        "started_at",
        "completed_at",
        "scheduled_slot",
    }
)

DELETABLE_STATUSES = {TaskStatus.DRAFT, TaskStatus.POSTED}


def utc_now() -> datetime:
    return datetime.now(UTC)


class TaskLifecycleManager:
    """Drive tasks through their lifecycle on behalf of an acting user.

    Every public operation returns an OperationResult and never raises. Local
    task state is updated optimistically before the write resolves and is
    reconciled with realtime pushes by record version: a push only replaces
    local state when its version is higher.
    """

    def __init__(
        self,
        *,
        repository: Repository,
        notifier: NotificationSink | None = None,
        clock: Clock = utc_now,
        config: Settings | None = None,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._clock = clock
        self._config = config or settings
        self._tasks: dict[str, Task] = {}
        self._updating: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._subscriptions: dict[str, Subscription] = {}
        self._provider_slots: dict[str, list[TimeSlot]] = {}

    # Local state

    def local_task(self, task_id: str) -> Task | None:
        """Current local view of a task (optimistic while an operation is in flight)."""
        return self._tasks.get(task_id)

    def is_updating(self, task_id: str) -> bool:
        return task_id in self._updating

    def provider_slots(self, provider_id: str) -> list[TimeSlot]:
        """Last refreshed available-slot view of a provider."""
        return list(self._provider_slots.get(provider_id, []))

    def _timestamp(self) -> str:
        return self._clock().isoformat().replace("+00:00", "Z")

    def _apply(self, task: Task) -> None:
        """Store an authoritative task unless a newer version is already held."""
        local = self._tasks.get(task.id)
        if local is None or task.version >= local.version:
            self._tasks[task.id] = task

    # Realtime

    def watch_task(self, task_id: str) -> Subscription:
        """Subscribe to realtime pushes for a task."""
        if task_id in self._subscriptions:
            return self._subscriptions[task_id]
        subscription = self._repository.subscribe("tasks", {"id": task_id}, self.reconcile)
        self._subscriptions[task_id] = subscription
        logger.debug("Watching task %s", task_id)
        return subscription

    def unwatch_task(self, task_id: str) -> None:
        """Stop receiving pushes for a task and drop its local state."""
        subscription = self._subscriptions.pop(task_id, None)
        if subscription is not None:
            subscription.unsubscribe()
        self._tasks.pop(task_id, None)

    def reconcile(self, event: ChangeEvent) -> bool:
        """Merge a realtime push into local state.

        Pushes for tasks that are neither watched nor held locally are ignored,
        so an update landing after its view is gone is harmless.

        Returns:
            True if local state changed
        """
        task_id = event.record.get("id")
        if task_id is None or (task_id not in self._subscriptions and task_id not in self._tasks):
            return False

        if event.change == ChangeType.DELETE:
            return self._tasks.pop(task_id, None) is not None

        incoming = Task.model_validate(event.record)
        local = self._tasks.get(task_id)
        if local is not None and incoming.version <= local.version:
            logger.debug(
                "Ignored stale push for task %s (v%d <= v%d)", task_id, incoming.version, local.version
            )
            return False

        self._tasks[task_id] = incoming
        return True

    def close(self) -> None:
        """Detach every realtime subscription."""
        for task_id in list(self._subscriptions):
            self.unwatch_task(task_id)

    # Plumbing

    async def _run(
        self,
        operation: str,
        actor: ActorContext,
        task_id: str | None,
        body: Callable[[], Awaitable[T]],
    ) -> OperationResult[T]:
        """Run an operation under the task's lock and convert failures into a result."""
        with span(f"task_lifecycle.{operation}"):
            try:
                if task_id is None:
                    data = await body()
                else:
                    async with self._locks[task_id]:
                        data = await body()
            except TaskLinkError as e:
                log_with_user_context(
                    logger, "info", f"{operation} rejected: {e}", user_id=actor.user_id, task_id=task_id, code=e.code
                )
                return OperationResult.fail(e)
            except (DatabaseError, RecordNotFoundError) as e:
                logger.exception("%s failed for task %s", operation, task_id)
                return OperationResult.fail(PersistenceError(f"Failed to {operation.replace('_', ' ')}: {e}"))
            except Exception as e:
                logger.exception("Unexpected error in %s for task %s", operation, task_id)
                return OperationResult.fail(e)

            log_with_user_context(logger, "info", f"{operation} succeeded", user_id=actor.user_id, task_id=task_id)
            return OperationResult.ok(data)

    async def _load_task(self, task_id: str) -> Task:
        try:
            record = await self._repository.get_one("tasks", task_id)
        except RecordNotFoundError as e:
            msg = f"Task not found: {task_id}"
            raise NotFoundError(msg) from e
        task = Task.model_validate(record)
        self._apply(task)
        return task

    async def _persist_transition(self, task: Task, new_status: TaskStatus, patch: dict[str, Any]) -> Task:
        """Write a status change guarded on the status it was validated against.

        The optimistic local copy is applied first and rolled back if the
        write fails or the guard no longer holds.
        """
        changes = {**patch, "status": new_status}
        stamp_field = STATUS_TIMESTAMPS.get(new_status)
        if stamp_field and stamp_field not in changes:
            changes[stamp_field] = self._timestamp()

        previous = self._tasks.get(task.id)
        optimistic = Task.model_validate({**task.model_dump(), **changes})
        self._tasks[task.id] = optimistic
        self._updating.add(task.id)

        def rollback() -> None:
            # A push may have replaced the optimistic copy meanwhile; keep it
            if self._tasks.get(task.id) is optimistic:
                if previous is None:
                    self._tasks.pop(task.id, None)
                else:
                    self._tasks[task.id] = previous

        try:
            record = await self._repository.update_if("tasks", task.id, {"status": task.status}, changes)
        except Exception as e:
            rollback()
            msg = f"Failed to save task {task.id}: {e}"
            raise PersistenceError(msg) from e
        finally:
            self._updating.discard(task.id)

        if record is None:
            rollback()
            current = await self._load_task(task.id)
            validate_transition(current.status, new_status, task_id=task.id)
            msg = f"Task {task.id} changed concurrently, please retry"
            raise PersistenceError(msg)

        updated = Task.model_validate(record)
        self._apply(updated)
        logger.info("Task %s: %s -> %s (v%d)", task.id, task.status, new_status, updated.version)
        return updated

    async def _notify(
        self,
        task: Task,
        old_status: TaskStatus,
        actor: ActorContext,
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Notify the non-acting party; failures are logged and never propagate."""
        if self._notifier is None:
            return
        built = build_status_change_notification(
            task=task, old_status=old_status, new_status=task.status, actor=actor, extra=extra
        )
        if built is None:
            return

        recipient, payload = built
        try:
            await self._notifier.notify(recipient, payload)
        except Exception as e:
            error = e if isinstance(e, NotificationError) else NotificationError(str(e))
            logger.warning(
                "Notification for task %s to %s failed: %s", task.id, recipient, error, extra={"code": error.code}
            )

    async def _refresh_provider_slots(self, provider_id: str) -> None:
        """Reload a provider's available-slot view; failures leave the old view in place."""
        today = self._clock().date()
        end = today + timedelta(days=self._config.availability_window_days)
        try:
            self._provider_slots[provider_id] = await booking_service.get_available_slots(
                repository=self._repository,
                provider_id=provider_id,
                start_date=today.isoformat(),
                end_date=end.isoformat(),
            )
        except Exception:
            logger.exception("Failed to refresh available slots for provider %s", provider_id)

    @staticmethod
    def _require_participant(task: Task, actor: ActorContext) -> None:
        if actor.user_id not in {task.client_id, task.provider_id}:
            msg = f"User {actor.user_id} is not a participant of task {task.id}"
            raise PermissionDeniedError(msg)

    @staticmethod
    def _require_owner(task: Task, actor: ActorContext) -> None:
        if not actor.is_client or actor.user_id != task.client_id:
            msg = f"Only the client who posted task {task.id} can do this"
            raise PermissionDeniedError(msg)

    @staticmethod
    def _require_assigned_provider(task: Task, actor: ActorContext) -> None:
        if not actor.is_provider or actor.user_id != task.provider_id:
            msg = f"Only the provider assigned to task {task.id} can do this"
            raise PermissionDeniedError(msg)

    @staticmethod
    def _require_addressed_provider(task: Task, actor: ActorContext) -> None:
        """Open tasks can be answered by any provider, addressed ones only by their provider."""
        if not actor.is_provider:
            msg = "Only providers can respond to tasks"
            raise PermissionDeniedError(msg)
        if task.provider_id is not None and actor.user_id != task.provider_id:
            msg = f"Task {task.id} was sent to another provider"
            raise PermissionDeniedError(msg)

    async def _undo_acceptance(self, task_id: str, slot_id: str, booking_id: str | None) -> None:
        """Remove the booking and free the slot of an acceptance that did not go through."""
        if booking_id is not None:
            try:
                await self._repository.delete("bookings", booking_id)
            except Exception:
                logger.exception("Failed to remove booking %s after rejected acceptance", booking_id)
        try:
            await booking_service.release_slot_held_by(repository=self._repository, slot_id=slot_id, task_id=task_id)
        except Exception:
            logger.exception("Failed to release slot %s after rejected acceptance", slot_id)

    async def _free_booking(self, actor: ActorContext, task: Task, reason: str) -> str | None:
        """Cancel the task's active booking and free its slot.

        Without a booking record, the slot in `task.scheduled_slot` is freed
        if it is still held for this task.

        Returns:
            ID of the provider whose calendar changed, if any
        """
        booking = await booking_service.get_active_booking(repository=self._repository, task_id=task.id)
        if booking is not None:
            await booking_service.cancel_booking(
                repository=self._repository,
                booking_id=booking.id,
                reason=reason,
                cancelled_by=actor.role,
            )
            return booking.provider_id

        held = task.scheduled_slot
        if held is not None and held.id:
            released = await booking_service.release_slot_held_by(
                repository=self._repository, slot_id=held.id, task_id=task.id
            )
            if released:
                return held.provider_id
        return None

    # Operations

    async def fetch_task(self, actor: ActorContext, task_id: str) -> OperationResult[Task]:
        """Load a task from the repository into local state."""
        return await self._run("fetch_task", actor, task_id, lambda: self._load_task(task_id))

    async def create_task(
        self,
        actor: ActorContext,
        *,
        title: str,
        budget_min: int,
        budget_max: int,
        description: str = "",
        urgency: Urgency = Urgency.NORMAL,
        location: str = "",
        provider_id: str | None = None,
        publish: bool = True,
    ) -> OperationResult[Task]:
        """Create a task as the acting client, either published or as a draft.

        A task created with `provider_id` is a request addressed to that
        provider: only they can accept or decline it.
        """

        async def body() -> Task:
            if not actor.is_client:
                msg = "Only clients can create tasks"
                raise PermissionDeniedError(msg)
            if not title or not title.strip():
                msg = "Task title is required"
                raise ValidationError(msg)
            if budget_min < 0 or budget_max < 0:
                msg = "Budget cannot be negative"
                raise ValidationError(msg)
            if budget_min > budget_max:
                msg = f"budget_min ({budget_min}) must not exceed budget_max ({budget_max})"
                raise ValidationError(msg)

            record = await self._repository.insert(
                "tasks",
                {
                    "client_id": actor.user_id,
                    "provider_id": provider_id,
                    "title": title.strip(),
                    "description": description,
                    "status": TaskStatus.POSTED if publish else TaskStatus.DRAFT,
                    "budget_min": budget_min,
                    "budget_max": budget_max,
                    "urgency": urgency,
                    "location": location,
                    "created_at": self._timestamp(),
                },
            )
            task = Task.model_validate(record)
            self._apply(task)
            return task

        return await self._run("create_task", actor, None, body)

    async def publish_task(self, actor: ActorContext, task_id: str) -> OperationResult[Task]:
        """Move a draft to posted."""

        async def body() -> Task:
            task = await self._load_task(task_id)
            self._require_owner(task, actor)
            validate_transition(task.status, TaskStatus.POSTED, task_id=task_id)
            return await self._persist_transition(task, TaskStatus.POSTED, {})

        return await self._run("publish_task", actor, task_id, body)

    async def accept_task(self, actor: ActorContext, task_id: str, slot: TimeSlot) -> OperationResult[Task]:
        """Accept a posted task on one of the provider's slots.

        The slot is claimed with a single conditional write, so of two concurrent
        acceptances of the same slot exactly one succeeds.
        """

        async def body() -> Task:
            if not actor.is_provider:
                msg = "Only providers can accept tasks"
                raise PermissionDeniedError(msg)

            task = await self._load_task(task_id)
            validate_transition(task.status, TaskStatus.APPLICATIONS, task_id=task_id)
            self._require_addressed_provider(task, actor)

            if slot.provider_id != actor.user_id:
                msg = "Tasks can only be accepted on one of your own time slots"
                raise ValidationError(msg)
            if not slot.is_available or slot.is_booked:
                msg = f"Time slot {slot.date} {slot.start_time}-{slot.end_time} is not available"
                raise SlotConflictError(msg)

            conflicts = await booking_service.check_booking_conflicts(
                repository=self._repository,
                provider_id=slot.provider_id,
                date=slot.date,
                start_time=slot.start_time,
                end_time=slot.end_time,
            )
            if conflicts:
                msg = f"You already have a booking overlapping {slot.date} {slot.start_time}-{slot.end_time}"
                raise SlotConflictError(msg)

            slot_record = await booking_service.ensure_slot(repository=self._repository, slot=slot)
            booked = await booking_service.book_slot(
                repository=self._repository, slot_id=slot_record["id"], task_id=task_id
            )

            # Slot, booking, then task: each later failure undoes the earlier writes
            try:
                booking = await booking_service.create_booking(
                    repository=self._repository,
                    task_id=task_id,
                    client_id=task.client_id,
                    provider_id=actor.user_id,
                    date=booked.date,
                    start_time=booked.start_time,
                    end_time=booked.end_time,
                    slot_id=booked.id,
                    notes="Booking created from task acceptance",
                    check_conflicts=False,
                )
            except Exception:
                await self._undo_acceptance(task_id, booked.id, None)
                raise

            try:
                updated = await self._persist_transition(
                    task,
                    TaskStatus.APPLICATIONS,
                    {"provider_id": actor.user_id, "scheduled_slot": booked.model_dump()},
                )
            except Exception:
                await self._undo_acceptance(task_id, booked.id, booking.id)
                raise

            await self._notify(
                updated,
                task.status,
                actor,
                {
                    "provider_id": actor.user_id,
                    "scheduled_date": booked.date,
                    "scheduled_time": f"{booked.start_time} - {booked.end_time}",
                },
            )
            await self._refresh_provider_slots(actor.user_id)
            return updated

        return await self._run("accept_task", actor, task_id, body)

    async def decline_task(self, actor: ActorContext, task_id: str, reason: str | None = None) -> OperationResult[Task]:
        """Decline a request as the provider it was sent to.

        The task is cancelled; a booking made by an earlier acceptance is
        cancelled too and its slot freed.
        """

        async def body() -> Task:
            if not actor.is_provider:
                msg = "Only providers can decline tasks"
                raise PermissionDeniedError(msg)

            task = await self._load_task(task_id)
            validate_transition(task.status, TaskStatus.CANCELLED, task_id=task_id)
            if task.provider_id is None:
                msg = f"Task {task_id} is not addressed to a provider; only its client can cancel it"
                raise PermissionDeniedError(msg)
            self._require_addressed_provider(task, actor)

            reason_text = reason or "Declined by provider"
            freed_provider = await self._free_booking(actor, task, reason_text)
            updated = await self._persist_transition(
                task,
                TaskStatus.CANCELLED,
                {"responded_at": self._timestamp(), "cancellation_reason": reason_text},
            )
            await self._notify(updated, task.status, actor, {"response": "declined"})
            if freed_provider is not None:
                await self._refresh_provider_slots(freed_provider)
            return updated

        return await self._run("decline_task", actor, task_id, body)

    async def select_provider(self, actor: ActorContext, task_id: str) -> OperationResult[Task]:
        """Confirm the provider who accepted the task."""

        async def body() -> Task:
            task = await self._load_task(task_id)
            self._require_owner(task, actor)
            validate_transition(task.status, TaskStatus.SELECTED, task_id=task_id)
            if task.provider_id is None:
                msg = f"Task {task_id} has no provider to select"
                raise ValidationError(msg)

            updated = await self._persist_transition(task, TaskStatus.SELECTED, {})
            await self._notify(updated, task.status, actor)
            return updated

        return await self._run("select_provider", actor, task_id, body)

    async def start_task(self, actor: ActorContext, task_id: str) -> OperationResult[Task]:
        """Start the service; only the assigned provider can do this."""

        async def body() -> Task:
            task = await self._load_task(task_id)
            validate_transition(task.status, TaskStatus.IN_PROGRESS, task_id=task_id)
            self._require_assigned_provider(task, actor)

            updated = await self._persist_transition(task, TaskStatus.IN_PROGRESS, {})
            await self._notify(updated, task.status, actor, {"provider_id": actor.user_id})
            return updated

        return await self._run("start_task", actor, task_id, body)

    async def complete_task(self, actor: ActorContext, task_id: str) -> OperationResult[Task]:
        """Complete an in-progress task. The slot stays booked as a record of the service."""

        async def body() -> Task:
            task = await self._load_task(task_id)
            validate_transition(task.status, TaskStatus.COMPLETED, task_id=task_id)
            self._require_participant(task, actor)

            updated = await self._persist_transition(task, TaskStatus.COMPLETED, {})
            await self._notify(updated, task.status, actor)
            if actor.is_provider:
                await self._refresh_provider_slots(actor.user_id)
            return updated

        return await self._run("complete_task", actor, task_id, body)

    async def _cancel(self, actor: ActorContext, task: Task, reason: str | None) -> Task:
        """Cancel a loaded task, freeing its booking first so a failed write can be retried."""
        validate_transition(task.status, TaskStatus.CANCELLED, task_id=task.id)
        self._require_participant(task, actor)

        reason = reason or "No reason given"
        freed_provider = await self._free_booking(actor, task, reason)

        updated = await self._persist_transition(task, TaskStatus.CANCELLED, {"cancellation_reason": reason})
        await self._notify(updated, task.status, actor, {"reason": reason})
        if freed_provider is not None:
            await self._refresh_provider_slots(freed_provider)
        return updated

    async def cancel_task(self, actor: ActorContext, task_id: str, reason: str | None = None) -> OperationResult[Task]:
        """Cancel a task from any non-terminal state, cancelling its booking and freeing the slot."""

        async def body() -> Task:
            task = await self._load_task(task_id)
            return await self._cancel(actor, task, reason)

        return await self._run("cancel_task", actor, task_id, body)

    async def _update_status(
        self,
        actor: ActorContext,
        task_id: str,
        requested: TaskStatus | str,
        extra: dict[str, Any] | None,
    ) -> Task:
        try:
            new_status = TaskStatus(requested)
        except ValueError as e:
            msg = f"Unknown task status: {requested}"
            raise ValidationError(msg) from e

        extra = dict(extra or {})
        overridden = MANAGED_FIELDS.intersection(extra)
        if overridden:
            msg = f"Cannot set managed fields through a status update: {', '.join(sorted(overridden))}"
            raise ValidationError(msg)

        task = await self._load_task(task_id)
        if new_status == TaskStatus.CANCELLED:
            return await self._cancel(actor, task, extra.get("reason"))

        validate_transition(task.status, new_status, task_id=task_id)
        if new_status == TaskStatus.APPLICATIONS:
            msg = "Accepting a task needs a time slot; use accept_task"
            raise ValidationError(msg)
        if new_status == TaskStatus.IN_PROGRESS:
            self._require_assigned_provider(task, actor)
        elif new_status in {TaskStatus.POSTED, TaskStatus.SELECTED}:
            self._require_owner(task, actor)
        else:
            self._require_participant(task, actor)

        updated = await self._persist_transition(task, new_status, extra)
        await self._notify(updated, task.status, actor, extra)
        return updated

    async def update_status(
        self,
        actor: ActorContext,
        task_id: str,
        new_status: TaskStatus | str,
        extra: dict[str, Any] | None = None,
    ) -> OperationResult[Task]:
        """Generic validated transition, used for dispute and review flows.

        `extra` fields are stored on the task alongside the new status.
        """
        return await self._run(
            "update_status", actor, task_id, lambda: self._update_status(actor, task_id, new_status, extra)
        )

    async def dispute_task(self, actor: ActorContext, task_id: str, reason: str) -> OperationResult[Task]:
        """Raise a dispute on a completed task, storing the reason on it."""
        return await self._run(
            "dispute_task",
            actor,
            task_id,
            lambda: self._update_status(actor, task_id, TaskStatus.DISPUTED, {"dispute_reason": reason}),
        )

    async def delete_task(self, actor: ActorContext, task_id: str) -> OperationResult[None]:
        """Hard-delete a draft or posted task that nobody has responded to."""

        async def body() -> None:
            task = await self._load_task(task_id)
            self._require_owner(task, actor)

            if task.status not in DELETABLE_STATUSES or task.responded_at is not None:
                msg = f"Task {task_id} can no longer be deleted (status {task.status}); cancel it instead"
                raise ValidationError(msg)
            if await self._repository.get("bookings", {"task_id": task_id}):
                msg = f"Task {task_id} has bookings and cannot be deleted"
                raise ValidationError(msg)

            await self._repository.delete("tasks", task_id)
            self.unwatch_task(task_id)

        return await self._run("delete_task", actor, task_id, body)
