"""
Reconciliation Retry Queue

Callbacks that authenticated and matched a payment, but could not be
applied (database trouble, lock timeouts...), are stored as RetryTask
rows and re-applied later by the Celery worker.

Backoff:
    delay(n) = min(base * 2**n, cap) * (1 + U(0, jitter))

After `max_attempts` failures a task moves to `dead_letter` and an
operator alert goes out. Tasks are never deleted; operators can list
dead letters and requeue them.

Usage:
    queue = RetryQueue()
    await queue.enqueue(GatewayFlow.C2B, payload, error="lock timeout")

    # from the worker
    summary = await queue.process_due(processor.reconcile)
"""

import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, get_settings
from app.core.exceptions import NotFoundError, TransientStorageError
from app.database import async_session_maker
from app.models import GatewayFlow, RetryTask, RetryTaskStatus
from app.services.notifications import BaseNotificationService, get_notification_service
from app.services.payment.tokens import Clock, utcnow

logger = logging.getLogger(__name__)

ReconcileHandler = Callable[[GatewayFlow, dict], Awaitable[Any]]


@dataclass
class RetryRunSummary:
    """Outcome of one worker pass."""
    processed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0
    skipped: int = 0


class RetryQueue:
    """
    Durable retry queue backed by the `retry_tasks` table.

    Attributes:
        base_delay: Delay before the first retry
        max_delay: Upper bound on any single delay (before jitter)
        max_attempts: Failed retries before a task is dead-lettered
        jitter_ratio: Upper bound of the random stretch applied to a delay
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        settings: Optional[Settings] = None,
        alerts: Optional[BaseNotificationService] = None,
        clock: Clock = utcnow,
        rng: Callable[[], float] = random.random,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory
        self.base_delay = settings.retry_base_delay_seconds
        self.max_delay = settings.retry_max_delay_seconds
        self.max_attempts = settings.retry_max_attempts
        self.jitter_ratio = settings.retry_jitter_ratio
        self.batch_size = settings.retry_batch_size
        self._alerts = alerts
        self._clock = clock
        self._rng = rng

    @property
    def alerts(self) -> BaseNotificationService:
        if self._alerts is None:
            self._alerts = get_notification_service()
        return self._alerts

    def backoff(self, attempt: int) -> timedelta:
        """Delay before the retry that follows `attempt` failures."""
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return timedelta(seconds=delay * (1 + self.jitter_ratio * self._rng()))

    # =========================================================================
    # PRODUCER
    # =========================================================================

    async def enqueue(
        self,
        flow: GatewayFlow,
        payload: Mapping[str, Any],
        error: Optional[str] = None,
    ) -> RetryTask:
        """
        Store a verified callback for a later reconciliation attempt.

        Raises:
            TransientStorageError: The task itself could not be stored
        """
        task = RetryTask(
            flow=flow,
            payload=dict(payload),
            attempt_count=0,
            next_attempt_at=self._clock() + self.backoff(0),
            status=RetryTaskStatus.PENDING,
            last_error=error,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(task)
                await session.refresh(task)
        except SQLAlchemyError as e:
            logger.critical(f"Could not enqueue retry for {flow.value} callback: {e}")
            raise TransientStorageError("Failed to enqueue retry task", detail=str(e)) from e

        logger.info(
            f"Retry task {task.id} enqueued ({flow.value}), "
            f"next attempt at {task.next_attempt_at}"
        )
        return task

    # =========================================================================
    # CONSUMER
    # =========================================================================

    async def due_task_ids(self, limit: Optional[int] = None) -> list[str]:
        """Pending tasks whose next attempt is due, oldest due first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(RetryTask.id)
                .where(
                    RetryTask.status == RetryTaskStatus.PENDING,
                    RetryTask.next_attempt_at <= self._clock(),
                )
                .order_by(RetryTask.next_attempt_at.asc())
                .limit(limit or self.batch_size)
            )
            return list(result.scalars().all())

    async def _claim(self, task_id: str) -> Optional[tuple[GatewayFlow, dict, int]]:
        """
        Lease a due task by pushing its next attempt out.

        A worker that dies mid-attempt leaves the task to be picked up
        again once the lease runs out. Rows locked by another worker are
        skipped.
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(RetryTask)
                    .where(
                        RetryTask.id == task_id,
                        RetryTask.status == RetryTaskStatus.PENDING,
                        RetryTask.next_attempt_at <= self._clock(),
                    )
                    .with_for_update(skip_locked=True)
                )
                task = result.scalar_one_or_none()
                if task is None:
                    return None
                task.next_attempt_at = self._clock() + self.backoff(task.attempt_count)
                return task.flow, dict(task.payload), task.attempt_count

    async def _finish(self, task_id: str, error: Optional[str]) -> RetryTaskStatus:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(RetryTask).where(RetryTask.id == task_id).with_for_update()
                )
                task = result.scalar_one()

                if error is None:
                    task.status = RetryTaskStatus.SUCCEEDED
                    task.last_error = None
                    return task.status

                task.attempt_count += 1
                task.last_error = error
                if task.attempt_count >= self.max_attempts:
                    task.status = RetryTaskStatus.DEAD_LETTER
                else:
                    task.next_attempt_at = self._clock() + self.backoff(task.attempt_count)
                return task.status

    async def process_due(self, handler: ReconcileHandler) -> RetryRunSummary:
        """
        Re-run reconciliation for every due task in one batch.

        `handler(flow, payload)` must open its own transaction; it runs
        between the claim and the bookkeeping, never inside either.
        """
        summary = RetryRunSummary()

        for task_id in await self.due_task_ids():
            claimed = await self._claim(task_id)
            if claimed is None:
                summary.skipped += 1
                continue
            flow, payload, attempt_count = claimed
            summary.processed += 1

            error = None
            try:
                await handler(flow, payload)
            except Exception as e:
                logger.exception(
                    f"Retry task {task_id} attempt {attempt_count + 1} failed"
                )
                error = f"{type(e).__name__}: {e}"

            status = await self._finish(task_id, error)

            if status == RetryTaskStatus.SUCCEEDED:
                summary.succeeded += 1
                logger.info(f"Retry task {task_id} succeeded after {attempt_count} failed retries")
            elif status == RetryTaskStatus.DEAD_LETTER:
                summary.dead_lettered += 1
                logger.critical(
                    f"Retry task {task_id} dead-lettered after {self.max_attempts} attempts: {error}"
                )
                await self.alerts.send_operator_alert(
                    "Payment reconciliation dead-lettered",
                    f"Retry task {task_id} ({flow.value}) gave up after "
                    f"{self.max_attempts} attempts. Last error: {error}",
                )
            else:
                summary.rescheduled += 1

        if summary.processed or summary.skipped:
            logger.info(
                f"Retry pass: {summary.processed} processed, {summary.succeeded} succeeded, "
                f"{summary.rescheduled} rescheduled, {summary.dead_lettered} dead-lettered, "
                f"{summary.skipped} skipped"
            )
        return summary

    # =========================================================================
    # OPERATOR SURFACE
    # =========================================================================

    async def get(self, task_id: str) -> RetryTask:
        async with self.session_factory() as session:
            task = await session.get(RetryTask, task_id)
            if task is None:
                raise NotFoundError(f"Retry task {task_id} not found")
            return task

    async def list_tasks(
        self,
        status: Optional[RetryTaskStatus] = None,
        limit: int = 100,
    ) -> list[RetryTask]:
        query = select(RetryTask).order_by(RetryTask.created_at.asc()).limit(limit)
        if status is not None:
            query = query.where(RetryTask.status == status)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_dead_letters(self, limit: int = 100) -> list[RetryTask]:
        return await self.list_tasks(RetryTaskStatus.DEAD_LETTER, limit)

    async def requeue(self, task_id: str) -> RetryTask:
        """Give a task a fresh set of attempts, due immediately."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(RetryTask).where(RetryTask.id == task_id).with_for_update()
                )
                task = result.scalar_one_or_none()
                if task is None:
                    raise NotFoundError(f"Retry task {task_id} not found")
                task.status = RetryTaskStatus.PENDING
                task.attempt_count = 0
                task.next_attempt_at = self._clock()
            await session.refresh(task)

        logger.info(f"Retry task {task_id} requeued by operator")
        return task
