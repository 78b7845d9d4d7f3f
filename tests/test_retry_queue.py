"""
Tests for the durable reconciliation retry queue.
"""

from datetime import timedelta

import pytest

from app.core.exceptions import NotFoundError, TransientStorageError
from app.models import GatewayFlow, RetryTaskStatus
from app.services.notifications import MockNotificationService
from app.services.payment import RetryQueue
from helpers import naive

PAYLOAD = {"out_trade_no": "REST_C2B_1_1767268800000_ab12", "trade_status": "TRADE_SUCCESS"}


class Handler:
    """Reconcile stand-in that fails a set number of times."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = []

    async def __call__(self, flow, payload):
        self.calls.append((flow, payload))
        if len(self.calls) <= self.failures:
            raise TransientStorageError("database is locked")


class TestBackoff:
    def test_exponential_with_cap(self, retry_queue):
        assert retry_queue.backoff(0) == timedelta(seconds=60)
        assert retry_queue.backoff(1) == timedelta(seconds=120)
        assert retry_queue.backoff(3) == timedelta(seconds=480)
        assert retry_queue.backoff(6) == timedelta(seconds=3600)
        assert retry_queue.backoff(20) == timedelta(seconds=3600)

    def test_jitter_only_stretches(self, session_factory, settings, alerts, clock):
        queue = RetryQueue(session_factory, settings, alerts, clock=clock, rng=lambda: 1.0)
        assert queue.backoff(0) == timedelta(seconds=66)
        assert queue.backoff(10) == timedelta(seconds=3960)


async def test_enqueue_schedules_first_attempt(retry_queue, clock):
    task = await retry_queue.enqueue(GatewayFlow.C2B, PAYLOAD, error="boom")

    assert task.status == RetryTaskStatus.PENDING
    assert task.attempt_count == 0
    assert task.payload == PAYLOAD
    assert naive(task.next_attempt_at) == naive(clock.now + timedelta(seconds=60))


async def test_tasks_not_due_are_left_alone(retry_queue, clock):
    await retry_queue.enqueue(GatewayFlow.C2B, PAYLOAD)
    handler = Handler()

    clock.advance(59)
    summary = await retry_queue.process_due(handler)

    assert summary.processed == 0
    assert handler.calls == []


async def test_success_marks_task_succeeded(retry_queue, clock):
    task = await retry_queue.enqueue(GatewayFlow.C2B, PAYLOAD)
    handler = Handler()

    clock.advance(60)
    summary = await retry_queue.process_due(handler)

    assert summary.succeeded == 1
    assert handler.calls == [(GatewayFlow.C2B, PAYLOAD)]
    stored = await retry_queue.get(task.id)
    assert stored.status == RetryTaskStatus.SUCCEEDED
    assert stored.attempt_count == 0

    # succeeded tasks are kept but never run again
    clock.advance(7200)
    assert (await retry_queue.process_due(handler)).processed == 0


async def test_failure_increments_attempts_and_pushes_due_time(retry_queue, clock):
    task = await retry_queue.enqueue(GatewayFlow.C2B, PAYLOAD)
    before = await retry_queue.get(task.id)

    clock.advance(61)
    summary = await retry_queue.process_due(Handler(failures=1))

    assert summary.rescheduled == 1
    after = await retry_queue.get(task.id)
    assert after.attempt_count == 1
    assert after.status == RetryTaskStatus.PENDING
    assert after.next_attempt_at > before.next_attempt_at
    assert naive(after.next_attempt_at) == naive(clock.now + timedelta(seconds=120))
    assert "database is locked" in after.last_error


async def test_exhausted_task_dead_lettered_and_alerted(retry_queue, clock, alerts):
    # settings fixture allows 3 attempts
    task = await retry_queue.enqueue(GatewayFlow.C2B, PAYLOAD)
    handler = Handler(failures=10)

    for _ in range(3):
        clock.advance(3601)
        await retry_queue.process_due(handler)

    stored = await retry_queue.get(task.id)
    assert stored.status == RetryTaskStatus.DEAD_LETTER
    assert stored.attempt_count == 3
    assert len(handler.calls) == 3
    assert len(alerts.alerts) == 1
    assert "dead-lettered" in alerts.alerts[0][0]

    # dead letters are never picked up again
    clock.advance(10 * 3600)
    assert (await retry_queue.process_due(handler)).processed == 0
    assert [t.id for t in await retry_queue.list_dead_letters()] == [task.id]


async def test_requeue_resets_dead_letter(retry_queue, clock):
    task = await retry_queue.enqueue(GatewayFlow.B2B, PAYLOAD)
    handler = Handler(failures=10)
    for _ in range(3):
        clock.advance(3601)
        await retry_queue.process_due(handler)

    requeued = await retry_queue.requeue(task.id)
    assert requeued.status == RetryTaskStatus.PENDING
    assert requeued.attempt_count == 0

    summary = await retry_queue.process_due(Handler())
    assert summary.succeeded == 1
    assert (await retry_queue.get(task.id)).status == RetryTaskStatus.SUCCEEDED
    assert await retry_queue.list_dead_letters() == []


async def test_requeue_unknown_task(retry_queue):
    with pytest.raises(NotFoundError):
        await retry_queue.requeue("missing")


async def test_batch_is_oldest_due_first(retry_queue, clock):
    first = await retry_queue.enqueue(GatewayFlow.C2B, {**PAYLOAD, "n": "1"})
    clock.advance(5)
    second = await retry_queue.enqueue(GatewayFlow.C2B, {**PAYLOAD, "n": "2"})

    clock.advance(120)
    assert await retry_queue.due_task_ids() == [first.id, second.id]
    assert await retry_queue.due_task_ids(limit=1) == [first.id]


class UnreachableAlerts(MockNotificationService):
    async def send_email(self, to_email, subject, body_text):
        raise OSError("connection refused")


async def test_failed_alert_does_not_abort_the_batch(session_factory, settings, clock):
    alerts = UnreachableAlerts(settings=settings)
    queue = RetryQueue(session_factory, settings, alerts, clock=clock, rng=lambda: 0.0)
    first = await queue.enqueue(GatewayFlow.C2B, {**PAYLOAD, "n": "1"})
    second = await queue.enqueue(GatewayFlow.C2B, {**PAYLOAD, "n": "2"})
    handler = Handler(failures=100)

    for _ in range(3):
        clock.advance(3601)
        await queue.process_due(handler)

    assert (await queue.get(first.id)).status == RetryTaskStatus.DEAD_LETTER
    assert (await queue.get(second.id)).status == RetryTaskStatus.DEAD_LETTER
    assert len(alerts.alerts) == 2
