"""
Celery Tasks
Background tasks for the payment core.
"""

import asyncio
import logging
import time
from datetime import datetime

from app.celery_worker import celery_app
from app.database import engine
from app.services.payment import get_callback_processor, get_retry_queue

logger = logging.getLogger(__name__)


async def _drain_retry_queue() -> dict:
    try:
        summary = await get_retry_queue().process_due(get_callback_processor().reconcile)
    finally:
        # Pooled connections belong to this event loop; asyncio.run closes it
        await engine.dispose()
    return {
        'processed': summary.processed,
        'succeeded': summary.succeeded,
        'rescheduled': summary.rescheduled,
        'dead_lettered': summary.dead_lettered,
        'skipped': summary.skipped,
    }


@celery_app.task(bind=True)
def process_retry_queue(self) -> dict:
    """
    Re-apply callbacks whose reconciliation failed earlier.
    Scheduled by beat every RETRY_POLL_INTERVAL_SECONDS.

    Returns:
        dict: Counters for this pass
    """
    task_id = self.request.id
    start_time = time.time()

    result = asyncio.run(_drain_retry_queue())

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed
    if result['processed']:
        logger.info(f"Task {task_id}: retry pass finished in {elapsed}s - {result}")
    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
