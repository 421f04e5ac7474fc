"""
Celery Tasks
Background work that must not block a diner's request: ledger exports
and session housekeeping.
"""

import asyncio
import logging
import time
from datetime import datetime

from tableside.celery_worker import celery_app
from tableside.database import async_session_maker
from tableside.services.excel_manager import LedgerManager
from tableside.services.sessions import SessionManager

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(OSError,),
    retry_backoff=True
)
def export_order_to_ledger(self, order_data: dict) -> dict:
    """
    Write a settled order to the Excel ledger.

    Args:
        order_data: Serialized order (see main.order_ledger_payload)

    Returns:
        dict: Result of the export operation
    """
    task_id = self.request.id
    order_id = order_data.get('order_id', 'unknown')

    logger.info(f"📋 Task {task_id}: Exporting order #{order_id}")
    start_time = time.time()

    try:
        result = LedgerManager.export_order(order_data)
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        logger.error(f"❌ Task {task_id}: Order #{order_id} error after {elapsed}s - {e}")
        raise

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed

    if result['success']:
        logger.info(f"✅ Task {task_id}: Order #{order_id} exported in {elapsed}s")
    else:
        logger.warning(f"⚠️ Task {task_id}: Order #{order_id} failed - {result['message']}")

    return result


async def _expire_stale() -> int:
    async with async_session_maker() as db:
        return await SessionManager(db).expire_stale()


@celery_app.task
def expire_stale_sessions() -> dict:
    """Mark active sessions past their expiry as expired."""
    expired = asyncio.run(_expire_stale())
    return {
        'expired': expired,
        'timestamp': datetime.now().isoformat()
    }


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
