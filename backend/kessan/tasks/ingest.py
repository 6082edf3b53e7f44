"""Celery tasks for importing disclosures."""
import asyncio
import logging
from typing import Any, Dict, Optional

import redis

from kessan.config import get_settings
from kessan.models.schemas import HistoricalImportMessage
from kessan.services.ingestion import get_ingestion_pipeline
from kessan.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

# Long enough to outlive broker redelivery of the batch that enqueued the continuation.
CONTINUATION_CLAIM_TTL = 24 * 60 * 60


def enqueue_historical_import(ticker: str, user_id: Optional[str] = None) -> None:
    """Start a backfill for a ticker, typically right after it is added to a watchlist."""
    message = HistoricalImportMessage(ticker=ticker, user_id=user_id)
    import_historical_earnings_task.delay(message.model_dump(mode="json"))
    logger.info("Enqueued historical import for %s", ticker)


def continuation_task_id(message: HistoricalImportMessage) -> str:
    return f"historical-import:{message.ticker}:{message.run_id}:{message.offset}"


def _claim_task_id(task_id: str) -> bool:
    """Record a task id in Redis; False when another delivery already claimed it."""
    client = redis.from_url(get_settings().redis_url)
    return bool(client.set(f"kessan:claim:{task_id}", "1", nx=True, ex=CONTINUATION_CLAIM_TTL))


def _enqueue_continuation(message: HistoricalImportMessage) -> None:
    task_id = continuation_task_id(message)
    if not _claim_task_id(task_id):
        logger.info("Continuation %s already enqueued; skipping", task_id)
        return
    import_historical_earnings_task.apply_async(args=[message.model_dump(mode="json")], task_id=task_id)
    logger.info("Enqueued next batch for %s at offset %d", message.ticker, message.offset)


@celery_app.task(bind=True, name="kessan.tasks.ingest.import_historical_earnings_task")
def import_historical_earnings_task(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Process one batch of a historical import and chain the next one.

    Args:
        self: Celery task instance
        payload: Serialized HistoricalImportMessage
    """
    message = HistoricalImportMessage.model_validate(payload)
    pipeline = get_ingestion_pipeline()
    continuation = asyncio.run(pipeline.import_historical_batch(message, _enqueue_continuation))
    return {
        "ticker": message.ticker,
        "offset": message.offset,
        "next_offset": continuation.offset if continuation else None,
    }


@celery_app.task(bind=True, name="kessan.tasks.ingest.check_new_releases_task")
def check_new_releases_task(self) -> Dict[str, Any]:
    """Scheduled poll of the recent TDnet feed."""
    pipeline = get_ingestion_pipeline()
    result = asyncio.run(pipeline.check_new_releases())
    return result.model_dump()
