"""Celery tasks for regenerating customized analyses."""
import asyncio
import logging
from typing import Any, Dict, Optional

from kessan.models.repository import SupabaseRepository
from kessan.models.schemas import RegenerateMessage, RegenerateResult
from kessan.services import notifications
from kessan.services.earnings_analyzer import EarningsAnalyzer
from kessan.services.gemini_client import get_gemini_client
from kessan.services.pdf_storage import SupabaseBlobStore
from kessan.services.regeneration import RegenerationCoordinator
from kessan.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def enqueue_regeneration(watchlist_id: str, user_id: Optional[str] = None) -> None:
    """Queue a regeneration after a subscriber edits their custom prompt."""
    message = RegenerateMessage(watchlist_id=watchlist_id, user_id=user_id)
    regenerate_custom_analysis_task.delay(message.model_dump(mode="json"))


async def run_regeneration(
    message: RegenerateMessage,
    repository,
    coordinator: RegenerationCoordinator,
    notifier: notifications.Notifier,
) -> Optional[RegenerateResult]:
    subscriber = await repository.get_subscriber(message.watchlist_id)
    if subscriber is None:
        logger.error("Watchlist item not found: %s", message.watchlist_id)
        return None
    if message.user_id and subscriber.user_id != message.user_id:
        logger.error("Watchlist item %s does not belong to user %s", message.watchlist_id, message.user_id)
        return None
    if subscriber.prompt is None:
        logger.info("No custom prompt set for watchlist %s, skipping regeneration", subscriber.id)
        return RegenerateResult()

    result = await coordinator.regenerate(subscriber)
    await notifier.notify(
        notifications.REGENERATE_COMPLETE,
        {
            "user_id": subscriber.user_id,
            "ticker": subscriber.ticker,
            "stock_name": subscriber.stock_name,
            **result.model_dump(),
        },
    )
    return result


@celery_app.task(bind=True, name="kessan.tasks.regenerate.regenerate_custom_analysis_task")
def regenerate_custom_analysis_task(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Regenerate every customized analysis for one watchlist item.

    Args:
        self: Celery task instance
        payload: Serialized RegenerateMessage
    """
    message = RegenerateMessage.model_validate(payload)
    repository = SupabaseRepository()
    gemini = get_gemini_client()
    analyzer = EarningsAnalyzer(repository, SupabaseBlobStore(), gemini)
    coordinator = RegenerationCoordinator(repository, analyzer, gemini)

    result = asyncio.run(run_regeneration(message, repository, coordinator, notifications.Notifier()))
    return result.model_dump() if result else None
