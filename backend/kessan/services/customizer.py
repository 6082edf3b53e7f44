"""Per-subscriber customized analyses of a release."""
import logging
from typing import List, Optional, Sequence

from kessan.config import get_settings
from kessan.models.schemas import CustomizeResult, Release, Subscriber
from kessan.services.concurrency import bounded_gather
from kessan.services.earnings_analyzer import SelectedPdf
from kessan.services.gemini_client import GeminiClient
from kessan.services.gemini_exceptions import GeminiClientError

logger = logging.getLogger(__name__)

CREATED = "created"
CUSTOMIZED = "customized"
FAILED = "failed"
EXISTING = "existing"


class Customizer:
    """Creates one UserAnalysis per (subscriber, release) pair."""

    def __init__(self, repository, client: GeminiClient, parallel_limit: Optional[int] = None):
        self.repository = repository
        self.client = client
        self.parallel_limit = parallel_limit or get_settings().parallel_limit

    async def pending_subscribers(self, release: Release) -> List[Subscriber]:
        """Subscribers of the release's ticker who have not been considered yet."""
        subscribers = await self.repository.list_subscribers_for_ticker(release.ticker)
        done = await self.repository.list_analyzed_user_ids(release.id)
        return [subscriber for subscriber in subscribers if subscriber.user_id not in done]

    async def _customize_one(
        self, release: Release, subscriber: Subscriber, pdfs: Sequence[SelectedPdf]
    ) -> str:
        prompt = subscriber.prompt
        if prompt is None:
            created = await self.repository.create_user_analysis(
                subscriber.user_id, release.id, None, None
            )
            return CREATED if created else EXISTING

        if not pdfs:
            logger.warning("No PDFs to customize release %s for user %s", release.id, subscriber.user_id)
            return FAILED

        try:
            analysis = await self.client.summarize_custom([pdf.data for pdf in pdfs], prompt)
        except GeminiClientError as exc:
            # No row is written so the subscriber is picked up again next time.
            logger.warning(
                "Custom analysis failed for user %s on release %s: %s",
                subscriber.user_id, release.id, exc,
            )
            return FAILED

        created = await self.repository.create_user_analysis(
            subscriber.user_id, release.id, analysis, prompt
        )
        return CUSTOMIZED if created else EXISTING

    async def _customize_isolated(
        self, release: Release, subscriber: Subscriber, pdfs: Sequence[SelectedPdf]
    ) -> str:
        try:
            return await self._customize_one(release, subscriber, pdfs)
        except Exception:
            logger.exception(
                "Customization crashed for user %s on release %s", subscriber.user_id, release.id
            )
            return FAILED

    async def customize_release(
        self, release: Release, pdfs: Sequence[SelectedPdf]
    ) -> CustomizeResult:
        """
        Customize a release for every pending subscriber.

        One subscriber's failure never affects the others.
        """
        subscribers = await self.pending_subscribers(release)
        result = CustomizeResult()
        if not subscribers:
            return result

        outcomes = await bounded_gather(
            lambda subscriber: self._customize_isolated(release, subscriber, pdfs),
            subscribers,
            self.parallel_limit,
        )
        for subscriber, outcome in zip(subscribers, outcomes):
            if outcome == CREATED:
                result.created += 1
                result.user_ids.append(subscriber.user_id)
            elif outcome == CUSTOMIZED:
                result.customized += 1
                result.user_ids.append(subscriber.user_id)
            elif outcome == FAILED:
                result.failed += 1

        logger.info(
            "Release %s customization: %d custom, %d plain, %d failed",
            release.id, result.customized, result.created, result.failed,
        )
        return result
