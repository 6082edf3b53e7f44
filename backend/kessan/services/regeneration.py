"""Re-customization of a subscriber's releases after a prompt change."""
import logging
from typing import Optional

from kessan.config import get_settings
from kessan.models.schemas import (
    AnalysisHistoryEntry,
    RegenerateOutcome,
    RegenerateResult,
    Release,
    Subscriber,
)
from kessan.services.concurrency import bounded_gather
from kessan.services.earnings_analyzer import EarningsAnalyzer
from kessan.services.gemini_client import GeminiClient
from kessan.services.gemini_exceptions import GeminiClientError

logger = logging.getLogger(__name__)


class RegenerationCoordinator:
    """
    Brings every release of a subscriber's ticker in line with their current prompt.

    Lookup order per release: the current analysis, then the history of
    earlier analyses, and only then a fresh model call. Any value about to be
    replaced under a different prompt is archived first.
    """

    def __init__(
        self,
        repository,
        analyzer: EarningsAnalyzer,
        client: GeminiClient,
        parallel_limit: Optional[int] = None,
    ):
        self.repository = repository
        self.analyzer = analyzer
        self.client = client
        self.parallel_limit = parallel_limit or get_settings().parallel_limit

    async def _archive(self, user_id: str, release_id: str, current) -> None:
        await self.repository.append_history(
            AnalysisHistoryEntry(
                user_id=user_id,
                release_id=release_id,
                custom_prompt=current.custom_prompt_used,
                analysis=current.custom_analysis,
            )
        )

    async def regenerate_release(
        self, subscriber: Subscriber, release: Release, prompt: str
    ) -> RegenerateOutcome:
        user_id = subscriber.user_id
        current = await self.repository.get_user_analysis(user_id, release.id)
        has_current_value = (
            current is not None
            and current.custom_analysis is not None
            and bool(current.custom_prompt_used)
        )

        if has_current_value and current.custom_prompt_used == prompt:
            logger.debug("Cache hit: %s FY%s Q%s", release.ticker, release.fiscal_year, release.fiscal_quarter)
            return RegenerateOutcome.CACHED

        historical = await self.repository.find_history_analysis(user_id, release.id, prompt)
        if historical is not None:
            logger.debug(
                "History cache hit: %s FY%s Q%s", release.ticker, release.fiscal_year, release.fiscal_quarter
            )
            if has_current_value:
                await self._archive(user_id, release.id, current)
            await self.repository.save_user_analysis(user_id, release.id, historical, prompt)
            return RegenerateOutcome.CACHED

        if has_current_value:
            await self._archive(user_id, release.id, current)

        pdfs = await self.analyzer.select_pdfs(release.id)
        if not pdfs:
            return RegenerateOutcome.SKIPPED

        try:
            analysis = await self.client.summarize_custom([pdf.data for pdf in pdfs], prompt)
        except GeminiClientError as exc:
            logger.warning("Failed to regenerate analysis for release %s: %s", release.id, exc)
            return RegenerateOutcome.SKIPPED

        await self.repository.save_user_analysis(user_id, release.id, analysis, prompt)
        return RegenerateOutcome.REGENERATED

    async def _regenerate_isolated(
        self, subscriber: Subscriber, release: Release, prompt: str
    ) -> RegenerateOutcome:
        try:
            return await self.regenerate_release(subscriber, release, prompt)
        except Exception:
            logger.exception("Regeneration crashed for release %s", release.id)
            return RegenerateOutcome.SKIPPED

    async def regenerate(self, subscriber: Subscriber) -> RegenerateResult:
        """Regenerate all releases of the subscriber's ticker under their current prompt."""
        result = RegenerateResult()
        prompt = subscriber.prompt
        if prompt is None:
            logger.info("No custom prompt set for watchlist %s, nothing to regenerate", subscriber.id)
            return result

        releases = await self.repository.list_releases_by_ticker(subscriber.ticker)
        outcomes = await bounded_gather(
            lambda release: self._regenerate_isolated(subscriber, release, prompt),
            releases,
            self.parallel_limit,
        )
        for outcome in outcomes:
            result.record(outcome)

        logger.info(
            "Regeneration complete for %s: %d regenerated, %d cached, %d skipped (total: %d)",
            subscriber.ticker, result.regenerated, result.cached, result.skipped, result.total,
        )
        return result
