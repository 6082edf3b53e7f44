"""Ingestion orchestration: candidates to stored documents to analyzed releases."""
import logging
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from kessan.config import get_settings
from kessan.models.schemas import (
    ClassifiedDocument,
    DocumentCandidate,
    FetchStatus,
    HistoricalImportMessage,
    ImportResult,
    StoredDocumentCreate,
)
from kessan.services import notifications
from kessan.services.document_sources import filter_recent_for_tickers, gather_candidates
from kessan.services.tdnet import TdnetClient

logger = logging.getLogger(__name__)

Enqueue = Callable[[HistoricalImportMessage], None]


class ImportContext:
    """
    Working set for one ticker's import run.

    Holds the ticker's known content hashes (loaded once per run), the
    releases touched so far and the run's counters. A context is never
    shared between runs, so concurrent imports of different tickers stay
    independent.
    """

    def __init__(self, ticker: str, known_hashes: Set[str]):
        self.ticker = ticker
        self.known_hashes = known_hashes
        self.touched_releases: Dict[str, bool] = {}
        self.result = ImportResult()

    def touch(self, release_id: str, is_new_release: bool) -> None:
        """Remember a release for analysis; the first touch decides whether it is new."""
        self.touched_releases.setdefault(release_id, is_new_release)


class IngestionPipeline:
    """Wires sources, classifier, store, resolver, analyzer and customizer together."""

    def __init__(
        self,
        repository,
        fetcher,
        classifier,
        resolver,
        analyzer,
        customizer,
        notifier,
        sources: Optional[Sequence[Tuple[str, object]]] = None,
        recent_client=None,
        batch_size: Optional[int] = None,
    ):
        self.repository = repository
        self.fetcher = fetcher
        self.classifier = classifier
        self.resolver = resolver
        self.analyzer = analyzer
        self.customizer = customizer
        self.notifier = notifier
        self.sources = sources
        self.recent_client = recent_client
        self.batch_size = batch_size or get_settings().import_batch_size

    async def new_context(self, ticker: str) -> ImportContext:
        known_hashes = await self.repository.get_content_hashes(ticker)
        return ImportContext(ticker, known_hashes)

    async def _drop_indexed(
        self, candidates: Sequence[DocumentCandidate]
    ) -> Tuple[List[DocumentCandidate], int]:
        """Remove candidates whose URL is already indexed, before paying for classification."""
        fresh: List[DocumentCandidate] = []
        indexed = 0
        for candidate in candidates:
            if await self.repository.find_document_id_by_url(candidate.pdf_url):
                indexed += 1
            else:
                fresh.append(candidate)
        return fresh, indexed

    async def _alias_url(self, url: str, content_hash: Optional[str]) -> None:
        if not content_hash:
            return
        document_id = await self.repository.find_document_id_by_hash(content_hash)
        if document_id:
            await self.repository.add_document_url(url, document_id)

    async def _store_document(self, context: ImportContext, document: ClassifiedDocument) -> None:
        result = context.result
        outcome = await self.fetcher.fetch_and_store(
            document.pdf_url,
            context.ticker,
            context.known_hashes,
            self.repository.find_document_id_by_url,
        )

        if outcome.status is FetchStatus.FAILED:
            result.failed += 1
            return

        if outcome.status is FetchStatus.EXISTING:
            if outcome.existing_document_id is None:
                await self._alias_url(document.pdf_url, outcome.content_hash)
            result.existing += 1
            return

        # The hash snapshot is taken once per import; a concurrent run may have stored this PDF since.
        winner_id = await self.repository.find_document_id_by_hash(outcome.content_hash)
        if winner_id:
            await self.repository.add_document_url(document.pdf_url, winner_id)
            result.existing += 1
            return

        release, is_new_release = await self.resolver.resolve(context.ticker, document)
        stored = await self.repository.insert_document(
            StoredDocumentCreate(
                release_id=release.id,
                document_type=document.document_type,
                ticker=context.ticker,
                fiscal_year=release.fiscal_year,
                fiscal_quarter=release.fiscal_quarter,
                announcement_date=document.published_at,
                content_hash=outcome.content_hash,
                blob_key=outcome.blob_key,
                title=document.title,
                file_size=outcome.file_size,
            )
        )
        if stored is None:
            # Another run inserted the same content first.
            await self._alias_url(document.pdf_url, outcome.content_hash)
            result.existing += 1
            return

        await self.repository.add_document_url(document.pdf_url, stored.id)
        await self.repository.lower_release_announcement_date(release.id, document.published_at)
        context.touch(release.id, is_new_release)
        result.imported += 1
        logger.info(
            "Imported [%s]: %s FY%s Q%s - %s (confidence: %.2f, release: %s)",
            document.document_type.value, context.ticker, document.fiscal_year,
            release.fiscal_quarter, document.title, document.confidence, release.id,
        )

    async def import_candidates(
        self, context: ImportContext, candidates: Sequence[DocumentCandidate]
    ) -> ImportResult:
        """Classify, fetch, store and attach candidates; per-document failures are counted, not raised."""
        fresh, indexed = await self._drop_indexed(candidates)
        context.result.existing += indexed

        classified, skipped = await self.classifier.classify_candidates(fresh)
        context.result.skipped += skipped

        for document in classified:
            try:
                await self._store_document(context, document)
            except Exception:
                logger.exception("Failed to import %s", document.pdf_url)
                context.result.failed += 1
        return context.result

    async def process_release(self, release_id: str, is_new_release: bool) -> bool:
        """
        Analyze a release, then customize it for its subscribers.

        Customization also runs when this analysis failed but an earlier
        summary exists. Returns True when a new summary was stored.
        """
        release = await self.repository.get_release(release_id)
        if release is None:
            logger.error("Release not found: %s", release_id)
            return False

        pdfs = await self.analyzer.select_pdfs(release_id)
        summary = await self.analyzer.analyze(release_id, pdfs)
        if summary is None and release.summary is None:
            logger.warning("Release %s left unanalyzed", release_id)
            return False

        customized = await self.customizer.customize_release(release, pdfs)
        if customized.user_ids:
            delivered = await self.notifier.notify(
                notifications.RELEASE_ANALYZED,
                {
                    "release_id": release.id,
                    "ticker": release.ticker,
                    "release_kind": release.release_kind.value,
                    "fiscal_year": release.fiscal_year,
                    "fiscal_quarter": release.fiscal_quarter,
                    "is_new_release": is_new_release,
                    "user_ids": customized.user_ids,
                },
            )
            if delivered:
                await self.repository.mark_notified(customized.user_ids, release.id)

        logger.info(
            "Analyzed release %s: %d custom analyses%s",
            release_id, customized.customized, "" if is_new_release else " (re-analyzed)",
        )
        return summary is not None

    async def process_touched_releases(self, context: ImportContext) -> None:
        for release_id, is_new_release in context.touched_releases.items():
            try:
                if await self.process_release(release_id, is_new_release):
                    context.result.analyzed += 1
            except Exception:
                logger.exception("Failed to analyze release %s", release_id)

    async def check_new_releases(self) -> ImportResult:
        """Scheduled poll: import recent TDnet disclosures for every watched ticker."""
        totals = ImportResult()
        tickers = await self.repository.list_watched_tickers()
        logger.info("Checking %d stocks for new releases", len(tickers))
        if not tickers:
            return totals

        recent_client = self.recent_client or TdnetClient()
        try:
            recent = await recent_client.list_recent()
        except Exception as exc:
            logger.error("Recent disclosure fetch failed: %s", exc)
            return totals

        grouped = filter_recent_for_tickers(recent, tickers)
        logger.info("Found %d watched tickers with relevant disclosures", len(grouped))

        for ticker, candidates in grouped.items():
            try:
                context = await self.new_context(ticker)
                await self.import_candidates(context, candidates)
                await self.process_touched_releases(context)
            except Exception:
                logger.exception("New release check failed for %s", ticker)
                continue
            totals = totals.merge(context.result)

        if totals.imported:
            await self.notifier.notify(
                notifications.IMPORT_COMPLETE,
                {"checked": len(tickers), **totals.model_dump()},
            )
        return totals

    async def import_historical_batch(
        self, message: HistoricalImportMessage, enqueue: Enqueue
    ) -> Optional[HistoricalImportMessage]:
        """
        Process one slice of a ticker's backfill.

        The first message gathers candidates; continuations carry them so
        sources are read once per backfill. Returns the continuation that was
        enqueued, or None when the backfill is complete. Re-running a message
        is safe because every write is idempotent.
        """
        candidates = message.candidates
        if candidates is None:
            candidates = await gather_candidates(message.ticker, self.sources)

        batch = candidates[message.offset:message.offset + self.batch_size]
        context = await self.new_context(message.ticker)
        await self.import_candidates(context, batch)
        await self.process_touched_releases(context)

        totals = message.totals.merge(context.result)
        next_offset = message.offset + len(batch)
        logger.info(
            "Batch complete for %s: %d/%d candidates, %d imported, %d skipped",
            message.ticker, next_offset, len(candidates), context.result.imported, context.result.skipped,
        )

        if next_offset < len(candidates):
            continuation = HistoricalImportMessage(
                ticker=message.ticker,
                offset=next_offset,
                candidates=candidates,
                totals=totals,
                user_id=message.user_id,
                run_id=message.run_id,
            )
            enqueue(continuation)
            return continuation

        logger.info("Import complete for %s", message.ticker)
        await self.notifier.notify(
            notifications.IMPORT_COMPLETE,
            {"ticker": message.ticker, "user_id": message.user_id, **totals.model_dump()},
        )
        return None


def get_ingestion_pipeline() -> IngestionPipeline:
    """Build a pipeline wired to Supabase, Gemini and the live disclosure feeds."""
    from kessan.models.repository import SupabaseRepository
    from kessan.services.customizer import Customizer
    from kessan.services.document_classifier import DocumentClassifier
    from kessan.services.earnings_analyzer import EarningsAnalyzer
    from kessan.services.gemini_client import get_gemini_client
    from kessan.services.pdf_storage import PdfFetcher, SupabaseBlobStore
    from kessan.services.release_resolver import ReleaseResolver

    repository = SupabaseRepository()
    blob_store = SupabaseBlobStore()
    gemini = get_gemini_client()
    return IngestionPipeline(
        repository=repository,
        fetcher=PdfFetcher(blob_store),
        classifier=DocumentClassifier(gemini),
        resolver=ReleaseResolver(repository),
        analyzer=EarningsAnalyzer(repository, blob_store, gemini),
        customizer=Customizer(repository, gemini),
        notifier=notifications.Notifier(),
    )
