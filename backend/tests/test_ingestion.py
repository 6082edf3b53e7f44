"""End-to-end tests for the ingestion pipeline over in-memory fakes."""
import asyncio
from datetime import date

import pytest

from fakes import FakeBlobStore, FakeGemini, FakeNotifier, FakeRepository, make_pdf, pdf_transport
from kessan.models.schemas import DocumentType, HistoricalImportMessage, ReleaseKind, SourceDocument
from kessan.services import notifications
from kessan.services.customizer import Customizer
from kessan.services.document_classifier import DocumentClassifier
from kessan.services.earnings_analyzer import EarningsAnalyzer
from kessan.services.ingestion import ImportContext, IngestionPipeline
from kessan.services.pdf_storage import PdfFetcher, content_hash
from kessan.services.release_resolver import ReleaseResolver

SUMMARY_TITLE = "2026年3月期 決算短信〔日本基準〕(連結)"
PRESENTATION_TITLE = "2026年3月期 決算説明資料"
Q1_TITLE = "2026年3月期 第1四半期決算短信〔日本基準〕(連結)"

SUMMARY_URL = "https://www.release.tdnet.info/inbs/140120260508500001.pdf"
PRESENTATION_URL = "https://www.release.tdnet.info/inbs/140120260508500002.pdf"
Q1_URL = "https://www.release.tdnet.info/inbs/140120250806500003.pdf"


def _payload(document_type, fiscal_year="2025", fiscal_quarter=None):
    return {
        "document_type": document_type,
        "fiscal_year": fiscal_year,
        "fiscal_quarter": fiscal_quarter,
        "confidence": 0.95,
        "reasoning": "title keywords",
    }


CLASSIFICATIONS = {
    SUMMARY_TITLE: _payload("summary", "2025", 4),
    PRESENTATION_TITLE: _payload("presentation", "2025", 4),
    Q1_TITLE: _payload("summary", "2025", 1),
}


def _source_doc(doc_id, title, url, published=date(2026, 5, 8), code="72030"):
    return SourceDocument(id=doc_id, title=title, published_at=published, doc_url=url, company_code=code)


class StaticSource:
    def __init__(self, documents):
        self.documents = documents
        self.calls = 0

    async def list_by_ticker(self, ticker, limit=None):
        self.calls += 1
        return self.documents

    async def list_recent(self, limit=None):
        self.calls += 1
        return self.documents


class World:
    """A pipeline wired to fakes, with the pieces exposed for assertions."""

    def __init__(self, documents, routes, batch_size=20, notifier=None, repository=None):
        self.repository = repository or FakeRepository()
        self.store = FakeBlobStore()
        self.gemini = FakeGemini(dict(CLASSIFICATIONS))
        self.notifier = notifier or FakeNotifier()
        self.source = StaticSource(documents)
        self.fetch_calls = []
        self.pipeline = IngestionPipeline(
            repository=self.repository,
            fetcher=PdfFetcher(self.store, timeout=5, transport=pdf_transport(routes, self.fetch_calls)),
            classifier=DocumentClassifier(self.gemini, batch_size=10, parallel_limit=3),
            resolver=ReleaseResolver(self.repository),
            analyzer=EarningsAnalyzer(self.repository, self.store, self.gemini),
            customizer=Customizer(self.repository, self.gemini, parallel_limit=3),
            notifier=self.notifier,
            sources=[("tdnet", self.source)],
            recent_client=self.source,
            batch_size=batch_size,
        )
        self.enqueued = []

    def run_backfill(self, message):
        return asyncio.run(self.pipeline.import_historical_batch(message, self.enqueued.append))

    def events(self, name):
        return [payload for event, payload in self.notifier.events if event == name]


@pytest.fixture
def toyota():
    documents = [
        _source_doc("1", SUMMARY_TITLE, SUMMARY_URL),
        _source_doc("2", PRESENTATION_TITLE, PRESENTATION_URL, published=date(2026, 5, 9)),
    ]
    routes = {
        SUMMARY_URL: make_pdf(3, text="決算短信"),
        PRESENTATION_URL: make_pdf(2, text="決算説明資料"),
    }
    world = World(documents, routes)
    world.repository.add_subscriber("user-plain")
    world.repository.add_subscriber("user-custom", custom_prompt="配当方針")
    return world


class TestImportContext:
    def test_first_touch_decides_whether_release_is_new(self):
        context = ImportContext("7203", set())
        context.touch("rel-1", True)
        context.touch("rel-1", False)
        context.touch("rel-2", False)
        assert context.touched_releases == {"rel-1": True, "rel-2": False}


class TestHistoricalImport:
    def test_summary_and_presentation_form_one_analyzed_release(self, toyota):
        continuation = toyota.run_backfill(HistoricalImportMessage(ticker="7203", user_id="user-plain"))

        assert continuation is None
        (release,) = toyota.repository.releases.values()
        assert release.release_kind is ReleaseKind.QUARTERLY_EARNINGS
        assert (release.ticker, release.fiscal_year, release.fiscal_quarter) == ("7203", "2025", 4)
        assert release.announcement_date == date(2026, 5, 8)
        assert release.summary is not None

        documents = toyota.repository.documents.values()
        assert sorted(doc.document_type for doc in documents) == [DocumentType.PRESENTATION, DocumentType.SUMMARY]
        assert all(doc.release_id == release.id for doc in documents)
        assert toyota.repository.urls.keys() == {SUMMARY_URL, PRESENTATION_URL}

        # one combined summarize call with both PDFs
        assert toyota.gemini.summarize_calls == [2]
        assert toyota.gemini.custom_calls == ["配当方針"]
        assert toyota.repository.user_analyses[("user-plain", release.id)].custom_analysis is None
        assert toyota.repository.user_analyses[("user-custom", release.id)].custom_prompt_used == "配当方針"

        (analyzed,) = toyota.events(notifications.RELEASE_ANALYZED)
        assert analyzed["is_new_release"] is True
        assert sorted(analyzed["user_ids"]) == ["user-custom", "user-plain"]
        assert sorted(user for user, _ in toyota.repository.notified) == ["user-custom", "user-plain"]

        (complete,) = toyota.events(notifications.IMPORT_COMPLETE)
        assert (complete["imported"], complete["analyzed"], complete["user_id"]) == (2, 1, "user-plain")

    def test_reimport_is_idempotent(self, toyota):
        toyota.run_backfill(HistoricalImportMessage(ticker="7203"))
        classify_calls = len(toyota.gemini.classify_calls)
        fetches = len(toyota.fetch_calls)

        toyota.run_backfill(HistoricalImportMessage(ticker="7203"))

        assert len(toyota.repository.releases) == 1
        assert len(toyota.repository.documents) == 2
        assert len(toyota.gemini.classify_calls) == classify_calls
        assert len(toyota.fetch_calls) == fetches
        assert toyota.gemini.summarize_calls == [2]
        last = toyota.events(notifications.IMPORT_COMPLETE)[-1]
        assert (last["imported"], last["existing"]) == (0, 2)

    def test_notified_at_is_not_set_when_delivery_fails(self, toyota):
        toyota.notifier.delivered = False

        toyota.run_backfill(HistoricalImportMessage(ticker="7203"))

        assert toyota.repository.notified == []

    def test_same_content_under_two_urls_is_stored_once(self):
        data = make_pdf(2, text="決算短信")
        mirror = "https://f.irbank.net/pdf/20260508/140120260508500001.pdf"
        world = World(
            [
                _source_doc("1", SUMMARY_TITLE, SUMMARY_URL),
                _source_doc("2", "FY2026.3 決算短信", mirror),
            ],
            {SUMMARY_URL: data, mirror: data},
        )
        world.gemini.classifications["FY2026.3 決算短信"] = _payload("summary", "2025", 4)

        world.run_backfill(HistoricalImportMessage(ticker="7203"))

        (document,) = world.repository.documents.values()
        assert world.repository.urls == {SUMMARY_URL: document.id, mirror: document.id}
        assert world.store.puts == [document.blob_key]
        (complete,) = world.events(notifications.IMPORT_COMPLETE)
        assert (complete["imported"], complete["existing"]) == (1, 1)

    def test_failed_download_does_not_stop_the_batch(self):
        world = World(
            [
                _source_doc("1", SUMMARY_TITLE, SUMMARY_URL),
                _source_doc("2", PRESENTATION_TITLE, PRESENTATION_URL),
            ],
            {SUMMARY_URL: 500, PRESENTATION_URL: make_pdf()},
        )

        world.run_backfill(HistoricalImportMessage(ticker="7203"))

        (complete,) = world.events(notifications.IMPORT_COMPLETE)
        assert (complete["imported"], complete["failed"]) == (1, 1)
        assert SUMMARY_URL not in world.repository.urls

    def test_backfill_continues_in_batches(self):
        world = World(
            [
                _source_doc("1", SUMMARY_TITLE, SUMMARY_URL),
                _source_doc("2", PRESENTATION_TITLE, PRESENTATION_URL),
                _source_doc("3", Q1_TITLE, Q1_URL, published=date(2025, 8, 6)),
            ],
            {SUMMARY_URL: make_pdf(1, "a"), PRESENTATION_URL: make_pdf(1, "b"), Q1_URL: make_pdf(1, "c")},
            batch_size=2,
        )

        continuation = world.run_backfill(HistoricalImportMessage(ticker="7203", user_id="user-a"))

        assert continuation is not None
        assert world.enqueued == [continuation]
        assert continuation.offset == 2
        assert len(continuation.candidates) == 3
        assert continuation.totals.imported == 2
        assert world.events(notifications.IMPORT_COMPLETE) == []

        assert world.run_backfill(continuation) is None

        assert world.source.calls == 1
        assert len(world.repository.releases) == 2
        (complete,) = world.events(notifications.IMPORT_COMPLETE)
        assert (complete["imported"], complete["analyzed"], complete["user_id"]) == (3, 2, "user-a")

    def test_unresolved_and_irrelevant_documents_are_skipped(self):
        world = World(
            [
                _source_doc("1", "決算補足資料", "https://example.com/unresolved.pdf"),
                _source_doc("2", "配当予想の修正に関するお知らせ", "https://example.com/dividend.pdf"),
            ],
            {},
        )
        world.gemini.classifications["決算補足資料"] = _payload("presentation", None, None)

        world.run_backfill(HistoricalImportMessage(ticker="7203"))

        assert world.repository.releases == {}
        assert world.fetch_calls == []
        # the dividend notice never reaches the classifier
        assert world.gemini.classify_calls == ["決算補足資料"]
        (complete,) = world.events(notifications.IMPORT_COMPLETE)
        assert complete["skipped"] == 1


class StaleHashRepository(FakeRepository):
    """Serves an empty hash snapshot, as if another run stored its PDFs after this one started."""

    async def get_content_hashes(self, ticker):
        return set()


class TestConcurrentImports:
    def test_pdf_stored_by_another_run_is_aliased_without_a_new_release(self):
        data = make_pdf(2, text="決算短信")
        repository = StaleHashRepository()
        earlier = repository.add_release(fiscal_year="2024")
        winner = repository.add_document(earlier, DocumentType.SUMMARY, "7203/winner.pdf", content_hash(data))
        world = World([_source_doc("1", SUMMARY_TITLE, SUMMARY_URL)], {SUMMARY_URL: data}, repository=repository)

        world.run_backfill(HistoricalImportMessage(ticker="7203"))

        assert repository.urls == {SUMMARY_URL: winner.id}
        assert list(repository.releases) == [earlier.id]
        assert list(repository.documents) == [winner.id]
        (complete,) = world.events(notifications.IMPORT_COMPLETE)
        assert (complete["imported"], complete["existing"], complete["failed"]) == (0, 1, 0)

    def test_lost_insert_race_aliases_url_to_the_winner(self):
        data = make_pdf(2, text="決算短信")

        class RacingRepository(StaleHashRepository):
            winner = None

            async def insert_document(self, document):
                if self.winner is None:
                    release = self.add_release(fiscal_year="2024")
                    self.winner = self.add_document(
                        release, DocumentType.SUMMARY, "7203/winner.pdf", document.content_hash
                    )
                return await super().insert_document(document)

        repository = RacingRepository()
        world = World([_source_doc("1", SUMMARY_TITLE, SUMMARY_URL)], {SUMMARY_URL: data}, repository=repository)

        world.run_backfill(HistoricalImportMessage(ticker="7203"))

        assert repository.urls == {SUMMARY_URL: repository.winner.id}
        assert list(repository.documents) == [repository.winner.id]
        assert world.gemini.summarize_calls == []
        (complete,) = world.events(notifications.IMPORT_COMPLETE)
        assert (complete["imported"], complete["existing"], complete["failed"]) == (0, 1, 0)


class TestCheckNewReleases:
    def test_imports_recent_disclosures_for_watched_tickers(self, toyota):
        toyota.source.documents.append(
            _source_doc("9", "2026年3月期 決算短信", "https://example.com/sony.pdf", code="67580")
        )

        result = asyncio.run(toyota.pipeline.check_new_releases())

        assert (result.imported, result.analyzed) == (2, 1)
        assert "https://example.com/sony.pdf" not in toyota.repository.urls
        (complete,) = toyota.events(notifications.IMPORT_COMPLETE)
        assert complete["checked"] == 1

    def test_no_watched_tickers_means_no_feed_request(self):
        world = World([_source_doc("1", SUMMARY_TITLE, SUMMARY_URL)], {})

        result = asyncio.run(world.pipeline.check_new_releases())

        assert result.imported == 0
        assert world.source.calls == 0
