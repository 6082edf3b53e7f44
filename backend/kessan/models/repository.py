"""Supabase-backed persistence for documents, releases and subscriber analyses."""
import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Callable, Iterable, List, Optional, Set, TypeVar

from supabase import Client

from kessan.models.database import get_supabase_client
from kessan.models.schemas import (
    AnalysisHistoryEntry,
    CustomAnalysis,
    EarningsSummary,
    Release,
    ReleaseKind,
    StoredDocument,
    StoredDocumentCreate,
    Subscriber,
    UserAnalysis,
)
from kessan.utils.supabase_errors import is_unique_violation_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DOCUMENTS_TABLE = "earnings_documents"
DOCUMENT_URLS_TABLE = "document_urls"
RELEASES_TABLE = "earnings_releases"
USER_ANALYSES_TABLE = "user_release_analyses"
HISTORY_TABLE = "release_analysis_history"
WATCHLIST_TABLE = "watchlist"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseRepository:
    """
    Narrow CRUD surface over Supabase tables.

    The supabase client is synchronous; every call runs in a worker thread so
    the pipeline's event loop keeps other tasks moving. Inserts that hit a
    unique constraint return None (or False) instead of raising: a concurrent
    writer got there first.
    """

    def __init__(self, client: Optional[Client] = None):
        self.client = client or get_supabase_client()

    async def _run(self, query: Callable[[], T]) -> T:
        return await asyncio.to_thread(query)

    # URL index
    async def find_document_id_by_url(self, url: str) -> Optional[str]:
        def query():
            return (
                self.client.table(DOCUMENT_URLS_TABLE)
                .select("document_id")
                .eq("url", url)
                .limit(1)
                .execute()
            )

        response = await self._run(query)
        return response.data[0]["document_id"] if response.data else None

    async def add_document_url(self, url: str, document_id: str) -> None:
        def query():
            return (
                self.client.table(DOCUMENT_URLS_TABLE)
                .upsert(
                    {"url": url, "document_id": document_id},
                    on_conflict="url",
                    ignore_duplicates=True,
                )
                .execute()
            )

        await self._run(query)

    # Documents
    async def get_content_hashes(self, ticker: str) -> Set[str]:
        def query():
            return (
                self.client.table(DOCUMENTS_TABLE)
                .select("content_hash")
                .eq("ticker", ticker)
                .execute()
            )

        response = await self._run(query)
        return {row["content_hash"] for row in response.data or []}

    async def find_document_id_by_hash(self, content_hash: str) -> Optional[str]:
        def query():
            return (
                self.client.table(DOCUMENTS_TABLE)
                .select("id")
                .eq("content_hash", content_hash)
                .limit(1)
                .execute()
            )

        response = await self._run(query)
        return response.data[0]["id"] if response.data else None

    async def insert_document(self, document: StoredDocumentCreate) -> Optional[StoredDocument]:
        """Insert a stored document; None when the content hash is already present."""
        payload = document.model_dump(mode="json")

        def query():
            return self.client.table(DOCUMENTS_TABLE).insert(payload).execute()

        try:
            response = await self._run(query)
        except Exception as exc:
            if is_unique_violation_error(exc):
                logger.info("Document %s already imported", document.content_hash)
                return None
            raise
        return StoredDocument.model_validate(response.data[0])

    async def list_documents_for_release(self, release_id: str) -> List[StoredDocument]:
        def query():
            return (
                self.client.table(DOCUMENTS_TABLE)
                .select("*")
                .eq("release_id", release_id)
                .order("announcement_date")
                .execute()
            )

        response = await self._run(query)
        return [StoredDocument.model_validate(row) for row in response.data or []]

    async def count_documents_for_release(self, release_id: str) -> int:
        def query():
            return (
                self.client.table(DOCUMENTS_TABLE)
                .select("id", count="exact")
                .eq("release_id", release_id)
                .limit(1)
                .execute()
            )

        response = await self._run(query)
        if response.count is not None:
            return response.count
        return len(response.data or [])

    # Releases
    async def find_release(
        self,
        release_kind: ReleaseKind,
        ticker: str,
        fiscal_year: str,
        fiscal_quarter: Optional[int],
    ) -> Optional[Release]:
        def query():
            builder = (
                self.client.table(RELEASES_TABLE)
                .select("*")
                .eq("release_kind", release_kind.value)
                .eq("ticker", ticker)
                .eq("fiscal_year", fiscal_year)
            )
            if fiscal_quarter is None:
                builder = builder.is_("fiscal_quarter", "null")
            else:
                builder = builder.eq("fiscal_quarter", fiscal_quarter)
            return builder.limit(1).execute()

        response = await self._run(query)
        return Release.model_validate(response.data[0]) if response.data else None

    async def insert_release(
        self,
        release_kind: ReleaseKind,
        ticker: str,
        fiscal_year: str,
        fiscal_quarter: Optional[int],
    ) -> Optional[Release]:
        """Insert a release; None when another writer created the same key first."""
        payload = {
            "release_kind": release_kind.value,
            "ticker": ticker,
            "fiscal_year": fiscal_year,
            "fiscal_quarter": fiscal_quarter,
        }

        def query():
            return self.client.table(RELEASES_TABLE).insert(payload).execute()

        try:
            response = await self._run(query)
        except Exception as exc:
            if is_unique_violation_error(exc):
                return None
            raise
        return Release.model_validate(response.data[0])

    async def get_release(self, release_id: str) -> Optional[Release]:
        def query():
            return (
                self.client.table(RELEASES_TABLE)
                .select("*")
                .eq("id", release_id)
                .limit(1)
                .execute()
            )

        response = await self._run(query)
        return Release.model_validate(response.data[0]) if response.data else None

    async def list_releases_by_ticker(self, ticker: str) -> List[Release]:
        def query():
            return (
                self.client.table(RELEASES_TABLE)
                .select("*")
                .eq("ticker", ticker)
                .order("fiscal_year", desc=True)
                .order("fiscal_quarter", desc=True)
                .execute()
            )

        response = await self._run(query)
        return [Release.model_validate(row) for row in response.data or []]

    async def update_release_summary(self, release_id: str, summary: EarningsSummary) -> None:
        payload = {
            "summary": summary.model_dump(mode="json", by_alias=True),
            "highlights": summary.highlights,
            "lowlights": summary.lowlights,
            "updated_at": _utcnow(),
        }

        def query():
            return self.client.table(RELEASES_TABLE).update(payload).eq("id", release_id).execute()

        await self._run(query)

    async def lower_release_announcement_date(self, release_id: str, announced: date) -> None:
        """Set the announcement date only when it moves earlier (or was unset)."""
        value = announced.isoformat()

        def query():
            return (
                self.client.table(RELEASES_TABLE)
                .update({"announcement_date": value})
                .eq("id", release_id)
                .or_(f"announcement_date.is.null,announcement_date.gt.{value}")
                .execute()
            )

        await self._run(query)

    # Subscribers
    async def list_watched_tickers(self) -> List[str]:
        def query():
            return self.client.table(WATCHLIST_TABLE).select("ticker").execute()

        response = await self._run(query)
        return sorted({row["ticker"] for row in response.data or []})

    async def list_subscribers_for_ticker(self, ticker: str) -> List[Subscriber]:
        def query():
            return (
                self.client.table(WATCHLIST_TABLE)
                .select("id,user_id,ticker,stock_name,custom_prompt")
                .eq("ticker", ticker)
                .execute()
            )

        response = await self._run(query)
        return [Subscriber.model_validate(row) for row in response.data or []]

    async def get_subscriber(self, watchlist_id: str) -> Optional[Subscriber]:
        def query():
            return (
                self.client.table(WATCHLIST_TABLE)
                .select("id,user_id,ticker,stock_name,custom_prompt")
                .eq("id", watchlist_id)
                .limit(1)
                .execute()
            )

        response = await self._run(query)
        return Subscriber.model_validate(response.data[0]) if response.data else None

    # Per-subscriber analyses
    async def get_user_analysis(self, user_id: str, release_id: str) -> Optional[UserAnalysis]:
        def query():
            return (
                self.client.table(USER_ANALYSES_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .eq("release_id", release_id)
                .limit(1)
                .execute()
            )

        response = await self._run(query)
        return UserAnalysis.model_validate(response.data[0]) if response.data else None

    async def list_analyzed_user_ids(self, release_id: str) -> Set[str]:
        def query():
            return (
                self.client.table(USER_ANALYSES_TABLE)
                .select("user_id")
                .eq("release_id", release_id)
                .execute()
            )

        response = await self._run(query)
        return {row["user_id"] for row in response.data or []}

    async def create_user_analysis(
        self,
        user_id: str,
        release_id: str,
        custom_analysis: Optional[CustomAnalysis],
        custom_prompt: Optional[str],
    ) -> bool:
        """Create the (user, release) row; False when it already exists."""
        payload = {
            "user_id": user_id,
            "release_id": release_id,
            "custom_analysis": custom_analysis.model_dump(mode="json") if custom_analysis else None,
            "custom_prompt_used": custom_prompt if custom_analysis else None,
        }

        def query():
            return self.client.table(USER_ANALYSES_TABLE).insert(payload).execute()

        try:
            await self._run(query)
        except Exception as exc:
            if is_unique_violation_error(exc):
                return False
            raise
        return True

    async def save_user_analysis(
        self,
        user_id: str,
        release_id: str,
        custom_analysis: CustomAnalysis,
        custom_prompt: str,
    ) -> None:
        """Write the current analysis for a (user, release) pair, creating the row if needed."""
        payload = {
            "user_id": user_id,
            "release_id": release_id,
            "custom_analysis": custom_analysis.model_dump(mode="json"),
            "custom_prompt_used": custom_prompt,
            "updated_at": _utcnow(),
        }

        def query():
            return (
                self.client.table(USER_ANALYSES_TABLE)
                .upsert(payload, on_conflict="user_id,release_id")
                .execute()
            )

        await self._run(query)

    async def mark_notified(self, user_ids: Iterable[str], release_id: str) -> None:
        ids = list(user_ids)
        if not ids:
            return

        def query():
            return (
                self.client.table(USER_ANALYSES_TABLE)
                .update({"notified_at": _utcnow()})
                .eq("release_id", release_id)
                .in_("user_id", ids)
                .execute()
            )

        await self._run(query)

    async def append_history(self, entry: AnalysisHistoryEntry) -> None:
        payload = entry.model_dump(mode="json", exclude={"created_at"})

        def query():
            return self.client.table(HISTORY_TABLE).insert(payload).execute()

        await self._run(query)

    async def find_history_analysis(
        self, user_id: str, release_id: str, custom_prompt: str
    ) -> Optional[CustomAnalysis]:
        """Most recent archived analysis produced under exactly ``custom_prompt``."""
        def query():
            return (
                self.client.table(HISTORY_TABLE)
                .select("analysis")
                .eq("user_id", user_id)
                .eq("release_id", release_id)
                .eq("custom_prompt", custom_prompt)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )

        response = await self._run(query)
        if not response.data:
            return None
        return CustomAnalysis.model_validate(response.data[0]["analysis"])
