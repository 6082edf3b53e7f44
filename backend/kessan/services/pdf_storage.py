"""PDF download and content-addressed blob storage."""
import asyncio
import hashlib
import logging
from typing import Awaitable, Callable, Optional, Set

import httpx
from supabase import Client

from kessan.config import get_settings
from kessan.models.database import get_supabase_client
from kessan.models.schemas import FetchOutcome, FetchStatus

logger = logging.getLogger(__name__)

TDNET_REDIRECT_MARKER = "rd.php?"

UrlLookup = Callable[[str], Awaitable[Optional[str]]]


def content_hash(pdf_bytes: bytes) -> str:
    """MD5 hex digest used as the document's content identity."""
    return hashlib.md5(pdf_bytes).hexdigest()


def blob_key(ticker: str, digest: str) -> str:
    return f"{ticker}/{digest}.pdf"


def resolve_download_url(url: str) -> str:
    """TDnet mirror links wrap the real URL behind ``rd.php?``."""
    if TDNET_REDIRECT_MARKER in url:
        return url.split(TDNET_REDIRECT_MARKER, 1)[1]
    return url


class SupabaseBlobStore:
    """Stores PDFs in a Supabase Storage bucket."""

    def __init__(self, client: Optional[Client] = None, bucket: Optional[str] = None):
        self.client = client or get_supabase_client()
        self.bucket = bucket or get_settings().pdf_bucket

    async def put(self, key: str, data: bytes) -> None:
        def upload():
            return self.client.storage.from_(self.bucket).upload(
                key,
                data,
                {"content-type": "application/pdf", "upsert": "true"},
            )

        await asyncio.to_thread(upload)

    async def get(self, key: str) -> Optional[bytes]:
        def download():
            return self.client.storage.from_(self.bucket).download(key)

        try:
            return await asyncio.to_thread(download)
        except Exception as exc:
            # storage3 raises StorageException for missing objects
            logger.warning("Blob %s unavailable: %s", key, exc)
            return None


class PdfFetcher:
    """Downloads PDFs and writes new content to the blob store."""

    def __init__(
        self,
        blob_store,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.blob_store = blob_store
        self.timeout = timeout or settings.http_timeout
        self.headers = {"User-Agent": settings.http_user_agent}
        self._transport = transport

    async def fetch_pdf(self, url: str) -> Optional[bytes]:
        """Download ``url``; None unless the response is a successful PDF."""
        actual_url = resolve_download_url(url)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(actual_url)
        except httpx.HTTPError as exc:
            logger.warning("PDF fetch error for %s: %s", actual_url, exc)
            return None

        if response.status_code >= 400:
            logger.warning("PDF fetch failed (%s): %s", response.status_code, actual_url)
            return None

        content_type = response.headers.get("content-type", "")
        if "pdf" not in content_type.lower():
            logger.warning("Not a PDF response (%s): %s", content_type, actual_url)
            return None

        logger.info("PDF fetched: %d bytes from %s", len(response.content), actual_url)
        return response.content

    async def fetch_and_store(
        self,
        url: str,
        ticker: str,
        known_hashes: Set[str],
        url_lookup: UrlLookup,
    ) -> FetchOutcome:
        """
        Fetch a PDF and store it unless its URL or content is already known.

        ``known_hashes`` is the per-run set of content hashes for ``ticker``;
        a newly stored hash is added to it.
        """
        existing_id = await url_lookup(url)
        if existing_id:
            return FetchOutcome(status=FetchStatus.EXISTING, existing_document_id=existing_id)

        pdf_bytes = await self.fetch_pdf(url)
        if pdf_bytes is None:
            return FetchOutcome(status=FetchStatus.FAILED, error=f"could not fetch PDF from {url}")

        digest = content_hash(pdf_bytes)
        key = blob_key(ticker, digest)
        if digest in known_hashes:
            logger.info("Same content from different URL (hash: %s)", digest)
            return FetchOutcome(
                status=FetchStatus.EXISTING,
                content_hash=digest,
                blob_key=key,
                file_size=len(pdf_bytes),
            )

        try:
            await self.blob_store.put(key, pdf_bytes)
        except Exception as exc:
            logger.error("Blob store write failed for %s: %s", key, exc)
            return FetchOutcome(status=FetchStatus.FAILED, content_hash=digest, error=str(exc))

        known_hashes.add(digest)
        logger.info("PDF stored: %s (%d bytes)", key, len(pdf_bytes))
        return FetchOutcome(
            status=FetchStatus.STORED,
            content_hash=digest,
            blob_key=key,
            file_size=len(pdf_bytes),
        )
