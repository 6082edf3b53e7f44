"""IRBANK scraper for historical IR documents."""
import asyncio
import logging
import re
from datetime import date
from typing import List, Optional

import httpx
from bs4 import BeautifulSoup

from kessan.config import get_settings
from kessan.models.schemas import SourceDocument
from kessan.services.source_exceptions import SourceClientError

logger = logging.getLogger(__name__)

SOURCE_NAME = "irbank"

PDF_URL_PATTERN = re.compile(r"^https://f\.irbank\.net/pdf/(\d{8})/(\d+)\.pdf$")
# Trailing "（2025/11/07 15:30提出）" on page titles
TITLE_DATE_SUFFIX_PATTERN = re.compile(r"（\d{4}/\d{2}/\d{2}[^）]*）$")


def parse_document_ids(html: str, code: str) -> List[str]:
    """Document ids linked from a company's /ir page, first occurrence order."""
    soup = BeautifulSoup(html, "html.parser")
    link_pattern = re.compile(rf"^/{re.escape(code)}/(\d+)$")
    seen = []
    for link in soup.find_all("a", href=link_pattern):
        doc_id = link_pattern.match(link["href"]).group(1)
        if doc_id not in seen:
            seen.append(doc_id)
    return seen


def _page_title(soup: BeautifulSoup) -> str:
    if soup.title is None or not soup.title.string:
        return ""
    full_title = soup.title.string.strip()
    if " | " in full_title:
        title = full_title.split(" | ", 1)[1]
        return TITLE_DATE_SUFFIX_PATTERN.sub("", title).strip()
    return full_title.split(" - ")[0].strip()


def parse_page_title(html: str) -> str:
    """
    Extract the document title from an IRBANK page.

    Page titles look like ``4385 メルカリ | FY2026.6 1Q決算説明資料（2025/11/07 15:30提出）``.
    """
    return _page_title(BeautifulSoup(html, "html.parser"))


def parse_document_page(html: str, code: str, document_id: str) -> Optional[SourceDocument]:
    soup = BeautifulSoup(html, "html.parser")
    pdf_link = soup.find("a", href=PDF_URL_PATTERN)
    if pdf_link is None:
        return None

    pdf_url = pdf_link["href"]
    raw_date = PDF_URL_PATTERN.match(pdf_url).group(1)
    try:
        published_at = date(int(raw_date[:4]), int(raw_date[4:6]), int(raw_date[6:8]))
    except ValueError:
        return None

    return SourceDocument(
        id=document_id,
        title=_page_title(soup),
        published_at=published_at,
        doc_url=pdf_url,
        company_code=code,
    )


class IrbankClient:
    """Scrapes IRBANK document pages for a company's past disclosures."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        request_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.irbank_base_url).rstrip("/")
        self.timeout = timeout or settings.http_timeout
        self.request_delay = settings.irbank_request_delay if request_delay is None else request_delay
        self.limit = settings.irbank_limit
        self.headers = {"User-Agent": settings.http_user_agent}
        self._transport = transport

    async def list_by_ticker(self, ticker: str, limit: Optional[int] = None) -> List[SourceDocument]:
        code = ticker[:4]
        limit = limit or self.limit

        async with httpx.AsyncClient(
            timeout=self.timeout, headers=self.headers, transport=self._transport
        ) as client:
            try:
                response = await client.get(f"{self.base_url}/{code}/ir")
                response.raise_for_status()
            except httpx.HTTPError as exc:
                status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
                raise SourceClientError(
                    f"IRBANK listing failed for {code}: {exc}", SOURCE_NAME, status_code=status
                ) from exc

            documents: List[SourceDocument] = []
            for document_id in parse_document_ids(response.text, code)[:limit]:
                document = await self._get_document(client, code, document_id)
                if document is not None:
                    documents.append(document)
                if self.request_delay:
                    await asyncio.sleep(self.request_delay)

        logger.info("IRBANK: %d documents with PDFs for %s", len(documents), code)
        return documents

    async def _get_document(
        self, client: httpx.AsyncClient, code: str, document_id: str
    ) -> Optional[SourceDocument]:
        try:
            response = await client.get(f"{self.base_url}/{code}/{document_id}")
        except httpx.HTTPError as exc:
            logger.warning("IRBANK page %s/%s unreachable: %s", code, document_id, exc)
            return None
        if response.status_code >= 400:
            return None
        return parse_document_page(response.text, code, document_id)

    async def list_recent(self, limit: Optional[int] = None) -> List[SourceDocument]:
        """IRBANK has no cross-company recent feed."""
        return []
