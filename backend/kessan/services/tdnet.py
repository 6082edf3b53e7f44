"""TDnet timely-disclosure listing client (yanoshin web API)."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from kessan.config import get_settings
from kessan.models.schemas import SourceDocument
from kessan.services.source_exceptions import SourceClientError

logger = logging.getLogger(__name__)

SOURCE_NAME = "tdnet"


def _parse_pubdate(value: str) -> datetime:
    # "2025-11-05 14:25:00"
    return datetime.strptime(value.strip(), "%Y-%m-%d %H:%M:%S")


def _parse_item(item: Dict[str, Any]) -> Optional[SourceDocument]:
    row = item.get("Tdnet") or {}
    try:
        return SourceDocument(
            id=str(row["id"]),
            title=row["title"],
            published_at=_parse_pubdate(row["pubdate"]).date(),
            doc_url=row["document_url"],
            company_code=row.get("company_code"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Skipping malformed TDnet item %s: %s", row.get("id"), exc)
        return None


class TdnetClient:
    """Reads disclosure listings from the TDnet mirror API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.tdnet_base_url).rstrip("/")
        self.timeout = timeout or settings.http_timeout
        self.ticker_limit = settings.tdnet_ticker_limit
        self.recent_limit = settings.tdnet_recent_limit
        self._transport = transport

    async def _get_listing(self, path: str, limit: int) -> List[SourceDocument]:
        url = f"{self.base_url}/{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params={"limit": limit})
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
            raise SourceClientError(
                f"TDnet request failed for {path}: {exc}", SOURCE_NAME, status_code=status
            ) from exc
        except ValueError as exc:
            raise SourceClientError(f"TDnet returned invalid JSON for {path}", SOURCE_NAME) from exc

        documents = []
        for item in data.get("items") or []:
            document = _parse_item(item)
            if document is not None:
                documents.append(document)
        return documents

    async def list_by_ticker(self, ticker: str, limit: Optional[int] = None) -> List[SourceDocument]:
        """List disclosures for one company. TDnet keys companies by the 4-digit code."""
        code = ticker[:4]
        return await self._get_listing(f"{code}.json", limit or self.ticker_limit)

    async def list_recent(self, limit: Optional[int] = None) -> List[SourceDocument]:
        """List the latest disclosures across all companies."""
        return await self._get_listing("recent.json", limit or self.recent_limit)
