"""Candidate aggregation across disclosure sources."""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from kessan.models.schemas import DocumentCandidate, SourceDocument
from kessan.services import irbank, tdnet
from kessan.services.irbank import IrbankClient
from kessan.services.fiscal_period import normalize_title
from kessan.services.tdnet import TdnetClient

logger = logging.getLogger(__name__)

# Title keywords for disclosures worth classifying. Everything else
# (dividend forecasts, personnel changes, share buybacks ...) is dropped
# before any model call.
RELEVANT_TITLE_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "summary": ("決算短信",),
    "presentation": (
        "決算説明",
        "決算報告プレゼンテーション",
        "決算補足",
        "説明会資料",
        "プレゼンテーション資料",
        "決算資料",
    ),
    "mid_term_plan": (
        "中期経営計画",
        "中期経営方針",
        "経営計画",
        "事業計画",
        "長期ビジョン",
        "成長戦略",
        "成長可能性",
    ),
    "strategy": (
        "事業戦略",
        "経営戦略",
        "事業説明",
        "事業方針",
        "資本政策",
        "株主還元",
        "IR説明",
        "IRプレゼンテーション",
        "事業ポートフォリオ",
    ),
}


def relevant_category(title: str) -> Optional[str]:
    """Return the keyword group a title falls into, or None."""
    text = normalize_title(title)
    for category, keywords in RELEVANT_TITLE_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            return category
    return None


def is_relevant_title(title: str) -> bool:
    return relevant_category(title) is not None


def default_sources() -> List[Tuple[str, object]]:
    """Sources in priority order: TDnet first, IRBANK as a supplement."""
    return [
        (tdnet.SOURCE_NAME, TdnetClient()),
        (irbank.SOURCE_NAME, IrbankClient()),
    ]


def merge_candidates(
    listings: Iterable[Tuple[str, Sequence[SourceDocument]]],
) -> List[DocumentCandidate]:
    """
    Merge per-source listings in the given order.

    Titles failing the pre-filter are dropped; the first occurrence of a
    ``pdf_url`` wins.
    """
    candidates: List[DocumentCandidate] = []
    seen_urls = set()
    for source_name, documents in listings:
        added = 0
        for document in documents:
            if not is_relevant_title(document.title):
                continue
            if document.doc_url in seen_urls:
                continue
            seen_urls.add(document.doc_url)
            candidates.append(document.to_candidate(source_name))
            added += 1
        logger.info("%s: %d relevant documents", source_name, added)
    return candidates


async def gather_candidates(
    ticker: str,
    sources: Optional[Sequence[Tuple[str, object]]] = None,
) -> List[DocumentCandidate]:
    """
    Collect candidate documents for ``ticker`` from every source.

    Sources are queried concurrently. A failing source is logged and
    contributes nothing; the others are unaffected.
    """
    if sources is None:
        sources = default_sources()

    results = await asyncio.gather(
        *[client.list_by_ticker(ticker) for _, client in sources],
        return_exceptions=True,
    )

    listings: List[Tuple[str, Sequence[SourceDocument]]] = []
    for (source_name, _), result in zip(sources, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.error("%s fetch failed for %s: %s", source_name, ticker, result)
            listings.append((source_name, []))
            continue
        listings.append((source_name, result))

    candidates = merge_candidates(listings)
    logger.info("Total candidates for %s: %d", ticker, len(candidates))
    return candidates


def filter_recent_for_tickers(
    documents: Sequence[SourceDocument],
    tickers: Iterable[str],
    source_name: str = tdnet.SOURCE_NAME,
) -> Dict[str, List[DocumentCandidate]]:
    """
    Group a cross-company recent feed by watched ticker.

    Feed company codes carry a check digit (``72030``); tickers are matched
    on their first four characters.
    """
    by_code = {ticker[:4]: ticker for ticker in tickers}
    grouped: Dict[str, List[DocumentCandidate]] = {}
    seen_urls = set()
    for document in documents:
        code = (document.company_code or "")[:4]
        ticker = by_code.get(code)
        if ticker is None or not is_relevant_title(document.title):
            continue
        if document.doc_url in seen_urls:
            continue
        seen_urls.add(document.doc_url)
        grouped.setdefault(ticker, []).append(document.to_candidate(source_name))
    return grouped
