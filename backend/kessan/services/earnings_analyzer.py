"""Release analysis: PDF selection, truncation and degrading summarize calls."""
import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel

from kessan.config import get_settings
from kessan.models.schemas import DocumentType, EarningsSummary, StoredDocument
from kessan.services.gemini_client import GeminiClient
from kessan.services.gemini_exceptions import GeminiClientError
from kessan.services.pdf_parser import truncate_pdf

logger = logging.getLogger(__name__)


class SelectedPdf(BaseModel):
    document_id: str
    document_type: DocumentType
    data: bytes

    def describe(self) -> str:
        return f"{self.document_type.value}({len(self.data) // 1024}KB)"


def prioritize_documents(documents: Sequence[StoredDocument]) -> List[StoredDocument]:
    """
    Order documents for the model and keep one per document type.

    Summaries come first, then presentations, then plan-type material.
    Within a type the earliest stored document wins.
    """
    ranked = [doc for doc in documents if doc.document_type.analysis_priority is not None]
    ranked.sort(key=lambda doc: doc.document_type.analysis_priority)

    chosen: List[StoredDocument] = []
    used_types = set()
    for doc in ranked:
        if doc.document_type in used_types:
            logger.debug("Skipping duplicate document type: %s", doc.document_type.value)
            continue
        used_types.add(doc.document_type)
        chosen.append(doc)
    return chosen


def degradation_plan(pdfs: Sequence[SelectedPdf]) -> List[Tuple[str, List[SelectedPdf]]]:
    """All documents together first, then each document on its own."""
    plan = [("all", list(pdfs))]
    if len(pdfs) > 1:
        plan.extend((f"single:{pdf.document_type.value}", [pdf]) for pdf in pdfs)
    return plan


class EarningsAnalyzer:
    """Produces and persists the structured summary of a release."""

    def __init__(
        self,
        repository,
        blob_store,
        client: GeminiClient,
        max_pdfs: Optional[int] = None,
        max_pages: Optional[int] = None,
        max_bytes: Optional[int] = None,
    ):
        settings = get_settings()
        self.repository = repository
        self.blob_store = blob_store
        self.client = client
        self.max_pdfs = max_pdfs or settings.max_pdfs_per_analysis
        self.max_pages = max_pages or settings.max_pdf_pages
        self.max_bytes = max_bytes or settings.max_pdf_bytes

    async def select_pdfs(self, release_id: str) -> List[SelectedPdf]:
        """
        Load the bounded, prioritized PDF set for a release.

        Missing blobs are skipped, long PDFs are cut to the page limit, and
        anything still over the byte ceiling is left out.
        """
        documents = await self.repository.list_documents_for_release(release_id)
        selected: List[SelectedPdf] = []
        for doc in prioritize_documents(documents):
            if len(selected) >= self.max_pdfs:
                break

            data = await self.blob_store.get(doc.blob_key)
            if data is None:
                logger.warning("PDF missing from store: %s", doc.blob_key)
                continue

            data = await asyncio.to_thread(truncate_pdf, data, self.max_pages)
            if len(data) > self.max_bytes:
                logger.info(
                    "Skipping large PDF (%.1fMB): %s",
                    len(data) / 1024 / 1024, doc.document_type.value,
                )
                continue

            selected.append(SelectedPdf(document_id=doc.id, document_type=doc.document_type, data=data))
        return selected

    async def summarize(self, release_id: str, pdfs: Sequence[SelectedPdf]) -> Optional[EarningsSummary]:
        """Try each degradation step in order; persist the first success."""
        for step_name, step_pdfs in degradation_plan(pdfs):
            try:
                summary = await self.client.summarize_pdfs([pdf.data for pdf in step_pdfs])
            except GeminiClientError as exc:
                logger.warning(
                    "Summarize step %s failed for release %s: %s", step_name, release_id, exc
                )
                continue

            await self.repository.update_release_summary(release_id, summary)
            logger.info("Release %s summarized using %s", release_id, step_name)
            return summary

        logger.error("All PDF analysis attempts failed for release %s", release_id)
        return None

    async def analyze(
        self, release_id: str, pdfs: Optional[Sequence[SelectedPdf]] = None
    ) -> Optional[EarningsSummary]:
        """
        Summarize a release from its stored documents.

        Returns None when the release has no usable PDFs or every attempt
        failed; the release is left unchanged in both cases.
        """
        if pdfs is None:
            pdfs = await self.select_pdfs(release_id)
        if not pdfs:
            logger.info("No PDFs available for release %s", release_id)
            return None

        logger.info(
            "Analyzing %d PDFs for release %s: [%s]",
            len(pdfs), release_id, ", ".join(pdf.describe() for pdf in pdfs),
        )
        return await self.summarize(release_id, pdfs)
