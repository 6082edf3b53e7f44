"""Maps classified documents onto idempotent release aggregates."""
import logging
from typing import Optional, Tuple

from kessan.models.schemas import ClassifiedDocument, Release, ReleaseKind

logger = logging.getLogger(__name__)


class ReleaseConflictError(Exception):
    """Raised when a release insert lost a race but the winner cannot be read back."""


class ReleaseResolver:
    """Get-or-create for releases keyed by (ticker, kind, fiscal year, fiscal quarter)."""

    def __init__(self, repository):
        self.repository = repository

    async def get_or_create(
        self,
        release_kind: ReleaseKind,
        ticker: str,
        fiscal_year: str,
        fiscal_quarter: Optional[int],
    ) -> Release:
        if not release_kind.is_periodic:
            fiscal_quarter = None

        release = await self.repository.find_release(release_kind, ticker, fiscal_year, fiscal_quarter)
        if release is not None:
            return release

        release = await self.repository.insert_release(release_kind, ticker, fiscal_year, fiscal_quarter)
        if release is not None:
            logger.info(
                "Created release %s %s FY%s Q%s", ticker, release_kind.value, fiscal_year, fiscal_quarter
            )
            return release

        # Lost the insert race; the unique key guarantees a winner exists.
        release = await self.repository.find_release(release_kind, ticker, fiscal_year, fiscal_quarter)
        if release is None:
            raise ReleaseConflictError(
                f"release {ticker}/{release_kind.value}/{fiscal_year}/{fiscal_quarter} "
                "conflicted on insert but could not be re-read"
            )
        return release

    async def resolve(self, ticker: str, document: ClassifiedDocument) -> Tuple[Release, bool]:
        """
        Find the release a classified document belongs to.

        Returns the release and whether it had no documents before this one.
        """
        release_kind = document.document_type.release_kind
        if release_kind is None:
            raise ValueError(f"document type {document.document_type.value} has no release kind")
        if document.fiscal_year is None:
            raise ValueError(f"document {document.title!r} has no fiscal year")

        release = await self.get_or_create(
            release_kind, ticker, document.fiscal_year, document.fiscal_quarter
        )
        is_new_release = await self.repository.count_documents_for_release(release.id) == 0
        return release, is_new_release
