"""Tests for release get-or-create."""
import asyncio
from datetime import date

import pytest

from fakes import FakeRepository
from kessan.models.schemas import ClassifiedDocument, DocumentType, ReleaseKind
from kessan.services.release_resolver import ReleaseConflictError, ReleaseResolver


def _classified(document_type, fiscal_year="2025", fiscal_quarter=4, title="資料"):
    return ClassifiedDocument(
        pdf_url=f"https://example.com/{title}.pdf",
        title=title,
        published_at=date(2026, 5, 8),
        source_name="tdnet",
        document_type=document_type,
        fiscal_year=fiscal_year,
        fiscal_quarter=fiscal_quarter,
    )


class TestReleaseResolver:
    def test_summary_and_presentation_share_release(self):
        repository = FakeRepository()
        resolver = ReleaseResolver(repository)

        async def run():
            first, first_new = await resolver.resolve("7203", _classified(DocumentType.SUMMARY))
            second, second_new = await resolver.resolve("7203", _classified(DocumentType.PRESENTATION))
            return first, first_new, second, second_new

        first, first_new, second, second_new = asyncio.run(run())

        assert first.id == second.id
        assert first.release_kind is ReleaseKind.QUARTERLY_EARNINGS
        assert first_new and second_new
        assert len(repository.releases) == 1

    def test_concurrent_resolution_creates_one_release(self):
        repository = FakeRepository()
        resolver = ReleaseResolver(repository)

        async def run():
            return await asyncio.gather(
                *[resolver.get_or_create(ReleaseKind.QUARTERLY_EARNINGS, "7203", "2025", 2) for _ in range(5)]
            )

        releases = asyncio.run(run())

        assert len({release.id for release in releases}) == 1
        assert len(repository.releases) == 1

    def test_plan_releases_ignore_quarter(self):
        repository = FakeRepository()
        resolver = ReleaseResolver(repository)

        release, _ = asyncio.run(resolver.resolve("7203", _classified(DocumentType.MID_TERM_PLAN, fiscal_quarter=None)))
        again = asyncio.run(resolver.get_or_create(ReleaseKind.MID_TERM_PLAN, "7203", "2025", 4))

        assert release.fiscal_quarter is None
        assert again.id == release.id

    def test_release_with_documents_is_not_new(self):
        repository = FakeRepository()
        existing = repository.add_release("7203", "2025", 4)
        repository.add_document(existing, DocumentType.SUMMARY, "7203/a.pdf", "a")

        release, is_new = asyncio.run(ReleaseResolver(repository).resolve("7203", _classified(DocumentType.PRESENTATION)))

        assert release.id == existing.id
        assert not is_new

    def test_unreadable_winner_raises_conflict(self):
        class ConflictingRepository(FakeRepository):
            async def insert_release(self, *args):
                return None

        with pytest.raises(ReleaseConflictError):
            asyncio.run(ReleaseResolver(ConflictingRepository()).get_or_create(ReleaseKind.QUARTERLY_EARNINGS, "7203", "2025", 1))

    def test_other_documents_cannot_be_resolved(self):
        with pytest.raises(ValueError):
            asyncio.run(ReleaseResolver(FakeRepository()).resolve("7203", _classified(DocumentType.OTHER, None, None)))
