"""Tests for PDF download, content addressing and truncation."""
import asyncio

import httpx

from fakes import FakeBlobStore, make_pdf, pdf_transport
from kessan.models.schemas import FetchStatus
from kessan.services.pdf_parser import count_pages, truncate_pdf
from kessan.services.pdf_storage import PdfFetcher, blob_key, content_hash, resolve_download_url

PDF_URL = "https://www.release.tdnet.info/inbs/140120260508500001.pdf"


async def _no_url(url):
    return None


def _fetcher(routes, calls=None, blob_store=None):
    return PdfFetcher(blob_store or FakeBlobStore(), timeout=5, transport=pdf_transport(routes, calls))


class TestContentAddressing:
    def test_blob_key_is_ticker_and_md5(self):
        digest = content_hash(b"%PDF-1.7 test")
        assert len(digest) == 32
        assert blob_key("7203", digest) == f"7203/{digest}.pdf"

    def test_resolve_download_url_unwraps_redirect(self):
        wrapped = "https://webapi.yanoshin.jp/rd.php?" + PDF_URL
        assert resolve_download_url(wrapped) == PDF_URL
        assert resolve_download_url(PDF_URL) == PDF_URL


class TestFetchAndStore:
    def test_new_pdf_is_stored(self):
        data = make_pdf(2)
        store = FakeBlobStore()
        known = set()

        outcome = asyncio.run(_fetcher({PDF_URL: data}, blob_store=store).fetch_and_store(PDF_URL, "7203", known, _no_url))

        assert outcome.status is FetchStatus.STORED
        assert outcome.blob_key == f"7203/{content_hash(data)}.pdf"
        assert outcome.file_size == len(data)
        assert store.objects[outcome.blob_key] == data
        assert known == {outcome.content_hash}

    def test_indexed_url_skips_download(self):
        calls = []

        async def lookup(url):
            return "doc-1"

        outcome = asyncio.run(_fetcher({PDF_URL: make_pdf()}, calls).fetch_and_store(PDF_URL, "7203", set(), lookup))

        assert outcome.status is FetchStatus.EXISTING
        assert outcome.existing_document_id == "doc-1"
        assert calls == []

    def test_known_content_from_new_url_is_not_stored_again(self):
        data = make_pdf()
        store = FakeBlobStore()
        mirror = "https://f.irbank.net/pdf/20260508/1.pdf"
        known = {content_hash(data)}

        outcome = asyncio.run(_fetcher({mirror: data}, blob_store=store).fetch_and_store(mirror, "7203", known, _no_url))

        assert outcome.status is FetchStatus.EXISTING
        assert outcome.content_hash == content_hash(data)
        assert outcome.existing_document_id is None
        assert store.puts == []

    def test_redirect_wrapper_downloads_inner_url(self):
        calls = []
        wrapped = "https://webapi.yanoshin.jp/rd.php?" + PDF_URL

        outcome = asyncio.run(_fetcher({PDF_URL: make_pdf()}, calls).fetch_and_store(wrapped, "7203", set(), _no_url))

        assert outcome.status is FetchStatus.STORED
        assert calls == [PDF_URL]

    def test_non_pdf_response_fails(self):
        html = httpx.Response(200, headers={"content-type": "text/html"}, text="<html>maintenance</html>")

        outcome = asyncio.run(_fetcher({PDF_URL: html}).fetch_and_store(PDF_URL, "7203", set(), _no_url))

        assert outcome.status is FetchStatus.FAILED

    def test_http_error_fails(self):
        outcome = asyncio.run(_fetcher({PDF_URL: 404}).fetch_and_store(PDF_URL, "7203", set(), _no_url))
        assert outcome.status is FetchStatus.FAILED

    def test_blob_store_failure_fails_without_remembering_hash(self):
        class BrokenStore(FakeBlobStore):
            async def put(self, key, data):
                raise RuntimeError("storage unavailable")

        known = set()
        outcome = asyncio.run(
            _fetcher({PDF_URL: make_pdf()}, blob_store=BrokenStore()).fetch_and_store(PDF_URL, "7203", known, _no_url)
        )

        assert outcome.status is FetchStatus.FAILED
        assert known == set()


class TestTruncation:
    def test_long_pdf_is_cut_to_page_limit(self):
        data = make_pdf(5)
        truncated = truncate_pdf(data, 3)
        assert count_pages(truncated) == 3

    def test_short_pdf_is_returned_unchanged(self):
        data = make_pdf(2)
        assert truncate_pdf(data, 3) is data

    def test_unparseable_bytes_are_returned_unchanged(self):
        data = b"not a pdf at all"
        assert truncate_pdf(data, 3) is data
