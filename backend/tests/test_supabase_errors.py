"""Tests for Supabase error classification."""
from kessan.utils.supabase_errors import is_unique_violation_error


class _ApiError(Exception):
    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


def test_detects_postgres_unique_code():
    assert is_unique_violation_error(_ApiError("conflict", code="23505"))


def test_detects_duplicate_key_message():
    error = Exception('duplicate key value violates unique constraint "earnings_documents_content_hash_key"')
    assert is_unique_violation_error(error)


def test_other_errors_are_not_unique_violations():
    assert not is_unique_violation_error(_ApiError("permission denied", code="42501"))
    assert not is_unique_violation_error(Exception())
