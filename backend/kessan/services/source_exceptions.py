"""Custom exceptions for disclosure source clients."""
from typing import Optional


class SourceClientError(Exception):
    """Base exception for disclosure feed failures."""

    def __init__(self, message: str, source_name: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.source_name = source_name
        self.status_code = status_code
