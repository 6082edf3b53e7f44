"""Custom exceptions for Gemini API client."""
from typing import Optional


class GeminiClientError(Exception):
    """Base exception for all Gemini client errors."""
    pass


class GeminiRateLimitError(GeminiClientError):
    """Raised when Gemini API rate limit is exceeded (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class GeminiAPIError(GeminiClientError):
    """Raised for Gemini API errors (4xx/5xx excluding 429)."""

    def __init__(self, message: str, status_code: int, response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class GeminiTimeoutError(GeminiClientError):
    """Raised when Gemini API request times out."""
    pass


class GeminiResponseFormatError(GeminiClientError):
    """Raised when the model answers with text that does not match the requested JSON schema."""

    def __init__(self, message: str, raw_text: Optional[str] = None):
        """
        Initialize format error.

        Args:
            message: Error message
            raw_text: Leading part of the model output, kept for logging
        """
        super().__init__(message)
        self.raw_text = raw_text
