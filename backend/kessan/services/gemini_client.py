"""Gemini AI client for classifying and summarizing disclosure documents."""
import base64
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

from kessan.config import get_settings
from kessan.models.schemas import CustomAnalysis, EarningsSummary
from kessan.services.gemini_exceptions import (
    GeminiRateLimitError,
    GeminiAPIError,
    GeminiTimeoutError,
    GeminiResponseFormatError,
)

logger = logging.getLogger(__name__)

# Retry configuration constants
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_WAIT = 1  # seconds
DEFAULT_MAX_WAIT = 60  # seconds
DEFAULT_EXPONENTIAL_MULTIPLIER = 2

API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

JSON_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

ModelT = TypeVar("ModelT", bound=BaseModel)

SUMMARY_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "overview": {"type": "STRING"},
        "highlights": {"type": "ARRAY", "items": {"type": "STRING"}},
        "lowlights": {"type": "ARRAY", "items": {"type": "STRING"}},
        "keyMetrics": {
            "type": "OBJECT",
            "properties": {
                "revenue": {"type": "STRING"},
                "operatingIncome": {"type": "STRING"},
                "netIncome": {"type": "STRING"},
                "yoyGrowth": {"type": "STRING"},
            },
            "required": ["revenue", "operatingIncome", "netIncome", "yoyGrowth"],
        },
    },
    "required": ["overview", "highlights", "lowlights", "keyMetrics"],
}

CUSTOM_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "overview": {"type": "STRING"},
        "highlights": {"type": "ARRAY", "items": {"type": "STRING"}},
        "lowlights": {"type": "ARRAY", "items": {"type": "STRING"}},
        "analysis": {"type": "STRING"},
    },
    "required": ["overview", "highlights", "lowlights", "analysis"],
}

SUMMARY_PROMPT = """あなたは日本株の決算分析の専門家です。
添付された開示資料（決算短信・決算説明資料・中期経営計画など）を分析し、以下の情報をJSON形式で抽出してください。

出力JSON形式:
{
  "overview": "決算の総評（200文字程度）",
  "highlights": ["良かった点を1つずつリスト（3-5項目）"],
  "lowlights": ["懸念事項を1つずつリスト（3-5項目）"],
  "keyMetrics": {
    "revenue": "売上高（単位付き）",
    "operatingIncome": "営業利益（単位付き）",
    "netIncome": "純利益（単位付き）",
    "yoyGrowth": "前年同期比成長率"
  }
}

資料に記載のない指標は "-" としてください。JSON形式のみを出力してください。"""

CUSTOM_PROMPT_TEMPLATE = """あなたは日本株の決算分析の専門家です。
添付された開示資料を、投資家が指定した以下の観点で分析してください。

分析観点:
{custom_prompt}

出力JSON形式:
{{
  "overview": "観点に沿った総評（200文字程度）",
  "highlights": ["観点から見た良かった点（3-5項目）"],
  "lowlights": ["観点から見た懸念事項（3-5項目）"],
  "analysis": "具体的な数字を引用した詳細な分析"
}}

日本語で回答し、JSON形式のみを出力してください。"""


def pdf_part(pdf_bytes: bytes) -> Dict[str, Any]:
    """Build an inline PDF content part for generateContent."""
    return {
        "inlineData": {
            "mimeType": "application/pdf",
            "data": base64.b64encode(pdf_bytes).decode("ascii"),
        }
    }


def text_part(text: str) -> Dict[str, Any]:
    return {"text": text}


def parse_json_response(response_text: str, model_cls: Type[ModelT]) -> ModelT:
    """
    Parse model output into ``model_cls``.

    Accepts bare JSON or JSON wrapped in a markdown code fence.

    Raises:
        GeminiResponseFormatError: When the text is not JSON or fails validation
    """
    text = response_text.strip()
    fenced = JSON_FENCE_PATTERN.search(text)
    if fenced:
        text = fenced.group(1)

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise GeminiResponseFormatError(
            f"Gemini returned non-JSON output: {exc}", raw_text=response_text[:500]
        ) from exc

    try:
        return model_cls.model_validate(payload)
    except ValidationError as exc:
        raise GeminiResponseFormatError(
            f"Gemini output does not match {model_cls.__name__}: {exc.error_count()} error(s)",
            raw_text=response_text[:500],
        ) from exc


class GeminiClient:
    """Client for interacting with Gemini AI over the REST API."""

    def __init__(
        self,
        model_name: str = "gemini-2.5-flash",
        classifier_model_name: Optional[str] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_wait: int = DEFAULT_INITIAL_WAIT,
        max_wait: int = DEFAULT_MAX_WAIT,
        request_timeout: int = 180,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Gemini client.

        Args:
            model_name: Name of the Gemini model used for PDF summaries
            classifier_model_name: Model used for title classification (defaults to model_name)
            max_retries: Maximum number of attempts for transient failures
            initial_wait: Initial wait time in seconds before first retry
            max_wait: Maximum wait time in seconds between retries
            request_timeout: Seconds allowed per API call
            api_key: Overrides the configured API key
            transport: Optional httpx transport (used by tests)
        """
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model_name = model_name
        self.classifier_model_name = classifier_model_name or model_name
        self.request_timeout = request_timeout
        self._transport = transport
        self.base_generation_config = {
            "maxOutputTokens": 8192,
            "temperature": 0.3,
            "responseMimeType": "application/json",
        }

        # Retry configuration
        self.max_retries = max_retries
        self.initial_wait = initial_wait
        self.max_wait = max_wait

    @staticmethod
    def _resolve_model_path(model_name: str) -> str:
        return model_name if model_name.startswith("models/") else f"models/{model_name}"

    async def _http_generate_content(
        self,
        parts: List[Dict[str, Any]],
        response_schema: Optional[Dict[str, Any]],
        model_name: str,
    ) -> str:
        """
        Call generateContent once and return the concatenated text of the first candidate.

        Raises:
            GeminiRateLimitError: When API returns 429 (rate limit exceeded)
            GeminiAPIError: When API returns other 4xx/5xx errors
            GeminiTimeoutError: When request times out
        """
        generation_config = dict(self.base_generation_config)
        if response_schema is not None:
            generation_config["responseSchema"] = response_schema
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        url = f"{API_BASE_URL}/{self._resolve_model_path(model_name)}:generateContent"

        try:
            async with httpx.AsyncClient(
                timeout=self.request_timeout + 5, transport=self._transport
            ) as client:
                response = await client.post(url, params={"key": self.api_key}, json=payload)

                if response.status_code == 429:
                    retry_after = response.headers.get("Retry-After")
                    retry_seconds = int(retry_after) if retry_after and retry_after.isdigit() else None

                    error_msg = "Gemini API rate limit exceeded."
                    if retry_seconds:
                        error_msg += f" Retry after {retry_seconds} seconds."

                    raise GeminiRateLimitError(error_msg, retry_after=retry_seconds)

                if response.status_code >= 400:
                    raise GeminiAPIError(
                        f"Gemini API error: {response.status_code}",
                        status_code=response.status_code,
                        response_body=response.text[:500],
                    )

                data = response.json()

        except httpx.TimeoutException as timeout_exc:
            raise GeminiTimeoutError(
                f"Gemini API request timed out after {self.request_timeout}s"
            ) from timeout_exc

        except (GeminiRateLimitError, GeminiAPIError, GeminiTimeoutError):
            raise

        except httpx.HTTPError as http_exc:
            raise GeminiAPIError(
                f"Gemini transport error: {http_exc}",
                status_code=503,
                response_body=None,
            ) from http_exc

        except ValueError as decode_exc:
            raise GeminiAPIError(
                "Gemini API returned a non-JSON envelope",
                status_code=502,
                response_body=None,
            ) from decode_exc

        text_response = ""
        for candidate in data.get("candidates") or []:
            content = candidate.get("content") or {}
            parts_out = content.get("parts") or []
            texts = [part.get("text") for part in parts_out if isinstance(part, dict) and part.get("text")]
            if texts:
                text_response = "".join(texts)
                break

        if not text_response:
            raise GeminiAPIError(
                "Gemini API returned no text content",
                status_code=500,
                response_body=str(data)[:500],
            )

        return text_response

    async def _http_generate_content_with_retry(
        self,
        parts: List[Dict[str, Any]],
        response_schema: Optional[Dict[str, Any]],
        model_name: str,
    ) -> str:
        """
        Wrapper around _http_generate_content with exponential backoff retry logic.

        Retries on rate limits, timeouts and 5xx responses. Client errors and
        malformed output are raised immediately.
        """

        def _should_retry(exc: BaseException) -> bool:
            if isinstance(exc, (GeminiRateLimitError, GeminiTimeoutError)):
                return True
            if isinstance(exc, GeminiAPIError) and exc.status_code and exc.status_code >= 500:
                return True
            return False

        @retry(
            retry=retry_if_exception(_should_retry),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=DEFAULT_EXPONENTIAL_MULTIPLIER,
                min=self.initial_wait,
                max=self.max_wait
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        async def _retry_wrapper() -> str:
            return await self._http_generate_content(parts, response_schema, model_name)

        return await _retry_wrapper()

    async def generate_json(
        self,
        parts: List[Dict[str, Any]],
        response_schema: Dict[str, Any],
        model_cls: Type[ModelT],
        model_name: Optional[str] = None,
    ) -> ModelT:
        """Run a structured-output call and validate the answer into ``model_cls``."""
        response_text = await self._http_generate_content_with_retry(
            parts, response_schema, model_name or self.model_name
        )
        return parse_json_response(response_text, model_cls)

    async def summarize_pdfs(self, pdfs: Sequence[bytes]) -> EarningsSummary:
        """Summarize one or more disclosure PDFs into an EarningsSummary."""
        if not pdfs:
            raise ValueError("summarize_pdfs requires at least one PDF")
        parts = [pdf_part(pdf) for pdf in pdfs]
        parts.append(text_part(SUMMARY_PROMPT))
        return await self.generate_json(parts, SUMMARY_RESPONSE_SCHEMA, EarningsSummary)

    async def summarize_custom(self, pdfs: Sequence[bytes], custom_prompt: str) -> CustomAnalysis:
        """Analyze PDFs from the angle of a subscriber's custom prompt."""
        if not pdfs:
            raise ValueError("summarize_custom requires at least one PDF")
        parts = [pdf_part(pdf) for pdf in pdfs]
        parts.append(text_part(CUSTOM_PROMPT_TEMPLATE.format(custom_prompt=custom_prompt)))
        return await self.generate_json(parts, CUSTOM_RESPONSE_SCHEMA, CustomAnalysis)


def get_gemini_client() -> GeminiClient:
    """Get Gemini client instance with settings from config."""
    settings = get_settings()

    return GeminiClient(
        model_name=settings.gemini_model,
        classifier_model_name=settings.gemini_classifier_model,
        max_retries=settings.gemini_max_retries,
        initial_wait=settings.gemini_initial_wait,
        max_wait=settings.gemini_max_wait,
        request_timeout=settings.gemini_request_timeout,
    )
