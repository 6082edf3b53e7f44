"""Model-assisted classification of disclosure titles."""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from kessan.config import get_settings
from kessan.models.schemas import ClassifiedDocument, DocumentCandidate, DocumentType
from kessan.services.concurrency import bounded_gather, chunked
from kessan.services.fiscal_period import (
    default_quarter,
    is_valid_fiscal_year,
    parse_fiscal_quarter,
    parse_fiscal_year,
)
from kessan.services.gemini_client import GeminiClient, get_gemini_client, text_part
from kessan.services.gemini_exceptions import GeminiClientError

logger = logging.getLogger(__name__)

CLASSIFIER_PROMPT = """あなたは日本の上場企業のIR資料を分類する専門家です。
与えられたドキュメントタイトルと発表日から、以下の情報を判定してください。

## 文書種類 (document_type)
- summary: 決算短信（「決算短信」を含むタイトル）
- presentation: 決算発表資料（決算説明資料、決算補足資料、Fact Sheet、決算ハイライト、プレゼンテーション資料など）
- growth_potential: 成長可能性の説明資料（成長可能性、事業戦略、経営戦略、資本政策、株主還元方針など）
- mid_term_plan: 中期経営計画・長期ビジョン
- other: 上記以外（業績予想修正、配当予想、株式分割、人事など）

## 年度 (fiscal_year)
会計期間が始まる年を西暦4桁で返してください。
- 「2026年3月期 決算短信」→ "2025"（2025年4月〜2026年3月）
- 「2025年12月期 第3四半期」→ "2025"
- 「令和7年3月期 決算短信」→ "2024"（令和7年=2025年）
- 「2025年度 第1四半期」→ "2025"
判定できない場合は null を返してください。推測はしないでください。

## 四半期 (fiscal_quarter)
- 第1四半期、1Q、Q1 → 1
- 第2四半期、2Q、Q2、中間期、上期 → 2
- 第3四半期、3Q、Q3 → 3
- 第4四半期、4Q、Q4、通期、期末、本決算 → 4
- 四半期の記載がない決算短信・決算説明資料 → 4
- 中期経営計画など四半期に紐づかない資料 → null
"""

CLASSIFICATION_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "document_type": {
            "type": "STRING",
            "enum": [member.value for member in DocumentType],
        },
        "fiscal_year": {"type": "STRING", "nullable": True},
        "fiscal_quarter": {"type": "INTEGER", "nullable": True},
        "confidence": {"type": "NUMBER"},
        "reasoning": {"type": "STRING"},
    },
    "required": ["document_type", "fiscal_year", "fiscal_quarter", "confidence", "reasoning"],
}


class ClassificationPayload(BaseModel):
    """Raw structured answer from the classification model."""

    document_type: DocumentType
    fiscal_year: Optional[str] = None
    fiscal_quarter: Optional[int] = Field(default=None, ge=1, le=4)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""


def reconcile_period(
    title: str,
    document_type: DocumentType,
    model_year: Optional[str],
    model_quarter: Optional[int],
) -> Tuple[Optional[str], Optional[int]]:
    """
    Combine title parsing with the model's answer.

    An explicit period token in the title always wins so that every document
    of one disclosure event lands on the same release key.
    """
    kind = document_type.release_kind
    if kind is None:
        return None, None

    year = parse_fiscal_year(title)
    if year is None and is_valid_fiscal_year(model_year):
        year = model_year
    elif year is not None and model_year and model_year != year:
        logger.warning(
            "Fiscal year disagreement for %r: title=%s model=%s", title, year, model_year
        )

    if not kind.is_periodic:
        return year, None

    quarter = parse_fiscal_quarter(title)
    if quarter is None:
        quarter = default_quarter(title, document_type)
    if quarter is None:
        quarter = model_quarter
    return year, quarter


def is_resolved(document: ClassifiedDocument) -> bool:
    """True when the document can be grouped into a release without guessing."""
    kind = document.document_type.release_kind
    if kind is None or not is_valid_fiscal_year(document.fiscal_year):
        return False
    if kind.is_periodic and document.fiscal_quarter is None:
        return False
    return True


class DocumentClassifier:
    """Classifies candidates from title and publication date only."""

    def __init__(
        self,
        client: Optional[GeminiClient] = None,
        batch_size: Optional[int] = None,
        parallel_limit: Optional[int] = None,
    ):
        settings = get_settings()
        self.client = client or get_gemini_client()
        self.batch_size = batch_size or settings.classify_batch_size
        self.parallel_limit = parallel_limit or settings.parallel_limit

    async def classify(self, candidate: DocumentCandidate) -> ClassifiedDocument:
        """
        Classify one candidate.

        Raises:
            GeminiClientError: When the model call fails or answers off-schema
        """
        message = f"タイトル: {candidate.title}\n発表日: {candidate.published_at.isoformat()}"
        payload = await self.client.generate_json(
            [text_part(CLASSIFIER_PROMPT), text_part(message)],
            CLASSIFICATION_RESPONSE_SCHEMA,
            ClassificationPayload,
            model_name=self.client.classifier_model_name,
        )
        fiscal_year, fiscal_quarter = reconcile_period(
            candidate.title, payload.document_type, payload.fiscal_year, payload.fiscal_quarter
        )
        return ClassifiedDocument(
            **candidate.model_dump(),
            document_type=payload.document_type,
            fiscal_year=fiscal_year,
            fiscal_quarter=fiscal_quarter,
            confidence=payload.confidence,
            reasoning=payload.reasoning,
        )

    async def _classify_or_skip(self, candidate: DocumentCandidate) -> Optional[ClassifiedDocument]:
        try:
            document = await self.classify(candidate)
        except GeminiClientError as exc:
            logger.warning("Classification failed for %r: %s", candidate.title, exc)
            return None
        except ValueError as exc:
            logger.warning("Unusable fiscal period in %r: %s", candidate.title, exc)
            return None

        if document.document_type is DocumentType.OTHER:
            logger.info("Skipped by classifier (other): %s", candidate.title)
            return None
        if not is_resolved(document):
            logger.info(
                "Skipped unresolved fiscal period: %s (year=%s quarter=%s)",
                candidate.title, document.fiscal_year, document.fiscal_quarter,
            )
            return None
        return document

    async def classify_candidates(
        self, candidates: Sequence[DocumentCandidate]
    ) -> Tuple[List[ClassifiedDocument], int]:
        """
        Classify candidates in fixed-size batches with bounded parallelism.

        Returns the usable documents in input order and the number skipped.
        """
        classified: List[ClassifiedDocument] = []
        skipped = 0
        for batch in chunked(list(candidates), self.batch_size):
            results = await bounded_gather(self._classify_or_skip, batch, self.parallel_limit)
            for result in results:
                if result is None:
                    skipped += 1
                else:
                    classified.append(result)
        return classified, skipped
