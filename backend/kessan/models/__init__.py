"""Database models and schemas."""
from kessan.models.database import get_supabase_client
from kessan.models.schemas import (
    ClassifiedDocument,
    CustomAnalysis,
    DocumentCandidate,
    DocumentType,
    EarningsSummary,
    Release,
    ReleaseKind,
    StoredDocument,
    Subscriber,
    UserAnalysis,
)

__all__ = [
    "get_supabase_client",
    "ClassifiedDocument",
    "CustomAnalysis",
    "DocumentCandidate",
    "DocumentType",
    "EarningsSummary",
    "Release",
    "ReleaseKind",
    "StoredDocument",
    "Subscriber",
    "UserAnalysis",
]
