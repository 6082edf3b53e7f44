"""Deterministic fiscal period extraction from Japanese disclosure titles.

Fiscal years are labelled by the calendar year in which the period starts:
a period ending March 2026 (``2026年3月期``) runs April 2025 to March 2026 and
is fiscal year ``2025``. Periods ending in December start in the same year.
"""
import re
import unicodedata
from typing import Optional

from kessan.models.schemas import DocumentType

# Gregorian year = base + era year
ERA_BASE_YEARS = {
    "令和": 2018,
    "平成": 1988,
    "昭和": 1925,
}

ERA_PERIOD_PATTERN = re.compile(r"(令和|平成|昭和)\s*(元|\d{1,2})\s*年\s*(\d{1,2})\s*月\s*期")
ERA_FISCAL_YEAR_PATTERN = re.compile(r"(令和|平成|昭和)\s*(元|\d{1,2})\s*年\s*度")
PERIOD_PATTERN = re.compile(r"(\d{4})\s*年\s*(\d{1,2})\s*月\s*期")
FISCAL_YEAR_PATTERN = re.compile(r"(\d{4})\s*年\s*度")
FY_PATTERN = re.compile(r"(?<![A-Za-z])FY\s*'?(\d{4}|\d{2})(?:[./](\d{1,2})(?!\d))?", re.IGNORECASE)

EXPLICIT_QUARTER_PATTERNS = (
    (1, re.compile(r"第\s*1\s*四半期|(?<!\d)1Q|Q1(?!\d)", re.IGNORECASE)),
    (2, re.compile(r"第\s*2\s*四半期|(?<!\d)2Q|Q2(?!\d)", re.IGNORECASE)),
    (3, re.compile(r"第\s*3\s*四半期|(?<!\d)3Q|Q3(?!\d)", re.IGNORECASE)),
    (4, re.compile(r"第\s*4\s*四半期|(?<!\d)4Q|Q4(?!\d)", re.IGNORECASE)),
)

# Period words only count when no numbered quarter appears anywhere in the title.
LOOSE_QUARTER_PATTERNS = (
    (2, re.compile(r"中間|上期|上半期")),
    (4, re.compile(r"通期|期末|年度末|本決算")),
)

YEAR_TEXT_PATTERN = re.compile(r"^\d{4}$")


def normalize_title(title: str) -> str:
    """Fold full-width digits and letters to ASCII so patterns match either form."""
    return unicodedata.normalize("NFKC", title or "")


def era_to_gregorian(era: str, era_year: str) -> int:
    """Convert an era year (``元`` or digits) to a Gregorian year."""
    base = ERA_BASE_YEARS[era]
    return base + (1 if era_year == "元" else int(era_year))


def fiscal_year_for_period_end(end_year: int, end_month: int) -> int:
    """Fiscal year label for a period ending in ``end_year``/``end_month``."""
    if not 1 <= end_month <= 12:
        raise ValueError(f"invalid period end month: {end_month}")
    return end_year if end_month == 12 else end_year - 1


def _expand_fy_year(raw: str) -> int:
    year = int(raw)
    return 2000 + year if len(raw) == 2 else year


def parse_fiscal_year(title: str) -> Optional[str]:
    """
    Extract the fiscal year from a title.

    Recognised, in order: ``YYYY年M月期`` and its era form, ``YYYY年度`` and
    its era form, then ``FYxxxx[.M]`` tokens. Returns None when the title has
    no explicit period token.
    """
    text = normalize_title(title)

    match = ERA_PERIOD_PATTERN.search(text)
    if match:
        month = int(match.group(3))
        if 1 <= month <= 12:
            end_year = era_to_gregorian(match.group(1), match.group(2))
            return str(fiscal_year_for_period_end(end_year, month))

    match = PERIOD_PATTERN.search(text)
    if match:
        month = int(match.group(2))
        if 1 <= month <= 12:
            return str(fiscal_year_for_period_end(int(match.group(1)), month))

    match = ERA_FISCAL_YEAR_PATTERN.search(text)
    if match:
        return str(era_to_gregorian(match.group(1), match.group(2)))

    match = FISCAL_YEAR_PATTERN.search(text)
    if match:
        return match.group(1)

    match = FY_PATTERN.search(text)
    if match:
        year = _expand_fy_year(match.group(1))
        month = match.group(2)
        if month and 1 <= int(month) <= 12:
            return str(fiscal_year_for_period_end(year, int(month)))
        return str(year)

    return None


def parse_fiscal_quarter(title: str) -> Optional[int]:
    """Return the quarter named explicitly in the title, or None."""
    text = normalize_title(title)
    for quarter, pattern in EXPLICIT_QUARTER_PATTERNS + LOOSE_QUARTER_PATTERNS:
        if pattern.search(text):
            return quarter
    return None


def default_quarter(title: str, document_type: DocumentType) -> Optional[int]:
    """
    Quarter to assume when the title names none.

    Earnings summaries and presentations without a quarter token are full-year
    documents. A bare ``四半期`` without a number stays unresolved, and plan
    documents never carry a quarter.
    """
    kind = document_type.release_kind
    if kind is None or not kind.is_periodic:
        return None
    if "四半期" in normalize_title(title):
        return None
    return 4


def is_valid_fiscal_year(value: Optional[str]) -> bool:
    return bool(value) and bool(YEAR_TEXT_PATTERN.match(value))
