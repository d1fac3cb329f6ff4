"""Confidence bucketing, semantic grouping and display helpers for extracted fields.

Pure functions; thresholds and currency symbol default to the configured
display policy but can be passed explicitly.
"""

import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from config import settings
from models import ExtractedField, FieldType, Primitive

DATES = "Dates"
FINANCIAL = "Financial"
CONTACT_INFORMATION = "Contact Information"
PERSONAL_INFORMATION = "Personal Information"
KEY_INFORMATION = "Key Information"
OTHER = "Other"

CATEGORY_ORDER: tuple[str, ...] = (
    KEY_INFORMATION,
    DATES,
    FINANCIAL,
    CONTACT_INFORMATION,
    PERSONAL_INFORMATION,
    OTHER,
)

_TYPE_CATEGORIES: dict[FieldType, str] = {
    FieldType.DATE: DATES,
    FieldType.CURRENCY: FINANCIAL,
    FieldType.NUMBER: FINANCIAL,
    FieldType.EMAIL: CONTACT_INFORMATION,
    FieldType.PHONE: CONTACT_INFORMATION,
}

# Substrings of normalized (lowercase, alphanumeric) field names
KEY_INFORMATION_NAMES: tuple[str, ...] = (
    "policynumber",
    "memberid",
    "groupnumber",
    "accountnumber",
    "licensenumber",
    "idnumber",
    "documentnumber",
    "passportnumber",
    "registrationnumber",
    "invoicenumber",
    "referencenumber",
    "serialnumber",
    "vinnumber",
    "documentname",
    "documenttype",
    "insurancecompany",
    "provider",
    "issuer",
    "carrier",
)

PERSONAL_INFORMATION_NAMES: tuple[str, ...] = (
    "name",
    "holder",
    "insured",
    "gender",
    "sex",
    "nationality",
    "birthplace",
    "address",
    "height",
    "weight",
    "eyecolor",
    "haircolor",
)

_INPUT_TYPES: dict[FieldType, str] = {
    FieldType.DATE: "date",
    FieldType.CURRENCY: "number",
    FieldType.NUMBER: "number",
    FieldType.EMAIL: "email",
    FieldType.PHONE: "tel",
    FieldType.TEXT: "text",
    FieldType.ADDRESS: "text",
}

# Dashboard domain key -> document manager category
DOMAIN_CATEGORY_LABELS: dict[str, str] = {
    "insurance": "Insurance",
    "health": "Medical",
    "vehicles": "Vehicle",
    "home": "Property",
    "education": "Education",
    "legal": "Legal",
    "financial": "Financial & Tax",
    "pets": "Pets",
    "travel": "Travel",
    "digital": "Digital Assets",
    "mindfulness": "Wellness",
    "miscellaneous": "Other",
}

# Checked in order against the lowercased classifier document type
_DOCUMENT_TYPE_CATEGORIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("insurance",), "Insurance"),
    (("license", "passport", "id_card", "identity"), "ID & Licenses"),
    (("vehicle", "registration"), "Vehicle"),
    (("medical", "prescription", "vaccination"), "Medical"),
    (("property", "deed", "lease"), "Property"),
    (("tax", "financial", "bank", "receipt", "bill", "invoice"), "Financial & Tax"),
)

EMPTY_VALUE = ""

_MISSING: Any = object()


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ConfidenceBuckets(BaseModel):
    high: list[ExtractedField] = Field(default_factory=list)
    medium: list[ExtractedField] = Field(default_factory=list)
    low: list[ExtractedField] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {"high": len(self.high), "medium": len(self.medium), "low": len(self.low)}


def _as_list(fields: Mapping[str, ExtractedField] | Iterable[ExtractedField]) -> list[ExtractedField]:
    if isinstance(fields, Mapping):
        return list(fields.values())
    return list(fields)


def _check_thresholds(high: float, low: float) -> None:
    if low > high:
        raise ValueError(f"low threshold {low} is above high threshold {high}")


def confidence_level(
    confidence: float,
    high: float | None = None,
    low: float | None = None,
) -> ConfidenceLevel:
    high = settings.HIGH_CONFIDENCE_THRESHOLD if high is None else high
    low = settings.LOW_CONFIDENCE_THRESHOLD if low is None else low
    _check_thresholds(high, low)

    if confidence >= high:
        return ConfidenceLevel.HIGH
    if confidence >= low:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def confidence_label(confidence: float, high: float | None = None, low: float | None = None) -> str:
    return f"{confidence_level(confidence, high, low).value.capitalize()} confidence"


def confidence_percent(confidence: float) -> int:
    return int(round(confidence * 100))


def categorize_fields_by_confidence(
    fields: Mapping[str, ExtractedField] | Iterable[ExtractedField],
    high: float | None = None,
    low: float | None = None,
) -> ConfidenceBuckets:
    """Partition fields into high (>= high), medium (>= low) and low buckets."""
    buckets = ConfidenceBuckets()
    for field in _as_list(fields):
        level = confidence_level(field.confidence, high, low)
        getattr(buckets, level.value).append(field)
    return buckets


def _normalize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def category_for_field(field: ExtractedField) -> str:
    """Semantic category: field type first, then name heuristics."""
    by_type = _TYPE_CATEGORIES.get(field.field_type)
    if by_type is not None:
        return by_type

    name = _normalize_name(field.name)
    if any(key in name for key in KEY_INFORMATION_NAMES):
        return KEY_INFORMATION
    if any(key in name for key in PERSONAL_INFORMATION_NAMES):
        return PERSONAL_INFORMATION
    return OTHER


def group_fields_by_category(
    fields: Mapping[str, ExtractedField] | Iterable[ExtractedField],
) -> dict[str, list[ExtractedField]]:
    """Group fields into semantic categories.

    Every field lands in exactly one category. Categories come back in
    display order and empty ones are left out. Fields keep their input order.
    """
    grouped: dict[str, list[ExtractedField]] = {category: [] for category in CATEGORY_ORDER}
    for field in _as_list(fields):
        grouped[category_for_field(field)].append(field)
    return {category: items for category, items in grouped.items() if items}


def _format_currency(value: Primitive, symbol: str) -> str:
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float)):
        amount = float(value)
    else:
        cleaned = re.sub(r"[^\d.\-]", "", str(value))
        try:
            amount = float(cleaned)
        except ValueError:
            return str(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"


def _format_date(value: Primitive) -> str:
    text = str(value).strip()
    parsed: date | None = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        try:
            parsed = date.fromisoformat(text[:10])
        except ValueError:
            return text
    return f"{parsed:%b} {parsed.day}, {parsed.year}"


def format_field_value(
    field: ExtractedField,
    value: Primitive = _MISSING,
    currency_symbol: str | None = None,
) -> str:
    """Render a field value for display.

    ``value`` overrides the field's own value (used for edited values).
    Missing values render as an empty string.
    """
    if value is _MISSING:
        value = field.value
    if value is None or value == "":
        return EMPTY_VALUE

    if field.field_type is FieldType.CURRENCY:
        symbol = settings.CURRENCY_SYMBOL if currency_symbol is None else currency_symbol
        return _format_currency(value, symbol)
    if field.field_type is FieldType.DATE:
        return _format_date(value)
    return str(value)


def humanize_field_name(name: str) -> str:
    """``policyNumber`` -> ``Policy Number``, ``date_of_birth`` -> ``Date Of Birth``."""
    if not name:
        return ""
    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", name)
    spaced = re.sub(r"(?<=[A-Z])(?=[A-Z][a-z])", " ", spaced)
    words = re.split(r"[\s_\-]+", spaced.strip())
    return " ".join(word[:1].upper() + word[1:] for word in words if word)


def display_label(field: ExtractedField) -> str:
    return field.label or humanize_field_name(field.name)


def input_type_for(field_type: FieldType) -> str:
    return _INPUT_TYPES.get(field_type, "text")


def category_for_document_type(document_type: str | None) -> str:
    """Document manager category for a classifier document type."""
    lowered = (document_type or "").lower()
    for needles, category in _DOCUMENT_TYPE_CATEGORIES:
        if any(needle in lowered for needle in needles):
            return category
    return "Other"


def category_label_for_domain(domain: str | None) -> str:
    return DOMAIN_CATEGORY_LABELS.get((domain or "").lower(), "Other")
