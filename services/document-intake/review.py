"""Review and merge of human corrections over machine-extracted fields."""

import logging
from typing import Any

import field_classifier
from models import EnhancedExtractedData, Primitive

logger = logging.getLogger(__name__)


class ReviewController:
    """Holds the edited-value map for one review.

    The extracted data is never modified; corrections live in a separate
    map seeded from the extracted values and merged back on save.
    """

    def __init__(self, data: EnhancedExtractedData):
        self._data = data
        self._edited: dict[str, Primitive] = {name: field.value for name, field in data.fields.items()}

    @property
    def data(self) -> EnhancedExtractedData:
        return self._data

    @property
    def edited(self) -> dict[str, Primitive]:
        return dict(self._edited)

    def set_field(self, name: str, value: Primitive) -> None:
        self._edited[name] = value

    def set_fields(self, values: dict[str, Primitive]) -> None:
        for name, value in values.items():
            self.set_field(name, value)

    def get_field(self, name: str) -> Primitive:
        if name in self._edited:
            return self._edited[name]
        field = self._data.fields.get(name)
        return field.value if field is not None else None

    def discard_edit(self, name: str) -> None:
        """Forget a correction; the extracted value applies again on save."""
        self._edited.pop(name, None)

    def changed_fields(self) -> list[str]:
        return [
            name
            for name, field in self._data.fields.items()
            if name in self._edited and self._edited[name] != field.value
        ]

    def build_payload(self) -> dict[str, Any]:
        """Merged values: edits win, untouched keys fall back to extraction."""
        payload: dict[str, Any] = {}
        for name, field in self._data.fields.items():
            payload[name] = self._edited[name] if name in self._edited else field.value
        for name, value in self._edited.items():
            if name not in self._data.fields:
                payload[name] = value

        logger.info(
            "Review merged: %d fields, %d corrected",
            len(payload), len(self.changed_fields()),
        )
        return payload

    def view(self, high: float | None = None, low: float | None = None) -> dict[str, Any]:
        """Grouped, formatted fields with confidence information for display."""
        buckets = field_classifier.categorize_fields_by_confidence(self._data.fields, high, low)
        sections = []
        for category, fields in field_classifier.group_fields_by_category(self._data.fields).items():
            items = []
            for field in fields:
                value = self.get_field(field.name)
                level = field_classifier.confidence_level(field.confidence, high, low)
                items.append({
                    "name": field.name,
                    "label": field_classifier.display_label(field),
                    "value": value,
                    "display": field_classifier.format_field_value(field, value),
                    "field_type": field.field_type.value,
                    "input_type": field_classifier.input_type_for(field.field_type),
                    "confidence": field.confidence,
                    "confidence_percent": field_classifier.confidence_percent(field.confidence),
                    "confidence_level": level.value,
                    "needs_review": level is field_classifier.ConfidenceLevel.LOW,
                })
            sections.append({"category": category, "fields": items})

        return {
            "document_title": self._data.document_title,
            "summary": self._data.summary,
            "total_fields": len(self._data.fields),
            "confidence_counts": buckets.counts(),
            "sections": sections,
        }
