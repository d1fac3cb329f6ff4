"""Pydantic models for the intake pipeline and the remote service payloads.

Remote services speak camelCase JSON; every wire model accepts both the
alias and the Python field name.
"""

import mimetypes
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

Primitive = str | int | float | bool | None


class FieldType(str, Enum):
    TEXT = "text"
    DATE = "date"
    CURRENCY = "currency"
    NUMBER = "number"
    EMAIL = "email"
    PHONE = "phone"
    ADDRESS = "address"


class ProcessingStage(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    SCANNING = "scanning"
    CLASSIFYING = "classifying"
    EXTRACTING = "extracting"
    REVIEW = "review"
    PREVIEW_CONFIRM = "preview_confirm"
    SAVING = "saving"
    COMPLETE = "complete"
    ERROR = "error"


class IntakePath(str, Enum):
    FAST = "fast"
    STAGED = "staged"
    QUICK = "quick"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    REMOTE = "remote"
    PARSE = "parse"


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class ExtractedField(_WireModel):
    name: str
    label: str | None = None
    value: Primitive = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    field_type: FieldType = FieldType.TEXT

    @field_validator("field_type", mode="before")
    @classmethod
    def _unknown_type_is_text(cls, v: Any) -> Any:
        if v is None:
            return FieldType.TEXT
        if isinstance(v, str) and v.lower() not in {t.value for t in FieldType}:
            return FieldType.TEXT
        return v.lower() if isinstance(v, str) else v


class EnhancedExtractedData(_WireModel):
    fields: dict[str, ExtractedField] = Field(default_factory=dict)
    document_title: str = ""
    summary: str = ""
    all_dates_found: list[str] = Field(default_factory=list)
    all_numbers_found: list[str] = Field(default_factory=list)
    all_names_found: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _name_fields_by_key(cls, data: Any) -> Any:
        """The wire format keys fields by name; the key is authoritative."""
        if not isinstance(data, dict):
            return data
        raw = data.get("fields")
        if not isinstance(raw, dict):
            return data

        named: dict[str, Any] = {}
        for key, field in raw.items():
            if isinstance(field, ExtractedField):
                named[key] = field if field.name == key else field.model_copy(update={"name": key})
            elif isinstance(field, dict):
                named[key] = {**field, "name": key}
            else:
                # Bare value without a score
                named[key] = {"name": key, "value": field, "confidence": 0.0}
        return {**data, "fields": named}

    @field_validator("all_dates_found", "all_numbers_found", "all_names_found", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [item if isinstance(item, str) else str(item) for item in v if item is not None]
        return v

    @field_validator("document_title", "summary", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class TemporalMatch(BaseModel):
    raw_text: str
    normalized_iso_date: str


class IntakeFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    content_type: str
    content: bytes = Field(repr=False)

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")

    @classmethod
    def from_path(cls, path: str | Path, content_type: str | None = None) -> "IntakeFile":
        path = Path(path)
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            filename=path.name,
            content_type=content_type or guessed or "application/octet-stream",
            content=path.read_bytes(),
        )


class ScanResult(_WireModel):
    document_type: str = "unknown"
    suggested_domain: str | None = None
    suggested_action: str | None = None
    enhanced_data: EnhancedExtractedData | None = None
    text: str = ""
    confidence: float = 0.0

    @field_validator("document_type", "text", mode="before")
    @classmethod
    def _none_is_default(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None:
            return "unknown" if info.field_name == "document_type" else ""
        return v

    def extracted_data(self) -> EnhancedExtractedData:
        """Enhanced data, or the empty fallback used when the scan had none."""
        if self.enhanced_data is not None:
            return self.enhanced_data
        return EnhancedExtractedData(
            document_title=self.document_type,
            summary=self.suggested_action or "",
        )


class UploadResult(_WireModel):
    model_config = ConfigDict(extra="allow")

    id: str
    storage_ref: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_data(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("data"), dict) and "id" not in data:
            return data["data"]
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    def as_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class IntakeSession(BaseModel):
    """One upload's lifecycle. Replaced, never mutated, on each transition."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    file: IntakeFile | None = None
    path: IntakePath | None = None
    stage: ProcessingStage = ProcessingStage.IDLE
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = None
    error_kind: ErrorKind | None = None
    extracted_data: EnhancedExtractedData | None = None
    document_type: str | None = None
    suggested_domain: str | None = None
    saved_record: dict[str, Any] | None = None

    def snapshot(self) -> dict[str, Any]:
        """JSON-friendly view without the file bytes."""
        data = self.model_dump(
            mode="json",
            exclude={"file", "extracted_data"},
        )
        data["file"] = (
            {
                "filename": self.file.filename,
                "content_type": self.file.content_type,
                "size": self.file.size,
            }
            if self.file is not None
            else None
        )
        data["extracted_data"] = (
            self.extracted_data.model_dump(mode="json", by_alias=True)
            if self.extracted_data is not None
            else None
        )
        return data
