"""
schemas.py — Pydantic v2 models for the analysis contract.

The backend returns free text that is only informally typed, so these
models are deliberately forgiving on input: keys are normalised
("Technical Requirements" -> "technical_requirements"), nulls fall back
to defaults, a bare string where an object is expected becomes that
object's primary text, and numbers become strings. What comes out the
other side always has the same shape — every list field is a list, never
None — which is what the reducer and the Notion page builder rely on.

Unknown keys are kept (extra="allow") and merged like scalars.
"""

from __future__ import annotations

import json
import re
from typing import Any, ClassVar, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

_KEY_WS_RE = re.compile(r"\s+")


def normalize_key(key: Any) -> str:
    return _KEY_WS_RE.sub("_", str(key).strip().lower())


def _as_text(value: Any) -> str:
    """Flatten whatever the LLM put in a text slot into a string."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float, bool)):
        return str(value)
    if isinstance(value, list):
        return "\n".join(t for t in (_as_text(v) for v in value) if t)
    return json.dumps(value, ensure_ascii=False)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str) and not value.strip():
        return []
    return [value]


class _Item(BaseModel):
    """Common behaviour for list-of-object entries."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    # Name of the field a bare string is promoted to.
    primary_field: ClassVar[str] = "description"

    @model_validator(mode="before")
    @classmethod
    def _promote_scalar(cls, data: Any) -> Any:
        if isinstance(data, BaseModel):
            return data
        if isinstance(data, dict):
            return {normalize_key(k): v for k, v in data.items()}
        return {cls.primary_field: _as_text(data)}

    def primary_text(self) -> str:
        return getattr(self, self.primary_field)


class RequirementItem(_Item):
    """One requirement, optionally backed by a verbatim quote."""
    description: str = Field(
        default="",
        validation_alias=AliasChoices("description", "text", "requirement"),
    )
    quote: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("quote", "quotation", "citation"),
    )

    @field_validator("description", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return _as_text(v)

    @field_validator("quote", mode="before")
    @classmethod
    def _quote(cls, v: Any) -> Optional[str]:
        text = _as_text(v)
        return text or None


class ImprovementItem(RequirementItem):
    """A gap between the tender and the product's known capabilities."""
    priority: Optional[str] = None
    complexity: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("complexity", "complexity_estimate"),
    )

    @field_validator("priority", "complexity", mode="before")
    @classmethod
    def _optional_text(cls, v: Any) -> Optional[str]:
        return _as_text(v) or None


class ContactItem(_Item):
    primary_field: ClassVar[str] = "name"

    name: str = Field(default="", validation_alias=AliasChoices("name", "full_name"))
    role: str = Field(default="", validation_alias=AliasChoices("role", "position", "title"))
    email: str = ""
    phone: str = Field(default="", validation_alias=AliasChoices("phone", "telephone"))

    @field_validator("name", "role", "email", "phone", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return _as_text(v)


class DocumentFieldSpec(_Item):
    """A document type the customer wants processed, plus its fields."""
    primary_field: ClassVar[str] = "document"

    document: str = Field(default="", validation_alias=AliasChoices("document", "title", "name"))
    fields: List[str] = Field(default_factory=list)

    @field_validator("document", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return _as_text(v)

    @field_validator("fields", mode="before")
    @classmethod
    def _fields(cls, v: Any) -> List[str]:
        return [t for t in (_as_text(x) for x in _as_list(v)) if t]


# Field groups used by the reducer and the page builder. Order here is the
# order sections appear on the published page.
REQUIREMENT_GROUPS = (
    ("technical_requirements", "Technical requirements"),
    ("functional_requirements", "Functional requirements"),
    ("non_functional_requirements", "Non-functional requirements"),
    ("infrastructure_requirements", "Infrastructure requirements"),
    ("constraints_and_risks", "Constraints and risks"),
)
SCALAR_FIELDS = ("document_summary", "original_document_link")


class ExtractionRecord(BaseModel):
    """
    Structured result for a whole document or one window.

    Also used for the merged record — same shape, just folded.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    document_summary: str = ""
    customer_company: List[str] = Field(default_factory=list)
    original_document_link: str = ""

    technical_requirements: List[RequirementItem] = Field(default_factory=list)
    functional_requirements: List[RequirementItem] = Field(default_factory=list)
    non_functional_requirements: List[RequirementItem] = Field(default_factory=list)
    infrastructure_requirements: List[RequirementItem] = Field(default_factory=list)
    constraints_and_risks: List[RequirementItem] = Field(default_factory=list)
    required_improvements: List[ImprovementItem] = Field(default_factory=list)

    contacts: List[ContactItem] = Field(default_factory=list)
    required_documents: List[DocumentFieldSpec] = Field(default_factory=list)
    links: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        # Nulls are dropped so the field default applies.
        return {normalize_key(k): v for k, v in data.items() if v is not None}

    @field_validator("document_summary", "original_document_link", mode="before")
    @classmethod
    def _scalar(cls, v: Any) -> str:
        return _as_text(v)

    @field_validator("customer_company", "links", mode="before")
    @classmethod
    def _string_list(cls, v: Any) -> List[str]:
        return [t for t in (_as_text(x) for x in _as_list(v)) if t]

    @field_validator(
        "technical_requirements",
        "functional_requirements",
        "non_functional_requirements",
        "infrastructure_requirements",
        "constraints_and_risks",
        "required_improvements",
        "contacts",
        "required_documents",
        mode="before",
    )
    @classmethod
    def _item_list(cls, v: Any) -> List[Any]:
        return _as_list(v)

    def extra_fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})

    def is_empty(self) -> bool:
        for value in self.model_dump().values():
            if value not in ("", [], {}, None):
                return False
        return True

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.model_dump(mode="json"), ensure_ascii=False, indent=indent)


# Pipeline-internal models

class Document(BaseModel):
    """Raw text of one uploaded file. Lives for a single analysis call."""
    model_config = ConfigDict(frozen=True)

    name: str
    text: str
    media_type: str = "text/plain"

    @property
    def byte_length(self) -> int:
        return len(self.text.encode("utf-8"))


class Window(BaseModel):
    """A contiguous slice of a document's text."""
    model_config = ConfigDict(frozen=True)

    index: int
    start: int
    text: str

    @property
    def length(self) -> int:
        return len(self.text)

    @property
    def end(self) -> int:
        return self.start + len(self.text)


class AnalysisResult(BaseModel):
    """What analyze()/analyze_full() hand to publishers."""
    document_name: str
    mode: Literal["whole_document", "windowed", "full_text"]
    record: ExtractionRecord
    canonical_json: str
    windows_total: int = 1
    failed_windows: List[int] = Field(default_factory=list)
    finalized: bool = False

    def to_payload(self) -> Dict[str, Any]:
        """What gets written to outputs/ and returned by the API."""
        return {
            "document_name": self.document_name,
            "mode": self.mode,
            "windows_total": self.windows_total,
            "failed_windows": list(self.failed_windows),
            "finalized": self.finalized,
            "analysis": json.loads(self.canonical_json),
        }
