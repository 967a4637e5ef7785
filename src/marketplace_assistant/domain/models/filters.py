"""Marketplace filter models.

``FilterSpec`` uses the storefront's camelCase parameter names on the wire
(``daMin``, ``spamMax``...) and snake_case attributes in Python.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Declared valid ranges, inclusive
NUMERIC_BOUNDS: dict[str, tuple[float, float | None]] = {
    "da_min": (0, 100),
    "da_max": (0, 100),
    "pa_min": (0, 100),
    "pa_max": (0, 100),
    "dr_min": (0, 100),
    "dr_max": (0, 100),
    "spam_min": (0, 100),
    "spam_max": (0, 100),
    "price_min": (0, 1_000_000),
    "price_max": (0, 1_000_000),
    "traffic_min": (0, None),
}

ENUM_VALUES: dict[str, frozenset[str]] = {
    "niche": frozenset(
        {
            "tech",
            "health",
            "finance",
            "business",
            "lifestyle",
            "education",
            "travel",
            "marketing",
            "sports",
            "entertainment",
        }
    ),
    "country": frozenset({"us", "uk", "ca", "au", "india", "de", "fr", "es", "it", "nl", "br", "sg", "ae"}),
    "language": frozenset(
        {"english", "spanish", "french", "german", "italian", "portuguese", "dutch", "hindi"}
    ),
    "backlink_nature": frozenset({"do-follow", "no-follow", "sponsored"}),
}

# (min field, max field) pairs that must not cross
RANGE_PAIRS: tuple[tuple[str, str], ...] = (
    ("da_min", "da_max"),
    ("pa_min", "pa_max"),
    ("dr_min", "dr_max"),
    ("spam_min", "spam_max"),
    ("price_min", "price_max"),
)


class FilterSpec(BaseModel):
    """Publisher search filters, restricted to the recognized fields."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    da_min: int | None = Field(None, alias="daMin")
    da_max: int | None = Field(None, alias="daMax")
    pa_min: int | None = Field(None, alias="paMin")
    pa_max: int | None = Field(None, alias="paMax")
    dr_min: int | None = Field(None, alias="drMin")
    dr_max: int | None = Field(None, alias="drMax")
    spam_min: int | None = Field(None, alias="spamMin")
    spam_max: int | None = Field(None, alias="spamMax")
    price_min: float | None = Field(None, alias="priceMin")
    price_max: float | None = Field(None, alias="priceMax")
    traffic_min: int | None = Field(None, alias="trafficMin")
    niche: str | None = None
    country: str | None = None
    language: str | None = None
    backlink_nature: str | None = Field(None, alias="backlinkNature")
    availability: bool | None = None

    def to_params(self) -> dict[str, Any]:
        """Wire representation with unset fields dropped."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def set_fields(self) -> dict[str, Any]:
        """Python-named fields that carry a value."""
        return self.model_dump(exclude_none=True)

    def is_empty(self) -> bool:
        return not self.set_fields()

    @classmethod
    def wire_name(cls, field_name: str) -> str:
        field = cls.model_fields[field_name]
        return field.alias or field_name


class FilterIntent(str, Enum):
    ACTION = "action"
    INFORMATIONAL = "informational"
    RESET = "reset"
    NONE = "none"


class FilterDecision(BaseModel):
    """Outcome of translating one message into filters. Logged, never persisted."""

    filters: FilterSpec
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)
    should_update: bool = False
    intent: FilterIntent = FilterIntent.NONE
    changed_fields: list[str] = Field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        """Compact form for prompts, client events and audit logs."""
        return {
            "filters": self.filters.to_params(),
            "confidence": round(self.confidence, 3),
            "should_update": self.should_update,
            "intent": self.intent.value,
            "changed_fields": self.changed_fields,
            "reasoning": self.reasoning,
            "validation_errors": self.validation_errors,
            "validation_warnings": self.validation_warnings,
        }
