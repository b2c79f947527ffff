"""Typed models shared across the subscription extraction pipeline.

Models that cross the API boundary are pydantic models serialised with
camelCase aliases (``billingCycle``, ``requiresManualInput``) so the JSON
shape matches what the dashboard already consumes. Short-lived internal
values (scraped pages, catalog entries) are plain dataclasses.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

BillingCycle = Literal["weekly", "monthly", "quarterly", "yearly"]
CurrencyCode = Literal["USD", "EUR", "GBP", "SEK", "NOK", "DKK"]
ExtractionSource = Literal["ai", "scraper", "manual", "known_service"]
InputType = Literal["url", "service_name", "partial_url"]
SubscriptionCategory = Literal[
    "streaming",
    "software",
    "cloud",
    "productivity",
    "entertainment",
    "education",
    "finance",
    "health",
    "news",
    "other",
]

BILLING_CYCLES: Tuple[str, ...] = ("weekly", "monthly", "quarterly", "yearly")
CURRENCIES: Tuple[str, ...] = ("USD", "EUR", "GBP", "SEK", "NOK", "DKK")
EXTRACTION_SOURCES: Tuple[str, ...] = ("ai", "scraper", "manual", "known_service")
CATEGORIES: Tuple[str, ...] = (
    "streaming",
    "software",
    "cloud",
    "productivity",
    "entertainment",
    "education",
    "finance",
    "health",
    "news",
    "other",
)

# Fields the dashboard cannot save a subscription without.
CORE_FIELDS: Tuple[str, ...] = ("name", "cost", "currency", "billingCycle")


class CamelModel(BaseModel):
    """Base model accepting snake_case or camelCase and dumping camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Input resolution
# ---------------------------------------------------------------------------
class ResolvedInput(CamelModel):
    """Classified, normalised view of the raw user text."""

    original_input: str
    input_type: InputType = "service_name"
    url: Optional[str] = None
    service_name: Optional[str] = None
    plan_hint: Optional[str] = None
    billing_hint: Optional[BillingCycle] = None
    known_service_key: Optional[str] = None
    is_custom_subscription: bool = False
    extracted_price: Optional[float] = None
    extracted_currency: Optional[CurrencyCode] = None
    custom_description: Optional[str] = None


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool
    sanitized_value: str
    errors: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Known-service catalog
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PriceTier:
    plan: str
    cost: float
    billing_cycle: str


@dataclass(frozen=True, slots=True)
class KnownService:
    """Catalog entry for a pre-catalogued subscription provider."""

    key: str
    name: str
    domain: str
    aliases: Tuple[str, ...]
    default_currency: str
    default_billing_cycle: str
    category: str
    logo_url: Optional[str] = None
    pricing_url: Optional[str] = None
    manage_url: Optional[str] = None
    cancel_url: Optional[str] = None
    typical_prices: Tuple[PriceTier, ...] = ()


# ---------------------------------------------------------------------------
# Scraping
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ScrapedLink:
    href: str
    text: str


@dataclass(slots=True)
class ScrapedContent:
    """Content pulled from one fetched page; consumed immediately, never stored."""

    title: Optional[str]
    description: Optional[str]
    body_text: str
    meta_tags: Dict[str, str] = field(default_factory=dict)
    json_ld: List[Any] = field(default_factory=list)
    links: List[ScrapedLink] = field(default_factory=list)


@dataclass(slots=True)
class ScraperExtraction:
    """Fields derived directly from scraped content, without the model."""

    name: Optional[str] = None
    cost: Optional[float] = None
    currency: Optional[str] = None
    billing_cycle: Optional[str] = None
    logo_url: Optional[str] = None
    cancel_url: Optional[str] = None
    manage_url: Optional[str] = None


# ---------------------------------------------------------------------------
# AI output
# ---------------------------------------------------------------------------
class PricingTier(CamelModel):
    plan: str
    cost: float
    currency: CurrencyCode
    billing_cycle: BillingCycle


class RecommendedPlan(CamelModel):
    cost: float
    currency: CurrencyCode
    billing_cycle: BillingCycle
    reason: str


class GeminiExtractionResponse(CamelModel):
    """Validated shape of the model's answer. Built only via the validators."""

    name: Optional[str] = None
    description: Optional[str] = None
    pricing: List[PricingTier] = Field(default_factory=list)
    recommended_plan: Optional[RecommendedPlan] = None
    category: Optional[SubscriptionCategory] = None
    manage_url: Optional[str] = None
    cancel_url: Optional[str] = None
    logo_url: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Pipeline output
# ---------------------------------------------------------------------------
class ExtractionAttempt(CamelModel):
    """One attempted stage, recorded for the audit trail."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    method: ExtractionSource
    success: bool
    error: Optional[str] = None
    duration_ms: int = 0


class ExtractionResult(CamelModel):
    success: bool
    source: ExtractionSource
    confidence: float = Field(ge=0.0, le=1.0)
    attempts: List[ExtractionAttempt] = Field(default_factory=list)

    name: Optional[str] = None
    description: Optional[str] = None
    cost: Optional[float] = None
    currency: Optional[CurrencyCode] = None
    billing_cycle: Optional[BillingCycle] = None
    category: Optional[SubscriptionCategory] = None
    logo_url: Optional[str] = None
    manage_url: Optional[str] = None
    cancel_url: Optional[str] = None

    requires_manual_input: List[str] = Field(default_factory=list)
    resolved_input: ResolvedInput


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class ExtractionConfig(CamelModel):
    """Pipeline knobs. Every field has a default so partial overrides work."""

    ai_enabled: bool = True
    scraper_enabled: bool = True
    ai_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    ai_timeout_ms: int = Field(default=15000, gt=0)
    scraper_timeout_ms: int = Field(default=10000, gt=0)
    max_retries: int = Field(default=2, ge=0)

    @classmethod
    def from_env(cls) -> "ExtractionConfig":
        """Build a config from ``EXTRACTOR_*`` environment variables."""

        values: Dict[str, Any] = {}
        for flag, var in (
            ("ai_enabled", "EXTRACTOR_AI_ENABLED"),
            ("scraper_enabled", "EXTRACTOR_SCRAPER_ENABLED"),
        ):
            parsed = _env_bool(var)
            if parsed is not None:
                values[flag] = parsed
        for key, var in (
            ("ai_confidence_threshold", "EXTRACTOR_AI_CONFIDENCE_THRESHOLD"),
            ("ai_timeout_ms", "EXTRACTOR_AI_TIMEOUT_MS"),
            ("scraper_timeout_ms", "EXTRACTOR_SCRAPER_TIMEOUT_MS"),
            ("max_retries", "EXTRACTOR_MAX_RETRIES"),
        ):
            raw = os.getenv(var)
            if raw is not None and raw.strip():
                values[key] = raw.strip()
        return cls.model_validate(values)

    def merged(self, overrides: Optional[Dict[str, Any]] = None) -> "ExtractionConfig":
        """Return a copy with ``overrides`` (snake_case or camelCase keys) applied."""

        if not overrides:
            return self
        by_alias = {info.alias: name for name, info in type(self).model_fields.items()}
        data = self.model_dump()
        for key, value in overrides.items():
            name = key if key in data else by_alias.get(key)
            if name is None:
                raise ValueError(f"Unknown extraction config option '{key}'")
            data[name] = value
        return ExtractionConfig.model_validate(data)


DEFAULT_CONFIG = ExtractionConfig()


__all__ = [
    "BILLING_CYCLES",
    "CATEGORIES",
    "CORE_FIELDS",
    "CURRENCIES",
    "DEFAULT_CONFIG",
    "EXTRACTION_SOURCES",
    "BillingCycle",
    "CamelModel",
    "CurrencyCode",
    "ExtractionAttempt",
    "ExtractionConfig",
    "ExtractionResult",
    "ExtractionSource",
    "GeminiExtractionResponse",
    "InputType",
    "KnownService",
    "PriceTier",
    "PricingTier",
    "RecommendedPlan",
    "ResolvedInput",
    "ScrapedContent",
    "ScrapedLink",
    "ScraperExtraction",
    "SubscriptionCategory",
    "ValidationResult",
]
