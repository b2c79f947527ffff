"""Sanitizers and validators for untrusted input.

Everything that reaches the pipeline from outside (user text, scraped HTML,
model output) passes through these functions. They are total: a bad value
comes back as ``None``/``0``/an empty string, never as an exception.
"""

from __future__ import annotations

import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from extraction.models import (
    BILLING_CYCLES,
    CATEGORIES,
    CURRENCIES,
    EXTRACTION_SOURCES,
    GeminiExtractionResponse,
    PricingTier,
    RecommendedPlan,
    ValidationResult,
)

MAX_INPUT_LENGTH = 2000
MAX_URL_LENGTH = 2048
MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MAX_PLAN_LENGTH = 100
MAX_REASON_LENGTH = 500
MAX_PRICE = 10000

_TAG_RE = re.compile(r"<[^>]*>")
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"\bon\w+\s*=", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
# "mailto:", "ftp://"; a colon followed by a digit is a port, not a scheme.
_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.-]*):(?!\d)", re.IGNORECASE)

SUSPICIOUS_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"javascript:",
        r"data:",
        r"vbscript:",
        r"<script",
        r"\bon\w+\s*=",
        r"onclick",
        r"onerror",
        r"onload",
        r"eval\s*\(",
        r"document\.",
        r"window\.",
    )
)

CURRENCY_SYNONYMS: Dict[str, str] = {
    "$": "USD",
    "US$": "USD",
    "DOLLAR": "USD",
    "DOLLARS": "USD",
    "€": "EUR",
    "EURO": "EUR",
    "EUROS": "EUR",
    "£": "GBP",
    "POUND": "GBP",
    "POUNDS": "GBP",
    "STERLING": "GBP",
    "KR": "SEK",
    "KRONA": "SEK",
    "KRONOR": "SEK",
    "KRONE": "NOK",
    "KRONER": "DKK",
}

BILLING_CYCLE_SYNONYMS: Dict[str, str] = {
    "week": "weekly",
    "per week": "weekly",
    "/week": "weekly",
    "/wk": "weekly",
    "month": "monthly",
    "per month": "monthly",
    "/mo": "monthly",
    "/month": "monthly",
    "quarter": "quarterly",
    "per quarter": "quarterly",
    "3 months": "quarterly",
    "year": "yearly",
    "annual": "yearly",
    "annually": "yearly",
    "per year": "yearly",
    "/yr": "yearly",
    "/year": "yearly",
}

CATEGORY_SYNONYMS: Dict[str, str] = {
    "video": "streaming",
    "music": "streaming",
    "saas": "software",
    "developer tools": "software",
    "storage": "cloud",
    "hosting": "cloud",
    "gaming": "entertainment",
    "games": "entertainment",
    "learning": "education",
    "fitness": "health",
    "wellness": "health",
    "media": "news",
    "security": "software",
}


def sanitize_string(value: Any, max_length: int = MAX_INPUT_LENGTH) -> str:
    """Strip markup and script-like fragments, collapse whitespace, truncate.

    Removing one fragment can expose another (``javajavascript:script:``),
    so the pass repeats until the text stops changing; the result is
    therefore idempotent.
    """

    if not isinstance(value, str):
        return ""

    text = value
    while True:
        cleaned = text.strip().replace("\0", "")
        cleaned = _TAG_RE.sub("", cleaned)
        cleaned = _JS_PROTOCOL_RE.sub("", cleaned)
        cleaned = _EVENT_HANDLER_RE.sub("", cleaned)
        cleaned = _WHITESPACE_RE.sub(" ", cleaned)
        cleaned = cleaned[:max_length].strip()
        if cleaned == text:
            return cleaned
        text = cleaned


def contains_suspicious_patterns(value: str) -> bool:
    return any(pattern.search(value) for pattern in SUSPICIOUS_PATTERNS)


def validate_user_input(value: Any) -> ValidationResult:
    """Validate raw user text (URL, service name or free text)."""

    if not isinstance(value, str):
        return ValidationResult(False, "", ["Input must be a string"])

    if not value.strip():
        return ValidationResult(False, "", ["Input cannot be empty"])

    errors: List[str] = []
    if len(value) > MAX_INPUT_LENGTH:
        errors.append(f"Input exceeds maximum length of {MAX_INPUT_LENGTH} characters")

    sanitized = sanitize_string(value)
    if contains_suspicious_patterns(sanitized):
        errors.append("Input contains suspicious patterns")
    if not sanitized:
        errors.append("Input cannot be empty")

    return ValidationResult(not errors, sanitized, errors)


def validate_url(value: Any) -> ValidationResult:
    """Validate a URL, prefixing ``https://`` when no scheme is given."""

    if not isinstance(value, str):
        return ValidationResult(False, "", ["URL must be a string"])

    trimmed = value.strip()
    if not trimmed:
        return ValidationResult(False, "", ["URL cannot be empty"])

    errors: List[str] = []
    if len(trimmed) > MAX_URL_LENGTH:
        errors.append(f"URL exceeds maximum length of {MAX_URL_LENGTH} characters")

    scheme = _SCHEME_RE.match(trimmed)
    if scheme and scheme.group(1).lower() not in {"http", "https"}:
        return ValidationResult(False, trimmed, ["Only HTTP and HTTPS protocols are allowed"])

    candidate = trimmed
    if not candidate.lower().startswith(("http://", "https://")):
        candidate = f"https://{candidate}"

    try:
        parsed = urlparse(candidate)
        hostname = parsed.hostname
        parsed.port  # raises ValueError on a malformed port
    except ValueError:
        return ValidationResult(False, trimmed, ["Invalid URL format"])

    if not hostname or any(char.isspace() for char in candidate):
        return ValidationResult(False, trimmed, ["Invalid URL format"])

    if parsed.scheme not in {"http", "https"}:
        errors.append("Only HTTP and HTTPS protocols are allowed")

    if contains_suspicious_patterns(candidate):
        errors.append("URL contains suspicious patterns")

    return ValidationResult(not errors, candidate, errors)


def validate_url_field(value: Any) -> Optional[str]:
    """Gate a URL claimed by the model through the same checks as user input."""

    if not isinstance(value, str) or not value.strip():
        return None
    result = validate_url(value)
    return result.sanitized_value if result.is_valid else None


def validate_currency(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().upper()
    if normalized in CURRENCIES:
        return normalized
    return CURRENCY_SYNONYMS.get(normalized)


def validate_billing_cycle(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized in BILLING_CYCLES:
        return normalized
    return BILLING_CYCLE_SYNONYMS.get(normalized)


def validate_category(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized in CATEGORIES:
        return normalized
    return CATEGORY_SYNONYMS.get(normalized)


_GROUPED_NUMBER_RE = re.compile(r"^\d{1,3}(?:,\d{3})+(?:\.\d+)?$")
_DECIMAL_COMMA_RE = re.compile(r"^\d+,\d{1,2}$")
_LEADING_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?")
_PRICE_NOISE_RE = re.compile(r"[$€£\s]")


def _round_price(amount: float) -> float:
    quantized = Decimal(repr(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return float(quantized)


def validate_price(value: Any) -> Optional[float]:
    """Coerce a price to a float in ``[0, 10000]`` rounded to cents."""

    if isinstance(value, bool):
        return None

    amount: Optional[float] = None
    if isinstance(value, (int, float)):
        try:
            amount = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        cleaned = _PRICE_NOISE_RE.sub("", value)
        if _GROUPED_NUMBER_RE.match(cleaned):
            cleaned = cleaned.replace(",", "")
        elif _DECIMAL_COMMA_RE.match(cleaned):
            cleaned = cleaned.replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
        match = _LEADING_NUMBER_RE.match(cleaned)
        if not match:
            return None
        amount = float(match.group(0))
    else:
        return None

    if math.isnan(amount) or math.isinf(amount):
        return None
    if amount < 0 or amount > MAX_PRICE:
        return None

    try:
        return _round_price(amount)
    except InvalidOperation:
        return None


def validate_confidence(value: Any) -> float:
    """Clamp to ``[0, 1]``; anything non-numeric counts as no confidence."""

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    try:
        confidence = float(value)
    except OverflowError:
        return 0.0
    if math.isnan(confidence) or math.isinf(confidence):
        return 0.0
    return max(0.0, min(1.0, confidence))


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def validate_pricing_array(value: Any) -> List[PricingTier]:
    if not isinstance(value, list):
        return []

    tiers: List[PricingTier] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        plan = item.get("plan")
        cost = validate_price(item.get("cost"))
        if cost is None or cost <= 0:
            continue
        tiers.append(
            PricingTier(
                plan=sanitize_string(plan, MAX_PLAN_LENGTH) if isinstance(plan, str) else "Standard",
                cost=cost,
                currency=validate_currency(item.get("currency")) or "USD",
                billing_cycle=validate_billing_cycle(_pick(item, "billingCycle", "billing_cycle"))
                or "monthly",
            )
        )
    return tiers


def validate_recommended_plan(value: Any) -> Optional[RecommendedPlan]:
    if not isinstance(value, dict):
        return None

    cost = validate_price(value.get("cost"))
    if cost is None or cost <= 0:
        return None

    reason = value.get("reason")
    return RecommendedPlan(
        cost=cost,
        currency=validate_currency(value.get("currency")) or "USD",
        billing_cycle=validate_billing_cycle(_pick(value, "billingCycle", "billing_cycle"))
        or "monthly",
        reason=sanitize_string(reason, MAX_REASON_LENGTH) if isinstance(reason, str) else "Cheapest available",
    )


def validate_gemini_response(value: Any) -> Optional[GeminiExtractionResponse]:
    """Rebuild the model's JSON answer field by field from validated values."""

    if not isinstance(value, dict):
        return None

    name = value.get("name")
    description = value.get("description")
    return GeminiExtractionResponse(
        name=sanitize_string(name, MAX_NAME_LENGTH) or None if isinstance(name, str) else None,
        description=(
            sanitize_string(description, MAX_DESCRIPTION_LENGTH) or None
            if isinstance(description, str)
            else None
        ),
        pricing=validate_pricing_array(value.get("pricing")),
        recommended_plan=validate_recommended_plan(
            _pick(value, "recommendedPlan", "recommended_plan")
        ),
        category=validate_category(value.get("category")),
        manage_url=validate_url_field(_pick(value, "manageUrl", "manage_url")),
        cancel_url=validate_url_field(_pick(value, "cancelUrl", "cancel_url")),
        logo_url=validate_url_field(_pick(value, "logoUrl", "logo_url")),
        confidence=validate_confidence(value.get("confidence")),
    )


def _read_field(result: Any, snake: str, camel: str) -> Any:
    if isinstance(result, Mapping):
        return _pick(result, snake, camel)
    return getattr(result, snake, None)


def get_required_manual_fields(result: Any) -> List[str]:
    """List the core fields still missing from ``result``, in canonical order.

    Accepts an ``ExtractionResult`` or any mapping using snake_case or
    camelCase keys.
    """

    required: List[str] = []

    if not _read_field(result, "name", "name"):
        required.append("name")

    cost = _read_field(result, "cost", "cost")
    if cost is None or isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost <= 0:
        required.append("cost")

    if not _read_field(result, "currency", "currency"):
        required.append("currency")

    if not _read_field(result, "billing_cycle", "billingCycle"):
        required.append("billingCycle")

    return required


def validate_extraction_result(value: Any) -> bool:
    """Structural check: a known source and a list of manual fields."""

    if value is None:
        return False
    source = _read_field(value, "source", "source")
    manual = _read_field(value, "requires_manual_input", "requiresManualInput")
    return source in EXTRACTION_SOURCES and isinstance(manual, list)


__all__ = [
    "MAX_DESCRIPTION_LENGTH",
    "MAX_INPUT_LENGTH",
    "MAX_NAME_LENGTH",
    "MAX_URL_LENGTH",
    "contains_suspicious_patterns",
    "get_required_manual_fields",
    "sanitize_string",
    "validate_billing_cycle",
    "validate_category",
    "validate_confidence",
    "validate_currency",
    "validate_extraction_result",
    "validate_gemini_response",
    "validate_price",
    "validate_pricing_array",
    "validate_recommended_plan",
    "validate_url",
    "validate_url_field",
    "validate_user_input",
]
