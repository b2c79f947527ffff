"""Classify raw user text into a URL, a service name or a custom subscription.

Examples::

    "https://netflix.com"               -> url, known service
    "spotify.com"                       -> partial_url, known service
    "spotify monthly"                   -> service_name, known service
    "private training for $10 a month"  -> custom subscription

All keyword knowledge lives in the tables at the top of the module so new
hints can be added without touching the control flow.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Optional, Pattern, Tuple
from urllib.parse import urlparse

from extraction.known_services import (
    KNOWN_SERVICES,
    find_by_alias_or_name,
    find_by_url,
    get_known_service,
)
from extraction.models import KnownService, ResolvedInput
from extraction.validators import sanitize_string, validate_price, validate_url, validate_user_input

logger = logging.getLogger(__name__)

# Order matters: the first hint found in the text wins.
BILLING_HINTS: Dict[str, str] = {
    "weekly": "weekly",
    "week": "weekly",
    "per week": "weekly",
    "a week": "weekly",
    "every week": "weekly",
    "monthly": "monthly",
    "month": "monthly",
    "per month": "monthly",
    "a month": "monthly",
    "every month": "monthly",
    "/mo": "monthly",
    "quarterly": "quarterly",
    "quarter": "quarterly",
    "3 months": "quarterly",
    "every 3 months": "quarterly",
    "yearly": "yearly",
    "annual": "yearly",
    "annually": "yearly",
    "year": "yearly",
    "per year": "yearly",
    "a year": "yearly",
    "every year": "yearly",
    "/yr": "yearly",
}

PLAN_HINTS: Tuple[str, ...] = (
    "free",
    "basic",
    "starter",
    "standard",
    "plus",
    "pro",
    "premium",
    "professional",
    "business",
    "enterprise",
    "team",
    "teams",
    "family",
    "individual",
    "student",
    "unlimited",
    "ultimate",
)

CURRENCY_WORDS: Dict[str, str] = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "kr": "SEK",
    "dollar": "USD",
    "dollars": "USD",
    "euro": "EUR",
    "euros": "EUR",
    "pound": "GBP",
    "pounds": "GBP",
    "usd": "USD",
    "eur": "EUR",
    "gbp": "GBP",
    "sek": "SEK",
    "nok": "NOK",
    "dkk": "DKK",
}

CUSTOM_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(word, re.IGNORECASE)
    for word in (
        "training",
        "lesson",
        "class",
        "tutor",
        "gift",
        "allowance",
        "membership",
        "gym",
        "club",
        "donation",
        "support",
        "payment",
        "fee",
        "rent",
        "service",
        "subscription",
    )
)

# Checked in order; the first family that matches decides the category.
CUSTOM_CATEGORY_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    (
        "health",
        re.compile(
            r"gym|fitness|training|workout|yoga|pilates|crossfit|sport|health|medical|doctor|therapy|wellness",
            re.IGNORECASE,
        ),
    ),
    (
        "education",
        re.compile(r"lesson|tutor|class|course|school|learn|education|coaching|teacher", re.IGNORECASE),
    ),
    (
        "entertainment",
        re.compile(r"game|gaming|hobby|fun|club|entertainment|music|movie|concert", re.IGNORECASE),
    ),
    ("finance", re.compile(r"insurance|bank|invest|saving|loan|mortgage|rent|fee|dues", re.IGNORECASE)),
    ("productivity", re.compile(r"work|office|business|professional|tool|service", re.IGNORECASE)),
    ("news", re.compile(r"news|magazine|newspaper|journal|media", re.IGNORECASE)),
)

KNOWN_TLDS = ("com", "org", "net", "io", "co", "app", "so", "us", "ai", "tv", "me", "dev", "cloud")

_NUMBER = r"(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:[.,]\d{1,2})?)"
_SYMBOL_FIRST_RE = re.compile(r"([$€£])\s*" + _NUMBER)
_SYMBOL_SUFFIX_RE = re.compile(_NUMBER + r"\s*([$€£])")
_WORD_SUFFIX_RE = re.compile(
    _NUMBER + r"\s*(dollars?|euros?|pounds?|usd|eur|gbp|sek|nok|dkk|kr)\b", re.IGNORECASE
)
_CONTEXT_NUMBER_RE = re.compile(r"(?:for|costs?|price|at|=)\s*" + _NUMBER, re.IGNORECASE)
_PRICE_INDICATOR_RE = re.compile(
    r"[$€£]|\d+\s*(?:dollars?|euros?|pounds?|usd|eur|gbp|sek|nok|dkk|kr)\b", re.IGNORECASE
)
_BARE_DOMAIN_RE = re.compile(r"^[\w-]+\.[\w.-]+$")
_PARTIAL_URL_TLD_RE = re.compile(r"\.(?:" + "|".join(KNOWN_TLDS) + r")$", re.IGNORECASE)
_URL_TOKEN_RE = re.compile(r"(?:https?://)?(?:www\.)?[\w-]+(?:\.[\w-]+)+(?:/\S*)?", re.IGNORECASE)
_FILLER_RE = re.compile(r"\b(?:for|my|the|a|an|to|of|per)\b", re.IGNORECASE)


def _hint_pattern(hint: str) -> Pattern[str]:
    """Match ``hint`` as a whole token where it starts/ends with a word character."""

    prefix = r"(?<!\w)" if hint[0].isalnum() else ""
    suffix = r"(?!\w)" if hint[-1].isalnum() else ""
    return re.compile(r"\s*" + prefix + re.escape(hint) + suffix + r"\s*", re.IGNORECASE)


# Longest first so "every month" is stripped before "month".
_BILLING_STRIP = tuple(_hint_pattern(hint) for hint in sorted(BILLING_HINTS, key=len, reverse=True))
_PLAN_STRIP = tuple(_hint_pattern(hint) for hint in sorted(PLAN_HINTS, key=len, reverse=True))


def _title_case(text: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in text.split(" ") if word)


def _has_billing_context(lower_text: str) -> bool:
    return any(hint in lower_text for hint in BILLING_HINTS)


def looks_like_url(text: str) -> bool:
    if text.startswith(("http://", "https://")):
        return True
    if _BARE_DOMAIN_RE.match(text):
        return True
    lowered = text.lower()
    return "www." in lowered or ".com" in lowered or ".io" in lowered


def looks_like_partial_url(text: str) -> bool:
    if "." not in text or " " in text:
        return False
    return bool(_PARTIAL_URL_TLD_RE.search(text))


def extract_billing_hint(text: str) -> Optional[str]:
    lowered = text.lower()
    for hint, cycle in BILLING_HINTS.items():
        if hint in lowered:
            return cycle
    return None


def extract_plan_hint(text: str) -> Optional[str]:
    lowered = text.lower()
    for hint in PLAN_HINTS:
        if hint in lowered:
            return hint
    return None


def extract_price(text: str) -> Tuple[Optional[float], Optional[str]]:
    """Pull a price and currency out of free text.

    Precedence: symbol first (``$10``), then a suffix currency (``10 euros``,
    ``10€``), then, only when the text mentions a billing period, a bare
    number after ``for``/``costs``/``price``/``at``/``=``. A bare number
    carries no currency.
    """

    match = _SYMBOL_FIRST_RE.search(text)
    if match:
        return validate_price(match.group(2)), CURRENCY_WORDS[match.group(1)]

    match = _WORD_SUFFIX_RE.search(text)
    if match:
        return validate_price(match.group(1)), CURRENCY_WORDS.get(match.group(2).lower())

    match = _SYMBOL_SUFFIX_RE.search(text)
    if match:
        return validate_price(match.group(1)), CURRENCY_WORDS[match.group(2)]

    if _has_billing_context(text.lower()):
        match = _CONTEXT_NUMBER_RE.search(text)
        if match:
            return validate_price(match.group(1)), None

    return None, None


def clean_service_name(text: str) -> str:
    """Lower-case ``text`` and drop billing and plan hints."""

    cleaned = text.lower()
    for pattern in _BILLING_STRIP + _PLAN_STRIP:
        cleaned = pattern.sub(" ", cleaned)
    return " ".join(cleaned.split())


def is_likely_custom_subscription(text: str) -> bool:
    """Billing or price context, plus a personal-expense keyword or no URL shape."""

    lowered = text.lower()
    has_billing_context = _has_billing_context(lowered)
    has_price_indicator = bool(_PRICE_INDICATOR_RE.search(lowered))
    has_custom_pattern = any(pattern.search(lowered) for pattern in CUSTOM_PATTERNS)

    return (has_billing_context or has_price_indicator) and (
        has_custom_pattern or not looks_like_url(text)
    )


def extract_custom_name(text: str) -> str:
    """``"private training for 10 dollars a month"`` -> ``"Private Training"``."""

    cleaned = _SYMBOL_FIRST_RE.sub(" ", text)
    cleaned = _WORD_SUFFIX_RE.sub(" ", cleaned)
    cleaned = _SYMBOL_SUFFIX_RE.sub(" ", cleaned)
    cleaned = re.sub(r"(?:for|costs?|price|at|=)\s*\d+(?:[.,]\d{1,2})?", " ", cleaned, flags=re.IGNORECASE)
    for pattern in _BILLING_STRIP:
        cleaned = pattern.sub(" ", cleaned)
    cleaned = _FILLER_RE.sub(" ", cleaned)
    return _title_case(" ".join(cleaned.split()))


def detect_custom_category(text: str) -> str:
    for category, pattern in CUSTOM_CATEGORY_PATTERNS:
        if pattern.search(text):
            return category
    return "other"


def construct_service_url(text: str) -> Optional[str]:
    """Best-guess homepage for an unknown service name."""

    slug = re.sub(r"[^a-z0-9]", "", clean_service_name(text))
    if len(slug) < 2:
        return None
    return f"https://www.{slug}.com"


def normalize_url(url: str) -> str:
    normalized = url.strip().strip("\"'")
    if not normalized.startswith(("http://", "https://")):
        normalized = f"https://{normalized}"
    return normalized.rstrip("/")


def _service_url(service: KnownService) -> str:
    return service.pricing_url or f"https://www.{service.domain}"


def _name_from_url(url: str) -> Optional[str]:
    try:
        hostname = urlparse(url).hostname or ""
    except ValueError:
        return None
    label = hostname.lower().removeprefix("www.").split(".")[0]
    return label[:1].upper() + label[1:] if label else None


def _resolve_url(text: str) -> Optional[str]:
    """Normalise ``text`` into a fetchable URL, salvaging a URL token from prose."""

    candidate = normalize_url(text)
    if validate_url(candidate).is_valid:
        return candidate
    token = _URL_TOKEN_RE.search(text)
    if token:
        candidate = normalize_url(token.group(0))
        if validate_url(candidate).is_valid:
            return candidate
    return None


def _resolve_custom(resolved: ResolvedInput, text: str) -> ResolvedInput:
    price, currency = extract_price(text)
    name = extract_custom_name(text)
    return resolved.model_copy(
        update={
            "is_custom_subscription": True,
            "input_type": "service_name",
            "extracted_price": price,
            "extracted_currency": currency,
            "service_name": name if len(name) >= 2 else "Custom Subscription",
            "custom_description": text,
            "url": None,
        }
    )


def _resolve_address(resolved: ResolvedInput, text: str, input_type: str) -> ResolvedInput:
    url = _resolve_url(text)
    service = find_by_url(url) if url else None
    if service:
        return resolved.model_copy(
            update={
                "input_type": input_type,
                "url": url,
                "service_name": service.name,
                "known_service_key": service.key,
            }
        )
    return resolved.model_copy(
        update={
            "input_type": input_type,
            "url": url,
            "service_name": _name_from_url(url) if url else None,
        }
    )


def _resolve_service_name(resolved: ResolvedInput, text: str) -> ResolvedInput:
    cleaned = clean_service_name(text)
    # "YouTube Premium" must hit its own entry before "youtube" loosely
    # matches another alias.
    service = (
        find_by_alias_or_name(text, loose=False)
        or find_by_alias_or_name(cleaned)
        or find_by_alias_or_name(text)
    )
    if service:
        return resolved.model_copy(
            update={
                "input_type": "service_name",
                "service_name": service.name,
                "known_service_key": service.key,
                "url": _service_url(service),
            }
        )
    return resolved.model_copy(
        update={
            "input_type": "service_name",
            "service_name": _title_case(cleaned) or None,
            "url": construct_service_url(text),
        }
    )


def resolve_input(raw_input: str) -> ResolvedInput:
    """Resolve raw user text into a :class:`ResolvedInput`."""

    validation = validate_user_input(raw_input)
    text = validation.sanitized_value if validation.is_valid else sanitize_string(raw_input)

    resolved = ResolvedInput(
        original_input=raw_input if isinstance(raw_input, str) else "",
        billing_hint=extract_billing_hint(text),
        plan_hint=extract_plan_hint(text),
    )

    # Custom detection runs before URL detection: "training for $10 a month"
    # must not be mistaken for a domain.
    if is_likely_custom_subscription(text) and not find_by_alias_or_name(clean_service_name(text)):
        resolved = _resolve_custom(resolved, text)
    elif text.startswith(("http://", "https://")) or "www." in text.lower():
        resolved = _resolve_address(resolved, text, "url")
    elif looks_like_partial_url(text):
        resolved = _resolve_address(resolved, text, "partial_url")
    elif looks_like_url(text):
        resolved = _resolve_address(resolved, text, "url")
    else:
        resolved = _resolve_service_name(resolved, text)

    logger.info(
        "Input resolved",
        extra={
            "operation": "input_resolved",
            "input_type": resolved.input_type,
            "is_custom": resolved.is_custom_subscription,
            "known_service": resolved.known_service_key,
            "has_url": bool(resolved.url),
        },
    )
    return resolved


def get_known_service_data(resolved: ResolvedInput) -> Optional[KnownService]:
    return get_known_service(resolved.known_service_key)


def get_best_url_for_scraping(resolved: ResolvedInput) -> Optional[str]:
    """Prefer the catalog's pricing page over whatever URL the user gave."""

    service = get_known_service_data(resolved)
    if service and service.pricing_url:
        return service.pricing_url
    return resolved.url


__all__ = [
    "BILLING_HINTS",
    "CUSTOM_CATEGORY_PATTERNS",
    "KNOWN_SERVICES",
    "PLAN_HINTS",
    "clean_service_name",
    "construct_service_url",
    "detect_custom_category",
    "extract_billing_hint",
    "extract_custom_name",
    "extract_plan_hint",
    "extract_price",
    "get_best_url_for_scraping",
    "get_known_service_data",
    "is_likely_custom_subscription",
    "looks_like_partial_url",
    "looks_like_url",
    "normalize_url",
    "resolve_input",
]
