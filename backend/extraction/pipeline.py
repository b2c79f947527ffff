"""Subscription extraction pipeline.

Stages run in a fixed priority order and the first one that produces a
usable answer wins::

    invalid input        -> manual fallback
    custom subscription  -> built from the user's own words
    known service        -> catalog, optionally refreshed by Gemini
    unknown with a URL   -> scrape for context, then Gemini
    scraper only         -> regex extraction from the page
    nothing worked       -> manual fallback

Each stage returns its outcome together with the attempts it made.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from extraction import scraper
from extraction.ai_extractor import AIExtractor
from extraction.input_resolver import (
    detect_custom_category,
    get_best_url_for_scraping,
    get_known_service_data,
    resolve_input,
)
from extraction.models import (
    CORE_FIELDS,
    DEFAULT_CONFIG,
    ExtractionAttempt,
    ExtractionConfig,
    ExtractionResult,
    GeminiExtractionResponse,
    KnownService,
    PriceTier,
    ResolvedInput,
    ScrapedContent,
    ScraperExtraction,
)
from extraction.validators import get_required_manual_fields, validate_user_input

logger = logging.getLogger(__name__)

Attempts = Tuple[ExtractionAttempt, ...]
ScrapeFn = Callable[[str, int], Tuple[Optional[ScrapedContent], ExtractionAttempt]]
ConfigInput = Union[ExtractionConfig, Mapping[str, Any], None]

KNOWN_SERVICE_CONFIDENCE = 0.95
SCRAPER_CONFIDENCE = 0.5
CUSTOM_PRICED_CONFIDENCE = 0.9
CUSTOM_UNPRICED_CONFIDENCE = 0.3
LOW_CONFIDENCE_AI_DISCOUNT = 0.8
MAX_SCRAPE_CANDIDATES = 3

MONTHLY_FACTORS: Dict[str, float] = {
    "weekly": 4.33,
    "monthly": 1.0,
    "quarterly": 1 / 3,
    "yearly": 1 / 12,
}


def normalize_to_monthly(cost: float, billing_cycle: str) -> float:
    return cost * MONTHLY_FACTORS.get(billing_cycle, 1.0)


def _select_catalog_tier(service: KnownService, billing_hint: Optional[str]) -> Optional[PriceTier]:
    """Cheapest tier by monthly equivalent, unless a tier matches the billing hint."""

    if not service.typical_prices:
        return None
    if billing_hint:
        for tier in service.typical_prices:
            if tier.billing_cycle == billing_hint:
                return tier
    return min(service.typical_prices, key=lambda tier: normalize_to_monthly(tier.cost, tier.billing_cycle))


def _ai_plan(ai: GeminiExtractionResponse) -> Tuple[Optional[float], Optional[str], Optional[str]]:
    """Cost, currency and cycle of the model's recommendation (or its cheapest tier)."""

    if ai.recommended_plan is not None and ai.recommended_plan.cost:
        plan = ai.recommended_plan
        return plan.cost, plan.currency, plan.billing_cycle
    if ai.pricing:
        tier = min(ai.pricing, key=lambda item: normalize_to_monthly(item.cost, item.billing_cycle))
        return tier.cost, tier.currency, tier.billing_cycle
    return None, None, None


def _finalize(result: ExtractionResult, *, max_missing: int) -> ExtractionResult:
    """Recompute ``requires_manual_input`` and derive ``success`` from it."""

    missing = get_required_manual_fields(result)
    return result.model_copy(
        update={"requires_manual_input": missing, "success": len(missing) <= max_missing}
    )


# ---------------------------------------------------------------------------
# Result builders
# ---------------------------------------------------------------------------
def build_manual_fallback(
    resolved: ResolvedInput, attempts: Sequence[ExtractionAttempt] = (), error: Optional[str] = None
) -> ExtractionResult:
    """Every core field left for the user; the guessed name stays in ``resolved_input``."""

    return ExtractionResult(
        success=False,
        source="manual",
        confidence=0.0,
        attempts=list(attempts),
        description=error,
        requires_manual_input=list(CORE_FIELDS),
        resolved_input=resolved,
    )


def build_custom_result(resolved: ResolvedInput) -> ExtractionResult:
    has_price = resolved.extracted_price is not None and resolved.extracted_price > 0
    result = ExtractionResult(
        success=False,
        source="manual",
        confidence=CUSTOM_PRICED_CONFIDENCE if has_price else CUSTOM_UNPRICED_CONFIDENCE,
        name=resolved.service_name,
        description=resolved.custom_description,
        cost=resolved.extracted_price,
        # No currency token means no currency; the user picks one.
        currency=resolved.extracted_currency,
        billing_cycle=resolved.billing_hint or "monthly",
        category=detect_custom_category(resolved.original_input),
        resolved_input=resolved,
    )
    return _finalize(result, max_missing=0)


def build_known_service_result(resolved: ResolvedInput, service: KnownService) -> ExtractionResult:
    tier = _select_catalog_tier(service, resolved.billing_hint)
    result = ExtractionResult(
        success=False,
        source="known_service",
        confidence=KNOWN_SERVICE_CONFIDENCE,
        name=service.name,
        description=f"{service.name} subscription",
        cost=tier.cost if tier else None,
        currency=service.default_currency,
        billing_cycle=tier.billing_cycle if tier else service.default_billing_cycle,
        category=service.category,
        logo_url=service.logo_url,
        manage_url=service.manage_url,
        cancel_url=service.cancel_url,
        resolved_input=resolved,
    )
    return _finalize(result, max_missing=0)


def build_ai_result(
    resolved: ResolvedInput, ai: GeminiExtractionResponse, attempts: Sequence[ExtractionAttempt]
) -> ExtractionResult:
    cost, currency, billing_cycle = _ai_plan(ai)
    result = ExtractionResult(
        success=False,
        source="ai",
        confidence=ai.confidence,
        attempts=list(attempts),
        name=ai.name or resolved.service_name,
        description=ai.description,
        cost=cost,
        currency=currency,
        billing_cycle=billing_cycle,
        category=ai.category,
        logo_url=ai.logo_url,
        manage_url=ai.manage_url,
        cancel_url=ai.cancel_url,
        resolved_input=resolved,
    )
    return _finalize(result, max_missing=1)


def build_scraper_result(
    resolved: ResolvedInput, data: ScraperExtraction, attempts: Sequence[ExtractionAttempt]
) -> ExtractionResult:
    result = ExtractionResult(
        success=False,
        source="scraper",
        confidence=SCRAPER_CONFIDENCE,
        attempts=list(attempts),
        name=data.name or resolved.service_name,
        cost=data.cost,
        currency=data.currency,
        billing_cycle=data.billing_cycle,
        logo_url=data.logo_url,
        manage_url=data.manage_url,
        cancel_url=data.cancel_url,
        resolved_input=resolved,
    )
    return _finalize(result, max_missing=2)


def merge_known_with_ai(
    known: ExtractionResult, ai: GeminiExtractionResponse, attempts: Sequence[ExtractionAttempt]
) -> ExtractionResult:
    """Prices from the model, identity from the catalog; confidence never drops."""

    cost, currency, billing_cycle = _ai_plan(ai)
    merged = known.model_copy(
        update={
            "source": "ai",
            "attempts": list(attempts),
            "cost": cost or known.cost,
            "currency": currency or known.currency,
            "billing_cycle": billing_cycle or known.billing_cycle,
            "description": ai.description or known.description,
            "logo_url": known.logo_url or ai.logo_url,
            "manage_url": known.manage_url or ai.manage_url,
            "cancel_url": known.cancel_url or ai.cancel_url,
            "confidence": max(known.confidence, ai.confidence),
        }
    )
    return _finalize(merged, max_missing=1)


def merge_scraper_with_ai(
    scraped: ExtractionResult, ai: GeminiExtractionResponse, attempts: Sequence[ExtractionAttempt]
) -> ExtractionResult:
    """Scraper fields first; the low-confidence model only fills the gaps."""

    cost, currency, billing_cycle = _ai_plan(ai)
    merged = scraped.model_copy(
        update={
            "attempts": list(attempts),
            "name": scraped.name or ai.name,
            "description": scraped.description or ai.description,
            "cost": scraped.cost or cost,
            "currency": scraped.currency or currency,
            "billing_cycle": scraped.billing_cycle or billing_cycle,
            "category": scraped.category or ai.category,
            "logo_url": scraped.logo_url or ai.logo_url,
            "manage_url": scraped.manage_url or ai.manage_url,
            "cancel_url": scraped.cancel_url or ai.cancel_url,
            "confidence": max(scraped.confidence, ai.confidence * LOW_CONFIDENCE_AI_DISCOUNT),
        }
    )
    return _finalize(merged, max_missing=2)


def _as_config(base: ExtractionConfig, config: ConfigInput, overrides: Dict[str, Any]) -> ExtractionConfig:
    if isinstance(config, ExtractionConfig):
        resolved = config
    else:
        resolved = base.merged(dict(config or {}))
    return resolved.merged(overrides)


class SubscriptionExtractor:
    """Runs the extraction stages with injected collaborators.

    ``ai_extractor`` owns the Gemini client and ``scrape_fn`` performs the
    page fetch; both default to the real implementations. One instance can
    serve concurrent requests: it holds no per-request state.
    """

    def __init__(
        self,
        ai_extractor: Optional[AIExtractor] = None,
        *,
        scrape_fn: Optional[ScrapeFn] = None,
        config: Optional[ExtractionConfig] = None,
    ) -> None:
        self.ai_extractor = ai_extractor or AIExtractor()
        self.scrape_fn: ScrapeFn = scrape_fn or scraper.scrape
        self.config = config or DEFAULT_CONFIG

    def is_ai_available(self) -> bool:
        return self.ai_extractor.is_available()

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------
    def _scrape_candidates(self, url: str, config: ExtractionConfig) -> Tuple[Optional[ScrapedContent], Attempts]:
        """Try pricing-page candidates one at a time; first success wins."""

        attempts: Attempts = ()
        for candidate in scraper.get_pricing_page_urls(url)[:MAX_SCRAPE_CANDIDATES]:
            content, attempt = self.scrape_fn(candidate, config.scraper_timeout_ms)
            attempts += (attempt,)
            if content is not None:
                return content, attempts
        return None, attempts

    def _call_ai(
        self, resolved: ResolvedInput, scraped: Optional[ScrapedContent], config: ExtractionConfig
    ) -> Tuple[Optional[GeminiExtractionResponse], Attempts]:
        result, attempt = self.ai_extractor.extract(
            resolved, scraped, timeout_ms=config.ai_timeout_ms, max_retries=config.max_retries
        )
        return result, (attempt,)

    def _ai_usable(self, config: ExtractionConfig) -> bool:
        return config.ai_enabled and self.is_ai_available()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _known_service_stage(
        self, resolved: ResolvedInput, service: KnownService, config: ExtractionConfig
    ) -> ExtractionResult:
        known = build_known_service_result(resolved, service)
        if not known.requires_manual_input:
            _log_path("known_service_complete", resolved)
            return known

        if not self._ai_usable(config):
            _log_path("known_service_partial", resolved)
            return known

        _log_path("known_service_ai_enhance", resolved)
        scraped: Optional[ScrapedContent] = None
        attempts: Attempts = ()
        url = get_best_url_for_scraping(resolved)
        if url and config.scraper_enabled:
            scraped, attempts = self._scrape_candidates(url, config)

        ai, ai_attempts = self._call_ai(resolved, scraped, config)
        attempts += ai_attempts

        if ai is not None and ai.confidence >= config.ai_confidence_threshold:
            return merge_known_with_ai(known, ai, attempts)
        return known.model_copy(update={"attempts": list(attempts)})

    def _unknown_service_stage(
        self, resolved: ResolvedInput, config: ExtractionConfig
    ) -> Tuple[Optional[ExtractionResult], Optional[ScrapedContent], Attempts]:
        """Scrape for context, then ask the model.

        Returns ``(result, scraped, attempts)``; ``result`` is ``None`` when
        the model produced nothing and the scraper-only stage should run.
        """

        _log_path("ai_with_scrape", resolved)
        scraped: Optional[ScrapedContent] = None
        attempts: Attempts = ()
        if config.scraper_enabled:
            scraped, attempts = self._scrape_candidates(resolved.url, config)

        ai, ai_attempts = self._call_ai(resolved, scraped, config)
        attempts += ai_attempts

        if ai is None:
            return None, scraped, attempts

        if ai.confidence >= config.ai_confidence_threshold:
            return build_ai_result(resolved, ai, attempts), scraped, attempts

        if scraped is not None:
            data = scraper.extract_from_scraped_content(scraped, resolved.url)
            return merge_scraper_with_ai(build_scraper_result(resolved, data, attempts), ai, attempts), scraped, attempts

        return build_ai_result(resolved, ai, attempts), scraped, attempts

    def _scraper_stage(
        self,
        resolved: ResolvedInput,
        config: ExtractionConfig,
        scraped: Optional[ScrapedContent],
        attempts: Attempts,
        *,
        already_tried: bool,
    ) -> Tuple[Optional[ExtractionResult], Attempts]:
        if scraped is None and not already_tried:
            scraped, scrape_attempts = self._scrape_candidates(resolved.url, config)
            attempts += scrape_attempts
        if scraped is None:
            return None, attempts

        _log_path("scraper_only", resolved)
        data = scraper.extract_from_scraped_content(scraped, resolved.url)
        return build_scraper_result(resolved, data, attempts), attempts

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def extract(self, user_input: Any, config: ConfigInput = None, **overrides: Any) -> ExtractionResult:
        """Extract subscription details from ``user_input``.

        Always returns an :class:`ExtractionResult`; network, model and
        parsing failures show up as failed attempts, never as exceptions.
        ``config`` may be an ``ExtractionConfig`` or a partial mapping, and
        keyword overrides (``ai_enabled=False`` or ``aiEnabled=False``) are
        applied on top.
        """

        settings = _as_config(self.config, config, overrides)
        result = self._run(user_input, settings)
        logger.info(
            "Extraction finished",
            extra={
                "operation": "pipeline_result",
                "success": result.success,
                "source": result.source,
                "confidence": result.confidence,
                "requires_manual_input": result.requires_manual_input,
                "attempt_count": len(result.attempts),
            },
        )
        return result

    def _run(self, user_input: Any, config: ExtractionConfig) -> ExtractionResult:
        validation = validate_user_input(user_input)
        if not validation.is_valid:
            resolved = ResolvedInput(original_input=user_input if isinstance(user_input, str) else "")
            _log_path("invalid_input", resolved)
            return build_manual_fallback(resolved, error=f"Invalid input: {', '.join(validation.errors)}")

        resolved = resolve_input(validation.sanitized_value)

        if resolved.is_custom_subscription:
            _log_path("custom_subscription", resolved)
            return build_custom_result(resolved)

        service = get_known_service_data(resolved)
        if service is not None:
            return self._known_service_stage(resolved, service, config)

        scraped: Optional[ScrapedContent] = None
        attempts: Attempts = ()
        scrape_tried = False
        if self._ai_usable(config) and resolved.url:
            result, scraped, attempts = self._unknown_service_stage(resolved, config)
            if result is not None:
                return result
            scrape_tried = config.scraper_enabled

        if config.scraper_enabled and resolved.url:
            result, attempts = self._scraper_stage(
                resolved, config, scraped, attempts, already_tried=scrape_tried
            )
            if result is not None:
                return result

        _log_path("manual_fallback", resolved)
        return build_manual_fallback(resolved, attempts)


def _log_path(path: str, resolved: ResolvedInput) -> None:
    logger.info(
        f"Pipeline path: {path}",
        extra={
            "operation": "pipeline_path",
            "path": path,
            "input_type": resolved.input_type,
            "known_service": resolved.known_service_key,
        },
    )


def extract_subscription(
    user_input: Any,
    config: ConfigInput = None,
    *,
    extractor: Optional[SubscriptionExtractor] = None,
    **overrides: Any,
) -> ExtractionResult:
    """Convenience entry point; builds a default extractor when none is given."""

    return (extractor or SubscriptionExtractor()).extract(user_input, config, **overrides)


def is_ai_available(extractor: Optional[SubscriptionExtractor] = None) -> bool:
    return (extractor or SubscriptionExtractor()).is_ai_available()


def to_parser_subscription_data(result: ExtractionResult) -> Dict[str, Any]:
    """Flatten a result into the field layout older API consumers expect."""

    is_custom = bool(result.resolved_input and result.resolved_input.is_custom_subscription)
    return {
        "name": result.name or None,
        "cost": result.cost or None,
        "currency": result.currency or None,
        "billingCycle": result.billing_cycle or None,
        "logoUrl": result.logo_url or None,
        "cancelUrl": result.cancel_url or None,
        "manageUrl": result.manage_url or None,
        "category": result.category or None,
        "notes": result.description if is_custom and result.description else None,
        "requiresManualInput": result.requires_manual_input,
        "source": result.source,
        "confidence": result.confidence,
        "description": result.description or None,
        "isCustomSubscription": is_custom,
    }


__all__ = [
    "SubscriptionExtractor",
    "build_ai_result",
    "build_custom_result",
    "build_known_service_result",
    "build_manual_fallback",
    "build_scraper_result",
    "extract_subscription",
    "is_ai_available",
    "merge_known_with_ai",
    "merge_scraper_with_ai",
    "normalize_to_monthly",
    "to_parser_subscription_data",
]
