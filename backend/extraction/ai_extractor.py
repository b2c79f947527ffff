"""Gemini-backed extraction of subscription details from resolved input."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.gemini_client import GeminiClient, GeminiClientError
from core.retry import RetryPolicy, is_rate_limit_error
from extraction.models import (
    BILLING_CYCLES,
    CATEGORIES,
    CURRENCIES,
    ExtractionAttempt,
    GeminiExtractionResponse,
    PricingTier,
    RecommendedPlan,
    ResolvedInput,
    ScrapedContent,
)
from extraction.validators import validate_gemini_response

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = "subscription_extraction_prompt.txt"
MAX_PROMPT_BODY = 5000
MAX_PROMPT_JSON_LD = 2000
BASE_RETRY_DELAY_MS = 1000


def build_prompt_context(resolved: ResolvedInput, scraped: Optional[ScrapedContent] = None) -> str:
    """Render what we know about the input as ``Label: value`` lines."""

    lines: List[str] = [f'User Input: "{resolved.original_input}"']

    if resolved.service_name:
        lines.append(f"Service Name (detected): {resolved.service_name}")
    if resolved.url:
        lines.append(f"URL: {resolved.url}")
    if resolved.plan_hint:
        lines.append(f"Plan Hint: {resolved.plan_hint}")
    if resolved.billing_hint:
        lines.append(f"Billing Cycle Hint: {resolved.billing_hint}")

    if resolved.is_custom_subscription:
        lines.append("This appears to be a CUSTOM/PERSONAL subscription (not a commercial service).")
        if resolved.extracted_price is not None:
            lines.append(f"Pre-extracted Price: {resolved.extracted_price}")
        if resolved.extracted_currency:
            lines.append(f"Pre-extracted Currency: {resolved.extracted_currency}")

    if scraped is not None:
        if scraped.title:
            lines.append(f"Page Title: {scraped.title}")
        if scraped.description:
            lines.append(f"Page Description: {scraped.description}")
        if scraped.body_text:
            lines.append(f"Page Content (truncated): {scraped.body_text[:MAX_PROMPT_BODY]}")
        if scraped.json_ld:
            structured = json.dumps(scraped.json_ld, default=str, ensure_ascii=False)
            lines.append(f"Structured Data (JSON-LD): {structured[:MAX_PROMPT_JSON_LD]}")

    return "\n".join(lines)


def parse_ai_response(raw_text: str) -> Optional[GeminiExtractionResponse]:
    """Parse and validate model output; ``None`` when nothing usable came back."""

    if not raw_text or not raw_text.strip():
        return None
    try:
        payload = GeminiClient.parse_json_response(raw_text)
    except GeminiClientError as exc:
        logger.warning(
            "Unable to parse Gemini response",
            extra={"operation": "ai_parse", "error": str(exc), "response_preview": raw_text[:500]},
        )
        return None
    try:
        return validate_gemini_response(payload)
    except (ValueError, OverflowError) as exc:
        logger.warning(
            "Gemini response failed validation",
            extra={"operation": "ai_parse", "error": str(exc), "response_preview": raw_text[:500]},
        )
        return None


def _backfill_custom_price(
    response: GeminiExtractionResponse, resolved: ResolvedInput
) -> GeminiExtractionResponse:
    """Keep the user's own price when the model failed to price a custom subscription."""

    if not resolved.is_custom_subscription or resolved.extracted_price is None:
        return response

    currency = resolved.extracted_currency or "USD"
    billing_cycle = resolved.billing_hint or "monthly"
    update: Dict[str, Any] = {}
    if response.recommended_plan is None or not response.recommended_plan.cost:
        update["recommended_plan"] = RecommendedPlan(
            cost=resolved.extracted_price,
            currency=currency,
            billing_cycle=billing_cycle,
            reason="Extracted from user input",
        )
    if not response.pricing:
        update["pricing"] = [
            PricingTier(
                plan="Standard",
                cost=resolved.extracted_price,
                currency=currency,
                billing_cycle=billing_cycle,
            )
        ]
    return response.model_copy(update=update) if update else response


class AIExtractor:
    """Wraps one :class:`GeminiClient` with prompt building, retries and parsing."""

    def __init__(
        self,
        gemini_client: Optional[GeminiClient] = None,
        *,
        base_delay_ms: int = BASE_RETRY_DELAY_MS,
        sleep: Callable[[float], None] = time.sleep,
        template_name: str = PROMPT_TEMPLATE,
    ) -> None:
        self.gemini_client = gemini_client or GeminiClient()
        self.base_delay_ms = base_delay_ms
        self.sleep = sleep
        self.template_name = template_name

    def is_available(self) -> bool:
        return self.gemini_client.is_configured

    def build_prompt(self, resolved: ResolvedInput, scraped: Optional[ScrapedContent] = None) -> str:
        return self.gemini_client.render_prompt(
            self.template_name,
            {
                "context": build_prompt_context(resolved, scraped),
                "currencies": ", ".join(CURRENCIES),
                "billing_cycles": ", ".join(BILLING_CYCLES),
                "categories": ", ".join(CATEGORIES),
            },
        )

    def extract(
        self,
        resolved: ResolvedInput,
        scraped: Optional[ScrapedContent] = None,
        *,
        timeout_ms: int = 15000,
        max_retries: int = 2,
    ) -> Tuple[Optional[GeminiExtractionResponse], ExtractionAttempt]:
        """Ask Gemini for subscription details. Never raises for API failures.

        ``timeout_ms`` bounds the whole call including retries: each request
        gets the remaining budget and no backoff is started that would end
        past it. Rate-limit errors are not retried.
        """

        started = time.perf_counter()

        def finish(
            result: Optional[GeminiExtractionResponse], error: Optional[str] = None
        ) -> Tuple[Optional[GeminiExtractionResponse], ExtractionAttempt]:
            attempt = ExtractionAttempt(
                method="ai",
                success=result is not None,
                error=error,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            logger.info(
                "AI extraction finished",
                extra={
                    "operation": "ai_extraction",
                    "success": attempt.success,
                    "error": error,
                    "duration_ms": attempt.duration_ms,
                    "confidence": result.confidence if result else None,
                    "service_name": resolved.service_name,
                },
            )
            return result, attempt

        if not self.is_available():
            return finish(None, "Gemini AI not configured")

        try:
            prompt = self.build_prompt(resolved, scraped)
        except GeminiClientError as exc:
            return finish(None, str(exc))

        deadline = time.monotonic() + timeout_ms / 1000.0

        def call() -> str:
            remaining_ms = int((deadline - time.monotonic()) * 1000)
            if remaining_ms <= 0:
                raise GeminiClientError(f"AI extraction timed out after {timeout_ms}ms")
            return self.gemini_client.generate_text(prompt=prompt, timeout_ms=remaining_ms)

        policy = RetryPolicy(
            max_retries=max_retries,
            base_delay_ms=self.base_delay_ms,
            is_non_retryable=is_rate_limit_error,
            sleep=self.sleep,
        )

        try:
            raw_text = policy.call(call, deadline=deadline)
        except Exception as exc:  # noqa: BLE001 - every API failure becomes a failed attempt
            error = str(exc)
            if is_rate_limit_error(exc) and "rate limit" not in error.lower():
                error = f"Rate limit: {error}"
            return finish(None, error)

        parsed = parse_ai_response(raw_text)
        if parsed is None:
            return finish(None, "Failed to parse AI response")

        return finish(_backfill_custom_price(parsed, resolved))


__all__ = ["AIExtractor", "build_prompt_context", "parse_ai_response"]
