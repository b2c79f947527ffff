import json
import pathlib
import sys
import time

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

BACKEND_ROOT = PROJECT_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from core.gemini_client import GeminiClient  # noqa: E402
from extraction.ai_extractor import AIExtractor, build_prompt_context, parse_ai_response  # noqa: E402
from extraction.models import ResolvedInput, ScrapedContent  # noqa: E402

AI_PAYLOAD = {
    "name": "Acme Music",
    "description": "Music streaming.",
    "pricing": [
        {"plan": "Individual", "cost": 9.99, "currency": "USD", "billingCycle": "monthly"},
        {"plan": "Family", "cost": 15.99, "currency": "USD", "billingCycle": "monthly"},
    ],
    "recommendedPlan": {"cost": 9.99, "currency": "USD", "billingCycle": "monthly", "reason": "Cheapest"},
    "category": "streaming",
    "manageUrl": "https://acme.test/account",
    "cancelUrl": None,
    "logoUrl": None,
    "confidence": 0.85,
}


class _DummyModels:
    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.calls = 0

    def generate_content(self, **kwargs):  # noqa: ANN001
        self.calls += 1
        outcome = self._outcomes[min(self.calls, len(self._outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome

        class _Response:
            text = outcome

        return _Response()


class _DummyClient:
    def __init__(self, models):
        self.models = models


def _extractor(monkeypatch, outcomes, sleeps=None):
    models = _DummyModels(outcomes)
    monkeypatch.setattr(GeminiClient, "_get_client", lambda self: _DummyClient(models))
    sleeps = sleeps if sleeps is not None else []
    extractor = AIExtractor(GeminiClient(api_key="test-key"), sleep=sleeps.append)
    return extractor, models


def _resolved(**overrides):
    data = {"original_input": "acme music", "service_name": "Acme Music", "url": "https://acme.test"}
    data.update(overrides)
    return ResolvedInput(**data)


def test_rate_limit_errors_are_not_retried(monkeypatch):
    sleeps = []
    extractor, models = _extractor(monkeypatch, [RuntimeError("429 rate limit exceeded")], sleeps)

    started = time.perf_counter()
    result, attempt = extractor.extract(_resolved(), timeout_ms=15000, max_retries=2)
    elapsed = time.perf_counter() - started

    assert result is None
    assert models.calls == 1
    assert sleeps == []
    assert elapsed < 1.0
    assert attempt.method == "ai"
    assert not attempt.success
    assert "rate limit" in attempt.error.lower()


def test_transient_errors_are_retried(monkeypatch):
    sleeps = []
    extractor, models = _extractor(
        monkeypatch, [RuntimeError("503 unavailable"), json.dumps(AI_PAYLOAD)], sleeps
    )

    result, attempt = extractor.extract(_resolved(), timeout_ms=15000, max_retries=2)

    assert attempt.success
    assert models.calls == 2
    assert sleeps == [1.0]
    assert result.recommended_plan.cost == 9.99
    assert result.confidence == 0.85


def test_fenced_response_with_prose_is_parsed(monkeypatch):
    raw = "Here you go:\n```json\n" + json.dumps(AI_PAYLOAD) + "\n```"
    extractor, _ = _extractor(monkeypatch, [raw])

    result, attempt = extractor.extract(_resolved())

    assert attempt.success
    assert result.name == "Acme Music"
    assert result.manage_url == "https://acme.test/account"


def test_unparsable_response_is_a_failed_attempt(monkeypatch):
    extractor, _ = _extractor(monkeypatch, ["I could not find pricing, sorry."])

    result, attempt = extractor.extract(_resolved())

    assert result is None
    assert attempt.error == "Failed to parse AI response"


def test_missing_api_key_is_reported(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    extractor = AIExtractor(GeminiClient())

    result, attempt = extractor.extract(_resolved())

    assert not extractor.is_available()
    assert result is None
    assert attempt.error == "Gemini AI not configured"


def test_custom_subscription_price_is_backfilled(monkeypatch):
    payload = dict(AI_PAYLOAD, pricing=[], recommendedPlan=None, confidence=0.4)
    extractor, _ = _extractor(monkeypatch, [json.dumps(payload)])
    resolved = _resolved(
        original_input="piano lesson 25 euros a week",
        service_name="Piano Lesson",
        url=None,
        is_custom_subscription=True,
        extracted_price=25.0,
        extracted_currency="EUR",
        billing_hint="weekly",
    )

    result, _ = extractor.extract(resolved)

    assert result.recommended_plan.cost == 25.0
    assert result.recommended_plan.currency == "EUR"
    assert result.recommended_plan.billing_cycle == "weekly"
    assert [tier.plan for tier in result.pricing] == ["Standard"]


def test_prompt_context_is_capped():
    scraped = ScrapedContent(
        title="Acme",
        description="Music",
        body_text="x" * 9000,
        json_ld=[{"blob": "y" * 5000}],
    )

    context = build_prompt_context(_resolved(plan_hint="premium", billing_hint="yearly"), scraped)

    assert 'User Input: "acme music"' in context
    assert "Plan Hint: premium" in context
    assert "Billing Cycle Hint: yearly" in context
    assert "x" * 5000 in context and "x" * 5001 not in context
    assert "y" * 2001 not in context


def test_prompt_template_renders(monkeypatch):
    extractor, _ = _extractor(monkeypatch, ["{}"])

    prompt = extractor.build_prompt(_resolved())

    assert "Service Name (detected): Acme Music" in prompt
    assert '"recommendedPlan": {' in prompt
    assert "USD, EUR, GBP, SEK, NOK, DKK" in prompt


def test_parse_ai_response_handles_empty_text():
    assert parse_ai_response("") is None
    assert parse_ai_response("[1, 2, 3]") is None


def test_parse_ai_response_survives_huge_numbers():
    raw = json.dumps(
        dict(
            AI_PAYLOAD,
            confidence=10**400,
            pricing=[{"plan": "Max", "cost": 10**400, "currency": "USD", "billingCycle": "monthly"}],
        )
    )

    result = parse_ai_response(raw)

    assert result.confidence == 0.0
    assert result.pricing == []
    assert result.recommended_plan.cost == 9.99
    long_number = parse_ai_response('{"confidence": 1' + "0" * 5000 + "}")
    assert long_number is None or long_number.confidence == 0.0
