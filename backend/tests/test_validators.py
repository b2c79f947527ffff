import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

BACKEND_ROOT = PROJECT_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from extraction import validators  # noqa: E402
from extraction.models import BILLING_CYCLES, CURRENCIES  # noqa: E402

ODD_VALUES = [None, 0, -1, 3.5, float("nan"), float("inf"), True, "", "abc", [], [1, 2], {}, {"a": 1}, object(), 10**400, -(10**400)]


@pytest.mark.parametrize(
    "raw",
    [
        "  Netflix  ",
        "<b>Spotify</b> premium",
        "javajavascript:script:alert(1)",
        "onclick=doThing() hello",
        "a\0b\tc\n\nd",
        "<scr<script>ipt>x</script>",
        "x" * 5000,
        "",
    ],
)
def test_sanitize_string_is_idempotent(raw):
    once = validators.sanitize_string(raw)
    assert validators.sanitize_string(once) == once


def test_sanitize_string_strips_markup_and_truncates():
    assert validators.sanitize_string("<i>Hulu</i>   basic") == "Hulu basic"
    assert validators.sanitize_string("javascript:alert(1)") == "alert(1)"
    assert len(validators.sanitize_string("y" * 300, validators.MAX_NAME_LENGTH)) == 200
    assert validators.sanitize_string(42) == ""


def test_validate_user_input_reports_reasons():
    assert validators.validate_user_input(None).errors == ["Input must be a string"]
    assert not validators.validate_user_input("   ").is_valid
    too_long = validators.validate_user_input("a" * 2001)
    assert not too_long.is_valid
    assert any("maximum length" in error for error in too_long.errors)
    suspicious = validators.validate_user_input("document.cookie")
    assert "Input contains suspicious patterns" in suspicious.errors

    ok = validators.validate_user_input("  spotify  monthly ")
    assert ok.is_valid
    assert ok.sanitized_value == "spotify monthly"


def test_validate_url_adds_scheme_and_rejects_other_protocols():
    result = validators.validate_url("netflix.com/plans")
    assert result.is_valid
    assert result.sanitized_value == "https://netflix.com/plans"

    assert not validators.validate_url("ftp://example.com").is_valid
    assert not validators.validate_url("https://exa mple.com").is_valid
    assert not validators.validate_url("").is_valid
    assert validators.validate_url_field("javascript:alert(1)") is None
    assert validators.validate_url_field("https://example.com/cancel") == "https://example.com/cancel"


@pytest.mark.parametrize("value", ODD_VALUES)
def test_validators_are_total(value):
    price = validators.validate_price(value)
    assert price is None or 0 <= price <= validators.MAX_PRICE
    assert validators.validate_currency(value) in (None, *CURRENCIES)
    assert validators.validate_billing_cycle(value) in (None, *BILLING_CYCLES)
    assert 0.0 <= validators.validate_confidence(value) <= 1.0
    assert validators.validate_pricing_array(value) == [] or isinstance(value, list)
    assert validators.validate_gemini_response(value) is None or isinstance(value, dict)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (9.999, 10.0),
        ("$12.50", 12.5),
        ("€9,99", 9.99),
        ("1,234.56", 1234.56),
        ("  15 ", 15.0),
        ("-3", None),
        (10001, None),
        ("free", None),
        (True, None),
    ],
)
def test_validate_price(raw, expected):
    assert validators.validate_price(raw) == expected


def test_synonyms_are_normalised():
    assert validators.validate_currency("dollars") == "USD"
    assert validators.validate_currency("eur") == "EUR"
    assert validators.validate_billing_cycle("Annual") == "yearly"
    assert validators.validate_billing_cycle("/mo") == "monthly"
    assert validators.validate_category("Music") == "streaming"
    assert validators.validate_category("gardening") is None
    assert validators.validate_confidence(1.7) == 1.0
    assert validators.validate_confidence(-0.2) == 0.0


def test_validate_gemini_response_rebuilds_fields():
    response = validators.validate_gemini_response(
        {
            "name": "<b>Acme</b>",
            "pricing": [
                {"plan": "Basic", "cost": "4.99", "currency": "usd", "billingCycle": "month"},
                {"plan": "Broken", "cost": "n/a"},
            ],
            "recommendedPlan": {"cost": 4.99, "currency": "$", "billingCycle": "monthly"},
            "category": "SaaS",
            "cancelUrl": "javascript:void(0)",
            "manageUrl": "acme.com/account",
            "confidence": "high",
        }
    )

    assert response.name == "Acme"
    assert len(response.pricing) == 1
    assert response.pricing[0].billing_cycle == "monthly"
    assert response.recommended_plan.currency == "USD"
    assert response.category == "software"
    assert response.cancel_url is None
    assert response.manage_url == "https://acme.com/account"
    assert response.confidence == 0.0


def test_get_required_manual_fields_accepts_mappings():
    assert validators.get_required_manual_fields({}) == ["name", "cost", "currency", "billingCycle"]
    assert validators.get_required_manual_fields(
        {"name": "Gym", "cost": 0, "currency": "SEK", "billingCycle": "monthly"}
    ) == ["cost"]
    assert validators.get_required_manual_fields(
        {"name": "Gym", "cost": 40, "currency": "SEK", "billing_cycle": "monthly"}
    ) == []


def test_validate_extraction_result():
    assert validators.validate_extraction_result({"source": "ai", "requiresManualInput": []})
    assert not validators.validate_extraction_result({"source": "guess", "requiresManualInput": []})
    assert not validators.validate_extraction_result(None)
