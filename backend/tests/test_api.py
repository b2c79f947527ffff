import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

BACKEND_ROOT = PROJECT_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from app import create_app  # noqa: E402
from extraction.models import ExtractionConfig  # noqa: E402
from extraction.pipeline import SubscriptionExtractor  # noqa: E402


class OfflineAI:
    def is_available(self) -> bool:
        return False

    def extract(self, *args, **kwargs):  # noqa: ANN001
        raise AssertionError("AI extractor must not be called")


def failing_scrape(url, timeout_ms):  # noqa: ANN001
    raise AssertionError("scraper must not be called")


class ExplodingExtractor(SubscriptionExtractor):
    def extract(self, user_input, config=None, **overrides):  # noqa: ANN001
        raise RuntimeError("database on fire")


@pytest.fixture()
def client():
    extractor = SubscriptionExtractor(
        OfflineAI(), scrape_fn=failing_scrape, config=ExtractionConfig(scraper_enabled=False)
    )
    app = create_app(extractor=extractor)
    app.config["TESTING"] = True
    return app.test_client()


def test_health_check(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.get_json()["status"] == "healthy"


def test_parse_known_service(client):
    response = client.post("/api/subscriptions/parse", json={"input": "netflix"})

    body = response.get_json()
    assert response.status_code == 200
    assert body["data"]["name"] == "Netflix"
    assert body["data"]["requiresManualInput"] == []
    assert body["message"] == "Successfully extracted subscription info (via known_service)"
    assert body["meta"] == {
        "source": "known_service",
        "confidence": 0.95,
        "aiAvailable": False,
        "attemptsCount": 0,
    }


def test_parse_accepts_legacy_url_field(client):
    response = client.post("/api/subscriptions/parse", json={"url": "gym membership 40 euros a month"})

    body = response.get_json()
    assert response.status_code == 200
    assert body["data"]["isCustomSubscription"] is True
    assert body["data"]["currency"] == "EUR"
    assert body["data"]["notes"] == "gym membership 40 euros a month"


def test_parse_asks_for_missing_fields(client):
    response = client.post("/api/subscriptions/parse", json={"input": "https://www.acmewidgets.com"})

    body = response.get_json()
    assert body["meta"]["source"] == "manual"
    assert body["message"] == "Please provide: name, cost, currency, billingCycle"


@pytest.mark.parametrize(
    "payload, error",
    [
        ({}, "Input is required (URL or service name)"),
        ({"input": 42}, "Input is required (URL or service name)"),
        ({"input": "   "}, "Input cannot be empty"),
        ({"input": "a" * 2001}, "Input exceeds maximum length"),
    ],
)
def test_parse_rejects_bad_payloads(client, payload, error):
    response = client.post("/api/subscriptions/parse", json=payload)

    assert response.status_code == 400
    assert response.get_json() == {"error": error}


def test_parse_hides_internal_errors():
    app = create_app(extractor=ExplodingExtractor(OfflineAI(), scrape_fn=failing_scrape))
    response = app.test_client().post("/api/subscriptions/parse", json={"input": "netflix"})

    body = response.get_json()
    assert response.status_code == 500
    assert body["error"] == "Failed to extract subscription information"
    assert "database" not in response.get_data(as_text=True)
    assert body["data"]["requiresManualInput"] == ["name", "cost", "currency", "billingCycle"]


def test_capabilities(client):
    response = client.get("/api/subscriptions/capabilities")

    assert response.get_json() == {"aiAvailable": False, "scraperEnabled": False}


def test_unknown_route_returns_json_404(client):
    response = client.get("/api/nope")

    assert response.status_code == 404
    assert response.get_json() == {"error": "Endpoint not found"}
