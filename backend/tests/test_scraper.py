import pathlib
import sys

import pytest
import requests

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

BACKEND_ROOT = PROJECT_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from extraction import scraper  # noqa: E402
from extraction.models import ScrapedContent, ScrapedLink  # noqa: E402

PRICING_HTML = """
<html>
  <head>
    <title>Acme Music | Plans and pricing</title>
    <meta property="og:site_name" content="Acme Music">
    <meta property="og:image" content="/static/logo.png">
    <meta name="description" content="Stream everything.">
    <script type="application/ld+json">{"@type": "Product", "name": "Acme Music"}</script>
    <script type="application/ld+json">{not valid json</script>
  </head>
  <body>
    <nav><a href="/account">My account</a> <a href="/help/cancel">Cancel membership</a></nav>
    <div class="pricing-card"><h2>Premium</h2><span class="plan-price">$19.99/month</span></div>
    <div class="pricing-card"><h2>Individual</h2><span class="plan-price">$9.99/month</span></div>
    <div class="pricing-card"><h2>Add-on</h2><span class="plan-price">$0.49</span></div>
  </body>
</html>
"""


class DummyResponse:
    def __init__(
        self,
        text: str,
        status_code: int = 200,
        url: str = "https://acme.test/pricing",
        chunk_size: int = 1024,
    ) -> None:
        self.body = text.encode("utf-8")
        self.status_code = status_code
        self.url = url
        self.encoding = "utf-8"
        self.chunk_size = chunk_size
        self.closed = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def iter_content(self, chunk_size=1):  # noqa: ANN001
        for start in range(0, len(self.body), self.chunk_size):
            yield self.body[start : start + self.chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):  # noqa: ANN001
        self.closed = True
        return False


def test_parse_html_extracts_metadata_and_pricing_text():
    content = scraper.parse_html(PRICING_HTML, "https://acme.test/pricing")

    assert content.title == "Acme Music"
    assert content.description == "Stream everything."
    assert content.json_ld == [{"@type": "Product", "name": "Acme Music"}]
    assert "$9.99/month" in content.body_text
    assert "My account" not in content.body_text
    assert ScrapedLink(href="https://acme.test/help/cancel", text="Cancel membership") in content.links
    assert content.meta_tags["og:image"] == "/static/logo.png"


def test_title_falls_back_to_title_tag():
    content = scraper.parse_html("<html><head><title>Widgets - Home</title></head><body>hi</body></html>", "https://w.test")

    assert content.title == "Widgets"
    assert content.body_text == "hi"


def test_extract_from_scraped_content_picks_cheapest_plan():
    content = scraper.parse_html(PRICING_HTML, "https://acme.test/pricing")
    data = scraper.extract_from_scraped_content(content, "https://acme.test/pricing")

    assert data.name == "Acme Music"
    assert data.cost == 9.99
    assert data.currency == "USD"
    assert data.billing_cycle == "monthly"
    assert data.logo_url == "https://acme.test/static/logo.png"
    assert data.cancel_url == "https://acme.test/help/cancel"
    assert data.manage_url == "https://acme.test/account"


def test_extract_from_plain_text_body():
    content = ScrapedContent(title=None, description=None, body_text="Family 149 kr per month, Student 59:- per month")
    data = scraper.extract_from_scraped_content(content, "https://nordic.test")

    assert data.cost == 59.0
    assert data.currency == "SEK"
    assert data.billing_cycle == "monthly"
    assert data.logo_url is None
    assert data.cancel_url is None


def test_scrape_returns_content_on_success(monkeypatch):
    captured = {}

    def fake_get(url, headers=None, timeout=None, allow_redirects=True, stream=False):  # noqa: ANN001
        captured.update(url=url, headers=headers, timeout=timeout, stream=stream)
        return DummyResponse(PRICING_HTML)

    monkeypatch.setattr(scraper.requests, "get", fake_get)

    content, attempt = scraper.scrape("acme.test/pricing", timeout_ms=2500)

    assert content is not None
    assert attempt.method == "scraper"
    assert attempt.success
    assert captured["url"] == "https://acme.test/pricing"
    assert captured["timeout"] == pytest.approx(2.5)
    assert captured["stream"] is True
    assert captured["headers"]["User-Agent"].startswith("Mozilla/5.0")


def test_scrape_records_http_errors(monkeypatch):
    monkeypatch.setattr(scraper.requests, "get", lambda *args, **kwargs: DummyResponse("", status_code=503))

    content, attempt = scraper.scrape("https://acme.test")

    assert content is None
    assert not attempt.success
    assert attempt.error == "HTTP error: 503"


def test_scrape_records_timeouts(monkeypatch):
    def fake_get(*args, **kwargs):  # noqa: ANN001
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(scraper.requests, "get", fake_get)

    content, attempt = scraper.scrape("https://acme.test")

    assert content is None
    assert attempt.error == "Request timed out"


def test_scrape_rejects_invalid_url_without_fetching(monkeypatch):
    def fail_get(*args, **kwargs):  # noqa: ANN001
        raise AssertionError("network must not be touched")

    monkeypatch.setattr(scraper.requests, "get", fail_get)

    content, attempt = scraper.scrape("ftp://acme.test")

    assert content is None
    assert attempt.error.startswith("Invalid URL")


def test_pricing_page_candidates():
    assert scraper.get_pricing_page_urls("https://acme.test/about") == [
        "https://acme.test/about",
        "https://acme.test/pricing",
        "https://acme.test/plans",
        "https://acme.test/subscribe",
        "https://acme.test/subscription",
        "https://acme.test/pro",
        "https://acme.test/premium",
    ]
    assert scraper.get_pricing_page_urls("https://acme.test/pricing")[:2] == [
        "https://acme.test/pricing",
        "https://acme.test/plans",
    ]
    assert scraper.is_pricing_page("https://acme.test/plans")
    assert not scraper.is_pricing_page("https://acme.test/blog")


def test_thousands_grouped_prices_are_read_whole():
    content = ScrapedContent(title="Acme", description=None, body_text="Enterprise $1,299.99/year")

    data = scraper.extract_from_scraped_content(content, "https://acme.test/pricing")

    assert data.cost == 1299.99
    assert data.billing_cycle == "yearly"
    assert scraper.extract_prices("Team 2,400 SEK, Solo 12,50 EUR") == [(12.5, "EUR"), (2400.0, "SEK")]


def test_read_body_is_capped_in_bytes(monkeypatch):
    monkeypatch.setattr(scraper, "MAX_RESPONSE_BYTES", 10)
    response = DummyResponse("abcdefghijklmnopqrstuvwxyz", chunk_size=4)

    assert scraper._read_body(response, deadline=float("inf")) == "abcdefghij"


def test_read_body_stops_at_the_deadline():
    ticks = iter([0.0, 5.0, 10.0, 15.0])
    response = DummyResponse("x" * 40, chunk_size=10)

    with pytest.raises(requests.Timeout):
        scraper._read_body(response, deadline=7.0, clock=lambda: next(ticks))


def test_scrape_reports_slow_bodies_as_timeouts(monkeypatch):
    def slow_read(response, deadline):  # noqa: ANN001
        raise requests.Timeout("Total read time exceeded")

    response = DummyResponse(PRICING_HTML)
    monkeypatch.setattr(scraper.requests, "get", lambda *args, **kwargs: response)
    monkeypatch.setattr(scraper, "_read_body", slow_read)

    content, attempt = scraper.scrape("https://acme.test", timeout_ms=100)

    assert content is None
    assert attempt.error == "Request timed out"
    assert response.closed
