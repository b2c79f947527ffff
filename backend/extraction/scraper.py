"""Fetch a service's web page and pull pricing context out of the HTML.

Fetch failures are never fatal: :func:`scrape` always returns an
``ExtractionAttempt`` and a ``None`` content when anything goes wrong so the
pipeline can fall through to its next stage.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from extraction.models import ExtractionAttempt, ScrapedContent, ScrapedLink, ScraperExtraction
from extraction.validators import sanitize_string, validate_price, validate_url, validate_url_field

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
REQUEST_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

MAX_BODY_TEXT = 10000
MAX_META_LENGTH = 500
MAX_RESPONSE_BYTES = 2_000_000
CHUNK_SIZE = 16384
MIN_SUBSCRIPTION_PRICE = 0.99

PRICING_SELECTORS: Tuple[str, ...] = (
    ".pricing",
    ".price",
    '[class*="pricing"]',
    '[class*="price"]',
    '[class*="plan"]',
    '[class*="tier"]',
    '[class*="subscription"]',
    ".price-amount",
    ".plan-price",
    ".subscription-price",
    "[data-price]",
    "[data-amount]",
    ".pricing-card",
    ".plan-card",
    ".pricing-table",
)

_AMOUNT = r"(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:[.,]\d{1,2})?)"

# Symbol first, then suffix currency codes, then the Scandinavian forms.
PRICE_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"\$\s*" + _AMOUNT), "USD"),
    (re.compile(r"€\s*" + _AMOUNT), "EUR"),
    (re.compile(r"£\s*" + _AMOUNT), "GBP"),
    (re.compile(_AMOUNT + r"\s*USD", re.IGNORECASE), "USD"),
    (re.compile(_AMOUNT + r"\s*EUR", re.IGNORECASE), "EUR"),
    (re.compile(_AMOUNT + r"\s*GBP", re.IGNORECASE), "GBP"),
    (re.compile(_AMOUNT + r"\s*SEK", re.IGNORECASE), "SEK"),
    (re.compile(_AMOUNT + r"\s*NOK", re.IGNORECASE), "NOK"),
    (re.compile(_AMOUNT + r"\s*DKK", re.IGNORECASE), "DKK"),
    (re.compile(_AMOUNT + r"\s*kr", re.IGNORECASE), "SEK"),
    (re.compile(r"(\d+):-"), "SEK"),
)

BILLING_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"per\s*week|weekly|/\s*week|/wk", re.IGNORECASE), "weekly"),
    (re.compile(r"per\s*month|monthly|/\s*mo(?:nth)?|/mo\b", re.IGNORECASE), "monthly"),
    (re.compile(r"per\s*quarter|quarterly|every\s*3\s*months?|/\s*qtr", re.IGNORECASE), "quarterly"),
    (re.compile(r"per\s*year|yearly|annually|annual|/\s*yr|/\s*year", re.IGNORECASE), "yearly"),
)

CANCEL_KEYWORDS = ("cancel", "unsubscribe", "end subscription", "stop subscription")
MANAGE_KEYWORDS = (
    "account",
    "manage",
    "settings",
    "subscription",
    "billing",
    "profile",
    "my account",
    "my subscription",
)
PRICING_PAGE_KEYWORDS = ("pricing", "plans", "subscribe", "subscription", "buy", "purchase", "checkout", "signup")
PRICING_PATH_SUFFIXES = ("/pricing", "/plans", "/subscribe", "/subscription", "/pro", "/premium")


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _meta_content(soup: BeautifulSoup, **attrs: str) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    content = tag.get("content")
    return content.strip() if isinstance(content, str) and content.strip() else None


def _extract_meta_tags(soup: BeautifulSoup) -> Dict[str, str]:
    meta_tags: Dict[str, str] = {}
    for tag in soup.find_all("meta"):
        key = tag.get("property") or tag.get("name")
        content = tag.get("content")
        if not isinstance(key, str) or not isinstance(content, str) or not content.strip():
            continue
        if key.startswith(("og:", "twitter:")) or key == "description":
            meta_tags[key] = sanitize_string(content, MAX_META_LENGTH)
    return meta_tags


def _extract_json_ld(soup: BeautifulSoup) -> List[Any]:
    blocks: List[Any] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            blocks.append(json.loads(raw))
        except json.JSONDecodeError:
            logger.debug("Skipping malformed JSON-LD block", extra={"operation": "scrape_json_ld"})
    return blocks


def _extract_links(soup: BeautifulSoup, base_url: str) -> List[ScrapedLink]:
    links: List[ScrapedLink] = []
    for anchor in soup.find_all("a", href=True):
        text = anchor.get_text(" ", strip=True)
        if not text:
            continue
        try:
            absolute = urljoin(base_url, anchor["href"].strip())
        except ValueError:
            continue
        if urlparse(absolute).scheme not in {"http", "https"}:
            continue
        links.append(ScrapedLink(href=absolute, text=sanitize_string(text, 200)))
    return links


def _extract_pricing_text(soup: BeautifulSoup) -> str:
    chunks: List[str] = []
    for selector in PRICING_SELECTORS:
        for element in soup.select(selector):
            text = element.get_text(" ", strip=True)
            if text:
                chunks.append(text)

    if not chunks:
        body = soup.body or soup
        return " ".join(body.get_text(" ", strip=True).split())
    return " ".join(" ".join(chunks).split())


def _extract_title(soup: BeautifulSoup) -> Optional[str]:
    title = _meta_content(soup, property="og:site_name") or _meta_content(soup, property="og:title")
    if title:
        return title
    if soup.title and soup.title.string:
        trimmed = soup.title.string.split("|")[0].split("-")[0].strip()
        return trimmed or None
    return None


def parse_html(html: str, url: str) -> ScrapedContent:
    """Turn raw HTML into :class:`ScrapedContent`; tolerant of broken markup."""

    soup = BeautifulSoup(html, "html.parser")

    # JSON-LD is read first; scripts and styles never count as body text.
    json_ld = _extract_json_ld(soup)
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    title = _extract_title(soup)
    description = _meta_content(soup, property="og:description") or _meta_content(soup, name="description")

    return ScrapedContent(
        title=sanitize_string(title, 200) or None if title else None,
        description=sanitize_string(description, MAX_META_LENGTH) or None if description else None,
        body_text=_extract_pricing_text(soup)[:MAX_BODY_TEXT],
        meta_tags=_extract_meta_tags(soup),
        json_ld=json_ld,
        links=_extract_links(soup, url),
    )


def _read_body(
    response: requests.Response, deadline: float, clock: Callable[[], float] = time.monotonic
) -> str:
    """Read at most ``MAX_RESPONSE_BYTES`` of the body before ``deadline``."""

    chunks: List[bytes] = []
    size = 0
    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
        if clock() > deadline:
            raise requests.Timeout("Total read time exceeded")
        if not chunk:
            continue
        chunks.append(chunk[: MAX_RESPONSE_BYTES - size])
        size += len(chunks[-1])
        if size >= MAX_RESPONSE_BYTES:
            logger.info(
                "Response body truncated",
                extra={"operation": "scrape_attempt", "url": response.url, "max_bytes": MAX_RESPONSE_BYTES},
            )
            break

    raw = b"".join(chunks)
    try:
        return raw.decode(response.encoding or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def scrape(url: str, timeout_ms: int = 10000) -> Tuple[Optional[ScrapedContent], ExtractionAttempt]:
    """Fetch ``url`` and parse it. Never raises for network or parse failures.

    ``timeout_ms`` bounds the whole fetch, body included; bodies past
    ``MAX_RESPONSE_BYTES`` are cut off.
    """

    started = time.perf_counter()
    deadline = time.monotonic() + timeout_ms / 1000.0

    def failed(error: str) -> Tuple[None, ExtractionAttempt]:
        logger.warning(
            "Scrape failed",
            extra={"operation": "scrape_attempt", "url": url, "error": error, "success": False},
        )
        return None, ExtractionAttempt(
            method="scraper", success=False, error=error, duration_ms=_elapsed_ms(started)
        )

    validation = validate_url(url)
    if not validation.is_valid:
        return failed(f"Invalid URL: {'; '.join(validation.errors)}")

    try:
        with requests.get(
            validation.sanitized_value,
            headers=REQUEST_HEADERS,
            timeout=timeout_ms / 1000.0,
            allow_redirects=True,
            stream=True,
        ) as response:
            if not response.ok:
                return failed(f"HTTP error: {response.status_code}")
            html = _read_body(response, deadline)
            final_url = response.url or validation.sanitized_value
    except requests.Timeout:
        return failed("Request timed out")
    except requests.RequestException as exc:
        return failed(f"Fetch error: {exc}")

    try:
        content = parse_html(html, final_url)
    except Exception as exc:  # noqa: BLE001 - malformed pages degrade to a failed attempt
        return failed(f"Parse error: {exc}")

    attempt = ExtractionAttempt(method="scraper", success=True, duration_ms=_elapsed_ms(started))
    logger.info(
        "Scrape succeeded",
        extra={
            "operation": "scrape_attempt",
            "url": validation.sanitized_value,
            "success": True,
            "duration_ms": attempt.duration_ms,
            "body_length": len(content.body_text),
        },
    )
    return content, attempt


def extract_prices(text: str) -> List[Tuple[float, str]]:
    """Every distinct ``(amount, currency)`` in ``text``, in pattern order."""

    prices: List[Tuple[float, str]] = []
    seen = set()
    for pattern, currency in PRICE_PATTERNS:
        for match in pattern.finditer(text):
            amount = validate_price(match.group(1))
            if amount is None or amount <= 0:
                continue
            key = (amount, currency)
            if key not in seen:
                seen.add(key)
                prices.append(key)
    return prices


def detect_billing_cycle(text: str) -> Optional[str]:
    for pattern, cycle in BILLING_PATTERNS:
        if pattern.search(text):
            return cycle
    return None


def _find_link(links: List[ScrapedLink], keywords: Tuple[str, ...]) -> Optional[str]:
    for link in links:
        text = link.text.lower()
        href = link.href.lower()
        if any(keyword in text or keyword in href for keyword in keywords):
            return link.href
    return None


def find_cancel_url(links: List[ScrapedLink]) -> Optional[str]:
    return _find_link(links, CANCEL_KEYWORDS)


def find_manage_url(links: List[ScrapedLink]) -> Optional[str]:
    return _find_link(links, MANAGE_KEYWORDS)


def extract_from_scraped_content(content: ScrapedContent, url: str) -> ScraperExtraction:
    """Derive subscription fields from scraped content without the model.

    The cheapest price of at least 0.99 is taken as the default plan.
    """

    candidates = sorted(
        (price for price in extract_prices(content.body_text) if price[0] >= MIN_SUBSCRIPTION_PRICE),
        key=lambda price: price[0],
    )
    cost, currency = candidates[0] if candidates else (None, None)

    logo = content.meta_tags.get("og:image") or content.meta_tags.get("twitter:image")

    return ScraperExtraction(
        name=content.title,
        cost=cost,
        currency=currency,
        billing_cycle=detect_billing_cycle(content.body_text),
        logo_url=validate_url_field(urljoin(url, logo)) if logo else None,
        cancel_url=find_cancel_url(content.links),
        manage_url=find_manage_url(content.links),
    )


def is_pricing_page(url: str) -> bool:
    lowered = url.lower()
    return any(keyword in lowered for keyword in PRICING_PAGE_KEYWORDS)


def get_pricing_page_urls(base_url: str) -> List[str]:
    """Candidate pricing pages: the URL itself, then common pricing paths."""

    try:
        parsed = urlparse(base_url)
    except ValueError:
        return [base_url]
    if not parsed.scheme or not parsed.netloc:
        return [base_url]

    origin = f"{parsed.scheme}://{parsed.netloc}"
    candidates = [base_url]
    for suffix in PRICING_PATH_SUFFIXES:
        candidate = origin + suffix
        if candidate.rstrip("/") != base_url.rstrip("/"):
            candidates.append(candidate)
    return candidates


__all__ = [
    "PRICE_PATTERNS",
    "detect_billing_cycle",
    "extract_from_scraped_content",
    "extract_prices",
    "find_cancel_url",
    "find_manage_url",
    "get_pricing_page_urls",
    "is_pricing_page",
    "parse_html",
    "scrape",
]
