"""Read-only catalog of well-known subscription services.

The catalog lives in ``config/known_services.json`` keyed by primary
domain and is loaded once at import time into immutable objects shared by
all pipeline runs.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

from extraction.models import KnownService, PriceTier

logger = logging.getLogger(__name__)

CATALOG_PATH = Path(__file__).resolve().parent / "config" / "known_services.json"


def _build_service(key: str, raw: Dict[str, Any]) -> KnownService:
    return KnownService(
        key=key,
        name=raw["name"],
        domain=raw["domain"],
        aliases=tuple(alias.lower() for alias in raw.get("aliases", [])),
        default_currency=raw["default_currency"],
        default_billing_cycle=raw["default_billing_cycle"],
        category=raw["category"],
        logo_url=raw.get("logo_url"),
        pricing_url=raw.get("pricing_url"),
        manage_url=raw.get("manage_url"),
        cancel_url=raw.get("cancel_url"),
        typical_prices=tuple(
            PriceTier(plan=tier["plan"], cost=float(tier["cost"]), billing_cycle=tier["billing_cycle"])
            for tier in raw.get("typical_prices", [])
        ),
    )


def load_catalog(path: Path = CATALOG_PATH) -> Mapping[str, KnownService]:
    raw_catalog = json.loads(path.read_text(encoding="utf-8"))
    services = {key.lower(): _build_service(key.lower(), raw) for key, raw in raw_catalog.items()}
    logger.debug(
        "Known-service catalog loaded",
        extra={"operation": "catalog_load", "service_count": len(services), "path": str(path)},
    )
    return MappingProxyType(services)


KNOWN_SERVICES: Mapping[str, KnownService] = load_catalog()


def get_known_service(key: Optional[str]) -> Optional[KnownService]:
    if not key:
        return None
    return KNOWN_SERVICES.get(key.lower())


def get_all_service_aliases() -> Dict[str, str]:
    """Map every key, domain, name and alias (lower-cased) to its catalog key."""

    alias_map: Dict[str, str] = {}
    for key, service in KNOWN_SERVICES.items():
        alias_map[key] = key
        alias_map.setdefault(service.domain.lower(), key)
        alias_map.setdefault(service.name.lower(), key)
        for alias in service.aliases:
            alias_map.setdefault(alias, key)
    return alias_map


def find_by_alias_or_name(text: str, *, loose: bool = True) -> Optional[KnownService]:
    """Find a service by key, name, domain or alias.

    Exact matches win, canonical names before aliases. With ``loose`` an
    alias contained in the text (or the text contained in an alias) is
    then accepted.
    """

    normalized = (text or "").strip().lower()
    if not normalized:
        return None

    if normalized in KNOWN_SERVICES:
        return KNOWN_SERVICES[normalized]

    for service in KNOWN_SERVICES.values():
        if normalized in (service.name.lower(), service.domain.lower()):
            return service

    for service in KNOWN_SERVICES.values():
        if normalized in service.aliases:
            return service

    if not loose:
        return None

    for service in KNOWN_SERVICES.values():
        for alias in service.aliases:
            if alias in normalized or normalized in alias:
                return service

    return None


def _hostname(url: str) -> str:
    try:
        hostname = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return hostname.lower().removeprefix("www.")


def find_by_url(url: str) -> Optional[KnownService]:
    """Find a service by hostname: exact key first, then containment either way."""

    hostname = _hostname(url or "")
    if not hostname:
        return None

    if hostname in KNOWN_SERVICES:
        return KNOWN_SERVICES[hostname]

    for domain, service in KNOWN_SERVICES.items():
        if domain in hostname or hostname in domain:
            return service

    return None


__all__ = [
    "KNOWN_SERVICES",
    "find_by_alias_or_name",
    "find_by_url",
    "get_all_service_aliases",
    "get_known_service",
    "load_catalog",
]
