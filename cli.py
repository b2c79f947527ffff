#!/usr/bin/env python3
"""
CLI for the subscription extractor
Usage: python cli.py "spotify monthly" [--no-ai] [--no-scraper] [--threshold 0.8] [--json]
"""
import argparse
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add backend to Python path
backend_path = Path(__file__).parent / "backend"
sys.path.insert(0, str(backend_path))

from core.logging_config import configure_logging  # noqa: E402
from extraction.models import ExtractionConfig  # noqa: E402
from extraction.pipeline import SubscriptionExtractor, to_parser_subscription_data  # noqa: E402


def build_parser():
    ap = argparse.ArgumentParser(description="Extract subscription details from a URL, service name or free text")
    ap.add_argument("input", help='What to look up, e.g. "netflix", "spotify.com" or "gym $40 a month"')
    ap.add_argument("--no-ai", action="store_true", help="Skip the Gemini stage")
    ap.add_argument("--no-scraper", action="store_true", help="Skip fetching web pages")
    ap.add_argument("--threshold", type=float, help="Minimum AI confidence to accept (0-1)")
    ap.add_argument("--json", action="store_true", help="Print the parser-compatible subscription data as JSON")
    return ap


def main(argv=None):
    """Main CLI entry point"""
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(stream=sys.stderr)

    overrides = {}
    if args.no_ai:
        overrides["ai_enabled"] = False
    if args.no_scraper:
        overrides["scraper_enabled"] = False
    if args.threshold is not None:
        overrides["ai_confidence_threshold"] = args.threshold

    try:
        extractor = SubscriptionExtractor(config=ExtractionConfig.from_env().merged(overrides))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    result = extractor.extract(args.input)

    if args.json:
        print(json.dumps(to_parser_subscription_data(result), indent=2, ensure_ascii=False))
        return 0 if result.success else 1

    data = to_parser_subscription_data(result)
    status = "✅" if result.success else "⚠️"
    print(f"{status} {data['name'] or '(unknown)'} via {result.source} (confidence {result.confidence:.2f})")
    if data["cost"] is not None:
        print(f"  - Price: {data['cost']:.2f} {data['currency'] or '?'} / {data['billingCycle'] or '?'}")
    if data["category"]:
        print(f"  - Category: {data['category']}")
    for label, key in (("Manage", "manageUrl"), ("Cancel", "cancelUrl")):
        if data[key]:
            print(f"  - {label}: {data[key]}")
    if result.requires_manual_input:
        print(f"  - Please provide: {', '.join(result.requires_manual_input)}")
    for attempt in result.attempts:
        outcome = "ok" if attempt.success else (attempt.error or "failed")
        print(f"  · {attempt.method} ({attempt.duration_ms}ms): {outcome}")
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
