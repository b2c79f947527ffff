"""Subscription parsing API endpoints"""
import logging

from flask import Blueprint, current_app, jsonify, request

from extraction.models import CORE_FIELDS
from extraction.pipeline import SubscriptionExtractor, to_parser_subscription_data
from extraction.validators import MAX_INPUT_LENGTH

logger = logging.getLogger(__name__)

subscriptions_bp = Blueprint('subscriptions', __name__)

EXTRACTOR_EXTENSION = 'subscription_extractor'


def get_extractor() -> SubscriptionExtractor:
    """Return the extractor registered on the app, creating one on first use."""
    extractor = current_app.extensions.get(EXTRACTOR_EXTENSION)
    if extractor is None:
        extractor = SubscriptionExtractor()
        current_app.extensions[EXTRACTOR_EXTENSION] = extractor
    return extractor


def _result_message(result) -> str:
    if result.success and not result.requires_manual_input:
        return f"Successfully extracted subscription info (via {result.source})"
    if result.requires_manual_input:
        return f"Please provide: {', '.join(result.requires_manual_input)}"
    return "Partial data extracted - please review and complete"


@subscriptions_bp.route('/subscriptions/parse', methods=['POST'])
def parse_subscription():
    """Extract subscription details from a URL, service name or free text.

    Accepts ``{"input": "..."}``; ``{"url": "..."}`` is still honoured for
    older clients.
    """
    data = request.get_json(silent=True) or {}
    user_input = data.get('input') or data.get('url')

    if not user_input or not isinstance(user_input, str):
        return jsonify({'error': 'Input is required (URL or service name)'}), 400

    trimmed = user_input.strip()
    if not trimmed:
        return jsonify({'error': 'Input cannot be empty'}), 400
    if len(trimmed) > MAX_INPUT_LENGTH:
        return jsonify({'error': 'Input exceeds maximum length'}), 400

    extractor = get_extractor()
    try:
        result = extractor.extract(trimmed)
    except Exception:  # noqa: BLE001 - never leak internals to the client
        logger.exception(
            "Subscription extraction failed",
            extra={"operation": "subscription_parse", "input_length": len(trimmed)},
        )
        return jsonify({
            'error': 'Failed to extract subscription information',
            'data': {'requiresManualInput': list(CORE_FIELDS)},
        }), 500

    logger.info(
        "Subscription parsed",
        extra={
            "operation": "subscription_parse",
            "source": result.source,
            "success": result.success,
            "attempts": len(result.attempts),
        },
    )
    return jsonify({
        'data': to_parser_subscription_data(result),
        'message': _result_message(result),
        'meta': {
            'source': result.source,
            'confidence': result.confidence,
            'aiAvailable': extractor.is_ai_available(),
            'attemptsCount': len(result.attempts),
        },
    })


@subscriptions_bp.route('/subscriptions/capabilities', methods=['GET'])
def capabilities():
    """Report which extraction stages are usable so the UI can explain fallbacks."""
    extractor = get_extractor()
    return jsonify({
        'aiAvailable': extractor.is_ai_available() and extractor.config.ai_enabled,
        'scraperEnabled': extractor.config.scraper_enabled,
    })
