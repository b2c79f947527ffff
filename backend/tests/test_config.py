import json
import logging
import pathlib
import sys

import pytest
from pydantic import ValidationError

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

BACKEND_ROOT = PROJECT_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from core.logging_config import JSONLogFormatter  # noqa: E402
from extraction.models import DEFAULT_CONFIG, ExtractionConfig  # noqa: E402


def test_defaults():
    assert DEFAULT_CONFIG.ai_enabled is True
    assert DEFAULT_CONFIG.scraper_enabled is True
    assert DEFAULT_CONFIG.ai_confidence_threshold == 0.7
    assert DEFAULT_CONFIG.ai_timeout_ms == 15000
    assert DEFAULT_CONFIG.scraper_timeout_ms == 10000
    assert DEFAULT_CONFIG.max_retries == 2


def test_from_env(monkeypatch):
    monkeypatch.setenv("EXTRACTOR_AI_ENABLED", "false")
    monkeypatch.setenv("EXTRACTOR_AI_CONFIDENCE_THRESHOLD", "0.8")
    monkeypatch.setenv("EXTRACTOR_MAX_RETRIES", "0")
    monkeypatch.delenv("EXTRACTOR_SCRAPER_ENABLED", raising=False)

    config = ExtractionConfig.from_env()

    assert config.ai_enabled is False
    assert config.scraper_enabled is True
    assert config.ai_confidence_threshold == 0.8
    assert config.max_retries == 0


def test_merged_accepts_both_key_styles():
    config = DEFAULT_CONFIG.merged({"aiEnabled": False, "scraper_timeout_ms": 2000})

    assert config.ai_enabled is False
    assert config.scraper_timeout_ms == 2000
    assert DEFAULT_CONFIG.ai_enabled is True
    assert config.to_dict()["scraperTimeoutMs"] == 2000


def test_merged_rejects_bad_values():
    with pytest.raises(ValueError):
        DEFAULT_CONFIG.merged({"retries": 3})
    with pytest.raises(ValidationError):
        DEFAULT_CONFIG.merged({"aiConfidenceThreshold": 1.5})


def test_json_log_formatter_includes_extras():
    record = logging.LogRecord("extraction.pipeline", logging.INFO, __file__, 10, "Extraction finished", None, None)
    record.operation = "pipeline_result"
    record.source = "ai"

    entry = json.loads(JSONLogFormatter().format(record))

    assert entry["severity"] == "INFO"
    assert entry["service"] == "subscription-extractor"
    assert entry["message"] == "Extraction finished"
    assert entry["operation"] == "pipeline_result"
    assert entry["source"] == "ai"
