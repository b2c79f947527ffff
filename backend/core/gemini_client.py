"""Gemini client used by the subscription extraction pipeline."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from google import genai
from google.genai import types


class GeminiClientError(RuntimeError):
    """Raised when the Gemini API cannot return a usable response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


logger = logging.getLogger(__name__)


def _find_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring of ``text``, string-aware."""

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        # Unbalanced from this brace on; try the next opening brace.
        start = text.find("{", start + 1)
    return None


class GeminiClient:
    """Thin Gemini wrapper: prompt templates in, raw text out.

    The underlying ``genai.Client`` is created lazily on first use and
    shared by every caller of this instance; creation is guarded by a lock
    so concurrent request threads build it at most once.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        default_model: Optional[str] = None,
        prompt_dir: Optional[Path | str] = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY")
        self.default_model = default_model or os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")
        self.prompt_dir = Path(
            prompt_dir
            or Path(__file__).resolve().parent.parent
            / "extraction"
            / "config"
            / "prompts"
        )
        self._client: Optional[genai.Client] = None
        self._client_lock = threading.Lock()

    # ---------------------------------------------------------------------
    # Core helpers
    # ---------------------------------------------------------------------
    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> genai.Client:
        if not self.api_key:
            raise GeminiClientError("GEMINI_API_KEY not configured.")

        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    logger.info(
                        "Initializing Gemini client",
                        extra={"operation": "gemini_client_init", "model": self.default_model},
                    )
                    self._client = genai.Client(api_key=self.api_key)
        return self._client

    def load_prompt(self, template_name: str) -> str:
        template_path = self.prompt_dir / template_name
        if not template_path.exists():
            raise GeminiClientError(f"Prompt template not found: {template_path}")
        return template_path.read_text(encoding="utf-8")

    def render_prompt(self, template_name: str, context: Dict[str, Any]) -> str:
        prompt_template = self.load_prompt(template_name)
        try:
            return prompt_template.format(**context)
        except KeyError as exc:  # noqa: BLE001 - configuration level error
            missing = exc.args[0]
            raise GeminiClientError(
                f"Prompt context missing required key '{missing}' for template '{template_name}'."
            ) from exc

    @staticmethod
    def _clean_json_payload(raw_text: str) -> str:
        cleaned = raw_text.strip()
        if not cleaned:
            raise GeminiClientError("Gemini returned an empty response.")

        # Remove Markdown code fences.
        cleaned = cleaned.replace("```json", "").replace("```JSON", "").replace("```", "").strip()

        # Models sometimes wrap the object in prose; keep only the object.
        payload = _find_balanced_object(cleaned)
        if payload is None:
            raise GeminiClientError("Unable to locate JSON payload in Gemini response.")
        return payload

    @staticmethod
    def parse_json_response(raw_text: str) -> Any:
        """Parse Gemini text into a JSON object, tolerating fences and prose."""

        payload = GeminiClient._clean_json_payload(raw_text)
        try:
            parsed = json.loads(payload)
        except ValueError as exc:  # JSONDecodeError, or an integer too long to convert
            raise GeminiClientError(f"Gemini returned invalid JSON: {exc}") from exc
        return parsed

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def generate_text(
        self,
        *,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = 0.1,
        top_p: float = 0.8,
        max_output_tokens: int = 2048,
        response_mime_type: str = "text/plain",
        timeout_ms: Optional[int] = None,
    ) -> str:
        """Generate raw text from Gemini for a single prompt."""

        config_kwargs: Dict[str, Any] = {
            "temperature": temperature,
            "top_p": top_p,
            "max_output_tokens": max_output_tokens,
            "response_mime_type": response_mime_type,
        }
        if timeout_ms is not None:
            config_kwargs["http_options"] = types.HttpOptions(timeout=max(int(timeout_ms), 1))

        try:
            response = self._get_client().models.generate_content(
                model=model or self.default_model,
                contents=prompt,
                config=types.GenerateContentConfig(**config_kwargs),
            )
        except GeminiClientError:
            raise
        except Exception as exc:  # noqa: BLE001 - surface API issues with context
            status_code = getattr(exc, "code", None) or getattr(exc, "status_code", None)
            raise GeminiClientError(
                f"Gemini API error: {exc}",
                status_code=status_code if isinstance(status_code, int) else None,
            ) from exc

        text = (response.text or "").strip()
        logger.debug(
            "Received response from Gemini",
            extra={
                "operation": "gemini_text_response",
                "model": model or self.default_model,
                "response_length": len(text),
                "text_preview": text[:500] if text else None,
            },
        )
        return text


__all__ = ["GeminiClient", "GeminiClientError"]
