"""
Gemini adapter using the public `generateContent` REST endpoint.

Structured output is requested through `responseMimeType` plus a response
schema, so the text part is expected to be JSON without any wrapping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple

import httpx

from models.adapters.base import BaseProviderAdapter, validate_sampling_settings
from models.errors import ConfigError, ParseError, ProviderError
from models.json_recovery import parse_strict_json
from models.schema_translation import to_gemini_schema
from models.schemas import GenerationRequest

logger = logging.getLogger(__name__)

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta"


@dataclass(slots=True)
class GeminiConfig:
    """Connection and sampling settings for Gemini."""

    api_key: str
    model: str = "gemini-2.5-flash"
    base_url: str = GEMINI_ENDPOINT
    timeout: float = 60.0
    temperature: float = 0.8
    max_output_tokens: int = 8192

    def __post_init__(self) -> None:
        if not self.api_key or not str(self.api_key).strip():
            raise ConfigError("GEMINI_API_KEY not configured", provider="gemini")
        if not self.model:
            raise ConfigError("Gemini model name is required", provider="gemini")
        validate_sampling_settings(self.timeout, self.temperature, self.max_output_tokens, provider="gemini")


class GeminiAdapter(BaseProviderAdapter):
    """Adapter that calls Gemini's `generateContent` endpoint."""

    def __init__(
        self,
        config: GeminiConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            "gemini",
            model=config.model,
            timeout=config.timeout,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            transport=transport,
        )
        self.config = config

    def _build_payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "temperature": self._temperature(request),
                "maxOutputTokens": self._max_tokens(request),
                "responseMimeType": "application/json",
                "responseSchema": to_gemini_schema(request.schema),
            },
        }

    async def _invoke_model(
        self, payload: Dict[str, Any], request: GenerationRequest, model: str
    ) -> Dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}/models/{model}:generateContent"
        response = await self._http().post(
            url,
            headers={
                "x-goog-api-key": self.config.api_key,
                "Content-Type": "application/json",
            },
            json=payload,
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(f"Gemini returned invalid JSON envelope: {exc}", provider="gemini") from exc

    def _parse_response(
        self, raw_output: Dict[str, Any], request: GenerationRequest
    ) -> Tuple[str, str]:
        candidates = raw_output.get("candidates") or []
        if not candidates:
            feedback = raw_output.get("promptFeedback") or {}
            reason = feedback.get("blockReason") or "no candidates returned"
            raise ProviderError(f"Gemini returned no content: {reason}", provider="gemini", payload=raw_output)
        candidate = candidates[0] or {}
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(
            str(part.get("text", "")) for part in parts if isinstance(part, dict) and not part.get("thought")
        )
        finish_reason = str(candidate.get("finishReason") or "UNKNOWN")
        if finish_reason != "STOP":
            logger.warning(
                "Gemini finished with %s for %s; output may be truncated",
                finish_reason,
                request.label or "request",
            )
        cleaned, _ = parse_strict_json(text, provider="gemini")
        return cleaned, finish_reason
