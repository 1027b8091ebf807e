"""
OpenRouter adapter for routed chat-completion models.

OpenRouter fronts many upstream models with uneven structured-output support,
so responses go through JSON recovery and the request is retried once without
`response_format` when a model rejects it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple

import httpx

from models.adapters.base import BaseProviderAdapter, validate_sampling_settings
from models.errors import (
    ConfigError,
    GenerationErrorKind,
    ParseError,
    ProviderError,
    is_rate_limit_message,
    parse_retry_after,
)
from models.json_recovery import recover_json
from models.schema_translation import to_openrouter_schema
from models.schemas import GenerationRequest

logger = logging.getLogger(__name__)

OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1"
_FORMAT_ERROR_MARKERS = ("response_format", "json_object", "json_schema")


@dataclass(slots=True)
class OpenRouterConfig:
    """Connection, attribution and routing settings for OpenRouter."""

    api_key: str
    model: str = "deepseek/deepseek-chat"
    base_url: str = OPENROUTER_ENDPOINT
    timeout: float = 60.0
    temperature: float = 0.8
    max_output_tokens: int = 8192
    referer: str = "https://github.com/nof1-arena/decision-engine"
    title: str = "nof1 decision engine"
    structured_outputs: bool = True
    data_collection: str = "allow"
    allow_fallbacks: bool = True

    def __post_init__(self) -> None:
        if not self.api_key or not str(self.api_key).strip():
            raise ConfigError("OPENROUTER_API_KEY not configured", provider="openrouter")
        if not self.model:
            raise ConfigError("OpenRouter model name is required", provider="openrouter")
        if self.data_collection not in ("allow", "deny"):
            raise ConfigError(
                f"Invalid OpenRouter data_collection: {self.data_collection}", provider="openrouter"
            )
        validate_sampling_settings(
            self.timeout, self.temperature, self.max_output_tokens, provider="openrouter"
        )


class OpenRouterAdapter(BaseProviderAdapter):
    """Adapter that calls OpenRouter's chat completion endpoint."""

    def __init__(
        self,
        config: OpenRouterConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            "openrouter",
            model=config.model,
            timeout=config.timeout,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            transport=transport,
        )
        self.config = config

    def _build_payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": request.prompt}],
            "temperature": self._temperature(request),
            "max_tokens": self._max_tokens(request),
            "provider": {
                "data_collection": self.config.data_collection,
                "allow_fallbacks": self.config.allow_fallbacks,
            },
        }
        if self.config.structured_outputs:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": _schema_name(request),
                    "strict": True,
                    "schema": to_openrouter_schema(request.schema, strict=True),
                },
            }
        else:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def _invoke_model(
        self, payload: Dict[str, Any], request: GenerationRequest, model: str
    ) -> Dict[str, Any]:
        response = await self._post(payload)
        if response.is_error and "response_format" in payload and _is_format_error(response.text):
            logger.warning("OpenRouter model %s rejected response_format; retrying without it", model)
            stripped = {key: value for key, value in payload.items() if key != "response_format"}
            response = await self._post(stripped)
        if response.is_error:
            raise _error_from_response(response, model)
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(
                f"OpenRouter returned invalid JSON response: {exc}", provider="openrouter"
            ) from exc

    def _parse_response(
        self, raw_output: Dict[str, Any], request: GenerationRequest
    ) -> Tuple[str, str]:
        error = raw_output.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            kind = (
                GenerationErrorKind.RATE_LIMIT
                if is_rate_limit_message(str(message))
                else GenerationErrorKind.UPSTREAM
            )
            raise ProviderError(
                f"OpenRouter API error: {message}", kind=kind, provider="openrouter", payload=raw_output
            )
        choices = raw_output.get("choices") or []
        message = (choices[0] or {}).get("message") if choices else None
        if not isinstance(message, dict):
            raise ParseError("OpenRouter returned invalid response structure", provider="openrouter")

        if message.get("parsed") is not None:
            text = json.dumps(message["parsed"])
        elif message.get("content"):
            text = str(message["content"]).strip()
        else:
            raise ParseError("OpenRouter returned empty content", provider="openrouter")

        finish_reason = str(choices[0].get("finish_reason") or "UNKNOWN")
        if finish_reason.lower() != "stop":
            logger.warning(
                "OpenRouter finished with %s for %s; output may be truncated",
                finish_reason,
                request.label or "request",
            )
        cleaned, _ = recover_json(text, provider="openrouter")
        return cleaned, finish_reason

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        return await self._http().post(
            f"{self.config.base_url.rstrip('/')}/chat/completions",
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
                "HTTP-Referer": self.config.referer,
                "X-Title": self.config.title,
            },
            json=payload,
        )


def _schema_name(request: GenerationRequest) -> str:
    label = (request.label or "response").lower()
    cleaned = "".join(char if char.isalnum() else "_" for char in label).strip("_")
    return (cleaned or "response")[:64]


def _is_format_error(body: str) -> bool:
    return any(marker in body for marker in _FORMAT_ERROR_MARKERS)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
    return response.text[:200]


def _error_from_response(response: httpx.Response, model: str) -> ProviderError:
    status = response.status_code
    detail = _error_detail(response)
    if "no endpoints found" in detail.lower():
        return ProviderError(
            f"No OpenRouter endpoints available for model {model}: {detail}",
            kind=GenerationErrorKind.NO_ENDPOINTS,
            provider="openrouter",
            status_code=status,
        )
    message = f"OpenRouter API error ({status}): {detail}"
    if status == 429 or is_rate_limit_message(detail):
        return ProviderError(
            message,
            kind=GenerationErrorKind.RATE_LIMIT,
            provider="openrouter",
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )
    kind = GenerationErrorKind.AUTH if status in (401, 403) else GenerationErrorKind.UPSTREAM
    return ProviderError(message, kind=kind, provider="openrouter", status_code=status)
