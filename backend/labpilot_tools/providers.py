"""Model provider clients.

Every provider failure leaves this module as a ``ProviderError`` whose
``category`` is the only thing the orchestrator looks at.
"""
from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from labpilot_ai_core.errors import (
    OTHER,
    RATE_LIMITED,
    SERVER_ERROR,
    UNAVAILABLE,
    ProviderConfigError,
    ProviderError,
)
from labpilot_ai_core.models import MediaPart, ModelTier
from labpilot_ai_core.settings import LabPilotSettings

logger = logging.getLogger(__name__)

_QUOTA_MARKERS = ("quota", "rate limit", "rate-limit", "resource_exhausted", "too many requests")


@dataclass
class ModelPayload:
    prompt: str
    media: list[MediaPart] = field(default_factory=list)


@dataclass(frozen=True)
class TierModels:
    primary: str
    secondary: str

    def model_for(self, tier: ModelTier) -> str:
        return self.primary if tier == ModelTier.PRIMARY else self.secondary


class ModelClient(Protocol):
    provider: str

    def invoke(self, model_id: str, payload: ModelPayload, schema_hint: dict[str, Any] | None = None) -> str: ...


def classify_status(status_code: int | None, provider_status: str | None = None, message: str = "") -> str:
    lowered = (message or "").lower()
    if status_code == 429 or (provider_status or "").upper() == "RESOURCE_EXHAUSTED":
        return RATE_LIMITED
    if any(marker in lowered for marker in _QUOTA_MARKERS):
        return RATE_LIMITED
    if status_code == 503 or (provider_status or "").upper() == "UNAVAILABLE":
        return UNAVAILABLE
    if status_code is not None and status_code >= 500:
        return SERVER_ERROR
    return OTHER


def _provider_error_details(response: httpx.Response) -> tuple[str, str | None]:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    provider_status: str | None = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            status_value = err.get("status") or err.get("type")
            if isinstance(status_value, str):
                provider_status = status_value
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip(), provider_status
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip(), provider_status
    return message or f"HTTP {response.status_code}", provider_status


def provider_error_from_response(response: httpx.Response, *, provider: str) -> ProviderError:
    message, provider_status = _provider_error_details(response)
    category = classify_status(response.status_code, provider_status, message)
    return ProviderError(
        f"{provider} request failed: {message}",
        category=category,
        status_code=response.status_code,
        provider=provider,
    )


def provider_error_from_exception(exc: httpx.HTTPError, *, provider: str) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(f"{provider} request timed out.", category=SERVER_ERROR, provider=provider)
    if isinstance(exc, httpx.TransportError):
        return ProviderError(f"Failed to reach {provider}: {exc}", category=UNAVAILABLE, provider=provider)
    return ProviderError(f"{provider} request failed: {exc}", category=OTHER, provider=provider)


class _HttpModelClient:
    provider = "http"

    def __init__(self, *, api_key: str, base_url: str, timeout_s: float = 90.0, transport: httpx.BaseTransport | None = None) -> None:
        if not (api_key or "").strip():
            raise ProviderConfigError(f"{self.provider} API key is not configured.")
        self.api_key = api_key.strip()
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport

    def _post(self, url: str, *, headers: dict[str, str], body: dict[str, Any]) -> dict[str, Any]:
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout_s, connect=10.0), transport=self._transport) as client:
                response = client.post(url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise provider_error_from_exception(exc, provider=self.provider) from exc
        if response.status_code >= 400:
            raise provider_error_from_response(response, provider=self.provider)
        try:
            completion = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.provider} returned a non-JSON envelope.",
                category=SERVER_ERROR,
                status_code=response.status_code,
                provider=self.provider,
            ) from exc
        if not isinstance(completion, dict):
            raise ProviderError(f"{self.provider} returned an unexpected envelope.", provider=self.provider)
        return completion


class GeminiClient(_HttpModelClient):
    provider = "gemini"

    def invoke(self, model_id: str, payload: ModelPayload, schema_hint: dict[str, Any] | None = None) -> str:
        parts: list[dict[str, Any]] = []
        for media in payload.media:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": media.mime_type,
                        "data": base64.b64encode(media.data).decode("ascii"),
                    }
                }
            )
        parts.append({"text": payload.prompt})
        generation_config: dict[str, Any] = {"temperature": 0.1, "responseMimeType": "application/json"}
        if schema_hint:
            generation_config["responseSchema"] = schema_hint
        body = {"contents": [{"role": "user", "parts": parts}], "generationConfig": generation_config}
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        completion = self._post(f"{self.base_url}/models/{model_id}:generateContent", headers=headers, body=body)
        return coerce_gemini_text(completion)


class OpenAICompatibleClient(_HttpModelClient):
    provider = "openai"

    def invoke(self, model_id: str, payload: ModelPayload, schema_hint: dict[str, Any] | None = None) -> str:
        user_content: list[dict[str, Any]] = [{"type": "text", "text": payload.prompt}]
        for media in payload.media:
            data_url = f"data:{media.mime_type};base64,{base64.b64encode(media.data).decode('ascii')}"
            user_content.append({"type": "image_url", "image_url": {"url": data_url}})
        system = "Return strict JSON only."
        if schema_hint:
            system += " Follow this JSON schema: " + json.dumps(schema_hint, separators=(",", ":"))
        body = {
            "model": model_id,
            "temperature": 0.1,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user_content},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        completion = self._post(f"{self.base_url}/chat/completions", headers=headers, body=body)
        return coerce_completion_text(completion)


def coerce_gemini_text(response_json: dict[str, Any]) -> str:
    candidates = response_json.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    texts = [part.get("text") for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]
    return "\n".join(texts)


def coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


def build_model_client(settings: LabPilotSettings, *, transport: httpx.BaseTransport | None = None) -> ModelClient:
    client_cls = OpenAICompatibleClient if settings.provider == "openai" else GeminiClient
    logger.info("using %s provider (%s / %s)", client_cls.provider, settings.primary_model, settings.secondary_model)
    return client_cls(
        api_key=settings.api_key,
        base_url=settings.api_base_url,
        timeout_s=settings.request_timeout_s,
        transport=transport,
    )


def tier_models_from_settings(settings: LabPilotSettings) -> TierModels:
    return TierModels(primary=settings.primary_model, secondary=settings.secondary_model)
