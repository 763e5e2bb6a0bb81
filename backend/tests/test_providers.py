from __future__ import annotations

import base64
import json

import httpx
import pytest

from labpilot_ai_core.errors import OTHER, RATE_LIMITED, SERVER_ERROR, UNAVAILABLE, ProviderConfigError, ProviderError
from labpilot_ai_core.models import MediaPart, ModelTier
from labpilot_ai_core.settings import LabPilotSettings
from labpilot_tools.providers import (
    GeminiClient,
    ModelPayload,
    OpenAICompatibleClient,
    TierModels,
    build_model_client,
    classify_status,
)


def _gemini(handler) -> GeminiClient:
    return GeminiClient(api_key="k", base_url="https://gemini.test/v1beta", transport=httpx.MockTransport(handler))


def test_gemini_client_sends_inline_media_and_schema_and_returns_text():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": '{"ok": true}'}]}}]})

    payload = ModelPayload(prompt="extract", media=[MediaPart(mime_type="image/png", data=b"png")])
    text = _gemini(handler).invoke("gemini-pro", payload, {"type": "OBJECT"})

    assert text == '{"ok": true}'
    assert seen["url"] == "https://gemini.test/v1beta/models/gemini-pro:generateContent"
    assert seen["key"] == "k"
    parts = seen["body"]["contents"][0]["parts"]
    assert parts[0]["inline_data"] == {"mime_type": "image/png", "data": base64.b64encode(b"png").decode("ascii")}
    assert parts[1] == {"text": "extract"}
    assert seen["body"]["generationConfig"]["responseSchema"] == {"type": "OBJECT"}


@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (429, {"error": {"code": 429, "message": "Resource has been exhausted", "status": "RESOURCE_EXHAUSTED"}}, RATE_LIMITED),
        (400, {"error": {"message": "Quota exceeded for metric"}}, RATE_LIMITED),
        (500, {"error": {"message": "internal"}}, SERVER_ERROR),
        (503, {"error": {"message": "overloaded", "status": "UNAVAILABLE"}}, UNAVAILABLE),
        (400, {"error": {"message": "invalid argument", "status": "INVALID_ARGUMENT"}}, OTHER),
        (401, {"error": {"message": "bad key"}}, OTHER),
    ],
)
def test_http_errors_are_normalized(status, body, expected):
    client = _gemini(lambda request: httpx.Response(status, json=body))
    with pytest.raises(ProviderError) as excinfo:
        client.invoke("m", ModelPayload(prompt="x"))
    assert excinfo.value.category == expected
    assert excinfo.value.status_code == status
    assert excinfo.value.provider == "gemini"


def test_timeouts_are_transient_server_errors():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ProviderError) as excinfo:
        _gemini(handler).invoke("m", ModelPayload(prompt="x"))
    assert excinfo.value.category == SERVER_ERROR
    assert excinfo.value.transient


def test_connection_failures_are_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderError) as excinfo:
        _gemini(handler).invoke("m", ModelPayload(prompt="x"))
    assert excinfo.value.category == UNAVAILABLE


def test_openai_compatible_client_reads_choice_text():
    seen: dict = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"summary": "ok"}'}}]})

    client = OpenAICompatibleClient(api_key="sk", base_url="https://llm.test/v1", transport=httpx.MockTransport(handler))
    assert client.invoke("gpt-4o", ModelPayload(prompt="hello")) == '{"summary": "ok"}'
    assert seen["auth"] == "Bearer sk"
    assert seen["body"]["model"] == "gpt-4o"


def test_missing_api_key_fails_at_construction():
    with pytest.raises(ProviderConfigError):
        build_model_client(LabPilotSettings(provider="gemini", api_key=""))


def test_build_model_client_picks_provider():
    client = build_model_client(LabPilotSettings(provider="openai", api_key="sk", api_base_url="https://x/v1"))
    assert isinstance(client, OpenAICompatibleClient)


def test_tier_models_map_tiers_to_model_ids():
    tiers = TierModels(primary="pro", secondary="flash")
    assert tiers.model_for(ModelTier.PRIMARY) == "pro"
    assert tiers.model_for(ModelTier.SECONDARY) == "flash"


def test_classify_status_uses_message_hints():
    assert classify_status(403, None, "Rate limit reached for requests") == RATE_LIMITED
    assert classify_status(502) == SERVER_ERROR
    assert classify_status(None) == OTHER
