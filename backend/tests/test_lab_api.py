from __future__ import annotations

import json

from fakes import ScriptedModelClient, page_responder, pdf_bytes, server_error
from labpilot_ai_core.time_utils import parse_iso
from sse_utils import parse_sse_events

SCENARIO = {
    1: {"sensitivities": [{"food": "Dairy", "level": "high"}], "summary": "elevated dairy reactivity"},
    2: {"biomarkers": [{"name": "CRP", "value": 5, "unit": "mg/L", "status": "high"}]},
}


def _use_client(backend_module, monkeypatch, responder) -> ScriptedModelClient:
    fake = ScriptedModelClient(responder)
    monkeypatch.setattr(backend_module.container, "_client", fake)
    return fake


def test_health_reports_tier_models(client):
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["provider"] == "gemini"
    assert payload["breaker_open"] is False


def test_labs_extract_returns_merged_extraction(client, backend_module, monkeypatch, fake_pypdf):
    _use_client(backend_module, monkeypatch, page_responder(SCENARIO))
    response = client.post(
        "/labs/extract",
        data={"report_type": "food_sensitivity"},
        files={"document": ("labs.pdf", pdf_bytes("Dairy IgG", "CRP"), "application/pdf")},
    )
    assert response.status_code == 200
    payload = response.json()
    extraction = payload["extraction"]
    assert [item["food"] for item in extraction["sensitivities"]] == ["Dairy"]
    assert extraction["sensitivities"][0]["source"] == "lab_result"
    assert extraction["biomarkers"][0]["name"] == "CRP"
    assert extraction["summary"] == "elevated dairy reactivity"
    assert payload["report"]["id"].startswith("lab_")
    assert payload["report"]["type"] == "food_sensitivity"
    assert payload["report"]["summary"] == "elevated dairy reactivity"
    assert payload["report"]["date_uploaded"].endswith("Z")
    assert parse_iso(payload["report"]["date_uploaded"]).tzinfo is not None
    assert payload["partial"] is False
    assert payload["progress"] == ["Analyzing page 1 (1/2)...", "Analyzing page 2 (2/2)..."]


def test_labs_extract_reports_partial_success(client, backend_module, monkeypatch, fake_pypdf):
    _use_client(backend_module, monkeypatch, page_responder(SCENARIO, failing_pages={3}))
    response = client.post(
        "/labs/extract",
        data={"report_type": "bloodwork"},
        files={"document": ("labs.pdf", pdf_bytes("a", "b", "c"), "application/pdf")},
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["partial"] is True
    assert payload["extraction"]["chunks_failed"] == ["page 3"]


def test_labs_extract_surfaces_no_data_with_remedy(client, backend_module, monkeypatch):
    def _always_down(model, payload):
        raise server_error()

    _use_client(backend_module, monkeypatch, _always_down)
    response = client.post(
        "/labs/extract",
        data={"report_type": "bloodwork"},
        files={"document": ("scan.png", b"\x89PNG", "image/png")},
    )
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert "scanned image" in detail["remedy"]


def test_labs_extract_rejects_bad_input(client, backend_module, monkeypatch):
    _use_client(backend_module, monkeypatch, lambda model, payload: "{}")
    empty = client.post(
        "/labs/extract",
        data={"report_type": "bloodwork"},
        files={"document": ("empty.txt", b"", "text/plain")},
    )
    assert empty.status_code == 400
    assert "empty" in empty.json()["detail"].lower()

    unsupported = client.post(
        "/labs/extract",
        data={"report_type": "bloodwork"},
        files={"document": ("labs.zip", b"PK", "application/zip")},
    )
    assert unsupported.status_code == 415

    bad_type = client.post(
        "/labs/extract",
        data={"report_type": "horoscope"},
        files={"document": ("labs.txt", b"CRP 5", "text/plain")},
    )
    assert bad_type.status_code == 400


def test_labs_extract_without_provider_key_is_unavailable(client, backend_module, monkeypatch):
    monkeypatch.setattr(backend_module.container, "_client", None)
    monkeypatch.setattr(
        backend_module.container,
        "settings",
        backend_module.LabPilotSettings(provider="gemini", api_key=""),
    )
    response = client.post(
        "/labs/extract",
        data={"report_type": "bloodwork"},
        files={"document": ("labs.txt", b"CRP 5 mg/L", "text/plain")},
    )
    assert response.status_code == 503
    assert "not configured" in response.json()["detail"]


def test_labs_extract_stream_emits_progress_then_result(client, backend_module, monkeypatch, fake_pypdf):
    _use_client(backend_module, monkeypatch, page_responder(SCENARIO))
    response = client.post(
        "/labs/extract/stream",
        data={"report_type": "food_sensitivity"},
        files={"document": ("labs.pdf", pdf_bytes("a", "b"), "application/pdf")},
    )
    assert response.status_code == 200
    assert "text/event-stream" in response.headers.get("content-type", "")
    events = parse_sse_events(response.text)
    assert [event["event"] for event in events] == ["progress", "progress", "result"]
    assert events[0]["data"]["message"] == "Analyzing page 1 (1/2)..."
    result = events[-1]["data"]
    assert result["extraction"]["summary"] == "elevated dairy reactivity"
    assert len(result["progress"]) == 2


def test_labs_extract_stream_reports_fatal_errors_as_events(client, backend_module, monkeypatch):
    _use_client(backend_module, monkeypatch, lambda model, payload: "not json")
    response = client.post(
        "/labs/extract/stream",
        data={"report_type": "bloodwork"},
        files={"document": ("labs.txt", b"nothing useful", "text/plain")},
    )
    events = parse_sse_events(response.text)
    assert events[-1]["event"] == "error"
    assert events[-1]["data"]["remedy"]


def test_foods_analyze_returns_detected_items(client, backend_module, monkeypatch):
    fake = _use_client(
        backend_module,
        monkeypatch,
        lambda model, payload: json.dumps({"detected_items": [{"name": "Salad"}]}),
    )
    response = client.post(
        "/foods/analyze",
        data={"condition": "eczema"},
        files={"image": ("meal.jpg", b"\xff\xd8", "image/jpeg")},
    )
    assert response.status_code == 200
    assert response.json()["detected_items"] == [{"name": "Salad"}]
    assert fake.calls[0].media_count == 1


def test_logs_parse_validates_body_and_returns_defaults(client, backend_module, monkeypatch):
    _use_client(backend_module, monkeypatch, lambda model, payload: '{"behavior_logs": [{"type": "walk"}]}')
    response = client.post("/logs/parse", json={"text": "walked 20 minutes", "condition": "psoriasis"})
    assert response.status_code == 200
    assert response.json() == {"food_logs": [], "behavior_logs": [{"type": "walk"}]}

    invalid = client.post("/logs/parse", json={"text": ""})
    assert invalid.status_code == 422


def test_logs_parse_maps_provider_rate_limit(client, backend_module, monkeypatch):
    from fakes import rate_limited

    def _quota(model, payload):
        raise rate_limited()

    _use_client(backend_module, monkeypatch, _quota)
    response = client.post("/logs/parse", json={"text": "ate toast"})
    assert response.status_code == 429


def test_meal_simulation_and_menu_scan_accept_images_only(client, backend_module, monkeypatch):
    _use_client(backend_module, monkeypatch, lambda model, payload: '{"risk_score": 15, "verdict": "Safe"}')
    simulated = client.post(
        "/foods/simulate",
        data={"condition": "HS"},
        files={"image": ("meal.png", b"\x89PNG", "image/png")},
    )
    assert simulated.status_code == 200
    assert simulated.json()["verdict"] == "Safe"
    assert simulated.json()["biological_mechanisms"] == []

    menu = client.post(
        "/menus/analyze",
        data={"condition": "HS"},
        files={"image": ("menu.pdf", b"%PDF", "application/pdf")},
    )
    assert menu.status_code == 415


def test_coach_chat_and_pattern_insights(client, backend_module, monkeypatch):
    _use_client(backend_module, monkeypatch, lambda model, payload: "not json")
    chat = client.post("/coach/chat", json={"message": "How am I doing?", "condition": "HS"})
    assert chat.status_code == 200
    assert chat.json()["suggestions"] == []

    patterns = client.post("/insights/patterns", json={"condition": "HS", "flare_logs": [{"severity": 3}]})
    assert patterns.status_code == 200
    assert patterns.json() == {"analysis": None}


def test_list_endpoints_wrap_results(client, backend_module, monkeypatch):
    _use_client(backend_module, monkeypatch, lambda model, payload: '[{"topic": "Diet", "stat": "60%", "trend": "up"}]')
    insights = client.get("/insights/global", params={"condition": "HS"})
    assert insights.json() == {"insights": [{"topic": "Diet", "stat": "60%", "trend": "up"}]}

    reminders = client.post("/reminders", json={"condition": "HS"})
    assert reminders.status_code == 200
    assert len(reminders.json()["reminders"]) == 1


def test_flare_detective_maps_provider_outage_to_bad_gateway(client, backend_module, monkeypatch):
    def _down(model, payload):
        raise server_error()

    _use_client(backend_module, monkeypatch, _down)
    response = client.post("/insights/flare-detective", json={"condition": "HS"})
    assert response.status_code == 502
