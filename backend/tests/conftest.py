from __future__ import annotations

import importlib
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from fakes import FakeClock  # noqa: E402


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_pypdf(monkeypatch):
    """Install a pypdf stand-in whose pages are the form-feed separated parts of the input bytes."""

    class _FakePage:
        def __init__(self, text: str) -> None:
            self._text = text

        def extract_text(self):
            return self._text

    class _FakeReader:
        def __init__(self, stream):
            raw = stream.read()
            if not raw.startswith(b"%PDF"):
                raise ValueError("not a pdf")
            body = raw[len(b"%PDF") :].decode("utf-8")
            self.pages = [_FakePage(text) for text in body.split("\f")] if body else []

    monkeypatch.setitem(sys.modules, "pypdf", SimpleNamespace(PdfReader=_FakeReader))


@pytest.fixture
def backend_module(monkeypatch):
    monkeypatch.setenv("LABPILOT_PROVIDER", "gemini")
    monkeypatch.setenv("GEMINI_API_KEY", "test-gemini-key")
    # Keep CI fast; pacing and backoff are covered with a fake clock elsewhere.
    monkeypatch.setenv("LABPILOT_MIN_REQUEST_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("LABPILOT_RETRY_BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("LABPILOT_RETRY_JITTER_SECONDS", "0")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client
