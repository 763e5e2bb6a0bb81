from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SUPPORTED_PROVIDERS = {"gemini", "openai"}

DEFAULT_PRIMARY_MODELS = {"gemini": "gemini-3-pro-preview", "openai": "gpt-4o"}
DEFAULT_SECONDARY_MODELS = {"gemini": "gemini-3-flash-preview", "openai": "gpt-4o-mini"}


def load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            load_local_env_file(candidate)


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_float(name: str, default: float) -> float:
    try:
        value = float(_env_str(name) or default)
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_int(name: str, default: int) -> int:
    try:
        value = int(_env_str(name) or default)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class LabPilotSettings:
    provider: str = "gemini"
    api_key: str = ""
    api_base_url: str = ""
    primary_model: str = DEFAULT_PRIMARY_MODELS["gemini"]
    secondary_model: str = DEFAULT_SECONDARY_MODELS["gemini"]
    min_request_interval_s: float = 1.0
    primary_cooldown_s: float = 60.0
    retry_attempts: int = 2
    retry_base_delay_s: float = 2.0
    retry_jitter_s: float = 1.0
    pages_per_chunk: int = 1
    request_timeout_s: float = 90.0
    max_document_bytes: int = 25 * 1024 * 1024
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @classmethod
    def from_env(cls) -> LabPilotSettings:
        provider = _env_str("LABPILOT_PROVIDER", "gemini").lower()
        if provider not in SUPPORTED_PROVIDERS:
            provider = "gemini"
        if provider == "openai":
            api_key = _env_str("OPENAI_API_KEY")
            api_base_url = _env_str("OPENAI_API_BASE_URL", "https://api.openai.com/v1")
        else:
            api_key = _env_str("GEMINI_API_KEY") or _env_str("API_KEY")
            api_base_url = _env_str("GEMINI_API_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
        origins = _env_str("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
        return cls(
            provider=provider,
            api_key=api_key,
            api_base_url=api_base_url.rstrip("/"),
            primary_model=_env_str("LABPILOT_PRIMARY_MODEL", DEFAULT_PRIMARY_MODELS[provider]),
            secondary_model=_env_str("LABPILOT_SECONDARY_MODEL", DEFAULT_SECONDARY_MODELS[provider]),
            min_request_interval_s=_env_float("LABPILOT_MIN_REQUEST_INTERVAL_SECONDS", 1.0),
            primary_cooldown_s=_env_float("LABPILOT_PRIMARY_COOLDOWN_SECONDS", 60.0),
            retry_attempts=_env_int("LABPILOT_RETRY_ATTEMPTS", 2),
            retry_base_delay_s=_env_float("LABPILOT_RETRY_BASE_DELAY_SECONDS", 2.0),
            retry_jitter_s=_env_float("LABPILOT_RETRY_JITTER_SECONDS", 1.0),
            pages_per_chunk=_env_int("LABPILOT_PAGES_PER_CHUNK", 1),
            request_timeout_s=_env_float("LABPILOT_REQUEST_TIMEOUT_SECONDS", 90.0),
            max_document_bytes=_env_int("LABPILOT_MAX_DOCUMENT_BYTES", 25 * 1024 * 1024),
            allowed_origins=[origin.strip() for origin in origins if origin.strip()],
        )
