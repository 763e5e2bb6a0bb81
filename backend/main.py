from __future__ import annotations

import json
import logging
import os
import queue
import threading
import uuid
from pathlib import Path
from typing import Any, Callable

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from labpilot_ai_core import (
    REPORT_TYPES,
    AccumulatedExtraction,
    ExtractionError,
    LabPilotSettings,
    ModelFallbackOrchestrator,
    ModelTier,
    ProviderConfigError,
    ProviderError,
    RetryPolicy,
    UnsupportedDocumentError,
)
from labpilot_ai_core.settings import bootstrap_local_env
from labpilot_ai_core.time_utils import to_iso, utc_now
from labpilot_tools import (
    LabReportPipeline,
    ModelClient,
    StructuredExtractor,
    build_model_client,
    document_kind,
    tier_models_from_settings,
)

bootstrap_local_env()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("labpilot")


class HealthLogRequest(BaseModel):
    text: str = Field(min_length=1, max_length=4000)
    condition: str | None = None


class CoachChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    condition: str | None = None


class ProfileContextRequest(BaseModel):
    condition: str | None = None
    known_triggers: list[str] = Field(default_factory=list)


class FlareHistoryRequest(BaseModel):
    condition: str | None = None
    goals: list[str] = Field(default_factory=list)
    flare_logs: list[dict[str, Any]] = Field(default_factory=list)
    food_logs: list[dict[str, Any]] = Field(default_factory=list)


class LabPilotApp:
    """Process-wide wiring. The orchestrator is shared so pacing and cool-down span all requests."""

    def __init__(self, settings: LabPilotSettings | None = None, client: ModelClient | None = None) -> None:
        self.settings = settings or LabPilotSettings.from_env()
        self.tier_models = tier_models_from_settings(self.settings)
        self.orchestrator = ModelFallbackOrchestrator(
            RetryPolicy(
                max_attempts=self.settings.retry_attempts,
                base_delay_s=self.settings.retry_base_delay_s,
                max_jitter_s=self.settings.retry_jitter_s,
            ),
            min_interval_s=self.settings.min_request_interval_s,
            cooldown_s=self.settings.primary_cooldown_s,
        )
        self._client = client

    @property
    def client(self) -> ModelClient:
        if self._client is None:
            self._client = build_model_client(self.settings)
        return self._client

    def pipeline(self) -> LabReportPipeline:
        return LabReportPipeline(
            client=self.client,
            orchestrator=self.orchestrator,
            tier_models=self.tier_models,
            pages_per_chunk=self.settings.pages_per_chunk,
        )

    def extractor(self) -> StructuredExtractor:
        return StructuredExtractor(client=self.client, orchestrator=self.orchestrator, tier_models=self.tier_models)


container = LabPilotApp()
app = FastAPI(title="LabPilot Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=container.settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _normalize_upload_filename(upload: UploadFile | None, fallback_name: str) -> str:
    file_name = (upload.filename or "").strip() if upload else ""
    return Path(file_name).name or fallback_name


async def _read_upload_bytes(upload: UploadFile, *, max_bytes: int) -> bytes:
    raw = await upload.read(max_bytes + 1)
    if len(raw) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Document file exceeds {max_bytes // (1024 * 1024)}MB limit.",
        )
    if not raw:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    return raw


def _validate_report_type(report_type: str) -> str:
    normalized = (report_type or "").strip().lower()
    if normalized not in REPORT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid report_type value.")
    return normalized


def _validate_document(file_name: str, mime_type: str) -> None:
    if document_kind(mime_type, file_name) == "unsupported":
        raise HTTPException(status_code=415, detail=UnsupportedDocumentError.default_remedy)


def _require_pipeline() -> LabReportPipeline:
    try:
        return container.pipeline()
    except ProviderConfigError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _require_extractor() -> StructuredExtractor:
    try:
        return container.extractor()
    except ProviderConfigError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _extraction_error_detail(exc: ExtractionError) -> dict[str, str]:
    return {"message": str(exc), "remedy": exc.remedy}


def _extraction_response(extraction: AccumulatedExtraction, *, report_type: str, progress: list[str]) -> dict[str, Any]:
    return {
        "report": extraction.to_lab_report(
            report_type=report_type,
            report_id=f"lab_{uuid.uuid4().hex}",
            uploaded_at=to_iso(utc_now()),
        ),
        "extraction": extraction.as_dict(),
        "partial": bool(extraction.chunks_failed),
        "progress": progress,
    }


async def _accept_document(document: UploadFile | None, report_type: str) -> tuple[bytes, str, str, str]:
    if document is None:
        raise HTTPException(status_code=400, detail="Missing multipart file field 'document'.")
    normalized_type = _validate_report_type(report_type)
    file_name = _normalize_upload_filename(document, "lab-report")
    mime_type = (document.content_type or "").lower().strip()
    _validate_document(file_name, mime_type)
    document_bytes = await _read_upload_bytes(document, max_bytes=container.settings.max_document_bytes)
    return document_bytes, file_name, mime_type, normalized_type


@app.get("/health")
def health() -> dict[str, Any]:
    stats = container.orchestrator.stats()
    return {
        "status": "ok",
        "provider": container.settings.provider,
        "primary_model": container.tier_models.model_for(ModelTier.PRIMARY),
        "secondary_model": container.tier_models.model_for(ModelTier.SECONDARY),
        "breaker_open": stats["breaker_open"],
    }


@app.post("/labs/extract")
async def labs_extract(
    document: UploadFile | None = File(default=None),
    report_type: str = Form(default="bloodwork"),
):
    document_bytes, file_name, mime_type, normalized_type = await _accept_document(document, report_type)
    pipeline = _require_pipeline()
    progress: list[str] = []
    try:
        extraction = await run_in_threadpool(
            pipeline.extract,
            document_bytes,
            mime_type,
            normalized_type,
            progress.append,
            file_name=file_name,
        )
    except UnsupportedDocumentError as exc:
        raise HTTPException(status_code=415, detail=_extraction_error_detail(exc)) from exc
    except ExtractionError as exc:
        raise HTTPException(status_code=422, detail=_extraction_error_detail(exc)) from exc
    return _extraction_response(extraction, report_type=normalized_type, progress=progress)


@app.post("/labs/extract/stream")
async def labs_extract_stream(
    document: UploadFile | None = File(default=None),
    report_type: str = Form(default="bloodwork"),
):
    document_bytes, file_name, mime_type, normalized_type = await _accept_document(document, report_type)
    pipeline = _require_pipeline()
    events: queue.Queue[tuple[str, Any] | None] = queue.Queue()

    def _worker() -> None:
        try:
            extraction = pipeline.extract(
                document_bytes,
                mime_type,
                normalized_type,
                lambda message: events.put(("progress", message)),
                file_name=file_name,
            )
            events.put(("result", extraction))
        except ExtractionError as exc:
            events.put(("error", _extraction_error_detail(exc)))
        except Exception:
            logger.exception("lab extraction stream failed")
            events.put(("error", {"message": "Lab extraction pipeline error.", "remedy": ""}))
        finally:
            events.put(None)

    def event_stream():
        threading.Thread(target=_worker, daemon=True).start()
        progress: list[str] = []
        while True:
            item = events.get()
            if item is None:
                break
            kind, value = item
            if kind == "progress":
                progress.append(value)
                yield _emit_sse("progress", {"message": value})
            elif kind == "result":
                yield _emit_sse("result", _extraction_response(value, report_type=normalized_type, progress=progress))
            else:
                yield _emit_sse("error", value)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


async def _read_image_upload(image: UploadFile | None, fallback_name: str) -> tuple[bytes, str]:
    if image is None:
        raise HTTPException(status_code=400, detail="Missing multipart file field 'image'.")
    file_name = _normalize_upload_filename(image, fallback_name)
    mime_type = (image.content_type or "").lower().strip()
    if document_kind(mime_type, file_name) != "image":
        raise HTTPException(status_code=415, detail="Unsupported image format.")
    image_bytes = await _read_upload_bytes(image, max_bytes=container.settings.max_document_bytes)
    return image_bytes, mime_type if mime_type.startswith("image/") else "image/jpeg"


async def _run_extraction(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return await run_in_threadpool(fn, *args, **kwargs)
    except ProviderError as exc:
        status_code = 429 if exc.rate_limited else 502
        raise HTTPException(status_code=status_code, detail=f"{label} provider is unavailable. Retry shortly.") from exc


@app.post("/foods/analyze")
async def foods_analyze(
    image: UploadFile | None = File(default=None),
    condition: str | None = Form(default=None),
):
    image_bytes, mime_type = await _read_image_upload(image, "meal-photo")
    extractor = _require_extractor()
    return await _run_extraction("Food analysis", extractor.analyze_food_image, image_bytes, mime_type, condition=condition)


@app.post("/foods/scan")
async def foods_scan(
    image: UploadFile | None = File(default=None),
    condition: str | None = Form(default=None),
):
    image_bytes, mime_type = await _read_image_upload(image, "grocery-label")
    extractor = _require_extractor()
    return await _run_extraction("Grocery scan", extractor.scan_grocery_product, image_bytes, mime_type, condition=condition)


@app.post("/foods/simulate")
async def foods_simulate(
    image: UploadFile | None = File(default=None),
    condition: str | None = Form(default=None),
):
    image_bytes, mime_type = await _read_image_upload(image, "meal-photo")
    extractor = _require_extractor()
    return await _run_extraction("Meal simulation", extractor.simulate_meal_impact, image_bytes, mime_type, condition=condition)


@app.post("/menus/analyze")
async def menus_analyze(
    image: UploadFile | None = File(default=None),
    condition: str | None = Form(default=None),
):
    image_bytes, mime_type = await _read_image_upload(image, "menu-photo")
    extractor = _require_extractor()
    return await _run_extraction("Menu analysis", extractor.analyze_restaurant_menu, image_bytes, mime_type, condition=condition)


@app.post("/logs/parse")
async def logs_parse(payload: HealthLogRequest):
    extractor = _require_extractor()
    return await _run_extraction("Log parsing", extractor.parse_health_log_text, payload.text, condition=payload.condition)


@app.post("/coach/chat")
async def coach_chat(payload: CoachChatRequest):
    extractor = _require_extractor()
    return await _run_extraction("Coach", extractor.chat_with_coach, payload.message, condition=payload.condition)


@app.post("/insights/patterns")
async def insights_patterns(payload: FlareHistoryRequest):
    extractor = _require_extractor()
    analysis = await _run_extraction(
        "Pattern analysis",
        extractor.generate_pattern_insights,
        payload.flare_logs,
        condition=payload.condition,
        goals=payload.goals,
    )
    return {"analysis": analysis}


@app.post("/insights/flare-detective")
async def insights_flare_detective(payload: FlareHistoryRequest):
    extractor = _require_extractor()
    return await _run_extraction(
        "Flare detective",
        extractor.run_flare_detective,
        payload.flare_logs,
        payload.food_logs,
        condition=payload.condition,
    )


@app.get("/insights/global")
async def insights_global(condition: str | None = None):
    extractor = _require_extractor()
    return {"insights": await _run_extraction("Global insights", extractor.get_global_insights, condition)}


@app.post("/reminders")
async def reminders(payload: ProfileContextRequest):
    extractor = _require_extractor()
    return {"reminders": await _run_extraction("Reminders", extractor.get_smart_reminders, condition=payload.condition)}


@app.post("/meal-plans/safe")
async def meal_plans_safe(payload: ProfileContextRequest):
    extractor = _require_extractor()
    return await _run_extraction(
        "Meal planning",
        extractor.generate_safe_meal_plan,
        condition=payload.condition,
        known_triggers=payload.known_triggers,
    )


@app.post("/marketplace/recommendations")
async def marketplace_recommendations(payload: ProfileContextRequest):
    extractor = _require_extractor()
    products = await _run_extraction(
        "Marketplace",
        extractor.get_marketplace_recommendations,
        condition=payload.condition,
        known_triggers=payload.known_triggers,
    )
    return {"products": products}
