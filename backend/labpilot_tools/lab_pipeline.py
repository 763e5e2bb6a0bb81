"""Page-by-page lab report extraction.

Pages are sent to the model one chunk at a time, strictly in order. A chunk
that fails on both tiers is skipped; the document only fails as a whole when
nothing at all could be read from it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from labpilot_ai_core.errors import DocumentDecodeError, ExtractionError, NoDataExtractedError
from labpilot_ai_core.models import (
    SOURCE_LAB_RESULT,
    AccumulatedExtraction,
    ExtractionChunk,
    ModelTier,
    PartialExtractionResult,
)
from labpilot_ai_core.orchestrator import ModelFallbackOrchestrator
from labpilot_ai_core.parser import parse_lenient_object
from labpilot_ai_core.time_utils import to_iso, utc_now

from .documents import build_chunks
from .providers import ModelClient, ModelPayload, TierModels

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

LAB_EXTRACTION_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "sensitivities": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "food": {"type": "STRING"},
                    "level": {"type": "STRING", "enum": ["high", "medium", "low"]},
                    "category": {"type": "STRING"},
                },
                "required": ["food", "level"],
            },
        },
        "biomarkers": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING"},
                    "value": {"type": "NUMBER"},
                    "unit": {"type": "STRING"},
                    "status": {"type": "STRING", "enum": ["normal", "high", "low"]},
                },
                "required": ["name", "value", "unit"],
            },
        },
        "summary": {"type": "STRING"},
    },
}


def build_chunk_prompt(chunk: ExtractionChunk, *, report_type: str, include_summary: bool) -> str:
    lines = [
        f"Extract structured clinical data from this {report_type.replace('_', ' ')} lab report section ({chunk.source_label}).",
        "Return JSON only with keys: sensitivities (food, level: high|medium|low, category), "
        "biomarkers (name, numeric value, unit, status: normal|high|low).",
    ]
    if include_summary:
        lines.append("Also include summary: a one-paragraph plain-language synopsis of the report.")
    else:
        lines.append("Do not include a summary.")
    if chunk.raw_text:
        lines.append("report_text:")
        lines.append(chunk.raw_text)
    return "\n".join(lines)


@dataclass
class UploadedDocument:
    file_name: str
    data: bytes
    mime_type: str


@dataclass
class BatchItemResult:
    file_name: str
    extraction: AccumulatedExtraction | None = None
    error: str | None = None
    remedy: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.extraction is not None


@dataclass
class BatchOutcome:
    items: list[BatchItemResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.succeeded)

    @property
    def failure_count(self) -> int:
        return sum(1 for item in self.items if not item.succeeded)

    @property
    def total_records(self) -> int:
        return sum(
            len(item.extraction.sensitivities) + len(item.extraction.biomarkers)
            for item in self.items
            if item.extraction is not None
        )


class LabReportPipeline:
    def __init__(
        self,
        *,
        client: ModelClient,
        orchestrator: ModelFallbackOrchestrator,
        tier_models: TierModels,
        pages_per_chunk: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.orchestrator = orchestrator
        self.tier_models = tier_models
        self.pages_per_chunk = max(1, pages_per_chunk)
        self._clock = clock

    def _report_progress(self, on_progress: ProgressCallback | None, message: str) -> None:
        logger.info(message)
        if on_progress is None:
            return
        try:
            on_progress(message)
        except Exception:
            logger.exception("progress callback failed")

    def _process_chunk(self, chunk: ExtractionChunk, *, report_type: str, include_summary: bool) -> PartialExtractionResult:
        payload = ModelPayload(
            prompt=build_chunk_prompt(chunk, report_type=report_type, include_summary=include_summary),
            media=[chunk.media] if chunk.media is not None else [],
        )

        def _call(tier: ModelTier) -> str:
            return self.client.invoke(self.tier_models.model_for(tier), payload, LAB_EXTRACTION_SCHEMA)

        response_text = self.orchestrator.execute(_call, ModelTier.PRIMARY)
        parsed = parse_lenient_object(response_text)
        if parsed is None:
            logger.warning("no structured data recovered from %s", chunk.source_label)
        return PartialExtractionResult.from_payload(parsed)

    def extract_chunks(
        self,
        chunks: list[ExtractionChunk],
        *,
        report_type: str,
        on_progress: ProgressCallback | None = None,
    ) -> AccumulatedExtraction:
        if not chunks:
            raise DocumentDecodeError("No readable pages could be decoded from the document.")

        accumulated = AccumulatedExtraction(chunks_total=len(chunks))
        total = len(chunks)
        for position, chunk in enumerate(chunks, start=1):
            self._report_progress(on_progress, f"Analyzing {chunk.source_label} ({position}/{total})...")
            try:
                partial = self._process_chunk(chunk, report_type=report_type, include_summary=position == 1)
            except Exception as exc:
                logger.warning("skipping %s after extraction failure: %s", chunk.source_label, exc)
                accumulated.chunks_failed.append(chunk.source_label)
                continue
            accumulated.merge(partial)

        if accumulated.is_empty():
            raise NoDataExtractedError(
                f"No clinical data extracted from {total} chunk(s); {len(accumulated.chunks_failed)} failed."
            )
        accumulated.annotate(detected_at=to_iso(self._clock()), source=SOURCE_LAB_RESULT)
        return accumulated

    def extract(
        self,
        document: bytes,
        mime_type: str,
        report_type: str,
        on_progress: ProgressCallback | None = None,
        *,
        file_name: str | None = None,
    ) -> AccumulatedExtraction:
        chunks = build_chunks(document, mime_type, pages_per_chunk=self.pages_per_chunk, file_name=file_name)
        return self.extract_chunks(chunks, report_type=report_type, on_progress=on_progress)

    def extract_batch(
        self,
        files: list[UploadedDocument],
        report_type: str,
        on_progress: ProgressCallback | None = None,
    ) -> BatchOutcome:
        outcome = BatchOutcome()
        for upload in files:
            self._report_progress(on_progress, f"Analyzing {upload.file_name}...")
            try:
                extraction = self.extract(
                    upload.data,
                    upload.mime_type,
                    report_type,
                    on_progress,
                    file_name=upload.file_name,
                )
            except ExtractionError as exc:
                logger.warning("document %s failed: %s", upload.file_name, exc)
                outcome.items.append(BatchItemResult(upload.file_name, error=str(exc), remedy=exc.remedy))
                continue
            outcome.items.append(BatchItemResult(upload.file_name, extraction=extraction))
        return outcome
