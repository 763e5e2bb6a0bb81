from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any


class ModelTier(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


SENSITIVITY_LEVELS = {"high", "medium", "low"}
BIOMARKER_STATUSES = {"normal", "high", "low"}
REPORT_TYPES = {"food_sensitivity", "microbiome", "hormonal", "bloodwork"}

SOURCE_LAB_RESULT = "lab_result"
SOURCE_MANUAL = "manual"

DEFAULT_REPORT_SUMMARY = "Report analyzed."


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


def _coerce_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        # Lab sheets often carry qualifiers like "<5" or "5.2 mg/L".
        match = re.search(r"-?\d+(?:\.\d+)?", value.replace(",", ""))
        if not match:
            return None
        number = float(match.group(0))
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


@dataclass(frozen=True)
class MediaPart:
    mime_type: str
    data: bytes


@dataclass
class SensitivityRecord:
    food: str
    level: str
    category: str | None = None
    source: str | None = None
    detected_at: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> SensitivityRecord | None:
        if not isinstance(payload, dict):
            return None
        food = _clean_text(payload.get("food") or payload.get("name"))
        level = _clean_text(payload.get("level")).lower()
        if not food or level not in SENSITIVITY_LEVELS:
            return None
        category = _clean_text(payload.get("category")) or None
        return cls(food=food, level=level, category=category)


@dataclass
class BiomarkerRecord:
    name: str
    value: float
    unit: str
    status: str | None = None
    date: str | None = None
    source: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> BiomarkerRecord | None:
        if not isinstance(payload, dict):
            return None
        name = _clean_text(payload.get("name"))
        value = _coerce_number(payload.get("value"))
        if not name or value is None:
            return None
        status = _clean_text(payload.get("status")).lower() or None
        if status not in BIOMARKER_STATUSES:
            status = None
        return cls(name=name, value=value, unit=_clean_text(payload.get("unit")), status=status)


@dataclass(frozen=True)
class ExtractionChunk:
    index: int
    source_label: str
    raw_text: str
    media: MediaPart | None = None


@dataclass
class PartialExtractionResult:
    sensitivities: list[SensitivityRecord] = field(default_factory=list)
    biomarkers: list[BiomarkerRecord] = field(default_factory=list)
    summary: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> PartialExtractionResult:
        """Build a result from parsed model output, dropping anything malformed."""
        if not isinstance(payload, dict):
            return cls()
        sensitivities: list[SensitivityRecord] = []
        raw_sensitivities = payload.get("sensitivities")
        if isinstance(raw_sensitivities, list):
            for item in raw_sensitivities:
                record = SensitivityRecord.from_payload(item)
                if record is not None:
                    sensitivities.append(record)
        biomarkers: list[BiomarkerRecord] = []
        raw_biomarkers = payload.get("biomarkers")
        if not isinstance(raw_biomarkers, list):
            raw_biomarkers = payload.get("extracted_biomarkers") or payload.get("extractedBiomarkers")
        if isinstance(raw_biomarkers, list):
            for item in raw_biomarkers:
                record = BiomarkerRecord.from_payload(item)
                if record is not None:
                    biomarkers.append(record)
        summary = _clean_text(payload.get("summary")) or None
        return cls(sensitivities=sensitivities, biomarkers=biomarkers, summary=summary)

    def is_empty(self) -> bool:
        return not self.sensitivities and not self.biomarkers


@dataclass
class AccumulatedExtraction:
    sensitivities: list[SensitivityRecord] = field(default_factory=list)
    biomarkers: list[BiomarkerRecord] = field(default_factory=list)
    summary: str | None = None
    chunks_total: int = 0
    chunks_failed: list[str] = field(default_factory=list)

    def merge(self, partial: PartialExtractionResult) -> None:
        self.sensitivities.extend(partial.sensitivities)
        self.biomarkers.extend(partial.biomarkers)
        # The earliest pages usually carry the report's own synopsis.
        if self.summary is None and partial.summary:
            self.summary = partial.summary

    def is_empty(self) -> bool:
        return not self.sensitivities and not self.biomarkers

    def annotate(self, *, detected_at: str, source: str = SOURCE_LAB_RESULT) -> None:
        self.sensitivities = [
            replace(record, source=source, detected_at=detected_at) for record in self.sensitivities
        ]
        self.biomarkers = [replace(record, source=source, date=detected_at) for record in self.biomarkers]

    def as_dict(self) -> dict[str, Any]:
        return {
            "sensitivities": [asdict(record) for record in self.sensitivities],
            "biomarkers": [asdict(record) for record in self.biomarkers],
            "summary": self.summary,
            "chunks_total": self.chunks_total,
            "chunks_failed": list(self.chunks_failed),
        }

    def to_lab_report(self, *, report_type: str, report_id: str, uploaded_at: str) -> dict[str, Any]:
        return {
            "id": report_id,
            "type": report_type,
            "date_uploaded": uploaded_at,
            "summary": self.summary or DEFAULT_REPORT_SUMMARY,
            "extracted_biomarkers": [asdict(record) for record in self.biomarkers],
        }
