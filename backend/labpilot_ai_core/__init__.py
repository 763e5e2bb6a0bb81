from .errors import (
    DocumentDecodeError,
    ExtractionError,
    NoDataExtractedError,
    ProviderConfigError,
    ProviderError,
    UnsupportedDocumentError,
)
from .models import (
    REPORT_TYPES,
    AccumulatedExtraction,
    BiomarkerRecord,
    ExtractionChunk,
    MediaPart,
    ModelTier,
    PartialExtractionResult,
    SensitivityRecord,
)
from .orchestrator import CircuitBreaker, ModelFallbackOrchestrator, RequestPacer
from .parser import parse_lenient, parse_lenient_object
from .retry import RetryPolicy
from .settings import LabPilotSettings

__all__ = [
    "REPORT_TYPES",
    "AccumulatedExtraction",
    "BiomarkerRecord",
    "CircuitBreaker",
    "DocumentDecodeError",
    "ExtractionChunk",
    "ExtractionError",
    "LabPilotSettings",
    "MediaPart",
    "ModelFallbackOrchestrator",
    "ModelTier",
    "NoDataExtractedError",
    "PartialExtractionResult",
    "ProviderConfigError",
    "ProviderError",
    "RequestPacer",
    "RetryPolicy",
    "SensitivityRecord",
    "UnsupportedDocumentError",
    "parse_lenient",
    "parse_lenient_object",
]
