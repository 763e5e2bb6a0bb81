from .documents import build_chunks, decode_pdf_pages, document_kind
from .lab_pipeline import BatchOutcome, LabReportPipeline, UploadedDocument
from .providers import (
    GeminiClient,
    ModelClient,
    ModelPayload,
    OpenAICompatibleClient,
    TierModels,
    build_model_client,
    tier_models_from_settings,
)
from .structured import StructuredExtractor

__all__ = [
    "BatchOutcome",
    "GeminiClient",
    "LabReportPipeline",
    "ModelClient",
    "ModelPayload",
    "OpenAICompatibleClient",
    "StructuredExtractor",
    "TierModels",
    "UploadedDocument",
    "build_chunks",
    "build_model_client",
    "decode_pdf_pages",
    "document_kind",
    "tier_models_from_settings",
]
