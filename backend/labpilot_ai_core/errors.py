"""Error taxonomy shared by the orchestrator, the pipeline and the HTTP layer."""
from __future__ import annotations

RATE_LIMITED = "rate_limited"
SERVER_ERROR = "server_error"
UNAVAILABLE = "unavailable"
OTHER = "other"

ERROR_CATEGORIES = {RATE_LIMITED, SERVER_ERROR, UNAVAILABLE, OTHER}
TRANSIENT_CATEGORIES = {RATE_LIMITED, SERVER_ERROR, UNAVAILABLE}


class ProviderError(Exception):
    """A model call failed. category is the only thing callers branch on."""

    def __init__(
        self,
        message: str,
        *,
        category: str = OTHER,
        status_code: int | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        if category not in ERROR_CATEGORIES:
            category = OTHER
        self.category = category
        self.status_code = status_code
        self.provider = provider

    @property
    def transient(self) -> bool:
        return self.category in TRANSIENT_CATEGORIES

    @property
    def rate_limited(self) -> bool:
        return self.category == RATE_LIMITED

    def __repr__(self) -> str:
        return f"ProviderError(category={self.category!r}, status_code={self.status_code!r}, message={str(self)!r})"


class ProviderConfigError(Exception):
    pass


class ExtractionError(Exception):
    """Whole-document failure. remedy is safe to show to the end user."""

    default_remedy = "Try uploading a clearer copy of the report."

    def __init__(self, message: str, *, remedy: str | None = None) -> None:
        super().__init__(message)
        self.remedy = remedy or self.default_remedy


class DocumentDecodeError(ExtractionError):
    default_remedy = "The file may be a scanned image without extractable text. Try uploading a clear photo instead."


class NoDataExtractedError(ExtractionError):
    default_remedy = (
        "No clinical data could be read. The file may be a scanned image without a text layer, "
        "or the report format is not supported."
    )


class UnsupportedDocumentError(ExtractionError):
    default_remedy = "Upload a PDF, an image (PNG, JPEG, WEBP) or a plain-text report."
