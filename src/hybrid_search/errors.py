"""
Error taxonomy shared by the retrieval components.

Every error carries a stable ``kind`` so callers (and the HTTP layer) can
report a structured error without inspecting exception classes.
"""

from __future__ import annotations

from typing import Any


class HybridSearchError(Exception):
    """Base class for all retrieval errors."""

    kind = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(HybridSearchError, ValueError):
    """Raised when a request or input fails shape/bounds validation."""

    kind = "validation_error"


class InputTooLarge(ValidationError):
    """Raised when text exceeds the configured embedding input budget."""

    kind = "input_too_large"


class ProviderError(HybridSearchError):
    """Raised when the embedding provider fails."""

    kind = "provider_error"


class InvalidEmbeddingResult(ProviderError):
    """Raised when a provider returns a vector of the wrong shape."""

    kind = "invalid_embedding_result"


class RateLimited(HybridSearchError):
    """Raised when the provider request budget is exhausted."""

    kind = "rate_limited"


class BackendUnavailable(HybridSearchError):
    """Raised when a storage remote procedure fails."""

    kind = "backend_unavailable"


class SearchTimeout(HybridSearchError, TimeoutError):
    """Raised when a search exceeds its time budget."""

    kind = "timeout"
