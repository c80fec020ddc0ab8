"""Error taxonomy for the portrait pipeline.

Every error carries a stable machine-readable ``kind`` and the HTTP status it
maps to, so the API layer can render any of them with a single handler:

    {"error": "<kind>", "detail": "<human readable message>"}

``ProviderUnavailable`` and ``GenerationFailed`` are raised inside the
synthesizer only; they trigger the local fallback and are never surfaced to
callers.
"""

from __future__ import annotations


class PortraitworksError(Exception):
    """Base class for all pipeline errors."""

    kind: str = "internal_error"
    status_code: int = 500

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.__class__.__name__
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.detail}


class UnsupportedFormat(PortraitworksError):
    kind = "unsupported_format"
    status_code = 415


class BadRequest(PortraitworksError):
    kind = "bad_request"
    status_code = 400


class InvalidUpload(PortraitworksError):
    kind = "invalid_upload"
    status_code = 400


class ImageTooLarge(PortraitworksError):
    kind = "image_too_large"
    status_code = 413


class UnknownStyle(PortraitworksError):
    kind = "unknown_style"
    status_code = 400


class ProviderUnavailable(PortraitworksError):
    kind = "provider_unavailable"
    status_code = 503


class GenerationFailed(PortraitworksError):
    kind = "generation_failed"
    status_code = 502


class StorageUnavailable(PortraitworksError):
    kind = "storage_unavailable"
    status_code = 500


class UploadFailed(PortraitworksError):
    kind = "upload_failed"
    status_code = 500


class ArtifactNotFound(PortraitworksError):
    kind = "artifact_not_found"
    status_code = 404


class ArtifactFetchFailed(PortraitworksError):
    kind = "artifact_fetch_failed"
    status_code = 502


class SessionNotFound(PortraitworksError):
    kind = "session_not_found"
    status_code = 404


class PaymentNotCompleted(PortraitworksError):
    kind = "payment_not_completed"
    status_code = 402


class PaymentUnavailable(PortraitworksError):
    kind = "payment_unavailable"
    status_code = 500


class InvalidSignature(PortraitworksError):
    kind = "invalid_signature"
    status_code = 400


class StyleRegistrationError(ValueError):
    """Raised when a style profile is incomplete or the registry is not total."""
