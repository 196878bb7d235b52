"""Error kinds raised by the media pipeline.

Every error carries a stable ``code`` and the HTTP status the API layer maps it
to. Backend-specific failures are translated into these kinds where the backend
is called, never further up.
"""

from __future__ import annotations

from typing import Any


class MediaError(Exception):
    code = "media_error"
    status_code = 400

    def __init__(self, detail: str | None = None, **meta: Any) -> None:
        self.detail = detail or self.code.replace("_", " ").capitalize()
        self.meta = meta
        super().__init__(self.detail)


class UnsupportedMediaError(MediaError):
    code = "unsupported_media"
    status_code = 415


class TooLargeError(MediaError):
    code = "too_large"
    status_code = 413


class NotUploadedError(MediaError):
    code = "not_uploaded"
    status_code = 409


class BadPurposeError(MediaError):
    code = "bad_purpose"
    status_code = 400


class ConflictError(MediaError):
    code = "conflict"
    status_code = 409


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


class NotFoundError(MediaError):
    code = "not_found"
    status_code = 404


class ForbiddenError(MediaError):
    code = "forbidden"
    status_code = 403


class NotReadyError(MediaError):
    code = "not_ready"
    status_code = 409

    def __init__(self, detail: str | None = None, *, reason: str | None = None, **meta: Any) -> None:
        self.reason = reason
        super().__init__(detail, reason=reason, **meta)


class ConfigError(MediaError):
    code = "config_error"
    status_code = 503


class TransientError(MediaError):
    code = "transient"
    status_code = 503


class ProcessingError(MediaError):
    """Terminal processing failure; ``code`` is persisted as ``processing_error``."""

    status_code = 422

    def __init__(self, code: str, detail: str | None = None, **meta: Any) -> None:
        self.code = code
        super().__init__(detail or code, **meta)
