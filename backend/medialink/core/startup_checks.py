from __future__ import annotations

import logging

from medialink.core.config import Settings

logger = logging.getLogger(__name__)


def _is_production(settings: Settings) -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _looks_like_localhost(url: str | None) -> bool:
    value = (url or "").strip().lower()
    if not value:
        return False
    return "localhost" in value or "127.0.0.1" in value


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def signing_credential_problem(settings: Settings) -> str | None:
    """Describe why upload URLs cannot be minted, or None when they can."""
    if settings.blob_backend == "s3":
        if not (settings.s3_access_key_id or "").strip() or not (settings.s3_secret_access_key or "").strip():
            return "S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY are required to mint upload URLs."
        return None
    if not (settings.blob_signing_key or settings.secret_key or "").strip():
        return "BLOB_SIGNING_KEY (or SECRET_KEY) is required to mint upload URLs."
    return None


def _validate_core_production_settings(settings: Settings, problems: list[str]) -> None:
    secret = (settings.secret_key or "").strip()
    _append_if(
        problems,
        condition=secret in {"", "dev-secret-key"} or len(secret) < 32,
        message="SECRET_KEY must be set to a strong random value (not the dev default).",
    )
    _append_if(
        problems,
        condition=not (settings.sentry_dsn or "").strip(),
        message="SENTRY_DSN must be configured in production.",
    )
    _append_if(
        problems,
        condition=not (settings.redis_url or "").strip(),
        message="REDIS_URL must be configured in production.",
    )


def _validate_media_settings(settings: Settings, problems: list[str]) -> None:
    _append_if(
        problems,
        condition=settings.blob_backend == "local",
        message="BLOB_BACKEND=local is not supported in production.",
    )
    _append_if(
        problems,
        condition=_looks_like_localhost(settings.public_base_url) and not settings.cdn_endpoint,
        message="PUBLIC_BASE_URL or CDN_ENDPOINT must point at a public origin in production.",
    )
    for queue in ("image", "video"):
        visibility = int(getattr(settings, f"{queue}_visibility_timeout_seconds"))
        _append_if(
            problems,
            condition=settings.blob_operation_timeout_seconds > visibility / 2,
            message=f"BLOB_OPERATION_TIMEOUT_SECONDS must not exceed half of the {queue} visibility timeout.",
        )


def validate_production_settings(settings: Settings) -> None:
    """
    Fail fast on insecure defaults when running in production.

    A missing signing credential is only logged: the service keeps serving
    reads and refuses to mint upload tickets.
    """
    problem = signing_credential_problem(settings)
    if problem:
        logger.warning("upload_signing_unavailable", extra={"reason": problem})

    if not _is_production(settings):
        return

    problems: list[str] = []
    _validate_core_production_settings(settings, problems)
    _validate_media_settings(settings, problems)

    if problems:
        raise RuntimeError("Production configuration checks failed:\n- " + "\n- ".join(problems))
