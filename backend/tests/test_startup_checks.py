import pytest

from medialink.core.startup_checks import signing_credential_problem, validate_production_settings

from media_helpers import make_settings


def _production(tmp_path, **overrides):
    values = {
        "environment": "production",
        "secret_key": "x" * 48,
        "sentry_dsn": "https://examplePublicKey@o0.ingest.sentry.io/0",
        "redis_url": "redis://cache:6379/0",
        "blob_backend": "s3",
        "s3_access_key_id": "AKIATEST",
        "s3_secret_access_key": "secret",
        "cdn_endpoint": "https://cdn.example.com",
    }
    values.update(overrides)
    return make_settings(tmp_path, **values)


def test_validate_production_settings_accepts_complete_config(tmp_path) -> None:
    validate_production_settings(_production(tmp_path))


def test_validate_production_settings_requires_sentry_dsn(tmp_path) -> None:
    with pytest.raises(RuntimeError) as exc:
        validate_production_settings(_production(tmp_path, sentry_dsn=""))

    assert "SENTRY_DSN must be configured in production." in str(exc.value)


def test_validate_production_settings_collects_every_problem(tmp_path) -> None:
    settings = _production(
        tmp_path,
        secret_key="dev-secret-key",
        redis_url=None,
        blob_backend="local",
        cdn_endpoint=None,
        public_base_url="http://localhost:8000",
        blob_operation_timeout_seconds=400,
    )
    with pytest.raises(RuntimeError) as exc:
        validate_production_settings(settings)

    message = str(exc.value)
    assert "SECRET_KEY" in message
    assert "REDIS_URL" in message
    assert "BLOB_BACKEND=local" in message
    assert "PUBLIC_BASE_URL" in message
    assert "half of the image visibility timeout" in message
    assert "half of the video visibility timeout" not in message


def test_validate_non_production_only_logs(tmp_path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level("WARNING")
    settings = make_settings(tmp_path, blob_signing_key=None, secret_key="", sentry_dsn="")

    validate_production_settings(settings)

    assert any(record.getMessage() == "upload_signing_unavailable" for record in caplog.records)


def test_signing_credential_problem_per_backend(tmp_path) -> None:
    assert signing_credential_problem(make_settings(tmp_path)) is None
    assert "BLOB_SIGNING_KEY" in signing_credential_problem(make_settings(tmp_path, blob_signing_key=None, secret_key=""))
    assert "S3_ACCESS_KEY_ID" in signing_credential_problem(make_settings(tmp_path, blob_backend="s3"))
