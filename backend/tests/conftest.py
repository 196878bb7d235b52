import asyncio
import os
from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from medialink.core import metrics
from medialink.core.config import Settings
from medialink.core.context import CoreContext
from medialink.core.security import AuthenticatedPrincipal

from media_helpers import FakeVideoToolchain, build_test_context, create_schema, make_settings


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def video_tools() -> FakeVideoToolchain:
    return FakeVideoToolchain()


@pytest.fixture
async def ctx(settings: Settings, video_tools: FakeVideoToolchain) -> AsyncIterator[CoreContext]:
    context = build_test_context(settings, video_tools=video_tools)
    await create_schema(context.engine)
    try:
        yield context
    finally:
        await context.aclose()


@pytest.fixture
def sync_ctx(settings: Settings, video_tools: FakeVideoToolchain) -> Generator[CoreContext, None, None]:
    context = build_test_context(settings, video_tools=video_tools)
    asyncio.run(create_schema(context.engine))
    yield context
    asyncio.run(context.aclose())


@pytest.fixture
def owner() -> AuthenticatedPrincipal:
    return AuthenticatedPrincipal(user_id="u42")


@pytest.fixture
def admin() -> AuthenticatedPrincipal:
    return AuthenticatedPrincipal(user_id="ops", is_admin=True)
