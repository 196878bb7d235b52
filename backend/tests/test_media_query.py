import pytest

from medialink.core.errors import BadPurposeError, ForbiddenError, NotFoundError, NotReadyError
from medialink.core.security import AuthenticatedPrincipal
from medialink.models.media import MediaPurpose, MediaStatus
from medialink.services.job_bus import IMAGE_QUEUE
from medialink.services.media_query import get_descriptor, get_profile_picture_url, get_status, get_variant_url
from medialink.workers.media_worker import drain

from media_helpers import complete_through_ticket, image_bytes


async def _ready(ctx, owner) -> int:
    done = await complete_through_ticket(ctx, owner, image_bytes(fmt="PNG"), "image/png")
    assert await drain(ctx, IMAGE_QUEUE) == ["ready"]
    return done.descriptor_id


@pytest.mark.anyio
async def test_variant_url_before_processing_is_not_ready(ctx, owner) -> None:
    done = await complete_through_ticket(ctx, owner, image_bytes())

    with pytest.raises(NotReadyError) as excinfo:
        await get_variant_url(ctx, done.descriptor_id, "thumb")
    assert excinfo.value.reason == "uploaded"

    status = await get_status(ctx, done.descriptor_id)
    assert status.status == "uploaded"
    assert status.variants is None
    assert status.error is None


@pytest.mark.anyio
async def test_ready_descriptor_serves_every_variant(ctx, owner) -> None:
    descriptor_id = await _ready(ctx, owner)

    read = await get_descriptor(ctx, descriptor_id)
    assert read.status == "ready"
    assert read.owner == "u42"
    for purpose in ("thumb", "feed", "full"):
        url = await get_variant_url(ctx, descriptor_id, purpose)
        assert url.url == read.variants[purpose]

    status = await get_status(ctx, descriptor_id)
    assert status.variant_count == 3
    assert set(status.variants) == {"thumb", "feed", "full"}


@pytest.mark.anyio
async def test_cached_descriptor_is_byte_identical(ctx, owner) -> None:
    descriptor_id = await _ready(ctx, owner)

    first = await get_descriptor(ctx, descriptor_id)
    cached = await ctx.cache.get_descriptor(descriptor_id)
    second = await get_descriptor(ctx, descriptor_id)

    assert cached == first.model_dump_json()
    assert second.model_dump_json() == cached


@pytest.mark.anyio
async def test_unknown_and_missing_purposes(ctx, owner) -> None:
    descriptor_id = await _ready(ctx, owner)
    with pytest.raises(BadPurposeError):
        await get_variant_url(ctx, descriptor_id, "banner")
    with pytest.raises(NotFoundError):
        await get_variant_url(ctx, descriptor_id, MediaPurpose.sd_480p)
    with pytest.raises(NotFoundError):
        await get_variant_url(ctx, 4040, "thumb")
    with pytest.raises(NotFoundError):
        await get_status(ctx, 4040)


@pytest.mark.anyio
async def test_failed_descriptor_reports_processing_error(ctx, owner) -> None:
    done = await complete_through_ticket(ctx, owner, b"not an image at all")
    await drain(ctx, IMAGE_QUEUE)

    with pytest.raises(NotReadyError) as excinfo:
        await get_variant_url(ctx, done.descriptor_id, "feed")
    assert excinfo.value.reason == "decode_failed"

    status = await get_status(ctx, done.descriptor_id)
    assert (status.status, status.error, status.variants) == ("failed", "decode_failed", None)


@pytest.mark.anyio
async def test_profile_picture_is_owner_only_and_cached(ctx, owner) -> None:
    descriptor_id = await _ready(ctx, owner)

    url = await get_profile_picture_url(ctx, "u42", descriptor_id)
    assert url.endswith("_thumb_v1.webp")
    assert await ctx.cache.get_profile("u42", MediaPurpose.thumb, descriptor_id) == url
    assert await get_profile_picture_url(ctx, "u42", descriptor_id, "full") != url

    with pytest.raises(ForbiddenError):
        await get_profile_picture_url(ctx, "someone-else", descriptor_id)


@pytest.mark.anyio
async def test_profile_picture_cache_is_per_descriptor(ctx, owner) -> None:
    first = await _ready(ctx, owner)
    second = await _ready(ctx, owner)

    url_first = await get_profile_picture_url(ctx, "u42", first)
    url_second = await get_profile_picture_url(ctx, "u42", second)

    assert url_first != url_second
    assert url_second == (await get_variant_url(ctx, second, "thumb")).url
    assert await get_profile_picture_url(ctx, "u42", first) == url_first

    other = await _ready(ctx, AuthenticatedPrincipal(user_id="u7"))
    with pytest.raises(ForbiddenError):
        await get_profile_picture_url(ctx, "u42", other)


@pytest.mark.anyio
async def test_status_transition_invalidates_cached_urls(ctx, owner) -> None:
    descriptor_id = await _ready(ctx, owner)
    await get_variant_url(ctx, descriptor_id, "thumb")
    assert await ctx.cache.get_variant(descriptor_id, MediaPurpose.thumb) is not None

    row = await ctx.store.transition(descriptor_id, MediaStatus.ready, MediaStatus.processing, {"version": 2})
    await ctx.cache.invalidate(row.id, owner=row.owner_id)

    with pytest.raises(NotReadyError):
        await get_variant_url(ctx, descriptor_id, "thumb")
