from unittest.mock import AsyncMock

import pytest

from medialink.core.errors import ConflictError, ForbiddenError, NotFoundError, TransientError
from medialink.core.security import AuthenticatedPrincipal
from medialink.models.media import MediaPurpose, MediaStatus
from medialink.services import events
from medialink.services.blob_storage import PRIVATE, PUBLIC
from medialink.services.job_bus import IMAGE_QUEUE, VIDEO_QUEUE
from medialink.services.media_admin import attach_to_post, delete_media, list_post_media, reingest_media, retry_media
from medialink.workers.media_worker import drain

from media_helpers import complete_through_ticket, image_bytes


async def _ready_image(ctx, owner) -> int:
    done = await complete_through_ticket(ctx, owner, image_bytes(fmt="PNG"), "image/png")
    assert await drain(ctx, IMAGE_QUEUE) == ["ready"]
    return done.descriptor_id


@pytest.mark.anyio
async def test_retry_requeues_only_failed_media(ctx, owner, admin, monkeypatch: pytest.MonkeyPatch) -> None:
    done = await complete_through_ticket(ctx, owner, image_bytes())
    with pytest.raises(ConflictError):
        await retry_media(ctx, owner, done.descriptor_id)

    real_upload = ctx.blobs.upload
    monkeypatch.setattr(ctx.blobs, "upload", AsyncMock(side_effect=TransientError("down")))
    assert await drain(ctx, IMAGE_QUEUE) == ["retry", "retry", "failed"]
    assert (await ctx.store.by_id(done.descriptor_id)).status == MediaStatus.failed

    with pytest.raises(ForbiddenError):
        await retry_media(ctx, AuthenticatedPrincipal(user_id="stranger"), done.descriptor_id)
    action = await retry_media(ctx, admin, done.descriptor_id)
    assert action.status == "failed"
    assert action.job_id

    monkeypatch.setattr(ctx.blobs, "upload", real_upload)
    assert await drain(ctx, IMAGE_QUEUE) == ["ready"]
    row = await ctx.store.by_id(done.descriptor_id)
    assert row.status == MediaStatus.ready
    assert row.processing_error is None


@pytest.mark.anyio
async def test_reingest_bumps_version_and_removes_old_variants(ctx, owner) -> None:
    descriptor_id = await _ready_image(ctx, owner)
    row = await ctx.store.by_id(descriptor_id)
    old_names = [f"image_{row.media_id}_{p}_v1.webp" for p in ("thumb", "feed", "full")]

    action = await reingest_media(ctx, owner, descriptor_id)
    assert (action.status, action.version) == ("processing", 2)
    reopened = await ctx.store.by_id(descriptor_id)
    assert reopened.variants == {}

    with pytest.raises(ConflictError):
        await reingest_media(ctx, owner, descriptor_id)

    assert await drain(ctx, IMAGE_QUEUE) == ["ready"]
    row = await ctx.store.by_id(descriptor_id)
    assert row.version == 2
    assert row.variants[MediaPurpose.thumb].endswith(f"image_{row.media_id}_thumb_v2.webp")
    for name in old_names:
        assert await ctx.blobs.exists(PUBLIC, name) is False
    assert await ctx.blobs.exists(PRIVATE, row.original_blob_name) is True


@pytest.mark.anyio
async def test_reingest_enqueue_failure_marks_failed(ctx, owner, monkeypatch: pytest.MonkeyPatch) -> None:
    descriptor_id = await _ready_image(ctx, owner)
    monkeypatch.setattr(ctx.bus, "enqueue", AsyncMock(side_effect=TransientError("queue down")))

    action = await reingest_media(ctx, owner, descriptor_id)

    assert action.status == "failed"
    row = await ctx.store.by_id(descriptor_id)
    assert (row.status, row.processing_error, row.version) == (MediaStatus.failed, "enqueue_failed", 2)


@pytest.mark.anyio
async def test_delete_removes_blobs_then_descriptor(ctx, owner, video_tools) -> None:
    done = await complete_through_ticket(ctx, owner, b"\x00\x00\x00\x18ftypmp42", "video/mp4")
    assert await drain(ctx, VIDEO_QUEUE) == ["ready"]
    row = await ctx.store.by_id(done.descriptor_id)
    assert len(await ctx.blobs.list(PUBLIC)) == 5

    await delete_media(ctx, owner, row.id)

    assert await ctx.store.by_id(row.id) is None
    assert await ctx.blobs.list(PUBLIC) == []
    assert await ctx.blobs.exists(PRIVATE, row.original_blob_name) is False
    assert ctx.events.sent[-1].type == events.MEDIA_DELETED
    with pytest.raises(NotFoundError):
        await delete_media(ctx, owner, row.id)


@pytest.mark.anyio
async def test_delete_keeps_descriptor_when_blob_store_fails(ctx, owner, monkeypatch: pytest.MonkeyPatch) -> None:
    descriptor_id = await _ready_image(ctx, owner)
    monkeypatch.setattr(ctx.blobs, "delete", AsyncMock(side_effect=TransientError("store down")))

    with pytest.raises(TransientError):
        await delete_media(ctx, owner, descriptor_id)

    assert (await ctx.store.by_id(descriptor_id)).status == MediaStatus.ready


@pytest.mark.anyio
async def test_delete_refused_while_processing_and_for_strangers(ctx, owner) -> None:
    descriptor_id = await _ready_image(ctx, owner)
    with pytest.raises(ForbiddenError):
        await delete_media(ctx, AuthenticatedPrincipal(user_id="stranger"), descriptor_id)

    await ctx.store.transition(descriptor_id, MediaStatus.ready, MediaStatus.processing, {"version": 2})
    with pytest.raises(ConflictError):
        await delete_media(ctx, owner, descriptor_id)


@pytest.mark.anyio
async def test_attach_and_list_post_media(ctx, owner) -> None:
    first = await _ready_image(ctx, owner)
    second = (await complete_through_ticket(ctx, owner, image_bytes())).descriptor_id

    await attach_to_post(ctx, owner, first, "post-9", 1)
    read = await attach_to_post(ctx, owner, second, "post-9", 0)
    assert read.status == "uploaded"

    listed = await list_post_media(ctx, "post-9")
    assert [item.id for item in listed] == [second, first]
    assert listed[1].variants.keys() == {"thumb", "feed", "full"}
    assert await list_post_media(ctx, "post-unknown") == []

    with pytest.raises(ForbiddenError):
        await attach_to_post(ctx, AuthenticatedPrincipal(user_id="stranger"), first, "post-1")
