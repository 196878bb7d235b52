from contextlib import asynccontextmanager

import anyio
import pytest

from medialink.core.errors import BadPurposeError, ConflictError, InvalidTransitionError, NotFoundError
from medialink.models.media import MediaPurpose, MediaStatus, MediaType
from medialink.services.descriptor_store import (
    DescriptorMetadata,
    DescriptorStore,
    DuplicateBlobError,
    compute_aspect_ratio,
)


async def _pending(ctx, blob_name: str = "image_ab12_v1.jpg", owner: str = "u42"):
    return await ctx.store.insert_pending(
        owner=owner,
        media_type=MediaType.image,
        mime="image/jpeg",
        blob_name=blob_name,
        media_id=blob_name.split("_")[1],
    )


def test_compute_aspect_ratio_is_null_for_degenerate_sizes() -> None:
    assert compute_aspect_ratio(1600, 900) == pytest.approx(16 / 9)
    assert compute_aspect_ratio(0, 900) is None
    assert compute_aspect_ratio(900, 0) is None
    assert compute_aspect_ratio(None, 10) is None
    assert compute_aspect_ratio(-4, 3) is None


@pytest.mark.anyio
async def test_insert_pending_rejects_duplicate_blob_names(ctx) -> None:
    row = await _pending(ctx)
    assert row.id is not None
    assert row.status == MediaStatus.pending
    assert row.version == 1
    with pytest.raises(DuplicateBlobError):
        await _pending(ctx)


@pytest.mark.anyio
async def test_lifecycle_walks_only_legal_edges(ctx) -> None:
    row = await _pending(ctx)
    row = await ctx.store.transition(row.id, MediaStatus.pending, MediaStatus.uploaded)
    assert row.status == MediaStatus.uploaded

    with pytest.raises(InvalidTransitionError):
        await ctx.store.transition(row.id, MediaStatus.uploaded, MediaStatus.ready)
    with pytest.raises(InvalidTransitionError):
        await ctx.store.transition(row.id, MediaStatus.failed, MediaStatus.uploaded)

    row = await ctx.store.transition(row.id, MediaStatus.uploaded, MediaStatus.processing)
    row = await ctx.store.set_failed(row.id, "decode_failed")
    assert row.status == MediaStatus.failed
    assert row.processing_error == "decode_failed"

    row = await ctx.store.transition(row.id, MediaStatus.failed, MediaStatus.processing)
    assert row.processing_error is None

    row = await ctx.store.set_ready(
        row.id,
        {MediaPurpose.thumb: "https://cdn.test/image_ab12_thumb_v1.webp"},
        DescriptorMetadata(aspect_ratio=1.5, dominant_color="a1b2c3", width=600, height=400),
    )
    assert row.status == MediaStatus.ready
    assert row.variants == {MediaPurpose.thumb: "https://cdn.test/image_ab12_thumb_v1.webp"}
    assert row.variants_json == '{"thumb":"https://cdn.test/image_ab12_thumb_v1.webp"}'
    assert (row.width, row.height, row.dominant_color) == (600, 400, "a1b2c3")


@pytest.mark.anyio
async def test_transition_cas_reports_current_status(ctx) -> None:
    row = await _pending(ctx)
    with pytest.raises(ConflictError) as excinfo:
        await ctx.store.transition(row.id, MediaStatus.uploaded, MediaStatus.processing)
    assert excinfo.value.meta["current"] == "pending"

    with pytest.raises(NotFoundError):
        await ctx.store.transition(9999, MediaStatus.uploaded, MediaStatus.processing)


@pytest.mark.anyio
async def test_concurrent_claims_have_a_single_winner(ctx) -> None:
    row = await _pending(ctx)
    await ctx.store.transition(row.id, MediaStatus.pending, MediaStatus.uploaded)
    results: list[str] = []

    async def _claim() -> None:
        try:
            await ctx.store.transition(row.id, (MediaStatus.uploaded, MediaStatus.failed), MediaStatus.processing)
        except ConflictError:
            results.append("lost")
        else:
            results.append("won")

    async with anyio.create_task_group() as tg:
        for _ in range(4):
            tg.start_soon(_claim)

    assert sorted(results) == ["lost", "lost", "lost", "won"]


@pytest.mark.anyio
async def test_variants_only_travel_with_ready(ctx) -> None:
    row = await _pending(ctx)
    await ctx.store.transition(row.id, MediaStatus.pending, MediaStatus.uploaded)
    with pytest.raises(InvalidTransitionError):
        await ctx.store.transition(
            row.id, MediaStatus.uploaded, MediaStatus.processing, variants={"thumb": "https://cdn.test/x.webp"}
        )
    await ctx.store.transition(row.id, MediaStatus.uploaded, MediaStatus.processing)
    with pytest.raises(BadPurposeError):
        await ctx.store.set_ready(row.id, {"banner": "https://cdn.test/x.webp"}, DescriptorMetadata())

    ready = await ctx.store.set_ready(row.id, {"feed": "https://cdn.test/f.webp"}, DescriptorMetadata())
    assert ready.variants
    reopened = await ctx.store.transition(ready.id, MediaStatus.ready, MediaStatus.processing, {"version": 2})
    assert reopened.variants == {}
    assert reopened.version == 2


@pytest.mark.anyio
async def test_patch_validation_guards_invariants(ctx) -> None:
    row = await _pending(ctx)
    await ctx.store.transition(row.id, MediaStatus.pending, MediaStatus.uploaded)
    await ctx.store.transition(row.id, MediaStatus.uploaded, MediaStatus.processing)
    with pytest.raises(ValueError):
        await ctx.store.set_ready(row.id, {}, DescriptorMetadata(aspect_ratio=0.0))
    with pytest.raises(ValueError):
        await ctx.store.set_ready(row.id, {}, DescriptorMetadata(dominant_color="ABCDEF"))
    with pytest.raises(ValueError):
        await ctx.store.transition(row.id, MediaStatus.processing, MediaStatus.failed, {"owner_id": "someone"})
    assert (await ctx.store.by_id(row.id)).status == MediaStatus.processing


@pytest.mark.anyio
async def test_by_post_orders_and_delete_removes_row(ctx) -> None:
    first = await _pending(ctx, "image_aa_v1.jpg")
    second = await _pending(ctx, "image_bb_v1.jpg")
    await ctx.store.attach_to_post(first.id, "post-1", 2)
    await ctx.store.attach_to_post(second.id, "post-1", 1)

    rows = await ctx.store.by_post("post-1")
    assert [r.id for r in rows] == [second.id, first.id]
    assert (await ctx.store.by_blob_name("image_aa_v1.jpg")).id == first.id

    assert await ctx.store.delete(first.id) is True
    assert await ctx.store.by_id(first.id) is None
    assert await ctx.store.delete(first.id) is False
    with pytest.raises(NotFoundError):
        await ctx.store.attach_to_post(first.id, "post-1", 0)


def _deleting_after_commit(ctx, descriptor_id: int):
    @asynccontextmanager
    async def factory():
        async with ctx.session_factory() as session:
            real_commit = session.commit

            async def commit() -> None:
                await real_commit()
                await ctx.store.delete(descriptor_id)

            session.commit = commit
            yield session

    return factory


@pytest.mark.anyio
async def test_row_deleted_right_after_update_raises_not_found(ctx) -> None:
    row = await _pending(ctx)
    store = DescriptorStore(_deleting_after_commit(ctx, row.id))
    with pytest.raises(NotFoundError):
        await store.transition(row.id, MediaStatus.pending, MediaStatus.uploaded)

    other = await _pending(ctx, "image_cd34_v1.jpg")
    store = DescriptorStore(_deleting_after_commit(ctx, other.id))
    with pytest.raises(NotFoundError):
        await store.attach_to_post(other.id, "post-1")
