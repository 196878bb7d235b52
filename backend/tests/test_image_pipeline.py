from io import BytesIO

import pytest
from PIL import Image

from medialink.core import metrics
from medialink.core.errors import ProcessingError, TransientError
from medialink.models.media import MediaPurpose, MediaStatus
from medialink.services import events
from medialink.services.blob_storage import PUBLIC
from medialink.services.image_pipeline import analyze_image, decode_image, dominant_color
from medialink.services.job_bus import IMAGE_QUEUE
from medialink.workers.media_worker import drain

from media_helpers import complete_through_ticket, image_bytes


def _with_orientation(width: int, height: int, orientation: int) -> bytes:
    img = Image.new("RGB", (width, height), (0, 128, 255))
    exif = Image.Exif()
    exif[0x0112] = orientation
    buf = BytesIO()
    img.save(buf, format="JPEG", exif=exif.tobytes())
    return buf.getvalue()


def test_renditions_follow_variant_specs_without_upscaling() -> None:
    analysis = analyze_image(image_bytes(640, 480, fmt="PNG"))
    assert analysis.format == "PNG"

    sizes = {r.purpose: (r.width, r.height) for r in analysis.renditions}
    assert sizes == {
        MediaPurpose.thumb: (150, 150),
        MediaPurpose.feed: (400, 300),
        MediaPurpose.full: (640, 480),
    }
    assert (analysis.width, analysis.height) == (640, 480)
    assert analysis.aspect_ratio == pytest.approx(4 / 3)
    for rendition in analysis.renditions:
        assert Image.open(BytesIO(rendition.data)).format == "WEBP"


def test_large_source_is_capped_at_full_width() -> None:
    analysis = analyze_image(image_bytes(2400, 1200, fmt="PNG"))
    sizes = {r.purpose: (r.width, r.height) for r in analysis.renditions}
    assert sizes[MediaPurpose.full] == (1200, 600)
    assert sizes[MediaPurpose.feed] == (400, 200)


def test_tiny_source_thumb_is_not_upscaled() -> None:
    analysis = analyze_image(image_bytes(90, 60, fmt="PNG"))
    sizes = {r.purpose: (r.width, r.height) for r in analysis.renditions}
    assert sizes[MediaPurpose.thumb] == (60, 60)
    assert sizes[MediaPurpose.feed] == (90, 60)


def test_dominant_color_is_lowercase_hex_of_mean() -> None:
    assert dominant_color(Image.new("RGB", (300, 200), (200, 40, 40))) == "c82828"
    half = Image.new("RGB", (64, 64), (0, 0, 0))
    half.paste((255, 255, 255), (0, 0, 32, 64))
    assert dominant_color(half) in {"7f7f7f", "808080"}
    assert dominant_color(Image.new("RGBA", (4, 4), (16, 32, 48, 0))) == "102030"


def test_exif_orientation_swaps_reported_dimensions() -> None:
    img, source_format = decode_image(_with_orientation(200, 100, 6))
    assert img.size == (100, 200)
    assert source_format == "JPEG"
    analysis = analyze_image(_with_orientation(200, 100, 8))
    assert (analysis.width, analysis.height) == (100, 200)
    assert analysis.format == "JPEG"
    assert analysis.aspect_ratio == pytest.approx(0.5)


def test_undecodable_bytes_raise_decode_failed() -> None:
    with pytest.raises(ProcessingError) as excinfo:
        analyze_image(b"definitely not an image")
    assert excinfo.value.code == "decode_failed"


@pytest.mark.anyio
async def test_image_job_produces_ready_descriptor(ctx, owner) -> None:
    done = await complete_through_ticket(ctx, owner, image_bytes(800, 600, (12, 200, 99), fmt="PNG"), "image/png")

    assert await drain(ctx, IMAGE_QUEUE) == ["ready"]

    row = await ctx.store.by_id(done.descriptor_id)
    assert row.status == MediaStatus.ready
    assert row.processing_error is None
    assert (row.width, row.height) == (800, 600)
    assert row.aspect_ratio == pytest.approx(4 / 3)
    assert row.dominant_color == "0cc863"
    assert set(row.variants) == {MediaPurpose.thumb, MediaPurpose.feed, MediaPurpose.full}
    for purpose, url in row.variants.items():
        name = f"image_{row.media_id}_{purpose.value}_v1.webp"
        assert url.endswith(name)
        assert await ctx.blobs.exists(PUBLIC, name)
    assert metrics.snapshot()["jobs_succeeded:image-processing"] == 1
    assert [e.type for e in ctx.events.sent][-2:] == [events.MEDIA_PROCESSING, events.MEDIA_READY]


@pytest.mark.anyio
async def test_partial_upload_failure_is_tolerated(ctx, owner, monkeypatch: pytest.MonkeyPatch) -> None:
    done = await complete_through_ticket(ctx, owner, image_bytes())
    real_upload = ctx.blobs.upload

    async def flaky_upload(container, name, data, mime, metadata=None):
        if "_thumb_" in name:
            raise TransientError("store unavailable")
        return await real_upload(container, name, data, mime, metadata)

    monkeypatch.setattr(ctx.blobs, "upload", flaky_upload)
    assert await drain(ctx, IMAGE_QUEUE) == ["ready"]

    row = await ctx.store.by_id(done.descriptor_id)
    assert set(row.variants) == {MediaPurpose.feed, MediaPurpose.full}


@pytest.mark.anyio
async def test_no_uploaded_variant_fails_the_attempt(ctx, owner, monkeypatch: pytest.MonkeyPatch) -> None:
    done = await complete_through_ticket(ctx, owner, image_bytes())

    async def broken_upload(container, name, data, mime, metadata=None):
        raise TransientError("store unavailable")

    monkeypatch.setattr(ctx.blobs, "upload", broken_upload)
    assert await drain(ctx, IMAGE_QUEUE, limit=1) == ["retry"]

    row = await ctx.store.by_id(done.descriptor_id)
    assert row.status == MediaStatus.failed
    assert row.processing_error == "variants_failed"
    assert row.variants == {}
    assert await ctx.blobs.list(PUBLIC) == []


@pytest.mark.anyio
async def test_corrupt_upload_exhausts_attempts_and_stays_failed(ctx, owner) -> None:
    done = await complete_through_ticket(ctx, owner, b"\xff\xd8\xff\xe0 truncated jpeg")

    assert await drain(ctx, IMAGE_QUEUE) == ["retry", "retry", "failed"]

    row = await ctx.store.by_id(done.descriptor_id)
    assert row.status == MediaStatus.failed
    assert row.processing_error == "decode_failed"
    assert row.variants_json is None
    failed = [e for e in ctx.events.sent if e.type == events.MEDIA_FAILED]
    assert [e.data["final"] for e in failed] == [False, False, True]
    assert metrics.snapshot()["jobs_failed:image-processing"] == 1
