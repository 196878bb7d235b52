from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from io import BytesIO
from typing import Literal, TYPE_CHECKING

import anyio
from PIL import Image, ImageOps, ImageStat, UnidentifiedImageError

from medialink.core.errors import MediaError, ProcessingError
from medialink.models.media import IMAGE_PURPOSES, MediaDescriptor, MediaPurpose, MediaType
from medialink.services.blob_storage import variant_blob_name
from medialink.services.descriptor_store import DescriptorMetadata, compute_aspect_ratio
from medialink.services.job_bus import JobEnvelope
from medialink.services.media_processing import download_original, upload_variant

if TYPE_CHECKING:
    from medialink.core.context import CoreContext

logger = logging.getLogger(__name__)

WEBP_MIME = "image/webp"
COLOR_SAMPLE_EDGE = 32


@dataclass(frozen=True, slots=True)
class VariantSpec:
    fit: Literal["cover", "inside"]
    width: int
    height: int | None
    quality: int


VARIANT_SPECS: dict[MediaPurpose, VariantSpec] = {
    MediaPurpose.thumb: VariantSpec(fit="cover", width=150, height=150, quality=85),
    MediaPurpose.feed: VariantSpec(fit="inside", width=400, height=None, quality=90),
    MediaPurpose.full: VariantSpec(fit="inside", width=1200, height=None, quality=95),
}


@dataclass(slots=True)
class Rendition:
    purpose: MediaPurpose
    data: bytes
    width: int
    height: int


@dataclass(slots=True)
class ImageAnalysis:
    width: int
    height: int
    format: str | None
    aspect_ratio: float | None
    dominant_color: str
    renditions: list[Rendition] = field(default_factory=list)
    failures: dict[MediaPurpose, str] = field(default_factory=dict)


@dataclass(slots=True)
class ImageResult:
    analysis: ImageAnalysis
    variants: dict[MediaPurpose, str]
    uploaded: list[str]


def decode_image(data: bytes) -> tuple[Image.Image, str | None]:
    """Decode ``data`` and apply its EXIF orientation so dimensions are as displayed.

    Returns the image with the source format, which transposing and converting drop.
    """
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ProcessingError("decode_failed", f"Image could not be decoded: {exc}") from exc
    source_format = img.format
    transposed = ImageOps.exif_transpose(img)
    if transposed is not None:
        img = transposed
    if img.width <= 0 or img.height <= 0:
        raise ProcessingError("decode_failed", "Image has no pixels")
    if img.mode not in ("RGB", "RGBA"):
        has_alpha = img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info)
        img = img.convert("RGBA" if has_alpha else "RGB")
    return img, source_format


def dominant_color(img: Image.Image) -> str:
    """Mean RGB of the image downsampled to at most 32x32, as six lowercase hex digits."""
    sample = img.convert("RGB")
    size = (min(COLOR_SAMPLE_EDGE, sample.width), min(COLOR_SAMPLE_EDGE, sample.height))
    if sample.size != size:
        sample = sample.resize(size, Image.Resampling.BOX)
    mean = ImageStat.Stat(sample).mean
    r, g, b = (max(0, min(255, int(round(channel)))) for channel in mean[:3])
    return f"{r:02x}{g:02x}{b:02x}"


def render_variant(img: Image.Image, purpose: MediaPurpose) -> Rendition:
    spec = VARIANT_SPECS[purpose]
    if spec.fit == "cover":
        side = min(spec.width, img.width, img.height)
        out = ImageOps.fit(img, (side, side), method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
    else:
        width = min(spec.width, img.width)
        height = max(1, round(img.height * width / img.width))
        out = img if (width, height) == img.size else img.resize((width, height), Image.Resampling.LANCZOS)
    buffer = BytesIO()
    out.save(buffer, format="WEBP", quality=spec.quality, method=4)
    return Rendition(purpose=purpose, data=buffer.getvalue(), width=out.width, height=out.height)


def analyze_image(data: bytes, purposes: tuple[MediaPurpose, ...] = IMAGE_PURPOSES) -> ImageAnalysis:
    """Decode, measure and render every requested variant. CPU bound; run off the event loop."""
    img, source_format = decode_image(data)
    analysis = ImageAnalysis(
        width=img.width,
        height=img.height,
        format=source_format,
        aspect_ratio=compute_aspect_ratio(img.width, img.height),
        dominant_color=dominant_color(img),
    )
    for purpose in purposes:
        try:
            analysis.renditions.append(render_variant(img, purpose))
        except (OSError, ValueError) as exc:
            analysis.failures[purpose] = str(exc)
    return analysis


async def process_image_bytes(
    ctx: "CoreContext",
    envelope: JobEnvelope,
    data: bytes,
    *,
    prefix: MediaType,
    descriptor_id: int | None,
) -> ImageResult:
    """Render and upload the image variants for ``data``; at least one must land."""
    analysis = await anyio.to_thread.run_sync(partial(analyze_image, data), limiter=ctx.cpu_limiter)
    for purpose, reason in analysis.failures.items():
        logger.warning("media_variant_render_failed", extra={"purpose": purpose.value, "error": reason})
    if not analysis.renditions:
        raise ProcessingError("decode_failed", "No variant could be rendered")

    variants: dict[MediaPurpose, str] = {}
    uploaded: list[str] = []
    for rendition in analysis.renditions:
        name = variant_blob_name(prefix, envelope.media_id, rendition.purpose, envelope.version)
        try:
            variants[rendition.purpose] = await upload_variant(
                ctx, envelope, name, rendition.data, WEBP_MIME, descriptor_id=descriptor_id
            )
        except (TimeoutError, MediaError) as exc:
            logger.warning("media_variant_upload_failed", extra={"blob_name": name, "error": str(exc)})
            continue
        uploaded.append(name)
    if not variants:
        raise ProcessingError("variants_failed", "No image variant could be uploaded")
    return ImageResult(analysis=analysis, variants=variants, uploaded=uploaded)


async def handle_image_job(
    ctx: "CoreContext",
    envelope: JobEnvelope,
    row: MediaDescriptor,
    uploaded: list[str],
) -> MediaDescriptor:
    data = await download_original(ctx, envelope, row)
    result = await process_image_bytes(ctx, envelope, data, prefix=MediaType.image, descriptor_id=row.id)
    uploaded.extend(result.uploaded)
    analysis = result.analysis
    return await ctx.store.set_ready(
        row.id,
        result.variants,
        DescriptorMetadata(
            aspect_ratio=analysis.aspect_ratio,
            dominant_color=analysis.dominant_color,
            width=analysis.width,
            height=analysis.height,
        ),
    )
