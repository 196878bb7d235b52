"""Video jobs: probe, poster frame and H.264 renditions through ffmpeg.

The ffmpeg binaries sit behind :class:`VideoToolchain` so the pipeline can be
driven by a fake in tests.
"""

from __future__ import annotations

import json
import logging
import math
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, Sequence, TYPE_CHECKING

import anyio

from medialink.core.config import Settings
from medialink.core.errors import MediaError, ProcessingError
from medialink.models.media import MediaDescriptor, MediaPurpose, MediaType
from medialink.services.blob_storage import variant_blob_name
from medialink.services.descriptor_store import DescriptorMetadata, compute_aspect_ratio
from medialink.services.image_pipeline import process_image_bytes
from medialink.services.job_bus import JobEnvelope
from medialink.services.media_processing import (
    download_original,
    operation_deadline,
    scratch_directory,
    upload_variant,
)

if TYPE_CHECKING:
    from medialink.core.context import CoreContext

logger = logging.getLogger(__name__)

MP4_MIME = "video/mp4"
POSTER_WIDTH = 1280
POSTER_HEIGHT = 720


@dataclass(frozen=True, slots=True)
class RenditionSpec:
    purpose: MediaPurpose
    width: int
    height: int
    bitrate_kbps: int


RENDITIONS: tuple[RenditionSpec, ...] = (
    RenditionSpec(MediaPurpose.sd_480p, 854, 480, 1000),
    RenditionSpec(MediaPurpose.hd_720p, 1280, 720, 2500),
)


@dataclass(frozen=True, slots=True)
class VideoProbe:
    duration: int | None
    width: int | None
    height: int | None
    codec: str | None
    bitrate: int | None
    has_audio: bool

    @property
    def aspect_ratio(self) -> float | None:
        return compute_aspect_ratio(self.width, self.height)


class VideoToolchain(Protocol):
    async def probe(self, source: Path, *, timeout: float) -> VideoProbe: ...

    async def extract_frame(self, source: Path, target: Path, *, timeout: float) -> None: ...

    async def transcode(
        self, source: Path, target: Path, spec: RenditionSpec, *, has_audio: bool, timeout: float
    ) -> None: ...


def _int_or_none(value: Any) -> int | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def _rotation(stream: dict[str, Any]) -> int:
    tags = stream.get("tags") or {}
    raw = tags.get("rotate")
    for side_data in stream.get("side_data_list") or []:
        if "rotation" in side_data:
            raw = side_data["rotation"]
    try:
        return int(float(raw or 0)) % 360
    except (TypeError, ValueError):
        return 0


def parse_probe(document: dict[str, Any]) -> VideoProbe:
    """Reduce ``ffprobe -show_format -show_streams`` JSON to the fields the descriptor keeps."""
    streams = document.get("streams") or []
    fmt = document.get("format") or {}
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise ProcessingError("probe_failed", "No video stream found")
    has_audio = any(s.get("codec_type") == "audio" for s in streams)

    width = _int_or_none(video.get("width"))
    height = _int_or_none(video.get("height"))
    if width and height and _rotation(video) in (90, 270):
        width, height = height, width

    seconds = None
    for raw in (fmt.get("duration"), video.get("duration")):
        try:
            seconds = float(raw)
        except (TypeError, ValueError):
            continue
        if math.isfinite(seconds):
            break
        seconds = None
    duration = max(1, math.ceil(seconds)) if seconds is not None and seconds >= 0 else None

    return VideoProbe(
        duration=duration,
        width=width,
        height=height,
        codec=video.get("codec_name"),
        bitrate=_int_or_none(fmt.get("bit_rate") or video.get("bit_rate")),
        has_audio=has_audio,
    )


def should_render(spec: RenditionSpec, probe: VideoProbe) -> bool:
    """Skip upscaled renditions, except the smallest one which is always produced."""
    if spec is RENDITIONS[0] or not probe.width or not probe.height:
        return True
    long_side, short_side = max(probe.width, probe.height), min(probe.width, probe.height)
    return not (long_side < spec.width and short_side < spec.height)


def scale_filter(width: int, height: int) -> str:
    return f"scale={width}:{height}:force_original_aspect_ratio=decrease,pad=ceil(iw/2)*2:ceil(ih/2)*2"


class FfmpegToolchain:
    def __init__(self, settings: Settings) -> None:
        self.ffmpeg = settings.ffmpeg_binary
        self.ffprobe = settings.ffprobe_binary

    async def _run(self, command: Sequence[str], *, timeout: float, code: str) -> bytes:
        try:
            with anyio.fail_after(timeout):
                result = await anyio.run_process(list(command), check=False)
        except TimeoutError as exc:
            raise ProcessingError(code, f"{command[0]} timed out after {timeout:.0f}s") from exc
        except OSError as exc:
            raise ProcessingError(code, f"{command[0]} could not be started: {exc}") from exc
        if result.returncode != 0:
            stderr = (result.stderr or b"").decode("utf-8", "replace").strip().splitlines()
            raise ProcessingError(code, stderr[-1] if stderr else f"{command[0]} exited {result.returncode}")
        return result.stdout

    async def probe(self, source: Path, *, timeout: float) -> VideoProbe:
        stdout = await self._run(
            [self.ffprobe, "-v", "error", "-print_format", "json", "-show_format", "-show_streams", str(source)],
            timeout=timeout,
            code="probe_failed",
        )
        try:
            document = json.loads(stdout or b"{}")
        except ValueError as exc:
            raise ProcessingError("probe_failed", "ffprobe returned invalid JSON") from exc
        return parse_probe(document)

    async def extract_frame(self, source: Path, target: Path, *, timeout: float) -> None:
        await self._run(
            [
                self.ffmpeg, "-y", "-v", "error",
                "-ss", "0.000", "-i", str(source),
                "-frames:v", "1",
                "-vf", f"scale={POSTER_WIDTH}:{POSTER_HEIGHT}:force_original_aspect_ratio=decrease",
                str(target),
            ],
            timeout=timeout,
            code="decode_failed",
        )

    async def transcode(
        self, source: Path, target: Path, spec: RenditionSpec, *, has_audio: bool, timeout: float
    ) -> None:
        audio = ["-c:a", "aac", "-b:a", "128k"] if has_audio else ["-an"]
        await self._run(
            [
                self.ffmpeg, "-y", "-v", "error", "-i", str(source),
                "-c:v", "libx264", "-b:v", f"{spec.bitrate_kbps}k",
                "-vf", scale_filter(spec.width, spec.height),
                *audio,
                "-movflags", "+faststart", "-preset", "fast", "-crf", "23",
                "-f", "mp4", str(target),
            ],
            timeout=timeout,
            code="transcode_failed",
        )


async def _poster_variants(
    ctx: "CoreContext",
    envelope: JobEnvelope,
    row: MediaDescriptor,
    source: Path,
    scratch: Path,
    uploaded: list[str],
) -> dict[MediaPurpose, str]:
    frame = scratch / "poster.jpg"
    timeout = operation_deadline(ctx, envelope)
    try:
        async with ctx.cpu_limiter:
            await ctx.video_tools.extract_frame(source, frame, timeout=timeout)
        data = await anyio.Path(frame).read_bytes()
        result = await process_image_bytes(ctx, envelope, data, prefix=MediaType.image, descriptor_id=row.id)
    except (OSError, MediaError) as exc:
        logger.warning("media_poster_failed", extra={"descriptor_id": row.id, "error": str(exc)})
        return {}
    uploaded.extend(result.uploaded)
    variants = dict(result.variants)
    poster = variants.get(MediaPurpose.feed) or variants.get(MediaPurpose.full)
    if poster:
        variants[MediaPurpose.poster] = poster
    return variants


async def handle_video_job(
    ctx: "CoreContext",
    envelope: JobEnvelope,
    row: MediaDescriptor,
    uploaded: list[str],
) -> MediaDescriptor:
    data = await download_original(ctx, envelope, row)
    timeout = operation_deadline(ctx, envelope)
    with scratch_directory(ctx.settings.scratch_root) as scratch:
        source = scratch / f"source{Path(row.original_blob_name).suffix or '.mp4'}"
        await anyio.Path(source).write_bytes(data)
        del data

        probe = await ctx.video_tools.probe(source, timeout=timeout)
        variants = await _poster_variants(ctx, envelope, row, source, scratch, uploaded)

        renditions: dict[MediaPurpose, str] = {}
        last_error: ProcessingError | None = None
        for spec in RENDITIONS:
            if not should_render(spec, probe):
                logger.info(
                    "media_rendition_skipped",
                    extra={"descriptor_id": row.id, "purpose": spec.purpose.value, "width": probe.width},
                )
                continue
            target = scratch / f"{spec.purpose.value}.mp4"
            name = variant_blob_name(MediaType.video, envelope.media_id, spec.purpose, envelope.version)
            try:
                async with ctx.cpu_limiter:
                    await ctx.video_tools.transcode(source, target, spec, has_audio=probe.has_audio, timeout=timeout)
                payload = await anyio.Path(target).read_bytes()
                renditions[spec.purpose] = await upload_variant(
                    ctx, envelope, name, payload, MP4_MIME, descriptor_id=row.id
                )
            except ProcessingError as exc:
                last_error = exc
                logger.warning(
                    "media_rendition_failed",
                    extra={"descriptor_id": row.id, "purpose": spec.purpose.value, "error_code": exc.code},
                )
                continue
            except (TimeoutError, OSError, MediaError) as exc:
                last_error = ProcessingError("transcode_failed", str(exc))
                logger.warning(
                    "media_rendition_failed",
                    extra={"descriptor_id": row.id, "purpose": spec.purpose.value, "error": str(exc)},
                )
                continue
            uploaded.append(name)

    if not renditions:
        raise last_error or ProcessingError("transcode_failed", "No video rendition was produced")
    variants.update(renditions)
    return await ctx.store.set_ready(
        row.id,
        variants,
        DescriptorMetadata(
            aspect_ratio=probe.aspect_ratio,
            width=probe.width,
            height=probe.height,
            duration=probe.duration,
        ),
    )


def ffmpeg_available(settings: Settings) -> bool:
    try:
        completed = subprocess.run(
            [settings.ffmpeg_binary, "-version"], capture_output=True, timeout=10, check=False
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return completed.returncode == 0
