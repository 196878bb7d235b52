"""Job lifecycle shared by the image and video pipelines.

:func:`run_job` claims the descriptor, runs a pipeline handler and settles both
the descriptor and the job row, whatever the handler does.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Awaitable, Callable, Iterator, TYPE_CHECKING

import anyio

from medialink.core import metrics
from medialink.core.errors import ConflictError, MediaError, NotFoundError, ProcessingError
from medialink.core.logging_config import correlation_id_ctx_var
from medialink.models.media import MediaDescriptor, MediaStatus, MediaType
from medialink.services import events
from medialink.services.blob_storage import PRIVATE, PUBLIC, variant_names_for
from medialink.services.job_bus import JobEnvelope

if TYPE_CHECKING:
    from medialink.core.context import CoreContext

logger = logging.getLogger(__name__)

JobHandler = Callable[["CoreContext", JobEnvelope, MediaDescriptor, list[str]], Awaitable[MediaDescriptor]]

CLAIMABLE = (MediaStatus.uploaded, MediaStatus.failed)


@contextmanager
def scratch_directory(root: str | None = None) -> Iterator[Path]:
    """Per-job scratch space, removed on every exit path."""
    if root:
        Path(root).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix="media-job-", dir=root or None))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def operation_deadline(ctx: "CoreContext", envelope: JobEnvelope) -> float:
    return ctx.bus.config(envelope.queue).operation_deadline_seconds


async def download_original(ctx: "CoreContext", envelope: JobEnvelope, row: MediaDescriptor) -> bytes:
    try:
        with anyio.fail_after(operation_deadline(ctx, envelope)):
            blob = await ctx.blobs.download(PRIVATE, row.original_blob_name)
    except (TimeoutError, MediaError) as exc:
        raise ProcessingError("download_failed", f"Could not download {row.original_blob_name}: {exc}") from exc
    return blob.data


async def upload_variant(
    ctx: "CoreContext",
    envelope: JobEnvelope,
    name: str,
    data: bytes,
    mime: str,
    *,
    descriptor_id: int | None,
) -> str:
    with anyio.fail_after(operation_deadline(ctx, envelope)):
        return await ctx.blobs.upload(
            PUBLIC,
            name,
            data,
            mime,
            {"media_id": envelope.media_id, "descriptor_id": str(descriptor_id or "")},
        )


async def delete_blobs(ctx: "CoreContext", names: list[str]) -> int:
    deleted = 0
    for name in names:
        try:
            if await ctx.blobs.delete(PUBLIC, name):
                deleted += 1
        except MediaError as exc:
            logger.warning("media_variant_cleanup_failed", extra={"blob_name": name, "error": str(exc)})
    return deleted


async def claim_descriptor(ctx: "CoreContext", envelope: JobEnvelope, row: MediaDescriptor) -> MediaDescriptor | None:
    """Move the descriptor to ``processing`` or return None when another delivery owns it."""
    if row.version != envelope.version:
        return None
    # The first delivery of a reingest job finds the row already in processing;
    # the job-row claim is the exclusive step there. Later deliveries follow a
    # lease reset or a failure and go through the status CAS below.
    if envelope.reingest and envelope.attempt == 1 and row.status == MediaStatus.processing:
        return row
    try:
        return await ctx.store.transition(row.id, CLAIMABLE, MediaStatus.processing)
    except ConflictError:
        return None


async def _settle_failure(
    ctx: "CoreContext",
    envelope: JobEnvelope,
    row: MediaDescriptor,
    exc: Exception,
    uploaded: list[str],
) -> str:
    code = exc.code if isinstance(exc, ProcessingError) else "processing_failed"
    if isinstance(exc, ProcessingError):
        logger.warning(
            "media_job_failed",
            extra={"job_id": envelope.job_id, "descriptor_id": row.id, "error_code": code, "error": exc.detail},
        )
    else:
        logger.exception("media_job_crashed", extra={"job_id": envelope.job_id, "descriptor_id": row.id})
    if not await ctx.bus.holds_lease(envelope):
        # Redelivered: the current attempt writes the same blob names.
        logger.warning("media_job_ownership_lost", extra={"job_id": envelope.job_id, "descriptor_id": row.id})
        return "lost"
    current = await ctx.store.by_id(row.id)
    if current is not None and current.status == MediaStatus.ready and current.version == envelope.version:
        await ctx.bus.ack(envelope)
        return "duplicate"
    await delete_blobs(ctx, uploaded)
    failed_row: MediaDescriptor | None = None
    try:
        failed_row = await ctx.store.set_failed(row.id, code)
    except (ConflictError, NotFoundError):
        logger.warning("media_job_failure_not_recorded", extra={"descriptor_id": row.id, "error_code": code})
    outcome = await ctx.bus.nack(envelope, error_code=code, error_message=str(exc))
    await ctx.cache.invalidate(row.id, owner=row.owner_id)
    if failed_row is not None:
        await ctx.events.for_descriptor(
            events.MEDIA_FAILED,
            failed_row,
            error=code,
            attempt=envelope.attempt,
            final=outcome == "dead",
        )
    return "failed" if outcome == "dead" else outcome


async def _remove_previous_versions(ctx: "CoreContext", row: MediaDescriptor) -> None:
    stale: list[str] = []
    for version in range(1, row.version):
        stale.extend(variant_names_for(row.media_type, row.media_id, version))
    removed = await delete_blobs(ctx, stale)
    if removed:
        logger.info("media_previous_variants_removed", extra={"descriptor_id": row.id, "count": removed})


async def run_job(ctx: "CoreContext", envelope: JobEnvelope, handler: JobHandler) -> str:
    """Process one claimed envelope; returns ready, duplicate, skipped, missing, retry, failed or lost."""
    token = correlation_id_ctx_var.set(envelope.job_id)
    try:
        row = await ctx.store.by_id(envelope.descriptor_id) if envelope.descriptor_id is not None else None
        if row is None:
            logger.warning("media_job_descriptor_missing", extra={"job_id": envelope.job_id})
            await ctx.bus.ack(envelope)
            return "missing"
        if row.media_type == MediaType.document:
            await ctx.bus.ack(envelope)
            return "skipped"
        claimed = await claim_descriptor(ctx, envelope, row)
        if claimed is None:
            logger.info(
                "media_job_duplicate_skipped",
                extra={"job_id": envelope.job_id, "descriptor_id": row.id, "status": row.status.value},
            )
            await ctx.bus.ack(envelope)
            return "duplicate"
        await ctx.cache.invalidate(claimed.id, owner=claimed.owner_id)
        await ctx.events.for_descriptor(events.MEDIA_PROCESSING, claimed, attempt=envelope.attempt)

        uploaded: list[str] = []
        try:
            ready = await handler(ctx, envelope, claimed, uploaded)
        except Exception as exc:
            return await _settle_failure(ctx, envelope, claimed, exc, uploaded)

        await ctx.bus.ack(envelope)
        await ctx.cache.invalidate(ready.id, owner=ready.owner_id)
        if ready.version > 1:
            await _remove_previous_versions(ctx, ready)
        metrics.record_job_succeeded(envelope.queue)
        await ctx.events.for_descriptor(events.MEDIA_READY, ready, variants={k.value: v for k, v in ready.variants.items()})
        logger.info(
            "media_job_completed",
            extra={"job_id": envelope.job_id, "descriptor_id": ready.id, "variant_count": len(ready.variants)},
        )
        return "ready"
    finally:
        correlation_id_ctx_var.reset(token)


async def fail_expired_lease(ctx: "CoreContext", envelope: JobEnvelope) -> None:
    """Reset a descriptor whose worker vanished mid-job so the redelivery can claim it."""
    if envelope.descriptor_id is None:
        return
    try:
        row = await ctx.store.set_failed(envelope.descriptor_id, "lease_expired")
    except (ConflictError, NotFoundError):
        return
    await ctx.cache.invalidate(row.id, owner=row.owner_id)
    logger.warning("media_descriptor_lease_expired", extra={"descriptor_id": row.id, "job_id": envelope.job_id})
