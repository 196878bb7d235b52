from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import time
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from uuid import uuid4

from medialink.core.config import get_settings
from medialink.core.context import CoreContext, build_context
from medialink.core.logging_config import configure_logging
from medialink.core.redis_client import await_if_needed
from medialink.services.image_pipeline import handle_image_job
from medialink.services.job_bus import IMAGE_QUEUE, VIDEO_QUEUE
from medialink.services.media_processing import JobHandler, fail_expired_lease, run_job
from medialink.services.video_pipeline import handle_video_job


logger = logging.getLogger(__name__)

HANDLERS: dict[str, JobHandler] = {
    IMAGE_QUEUE: handle_image_job,
    VIDEO_QUEUE: handle_video_job,
}
IDLE_MAX_SLEEP_SECONDS = 5.0


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def _heartbeat_payload(ctx: CoreContext, worker_id: str) -> dict[str, object]:
    return {
        "worker_id": worker_id,
        "hostname": socket.gethostname(),
        "pid": os.getpid(),
        "app_version": (ctx.settings.app_version or "").strip() or None,
        "queues": sorted(HANDLERS),
        "last_seen_at": datetime.now(timezone.utc).isoformat(),
    }


def _write_heartbeat_file(path: str, payload: dict[str, object]) -> None:
    try:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_suffix(f"{target.suffix}.tmp")
        temp.write_text(json.dumps(payload, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")
        temp.replace(target)
    except Exception:
        logger.exception("media_worker_heartbeat_file_failed")


async def _publish_heartbeat(ctx: CoreContext, *, worker_id: str) -> None:
    payload = _heartbeat_payload(ctx, worker_id)
    if ctx.settings.worker_heartbeat_file:
        _write_heartbeat_file(ctx.settings.worker_heartbeat_file, payload)
    if ctx.redis is None:
        return
    key = f"{ctx.settings.worker_heartbeat_prefix}:{worker_id}"
    ttl = max(10, int(ctx.settings.worker_heartbeat_ttl_seconds))
    await await_if_needed(ctx.redis.set(key, json.dumps(payload, separators=(",", ":"), ensure_ascii=False), ex=ttl))


async def process_next(ctx: CoreContext, queue: str, worker_id: str) -> str | None:
    """Claim and run at most one job from ``queue``; None when nothing was due."""
    handler = HANDLERS[queue]
    envelope = await ctx.bus.claim(queue, worker_id)
    if envelope is None:
        return None
    return await run_job(ctx, envelope, handler)


async def sweep_once(ctx: CoreContext) -> int:
    """Put expired leases back and release their descriptors; returns how many were found."""
    expired = await ctx.bus.requeue_expired(release=partial(fail_expired_lease, ctx))
    await ctx.bus.purge_retained()
    return len(expired)


async def drain(ctx: CoreContext, queue: str, *, worker_id: str = "inline", limit: int = 100) -> list[str]:
    """Run due jobs until the queue has nothing ready; used by the CLI and tests."""
    outcomes: list[str] = []
    while len(outcomes) < limit:
        outcome = await process_next(ctx, queue, worker_id)
        if outcome is None:
            break
        outcomes.append(outcome)
    return outcomes


async def _run_consumer(ctx: CoreContext, queue: str, *, worker_id: str, slot: int) -> None:
    limiter = ctx.bus.limiters[queue]
    idle_sleep = min(IDLE_MAX_SLEEP_SECONDS, max(0.1, float(ctx.settings.worker_poll_interval_seconds)))
    logger.info("media_worker_consumer_started", extra={"queue": queue, "slot": slot, "worker_id": worker_id})
    while True:
        try:
            await limiter.acquire()
            outcome = await process_next(ctx, queue, worker_id)
            if outcome is None:
                await ctx.bus.wait_for_work(queue, idle_sleep)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("media_worker_loop_error", extra={"queue": queue, "slot": slot})
            await asyncio.sleep(idle_sleep)


async def _run_maintenance_loop(ctx: CoreContext, *, worker_id: str) -> None:
    heartbeat_interval = max(5.0, float(ctx.settings.worker_heartbeat_ttl_seconds) / 2.0)
    sweep_interval = max(1.0, float(ctx.settings.worker_sweep_interval_seconds))
    last_heartbeat = 0.0
    last_sweep = 0.0
    while True:
        try:
            now = time.monotonic()
            if now - last_heartbeat >= heartbeat_interval:
                await _publish_heartbeat(ctx, worker_id=worker_id)
                last_heartbeat = now
            if now - last_sweep >= sweep_interval:
                expired = await sweep_once(ctx)
                if expired:
                    logger.warning("media_worker_leases_expired", extra={"count": expired})
                last_sweep = now
            await asyncio.sleep(1.0)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("media_worker_maintenance_error", extra={"worker_id": worker_id})
            await asyncio.sleep(1.0)


async def run_media_worker(ctx: CoreContext, *, queues: list[str] | None = None) -> None:
    worker_id = _worker_id()
    selected = queues or sorted(HANDLERS)
    if ctx.redis is None:
        logger.warning(
            "media_worker_degraded_mode_started",
            extra={"worker_id": worker_id, "poll_interval_seconds": ctx.settings.worker_poll_interval_seconds},
        )
    else:
        logger.info("media_worker_started", extra={"worker_id": worker_id, "queues": selected})
    tasks = [_run_maintenance_loop(ctx, worker_id=worker_id)]
    for queue in selected:
        for slot in range(ctx.bus.config(queue).concurrency):
            tasks.append(_run_consumer(ctx, queue, worker_id=worker_id, slot=slot))
    await asyncio.gather(*tasks)


async def _main() -> None:
    settings = get_settings()
    configure_logging(json_logs=settings.log_json)
    ctx = build_context(settings)
    try:
        await run_media_worker(ctx)
    finally:
        await ctx.aclose()


def main() -> None:  # pragma: no cover
    asyncio.run(_main())


if __name__ == "__main__":  # pragma: no cover
    main()
