import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from medialink.core import metrics
from medialink.core.rate_limit import SlidingWindowLimiter
from medialink.models.media import MediaJob, MediaJobStatus, utcnow
from medialink.services.job_bus import IMAGE_QUEUE, VIDEO_QUEUE, QueueConfig, SqlJobBus, queue_configs


async def _enqueue(ctx, media_id: str = "ab12", **kwargs):
    return await ctx.bus.enqueue(
        IMAGE_QUEUE, descriptor_id=None, media_id=media_id, blob_name=f"image_{media_id}_v1.jpg", **kwargs
    )


async def _job(ctx, job_id: str) -> MediaJob:
    async with ctx.session_factory() as session:
        return await session.scalar(select(MediaJob).where(MediaJob.id == uuid.UUID(job_id)))


async def _expire_leases(ctx) -> None:
    async with ctx.session_factory() as session:
        await session.execute(
            update(MediaJob)
            .where(MediaJob.status == MediaJobStatus.processing)
            .values(lease_expires_at=utcnow() - timedelta(seconds=5))
        )
        await session.commit()


def test_queue_configs_follow_settings(settings) -> None:
    configs = queue_configs(settings)
    image = configs[IMAGE_QUEUE]
    video = configs[VIDEO_QUEUE]
    assert (image.attempts, image.concurrency, image.rate_limit_per_second) == (3, 2, 10)
    assert (video.attempts, video.concurrency, video.rate_limit_per_second) == (2, 1, 5)
    assert image.operation_deadline_seconds == image.visibility_timeout_seconds / 2


def test_backoff_doubles_per_attempt() -> None:
    cfg = QueueConfig(
        name="q",
        attempts=3,
        backoff_seconds=2.0,
        concurrency=1,
        rate_limit_per_second=1,
        visibility_timeout_seconds=60,
        completed_retention_seconds=60,
        failed_retention_seconds=60,
    )
    assert [cfg.backoff_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]
    assert cfg.backoff_for(0) == 2.0


@pytest.mark.anyio
async def test_enqueue_claim_ack(ctx) -> None:
    queued = await _enqueue(ctx, payload={"reingest": True}, version=2)
    assert queued.attempt == 0
    assert queued.name == "process-image"
    assert metrics.snapshot()["jobs_enqueued:image-processing"] == 1

    claimed = await ctx.bus.claim(IMAGE_QUEUE, "worker-1")
    assert claimed is not None
    assert claimed.job_id == queued.job_id
    assert claimed.attempt == 1
    assert claimed.version == 2
    assert claimed.reingest is True
    assert await ctx.bus.claim(IMAGE_QUEUE, "worker-2") is None
    assert await ctx.bus.claim(VIDEO_QUEUE, "worker-2") is None

    assert await ctx.bus.ack(claimed) is True
    job = await _job(ctx, claimed.job_id)
    assert job.status == MediaJobStatus.completed
    assert job.lease_expires_at is None
    assert await ctx.bus.ack(claimed) is False


@pytest.mark.anyio
async def test_nack_retries_then_dead_letters(ctx) -> None:
    await _enqueue(ctx)
    outcomes = []
    for _ in range(3):
        claimed = await ctx.bus.claim(IMAGE_QUEUE, "w")
        assert claimed is not None
        outcomes.append((claimed.attempt, await ctx.bus.nack(claimed, error_code="decode_failed")))

    assert outcomes == [(1, "retry"), (2, "retry"), (3, "dead")]
    job = await _job(ctx, claimed.job_id)
    assert job.status == MediaJobStatus.failed
    assert job.error_code == "decode_failed"
    assert metrics.snapshot()["jobs_failed:image-processing"] == 1
    assert await ctx.bus.claim(IMAGE_QUEUE, "w") is None


@pytest.mark.anyio
async def test_non_retryable_nack_dead_letters_immediately(ctx) -> None:
    await _enqueue(ctx)
    claimed = await ctx.bus.claim(IMAGE_QUEUE, "w")
    assert await ctx.bus.nack(claimed, error_code="decode_failed", retryable=False) == "dead"


@pytest.mark.anyio
async def test_retry_waits_for_backoff(ctx, monkeypatch: pytest.MonkeyPatch) -> None:
    slow = ctx.settings.model_copy(update={"image_backoff_seconds": 30})
    monkeypatch.setitem(ctx.bus.configs, IMAGE_QUEUE, queue_configs(slow)[IMAGE_QUEUE])
    await _enqueue(ctx)
    claimed = await ctx.bus.claim(IMAGE_QUEUE, "w")
    assert await ctx.bus.nack(claimed, error_code="transient") == "retry"

    assert await ctx.bus.claim(IMAGE_QUEUE, "w") is None
    stats = await ctx.bus.stats(IMAGE_QUEUE)
    assert (stats.waiting, stats.delayed, stats.active) == (0, 1, 0)


@pytest.mark.anyio
async def test_expired_lease_is_redelivered_and_stale_ack_is_lost(ctx) -> None:
    await _enqueue(ctx)
    first = await ctx.bus.claim(IMAGE_QUEUE, "slow-worker")
    await _expire_leases(ctx)

    requeued = await ctx.bus.requeue_expired()
    assert [(env.job_id, dead) for env, dead in requeued] == [(first.job_id, False)]

    second = await ctx.bus.claim(IMAGE_QUEUE, "fast-worker")
    assert second.job_id == first.job_id
    assert second.attempt == 2
    assert await ctx.bus.ack(first) is False
    assert await ctx.bus.nack(first, error_code="late") == "lost"
    assert await ctx.bus.ack(second) is True


@pytest.mark.anyio
async def test_expired_lease_on_last_attempt_is_dead(ctx) -> None:
    await ctx.bus.enqueue(VIDEO_QUEUE, descriptor_id=None, media_id="ef56", blob_name="video_ef56_v1.mp4")
    for expected_dead in (False, True):
        claimed = await ctx.bus.claim(VIDEO_QUEUE, "w")
        await _expire_leases(ctx)
        requeued = await ctx.bus.requeue_expired(VIDEO_QUEUE)
        assert [(env.attempt, dead) for env, dead in requeued] == [(claimed.attempt, expected_dead)]
    stats = await ctx.bus.stats(VIDEO_QUEUE)
    assert stats.failed == 1


@pytest.mark.anyio
async def test_stats_and_purge(ctx) -> None:
    for media_id in ("aa", "bb", "cc"):
        await _enqueue(ctx, media_id)
    done = await ctx.bus.claim(IMAGE_QUEUE, "w")
    await ctx.bus.ack(done)
    await ctx.bus.claim(IMAGE_QUEUE, "w")

    stats = await ctx.bus.stats(IMAGE_QUEUE)
    assert (stats.waiting, stats.active, stats.completed, stats.failed) == (1, 1, 1, 0)

    assert await ctx.bus.purge_retained() == 0
    async with ctx.session_factory() as session:
        await session.execute(
            update(MediaJob)
            .where(MediaJob.status == MediaJobStatus.completed)
            .values(completed_at=utcnow() - timedelta(seconds=ctx.settings.completed_job_retention_seconds + 60))
        )
        await session.commit()
    assert await ctx.bus.purge_retained() == 1
    assert (await ctx.bus.stats(IMAGE_QUEUE)).completed == 0


@pytest.mark.anyio
async def test_unknown_queue_is_rejected(ctx) -> None:
    with pytest.raises(ValueError):
        await ctx.bus.enqueue("thumbnails", descriptor_id=None, media_id="x", blob_name="x")


@pytest.mark.anyio
async def test_wake_list_is_pushed_and_popped() -> None:
    class FakeRedis:
        def __init__(self) -> None:
            self.lists: dict[str, list[str]] = {}

        async def rpush(self, key, value):
            self.lists.setdefault(key, []).append(value)

        async def blpop(self, keys, timeout=0):
            for key in keys:
                if self.lists.get(key):
                    return key, self.lists[key].pop(0)
            return None

    redis = FakeRedis()
    bus = SqlJobBus(session_factory=None, configs={}, redis=redis)
    await bus.notify(IMAGE_QUEUE)
    assert redis.lists == {"media:jobs:image-processing": ["1"]}
    assert await bus.wait_for_work(IMAGE_QUEUE, 0.1) is True
    assert await bus.wait_for_work(IMAGE_QUEUE, 0.1) is False


def test_sliding_window_limiter_reserves_slots_per_window() -> None:
    now = [0.0]
    limiter = SlidingWindowLimiter(2, clock=lambda: now[0])
    assert limiter.reserve() == 0.0
    assert limiter.reserve() == 0.0
    assert limiter.reserve() == pytest.approx(1.0)
    now[0] = 1.0
    assert limiter.reserve() == 0.0
    assert SlidingWindowLimiter(0).reserve() == 0.0
