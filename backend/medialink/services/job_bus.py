"""Durable at-least-once job queue over the ``media_jobs`` table.

Rows are the source of truth; Redis lists (``media:jobs:{queue}``) only wake
idle consumers. A claim leases a job for the queue's visibility timeout; a
lease that runs out is put back by :meth:`SqlJobBus.requeue_expired`.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TYPE_CHECKING

import anyio
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medialink.core import metrics
from medialink.core.config import Settings
from medialink.core.errors import TransientError
from medialink.core.rate_limit import SlidingWindowLimiter
from medialink.core.redis_client import await_if_needed, json_dumps, json_loads
from medialink.models.media import MediaJob, MediaJobStatus, MediaType, as_utc, utcnow

if TYPE_CHECKING:
    from redis.asyncio import Redis as RedisClient

logger = logging.getLogger(__name__)

IMAGE_QUEUE = "image-processing"
VIDEO_QUEUE = "video-processing"
QUEUE_FOR_MEDIA_TYPE: dict[MediaType, str] = {MediaType.image: IMAGE_QUEUE, MediaType.video: VIDEO_QUEUE}
JOB_NAMES: dict[str, str] = {IMAGE_QUEUE: "process-image", VIDEO_QUEUE: "process-video"}
WAKE_KEY_PREFIX = "media:jobs"
CLAIM_CANDIDATES = 5


@dataclass(frozen=True, slots=True)
class QueueConfig:
    name: str
    attempts: int
    backoff_seconds: float
    concurrency: int
    rate_limit_per_second: int
    visibility_timeout_seconds: int
    completed_retention_seconds: int
    failed_retention_seconds: int

    @property
    def operation_deadline_seconds(self) -> float:
        return self.visibility_timeout_seconds / 2

    def backoff_for(self, attempt: int) -> float:
        return float(self.backoff_seconds) * (2 ** (max(1, int(attempt)) - 1))


def queue_configs(settings: Settings) -> dict[str, QueueConfig]:
    shared = {
        "completed_retention_seconds": int(settings.completed_job_retention_seconds),
        "failed_retention_seconds": int(settings.failed_job_retention_seconds),
    }
    return {
        IMAGE_QUEUE: QueueConfig(
            name=IMAGE_QUEUE,
            attempts=max(1, int(settings.image_attempts)),
            backoff_seconds=float(settings.image_backoff_seconds),
            concurrency=max(1, int(settings.image_concurrency)),
            rate_limit_per_second=int(settings.image_rate_limit_per_second),
            visibility_timeout_seconds=max(2, int(settings.image_visibility_timeout_seconds)),
            **shared,
        ),
        VIDEO_QUEUE: QueueConfig(
            name=VIDEO_QUEUE,
            attempts=max(1, int(settings.video_attempts)),
            backoff_seconds=float(settings.video_backoff_seconds),
            concurrency=max(1, int(settings.video_concurrency)),
            rate_limit_per_second=int(settings.video_rate_limit_per_second),
            visibility_timeout_seconds=max(2, int(settings.video_visibility_timeout_seconds)),
            **shared,
        ),
    }


@dataclass(frozen=True, slots=True)
class JobEnvelope:
    job_id: str
    queue: str
    name: str
    media_id: str
    blob_name: str
    descriptor_id: int | None
    attempt: int
    max_attempts: int
    enqueued_at: datetime
    version: int = 1
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def reingest(self) -> bool:
        return bool(self.payload.get("reingest"))

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["enqueued_at"] = self.enqueued_at.isoformat()
        return data


@dataclass(slots=True)
class QueueStats:
    queue: str
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0


def _envelope(job: MediaJob) -> JobEnvelope:
    try:
        payload = json_loads(job.payload_json) if job.payload_json else {}
    except ValueError:
        payload = {}
    return JobEnvelope(
        job_id=str(job.id),
        queue=job.queue,
        name=job.name,
        media_id=job.media_id,
        blob_name=job.blob_name,
        descriptor_id=job.descriptor_id,
        attempt=int(job.attempt or 0),
        max_attempts=int(job.max_attempts or 1),
        enqueued_at=as_utc(job.enqueued_at) or utcnow(),
        version=int(job.version or 1),
        payload=payload if isinstance(payload, dict) else {},
    )


class SqlJobBus:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        configs: dict[str, QueueConfig],
        redis: "RedisClient | None" = None,
    ) -> None:
        self.session_factory = session_factory
        self.configs = configs
        self.redis = redis
        self.limiters = {name: SlidingWindowLimiter(cfg.rate_limit_per_second) for name, cfg in configs.items()}

    def config(self, queue: str) -> QueueConfig:
        try:
            return self.configs[queue]
        except KeyError as exc:
            raise ValueError(f"Unknown queue: {queue}") from exc

    @staticmethod
    def wake_key(queue: str) -> str:
        return f"{WAKE_KEY_PREFIX}:{queue}"

    async def enqueue(
        self,
        queue: str,
        *,
        descriptor_id: int | None,
        media_id: str,
        blob_name: str,
        version: int = 1,
        payload: dict[str, Any] | None = None,
        delay_seconds: float = 0,
    ) -> JobEnvelope:
        cfg = self.config(queue)
        now = utcnow()
        job = MediaJob(
            queue=queue,
            name=JOB_NAMES.get(queue, queue),
            descriptor_id=descriptor_id,
            media_id=media_id,
            blob_name=blob_name,
            version=int(version),
            payload_json=json_dumps(payload or {}),
            status=MediaJobStatus.queued,
            attempt=0,
            max_attempts=cfg.attempts,
            available_at=now + timedelta(seconds=max(0.0, float(delay_seconds))),
            enqueued_at=now,
            updated_at=now,
        )
        try:
            async with self.session_factory() as session:
                session.add(job)
                await session.commit()
                await session.refresh(job)
        except SQLAlchemyError as exc:
            raise TransientError(f"Could not enqueue job on {queue}") from exc
        envelope = _envelope(job)
        metrics.record_job_enqueued(queue)
        logger.info(
            "media_job_enqueued",
            extra={"job_id": envelope.job_id, "queue": queue, "descriptor_id": descriptor_id},
        )
        await self.notify(queue)
        return envelope

    async def notify(self, queue: str) -> None:
        if self.redis is None:
            return
        try:
            await await_if_needed(self.redis.rpush(self.wake_key(queue), "1"))
        except Exception as exc:
            logger.warning("media_job_wake_failed", extra={"queue": queue, "error": str(exc)})

    async def wait_for_work(self, queue: str, timeout: float) -> bool:
        """Block until a wake-up arrives or ``timeout`` passes."""
        if self.redis is None:
            await anyio.sleep(max(0.0, timeout))
            return False
        try:
            result = await await_if_needed(
                self.redis.blpop([self.wake_key(queue)], timeout=max(1, int(math.ceil(timeout))))
            )
        except Exception as exc:
            logger.warning("media_job_wait_failed", extra={"queue": queue, "error": str(exc)})
            await anyio.sleep(max(0.0, timeout))
            return False
        return bool(result)

    async def claim(self, queue: str, worker_id: str) -> JobEnvelope | None:
        cfg = self.config(queue)
        now = utcnow()
        async with self.session_factory() as session:
            candidates = (
                await session.execute(
                    select(MediaJob.id)
                    .where(
                        MediaJob.queue == queue,
                        MediaJob.status == MediaJobStatus.queued,
                        MediaJob.available_at <= now,
                    )
                    .order_by(MediaJob.available_at.asc(), MediaJob.enqueued_at.asc())
                    .limit(CLAIM_CANDIDATES)
                )
            ).scalars().all()
            for job_id in candidates:
                result = await session.execute(
                    update(MediaJob)
                    .where(MediaJob.id == job_id, MediaJob.status == MediaJobStatus.queued)
                    .values(
                        status=MediaJobStatus.processing,
                        attempt=MediaJob.attempt + 1,
                        lease_expires_at=now + timedelta(seconds=cfg.visibility_timeout_seconds),
                        worker_id=worker_id[:120],
                        started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if result.rowcount != 1:
                    continue
                job = await session.scalar(select(MediaJob).where(MediaJob.id == job_id))
                if job is None:
                    continue
                envelope = _envelope(job)
                logger.info(
                    "media_job_claimed",
                    extra={"job_id": envelope.job_id, "queue": queue, "attempt": envelope.attempt, "worker_id": worker_id},
                )
                return envelope
        return None

    async def _finish(self, envelope: JobEnvelope, **values: Any) -> bool:
        values["updated_at"] = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(MediaJob)
                .where(
                    MediaJob.id == _job_pk(envelope.job_id),
                    MediaJob.status == MediaJobStatus.processing,
                    MediaJob.attempt == envelope.attempt,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def ack(self, envelope: JobEnvelope) -> bool:
        done = await self._finish(
            envelope,
            status=MediaJobStatus.completed,
            completed_at=utcnow(),
            lease_expires_at=None,
            error_code=None,
            error_message=None,
        )
        if not done:
            logger.warning("media_job_ack_lost", extra={"job_id": envelope.job_id, "attempt": envelope.attempt})
        return done

    async def nack(
        self,
        envelope: JobEnvelope,
        *,
        error_code: str,
        error_message: str | None = None,
        retryable: bool = True,
    ) -> str:
        """Schedule a retry with exponential backoff, or dead-letter the job.

        Returns ``"retry"``, ``"dead"`` or ``"lost"`` when the lease was taken over.
        """
        cfg = self.config(envelope.queue)
        now = utcnow()
        if retryable and envelope.attempt < envelope.max_attempts:
            delay = cfg.backoff_for(envelope.attempt)
            done = await self._finish(
                envelope,
                status=MediaJobStatus.queued,
                available_at=now + timedelta(seconds=delay),
                lease_expires_at=None,
                worker_id=None,
                error_code=error_code[:120],
                error_message=(error_message or "")[:2000] or None,
            )
            outcome = "retry" if done else "lost"
            logger.warning(
                "media_job_retry_scheduled",
                extra={"job_id": envelope.job_id, "attempt": envelope.attempt, "retry_in_seconds": delay, "error_code": error_code},
            )
        else:
            done = await self._finish(
                envelope,
                status=MediaJobStatus.failed,
                completed_at=now,
                lease_expires_at=None,
                error_code=error_code[:120],
                error_message=(error_message or "")[:2000] or None,
            )
            outcome = "dead" if done else "lost"
            logger.error(
                "media_job_dead_lettered",
                extra={"job_id": envelope.job_id, "attempt": envelope.attempt, "error_code": error_code},
            )
        if outcome == "dead":
            metrics.record_job_failed(envelope.queue)
        return outcome

    async def holds_lease(self, envelope: JobEnvelope) -> bool:
        """True while ``envelope`` is still the live delivery of its job row."""
        async with self.session_factory() as session:
            found = await session.scalar(
                select(MediaJob.id).where(
                    MediaJob.id == _job_pk(envelope.job_id),
                    MediaJob.status == MediaJobStatus.processing,
                    MediaJob.attempt == envelope.attempt,
                )
            )
        return found is not None

    async def requeue_expired(
        self,
        queue: str | None = None,
        release: Callable[[JobEnvelope], Awaitable[None]] | None = None,
    ) -> list[tuple[JobEnvelope, bool]]:
        """Return leased jobs whose visibility timeout passed, as ``(envelope, dead)`` pairs.

        An expired row is first fenced (queued but held back for another
        visibility timeout) so the stale worker can no longer settle it, then
        ``release`` runs, and only then does the row become claimable.
        """
        now = utcnow()
        stmt = select(MediaJob).where(
            MediaJob.status == MediaJobStatus.processing,
            MediaJob.lease_expires_at.is_not(None),
            MediaJob.lease_expires_at < now,
        )
        if queue:
            stmt = stmt.where(MediaJob.queue == queue)
        async with self.session_factory() as session:
            expired = (await session.execute(stmt.limit(100))).scalars().all()
        requeued: list[tuple[JobEnvelope, bool]] = []
        for job in expired:
            envelope = _envelope(job)
            dead = envelope.attempt >= envelope.max_attempts
            if dead:
                done = await self._finish(
                    envelope,
                    status=MediaJobStatus.failed,
                    completed_at=now,
                    lease_expires_at=None,
                    error_code="lease_expired",
                )
            else:
                hold = timedelta(seconds=self.config(envelope.queue).visibility_timeout_seconds)
                done = await self._finish(
                    envelope,
                    status=MediaJobStatus.queued,
                    available_at=now + hold,
                    lease_expires_at=None,
                    worker_id=None,
                    error_code="lease_expired",
                )
            if not done:
                continue
            logger.warning(
                "media_job_lease_expired",
                extra={"job_id": envelope.job_id, "queue": envelope.queue, "attempt": envelope.attempt, "dead": dead},
            )
            if release is not None:
                await release(envelope)
            requeued.append((envelope, dead))
            if not dead:
                await self._make_available(envelope)
                await self.notify(envelope.queue)
        return requeued

    async def _make_available(self, envelope: JobEnvelope) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(MediaJob)
                .where(
                    MediaJob.id == _job_pk(envelope.job_id),
                    MediaJob.status == MediaJobStatus.queued,
                    MediaJob.attempt == envelope.attempt,
                )
                .values(available_at=utcnow(), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def purge_retained(self) -> int:
        now = utcnow()
        clauses = []
        for name, cfg in self.configs.items():
            clauses.append(
                and_(
                    MediaJob.queue == name,
                    MediaJob.status == MediaJobStatus.completed,
                    MediaJob.completed_at < now - timedelta(seconds=cfg.completed_retention_seconds),
                )
            )
            clauses.append(
                and_(
                    MediaJob.queue == name,
                    MediaJob.status == MediaJobStatus.failed,
                    MediaJob.completed_at < now - timedelta(seconds=cfg.failed_retention_seconds),
                )
            )
        async with self.session_factory() as session:
            result = await session.execute(delete(MediaJob).where(or_(*clauses)))
            await session.commit()
        purged = int(result.rowcount or 0)
        if purged:
            logger.info("media_jobs_purged", extra={"count": purged})
        return purged

    async def stats(self, queue: str) -> QueueStats:
        self.config(queue)
        now = utcnow()
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(MediaJob.status, func.count()).where(MediaJob.queue == queue).group_by(MediaJob.status)
                )
            ).all()
            delayed = await session.scalar(
                select(func.count()).where(
                    MediaJob.queue == queue,
                    MediaJob.status == MediaJobStatus.queued,
                    MediaJob.available_at > now,
                )
            )
        counts = {status: int(count) for status, count in rows}
        stats = QueueStats(
            queue=queue,
            delayed=int(delayed or 0),
            active=counts.get(MediaJobStatus.processing, 0),
            completed=counts.get(MediaJobStatus.completed, 0),
            failed=counts.get(MediaJobStatus.failed, 0),
        )
        stats.waiting = max(0, counts.get(MediaJobStatus.queued, 0) - stats.delayed)
        return stats

    async def jobs_for_descriptor(self, descriptor_id: int) -> list[MediaJob]:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(MediaJob).where(MediaJob.descriptor_id == descriptor_id).order_by(MediaJob.enqueued_at.asc())
            )
            return list(rows.scalars().all())


def _job_pk(job_id: str) -> uuid.UUID:
    return uuid.UUID(str(job_id))
