from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_ticket_minted() -> None:
    _inc("tickets_minted")


def record_upload_completed() -> None:
    _inc("uploads_completed")


def record_job_enqueued(queue: str) -> None:
    _inc(f"jobs_enqueued:{queue}")


def record_job_succeeded(queue: str) -> None:
    _inc(f"jobs_succeeded:{queue}")


def record_job_failed(queue: str) -> None:
    _inc(f"jobs_failed:{queue}")


def record_cache_hit() -> None:
    _inc("cache_hits")


def record_cache_miss() -> None:
    _inc("cache_misses")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
