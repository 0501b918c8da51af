from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from threading import Lock
from time import monotonic
from typing import Protocol

from cachetools import TTLCache


class BatchState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchProgress:
    job_id: str
    state: BatchState
    total: int
    processed: int
    started_at: datetime
    finished_at: datetime | None = None
    summary: dict[str, int] | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["state"] = self.state.value
        payload["started_at"] = self.started_at.isoformat()
        payload["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return payload


class BatchStatusStore(Protocol):
    def put(self, progress: BatchProgress) -> None: ...

    def get(self, job_id: str) -> BatchProgress | None: ...

    def advance(self, job_id: str, processed: int = 1) -> BatchProgress | None: ...


class InMemoryBatchStatusStore:
    """Process-local progress keyed by job id; entries expire after ttl_seconds."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 3600.0,
        maxsize: int = 1024,
        timer=monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._cache: TTLCache[str, BatchProgress] = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._lock = Lock()

    def put(self, progress: BatchProgress) -> None:
        with self._lock:
            self._cache[progress.job_id] = progress

    def get(self, job_id: str) -> BatchProgress | None:
        with self._lock:
            return self._cache.get(job_id)

    def advance(self, job_id: str, processed: int = 1) -> BatchProgress | None:
        with self._lock:
            current = self._cache.get(job_id)
            if current is None:
                return None
            updated = replace(current, processed=current.processed + processed)
            self._cache[job_id] = updated
            return updated
