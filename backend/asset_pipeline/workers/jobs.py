"""
Jobs, retry policy and the in-memory job queue
══════════════════════════════════════════════

Queue semantics:
  - Ordered by priority (high > normal > low), FIFO within a priority.
  - A job is held back until its `available_at` time; with the default
    retry delay of 0 a failed job is picked up again on the next cycle.
  - NOT durable. The queue lives in process memory and is lost on restart.
    Assets left half-way are recovered with `--backfill`
    (JobProcessor.process_all_unvectorized).
  - Unbounded. Callers rate-limit upstream.

Retry:
  RetryPolicy owns attempts / demotion / backoff so it can be tuned or
  replaced without touching the queue. A failed job has attempts += 1; while
  attempts < max_attempts it is re-queued at low priority, after that it is
  dropped.
"""

from __future__ import annotations

import itertools
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from asset_pipeline.core.config import Settings, settings as default_settings


class JobType(str, Enum):
    ADD           = "add"
    UPDATE        = "update"
    REMOVE        = "remove"
    EXTRACT_PDF   = "extractPDF"
    VECTORIZE_PDF = "vectorizePDF"
    EXTRACT_CSV   = "extractCSV"
    VECTORIZE_CSV = "vectorizeCSV"


class JobPriority(str, Enum):
    HIGH   = "high"
    NORMAL = "normal"
    LOW    = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    JobPriority.HIGH:   3,
    JobPriority.NORMAL: 2,
    JobPriority.LOW:    1,
}

# extract job -> the vectorize job it hands over to, and back
VECTORIZE_AFTER_EXTRACT = {
    JobType.EXTRACT_PDF: JobType.VECTORIZE_PDF,
    JobType.EXTRACT_CSV: JobType.VECTORIZE_CSV,
}
EXTRACT_BEFORE_VECTORIZE = {v: k for k, v in VECTORIZE_AFTER_EXTRACT.items()}


@dataclass
class Job:
    type:         JobType
    asset_id:     str
    priority:     JobPriority = JobPriority.NORMAL
    attempts:     int         = 0
    max_attempts: int         = 3
    id:           str         = field(default_factory=lambda: uuid.uuid4().hex)
    created_at:   datetime    = field(default_factory=lambda: datetime.now(timezone.utc))
    available_at: float       = 0.0     # monotonic seconds; 0 = immediately
    last_error:   Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id":          self.id,
            "type":        self.type.value,
            "assetId":     self.asset_id,
            "priority":    self.priority.value,
            "attempts":    self.attempts,
            "maxAttempts": self.max_attempts,
            "createdAt":   self.created_at.isoformat(),
            "lastError":   self.last_error,
        }


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with optional full jitter.

    delay(n) = min(max_delay, base_delay * 2 ** (n - 1)), drawn uniformly from
    [0, delay(n)] when jitter is on. base_delay <= 0 disables the delay.
    """
    max_attempts: int         = 3
    base_delay:   float       = 0.0
    max_delay:    float       = 60.0
    jitter:       bool        = True
    demote_to:    JobPriority = JobPriority.LOW

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        cfg = settings or default_settings
        return cls(
            max_attempts=cfg.job_max_attempts,
            base_delay=cfg.job_retry_base_delay,
            max_delay=cfg.job_retry_max_delay,
            jitter=cfg.job_retry_jitter,
        )

    def should_retry(self, job: Job) -> bool:
        return job.attempts < job.max_attempts

    def delay_for(self, attempts: int) -> float:
        if self.base_delay <= 0:
            return 0.0
        delay = min(self.max_delay, self.base_delay * 2 ** max(attempts - 1, 0))
        return random.uniform(0, delay) if self.jitter else delay

    def prepare_retry(self, job: Job, now: float) -> Job:
        job.priority     = self.demote_to
        job.available_at = now + self.delay_for(job.attempts)
        return job


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class JobQueue:
    """In-memory priority queue of pending jobs. Not thread-safe; one event loop."""

    def __init__(self) -> None:
        self._entries: list[tuple[int, Job]] = []
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        return any(job.id == job_id for _, job in self._entries)

    def push(self, job: Job) -> None:
        self._entries.append((next(self._seq), job))

    def _ordered(self) -> list[tuple[int, Job]]:
        return sorted(self._entries, key=lambda e: (-e[1].priority.rank, e[0]))

    def pop_ready(self, limit: int, now: float) -> list[Job]:
        """Remove and return up to `limit` jobs whose available_at has passed."""
        picked: list[tuple[int, Job]] = []
        for entry in self._ordered():
            if len(picked) >= limit:
                break
            if entry[1].available_at <= now:
                picked.append(entry)

        picked_seqs = {seq for seq, _ in picked}
        self._entries = [e for e in self._entries if e[0] not in picked_seqs]
        return [job for _, job in picked]

    def snapshot(self) -> list[Job]:
        """Pending jobs in the order they would be processed."""
        return [job for _, job in self._ordered()]

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count
