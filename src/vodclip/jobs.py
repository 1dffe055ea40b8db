from __future__ import annotations

import json
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .bus import BusMessage, ProgressBus, Subscription
from .errors import ValidationError
from .models import SnappedWindow
from .utils import utc_iso as _utc_iso

logger = logging.getLogger(__name__)

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class JobStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    READY = "ready"  # buffered delivery only: artifact complete, not yet sent
    DONE = "done"
    ERROR = "error"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.ERROR, JobStatus.CANCELED})

_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.STARTING: frozenset({JobStatus.RUNNING, JobStatus.ERROR, JobStatus.CANCELED}),
    JobStatus.RUNNING: frozenset({JobStatus.READY, JobStatus.DONE, JobStatus.ERROR, JobStatus.CANCELED}),
    JobStatus.READY: frozenset({JobStatus.DONE, JobStatus.ERROR, JobStatus.CANCELED}),
    JobStatus.DONE: frozenset(),
    JobStatus.ERROR: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


class JobStateError(RuntimeError):
    """Raised for a transition the job state machine does not allow."""

    pass


@dataclass
class ClipJob:
    id: str
    asset_id: str = ""
    status: JobStatus = JobStatus.STARTING
    requested_start: Optional[float] = None
    requested_end: Optional[float] = None
    snapped: Optional[SnappedWindow] = None
    delivery_mode: Optional[str] = None
    codec_profile: Optional[str] = None
    processed_ms: int = 0
    percent: float = 0.0
    bytes_sent: int = 0
    total_bytes: Optional[int] = None
    error: str = ""
    created_at: str = field(default_factory=_utc_iso)
    updated_at: str = field(default_factory=_utc_iso)
    finished_at: Optional[str] = None

    # monotonic clock reading when the job turned terminal (for reaping)
    finished_mono: Optional[float] = field(default=None, repr=False)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "status": self.status.value,
            "requested": {"start": self.requested_start, "end": self.requested_end},
            "snapped": self.snapped.to_dict() if self.snapped else None,
            "delivery_mode": self.delivery_mode,
            "codec_profile": self.codec_profile,
            "progress": {"processed_ms": self.processed_ms, "percent": self.percent},
            "transfer": {"bytes_sent": self.bytes_sent, "total_bytes": self.total_bytes},
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
        }


class JobManager:
    """Owns the job registry and publishes every mutation to a ProgressBus.

    Terminal jobs stay readable for ``retention_seconds`` and are reaped once
    nobody is subscribed to them.
    """

    def __init__(
        self,
        *,
        retention_seconds: float = 300.0,
        bus: Optional[ProgressBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.retention_seconds = max(0.0, float(retention_seconds))
        self.bus = bus if bus is not None else ProgressBus()
        self._clock = clock
        self._jobs: Dict[str, ClipJob] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Optional[ClipJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def create(self, job_id: Optional[str] = None, **fields: Any) -> ClipJob:
        self.reap()
        if job_id is None:
            job_id = uuid.uuid4().hex
        elif not _JOB_ID_RE.match(job_id):
            raise ValidationError("Bad params: job id must match [A-Za-z0-9_-]{1,64}")

        job = ClipJob(id=job_id, **fields)
        with self._lock:
            existing = self._jobs.get(job_id)
            if existing is not None and not existing.terminal:
                raise ValidationError(f"Bad params: job {job_id} is already in progress")
            self._jobs[job_id] = job
            self._publish(job)
        return job

    def _publish(self, job: ClipJob) -> None:
        # Called with the lock held so subscribers see updates in mutation order.
        self.bus.publish(job.id, job.to_dict(), terminal=job.terminal)

    def _touch(self, job: ClipJob) -> None:
        job.updated_at = _utc_iso()

    def update(self, job: ClipJob, **fields: Any) -> bool:
        """Set descriptive fields (window, mode, ...) on a live job."""
        with self._lock:
            if job.terminal:
                return False
            for key, value in fields.items():
                if key not in ClipJob.__dataclass_fields__ or key in {"id", "status"}:
                    raise AttributeError(f"ClipJob has no settable field {key!r}")
                setattr(job, key, value)
            self._touch(job)
            self._publish(job)
        return True

    def set_status(self, job: ClipJob, status: JobStatus, *, error: Optional[str] = None) -> bool:
        """Move ``job`` to ``status``.

        Returns False (and changes nothing) when the job is already terminal;
        raises JobStateError for any other transition outside the table.
        """
        status = JobStatus(status)
        with self._lock:
            if job.status == status:
                return False
            if job.terminal:
                logger.debug("Job %s already %s; ignoring %s", job.id, job.status.value, status.value)
                return False
            if status not in _TRANSITIONS[job.status]:
                raise JobStateError(f"job {job.id}: {job.status.value} -> {status.value} is not allowed")

            job.status = status
            if error is not None:
                job.error = error
            if status == JobStatus.DONE:
                job.percent = 100.0
            self._touch(job)
            if job.terminal:
                job.finished_at = job.updated_at
                job.finished_mono = self._clock()
            self._publish(job)

        if status in TERMINAL_STATUSES:
            logger.info("Job %s -> %s%s", job.id, status.value, f" ({error})" if error else "")
            self.reap()
        return True

    def update_progress(self, job: ClipJob, processed_ms: int, duration_s: float) -> bool:
        """Record processed time; percent stays within [0, 99] until completion."""
        with self._lock:
            if job.terminal:
                return False
            processed_ms = max(0, int(processed_ms))
            if duration_s > 0:
                pct = min(99.0, max(0.0, processed_ms / (duration_s * 1000.0) * 100.0))
            else:
                pct = 0.0
            pct = round(pct, 1)
            if processed_ms <= job.processed_ms and pct <= job.percent:
                return False
            job.processed_ms = max(job.processed_ms, processed_ms)
            job.percent = max(job.percent, pct)
            self._touch(job)
            self._publish(job)
        return True

    def complete_progress(self, job: ClipJob) -> bool:
        """The tool reported its completion marker."""
        with self._lock:
            if job.terminal or job.percent >= 100.0:
                return False
            job.percent = 100.0
            self._touch(job)
            self._publish(job)
        return True

    def add_bytes(self, job: ClipJob, nbytes: int) -> None:
        with self._lock:
            if job.terminal:
                return
            job.bytes_sent += int(nbytes)
            self._touch(job)
            self._publish(job)

    def subscribe(self, job_id: str) -> Optional[Subscription]:
        """Attach an observer; it receives the current snapshot right away."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            sub = self.bus.subscribe(job_id)
            sub.offer(BusMessage(json.dumps(job.to_dict()), terminal=job.terminal))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self.bus.unsubscribe(sub)
        self.reap()

    def reap(self) -> int:
        """Evict terminal jobs past retention that have no subscribers."""
        now = self._clock()
        removed = 0
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if not job.terminal or job.finished_mono is None:
                    continue
                if now - job.finished_mono < self.retention_seconds:
                    continue
                if self.bus.subscriber_count(job_id):
                    continue
                del self._jobs[job_id]
                removed += 1
        if removed:
            logger.debug("Reaped %d finished job(s)", removed)
        return removed

    def shutdown(self) -> None:
        with self._lock:
            self._jobs.clear()
        self.bus.close()
