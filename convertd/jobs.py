"""
In-memory conversion job records and the registry holding them.

Jobs live only as long as the process. The registry is owned by the event
loop thread and none of its methods await, so every call is atomic with
respect to other coroutines.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class JobStatus(str, Enum):
    QUEUED = "queued"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class ConversionJob:
    item_id: int
    file_name: str
    source_path: str
    output_path: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    # Runtime state, never serialized
    process: Any = field(default=None, repr=False, compare=False)
    temp_path: Optional[str] = field(default=None, repr=False, compare=False)
    cancelled: bool = field(default=False, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "file_name": self.file_name,
            "source_path": self.source_path,
            "output_path": self.output_path,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class JobRegistry:
    """Jobs keyed by item id plus a FIFO of pending ids."""

    def __init__(self):
        self._jobs: dict[int, ConversionJob] = {}
        self._pending: deque[int] = deque()

    def __len__(self) -> int:
        return len(self._jobs)

    def exists(self, item_id: int) -> bool:
        """True while a job for the item is pending or converting."""
        job = self._jobs.get(item_id)
        return job is not None and not job.is_terminal

    def get(self, item_id: int) -> Optional[ConversionJob]:
        return self._jobs.get(item_id)

    def enqueue(self, item_id: int, source_path: str, file_name: str, output_path: str) -> ConversionJob:
        if self.exists(item_id):
            raise ValueError(f"Item {item_id} already has a job in flight")
        # A finished job for the same item is superseded
        job = ConversionJob(
            item_id=item_id,
            file_name=file_name,
            source_path=source_path,
            output_path=output_path,
        )
        self._jobs[item_id] = job
        self._pending.append(item_id)
        return job

    def pop_pending(self) -> Optional[int]:
        while self._pending:
            item_id = self._pending.popleft()
            job = self._jobs.get(item_id)
            if job is not None and job.status == JobStatus.QUEUED:
                return item_id
        return None

    def activate(self, item_id: int) -> Optional[ConversionJob]:
        job = self._jobs.get(item_id)
        if job is None or job.status != JobStatus.QUEUED:
            return None
        try:
            self._pending.remove(item_id)
        except ValueError:
            pass
        job.status = JobStatus.CONVERTING
        job.started_at = datetime.now()
        return job

    def update(self, item_id: int, **fields) -> Optional[ConversionJob]:
        job = self._jobs.get(item_id)
        if job is None:
            return None
        for name, value in fields.items():
            if not hasattr(job, name):
                raise AttributeError(f"ConversionJob has no field '{name}'")
            setattr(job, name, value)
        return job

    def remove(self, item_id: int) -> Optional[ConversionJob]:
        job = self._jobs.pop(item_id, None)
        try:
            self._pending.remove(item_id)
        except ValueError:
            pass
        return job

    def discard_pending(self, item_id: int) -> bool:
        """Drop a job that has not started yet."""
        job = self._jobs.get(item_id)
        if job is None or job.status != JobStatus.QUEUED:
            return False
        self.remove(item_id)
        return True

    def pending_ids(self) -> list[int]:
        return list(self._pending)

    def active_jobs(self) -> list[ConversionJob]:
        return [j for j in self._jobs.values() if j.status == JobStatus.CONVERTING]

    def visible_jobs(self) -> list[ConversionJob]:
        """Converting jobs plus finished ones still kept for status queries."""
        return [j for j in self._jobs.values() if j.status != JobStatus.QUEUED]
