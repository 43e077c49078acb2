"""
Sync job state.

Progress lives in process memory only. A restart loses in-flight jobs; a
client polling the status of a job that disappeared sees ``idle`` and should
treat it like ``error``.
"""

import asyncio
from collections import OrderedDict
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sigcore.shared.exceptions import SyncConflictError
from sigcore.shared.logging import get_logger
from sigcore.shared.timeutils import utcnow

logger = get_logger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class SyncResult:
    """Counters for one full sync."""

    conversations_from_provider: int = 0
    conversations_synced: int = 0
    messages_synced: int = 0
    calls_synced: int = 0
    conversations_skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SyncProgress:
    status: SyncStatus = SyncStatus.IDLE
    phase: str = ""
    current: int = 0
    total: int = 0
    message: str = "No sync in progress"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result: SyncResult | None = None

    @property
    def is_running(self) -> bool:
        return self.status == SyncStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "phase": self.phase,
            "current": self.current,
            "total": self.total,
            "message": self.message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class SyncJob:
    workspace_id: UUID
    progress: SyncProgress = field(default_factory=SyncProgress)
    cancel_requested: bool = False
    task: asyncio.Task[Any] | None = None


class SyncJobRegistry:
    """Per-workspace sync jobs, bounded in size.

    All methods are synchronous, so each one is atomic with respect to other
    coroutines on the event loop.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._max_entries = max_entries
        self._jobs: OrderedDict[UUID, SyncJob] = OrderedDict()

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, workspace_id: UUID) -> SyncJob | None:
        return self._jobs.get(workspace_id)

    def status(self, workspace_id: UUID) -> SyncProgress:
        """Snapshot of a workspace's progress; ``idle`` when no job is known."""
        job = self._jobs.get(workspace_id)
        if job is None:
            return SyncProgress()
        result = replace(job.progress.result) if job.progress.result else None
        return replace(job.progress, result=result)

    def begin(
        self,
        workspace_id: UUID,
        phase: str = "Initializing",
        message: str = "Starting sync...",
    ) -> SyncJob:
        """Register a running job for the workspace.

        Raises:
            SyncConflictError: If a job is already running for the workspace.
        """
        current = self._jobs.get(workspace_id)
        if current is not None and current.progress.is_running:
            raise SyncConflictError(details={"workspace_id": str(workspace_id)})

        job = SyncJob(
            workspace_id=workspace_id,
            progress=SyncProgress(
                status=SyncStatus.RUNNING,
                phase=phase,
                message=message,
                started_at=utcnow(),
            ),
        )
        self._jobs[workspace_id] = job
        self._jobs.move_to_end(workspace_id)
        self._evict()
        return job

    def _evict(self) -> None:
        """Drop the oldest finished jobs beyond capacity; running jobs stay."""
        excess = len(self._jobs) - self._max_entries
        if excess <= 0:
            return
        for workspace_id in [w for w, j in self._jobs.items() if not j.progress.is_running][:excess]:
            del self._jobs[workspace_id]

    def update(self, workspace_id: UUID, **fields: Any) -> None:
        job = self._jobs.get(workspace_id)
        if job is None:
            return
        for name, value in fields.items():
            setattr(job.progress, name, value)

    def finish(
        self,
        workspace_id: UUID,
        status: SyncStatus,
        message: str,
        result: SyncResult | None = None,
        error: str | None = None,
    ) -> None:
        job = self._jobs.get(workspace_id)
        if job is None:
            return
        progress = job.progress
        progress.status = status
        progress.phase = {
            SyncStatus.COMPLETED: "Complete",
            SyncStatus.CANCELLED: "Cancelled",
            SyncStatus.ERROR: "Error",
        }.get(status, progress.phase)
        progress.message = message
        progress.completed_at = utcnow()
        progress.result = result
        progress.error = error
        job.cancel_requested = False
        job.task = None

    def attach_task(self, workspace_id: UUID, task: asyncio.Task[Any]) -> None:
        job = self._jobs.get(workspace_id)
        if job is not None:
            job.task = task

    def request_cancel(self, workspace_id: UUID) -> bool:
        """Flag a running job for cancellation; False when nothing is running."""
        job = self._jobs.get(workspace_id)
        if job is None or not job.progress.is_running:
            return False
        job.cancel_requested = True
        logger.info("Sync cancellation requested", extra={"workspace_id": str(workspace_id)})
        return True

    def is_cancelled(self, workspace_id: UUID) -> bool:
        job = self._jobs.get(workspace_id)
        return job is not None and job.cancel_requested

    def running_tasks(self) -> list[asyncio.Task[Any]]:
        return [j.task for j in self._jobs.values() if j.task is not None and not j.task.done()]
