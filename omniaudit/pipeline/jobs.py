"""Job records and the request / progress schemas exchanged with callers."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from omniaudit.analyzer.crosschain import CrossChainAnalysisResult
from omniaudit.core.types import AnalysisOptions, AnalysisResult, ContractInput, Issue
from omniaudit.pipeline.aggregator import AggregatedReport


# ── Enums ────────────────────────────────────────────────────────────────────


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class PlatformStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Queue rank; lower runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[JobPriority, int] = {
    JobPriority.CRITICAL: 0,
    JobPriority.HIGH: 1,
    JobPriority.NORMAL: 2,
    JobPriority.LOW: 3,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Request ──────────────────────────────────────────────────────────────────


class AnalysisRequest(BaseModel):
    """Submission from the routing layer.

    ``platforms`` may be omitted, in which case every contract's platform is
    detected from its source.
    """

    owner_id: str = Field(min_length=1)
    platforms: list[str] | None = None
    contracts: list[ContractInput] = Field(min_length=1)
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)
    cross_chain_analysis: bool = True
    priority: JobPriority = JobPriority.NORMAL


# ── Job ──────────────────────────────────────────────────────────────────────


class AnalysisJob(BaseModel):
    """One analysis job. Only the orchestrator mutates it."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    platforms: list[str]
    contracts: dict[str, list[ContractInput]] = Field(default_factory=dict)
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)
    cross_chain_analysis: bool = True
    priority: JobPriority = JobPriority.NORMAL

    status: JobStatus = JobStatus.QUEUED
    platform_status: dict[str, PlatformStatus] = Field(default_factory=dict)
    platform_percent: dict[str, int] = Field(default_factory=dict)
    percent: int = Field(default=0, ge=0, le=100)
    current_step: str = "queued"

    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    results: dict[str, AnalysisResult] = Field(default_factory=dict)
    cross_chain: CrossChainAnalysisResult | None = None
    report: AggregatedReport | None = None
    errors: list[Issue] = Field(default_factory=list)
    warnings: list[Issue] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def completed_platforms(self) -> list[str]:
        return [p for p in self.platforms if self.platform_status.get(p) == PlatformStatus.COMPLETED]

    @property
    def failed_platforms(self) -> list[str]:
        return [p for p in self.platforms if self.platform_status.get(p) == PlatformStatus.FAILED]

    def snapshot(self) -> "AnalysisJob":
        return self.model_copy(deep=True)


# ── Progress ─────────────────────────────────────────────────────────────────


class ProgressEvent(BaseModel):
    """Pushed to the job owner through the notifier."""

    job_id: str
    status: JobStatus
    overall_percent: int = Field(ge=0, le=100)
    per_platform: dict[str, int] = Field(default_factory=dict)
    current_step: str

    @classmethod
    def from_job(cls, job: AnalysisJob) -> "ProgressEvent":
        return cls(
            job_id=job.id,
            status=job.status,
            overall_percent=job.percent,
            per_platform=dict(job.platform_percent),
            current_step=job.current_step,
        )


class Progress(ProgressEvent):
    """Answer to a progress query."""

    platform_status: dict[str, PlatformStatus] = Field(default_factory=dict)
    completed_platforms: list[str] = Field(default_factory=list)
    failed_platforms: list[str] = Field(default_factory=list)
    errors: list[Issue] = Field(default_factory=list)
    warnings: list[Issue] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job: AnalysisJob) -> "Progress":
        return cls(
            job_id=job.id,
            status=job.status,
            overall_percent=job.percent,
            per_platform=dict(job.platform_percent),
            current_step=job.current_step,
            platform_status=dict(job.platform_status),
            completed_platforms=job.completed_platforms,
            failed_platforms=job.failed_platforms,
            errors=list(job.errors),
            warnings=list(job.warnings),
        )


class QueueStats(BaseModel):
    """Scheduler load plus the outcomes this orchestrator has recorded."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
