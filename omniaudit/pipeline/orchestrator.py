"""Job orchestrator: coordinates multi-platform analysis jobs.

Job flow:
1. QUEUED: request resolved to per-platform contract sets and persisted
2. RUNNING: one sub-task per platform, bounded by a semaphore
3. Cross-chain analysis once every sub-task has finished (>= 2 successes)
4. Aggregation into the final report
5. COMPLETED / FAILED, or CANCELLED at any point on request

The repository, the notifier and scheduler subscribers only ever see
snapshots. Every save re-reads the stored record first: once any process has
stored a terminal state (a cancel from the API, say), workers stop and leave
it in place.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone

from omniaudit.analyzer.crosschain import CrossChainRiskAnalyzer
from omniaudit.analyzer.dispatch import AnalyzerDispatch
from omniaudit.analyzer.ensemble import AIEnsembleAnalyzer
from omniaudit.core.config import Settings, get_settings
from omniaudit.core.errors import (
    AccessDeniedError,
    ErrorCode,
    InvalidRequestError,
    JobNotFoundError,
    JobSupersededError,
)
from omniaudit.core.types import AnalysisResult, ContractInput, Issue
from omniaudit.pipeline.aggregator import ResultAggregator
from omniaudit.pipeline.interfaces import (
    InMemoryNotifier,
    InMemoryRepository,
    Notifier,
    RedisNotifier,
    RedisRepository,
    Repository,
)
from omniaudit.pipeline.jobs import (
    AnalysisJob,
    AnalysisRequest,
    JobStatus,
    PlatformStatus,
    Progress,
    ProgressEvent,
    QueueStats,
)
from omniaudit.pipeline.recovery import with_suggestions
from omniaudit.pipeline.scheduler import CeleryScheduler, LocalScheduler, Scheduler
from omniaudit.platforms.catalog import default_registry
from omniaudit.platforms.detector import PlatformDetector
from omniaudit.platforms.registry import PlatformRegistry

logger = logging.getLogger(__name__)

_PLATFORM_PHASE_START = 10
_PLATFORM_PHASE_END = 80
_NOTIFY_TIMEOUT_SECONDS = 5.0


# ── Retry helper for transient repository failures ──────────────────────────

_TRANSIENT_MESSAGES = (
    "connection reset",
    "connection refused",
    "broken pipe",
    "timed out",
    "timeout",
    "temporarily unavailable",
    "too many connections",
    "could not connect",
    "service unavailable",
)


def _is_transient(exc: Exception) -> bool:
    """Return True if the exception looks transient (network / Redis)."""
    msg = str(exc).lower()
    return isinstance(exc, (ConnectionError, TimeoutError)) or any(t in msg for t in _TRANSIENT_MESSAGES)


async def _retry_async(
    coro_factory,  # callable returning a coroutine
    *,
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    label: str = "operation",
):
    """Retry an async operation with exponential back-off on transient errors."""
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except Exception as exc:
            if attempt >= max_retries or not _is_transient(exc):
                raise
            delay = min(base_delay * (2 ** attempt), max_delay)
            logger.warning(
                "Transient error in %s (attempt %d/%d), retrying in %.1fs: %s",
                label, attempt + 1, max_retries, delay, exc,
            )
            await asyncio.sleep(delay)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _tagged(issues: list[Issue], platform_id: str) -> list[Issue]:
    return [
        issue if issue.platform else issue.model_copy(update={"platform": platform_id})
        for issue in issues
    ]


class JobOrchestrator:
    """Accepts analysis requests and drives them to a terminal state."""

    def __init__(
        self,
        registry: PlatformRegistry,
        dispatch: AnalyzerDispatch,
        scheduler: Scheduler,
        repository: Repository,
        notifier: Notifier,
        detector: PlatformDetector | None = None,
        crosschain: CrossChainRiskAnalyzer | None = None,
        aggregator: ResultAggregator | None = None,
        max_concurrent_platforms: int | None = None,
    ) -> None:
        self.registry = registry
        self.dispatch = dispatch
        self.scheduler = scheduler
        self.repository = repository
        self.notifier = notifier
        self.detector = detector or PlatformDetector(registry)
        self.crosschain = crosschain or CrossChainRiskAnalyzer(registry)
        self.aggregator = aggregator or ResultAggregator()
        self.max_concurrent_platforms = (
            max_concurrent_platforms or get_settings().max_concurrent_platforms
        )
        # Live records of non-terminal jobs executing in this process
        self._jobs: dict[str, AnalysisJob] = {}
        # Terminal states this process has written
        self._outcomes: Counter[JobStatus] = Counter()

    # ── Public API ───────────────────────────────────────────────────────

    async def submit(self, request: AnalysisRequest) -> str:
        """Create, persist and schedule a job; returns its id."""
        job = self._build_job(request)
        if self.scheduler.runs_in_process:
            self._jobs[job.id] = job
        await self._persist(job)
        await self.scheduler.submit(job.id, job.priority, lambda: self.execute(job.id))
        logger.info(
            "Submitted job %s for %s (%d contracts, priority=%s)",
            job.id, ", ".join(job.platforms),
            sum(len(c) for c in job.contracts.values()), job.priority.value,
            extra={"job_id": job.id},
        )
        await self._notify(job)
        return job.id

    async def cancel(self, job_id: str, requester_id: str) -> bool:
        """Cancel a job the requester owns. False when it already finished."""
        job = await self._owned_job(job_id, requester_id)
        if job.is_terminal:
            return False
        outcome = await self.scheduler.cancel(job_id)
        logger.info("Cancelling job %s (%s)", job_id, outcome.value, extra={"job_id": job_id})
        self._finish(job, JobStatus.CANCELLED, "cancelled")
        if not await self._persist(job):
            return False
        await self._notify(job)
        return True

    async def queue_stats(self) -> QueueStats:
        """Scheduler load plus the terminal states recorded by this orchestrator."""
        stats = await self.scheduler.stats()
        return stats.model_copy(update={
            "completed": self._outcomes[JobStatus.COMPLETED],
            "failed": self._outcomes[JobStatus.FAILED],
            "cancelled": self._outcomes[JobStatus.CANCELLED],
        })

    async def get_progress(self, job_id: str, requester_id: str) -> Progress:
        job = await self._owned_job(job_id, requester_id)
        return Progress.from_job(job)

    async def get_job(self, job_id: str, requester_id: str) -> AnalysisJob:
        """Snapshot of a job the requester owns."""
        return (await self._owned_job(job_id, requester_id)).snapshot()

    async def execute(self, job_id: str) -> AnalysisJob:
        """Run a queued job to completion. Called by the scheduler."""
        job = self._jobs.get(job_id)
        if job is None:
            job = await self.repository.load(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            self._jobs[job_id] = job
        if job.status is not JobStatus.QUEUED:
            logger.info("Job %s is %s; not executing", job_id, job.status.value)
            self._jobs.pop(job_id, None)
            return job

        job.status = JobStatus.RUNNING
        job.started_at = _utcnow()

        try:
            await self._advance(job, 5, "started")
            await self._run_platforms(job)
            if job.is_terminal:
                return job

            succeeded = job.completed_platforms
            if succeeded:
                await self._advance(job, 85, "cross-chain analysis")
                self._run_crosschain(job)

            await self._advance(job, 95, "aggregating results")
            if not succeeded:
                job.errors.append(Issue(
                    code=ErrorCode.ANALYSIS_FAILED,
                    message=f"All {len(job.platforms)} platforms failed",
                ))
            job.completed_at = _utcnow()
            job.report = self.aggregator.aggregate(job)

            if succeeded:
                self._finish(job, JobStatus.COMPLETED, "completed")
            else:
                self._finish(job, JobStatus.FAILED, "failed")
            if not await self._persist(job):
                return job
            await self._notify(job)
            logger.info(
                "Job %s %s: %d/%d platforms succeeded",
                job.id, job.status.value, len(succeeded), len(job.platforms),
                extra={"job_id": job.id},
            )
            return job
        except asyncio.CancelledError:
            if not job.is_terminal:
                self._finish(job, JobStatus.CANCELLED, "cancelled")
                await asyncio.shield(self._persist(job))
            raise
        except JobSupersededError:
            logger.info(
                "Job %s was %s by another process; stopped", job.id, job.status.value,
                extra={"job_id": job.id},
            )
            return job
        except Exception as exc:
            logger.exception("Job %s crashed", job.id, extra={"job_id": job.id})
            if not job.is_terminal:
                job.errors.append(Issue(
                    code=ErrorCode.ANALYSIS_FAILED,
                    message=f"{type(exc).__name__}: {exc}",
                ))
                self._finish(job, JobStatus.FAILED, "failed")
                if await self._persist(job):
                    await self._notify(job)
            raise

    # ── Request resolution ───────────────────────────────────────────────

    def _build_job(self, request: AnalysisRequest) -> AnalysisJob:
        requested = list(dict.fromkeys(request.platforms or []))
        sole = requested[0] if len(requested) == 1 else None
        contracts: dict[str, list[ContractInput]] = {pid: [] for pid in requested}
        warnings: list[Issue] = []

        for contract in request.contracts:
            if contract.platform and requested and contract.platform not in requested:
                warnings.append(Issue(
                    code=ErrorCode.INVALID_REQUEST,
                    message=(
                        f"{contract.display_name} targets {contract.platform}, "
                        f"which was not requested; skipped"
                    ),
                    platform=contract.platform,
                ))
                continue
            platform_id = (
                contract.platform
                or self.detector.resolve_platform(contract, requested or None)
                or sole
            )
            if platform_id is None:
                scope = "any requested platform" if requested else "any platform"
                warnings.append(Issue(
                    code=ErrorCode.DETECTION_INCONCLUSIVE,
                    message=f"Could not match {contract.display_name} to {scope}; skipped",
                ))
                continue
            contracts.setdefault(platform_id, []).append(
                contract.model_copy(update={"platform": platform_id})
            )

        platforms = list(contracts)
        if not platforms:
            raise InvalidRequestError(
                "No contract could be assigned to a platform",
                details={"warnings": [str(w) for w in warnings]},
            )

        return AnalysisJob(
            owner_id=request.owner_id,
            platforms=platforms,
            contracts=contracts,
            options=request.options,
            cross_chain_analysis=request.cross_chain_analysis,
            priority=request.priority,
            platform_status={pid: PlatformStatus.PENDING for pid in platforms},
            platform_percent={pid: 0 for pid in platforms},
            warnings=warnings,
        )

    # ── Platform sub-tasks ───────────────────────────────────────────────

    async def _run_platforms(self, job: AnalysisJob) -> None:
        semaphore = asyncio.Semaphore(self.max_concurrent_platforms)
        tasks = [
            asyncio.create_task(self._run_platform(job, platform_id, semaphore), name=f"{job.id}:{platform_id}")
            for platform_id in job.platforms
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # One sub-task stopping the job stops its siblings
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_platform(self, job: AnalysisJob, platform_id: str, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            if job.is_terminal:
                return
            job.platform_status[platform_id] = PlatformStatus.RUNNING
            job.platform_percent[platform_id] = 10
            await self._advance(job, job.percent, f"analyzing {platform_id}")

            result = await self._analyze_platform(job, platform_id)
            if job.is_terminal:
                return
            result = self._record_platform(job, platform_id, result)
            await _retry_async(
                lambda: self.repository.append_result(job.id, platform_id, result),
                label=f"append result {job.id}/{platform_id}",
            )
            done = len(job.completed_platforms) + len(job.failed_platforms)
            span = _PLATFORM_PHASE_END - _PLATFORM_PHASE_START
            await self._advance(
                job,
                _PLATFORM_PHASE_START + span * done // len(job.platforms),
                f"analyzed {platform_id}",
            )

    async def _analyze_platform(self, job: AnalysisJob, platform_id: str) -> AnalysisResult:
        contracts = job.contracts.get(platform_id, [])
        if not contracts:
            return AnalysisResult.failure(
                ErrorCode.VALIDATION_FAILED,
                "No contracts were assigned to this platform",
                platform=platform_id,
            )
        analyzer = self.dispatch.get_analyzer(platform_id)
        if analyzer is None:
            return AnalysisResult.failure(
                ErrorCode.PLATFORM_ANALYZER_MISSING,
                f"No analyzer available for platform {platform_id}",
                platform=platform_id,
            )

        timeout_ms = job.options.timeout_ms
        timeout = timeout_ms / 1000 if timeout_ms else None
        try:
            return await asyncio.wait_for(analyzer.analyze(contracts, job.options), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Platform %s timed out after %d ms", platform_id, timeout_ms,
                extra={"job_id": job.id, "platform": platform_id},
            )
            return AnalysisResult.failure(
                ErrorCode.ANALYSIS_TIMEOUT,
                f"Platform analysis exceeded {timeout_ms} ms",
                platform=platform_id,
            )
        except Exception as exc:
            logger.exception(
                "Platform %s analysis crashed", platform_id,
                extra={"job_id": job.id, "platform": platform_id},
            )
            return AnalysisResult.failure(
                ErrorCode.ANALYSIS_FAILED, f"{type(exc).__name__}: {exc}", platform=platform_id,
            )

    def _record_platform(self, job: AnalysisJob, platform_id: str, result: AnalysisResult) -> AnalysisResult:
        """Fold a platform result into the job; returns the result as recorded."""
        job.platform_percent[platform_id] = 100
        job.warnings.extend(_tagged(result.warnings, platform_id))
        if result.success:
            job.results[platform_id] = result
            job.platform_status[platform_id] = PlatformStatus.COMPLETED
            return result

        errors = with_suggestions(_tagged(result.errors, platform_id), self.registry.get(platform_id))
        result = result.model_copy(update={"errors": errors})
        job.results[platform_id] = result
        job.platform_status[platform_id] = PlatformStatus.FAILED
        job.errors.extend(errors)
        job.warnings.append(Issue(
            code=ErrorCode.PARTIAL_PLATFORM_FAILURE,
            message=f"Platform {platform_id} failed: " + "; ".join(e.message for e in errors),
            platform=platform_id,
            suggestions=list(dict.fromkeys(s for e in errors for s in e.suggestions)),
        ))
        logger.warning(
            "Platform %s failed in job %s: %s",
            platform_id, job.id, ", ".join(sorted(c.value for c in result.error_codes())),
            extra={"job_id": job.id, "platform": platform_id},
        )
        return result

    def _run_crosschain(self, job: AnalysisJob) -> None:
        if not job.cross_chain_analysis or len(job.platforms) < 2:
            return
        succeeded = len(job.completed_platforms)
        if succeeded < 2:
            job.warnings.append(Issue(
                code=ErrorCode.CROSS_CHAIN_PRECONDITION_UNMET,
                message=f"Cross-chain analysis needs 2 successful platforms, {succeeded} succeeded",
            ))
            return
        try:
            job.cross_chain = self.crosschain.analyze(job.results)
        except Exception as exc:
            logger.exception("Cross-chain analysis crashed", extra={"job_id": job.id})
            job.warnings.append(Issue(
                code=ErrorCode.ANALYSIS_FAILED,
                message=f"Cross-chain analysis failed: {exc}",
            ))

    # ── State helpers ────────────────────────────────────────────────────

    async def _owned_job(self, job_id: str, requester_id: str) -> AnalysisJob:
        job = self._jobs.get(job_id) or await self.repository.load(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.owner_id != requester_id:
            raise AccessDeniedError(f"Job {job_id} belongs to another owner")
        return job

    async def _advance(self, job: AnalysisJob, percent: int, step: str) -> None:
        if job.is_terminal:
            return
        job.percent = max(job.percent, min(100, percent))
        job.current_step = step
        if not await self._persist(job):
            raise JobSupersededError(f"Job {job.id} is already {job.status.value}")
        await self._notify(job)

    def _finish(self, job: AnalysisJob, status: JobStatus, step: str) -> None:
        if job.is_terminal:
            return
        job.status = status
        job.current_step = step
        job.completed_at = job.completed_at or _utcnow()
        if status is JobStatus.CANCELLED:
            for platform_id, platform_status in job.platform_status.items():
                if platform_status in (PlatformStatus.PENDING, PlatformStatus.RUNNING):
                    job.platform_status[platform_id] = PlatformStatus.CANCELLED
        else:
            job.percent = 100
        self._jobs.pop(job.id, None)

    async def _persist(self, job: AnalysisJob) -> bool:
        """Save a snapshot of ``job`` unless the stored record already finished.

        A terminal stored record wins: ``job`` takes over its outcome and
        False is returned, so the caller stops working on the job.
        """
        stored = await _retry_async(lambda: self.repository.load(job.id), label=f"load job {job.id}")
        if stored is not None and stored.is_terminal:
            job.status = stored.status
            job.current_step = stored.current_step
            job.completed_at = stored.completed_at
            job.platform_status = dict(stored.platform_status)
            self._jobs.pop(job.id, None)
            return False
        snapshot = job.snapshot()
        await _retry_async(lambda: self.repository.save(snapshot), label=f"save job {job.id}")
        if job.is_terminal:
            self._outcomes[job.status] += 1
        return True

    async def _notify(self, job: AnalysisJob) -> None:
        event = ProgressEvent.from_job(job)
        self.scheduler.publish_progress(event)
        try:
            await asyncio.wait_for(self.notifier.push(job.owner_id, event), _NOTIFY_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.warning("Progress notification failed for job %s: %s", job.id, exc)


# ── Factory ──────────────────────────────────────────────────────────────────


def build_default_orchestrator(
    settings: Settings | None = None,
    *,
    registry: PlatformRegistry | None = None,
    scheduler: Scheduler | None = None,
    repository: Repository | None = None,
    notifier: Notifier | None = None,
    ensemble: AIEnsembleAnalyzer | None = None,
) -> JobOrchestrator:
    """Wire an orchestrator from settings.

    The ``local`` backend keeps jobs in memory; the ``celery`` backend shares
    them with workers through Redis.
    """
    settings = settings or get_settings()
    registry = registry or default_registry()
    distributed = settings.scheduler_backend == "celery"

    if scheduler is None:
        scheduler = CeleryScheduler() if distributed else LocalScheduler(settings.max_concurrent_jobs)
    if repository is None:
        repository = RedisRepository(settings.redis_url) if distributed else InMemoryRepository()
    if notifier is None:
        notifier = RedisNotifier(settings.redis_url) if distributed else InMemoryNotifier()

    return JobOrchestrator(
        registry=registry,
        dispatch=AnalyzerDispatch(registry, ensemble=ensemble or AIEnsembleAnalyzer()),
        scheduler=scheduler,
        repository=repository,
        notifier=notifier,
        max_concurrent_platforms=settings.max_concurrent_platforms,
    )
