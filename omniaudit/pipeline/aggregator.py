"""Result aggregation: folds per-platform results and the cross-chain
assessment of a job into one report-ready structure."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from omniaudit.analyzer.crosschain import CrossChainAnalysisResult
from omniaudit.core.types import (
    SEVERITY_RANK,
    AnalysisResult,
    CanonicalVulnerability,
    FindingSource,
    Issue,
    SecurityScore,
    Severity,
)

if TYPE_CHECKING:
    from omniaudit.pipeline.jobs import AnalysisJob

logger = logging.getLogger(__name__)


class PlatformReport(BaseModel):
    platform: str
    success: bool
    vulnerabilities: list[CanonicalVulnerability] = Field(default_factory=list)
    errors: list[Issue] = Field(default_factory=list)
    warnings: list[Issue] = Field(default_factory=list)
    execution_time: float = 0.0
    security_score: SecurityScore = Field(default_factory=SecurityScore)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReportSummary(BaseModel):
    total_vulnerabilities: int = 0
    severity_breakdown: dict[str, int] = Field(default_factory=dict)
    platform_breakdown: dict[str, int] = Field(default_factory=dict)
    source_breakdown: dict[str, int] = Field(default_factory=dict)
    platforms_analyzed: int = 0
    platforms_succeeded: int = 0
    execution_time: float = 0.0


class AggregatedReport(BaseModel):
    job_id: str
    owner_id: str
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    platform_reports: dict[str, PlatformReport] = Field(default_factory=dict)
    vulnerabilities: list[CanonicalVulnerability] = Field(default_factory=list)
    summary: ReportSummary = Field(default_factory=ReportSummary)
    security_score: SecurityScore = Field(default_factory=SecurityScore)
    cross_chain: CrossChainAnalysisResult | None = None
    failed_platforms: list[str] = Field(default_factory=list)
    errors: list[Issue] = Field(default_factory=list)
    warnings: list[Issue] = Field(default_factory=list)

    @property
    def has_cross_chain(self) -> bool:
        return self.cross_chain is not None


def sort_vulnerabilities(vulns: list[CanonicalVulnerability]) -> list[CanonicalVulnerability]:
    """Most severe first, then most confident."""
    return sorted(vulns, key=lambda v: (SEVERITY_RANK[v.severity], v.confidence), reverse=True)


class ResultAggregator:
    """Builds an :class:`AggregatedReport` from a finished job."""

    def aggregate(self, job: AnalysisJob) -> AggregatedReport:
        platform_reports = {
            platform_id: self._platform_report(platform_id, result)
            for platform_id, result in job.results.items()
        }
        succeeded = [pid for pid, report in platform_reports.items() if report.success]
        failed = [pid for pid in job.platforms if pid not in succeeded]

        vulnerabilities = sort_vulnerabilities([
            vuln for pid in succeeded for vuln in platform_reports[pid].vulnerabilities
        ])

        report = AggregatedReport(
            job_id=job.id,
            owner_id=job.owner_id,
            platform_reports=platform_reports,
            vulnerabilities=vulnerabilities,
            summary=self._summary(job, vulnerabilities, succeeded),
            security_score=SecurityScore.calculate(vulnerabilities),
            cross_chain=job.cross_chain if len(succeeded) >= 2 else None,
            failed_platforms=failed,
            errors=list(job.errors),
            warnings=list(job.warnings),
        )
        logger.info(
            "Aggregated job %s: %d findings over %d/%d platforms, score %.1f",
            job.id, len(vulnerabilities), len(succeeded), len(job.platforms),
            report.security_score.score,
        )
        return report

    def _platform_report(self, platform_id: str, result: AnalysisResult) -> PlatformReport:
        vulns = sort_vulnerabilities(result.vulnerabilities)
        return PlatformReport(
            platform=platform_id,
            success=result.success,
            vulnerabilities=vulns,
            errors=list(result.errors),
            warnings=list(result.warnings),
            execution_time=result.execution_time,
            security_score=SecurityScore.calculate(vulns),
            metadata=dict(result.platform_specific),
        )

    def _summary(
        self,
        job: AnalysisJob,
        vulnerabilities: list[CanonicalVulnerability],
        succeeded: list[str],
    ) -> ReportSummary:
        severities = Counter(v.severity.value for v in vulnerabilities)
        sources = Counter(v.source.value for v in vulnerabilities)
        platforms = Counter(v.platform for v in vulnerabilities)

        if job.started_at and job.completed_at:
            elapsed = (job.completed_at - job.started_at).total_seconds()
        else:
            elapsed = max((r.execution_time for r in job.results.values()), default=0.0)

        return ReportSummary(
            total_vulnerabilities=len(vulnerabilities),
            severity_breakdown={s.value: severities.get(s.value, 0) for s in Severity},
            platform_breakdown={pid: platforms.get(pid, 0) for pid in job.platforms},
            source_breakdown={s.value: sources.get(s.value, 0) for s in FindingSource},
            platforms_analyzed=len(job.platforms),
            platforms_succeeded=len(succeeded),
            execution_time=round(elapsed, 3),
        )
