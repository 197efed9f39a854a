"""Shared enums and types used across the engine."""

from __future__ import annotations

import enum
import hashlib
from typing import Any

from pydantic import BaseModel, Field, model_validator

from omniaudit.core.errors import ErrorCode


# ── Enums ────────────────────────────────────────────────────────────────────


class Severity(str, enum.Enum):
    """Canonical vulnerability severity."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"


class FindingSource(str, enum.Enum):
    """Which analysis layer produced a finding."""

    STATIC = "static"
    AI = "ai"
    COMBINED = "combined"


SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFORMATIONAL: 0,
}

# Vocabulary seen in tool output and model responses
_SEVERITY_ALIASES: dict[str, Severity] = {
    "critical": Severity.CRITICAL,
    "error": Severity.CRITICAL,
    "high": Severity.HIGH,
    "warning": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "moderate": Severity.MEDIUM,
    "low": Severity.LOW,
    "minor": Severity.LOW,
    "informational": Severity.INFORMATIONAL,
    "information": Severity.INFORMATIONAL,
    "info": Severity.INFORMATIONAL,
    "note": Severity.INFORMATIONAL,
    "optimization": Severity.INFORMATIONAL,
}


def normalize_severity(value: Any, default: Severity = Severity.MEDIUM) -> Severity:
    """Map any severity word onto the canonical five-level scale."""
    if isinstance(value, Severity):
        return value
    if not isinstance(value, str):
        return default
    return _SEVERITY_ALIASES.get(value.strip().lower(), default)


def severity_rank(severity: Severity) -> int:
    return SEVERITY_RANK[severity]


def meets_threshold(severity: Severity, threshold: Severity) -> bool:
    """True when ``severity`` is at least as severe as ``threshold``."""
    return SEVERITY_RANK[severity] >= SEVERITY_RANK[threshold]


# ── Core Models ──────────────────────────────────────────────────────────────


class CodeLocation(BaseModel):
    """Position of a finding inside a contract."""

    file: str
    line: int = Field(default=0, ge=0)
    column: int = Field(default=0, ge=0)
    length: int | None = None


class CanonicalVulnerability(BaseModel):
    """A single vulnerability in the engine-wide vocabulary."""

    id: str = ""
    type: str
    severity: Severity
    title: str
    description: str
    location: CodeLocation
    recommendation: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    source: FindingSource
    platform: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _assign_fingerprint(self) -> "CanonicalVulnerability":
        if not self.id:
            self.id = self.fingerprint()
        return self

    def fingerprint(self) -> str:
        """Stable id derived from what the finding is and where it is."""
        raw = (
            f"{self.platform}:{self.type}:{self.location.file}:"
            f"{self.location.line}:{self.location.column}:{self.source.value}"
        )
        return hashlib.sha256(raw.encode()).hexdigest()[:16]

    @property
    def dedup_key(self) -> tuple[str, str, int, int]:
        return (self.type, self.location.file, self.location.line, self.location.column)


class Issue(BaseModel):
    """A recorded error or warning."""

    code: ErrorCode
    message: str
    platform: str | None = None
    suggestions: list[str] = Field(default_factory=list)

    def __str__(self) -> str:
        where = f"[{self.platform}] " if self.platform else ""
        return f"{where}{self.code.value}: {self.message}"


class AnalysisResult(BaseModel):
    """Outcome of one analysis layer (tool, ensemble or platform analyzer)."""

    success: bool
    vulnerabilities: list[CanonicalVulnerability] = Field(default_factory=list)
    errors: list[Issue] = Field(default_factory=list)
    warnings: list[Issue] = Field(default_factory=list)
    execution_time: float = 0.0
    platform_specific: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        code: ErrorCode,
        message: str,
        platform: str | None = None,
        execution_time: float = 0.0,
    ) -> "AnalysisResult":
        return cls(
            success=False,
            errors=[Issue(code=code, message=message, platform=platform)],
            execution_time=execution_time,
        )

    def error_codes(self) -> set[ErrorCode]:
        return {issue.code for issue in self.errors}


class ValidationResult(BaseModel):
    """Result of a fast local sanity check on a contract."""

    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        return ValidationResult(
            is_valid=self.is_valid and other.is_valid,
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )


class HealthCheckResult(BaseModel):
    """Whether the external tooling behind an analyzer is usable."""

    installed: bool
    version: str | None = None
    error: str | None = None


class ContractInput(BaseModel):
    """A contract submitted for analysis."""

    code: str
    filename: str | None = None
    platform: str | None = None
    language: str | None = None

    @property
    def display_name(self) -> str:
        return self.filename or "contract"


class AnalysisOptions(BaseModel):
    """Per-request analysis switches."""

    include_static: bool = True
    include_ai: bool = True
    severity_threshold: Severity = Severity.INFORMATIONAL
    timeout_ms: int | None = Field(default=None, gt=0)
    enabled_detectors: list[str] = Field(default_factory=list)
    disabled_detectors: list[str] = Field(default_factory=list)

    def detector_allowed(self, vuln_type: str) -> bool:
        if self.enabled_detectors and vuln_type not in self.enabled_detectors:
            return False
        return vuln_type not in self.disabled_detectors


class SecurityScore(BaseModel):
    """Security score calculation."""

    score: float = 100.0
    threat_score: float = 0.0
    breakdown: dict[str, int] = Field(default_factory=dict)

    @staticmethod
    def calculate(findings: list[CanonicalVulnerability]) -> "SecurityScore":
        """Calculate security score from findings."""
        weights = {
            Severity.CRITICAL: 25,
            Severity.HIGH: 15,
            Severity.MEDIUM: 8,
            Severity.LOW: 3,
            Severity.INFORMATIONAL: 1,
        }

        breakdown: dict[str, int] = {}
        penalty = 0.0

        for finding in findings:
            sev_name = finding.severity.value
            breakdown[sev_name] = breakdown.get(sev_name, 0) + 1
            penalty += weights.get(finding.severity, 0)

        score = max(0.0, min(100.0, 100.0 - penalty))
        threat_score = 100.0 - score

        return SecurityScore(
            score=score,
            threat_score=threat_score,
            breakdown=breakdown,
        )
