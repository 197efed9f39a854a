"""AI ensemble analyzer: queries several models in parallel and merges their findings.

Every configured model receives the same platform-aware prompt. Each request
is bounded by its own timeout; a model that times out, errors or returns a
malformed document is reported as ``ModelUnavailable`` and the ensemble
carries on with the rest. Only when every model fails does the result turn
into ``AIAnalysisFailed``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from omniaudit.analyzer.merge import merge_contributions
from omniaudit.core.config import get_settings
from omniaudit.core.errors import ErrorCode
from omniaudit.core.llm_client import LLMClient
from omniaudit.core.types import (
    AnalysisOptions,
    AnalysisResult,
    CanonicalVulnerability,
    CodeLocation,
    FindingSource,
    Issue,
    Severity,
    normalize_severity,
)

logger = logging.getLogger(__name__)


# ── Response schema ──────────────────────────────────────────────────────────


class AILocation(BaseModel):
    file: str = ""
    line: int = 0
    column: int = 0
    length: int | None = None

    @field_validator("line", "column", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> int:
        return max(0, int(value or 0))


class AIVulnerability(BaseModel):
    type: str = Field(min_length=1)
    severity: Severity
    title: str | None = None
    description: str
    location: AILocation = Field(default_factory=AILocation)
    confidence: float = Field(ge=0.0, le=1.0)
    recommendation: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _canonical_severity(cls, value: Any) -> Severity:
        return normalize_severity(value)


class AIRecommendation(BaseModel):
    category: str
    priority: str = "medium"
    description: str
    implementation_guide: str = ""


class QualityMetrics(BaseModel):
    code_quality_score: float = 0.0
    maintainability_index: float = 0.0
    test_coverage_estimate: float = 0.0


class AIResponse(BaseModel):
    """Document every model must return."""

    model_config = ConfigDict(populate_by_name=True)

    vulnerabilities: list[AIVulnerability]
    recommendations: list[AIRecommendation] = Field(default_factory=list)
    quality_metrics: QualityMetrics = Field(default_factory=QualityMetrics, alias="qualityMetrics")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


# ── Prompts ──────────────────────────────────────────────────────────────────


_EVM_CONTEXT = (
    "Solidity",
    [
        "Reentrancy and checks-effects-interactions ordering",
        "Integer overflow/underflow and unchecked blocks",
        "Access control on privileged functions",
        "Unchecked low-level calls and delegatecall targets",
        "Oracle / price manipulation and flash-loan exposure",
    ],
)

_PLATFORM_CONTEXT: dict[str, tuple[str, list[str]]] = {
    "ethereum": _EVM_CONTEXT,
    "bsc": _EVM_CONTEXT,
    "polygon": _EVM_CONTEXT,
    "solana": (
        "Rust (Anchor)",
        [
            "Missing signer and owner checks on accounts",
            "PDA derivation and bump seed validation",
            "Arbitrary CPI targets",
            "Account reinitialization and close handling",
            "Checked arithmetic on token amounts",
        ],
    ),
    "cardano": (
        "Haskell (Plutus)",
        [
            "Validator use of ScriptContext / TxInfo",
            "Datum and redeemer decoding from BuiltinData",
            "Value and amount validation across inputs and outputs",
            "Double satisfaction and UTXO contention",
            "Script size and execution budget",
        ],
    ),
    "aptos": (
        "Move (Aptos)",
        [
            "Signer checks on entry functions",
            "acquires annotations and global storage access",
            "Resource creation, storage and destruction",
            "Module initialisation visibility",
        ],
    ),
    "sui": (
        "Move (Sui)",
        [
            "Object ownership and transfer rules",
            "Shared object access control",
            "One-time witness and init visibility",
            "Capability pattern misuse",
        ],
    ),
}

SYSTEM_PROMPT = """You are an expert smart contract security auditor. You analyze contracts for
security vulnerabilities and code quality issues on a specific blockchain platform.
You MUST respond with a single valid JSON object and nothing else."""

_RESPONSE_SHAPE = """{
  "vulnerabilities": [
    {
      "type": "short-kebab-case-tag",
      "severity": "critical|high|medium|low|informational",
      "title": "Short title",
      "description": "Detailed description of the vulnerability",
      "location": {"file": "<filename>", "line": 1, "column": 1, "length": 10},
      "confidence": 0.9,
      "recommendation": "How to fix it"
    }
  ],
  "recommendations": [
    {"category": "Security", "priority": "high|medium|low",
     "description": "Recommendation", "implementation_guide": "Steps"}
  ],
  "qualityMetrics": {"code_quality_score": 85, "maintainability_index": 75, "test_coverage_estimate": 60},
  "confidence": 0.85
}"""


def build_prompt(source_code: str, filename: str, platform: str, options: AnalysisOptions) -> str:
    language, focus = _PLATFORM_CONTEXT.get(platform, ("smart contract", ["General security review"]))
    focus_lines = "\n".join(f"{i}. {area}" for i, area in enumerate(focus, start=1))
    threshold = ""
    if options.severity_threshold is not Severity.INFORMATIONAL:
        threshold = f"\nOnly report issues of severity {options.severity_threshold.value} or above.\n"
    return f"""Analyze the following {language} contract deployed on {platform}.

Contract file: {filename}

Focus on:
{focus_lines}
{threshold}
Contract source:
```
{source_code}
```

Provide specific line numbers for each finding. Use "{filename}" as the location file.
Respond with JSON in exactly this shape:
{_RESPONSE_SHAPE}"""


# ── Ensemble ─────────────────────────────────────────────────────────────────


@dataclass
class ModelOutcome:
    """Validated answer of one model."""

    model: str
    vulnerabilities: list[CanonicalVulnerability] = field(default_factory=list)
    recommendations: list[AIRecommendation] = field(default_factory=list)
    quality_metrics: QualityMetrics = field(default_factory=QualityMetrics)
    confidence: float = 0.0
    duration: float = 0.0


class AIEnsembleAnalyzer:
    """Runs every configured model concurrently and merges what they agree on."""

    def __init__(
        self,
        client: LLMClient | None = None,
        models: list[str] | None = None,
        timeout: float | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        line_tolerance: int | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client or LLMClient(settings)
        self.models = list(models if models is not None else settings.ai_models)
        self.timeout = timeout if timeout is not None else settings.ai_timeout_seconds
        self.max_tokens = max_tokens if max_tokens is not None else settings.ai_max_tokens
        self.temperature = temperature if temperature is not None else settings.ai_temperature
        self.line_tolerance = (
            line_tolerance if line_tolerance is not None else settings.ensemble_line_tolerance
        )

    # ── Public API ───────────────────────────────────────────────────

    async def analyze(
        self,
        source_code: str,
        filename: str,
        options: AnalysisOptions | None = None,
        platform: str = "ethereum",
    ) -> AnalysisResult:
        options = options or AnalysisOptions()
        started = time.monotonic()
        if not self.models:
            return AnalysisResult.failure(
                ErrorCode.AI_ANALYSIS_FAILED, "No AI models configured", platform=platform,
            )

        prompt = build_prompt(source_code, filename, platform, options)
        outcomes = await asyncio.gather(
            *(self._query_model(model, prompt, platform, filename) for model in self.models),
            return_exceptions=True,
        )

        successes: list[ModelOutcome] = []
        warnings: list[Issue] = []
        for model, outcome in zip(self.models, outcomes):
            if isinstance(outcome, BaseException):
                reason = _describe_failure(outcome, self.timeout)
                logger.warning("Model %s unavailable: %s", model, reason, extra={"model": model})
                warnings.append(Issue(
                    code=ErrorCode.MODEL_UNAVAILABLE,
                    message=f"{model}: {reason}",
                    platform=platform,
                ))
                continue
            successes.append(outcome)

        elapsed = time.monotonic() - started
        if not successes:
            return AnalysisResult(
                success=False,
                errors=[Issue(
                    code=ErrorCode.AI_ANALYSIS_FAILED,
                    message=f"All {len(self.models)} AI models failed",
                    platform=platform,
                )],
                warnings=warnings,
                execution_time=elapsed,
            )

        merged = merge_contributions(
            [(o.model, o.vulnerabilities) for o in successes], self.line_tolerance,
        )
        logger.info(
            "Ensemble merged %d findings from %d/%d models",
            len(merged), len(successes), len(self.models),
            extra={"platform": platform},
        )
        return AnalysisResult(
            success=True,
            vulnerabilities=merged,
            warnings=warnings,
            execution_time=elapsed,
            platform_specific={
                "models": list(self.models),
                "successful_models": [o.model for o in successes],
                "failed_models": [m for m, o in zip(self.models, outcomes) if isinstance(o, BaseException)],
                "recommendations": [r.model_dump() for r in _dedupe_recommendations(successes)],
                "quality_metrics": _average_quality(successes),
                "ensemble_confidence": sum(o.confidence for o in successes) / len(successes),
            },
        )

    # ── Private ──────────────────────────────────────────────────────

    async def _query_model(self, model: str, prompt: str, platform: str, filename: str) -> ModelOutcome:
        started = time.monotonic()
        raw = await asyncio.wait_for(
            self._client.complete(
                model,
                SYSTEM_PROMPT,
                prompt,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                timeout=self.timeout,
            ),
            timeout=self.timeout,
        )
        response = AIResponse.model_validate(raw)
        return ModelOutcome(
            model=model,
            vulnerabilities=[
                self._to_vulnerability(v, model, platform, filename) for v in response.vulnerabilities
            ],
            recommendations=response.recommendations,
            quality_metrics=response.quality_metrics,
            confidence=response.confidence,
            duration=time.monotonic() - started,
        )

    def _to_vulnerability(
        self, vuln: AIVulnerability, model: str, platform: str, filename: str,
    ) -> CanonicalVulnerability:
        return CanonicalVulnerability(
            type=vuln.type.strip().lower().replace(" ", "-").replace("_", "-"),
            severity=vuln.severity,
            title=vuln.title or vuln.type.replace("_", " ").replace("-", " ").title(),
            description=vuln.description,
            location=CodeLocation(
                file=vuln.location.file or filename,
                line=vuln.location.line,
                column=vuln.location.column,
                length=vuln.location.length,
            ),
            recommendation=vuln.recommendation or "",
            confidence=vuln.confidence,
            source=FindingSource.AI,
            platform=platform,
            metadata={"model": model},
        )


def _describe_failure(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"timed out after {timeout}s"
    if isinstance(exc, ValidationError):
        return f"malformed response ({exc.error_count()} validation errors)"
    return f"{type(exc).__name__}: {exc}"


def _dedupe_recommendations(outcomes: list[ModelOutcome]) -> list[AIRecommendation]:
    seen: set[tuple[str, str]] = set()
    unique: list[AIRecommendation] = []
    for outcome in outcomes:
        for rec in outcome.recommendations:
            key = (rec.category.strip().lower(), rec.description.strip().lower())
            if key in seen:
                continue
            seen.add(key)
            unique.append(rec)
    return unique


def _average_quality(outcomes: list[ModelOutcome]) -> dict[str, float]:
    count = len(outcomes)
    return {
        "code_quality_score": sum(o.quality_metrics.code_quality_score for o in outcomes) / count,
        "maintainability_index": sum(o.quality_metrics.maintainability_index for o in outcomes) / count,
        "test_coverage_estimate": sum(o.quality_metrics.test_coverage_estimate for o in outcomes) / count,
    }
