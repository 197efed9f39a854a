"""Per-platform analyzer facade.

A :class:`ChainAnalyzer` owns one static tool adapter and (optionally) the
shared AI ensemble. For every contract it runs both concurrently, adds its
own regex heuristics, merges what the layers agree on and filters the result
by the request options.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field

from omniaudit.analyzer.ensemble import AIEnsembleAnalyzer
from omniaudit.analyzer.merge import deduplicate, merge_contributions
from omniaudit.analyzer.tools.base import StaticToolAdapter
from omniaudit.core.config import get_settings
from omniaudit.core.errors import ErrorCode
from omniaudit.core.types import (
    AnalysisOptions,
    AnalysisResult,
    CanonicalVulnerability,
    CodeLocation,
    ContractInput,
    FindingSource,
    HealthCheckResult,
    Issue,
    Severity,
    ValidationResult,
    meets_threshold,
)
from omniaudit.platforms.registry import BlockchainPlatform, apply_platform_rules

logger = logging.getLogger(__name__)

_OPENERS = {"(": ")", "{": "}", "[": "]"}
_CLOSERS = {v: k for k, v in _OPENERS.items()}
_DOUBLE_QUOTED_RE = re.compile(r'"(?:\\.|[^"\\\n])*"')


@dataclass
class LayerOutcome:
    """Whether a layer ran for at least one contract and whether all runs succeeded."""

    ran: bool = False
    ok: bool = True
    errors: list[Issue] = field(default_factory=list)

    def record(self, result: AnalysisResult) -> None:
        self.ran = True
        self.ok = self.ok and result.success
        self.errors.extend(result.errors)

    @property
    def status(self) -> str:
        if not self.ran:
            return "skipped"
        return "ok" if self.ok else "failed"


class ChainAnalyzer(abc.ABC):
    """Base class for the platform analyzers selected by the dispatch."""

    #: Declarations a contract must contain, as ``(pattern, error message)`` pairs.
    required_declarations: tuple[tuple[re.Pattern[str], str], ...] = ()
    #: Single-line comment regex used before delimiter balancing.
    line_comment_re: re.Pattern[str] = re.compile(r"//[^\n]*")
    #: Block comment regex used before delimiter balancing.
    block_comment_re: re.Pattern[str] = re.compile(r"/\*.*?\*/", re.DOTALL)

    def __init__(
        self,
        platform: BlockchainPlatform,
        static_tool: StaticToolAdapter | None = None,
        ensemble: AIEnsembleAnalyzer | None = None,
        max_file_size: int | None = None,
        line_tolerance: int | None = None,
    ) -> None:
        settings = get_settings()
        self.platform = platform
        self.static_tool = static_tool if static_tool is not None else self.build_static_tool()
        self.ensemble = ensemble
        self.max_file_size = max_file_size or settings.max_file_size_bytes
        self.line_tolerance = (
            line_tolerance if line_tolerance is not None else settings.ensemble_line_tolerance
        )

    @property
    def platform_id(self) -> str:
        return self.platform.id

    # ── Subclass hooks ───────────────────────────────────────────────

    @abc.abstractmethod
    def build_static_tool(self) -> StaticToolAdapter:
        """Default adapter for this platform."""

    @abc.abstractmethod
    def heuristic_checks(self, contract: ContractInput, filename: str) -> list[CanonicalVulnerability]:
        """Fast regex checks run alongside the static tool."""

    # ── Public API ───────────────────────────────────────────────────

    async def analyze(
        self,
        contracts: list[ContractInput],
        options: AnalysisOptions | None = None,
    ) -> AnalysisResult:
        options = options or AnalysisOptions()
        started = time.monotonic()
        static = LayerOutcome()
        ai = LayerOutcome()
        warnings: list[Issue] = []
        validation_errors: list[Issue] = []
        findings: list[CanonicalVulnerability] = []
        analyzed = 0

        for contract in contracts:
            check = self.validate_input(contract)
            warnings.extend(self._issues(ErrorCode.NOTICE, check.warnings))
            if not check.is_valid:
                validation_errors.extend(self._issues(ErrorCode.VALIDATION_FAILED, check.errors))
                continue
            analyzed += 1
            findings.extend(await self._analyze_contract(contract, options, static, ai, warnings))

        elapsed = time.monotonic() - started
        if not analyzed:
            return AnalysisResult(
                success=False,
                errors=validation_errors or self._issues(ErrorCode.VALIDATION_FAILED, ["No contracts to analyze"]),
                warnings=warnings,
                execution_time=elapsed,
            )

        errors = validation_errors + static.errors
        if static.ran:
            success = static.ok
            if static.ok:
                # AI failures are only warnings once static analysis succeeded
                warnings.extend(ai.errors)
            else:
                errors.extend(ai.errors)
        elif ai.ran:
            success = ai.ok
            errors.extend(ai.errors)
        else:
            success = True

        filtered = self.filter_findings(deduplicate(findings), options)
        logger.info(
            "%s analysis finished: %d findings (static=%s, ai=%s)",
            self.platform_id, len(filtered),
            static.status, ai.status,
            extra={"platform": self.platform_id, "duration_ms": int(elapsed * 1000)},
        )
        return AnalysisResult(
            success=success,
            vulnerabilities=filtered,
            errors=errors,
            warnings=warnings,
            execution_time=elapsed,
            platform_specific={
                "platform": self.platform_id,
                "contracts_analyzed": analyzed,
                "static_tool": self.static_tool.name,
                "static_analysis": static.ran,
                "ai_analysis": ai.ran,
            },
        )

    def validate_contract(self, contract: ContractInput) -> ValidationResult:
        """Local syntax sanity check; no tools or models are involved."""
        result = self.validate_input(contract)
        if not result.is_valid:
            return result

        errors: list[str] = []
        warnings: list[str] = []
        errors.extend(self.check_delimiters(contract.code))
        for pattern, message in self.required_declarations:
            if not pattern.search(contract.code):
                errors.append(message)

        checked = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
        return result.merge(checked).merge(apply_platform_rules(self.platform, contract))

    async def check_health(self) -> HealthCheckResult:
        return await self.static_tool.check_installation()

    # ── Helpers ──────────────────────────────────────────────────────

    def validate_input(self, contract: ContractInput) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        if not contract.code or not contract.code.strip():
            errors.append(f"{contract.display_name}: contract code cannot be empty")
        elif len(contract.code.encode("utf-8")) > self.max_file_size:
            errors.append(
                f"{contract.display_name}: contract size exceeds maximum limit of "
                f"{self.max_file_size} bytes"
            )
        if contract.platform and contract.platform != self.platform_id:
            warnings.append(
                f"Contract platform '{contract.platform}' does not match analyzer "
                f"platform '{self.platform_id}'"
            )
        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def check_delimiters(self, code: str) -> list[str]:
        """Report unbalanced ``()``, ``{}`` and ``[]`` outside comments and strings."""
        stripped = self.block_comment_re.sub(lambda m: "\n" * m.group(0).count("\n"), code)
        stripped = _DOUBLE_QUOTED_RE.sub('""', stripped)
        stripped = self.line_comment_re.sub("", stripped)

        stack: list[tuple[str, int]] = []
        for lineno, line in enumerate(stripped.splitlines(), start=1):
            for char in line:
                if char in _OPENERS:
                    stack.append((char, lineno))
                elif char in _CLOSERS:
                    if not stack or stack[-1][0] != _CLOSERS[char]:
                        return [f"Unexpected '{char}' at line {lineno}"]
                    stack.pop()
        if stack:
            char, lineno = stack[-1]
            return [f"Unclosed '{char}' opened at line {lineno}"]
        return []

    def filter_findings(
        self, findings: list[CanonicalVulnerability], options: AnalysisOptions,
    ) -> list[CanonicalVulnerability]:
        return [
            v for v in findings
            if meets_threshold(v.severity, options.severity_threshold) and options.detector_allowed(v.type)
        ]

    def finding(
        self,
        type: str,
        severity: Severity,
        title: str,
        description: str,
        filename: str,
        line: int,
        confidence: float,
        recommendation: str = "",
        column: int = 0,
        **metadata: object,
    ) -> CanonicalVulnerability:
        """Build a heuristic finding for this platform."""
        return CanonicalVulnerability(
            type=type,
            severity=severity,
            title=title,
            description=description,
            location=CodeLocation(file=filename, line=line, column=column),
            recommendation=recommendation,
            confidence=confidence,
            source=FindingSource.STATIC,
            platform=self.platform_id,
            metadata={"detector": "heuristic", **metadata},
        )

    # ── Private ──────────────────────────────────────────────────────

    async def _analyze_contract(
        self,
        contract: ContractInput,
        options: AnalysisOptions,
        static: LayerOutcome,
        ai: LayerOutcome,
        warnings: list[Issue],
    ) -> list[CanonicalVulnerability]:
        filename = contract.filename or self.static_tool.default_filename
        static_result, ai_result = await asyncio.gather(
            self._run_static(contract, filename, options),
            self._run_ai(contract, filename, options),
        )

        static_findings: list[CanonicalVulnerability] = []
        if static_result is not None:
            static.record(static_result)
            warnings.extend(static_result.warnings)
            static_findings.extend(static_result.vulnerabilities)
            static_findings.extend(self.heuristic_checks(contract, filename))

        ai_findings: list[CanonicalVulnerability] = []
        if ai_result is not None:
            ai.record(ai_result)
            warnings.extend(ai_result.warnings)
            ai_findings = ai_result.vulnerabilities

        return merge_contributions(
            [("static", deduplicate(static_findings)), ("ai", ai_findings)],
            self.line_tolerance,
        )

    async def _run_static(
        self, contract: ContractInput, filename: str, options: AnalysisOptions,
    ) -> AnalysisResult | None:
        if not options.include_static:
            return None
        return await self.static_tool.analyze(contract.code, filename, options)

    async def _run_ai(
        self, contract: ContractInput, filename: str, options: AnalysisOptions,
    ) -> AnalysisResult | None:
        if not options.include_ai or self.ensemble is None:
            return None
        return await self.ensemble.analyze(contract.code, filename, options, platform=self.platform_id)

    def _issues(self, code: ErrorCode, messages: list[str]) -> list[Issue]:
        return [Issue(code=code, message=m, platform=self.platform_id) for m in messages]


def line_of(source: str, offset: int) -> int:
    """1-based line number of a character offset."""
    return source.count("\n", 0, offset) + 1


def find_block_end(source: str, open_brace: int) -> int:
    """Offset just past the brace that closes the one at ``open_brace``."""
    depth = 1
    pos = open_brace + 1
    while pos < len(source) and depth > 0:
        if source[pos] == "{":
            depth += 1
        elif source[pos] == "}":
            depth -= 1
        pos += 1
    return pos
