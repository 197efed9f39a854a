"""Base class for external static-analysis CLI adapters.

Each adapter wraps one tool. A run goes through these steps:

    1. copy the source into a private temporary workspace
    2. spawn the tool with platform-specific flags, bounded by a timeout
    3. parse structured (JSON) stdout through the adapter's lookup tables
    4. fall back to a line-oriented marker scan when stdout is not JSON

Missing binaries, timeouts and unparseable output are reported inside the
returned :class:`AnalysisResult`; ``analyze`` never raises for them.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from omniaudit.core.config import get_settings
from omniaudit.core.errors import ErrorCode
from omniaudit.core.types import (
    AnalysisOptions,
    AnalysisResult,
    CanonicalVulnerability,
    CodeLocation,
    FindingSource,
    HealthCheckResult,
    Issue,
    Severity,
)

logger = logging.getLogger(__name__)

# Marker scan used when the tool did not emit JSON
_TEXT_MARKER_RE = re.compile(r"\b(ERROR|WARNING|INFO)\b(?:\[[^\]]*\])?\s*:\s*(.+)", re.IGNORECASE)
_TEXT_SEVERITY: dict[str, Severity] = {
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "info": Severity.LOW,
}
_LINE_COL_RE = re.compile(r":(\d+):(\d+)")
_LINE_WORD_RE = re.compile(r"\bline\s+(\d+)", re.IGNORECASE)


@dataclass
class ToolRun:
    """Raw outcome of one tool process."""

    exit_code: int | None
    stdout: str
    stderr: str
    duration: float


class ToolTimeoutError(Exception):
    """The tool process exceeded its time budget and was killed."""


class StaticToolAdapter(abc.ABC):
    """Runs one external analyzer and maps its output to canonical findings."""

    #: Tool id used in logs, metadata and workspace names.
    name: str = ""
    #: Executable looked up on ``PATH`` when no explicit binary is given.
    default_binary: str = ""
    #: Settings field naming a configured binary; overrides ``default_binary``.
    binary_setting: str = ""
    #: File name used when the caller does not provide one.
    default_filename: str = "contract.txt"
    #: Confidence assigned to findings recovered by the text fallback.
    text_confidence: float = 0.4

    def __init__(
        self,
        platform: str,
        binary: str | None = None,
        timeout: float | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        settings = get_settings()
        self.platform = platform
        self.binary = binary or getattr(settings, self.binary_setting, "") or self.default_binary
        self.timeout = timeout if timeout is not None else settings.static_tool_timeout_seconds
        self.health_timeout = settings.health_check_timeout_seconds
        self.extra_args = extra_args or []

    # ── Public API ───────────────────────────────────────────────────

    def is_available(self) -> bool:
        """Check whether the tool binary is reachable."""
        return shutil.which(self.binary) is not None

    async def analyze(
        self,
        source_code: str,
        filename: str | None = None,
        options: AnalysisOptions | None = None,
    ) -> AnalysisResult:
        """Run the tool over ``source_code`` and return canonical findings."""
        filename = filename or self.default_filename
        started = time.monotonic()

        if not self.is_available():
            logger.warning("%s not installed, skipping static analysis", self.name, extra={"tool": self.name})
            return AnalysisResult.failure(
                ErrorCode.TOOL_NOT_INSTALLED,
                f"{self.name} executable '{self.binary}' was not found on PATH",
                platform=self.platform,
            )

        workspace = tempfile.mkdtemp(prefix=f"omniaudit_{self.name}_")
        try:
            target = self.prepare_workspace(Path(workspace), source_code, filename)
            cmd = self.build_command(target, Path(workspace), options or AnalysisOptions())
            try:
                run = await self._execute(cmd, workspace, self.timeout)
            except ToolTimeoutError:
                logger.warning("%s timed out after %ss", self.name, self.timeout, extra={"tool": self.name})
                return AnalysisResult.failure(
                    ErrorCode.TOOL_TIMEOUT,
                    f"{self.name} did not finish within {self.timeout}s",
                    platform=self.platform,
                    execution_time=time.monotonic() - started,
                )
            except FileNotFoundError:
                return AnalysisResult.failure(
                    ErrorCode.TOOL_NOT_INSTALLED,
                    f"{self.name} executable '{self.binary}' could not be started",
                    platform=self.platform,
                )
            except OSError as exc:
                logger.error("%s failed to start: %s", self.name, exc)
                return AnalysisResult.failure(
                    ErrorCode.TOOL_EXECUTION_FAILED,
                    f"{self.name} could not be started: {exc}",
                    platform=self.platform,
                )

            result = self._build_result(run, filename)
            result.execution_time = time.monotonic() - started
            return result
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

    async def check_installation(self) -> HealthCheckResult:
        """Run ``<tool> --version`` and report what was found."""
        if not self.is_available():
            return HealthCheckResult(installed=False, error=f"{self.binary} not found on PATH")
        try:
            run = await self._execute(self.version_command(), None, self.health_timeout)
        except ToolTimeoutError:
            return HealthCheckResult(installed=False, error=f"{self.binary} --version timed out")
        except OSError as exc:
            return HealthCheckResult(installed=False, error=str(exc))
        if run.exit_code != 0:
            return HealthCheckResult(
                installed=False,
                error=(run.stderr or run.stdout).strip()[:200] or f"exit code {run.exit_code}",
            )
        version = (run.stdout or run.stderr).strip().splitlines()
        return HealthCheckResult(installed=True, version=version[0] if version else None)

    # ── Hooks ────────────────────────────────────────────────────────

    def prepare_workspace(self, workspace: Path, source_code: str, filename: str) -> Path:
        """Lay out the workspace and return the path handed to the tool."""
        target = workspace / Path(filename).name
        target.write_text(source_code, encoding="utf-8")
        return target

    @abc.abstractmethod
    def build_command(self, target: Path, workspace: Path, options: AnalysisOptions) -> list[str]:
        """Full argv for one analysis run."""

    def version_command(self) -> list[str]:
        return [self.binary, "--version"]

    def structured_output(self, run: ToolRun) -> str:
        """Text handed to :meth:`parse_structured`."""
        return run.stdout

    @abc.abstractmethod
    def parse_structured(self, stdout: str) -> list[dict[str, Any]]:
        """Decode the tool's JSON output; raise ``ValueError`` when it is not JSON."""

    @abc.abstractmethod
    def to_vulnerability(self, raw: dict[str, Any], filename: str) -> CanonicalVulnerability | None:
        """Map one raw tool finding, or ``None`` to drop it."""

    def parse_text(self, text: str, filename: str) -> list[CanonicalVulnerability]:
        """Marker-based fallback over plain tool output."""
        findings: list[CanonicalVulnerability] = []
        for raw_line in text.splitlines():
            match = _TEXT_MARKER_RE.search(raw_line)
            if not match:
                continue
            level, message = match.group(1).lower(), match.group(2).strip()
            if not message:
                continue
            line, column = _extract_line(raw_line)
            findings.append(CanonicalVulnerability(
                type="text-parsed",
                severity=_TEXT_SEVERITY[level],
                title=f"{self.name} {level}",
                description=message,
                location=CodeLocation(file=filename, line=line, column=column),
                recommendation="Review the tool output for this location.",
                confidence=self.text_confidence,
                source=FindingSource.STATIC,
                platform=self.platform,
                metadata={"tool": self.name, "raw": raw_line.strip()[:500]},
            ))
        return findings

    # ── Private ──────────────────────────────────────────────────────

    async def _execute(self, cmd: list[str], cwd: str | None, timeout: float) -> ToolRun:
        """Spawn ``cmd`` and wait for it, killing the process on timeout or cancellation."""
        started = time.monotonic()
        logger.debug("Running %s", " ".join(cmd), extra={"tool": self.name})
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _kill(process)
            raise ToolTimeoutError(self.name)
        except asyncio.CancelledError:
            await _kill(process)
            raise
        return ToolRun(
            exit_code=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration=time.monotonic() - started,
        )

    def _build_result(self, run: ToolRun, filename: str) -> AnalysisResult:
        warnings: list[Issue] = []
        try:
            raw_findings = self.parse_structured(self.structured_output(run))
        except ValueError as exc:
            logger.info("%s output is not structured (%s), using text fallback", self.name, exc)
            findings = self.parse_text(f"{run.stdout}\n{run.stderr}", filename)
            if not findings and run.exit_code not in (0, None):
                return AnalysisResult(
                    success=False,
                    errors=[Issue(
                        code=ErrorCode.TOOL_EXECUTION_FAILED,
                        message=(
                            f"{self.name} exited with code {run.exit_code}: "
                            f"{run.stderr.strip()[:500]}"
                        ),
                        platform=self.platform,
                    )],
                )
            warnings.append(Issue(
                code=ErrorCode.TOOL_OUTPUT_UNPARSEABLE,
                message=f"{self.name} output could not be parsed as JSON; used text heuristics",
                platform=self.platform,
            ))
        else:
            findings = []
            for raw in raw_findings:
                try:
                    vuln = self.to_vulnerability(raw, filename)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.debug("Skipping malformed %s finding: %s", self.name, exc)
                    continue
                if vuln is not None:
                    findings.append(vuln)

        logger.info(
            "%s produced %d findings",
            self.name,
            len(findings),
            extra={"tool": self.name, "duration_ms": int(run.duration * 1000)},
        )
        return AnalysisResult(
            success=True,
            vulnerabilities=findings,
            warnings=warnings,
            platform_specific={"tool": self.name, "exit_code": run.exit_code},
        )


async def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


def _extract_line(text: str) -> tuple[int, int]:
    match = _LINE_COL_RE.search(text)
    if match:
        return int(match.group(1)), int(match.group(2))
    match = _LINE_WORD_RE.search(text)
    if match:
        return int(match.group(1)), 0
    return 0, 0
