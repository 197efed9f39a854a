"""Move CLI adapters for Aptos and Sui.

Neither CLI emits findings as JSON; both print codespan-style diagnostics::

    warning[W09002]: unused variable
       ┌─ ./sources/vault.move:10:13

Those diagnostics are the structured format parsed here. Output without any
recognisable diagnostic or build marker goes through the generic text
fallback.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from omniaudit.analyzer.tools.base import StaticToolAdapter, ToolRun
from omniaudit.core.types import (
    AnalysisOptions,
    CanonicalVulnerability,
    CodeLocation,
    FindingSource,
    Severity,
)

_DIAGNOSTIC_RE = re.compile(r"^\s*(error|warning|note)(?:\[(\w+)\])?\s*:\s*(.+?)\s*$")
_SPAN_RE = re.compile(r"┌─\s*(.+?):(\d+):(\d+)")
_BUILD_MARKERS = ("BUILDING", "INCLUDING DEPENDENCY", "UPDATING GIT DEPENDENCY")
_NAMED_ADDRESS_RE = re.compile(r"module\s+([A-Za-z_]\w*)::\w+")

_MOVE_SEVERITY: dict[str, Severity] = {
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "note": Severity.LOW,
}


class MoveLintAdapter(StaticToolAdapter):
    """Common behaviour of the Move toolchains."""

    default_filename = "module.move"
    package_name = "OmniAuditTarget"

    def prepare_workspace(self, workspace: Path, source_code: str, filename: str) -> Path:
        sources = workspace / "sources"
        sources.mkdir()
        name = Path(filename).name
        if not name.endswith(".move"):
            name = f"{Path(name).stem or 'module'}.move"
        (sources / name).write_text(source_code, encoding="utf-8")
        (workspace / "Move.toml").write_text(self.manifest(source_code), encoding="utf-8")
        return workspace

    def manifest(self, source_code: str) -> str:
        addresses = sorted(set(_NAMED_ADDRESS_RE.findall(source_code)) - {"std"})
        lines = [
            "[package]",
            f'name = "{self.package_name}"',
            'version = "0.0.1"',
            "",
            "[addresses]",
        ]
        lines += [f'{addr} = "0xCAFE"' for addr in addresses]
        lines += ["", self.dependency_block()]
        return "\n".join(lines) + "\n"

    def dependency_block(self) -> str:
        return "[dependencies]"

    def parse_structured(self, output: str) -> list[dict[str, Any]]:
        diagnostics = _parse_diagnostics(output)
        if diagnostics:
            return diagnostics
        # Clean builds print progress markers; aptos wraps success as {"Result": ...}
        if any(marker in output for marker in _BUILD_MARKERS) or '"Result"' in output:
            return []
        raise ValueError("no Move diagnostics or build output recognised")

    def to_vulnerability(self, raw: dict[str, Any], filename: str) -> CanonicalVulnerability | None:
        code = raw.get("code") or f"move-{raw['level']}"
        return CanonicalVulnerability(
            type=code,
            severity=_MOVE_SEVERITY.get(raw["level"], Severity.INFORMATIONAL),
            title=f"{self.name}: {raw['message']}",
            description=raw["message"],
            location=CodeLocation(
                file=Path(raw.get("file") or filename).name,
                line=raw.get("line", 0),
                column=raw.get("column", 0),
            ),
            recommendation="Address the Move compiler / linter diagnostic.",
            confidence=0.75,
            source=FindingSource.STATIC,
            platform=self.platform,
            metadata={"tool": self.name, "diagnostic": code},
        )

    def structured_output(self, run: ToolRun) -> str:
        # Diagnostics are written to stderr by both CLIs
        return f"{run.stdout}\n{run.stderr}"


class AptosMoveAdapter(MoveLintAdapter):
    """``aptos move lint``."""

    name = "aptos-move-lint"
    default_binary = "aptos"
    binary_setting = "aptos_bin"

    def build_command(self, target: Path, workspace: Path, options: AnalysisOptions) -> list[str]:
        return [self.binary, "move", "lint", "--package-dir", str(target), *self.extra_args]

    def dependency_block(self) -> str:
        return (
            "[dependencies.AptosFramework]\n"
            'git = "https://github.com/aptos-labs/aptos-core.git"\n'
            'rev = "mainnet"\n'
            'subdir = "aptos-move/framework/aptos-framework"'
        )


class SuiMoveAdapter(MoveLintAdapter):
    """``sui move build --lint``."""

    name = "sui-move-lint"
    default_binary = "sui"
    binary_setting = "sui_bin"

    def build_command(self, target: Path, workspace: Path, options: AnalysisOptions) -> list[str]:
        return [self.binary, "move", "build", "--lint", "--path", str(target), *self.extra_args]

    def dependency_block(self) -> str:
        return (
            "[dependencies]\n"
            'Sui = { git = "https://github.com/MystenLabs/sui.git", '
            'subdir = "crates/sui-framework/packages/sui-framework", rev = "framework/mainnet" }'
        )


def _parse_diagnostics(text: str) -> list[dict[str, Any]]:
    """Pair each ``level[code]: message`` header with the span line that follows it."""
    diagnostics: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    for line in text.splitlines():
        header = _DIAGNOSTIC_RE.match(line)
        if header:
            current = {
                "level": header.group(1),
                "code": header.group(2),
                "message": header.group(3),
            }
            diagnostics.append(current)
            continue
        span = _SPAN_RE.search(line)
        if span and current is not None and "line" not in current:
            current["file"] = span.group(1)
            current["line"] = int(span.group(2))
            current["column"] = int(span.group(3))
    return diagnostics
