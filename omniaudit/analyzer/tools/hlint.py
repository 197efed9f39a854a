"""HLint adapter for Cardano / Plutus validators."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from omniaudit.analyzer.tools.base import StaticToolAdapter
from omniaudit.core.types import (
    AnalysisOptions,
    CanonicalVulnerability,
    CodeLocation,
    FindingSource,
    Severity,
)

_HLINT_SEVERITY: dict[str, Severity] = {
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "suggestion": Severity.LOW,
    "ignore": Severity.INFORMATIONAL,
}

_HLINT_RECOMMENDATIONS: dict[str, str] = {
    "Use head": "Consider using pattern matching or safe alternatives to head",
    "Use tail": "Consider using pattern matching or safe alternatives to tail",
    "Use init": "Consider using pattern matching or safe alternatives to init",
    "Use last": "Consider using pattern matching or safe alternatives to last",
    "Avoid lambda": "Consider using point-free style or function composition",
    "Use map": "Consider using map instead of explicit recursion",
    "Use foldr": "Consider using foldr for better performance and clarity",
}


class HLintAdapter(StaticToolAdapter):
    """Wraps ``hlint --json``."""

    name = "hlint"
    default_binary = "hlint"
    binary_setting = "hlint_bin"
    default_filename = "Validator.hs"

    def build_command(self, target: Path, workspace: Path, options: AnalysisOptions) -> list[str]:
        return [self.binary, "--json", "--no-exit-code", *self.extra_args, str(target)]

    def parse_structured(self, stdout: str) -> list[dict[str, Any]]:
        raw = json.loads(stdout)
        if not isinstance(raw, list):
            raise ValueError("HLint JSON output must be a list of hints")
        return raw

    def to_vulnerability(self, raw: dict[str, Any], filename: str) -> CanonicalVulnerability | None:
        hint = raw.get("hint")
        severity_word = str(raw.get("severity", "")).lower()
        if not hint or not severity_word or not raw.get("startLine"):
            return None

        start_column = int(raw.get("startColumn") or 1)
        end_column = raw.get("endColumn")
        return CanonicalVulnerability(
            type=hint,
            severity=_HLINT_SEVERITY.get(severity_word, Severity.INFORMATIONAL),
            title=f"HLint: {hint}",
            description=hint if not raw.get("from") else f"{hint}: {raw['from']}",
            location=CodeLocation(
                file=filename,
                line=int(raw["startLine"]),
                column=start_column,
                length=(int(end_column) - start_column) if end_column else None,
            ),
            recommendation=self._recommendation(hint, raw.get("to")),
            confidence=0.8,
            source=FindingSource.STATIC,
            platform=self.platform,
            metadata={"tool": self.name, "hint": hint},
        )

    def _recommendation(self, hint: str, suggestion: str | None) -> str:
        if suggestion:
            return f"Consider using: {suggestion}"
        for key, recommendation in _HLINT_RECOMMENDATIONS.items():
            if key in hint:
                return recommendation
        return "Review and address the HLint suggestion for better code quality"
