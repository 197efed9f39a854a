"""Slither static analysis adapter for EVM platforms.

Runs ``slither <file> --json -`` and maps detector results onto canonical
findings. Slither's impact and confidence words never leave this module.
"""

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

# Map Slither impact levels to canonical severity
_SLITHER_SEVERITY: dict[str, Severity] = {
    "High": Severity.HIGH,
    "Medium": Severity.MEDIUM,
    "Low": Severity.LOW,
    "Informational": Severity.INFORMATIONAL,
    "Optimization": Severity.INFORMATIONAL,
}

_SLITHER_CONFIDENCE: dict[str, float] = {
    "High": 0.95,
    "Medium": 0.75,
    "Low": 0.55,
}

# Slither detector IDs considered very high confidence
_HIGH_CONFIDENCE_DETECTORS: set[str] = {
    "reentrancy-eth",
    "reentrancy-no-eth",
    "suicidal",
    "uninitialized-state",
    "arbitrary-send-eth",
    "controlled-delegatecall",
    "unprotected-upgrade",
    "unchecked-transfer",
    "reentrancy-unlimited-gas",
    "locked-ether",
    "incorrect-equality",
}

_RECOMMENDATIONS: dict[str, str] = {
    "reentrancy-eth": "Apply checks-effects-interactions pattern or use ReentrancyGuard.",
    "reentrancy-no-eth": "Apply checks-effects-interactions pattern, update state before external calls.",
    "suicidal": "Add access control to selfdestruct. Consider removing it entirely.",
    "arbitrary-send-eth": "Restrict ETH transfer recipients to validated addresses only.",
    "controlled-delegatecall": "Never allow user-supplied addresses as delegatecall targets.",
    "unprotected-upgrade": "Add onlyOwner or initializer modifier to upgrade functions.",
    "unchecked-transfer": "Check the return value of ERC20 transfer/transferFrom calls.",
    "locked-ether": "Add a withdraw function or remove the payable fallback.",
    "incorrect-equality": "Use >= or <= instead of == for balance checks.",
    "tx-origin": "Use msg.sender instead of tx.origin for authentication.",
    "uninitialized-state": "Initialize all state variables in the constructor.",
}


class SlitherAdapter(StaticToolAdapter):
    """Wraps the ``slither`` CLI."""

    name = "slither"
    default_binary = "slither"
    binary_setting = "slither_bin"
    default_filename = "Contract.sol"

    def build_command(self, target: Path, workspace: Path, options: AnalysisOptions) -> list[str]:
        cmd = [self.binary, str(target), "--json", "-", "--disable-color"]
        if options.enabled_detectors:
            cmd += ["--detect", ",".join(options.enabled_detectors)]
        if options.disabled_detectors:
            cmd += ["--exclude", ",".join(options.disabled_detectors)]
        return cmd + self.extra_args

    def parse_structured(self, stdout: str) -> list[dict[str, Any]]:
        raw = json.loads(stdout)
        if isinstance(raw, list):
            return raw
        if not isinstance(raw, dict):
            raise ValueError("unexpected Slither JSON root")
        if raw.get("success") is False and not raw.get("results"):
            raise ValueError(raw.get("error") or "Slither reported failure")
        return list((raw.get("results") or {}).get("detectors", []))

    def to_vulnerability(self, raw: dict[str, Any], filename: str) -> CanonicalVulnerability | None:
        check = raw.get("check") or raw.get("type") or "unknown"
        impact = raw.get("impact") or raw.get("severity") or "Informational"
        tool_confidence = raw.get("confidence", "Medium")

        severity = _SLITHER_SEVERITY.get(str(impact).capitalize(), Severity.INFORMATIONAL)
        confidence = _SLITHER_CONFIDENCE.get(str(tool_confidence).capitalize(), 0.6)
        if check in _HIGH_CONFIDENCE_DETECTORS:
            confidence = min(confidence + 0.1, 1.0)

        return CanonicalVulnerability(
            type=check,
            severity=severity,
            title=f"[Slither] {self._format_check_name(check)}",
            description=(raw.get("description") or "").strip() or self._format_check_name(check),
            location=self._extract_location(raw, filename),
            recommendation=self._get_recommendation(check),
            confidence=confidence,
            source=FindingSource.STATIC,
            platform=self.platform,
            metadata={
                "tool": self.name,
                "detector": check,
                "reference": f"https://github.com/crytic/slither/wiki/Detector-Documentation#{check}",
            },
        )

    # ── Private ──────────────────────────────────────────────────────

    def _extract_location(self, raw: dict[str, Any], filename: str) -> CodeLocation:
        """Take the first element with a line mapping, else a plain ``location`` object."""
        for el in raw.get("elements", []):
            src_mapping = el.get("source_mapping", {})
            lines = src_mapping.get("lines", [])
            if lines:
                return CodeLocation(
                    file=Path(src_mapping.get("filename_relative") or filename).name,
                    line=min(lines),
                    column=max(0, int(src_mapping.get("starting_column", 0) or 0)),
                    length=src_mapping.get("length"),
                )
        location = raw.get("location")
        if isinstance(location, dict):
            return CodeLocation(
                file=location.get("file") or filename,
                line=max(0, int(location.get("line", 0) or 0)),
                column=max(0, int(location.get("column", 0) or 0)),
            )
        return CodeLocation(file=filename)

    def _format_check_name(self, check: str) -> str:
        return check.replace("-", " ").replace("_", " ").title()

    def _get_recommendation(self, check: str) -> str:
        for prefix, rec in _RECOMMENDATIONS.items():
            if prefix in check:
                return rec
        return "Review the flagged code and apply appropriate security measures."
