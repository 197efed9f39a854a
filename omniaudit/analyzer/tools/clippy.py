"""Cargo Clippy adapter for Solana programs.

The source is placed in a throwaway crate (``src/lib.rs``) and checked with
``cargo clippy --message-format=json``. Cargo prints one JSON object per line;
only ``compiler-message`` records with a source span become findings.
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

_CLIPPY_SEVERITY: dict[str, Severity] = {
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "note": Severity.LOW,
    "help": Severity.LOW,
}

_CLIPPY_RECOMMENDATIONS: dict[str, str] = {
    "clippy::arithmetic_side_effects": "Use checked_* arithmetic to avoid overflow in token math.",
    "clippy::integer_arithmetic": "Use checked_* arithmetic to avoid overflow in token math.",
    "clippy::unwrap_used": "Propagate errors with `?` instead of panicking on unwrap.",
    "clippy::expect_used": "Propagate errors with `?` instead of panicking on expect.",
    "clippy::panic": "Return a program error instead of panicking.",
    "clippy::indexing_slicing": "Use `.get()` for bounds-checked access.",
    "clippy::cast_possible_truncation": "Use `try_from` for fallible integer conversions.",
}

_ANCHOR_CARGO_TOML = """[package]
name = "omniaudit_program"
version = "0.1.0"
edition = "2021"

[lib]
crate-type = ["cdylib", "lib"]

[dependencies]
anchor-lang = "0.29.0"
anchor-spl = "0.29.0"
solana-program = "1.17.0"
"""

_NATIVE_CARGO_TOML = """[package]
name = "omniaudit_program"
version = "0.1.0"
edition = "2021"

[lib]
crate-type = ["cdylib", "lib"]

[dependencies]
solana-program = "1.17.0"
thiserror = "1.0"
spl-token = "4.0"
"""


class ClippyAdapter(StaticToolAdapter):
    """Wraps ``cargo clippy``."""

    name = "clippy"
    default_binary = "cargo"
    binary_setting = "cargo_bin"
    default_filename = "lib.rs"
    text_confidence = 0.45

    def prepare_workspace(self, workspace: Path, source_code: str, filename: str) -> Path:
        manifest = _ANCHOR_CARGO_TOML if "anchor_lang" in source_code else _NATIVE_CARGO_TOML
        (workspace / "Cargo.toml").write_text(manifest, encoding="utf-8")
        src = workspace / "src"
        src.mkdir()
        (src / "lib.rs").write_text(source_code, encoding="utf-8")
        return workspace

    def build_command(self, target: Path, workspace: Path, options: AnalysisOptions) -> list[str]:
        return [
            self.binary, "clippy",
            "--manifest-path", str(target / "Cargo.toml"),
            "--message-format=json",
            *self.extra_args,
            "--", "-W", "clippy::all",
        ]

    def parse_structured(self, stdout: str) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        decoded_any = False
        for line in stdout.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            decoded_any = True
            if record.get("reason") == "compiler-message" and record.get("message"):
                records.append(record["message"])
        if not decoded_any:
            raise ValueError("no JSON lines in cargo output")
        return records

    def to_vulnerability(self, raw: dict[str, Any], filename: str) -> CanonicalVulnerability | None:
        spans = raw.get("spans") or []
        if not spans:
            return None
        span = next((s for s in spans if s.get("is_primary")), spans[0])
        level = raw.get("level", "")
        code = (raw.get("code") or {}).get("code") or "clippy-warning"
        message = raw.get("message", "").strip()

        column_start = int(span.get("column_start") or 1)
        column_end = span.get("column_end")
        return CanonicalVulnerability(
            type=code,
            severity=_CLIPPY_SEVERITY.get(level, Severity.INFORMATIONAL),
            title=f"Clippy: {message}",
            description=message,
            location=CodeLocation(
                file=filename,
                line=int(span.get("line_start") or 1),
                column=column_start,
                length=(int(column_end) - column_start) if column_end else None,
            ),
            recommendation=_CLIPPY_RECOMMENDATIONS.get(
                code, "Review the Clippy diagnostic and follow the suggested fix."
            ),
            confidence=0.8,
            source=FindingSource.STATIC,
            platform=self.platform,
            metadata={"tool": self.name, "lint": code},
        )
