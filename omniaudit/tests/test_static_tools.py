"""Tests for the external static-analysis tool adapters.

The tool binaries are never executed: ``shutil.which`` and
``asyncio.create_subprocess_exec`` are patched with process doubles.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from conftest import SOLIDITY_SOURCE, fake_process, slither_detector, slither_json
from omniaudit.analyzer.tools import (
    AptosMoveAdapter,
    ClippyAdapter,
    HLintAdapter,
    SlitherAdapter,
    SuiMoveAdapter,
)
from omniaudit.core.errors import ErrorCode
from omniaudit.core.types import AnalysisOptions, FindingSource, Severity

WHICH = "omniaudit.analyzer.tools.base.shutil.which"
SPAWN = "omniaudit.analyzer.tools.base.asyncio.create_subprocess_exec"


def _spawn(process) -> AsyncMock:
    return AsyncMock(return_value=process)


# ── Common behaviour ─────────────────────────────────────────────────────────


class TestStaticToolAdapter:
    @pytest.mark.asyncio
    async def test_missing_binary_reports_tool_not_installed(self):
        spawn = _spawn(fake_process())
        with patch(WHICH, return_value=None), patch(SPAWN, spawn):
            result = await SlitherAdapter("ethereum").analyze(SOLIDITY_SOURCE, "Vault.sol")
        assert result.success is False
        assert result.error_codes() == {ErrorCode.TOOL_NOT_INSTALLED}
        assert result.errors[0].platform == "ethereum"
        spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_binary_vanishing_between_check_and_spawn(self):
        with patch(WHICH, return_value="/usr/bin/slither"), \
             patch(SPAWN, AsyncMock(side_effect=FileNotFoundError("slither"))):
            result = await SlitherAdapter("ethereum").analyze(SOLIDITY_SOURCE)
        assert result.error_codes() == {ErrorCode.TOOL_NOT_INSTALLED}

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        process = fake_process()

        async def _hang():
            await asyncio.sleep(10)

        process.communicate = _hang
        with patch(WHICH, return_value="/usr/bin/slither"), patch(SPAWN, _spawn(process)):
            result = await SlitherAdapter("ethereum", timeout=0.01).analyze(SOLIDITY_SOURCE)
        assert result.success is False
        assert result.error_codes() == {ErrorCode.TOOL_TIMEOUT}
        process.kill.assert_called_once()
        process.wait.assert_awaited()

    @pytest.mark.asyncio
    async def test_workspace_removed_after_run(self):
        spawn = _spawn(fake_process(stdout=slither_json()))
        with patch(WHICH, return_value="/usr/bin/slither"), patch(SPAWN, spawn):
            await SlitherAdapter("ethereum").analyze(SOLIDITY_SOURCE, "Vault.sol")
        workspace = spawn.call_args.kwargs["cwd"]
        assert "omniaudit_slither_" in workspace
        assert not os.path.exists(workspace)

    @pytest.mark.asyncio
    async def test_workspace_removed_on_timeout(self):
        process = fake_process()

        async def _hang():
            await asyncio.sleep(10)

        process.communicate = _hang
        spawn = _spawn(process)
        with patch(WHICH, return_value="/usr/bin/slither"), patch(SPAWN, spawn):
            await SlitherAdapter("ethereum", timeout=0.01).analyze(SOLIDITY_SOURCE)
        assert not os.path.exists(spawn.call_args.kwargs["cwd"])

    @pytest.mark.asyncio
    async def test_text_fallback_warns(self):
        output = "Vault.sol:12:5: Warning: state variable shadows another\nall done"
        with patch(WHICH, return_value="/usr/bin/slither"), \
             patch(SPAWN, _spawn(fake_process(stdout=output))):
            result = await SlitherAdapter("ethereum").analyze(SOLIDITY_SOURCE, "Vault.sol")
        assert result.success is True
        assert [w.code for w in result.warnings] == [ErrorCode.TOOL_OUTPUT_UNPARSEABLE]
        [finding] = result.vulnerabilities
        assert finding.severity is Severity.MEDIUM
        assert finding.location.line == 12
        assert finding.location.column == 5
        assert finding.confidence == 0.4

    @pytest.mark.asyncio
    async def test_unparseable_failure_is_execution_error(self):
        with patch(WHICH, return_value="/usr/bin/slither"), \
             patch(SPAWN, _spawn(fake_process(stderr="Traceback: boom", returncode=1))):
            result = await SlitherAdapter("ethereum").analyze(SOLIDITY_SOURCE)
        assert result.success is False
        assert result.error_codes() == {ErrorCode.TOOL_EXECUTION_FAILED}
        assert "boom" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_check_installation(self):
        with patch(WHICH, return_value="/usr/bin/slither"), \
             patch(SPAWN, _spawn(fake_process(stdout="0.10.0\n"))):
            health = await SlitherAdapter("ethereum").check_installation()
        assert health.installed is True
        assert health.version == "0.10.0"

    @pytest.mark.asyncio
    async def test_check_installation_missing(self):
        with patch(WHICH, return_value=None):
            health = await SlitherAdapter("ethereum").check_installation()
        assert health.installed is False
        assert "not found" in health.error

    @patch.dict(os.environ, {"OMNIAUDIT_SLITHER_BIN": "/opt/tools/slither"})
    def test_binary_from_settings(self):
        assert SlitherAdapter("ethereum").binary == "/opt/tools/slither"
        assert SlitherAdapter("ethereum", binary="custom").binary == "custom"


# ── Slither ──────────────────────────────────────────────────────────────────


class TestSlitherAdapter:
    @pytest.mark.asyncio
    async def test_maps_detectors_to_canonical_findings(self):
        stdout = slither_json(
            slither_detector("reentrancy-eth", impact="High", confidence="Medium", line=10),
            slither_detector("solc-version", impact="Informational", confidence="High", line=2),
        )
        with patch(WHICH, return_value="/usr/bin/slither"), \
             patch(SPAWN, _spawn(fake_process(stdout=stdout))):
            result = await SlitherAdapter("ethereum").analyze(SOLIDITY_SOURCE, "Vault.sol")

        assert result.success is True
        reentrancy, pragma = result.vulnerabilities
        assert reentrancy.type == "reentrancy-eth"
        assert reentrancy.severity is Severity.HIGH
        assert reentrancy.confidence == pytest.approx(0.85)
        assert reentrancy.location.line == 10
        assert reentrancy.source is FindingSource.STATIC
        assert reentrancy.platform == "ethereum"
        assert "ReentrancyGuard" in reentrancy.recommendation
        assert pragma.severity is Severity.INFORMATIONAL
        assert pragma.confidence == pytest.approx(0.95)

    def test_tool_vocabulary_does_not_leak(self):
        adapter = SlitherAdapter("ethereum")
        vuln = adapter.to_vulnerability(slither_detector("x", impact="Optimization"), "Vault.sol")
        assert vuln.severity in set(Severity)
        assert vuln.severity.value == "informational"

    def test_detector_filters_in_command(self):
        options = AnalysisOptions(enabled_detectors=["tx-origin"], disabled_detectors=["timestamp"])
        cmd = SlitherAdapter("ethereum").build_command(Path("/w/A.sol"), Path("/w"), options)
        assert cmd[:4] == ["slither", "/w/A.sol", "--json", "-"]
        assert "--detect" in cmd and "tx-origin" in cmd
        assert "--exclude" in cmd and "timestamp" in cmd

    def test_failure_payload_is_not_structured(self):
        with pytest.raises(ValueError):
            SlitherAdapter("ethereum").parse_structured(
                json.dumps({"success": False, "error": "solc not found", "results": {}})
            )


# ── Clippy ───────────────────────────────────────────────────────────────────


_CARGO_OUTPUT = "\n".join([
    json.dumps({"reason": "compiler-artifact", "target": {"name": "omniaudit_program"}}),
    json.dumps({
        "reason": "compiler-message",
        "message": {
            "level": "warning",
            "code": {"code": "clippy::unwrap_used"},
            "message": "used `unwrap()` on a `Result` value",
            "spans": [{"is_primary": True, "line_start": 7, "column_start": 5, "column_end": 20}],
        },
    }),
    json.dumps({"reason": "compiler-message", "message": {"level": "warning", "message": "1 warning", "spans": []}}),
    json.dumps({"reason": "build-finished", "success": True}),
])


class TestClippyAdapter:
    def test_parses_cargo_json_lines(self):
        adapter = ClippyAdapter("solana")
        [raw, summary] = adapter.parse_structured(_CARGO_OUTPUT)
        vuln = adapter.to_vulnerability(raw, "lib.rs")
        assert vuln.type == "clippy::unwrap_used"
        assert vuln.severity is Severity.MEDIUM
        assert vuln.location.line == 7
        assert vuln.location.length == 15
        assert "`?`" in vuln.recommendation
        assert adapter.to_vulnerability(summary, "lib.rs") is None

    def test_non_json_output_rejected(self):
        with pytest.raises(ValueError):
            ClippyAdapter("solana").parse_structured("error: could not compile")

    def test_workspace_is_a_crate(self, tmp_path):
        adapter = ClippyAdapter("solana")
        target = adapter.prepare_workspace(tmp_path, "use anchor_lang::prelude::*;", "program.rs")
        assert target == tmp_path
        assert "anchor-lang" in (tmp_path / "Cargo.toml").read_text()
        assert (tmp_path / "src" / "lib.rs").read_text().startswith("use anchor_lang")


# ── HLint ────────────────────────────────────────────────────────────────────


class TestHLintAdapter:
    def test_maps_hints(self):
        adapter = HLintAdapter("cardano")
        [raw] = adapter.parse_structured(json.dumps([{
            "hint": "Use head",
            "severity": "Warning",
            "startLine": 3,
            "startColumn": 1,
            "endColumn": 10,
            "from": "xs !! 0",
            "to": "head xs",
        }]))
        vuln = adapter.to_vulnerability(raw, "Validator.hs")
        assert vuln.severity is Severity.MEDIUM
        assert vuln.location.line == 3
        assert vuln.recommendation == "Consider using: head xs"

    def test_object_root_rejected(self):
        with pytest.raises(ValueError):
            HLintAdapter("cardano").parse_structured("{}")


# ── Move ─────────────────────────────────────────────────────────────────────


_MOVE_DIAGNOSTIC = """warning[W09002]: unused variable
   ┌─ ./sources/vault.move:10:13
   │
10 │         let unused = 1;
   │             ^^^^^^ Unused local variable 'unused'
"""


class TestMoveAdapters:
    @pytest.mark.asyncio
    async def test_diagnostics_from_stderr(self):
        with patch(WHICH, return_value="/usr/bin/aptos"), \
             patch(SPAWN, _spawn(fake_process(stderr=_MOVE_DIAGNOSTIC))):
            result = await AptosMoveAdapter("aptos").analyze("module me::vault {}", "vault.move")
        [finding] = result.vulnerabilities
        assert finding.type == "W09002"
        assert finding.severity is Severity.MEDIUM
        assert finding.location.file == "vault.move"
        assert (finding.location.line, finding.location.column) == (10, 13)
        assert result.warnings == []

    def test_clean_build_has_no_findings(self):
        assert SuiMoveAdapter("sui").parse_structured("BUILDING OmniAuditTarget\n") == []

    def test_manifest_declares_named_addresses(self):
        manifest = AptosMoveAdapter("aptos").manifest("module me::vault {}\nmodule std::x {}")
        assert 'me = "0xCAFE"' in manifest
        assert "std =" not in manifest
        assert "AptosFramework" in manifest

    def test_sui_command(self, tmp_path):
        cmd = SuiMoveAdapter("sui").build_command(tmp_path, tmp_path, AnalysisOptions())
        assert cmd[:4] == ["sui", "move", "build", "--lint"]
