"""Shared fixtures for the OmniAudit engine test suite."""

from __future__ import annotations

import json
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from omniaudit.core.config import get_settings
from omniaudit.core.types import (
    CanonicalVulnerability,
    CodeLocation,
    FindingSource,
    Severity,
)
from omniaudit.platforms.catalog import default_registry
from omniaudit.platforms.detector import PlatformDetector
from omniaudit.platforms.registry import PlatformRegistry


# ── Sample sources ───────────────────────────────────────────────────────────


SOLIDITY_SOURCE = """// SPDX-License-Identifier: MIT
pragma solidity ^0.8.0;

contract Vault {
    address public owner;
    mapping(address => uint256) public balances;

    function withdraw(uint256 amount) external {
        require(tx.origin == owner, "not owner");
        (bool ok, ) = msg.sender.call{value: amount}("");
        balances[msg.sender] -= amount;
    }
}
"""

ANCHOR_SOURCE = """use anchor_lang::prelude::*;

declare_id!("11111111111111111111111111111111");

#[program]
pub mod vault {
    use super::*;

    pub fn withdraw(ctx: Context<Withdraw>, amount: u64) -> Result<()> {
        let vault = &mut ctx.accounts.vault;
        vault.balance = vault.balance - amount;
        Ok(())
    }
}

#[derive(Accounts)]
pub struct Withdraw<'info> {
    #[account(mut)]
    pub vault: Account<'info, Vault>,
    #[account(mut)]
    pub authority: AccountInfo<'info>,
}
"""

PLUTUS_SOURCE = """{-# LANGUAGE DataKinds #-}
module Vault where

import PlutusTx
import Plutus.V2.Ledger.Api

mkValidator :: BuiltinData -> BuiltinData -> BuiltinData -> ()
mkValidator datum redeemer ctx = ()

validator :: Validator
validator = mkValidatorScript $$(PlutusTx.compile [|| mkValidator ||])
"""

APTOS_SOURCE = """module 0x1::vault {
    use std::signer;

    struct Vault has key {
        balance: u64,
    }

    public entry fun deposit(account: &signer, amount: u64) acquires Vault {
        let vault = borrow_global_mut<Vault>(signer::address_of(account));
        vault.balance = vault.balance + amount;
    }
}
"""


# ── Settings ─────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings are cached; tests that patch the environment need a clean cache."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ── Platforms ────────────────────────────────────────────────────────────────


@pytest.fixture
def registry() -> PlatformRegistry:
    return default_registry()


@pytest.fixture
def detector(registry: PlatformRegistry) -> PlatformDetector:
    return PlatformDetector(registry, threshold=0.3, high_confidence_threshold=0.7)


# ── Findings ─────────────────────────────────────────────────────────────────


@pytest.fixture
def make_vuln() -> Callable[..., CanonicalVulnerability]:
    """Factory for canonical findings with sensible defaults."""

    def _make(
        type: str = "reentrancy-eth",
        severity: Severity = Severity.HIGH,
        line: int = 10,
        confidence: float = 0.7,
        source: FindingSource = FindingSource.AI,
        platform: str = "ethereum",
        file: str = "Vault.sol",
        **metadata: Any,
    ) -> CanonicalVulnerability:
        return CanonicalVulnerability(
            type=type,
            severity=severity,
            title=type.replace("-", " ").title(),
            description=f"{type} at line {line}",
            location=CodeLocation(file=file, line=line),
            recommendation="Fix it.",
            confidence=confidence,
            source=source,
            platform=platform,
            metadata=metadata,
        )

    return _make


# ── Subprocess / model doubles ───────────────────────────────────────────────


def fake_process(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    """Stand-in for ``asyncio.subprocess.Process``."""
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    process.wait = AsyncMock(return_value=returncode)
    process.kill = MagicMock()
    return process


def slither_json(*detectors: dict[str, Any]) -> str:
    return json.dumps({"success": True, "error": None, "results": {"detectors": list(detectors)}})


def slither_detector(check: str, impact: str = "High", confidence: str = "Medium", line: int = 10) -> dict[str, Any]:
    return {
        "check": check,
        "impact": impact,
        "confidence": confidence,
        "description": f"{check} found",
        "elements": [{"source_mapping": {"filename_relative": "Vault.sol", "lines": [line, line + 1]}}],
    }


def ai_response(*vulns: dict[str, Any], confidence: float = 0.8) -> dict[str, Any]:
    """Well-formed model reply."""
    return {
        "vulnerabilities": list(vulns),
        "recommendations": [
            {"category": "security", "priority": "high", "description": "Add reentrancy guards"},
        ],
        "qualityMetrics": {
            "code_quality_score": 70,
            "maintainability_index": 60,
            "test_coverage_estimate": 40,
        },
        "confidence": confidence,
    }


def ai_vuln(type: str = "reentrancy", line: int = 10, confidence: float = 0.7, severity: str = "high") -> dict[str, Any]:
    return {
        "type": type,
        "severity": severity,
        "title": type.title(),
        "description": f"{type} issue",
        "location": {"line": line, "column": 0},
        "confidence": confidence,
        "recommendation": "Fix it.",
    }


@pytest.fixture
def llm_client() -> MagicMock:
    """LLM client whose ``complete`` is an AsyncMock to be configured per test."""
    client = MagicMock()
    client.complete = AsyncMock(return_value=ai_response())
    return client
