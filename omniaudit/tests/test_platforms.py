"""Tests for the platform registry, catalog and detector."""

from __future__ import annotations

import dataclasses
import re

import pytest

from conftest import ANCHOR_SOURCE, APTOS_SOURCE, PLUTUS_SOURCE, SOLIDITY_SOURCE
from omniaudit.core.types import ContractInput
from omniaudit.platforms.catalog import EVM_ACCOUNT
from omniaudit.platforms.detector import PlatformDetector, score_platform
from omniaudit.platforms.registry import (
    BlockchainPlatform,
    DetectionPattern,
    PatternKind,
    PlatformRegistry,
)


def _platform(pid: str = "toy", patterns=(), active: bool = True) -> BlockchainPlatform:
    return BlockchainPlatform(
        id=pid,
        name=pid.title(),
        display_name=pid.title(),
        execution_model=EVM_ACCOUNT,
        languages=("toylang",),
        file_extensions=(".toy",),
        detection_patterns=tuple(patterns),
        is_active=active,
    )


# ── Registry ─────────────────────────────────────────────────────────────────


class TestPlatformRegistry:
    def test_default_catalog(self, registry):
        ids = [p.id for p in registry.list_all()]
        assert ids == ["ethereum", "bsc", "polygon", "solana", "cardano", "aptos", "sui"]

    def test_register_last_write_wins(self):
        registry = PlatformRegistry([_platform()])
        replacement = dataclasses.replace(_platform(), display_name="Replaced")
        registry.register(replacement)
        assert registry.get("toy").display_name == "Replaced"
        assert len(registry.list_all()) == 1

    def test_activate_deactivate(self, registry):
        assert registry.deactivate("bsc") is True
        assert not registry.is_active("bsc")
        assert "bsc" not in [p.id for p in registry.list_active()]
        assert registry.activate("bsc") is True
        assert registry.is_active("bsc")

    def test_activate_unknown(self, registry):
        assert registry.activate("tezos") is False
        assert registry.deactivate("tezos") is False

    def test_records_are_frozen(self, registry):
        with pytest.raises(dataclasses.FrozenInstanceError):
            registry.get("ethereum").is_active = False

    def test_lookup_by_language_and_extension(self, registry):
        assert {p.id for p in registry.platforms_for_language("move")} == {"aptos", "sui"}
        assert [p.id for p in registry.platforms_for_extension("vault.rs")] == ["solana"]
        assert registry.supports_language("cardano", "plutus")

    def test_validate_contract_rules(self, registry):
        result = registry.validate_contract(
            "ethereum", ContractInput(code="pragma solidity ;", filename="A.sol"),
        )
        assert not result.is_valid
        assert "Invalid pragma solidity directive" in result.errors

    def test_validate_contract_extension_warning(self, registry):
        result = registry.validate_contract(
            "solana", ContractInput(code=ANCHOR_SOURCE, filename="program.txt"),
        )
        assert result.is_valid
        assert any("not typical" in w for w in result.warnings)

    def test_validate_unknown_platform(self, registry):
        result = registry.validate_contract("tezos", ContractInput(code="x"))
        assert not result.is_valid


class TestDetectionPattern:
    @pytest.mark.parametrize("weight", [0.0, -0.1, 1.01])
    def test_weight_bounds(self, weight):
        with pytest.raises(ValueError):
            DetectionPattern(kind=PatternKind.KEYWORD, matcher="x", weight=weight)

    def test_filename_pattern_ignores_source(self):
        pattern = DetectionPattern(kind=PatternKind.FILENAME, matcher=re.compile(r"\.sol$"), weight=0.5)
        assert pattern.matches("contract.sol", None) is False
        assert pattern.matches("", "Vault.sol") is True

    def test_literal_matcher(self):
        pattern = DetectionPattern(kind=PatternKind.KEYWORD, matcher="borrow_global", weight=0.5)
        assert pattern.matches("let x = borrow_global<T>(a);")


# ── Detector ─────────────────────────────────────────────────────────────────


class TestPlatformDetector:
    def test_ethereum_example(self, detector):
        results = detector.detect("pragma solidity ^0.8.0; contract Foo {}")
        assert results[0].platform_id == "ethereum"
        assert results[0].confidence > 0.5

    def test_solana_example(self, detector):
        results = detector.detect("use anchor_lang::prelude::*; #[program] pub mod x {}")
        assert results[0].platform_id == "solana"

    @pytest.mark.parametrize(
        "source, filename, expected",
        [
            (SOLIDITY_SOURCE, "Vault.sol", "ethereum"),
            (ANCHOR_SOURCE, "lib.rs", "solana"),
            (PLUTUS_SOURCE, "Vault.hs", "cardano"),
            (APTOS_SOURCE, "vault.move", "aptos"),
        ],
    )
    def test_detect_primary(self, detector, source, filename, expected):
        assert detector.detect_primary(source, filename).platform_id == expected

    def test_chain_specific_idioms(self, detector):
        source = "pragma solidity ^0.8.0;\nimport './IBEP20.sol';\ncontract Farm { IBEP20 token; }"
        assert detector.detect_primary(source).platform_id == "bsc"

    def test_confidence_in_unit_interval(self, detector):
        for source in (SOLIDITY_SOURCE, ANCHOR_SOURCE, PLUTUS_SOURCE, APTOS_SOURCE, ""):
            for result in detector.detect(source, "x.sol"):
                assert 0.0 <= result.confidence <= 1.0

    def test_only_nonzero_matches_returned(self, detector):
        assert detector.detect("hello world") == []
        assert detector.detect_primary("hello world") is None

    def test_no_patterns_scores_zero(self):
        assert score_platform(_platform(), "anything").confidence == 0.0

    def test_monotonic_in_matched_patterns(self):
        patterns = [
            DetectionPattern(kind=PatternKind.KEYWORD, matcher="alpha", weight=0.5),
            DetectionPattern(kind=PatternKind.KEYWORD, matcher="beta", weight=0.3),
            DetectionPattern(kind=PatternKind.KEYWORD, matcher="gamma", weight=0.2),
        ]
        platform = _platform(patterns=patterns)
        scores = [
            score_platform(platform, code).confidence
            for code in ("", "alpha", "alpha beta", "alpha beta gamma")
        ]
        assert scores == sorted(scores)
        assert scores[-1] == pytest.approx(1.0)

    def test_deterministic(self, detector):
        first = [(r.platform_id, r.confidence) for r in detector.detect(APTOS_SOURCE, "vault.move")]
        for _ in range(5):
            again = [(r.platform_id, r.confidence) for r in detector.detect(APTOS_SOURCE, "vault.move")]
            assert again == first

    def test_ties_keep_registry_order(self):
        pattern = DetectionPattern(kind=PatternKind.KEYWORD, matcher="shared", weight=1.0)
        registry = PlatformRegistry([_platform("b", [pattern]), _platform("a", [pattern])])
        ids = [r.platform_id for r in PlatformDetector(registry).detect("shared")]
        assert ids == ["b", "a"]

    def test_inactive_platforms_ignored(self, registry, detector):
        registry.deactivate("ethereum")
        results = detector.detect(SOLIDITY_SOURCE, "Vault.sol")
        assert "ethereum" not in [r.platform_id for r in results]

    def test_resolve_platform_threshold(self, registry):
        strict = PlatformDetector(registry, threshold=0.99)
        assert strict.resolve_platform(ContractInput(code="contract X {}")) is None
        lenient = PlatformDetector(registry, threshold=0.1)
        assert lenient.resolve_platform(ContractInput(code=SOLIDITY_SOURCE)) == "ethereum"

    def test_resolve_platform_among_candidates(self, detector):
        contract = ContractInput(code=SOLIDITY_SOURCE)
        assert detector.resolve_platform(contract) == "ethereum"
        assert detector.resolve_platform(contract, ["bsc", "solana"]) == "bsc"
        assert detector.resolve_platform(contract, ["solana", "cardano"]) is None

    def test_auto_assign_platforms(self, detector):
        contracts = [
            ContractInput(code=ANCHOR_SOURCE, filename="lib.rs"),
            ContractInput(code="???"),
            ContractInput(code=SOLIDITY_SOURCE, platform="polygon"),
        ]
        assigned = detector.auto_assign_platforms(contracts)
        assert assigned[0].platform == "solana"
        assert assigned[0].language == "rust"
        assert assigned[1].platform is None
        assert assigned[2].platform == "polygon"

    def test_validate_assignments_flags_mismatch(self, detector):
        report = detector.validate_assignments([
            ContractInput(code=ANCHOR_SOURCE, filename="lib.rs", platform="ethereum"),
            ContractInput(code="x", platform="tezos"),
        ])
        assert not report.valid
        assert any("tezos" in issue for issue in report.issues)
        assert any("looks like 'solana'" in w for w in report.warnings)
