"""Tests for the per-platform analyzers and the analyzer dispatch."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import ANCHOR_SOURCE, APTOS_SOURCE, PLUTUS_SOURCE, SOLIDITY_SOURCE
from omniaudit.analyzer.cardano import CardanoAnalyzer
from omniaudit.analyzer.dispatch import AnalyzerDispatch
from omniaudit.analyzer.evm import EVMAnalyzer
from omniaudit.analyzer.move import AptosAnalyzer, SuiAnalyzer, parse_move_module
from omniaudit.analyzer.solana import SolanaAnalyzer, parse_anchor_program
from omniaudit.analyzer.tools.clippy import ClippyAdapter
from omniaudit.analyzer.tools.slither import SlitherAdapter
from omniaudit.core.errors import ErrorCode
from omniaudit.core.types import (
    AnalysisOptions,
    AnalysisResult,
    ContractInput,
    FindingSource,
    HealthCheckResult,
    Severity,
)


def _static_tool(result: AnalysisResult, name: str = "slither") -> MagicMock:
    tool = MagicMock()
    tool.name = name
    tool.default_filename = "Contract.sol"
    tool.analyze = AsyncMock(return_value=result)
    tool.check_installation = AsyncMock(return_value=HealthCheckResult(installed=True, version="1.0"))
    return tool


def _ensemble(result: AnalysisResult) -> MagicMock:
    ensemble = MagicMock()
    ensemble.analyze = AsyncMock(return_value=result)
    return ensemble


def _types(findings) -> set[str]:
    return {v.type for v in findings}


# ── EVM ──────────────────────────────────────────────────────────────────────


_RISKY_SOLIDITY = """pragma solidity 0.8.19;
contract Wallet {
    function kill() external {
        selfdestruct(payable(msg.sender));
    }
    function forward(address impl, bytes calldata data) external {
        impl.delegatecall(data);
        payable(msg.sender).send(1);
        if (block.timestamp > 100) { revert(); }
    }
}
"""


class TestEVMHeuristics:
    @pytest.fixture
    def analyzer(self, registry):
        return EVMAnalyzer(registry.get("ethereum"))

    def test_sample_contract(self, analyzer):
        findings = analyzer.heuristic_checks(ContractInput(code=SOLIDITY_SOURCE), "Vault.sol")
        by_type = {v.type: v for v in findings}
        assert set(by_type) == {"tx-origin", "solc-version"}
        assert by_type["tx-origin"].location.line == 9
        assert by_type["solc-version"].location.line == 2
        assert all(v.source is FindingSource.STATIC for v in findings)

    def test_risky_patterns(self, analyzer):
        findings = analyzer.heuristic_checks(ContractInput(code=_RISKY_SOLIDITY), "Wallet.sol")
        lines = {v.type: v.location.line for v in findings}
        assert lines == {
            "suicidal": 4,
            "controlled-delegatecall": 7,
            "unchecked-lowlevel": 8,
            "timestamp": 9,
        }

    def test_guarded_selfdestruct_not_flagged(self, analyzer):
        code = _RISKY_SOLIDITY.replace(
            "        selfdestruct", "        require(msg.sender == owner);\n        selfdestruct",
        )
        findings = analyzer.heuristic_checks(ContractInput(code=code), "Wallet.sol")
        assert "suicidal" not in _types(findings)

    def test_commented_code_ignored(self, analyzer):
        code = "contract A {\n    // require(tx.origin == owner);\n    /* selfdestruct(x); */\n}"
        assert analyzer.heuristic_checks(ContractInput(code=code), "A.sol") == []

    def test_default_tool_is_slither(self, analyzer):
        assert isinstance(analyzer.static_tool, SlitherAdapter)
        assert analyzer.static_tool.platform == "ethereum"


class TestEVMValidation:
    @pytest.fixture
    def analyzer(self, registry):
        return EVMAnalyzer(registry.get("ethereum"))

    def test_valid_contract(self, analyzer):
        result = analyzer.validate_contract(ContractInput(code=SOLIDITY_SOURCE, filename="Vault.sol"))
        assert result.is_valid
        assert result.errors == []

    def test_unclosed_brace(self, analyzer):
        code = "pragma solidity ^0.8.0;\ncontract A {\n    function f() public {\n}\n"
        result = analyzer.validate_contract(ContractInput(code=code))
        assert not result.is_valid
        assert "Unclosed '{' opened at line 2" in result.errors

    def test_unexpected_closer(self, analyzer):
        result = analyzer.validate_contract(ContractInput(code="contract A { uint x = (1]; }"))
        assert result.errors[0].startswith("Unexpected ']'")

    def test_delimiters_in_strings_and_comments_ignored(self, analyzer):
        code = 'pragma solidity ^0.8.0;\ncontract A {\n    string s = "}";  // }\n    /* { */\n}\n'
        assert analyzer.validate_contract(ContractInput(code=code)).is_valid

    def test_missing_contract_definition(self, analyzer):
        result = analyzer.validate_contract(ContractInput(code="pragma solidity ^0.8.0;"))
        assert "No contract, interface, or library definition found" in result.errors

    def test_empty_code(self, analyzer):
        result = analyzer.validate_contract(ContractInput(code="   ", filename="A.sol"))
        assert not result.is_valid
        assert "cannot be empty" in result.errors[0]

    def test_oversized_code(self, registry):
        analyzer = EVMAnalyzer(registry.get("ethereum"), max_file_size=16)
        result = analyzer.validate_contract(ContractInput(code=SOLIDITY_SOURCE))
        assert "exceeds maximum limit of 16 bytes" in result.errors[0]


# ── Solana ───────────────────────────────────────────────────────────────────


_RISKY_ANCHOR = """use anchor_lang::prelude::*;

#[program]
pub mod pool {
    pub fn initialize(ctx: Context<Initialize>) -> Result<()> {
        Ok(())
    }

    pub fn relay(ctx: Context<Relay>) -> Result<()> {
        invoke(&ix, &[ctx.accounts.target.clone()])?;
        for acc in ctx.remaining_accounts.iter() {
            msg!("{}", acc.key);
        }
        Ok(())
    }
}

#[derive(Accounts)]
pub struct Initialize<'info> {
    #[account(init, payer = user, space = 8 + 8, seeds = [b"pool"], bump)]
    pub pool: Account<'info, Pool>,
    #[account(init, payer = user, space = 8)]
    pub state: Account<'info, State>,
    pub target: UncheckedAccount<'info>,
}
"""


class TestSolanaAnalyzer:
    @pytest.fixture
    def analyzer(self, registry):
        return SolanaAnalyzer(registry.get("solana"))

    def test_parse_anchor_program(self):
        program = parse_anchor_program(ANCHOR_SOURCE)
        assert program.program_id == "11111111111111111111111111111111"
        [instr] = program.instructions
        assert (instr.name, instr.line) == ("withdraw", 9)
        assert not instr.has_signer_check
        vault, authority = program.accounts
        assert vault.account_type == "Account<'info, Vault>"
        assert vault.is_mut
        assert authority.account_type == "AccountInfo<'info>"

    def test_sample_program(self, analyzer):
        findings = analyzer.heuristic_checks(ContractInput(code=ANCHOR_SOURCE), "lib.rs")
        lines = {v.type: v.location.line for v in findings}
        assert lines == {"missing-signer": 9, "integer-overflow": 11}

    def test_risky_program(self, analyzer):
        findings = analyzer.heuristic_checks(ContractInput(code=_RISKY_ANCHOR), "lib.rs")
        types = _types(findings)
        assert {
            "unchecked-pda-bump",
            "arbitrary-cpi",
            "account-reinitialization",
            "missing-owner-check",
            "compute-unit-risk",
        } <= types
        cpi = next(v for v in findings if v.type == "arbitrary-cpi")
        assert cpi.severity is Severity.CRITICAL
        assert cpi.metadata["instruction"] == "relay"

    def test_checked_math_not_flagged(self, analyzer):
        code = ANCHOR_SOURCE.replace("vault.balance - amount", "vault.balance.checked_sub(amount).unwrap()")
        assert "integer-overflow" not in _types(analyzer.heuristic_checks(ContractInput(code=code), "lib.rs"))

    def test_validation(self, analyzer):
        assert analyzer.validate_contract(ContractInput(code=ANCHOR_SOURCE, filename="lib.rs")).is_valid
        result = analyzer.validate_contract(ContractInput(code="let x = 1;", filename="lib.rs"))
        assert "No Rust function definition found" in result.errors

    def test_default_tool_is_clippy(self, analyzer):
        assert isinstance(analyzer.static_tool, ClippyAdapter)


# ── Cardano ──────────────────────────────────────────────────────────────────


class TestCardanoAnalyzer:
    @pytest.fixture
    def analyzer(self, registry):
        return CardanoAnalyzer(registry.get("cardano"))

    def test_sample_validator(self, analyzer):
        findings = analyzer.heuristic_checks(ContractInput(code=PLUTUS_SOURCE), "Vault.hs")
        lines = {v.type: v.location.line for v in findings}
        assert lines == {
            "plutus-missing-context": 7,
            "plutus-unsafe-datum": 7,
            "cardano-datum-validation": 8,
            "cardano-eutxo-compliance": 7,
        }

    def test_context_aware_validator(self, analyzer):
        code = (
            "mkValidator :: Datum -> Redeemer -> ScriptContext -> Bool\n"
            "mkValidator d r ctx = fromBuiltinData d && check (scriptContextTxInfo ctx)\n"
        )
        types = _types(analyzer.heuristic_checks(ContractInput(code=code), "V.hs"))
        assert "plutus-missing-context" not in types
        assert "cardano-eutxo-compliance" not in types
        assert "cardano-datum-validation" not in types

    def test_script_efficiency(self, analyzer):
        code = 'check xs = length (filter ok xs) > 0 && trace ("n=" ++ show n) True\n'
        findings = analyzer.heuristic_checks(ContractInput(code=code), "V.hs")
        severities = sorted(v.severity.value for v in findings if v.type == "cardano-script-efficiency")
        assert severities == ["low", "medium"]

    def test_haskell_comments_in_validation(self, analyzer):
        result = analyzer.validate_contract(ContractInput(code=PLUTUS_SOURCE, filename="Vault.hs"))
        assert result.is_valid
        broken = analyzer.validate_contract(ContractInput(code="f :: Int\nf = (1 -- )\n"))
        assert not broken.is_valid


# ── Move ─────────────────────────────────────────────────────────────────────


_APTOS_BANK = """module me::bank {
    struct Pool has key { total: u64 }
    public fun total(addr: address): u64 {
        borrow_global<Pool>(addr).total
    }
    public entry fun open(amount: u64) {
        move_to(&amount, Pool { total: amount });
    }
    public fun init_module(account: &signer) { }
}
"""

_SUI_GAME = """module me::game {
    use sui::object::UID;
    struct Board has key { id: UID, score: u64 }
    public entry fun bump(board: &mut Board) {
        board.score = board.score + 1;
    }
    public entry fun reset(_cap: &AdminCap, board: &mut Board) {
        board.score = 0;
    }
    public fun init(ctx: &mut TxContext) { }
}
"""


class TestMoveAnalyzers:
    def test_parse_module(self):
        module = parse_move_module(APTOS_SOURCE)
        assert (module.module_address, module.module_name) == ("0x1", "vault")
        [vault] = module.structs
        assert vault.has_key and not vault.has_drop
        [deposit] = module.functions
        assert deposit.is_entry
        assert deposit.acquires == ["Vault"]
        assert deposit.borrows_global == ["Vault"]

    def test_aptos_sample(self, registry):
        findings = AptosAnalyzer(registry.get("aptos")).heuristic_checks(
            ContractInput(code=APTOS_SOURCE), "vault.move",
        )
        assert _types(findings) == {"flash-loan-pattern"}

    def test_aptos_bank(self, registry):
        findings = AptosAnalyzer(registry.get("aptos")).heuristic_checks(
            ContractInput(code=_APTOS_BANK), "bank.move",
        )
        lines = {v.type: v.location.line for v in findings}
        assert lines == {"missing-acquires": 3, "unchecked-signer": 6, "unprotected-init": 9}

    def test_sui_object_authorization(self, registry):
        findings = SuiAnalyzer(registry.get("sui")).heuristic_checks(
            ContractInput(code=_SUI_GAME), "game.move",
        )
        signer = [v for v in findings if v.type == "unchecked-signer"]
        assert [v.metadata["function"] for v in signer] == ["bump"]
        assert "unprotected-init" in _types(findings)

    def test_validation(self, registry):
        analyzer = AptosAnalyzer(registry.get("aptos"))
        assert analyzer.validate_contract(ContractInput(code=APTOS_SOURCE, filename="vault.move")).is_valid
        result = analyzer.validate_contract(ContractInput(code="fun f() {}", filename="f.move"))
        assert "No Move module definition found" in result.errors


# ── Layer orchestration ──────────────────────────────────────────────────────


class TestChainAnalyzerAnalyze:
    @pytest.fixture
    def ethereum(self, registry):
        return registry.get("ethereum")

    @pytest.mark.asyncio
    async def test_static_and_ai_merge(self, ethereum, make_vuln):
        static = _static_tool(AnalysisResult(
            success=True,
            vulnerabilities=[make_vuln("tx-origin", line=9, confidence=0.75, source=FindingSource.STATIC)],
        ))
        ai = _ensemble(AnalysisResult(
            success=True, vulnerabilities=[make_vuln("tx-origin", line=10, confidence=0.6)],
        ))
        analyzer = EVMAnalyzer(ethereum, static_tool=static, ensemble=ai)
        result = await analyzer.analyze([ContractInput(code=SOLIDITY_SOURCE, filename="Vault.sol")])

        assert result.success is True
        by_type = {v.type: v for v in result.vulnerabilities}
        assert by_type["tx-origin"].source is FindingSource.COMBINED
        assert by_type["tx-origin"].confidence == pytest.approx(0.94)
        assert by_type["solc-version"].source is FindingSource.STATIC
        assert result.platform_specific["contracts_analyzed"] == 1
        ai.analyze.assert_awaited_once()
        assert ai.analyze.await_args.kwargs["platform"] == "ethereum"

    @pytest.mark.asyncio
    async def test_static_failure_fails_platform(self, ethereum, make_vuln):
        static = _static_tool(AnalysisResult.failure(ErrorCode.TOOL_NOT_INSTALLED, "slither missing"))
        ai = _ensemble(AnalysisResult(success=True, vulnerabilities=[make_vuln()]))
        result = await EVMAnalyzer(ethereum, static_tool=static, ensemble=ai).analyze(
            [ContractInput(code=SOLIDITY_SOURCE, filename="Vault.sol")],
        )
        assert result.success is False
        assert ErrorCode.TOOL_NOT_INSTALLED in result.error_codes()
        assert "reentrancy-eth" in _types(result.vulnerabilities)

    @pytest.mark.asyncio
    async def test_ai_failure_is_warning_when_static_succeeds(self, ethereum):
        static = _static_tool(AnalysisResult(success=True))
        ai = _ensemble(AnalysisResult.failure(ErrorCode.AI_ANALYSIS_FAILED, "all models failed"))
        result = await EVMAnalyzer(ethereum, static_tool=static, ensemble=ai).analyze(
            [ContractInput(code=SOLIDITY_SOURCE)],
        )
        assert result.success is True
        assert result.errors == []
        assert ErrorCode.AI_ANALYSIS_FAILED in {w.code for w in result.warnings}

    @pytest.mark.asyncio
    async def test_ai_only(self, ethereum, make_vuln):
        static = _static_tool(AnalysisResult(success=True))
        ai = _ensemble(AnalysisResult(success=True, vulnerabilities=[make_vuln()]))
        result = await EVMAnalyzer(ethereum, static_tool=static, ensemble=ai).analyze(
            [ContractInput(code=SOLIDITY_SOURCE)], AnalysisOptions(include_static=False),
        )
        assert result.success is True
        assert _types(result.vulnerabilities) == {"reentrancy-eth"}
        static.analyze.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ai_only_failure(self, ethereum):
        ai = _ensemble(AnalysisResult.failure(ErrorCode.AI_ANALYSIS_FAILED, "down"))
        result = await EVMAnalyzer(ethereum, static_tool=_static_tool(AnalysisResult(success=True)), ensemble=ai).analyze(
            [ContractInput(code=SOLIDITY_SOURCE)], AnalysisOptions(include_static=False),
        )
        assert result.success is False
        assert result.error_codes() == {ErrorCode.AI_ANALYSIS_FAILED}

    @pytest.mark.asyncio
    async def test_invalid_contract_skipped(self, ethereum):
        static = _static_tool(AnalysisResult(success=True))
        result = await EVMAnalyzer(ethereum, static_tool=static).analyze([ContractInput(code="")])
        assert result.success is False
        assert result.error_codes() == {ErrorCode.VALIDATION_FAILED}
        static.analyze.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_contracts(self, ethereum):
        result = await EVMAnalyzer(ethereum, static_tool=_static_tool(AnalysisResult(success=True))).analyze([])
        assert result.success is False
        assert result.error_codes() == {ErrorCode.VALIDATION_FAILED}

    @pytest.mark.asyncio
    async def test_options_filter_findings(self, ethereum):
        static = _static_tool(AnalysisResult(success=True))
        analyzer = EVMAnalyzer(ethereum, static_tool=static)
        contracts = [ContractInput(code=SOLIDITY_SOURCE, filename="Vault.sol")]

        high_only = await analyzer.analyze(contracts, AnalysisOptions(severity_threshold=Severity.HIGH))
        assert _types(high_only.vulnerabilities) == {"tx-origin"}

        without_pragma = await analyzer.analyze(contracts, AnalysisOptions(disabled_detectors=["solc-version"]))
        assert _types(without_pragma.vulnerabilities) == {"tx-origin"}

    @pytest.mark.asyncio
    async def test_platform_mismatch_warns(self, ethereum):
        static = _static_tool(AnalysisResult(success=True))
        result = await EVMAnalyzer(ethereum, static_tool=static).analyze(
            [ContractInput(code=SOLIDITY_SOURCE, platform="polygon")],
        )
        assert result.success is True
        assert any(w.code is ErrorCode.NOTICE and "does not match" in w.message for w in result.warnings)

    @pytest.mark.asyncio
    async def test_check_health_delegates_to_tool(self, ethereum):
        static = _static_tool(AnalysisResult(success=True))
        health = await EVMAnalyzer(ethereum, static_tool=static).check_health()
        assert health.installed is True
        static.check_installation.assert_awaited_once()


# ── Dispatch ─────────────────────────────────────────────────────────────────


class TestAnalyzerDispatch:
    def test_evm_platforms_share_analyzer_class(self, registry):
        dispatch = AnalyzerDispatch(registry)
        for pid in ("ethereum", "bsc", "polygon"):
            analyzer = dispatch.get_analyzer(pid)
            assert isinstance(analyzer, EVMAnalyzer)
            assert analyzer.platform_id == pid

    def test_unknown_or_inactive(self, registry):
        dispatch = AnalyzerDispatch(registry)
        assert dispatch.get_analyzer("tezos") is None
        registry.deactivate("sui")
        assert dispatch.get_analyzer("sui") is None
        assert "sui" not in dispatch.supported_platforms()

    def test_unimplemented_platform(self, registry):
        dispatch = AnalyzerDispatch(registry, analyzer_classes={"ethereum": EVMAnalyzer})
        assert dispatch.get_analyzer("solana") is None
        assert dispatch.supported_platforms() == ["ethereum"]

    def test_analyzers_are_cached(self, registry):
        dispatch = AnalyzerDispatch(registry)
        first = dispatch.get_analyzer("solana")
        assert dispatch.get_analyzer("solana") is first

    def test_register_replaces_cached_instance(self, registry):
        class CustomSolana(SolanaAnalyzer):
            pass

        dispatch = AnalyzerDispatch(registry)
        dispatch.get_analyzer("solana")
        dispatch.register("solana", CustomSolana)
        assert isinstance(dispatch.get_analyzer("solana"), CustomSolana)

    def test_shared_ensemble_injected(self, registry):
        ensemble = MagicMock()
        assert AnalyzerDispatch(registry, ensemble=ensemble).get_analyzer("cardano").ensemble is ensemble

    @pytest.mark.asyncio
    async def test_check_all_health(self, registry):
        class BrokenSolana(SolanaAnalyzer):
            async def check_health(self):
                raise RuntimeError("boom")

        dispatch = AnalyzerDispatch(
            registry, analyzer_classes={"ethereum": EVMAnalyzer, "solana": BrokenSolana},
        )
        with patch("omniaudit.analyzer.tools.base.shutil.which", return_value=None):
            health = await dispatch.check_all_health()

        assert set(health) == {"ethereum", "solana"}
        assert health["ethereum"].installed is False
        assert health["solana"].error == "boom"

    @pytest.mark.asyncio
    async def test_validate_unknown_analyzer(self, registry):
        health = await AnalyzerDispatch(registry).validate_analyzer("tezos")
        assert health.installed is False
