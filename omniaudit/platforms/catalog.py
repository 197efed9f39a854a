"""Default platform catalog.

Seven platforms ship by default:

    ethereum  Solidity / Vyper on the EVM
    bsc       BNB Smart Chain (EVM, BEP-20 flavoured)
    polygon   Polygon PoS (EVM, FxPortal bridge flavoured)
    solana    Rust / Anchor programs
    cardano   Plutus validators (Haskell)
    aptos     Move on Aptos
    sui       Move on Sui

BSC and Polygon share Solidity with Ethereum; their weights are tilted so that
generic Solidity ranks Ethereum first and only chain-specific idioms
(BEP-20, FxPortal, ...) pull a contract towards them.
"""

from __future__ import annotations

import re

from omniaudit.core.types import ValidationResult
from omniaudit.platforms.registry import (
    BlockchainPlatform,
    DetectionPattern,
    PatternKind,
    PlatformRegistry,
    ValidationRule,
)

# Execution models consumed by the cross-chain interoperability catalog
EVM_ACCOUNT = "evm-account"
PROGRAM_ACCOUNT = "program-account"
EUTXO = "eutxo"
RESOURCE = "resource"


# ── Validation rules ─────────────────────────────────────────────────────────


_PRAGMA_DIRECTIVE_RE = re.compile(r"pragma\s+solidity\s+([^;]+);")
_CONTRACT_DEF_RE = re.compile(r"\b(contract|interface|library)\s+\w+")


def _check_solidity_pragma(code: str, filename: str | None = None) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []
    if "pragma solidity" in code:
        if not _PRAGMA_DIRECTIVE_RE.search(code):
            errors.append("Invalid pragma solidity directive")
    elif _CONTRACT_DEF_RE.search(code):
        warnings.append("Missing pragma solidity directive")
    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def _check_contract_definition(code: str, filename: str | None = None) -> ValidationResult:
    warnings: list[str] = []
    if code.strip() and not _CONTRACT_DEF_RE.search(code):
        warnings.append("No contract, interface, or library definition found")
    return ValidationResult(warnings=warnings)


def _check_anchor_program(code: str, filename: str | None = None) -> ValidationResult:
    warnings: list[str] = []
    if "use anchor_lang::prelude::*" in code and "#[program]" not in code:
        warnings.append("Anchor imports found but no #[program] attribute")
    return ValidationResult(warnings=warnings)


def _check_plutus_validator(code: str, filename: str | None = None) -> ValidationResult:
    warnings: list[str] = []
    if ("Plutus.V" in code or "PlutusTx" in code) and "validator" not in code:
        warnings.append("Plutus imports found but no validator function")
    return ValidationResult(warnings=warnings)


def _check_move_module(code: str, filename: str | None = None) -> ValidationResult:
    warnings: list[str] = []
    if "module " not in code:
        warnings.append("No Move module definition found")
    return ValidationResult(warnings=warnings)


_SOLIDITY_RULES = (
    ValidationRule(
        id="solidity-pragma",
        name="Solidity Pragma Check",
        description="Validates the pragma solidity directive",
        validator=_check_solidity_pragma,
    ),
    ValidationRule(
        id="contract-definition",
        name="Contract Definition Check",
        description="Requires a contract, interface or library definition",
        validator=_check_contract_definition,
    ),
)

_MOVE_RULES = (
    ValidationRule(
        id="move-module",
        name="Move Module Check",
        description="Requires a Move module definition",
        validator=_check_move_module,
    ),
)


# ── Detection patterns ───────────────────────────────────────────────────────


def _p(kind: PatternKind, pattern: str, weight: float, description: str, flags: int = 0) -> DetectionPattern:
    return DetectionPattern(
        kind=kind, matcher=re.compile(pattern, flags), weight=weight, description=description,
    )


_SOLIDITY_PRAGMA = _p(PatternKind.PRAGMA, r"pragma\s+solidity", 0.9, "Solidity pragma directive", re.IGNORECASE)
_SOLIDITY_CONTRACT = _p(PatternKind.SYNTAX, r"\b(contract|interface|library)\s+\w+", 0.8, "Contract definition")


def _ethereum() -> BlockchainPlatform:
    return BlockchainPlatform(
        id="ethereum",
        name="Ethereum",
        display_name="Ethereum & EVM Compatible",
        execution_model=EVM_ACCOUNT,
        languages=("solidity", "vyper"),
        file_extensions=(".sol", ".vy"),
        description="Ethereum Virtual Machine smart contracts",
        detection_patterns=(
            _SOLIDITY_PRAGMA,
            _SOLIDITY_CONTRACT,
            _p(PatternKind.KEYWORD, r"\b(function|modifier|event|struct|enum)\b", 0.5, "Solidity keywords"),
            _p(PatternKind.FILENAME, r"\.(sol|vy)$", 0.6, "Solidity / Vyper file extension", re.IGNORECASE),
            _p(PatternKind.IMPORT, r"import\s+[\"'].*\.sol[\"']", 0.4, "Solidity import"),
        ),
        validation_rules=_SOLIDITY_RULES,
    )


def _bsc() -> BlockchainPlatform:
    return BlockchainPlatform(
        id="bsc",
        name="BNB Smart Chain",
        display_name="BNB Smart Chain",
        execution_model=EVM_ACCOUNT,
        languages=("solidity",),
        file_extensions=(".sol",),
        description="EVM compatible chain secured by BNB validators",
        detection_patterns=(
            _p(PatternKind.PRAGMA, r"pragma\s+solidity", 0.5, "Solidity pragma directive", re.IGNORECASE),
            _p(PatternKind.SYNTAX, r"\b(contract|interface|library)\s+\w+", 0.4, "Contract definition"),
            _p(PatternKind.KEYWORD, r"\b(I?BEP20|WBNB|PancakeSwap|IPancake\w*)\b", 1.0, "BSC token / DEX idioms"),
            _p(PatternKind.IMPORT, r"import\s+[\"'].*(pancake|bep20|bsc).*[\"']", 0.7, "BSC library import", re.IGNORECASE),
        ),
        validation_rules=_SOLIDITY_RULES,
    )


def _polygon() -> BlockchainPlatform:
    return BlockchainPlatform(
        id="polygon",
        name="Polygon",
        display_name="Polygon PoS",
        execution_model=EVM_ACCOUNT,
        languages=("solidity",),
        file_extensions=(".sol",),
        description="EVM compatible sidechain with checkpointing to Ethereum",
        detection_patterns=(
            _p(PatternKind.PRAGMA, r"pragma\s+solidity", 0.5, "Solidity pragma directive", re.IGNORECASE),
            _p(PatternKind.SYNTAX, r"\b(contract|interface|library)\s+\w+", 0.4, "Contract definition"),
            _p(PatternKind.KEYWORD, r"\b(WMATIC|FxBaseChildTunnel|FxBaseRootTunnel|fxChild|IChildToken)\b", 1.0, "Polygon bridge / token idioms"),
            _p(PatternKind.IMPORT, r"import\s+[\"'].*(maticnetwork|fx-portal|polygon).*[\"']", 0.7, "Polygon library import", re.IGNORECASE),
        ),
        validation_rules=_SOLIDITY_RULES,
    )


def _solana() -> BlockchainPlatform:
    return BlockchainPlatform(
        id="solana",
        name="Solana",
        display_name="Solana",
        execution_model=PROGRAM_ACCOUNT,
        languages=("rust",),
        file_extensions=(".rs",),
        description="Rust programs, typically written with the Anchor framework",
        detection_patterns=(
            _p(PatternKind.IMPORT, r"use\s+anchor_lang::", 0.9, "Anchor framework import"),
            _p(PatternKind.SYNTAX, r"#\[program\]", 0.8, "Anchor program attribute"),
            _p(PatternKind.SYNTAX, r"#\[(account|derive|instruction)", 0.7, "Anchor account / instruction attributes"),
            _p(PatternKind.KEYWORD, r"\b(Pubkey|AccountInfo|ProgramResult)\b", 0.6, "Solana runtime types"),
            _p(PatternKind.FILENAME, r"\.rs$", 0.3, "Rust file extension", re.IGNORECASE),
        ),
        validation_rules=(
            ValidationRule(
                id="anchor-program",
                name="Anchor Program Check",
                description="Anchor imports require a #[program] module",
                validator=_check_anchor_program,
            ),
        ),
    )


def _cardano() -> BlockchainPlatform:
    return BlockchainPlatform(
        id="cardano",
        name="Cardano",
        display_name="Cardano",
        execution_model=EUTXO,
        languages=("haskell", "plutus"),
        file_extensions=(".hs", ".plutus"),
        description="Plutus validators on the extended UTXO ledger",
        detection_patterns=(
            _p(PatternKind.IMPORT, r"import\s+Plutus\.", 0.9, "Plutus import"),
            _p(PatternKind.IMPORT, r"import\s+PlutusTx", 0.8, "PlutusTx import"),
            _p(PatternKind.KEYWORD, r"\bvalidator\b", 0.7, "Validator definition"),
            _p(PatternKind.KEYWORD, r"\b(BuiltinData|ScriptContext|TxInfo)\b", 0.6, "Plutus ledger types"),
            _p(PatternKind.FILENAME, r"\.(hs|plutus)$", 0.4, "Haskell / Plutus file extension", re.IGNORECASE),
        ),
        validation_rules=(
            ValidationRule(
                id="plutus-validator",
                name="Plutus Validator Check",
                description="Plutus imports require a validator",
                validator=_check_plutus_validator,
            ),
        ),
    )


def _aptos() -> BlockchainPlatform:
    return BlockchainPlatform(
        id="aptos",
        name="Aptos",
        display_name="Aptos",
        execution_model=RESOURCE,
        languages=("move",),
        file_extensions=(".move",),
        description="Move modules on Aptos",
        detection_patterns=(
            _p(PatternKind.SYNTAX, r"module\s+[\w:]+::\w+", 0.9, "Move module declaration"),
            _p(PatternKind.KEYWORD, r"\b(resource|acquires|borrow_global)\b", 0.8, "Global resource access"),
            _p(PatternKind.IMPORT, r"use\s+(aptos_framework|aptos_std)::", 0.7, "Aptos framework import"),
            _p(PatternKind.FILENAME, r"\.move$", 0.3, "Move file extension", re.IGNORECASE),
        ),
        validation_rules=_MOVE_RULES,
    )


def _sui() -> BlockchainPlatform:
    return BlockchainPlatform(
        id="sui",
        name="Sui",
        display_name="Sui",
        execution_model=RESOURCE,
        languages=("move",),
        file_extensions=(".move",),
        description="Object-centric Move modules on Sui",
        detection_patterns=(
            _p(PatternKind.IMPORT, r"use\s+sui::", 0.9, "Sui framework import"),
            _p(PatternKind.SYNTAX, r"module\s+[\w:]+::\w+", 0.8, "Move module declaration"),
            _p(PatternKind.KEYWORD, r"\b(UID|TxContext|object::new)\b", 0.7, "Sui object model"),
            _p(PatternKind.FILENAME, r"\.move$", 0.3, "Move file extension", re.IGNORECASE),
        ),
        validation_rules=_MOVE_RULES,
    )


DEFAULT_PLATFORMS = (_ethereum, _bsc, _polygon, _solana, _cardano, _aptos, _sui)


def default_platforms() -> list[BlockchainPlatform]:
    return [build() for build in DEFAULT_PLATFORMS]


def default_registry() -> PlatformRegistry:
    """Build a registry holding every default platform."""
    return PlatformRegistry(default_platforms())
