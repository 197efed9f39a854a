"""Solana / Anchor program analyzer: parses Rust-based Anchor programs
and detects common vulnerabilities specific to the Solana runtime.

Heuristics:
    missing-signer              privileged instruction without signer check
    missing-owner-check         UncheckedAccount / AccountInfo without constraints
    integer-overflow            unchecked arithmetic on token amounts
    unchecked-pda-bump          PDA initialised without storing its canonical bump
    arbitrary-cpi               cross-program invocation to an unvalidated program
    account-reinitialization    ``init`` without any other constraint
    duplicate-mutable-accounts  several mutable accounts of the same type
    compute-unit-risk           unbounded loops over caller-supplied accounts
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from omniaudit.analyzer.base import ChainAnalyzer, find_block_end, line_of
from omniaudit.analyzer.tools.clippy import ClippyAdapter
from omniaudit.core.types import CanonicalVulnerability, ContractInput, Severity


# ── Types ────────────────────────────────────────────────────────────────────


@dataclass
class AnchorInstruction:
    """Parsed Anchor instruction handler."""
    name: str
    line: int
    body: str = ""
    body_end_line: int = 0
    has_signer_check: bool = False
    performs_cpi: bool = False


@dataclass
class AnchorAccount:
    """Parsed account constraint from #[derive(Accounts)]."""
    name: str
    account_type: str
    line: int
    constraints: set[str] = field(default_factory=set)
    is_mut: bool = False
    has_constraint: bool = False
    has_init: bool = False
    seeds: list[str] = field(default_factory=list)
    bump: str = ""


@dataclass
class AnchorProgram:
    program_id: str = ""
    instructions: list[AnchorInstruction] = field(default_factory=list)
    accounts: list[AnchorAccount] = field(default_factory=list)


# ── Parser ───────────────────────────────────────────────────────────────────


_INSTRUCTION_RE = re.compile(r"pub\s+fn\s+(\w+)\s*[<(]", re.MULTILINE)
_ACCOUNT_STRUCT_RE = re.compile(r"#\[derive\(Accounts\)\]\s*pub\s+struct\s+(\w+)", re.MULTILINE)
_ACCOUNT_FIELD_RE = re.compile(
    r"(?:#\[account\((.*?)\)\]\s*)?pub\s+(\w+)\s*:\s*([^\n]+)", re.DOTALL,
)
_CPI_RE = re.compile(r"\b(?:invoke|invoke_signed|CpiContext)\b")
_PROGRAM_ID_RE = re.compile(r'declare_id!\("([^"]+)"\)')
_SEEDS_RE = re.compile(r"seeds\s*=\s*\[([^\]]+)\]")
_BUMP_RE = re.compile(r"\bbump\b\s*(?:=\s*([\w.]+))?")
_BRACKETED_RE = re.compile(r"\[[^\]]*\]")
_TOKEN_ARITH_RE = re.compile(r"\b(\w+)\s*([+\-*])=?\s*(\w+)")
_UNBOUNDED_LOOP_RE = re.compile(r"\bfor\s+\w+\s+in\s+[^{]*remaining_accounts|\bloop\s*\{")

_PRIVILEGED_KEYWORDS = ("transfer", "mint", "burn", "close", "withdraw", "admin", "set_authority")
_TOKEN_VARS = {"amount", "balance", "supply", "total", "price", "lamports", "fee"}
_BARE_INIT_CONSTRAINTS = {"init", "payer", "space", "mut"}


def parse_anchor_program(source: str) -> AnchorProgram:
    """Extract instructions and account constraints from an Anchor program."""
    program = AnchorProgram()

    pid_match = _PROGRAM_ID_RE.search(source)
    if pid_match:
        program.program_id = pid_match.group(1)

    for m in _INSTRUCTION_RE.finditer(source):
        instr = AnchorInstruction(name=m.group(1), line=line_of(source, m.start()))
        body_start = source.find("{", m.end())
        if body_start >= 0:
            body_end = find_block_end(source, body_start)
            instr.body = source[body_start:body_end]
            instr.body_end_line = line_of(source, body_end)
            instr.has_signer_check = "has_one" in instr.body or "signer" in instr.body.lower()
            instr.performs_cpi = bool(_CPI_RE.search(instr.body))
        program.instructions.append(instr)

    for struct_match in _ACCOUNT_STRUCT_RE.finditer(source):
        struct_start = source.find("{", struct_match.end())
        if struct_start < 0:
            continue
        struct_body = source[struct_start:find_block_end(source, struct_start)]

        for field_match in _ACCOUNT_FIELD_RE.finditer(struct_body):
            constraints = field_match.group(1) or ""
            names = _constraint_names(constraints)
            acct = AnchorAccount(
                name=field_match.group(2),
                account_type=field_match.group(3).strip().rstrip(","),
                line=line_of(source, struct_start + field_match.start(2)),
                constraints=names,
                is_mut="mut" in names,
                has_constraint=bool(names),
                has_init=bool(names & {"init", "init_if_needed"}),
            )
            seeds_match = _SEEDS_RE.search(constraints)
            if seeds_match:
                acct.seeds = [s.strip() for s in seeds_match.group(1).split(",")]
            bump_match = _BUMP_RE.search(constraints)
            if bump_match:
                acct.bump = bump_match.group(1) or "auto"
            program.accounts.append(acct)

    return program


# ── Analyzer ─────────────────────────────────────────────────────────────────


class SolanaAnalyzer(ChainAnalyzer):
    """Anchor / native Solana programs, linted with cargo clippy."""

    required_declarations = (
        (re.compile(r"\bfn\s+\w+"), "No Rust function definition found"),
    )

    def build_static_tool(self) -> ClippyAdapter:
        return ClippyAdapter(platform=self.platform_id)

    def heuristic_checks(self, contract: ContractInput, filename: str) -> list[CanonicalVulnerability]:
        source = contract.code
        program = parse_anchor_program(source)
        findings: list[CanonicalVulnerability] = []
        findings.extend(self._detect_missing_signer(program, filename))
        findings.extend(self._detect_missing_owner(program, filename))
        findings.extend(self._detect_integer_overflow(source, filename))
        findings.extend(self._detect_unchecked_pda_bump(program, filename))
        findings.extend(self._detect_arbitrary_cpi(program, filename))
        findings.extend(self._detect_reinitialization(program, filename))
        findings.extend(self._detect_duplicate_mutable(program, filename))
        findings.extend(self._detect_compute_unit_risk(source, filename))
        return findings

    # ── Detectors ────────────────────────────────────────────────────

    def _detect_missing_signer(self, program: AnchorProgram, filename: str) -> list[CanonicalVulnerability]:
        findings = []
        for instr in program.instructions:
            if not any(kw in instr.name.lower() for kw in _PRIVILEGED_KEYWORDS):
                continue
            if instr.has_signer_check:
                continue
            findings.append(self.finding(
                "missing-signer",
                Severity.HIGH,
                "Missing signer check on privileged instruction",
                f"Instruction `{instr.name}` performs privileged operations but does not "
                f"verify that the calling account is an authorized signer.",
                filename,
                instr.line,
                confidence=0.85,
                recommendation="Add a `Signer` type or `has_one = authority` constraint to the accounts struct.",
                instruction=instr.name,
            ))
        return findings

    def _detect_missing_owner(self, program: AnchorProgram, filename: str) -> list[CanonicalVulnerability]:
        findings = []
        for acct in program.accounts:
            if not acct.account_type.startswith(("UncheckedAccount", "AccountInfo")) or acct.has_constraint:
                continue
            findings.append(self.finding(
                "missing-owner-check",
                Severity.HIGH,
                "Missing account ownership validation",
                f"Account `{acct.name}` uses `{acct.account_type}` without ownership "
                f"constraints. An attacker could pass a spoofed account owned by a different program.",
                filename,
                acct.line,
                confidence=0.8,
                recommendation=(
                    "Use `Account<'info, T>` with owner checks, or add a `/// CHECK:` comment "
                    "and manual owner validation."
                ),
                account=acct.name,
            ))
        return findings

    def _detect_integer_overflow(self, source: str, filename: str) -> list[CanonicalVulnerability]:
        findings = []
        for lineno, line in enumerate(source.split("\n"), start=1):
            code = line.split("//", 1)[0]
            if ".checked_" in code or "saturating_" in code:
                continue
            for m in _TOKEN_ARITH_RE.finditer(code):
                left, op, right = m.group(1), m.group(2), m.group(3)
                if left.lower() not in _TOKEN_VARS and right.lower() not in _TOKEN_VARS:
                    continue
                findings.append(self.finding(
                    "integer-overflow",
                    Severity.MEDIUM,
                    "Potential integer overflow in token arithmetic",
                    f"Arithmetic operation `{left} {op} {right}` uses unchecked math on token values.",
                    filename,
                    lineno,
                    confidence=0.65,
                    recommendation="Use `.checked_add()`, `.checked_sub()` or `.checked_mul()` for all token arithmetic.",
                    column=m.start() + 1,
                ))
        return findings

    def _detect_unchecked_pda_bump(self, program: AnchorProgram, filename: str) -> list[CanonicalVulnerability]:
        return [
            self.finding(
                "unchecked-pda-bump",
                Severity.MEDIUM,
                "Unchecked PDA bump seed",
                f"Account `{acct.name}` uses PDA seeds but does not store the canonical bump. "
                f"An attacker may derive a different PDA by guessing a non-canonical bump.",
                filename,
                acct.line,
                confidence=0.75,
                recommendation="Store the bump in the account data and use `bump = account.bump` in later instructions.",
                account=acct.name,
            )
            for acct in program.accounts
            if acct.seeds and acct.bump == "auto" and acct.has_init
        ]

    def _detect_arbitrary_cpi(self, program: AnchorProgram, filename: str) -> list[CanonicalVulnerability]:
        findings = []
        for instr in program.instructions:
            if not instr.performs_cpi:
                continue
            if "program_id" in instr.body.lower() or "crate::ID" in instr.body or "Program<" in instr.body:
                continue
            findings.append(self.finding(
                "arbitrary-cpi",
                Severity.CRITICAL,
                "Arbitrary cross-program invocation",
                f"Instruction `{instr.name}` performs CPI without validating the target program ID.",
                filename,
                instr.line,
                confidence=0.7,
                recommendation="Validate the target program ID against a known constant before invoking CPI.",
                instruction=instr.name,
            ))
        return findings

    def _detect_reinitialization(self, program: AnchorProgram, filename: str) -> list[CanonicalVulnerability]:
        findings = []
        for acct in program.accounts:
            if "init_if_needed" not in acct.constraints and not (
                acct.has_init and acct.constraints <= _BARE_INIT_CONSTRAINTS
            ):
                continue
            findings.append(self.finding(
                "account-reinitialization",
                Severity.HIGH,
                "Account reinitialization vulnerability",
                f"Account `{acct.name}` may be initialised more than once. If the discriminator "
                f"check is bypassed, its state can be reset by an attacker.",
                filename,
                acct.line,
                confidence=0.7 if "init_if_needed" in acct.constraints else 0.45,
                recommendation=(
                    "Derive the account from PDA seeds or add an explicit `is_initialized` "
                    "guard when using `init_if_needed`."
                ),
                account=acct.name,
            ))
        return findings

    def _detect_duplicate_mutable(self, program: AnchorProgram, filename: str) -> list[CanonicalVulnerability]:
        findings = []
        by_type: dict[str, list[AnchorAccount]] = {}
        for acct in program.accounts:
            if acct.is_mut:
                by_type.setdefault(acct.account_type, []).append(acct)
        for acct_type, accts in by_type.items():
            if len(accts) < 2:
                continue
            names = [a.name for a in accts]
            findings.append(self.finding(
                "duplicate-mutable-accounts",
                Severity.MEDIUM,
                "Duplicate mutable account references",
                f"Multiple mutable accounts of type `{acct_type}` ({', '.join(names)}) "
                f"could alias the same account, leading to double-spend or state corruption.",
                filename,
                accts[0].line,
                confidence=0.6,
                recommendation="Add `constraint = account_a.key() != account_b.key()` to prevent aliasing.",
                accounts=names,
            ))
        return findings

    def _detect_compute_unit_risk(self, source: str, filename: str) -> list[CanonicalVulnerability]:
        return [
            self.finding(
                "compute-unit-risk",
                Severity.LOW,
                "Unbounded loop may exhaust compute units",
                "The loop is bounded only by caller-controlled input. Large inputs can exceed "
                "the transaction compute budget and make the instruction unusable.",
                filename,
                line_of(source, m.start()),
                confidence=0.5,
                recommendation="Cap the number of iterations or paginate the work across transactions.",
            )
            for m in _UNBOUNDED_LOOP_RE.finditer(source)
        ]


def _constraint_names(constraints: str) -> set[str]:
    """Leading identifier of every `#[account(...)]` clause, e.g. `init`, `payer`, `seeds`."""
    flat = _BRACKETED_RE.sub("", constraints)
    names = set()
    for part in flat.split(","):
        match = re.match(r"\s*(\w+)", part)
        if match:
            names.add(match.group(1))
    return names
