"""EVM analyzer: Solidity contracts on Ethereum, BNB Smart Chain and Polygon.

Slither does the heavy lifting. The heuristics below reuse Slither's detector
ids as finding types, so a heuristic hit and the matching Slither result
collapse into one finding during de-duplication.

Heuristics:
    tx-origin                tx.origin used in an authorization check
    unchecked-lowlevel       low-level call / send whose return value is dropped
    controlled-delegatecall  delegatecall to a possibly user-supplied target
    suicidal                 selfdestruct reachable without access control
    timestamp                block.timestamp in conditional logic
    solc-version             floating pragma
"""

from __future__ import annotations

import re

from omniaudit.analyzer.base import ChainAnalyzer
from omniaudit.analyzer.tools.slither import SlitherAdapter
from omniaudit.core.types import CanonicalVulnerability, ContractInput, Severity

_TX_ORIGIN_AUTH_RE = re.compile(r"\b(require|assert|if)\s*\(.*\btx\.origin\b")
# Statement-level call whose boolean result is never bound or checked
_UNCHECKED_CALL_RE = re.compile(
    r"^\s*[A-Za-z_][\w.\[\]]*(?:\([^()]*\))?\.(call|send)\s*[({]"
)
_DELEGATECALL_RE = re.compile(r"\.delegatecall\s*\(")
_SELFDESTRUCT_RE = re.compile(r"\b(selfdestruct|suicide)\s*\(")
_ACCESS_GUARD_RE = re.compile(
    r"onlyOwner|onlyAdmin|onlyRole|require\s*\(\s*msg\.sender\s*==|_checkOwner|\bauth\b"
)
_TIMESTAMP_CONDITION_RE = re.compile(r"\b(require|if|assert|while)\s*\(.*\bblock\.timestamp\b")
_FLOATING_PRAGMA_RE = re.compile(r"pragma\s+solidity\s*(\^|>=|>|~)")


def _code_lines(source: str) -> list[tuple[int, str]]:
    """(line number, text) pairs with comment lines dropped."""
    pairs: list[tuple[int, str]] = []
    in_block = False
    for lineno, line in enumerate(source.split("\n"), start=1):
        stripped = line.strip()
        if in_block:
            if "*/" in stripped:
                in_block = False
            continue
        if stripped.startswith("/*"):
            in_block = "*/" not in stripped
            continue
        if stripped.startswith("//") or stripped.startswith("*"):
            continue
        pairs.append((lineno, line.split("//", 1)[0]))
    return pairs


class EVMAnalyzer(ChainAnalyzer):
    """Shared analyzer for every EVM-compatible platform."""

    required_declarations = (
        (
            re.compile(r"\b(contract|interface|library)\s+\w+"),
            "No contract, interface, or library definition found",
        ),
    )

    def build_static_tool(self) -> SlitherAdapter:
        return SlitherAdapter(platform=self.platform_id)

    def heuristic_checks(self, contract: ContractInput, filename: str) -> list[CanonicalVulnerability]:
        lines = _code_lines(contract.code)
        findings: list[CanonicalVulnerability] = []
        findings.extend(self._check_tx_origin(lines, filename))
        findings.extend(self._check_unchecked_calls(lines, filename))
        findings.extend(self._check_delegatecall(lines, filename))
        findings.extend(self._check_selfdestruct(lines, filename))
        findings.extend(self._check_timestamp(lines, filename))
        findings.extend(self._check_floating_pragma(lines, filename))
        return findings

    # ── Heuristics ───────────────────────────────────────────────────

    def _check_tx_origin(self, lines: list[tuple[int, str]], filename: str) -> list[CanonicalVulnerability]:
        return [
            self.finding(
                "tx-origin",
                Severity.HIGH,
                "Use of tx.origin for authorization",
                "tx.origin is used for authorization. A malicious contract can trick a user "
                "into calling it and then call this contract with the user's tx.origin.",
                filename,
                lineno,
                confidence=0.85,
                recommendation="Replace `tx.origin` with `msg.sender` for authorization checks.",
            )
            for lineno, line in lines
            if _TX_ORIGIN_AUTH_RE.search(line)
        ]

    def _check_unchecked_calls(self, lines: list[tuple[int, str]], filename: str) -> list[CanonicalVulnerability]:
        findings = []
        for lineno, line in lines:
            match = _UNCHECKED_CALL_RE.search(line)
            if not match:
                continue
            findings.append(self.finding(
                "unchecked-lowlevel",
                Severity.MEDIUM,
                f"Unchecked low-level {match.group(1)}",
                f"The return value of a low-level `{match.group(1)}` is ignored; a failed "
                "call will not revert the transaction.",
                filename,
                lineno,
                confidence=0.7,
                recommendation="Capture the success flag and `require` it, or use OpenZeppelin's Address library.",
            ))
        return findings

    def _check_delegatecall(self, lines: list[tuple[int, str]], filename: str) -> list[CanonicalVulnerability]:
        return [
            self.finding(
                "controlled-delegatecall",
                Severity.HIGH,
                "Delegatecall to a potentially untrusted target",
                "delegatecall executes foreign code in this contract's storage context. "
                "If the target can be influenced by callers, storage and funds can be hijacked.",
                filename,
                lineno,
                confidence=0.55,
                recommendation="Only delegatecall to immutable, trusted implementation addresses.",
            )
            for lineno, line in lines
            if _DELEGATECALL_RE.search(line)
        ]

    def _check_selfdestruct(self, lines: list[tuple[int, str]], filename: str) -> list[CanonicalVulnerability]:
        findings = []
        for index, (lineno, line) in enumerate(lines):
            if not _SELFDESTRUCT_RE.search(line):
                continue
            window = "\n".join(text for _, text in lines[max(0, index - 10):index + 1])
            if _ACCESS_GUARD_RE.search(window):
                continue
            findings.append(self.finding(
                "suicidal",
                Severity.HIGH,
                "Unprotected selfdestruct",
                "selfdestruct can be reached without access control. Anyone could destroy "
                "the contract and redirect its balance.",
                filename,
                lineno,
                confidence=0.7,
                recommendation="Guard the call with an owner check or remove selfdestruct (deprecated by EIP-6049).",
            ))
        return findings

    def _check_timestamp(self, lines: list[tuple[int, str]], filename: str) -> list[CanonicalVulnerability]:
        return [
            self.finding(
                "timestamp",
                Severity.LOW,
                "Block timestamp used in conditional logic",
                "block.timestamp can be nudged by block producers, which may allow bypassing "
                "time-based conditions.",
                filename,
                lineno,
                confidence=0.5,
                recommendation="Avoid strict comparisons with block.timestamp and allow for drift.",
            )
            for lineno, line in lines
            if _TIMESTAMP_CONDITION_RE.search(line)
        ]

    def _check_floating_pragma(self, lines: list[tuple[int, str]], filename: str) -> list[CanonicalVulnerability]:
        return [
            self.finding(
                "solc-version",
                Severity.INFORMATIONAL,
                "Floating pragma",
                "The compiler version is not pinned, so the contract may be deployed with an "
                "untested compiler release.",
                filename,
                lineno,
                confidence=0.9,
                recommendation="Pin the pragma to the exact compiler version used in testing.",
            )
            for lineno, line in lines
            if _FLOATING_PRAGMA_RE.search(line)
        ]
