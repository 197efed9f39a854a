"""Cardano analyzer: Plutus validators written in Haskell.

HLint covers general Haskell hygiene; the heuristics target eUTXO specifics:

    plutus-missing-context           validator never looks at ScriptContext
    plutus-unsafe-datum              BuiltinData decoded without fromBuiltinData
    plutus-missing-value-validation  Value handled without valueOf checks
    cardano-utxo-validation          inputs inspected without checking their value
    cardano-datum-validation         datum consumed without typed decoding
    cardano-eutxo-compliance         validator ignores TxInfo
    cardano-script-efficiency        costly list/string work inside the script
"""

from __future__ import annotations

import re

from omniaudit.analyzer.base import ChainAnalyzer
from omniaudit.analyzer.tools.hlint import HLintAdapter
from omniaudit.core.types import CanonicalVulnerability, ContractInput, Severity

_VALIDATOR_RE = re.compile(r"\b(mk\w*Validator|validator)\b")
_SAFE_DECODE_RE = re.compile(r"\bfromBuiltinData\b")
_FOLD_RE = re.compile(r"\b(foldr|foldl|foldl'|map|filter)\b")
_LIST_LENGTH_RE = re.compile(r"\blength\b")
_STRING_CONCAT_RE = re.compile(r'\+\+\s*"|"\s*\+\+|\bString\b.*\+\+')


class CardanoAnalyzer(ChainAnalyzer):
    """Plutus scripts, linted with HLint."""

    line_comment_re = re.compile(r"--[^\n]*")
    block_comment_re = re.compile(r"\{-.*?-\}", re.DOTALL)
    required_declarations = (
        (re.compile(r"^\w+\s*::", re.MULTILINE), "No top-level Haskell definition found"),
    )

    def build_static_tool(self) -> HLintAdapter:
        return HLintAdapter(platform=self.platform_id)

    def heuristic_checks(self, contract: ContractInput, filename: str) -> list[CanonicalVulnerability]:
        code = contract.code
        lines = [
            (lineno, line.split("--", 1)[0])
            for lineno, line in enumerate(code.split("\n"), start=1)
        ]
        findings: list[CanonicalVulnerability] = []
        findings.extend(self._check_plutus_patterns(code, lines, filename))
        findings.extend(self._check_utxo_handling(code, lines, filename))
        findings.extend(self._check_datum_usage(code, lines, filename))
        findings.extend(self._check_eutxo_compliance(code, lines, filename))
        findings.extend(self._check_script_efficiency(lines, filename))
        return findings

    # ── Heuristics ───────────────────────────────────────────────────

    def _check_plutus_patterns(
        self, code: str, lines: list[tuple[int, str]], filename: str,
    ) -> list[CanonicalVulnerability]:
        findings = []
        validator_line = _first_line(lines, lambda text: _VALIDATOR_RE.search(text))
        if validator_line and "ScriptContext" not in code:
            findings.append(self.finding(
                "plutus-missing-context",
                Severity.HIGH,
                "Missing script context validation",
                "The validator never inspects its ScriptContext, so it cannot check who "
                "signed the transaction or where funds go.",
                filename,
                validator_line,
                confidence=0.8,
                recommendation="Take the ScriptContext argument and validate the transaction it describes.",
            ))

        datum_line = _first_line(lines, lambda text: "BuiltinData" in text)
        if datum_line and not _SAFE_DECODE_RE.search(code):
            findings.append(self.finding(
                "plutus-unsafe-datum",
                Severity.MEDIUM,
                "Unsafe datum handling",
                "BuiltinData is used without a checked fromBuiltinData decode; malformed "
                "datums are either accepted or crash the script.",
                filename,
                datum_line,
                confidence=0.7,
                recommendation="Decode with fromBuiltinData and reject the transaction on Nothing.",
            ))

        value_line = _first_line(lines, lambda text: re.search(r"\bValue\b", text))
        if value_line and "valueOf" not in code:
            findings.append(self.finding(
                "plutus-missing-value-validation",
                Severity.MEDIUM,
                "Missing value validation",
                "Value is handled without checking the amounts it carries.",
                filename,
                value_line,
                confidence=0.6,
                recommendation="Use valueOf (or assetClassValueOf) to check the exact amounts moved.",
            ))
        return findings

    def _check_utxo_handling(
        self, code: str, lines: list[tuple[int, str]], filename: str,
    ) -> list[CanonicalVulnerability]:
        if "txOutValue" in code:
            return []
        return [
            self.finding(
                "cardano-utxo-validation",
                Severity.MEDIUM,
                "Incomplete UTXO input validation",
                "Transaction inputs are accessed without validating the value they carry.",
                filename,
                lineno,
                confidence=0.7,
                recommendation="Validate both input existence and value preservation in UTXO operations.",
            )
            for lineno, text in lines
            if "txInfoInputs" in text
        ]

    def _check_datum_usage(
        self, code: str, lines: list[tuple[int, str]], filename: str,
    ) -> list[CanonicalVulnerability]:
        if _SAFE_DECODE_RE.search(code):
            return []
        datum_line = _first_line(lines, lambda text: re.search(r"\bdatum\b", text, re.IGNORECASE))
        if not datum_line:
            return []
        return [self.finding(
            "cardano-datum-validation",
            Severity.MEDIUM,
            "Missing datum validation",
            "The datum is consumed without a typed, checked decode of its structure.",
            filename,
            datum_line,
            confidence=0.65,
            recommendation="Use fromBuiltinData to safely deserialize and validate the datum structure.",
        )]

    def _check_eutxo_compliance(
        self, code: str, lines: list[tuple[int, str]], filename: str,
    ) -> list[CanonicalVulnerability]:
        validator_line = _first_line(lines, lambda text: _VALIDATOR_RE.search(text))
        if not validator_line or "TxInfo" in code or "txInfo" in code:
            return []
        return [self.finding(
            "cardano-eutxo-compliance",
            Severity.HIGH,
            "Missing transaction info validation",
            "The validator does not access the transaction info, so it cannot enforce "
            "eUTXO spending conditions.",
            filename,
            validator_line,
            confidence=0.75,
            recommendation="Read scriptContextTxInfo and validate inputs, outputs and signatories.",
        )]

    def _check_script_efficiency(self, lines: list[tuple[int, str]], filename: str) -> list[CanonicalVulnerability]:
        findings = []
        has_traversal = False
        has_length = False
        for lineno, text in lines:
            has_traversal = has_traversal or bool(_FOLD_RE.search(text))
            has_length = has_length or bool(_LIST_LENGTH_RE.search(text))
            if _STRING_CONCAT_RE.search(text):
                findings.append(self.finding(
                    "cardano-script-efficiency",
                    Severity.LOW,
                    "Inefficient string concatenation",
                    "String concatenation with ++ is expensive in on-chain code.",
                    filename,
                    lineno,
                    confidence=0.6,
                    recommendation="Avoid string building in validators; use traceIfFalse with constant messages.",
                ))
        if has_traversal and has_length:
            findings.append(self.finding(
                "cardano-script-efficiency",
                Severity.MEDIUM,
                "Potential script budget exhaustion",
                "The script traverses lists and computes their length; large inputs can "
                "exceed the execution budget.",
                filename,
                1,
                confidence=0.5,
                recommendation="Bound the inputs the script iterates over or restructure the traversal.",
            ))
        return findings


def _first_line(lines: list[tuple[int, str]], predicate) -> int:
    for lineno, text in lines:
        if predicate(text):
            return lineno
    return 0
