"""Move module analyzer: parses Aptos/Sui Move programs
and detects common vulnerabilities specific to the Move runtime.

Heuristics:
    missing-acquires         global storage access without an acquires clause
    unchecked-signer         state-changing entry function without authorization
    resource-leak            key resource created but never stored or moved
    flash-loan-pattern       mutable global borrow without invariant checks
    unprotected-init         module initializer with public visibility
    phantom-type-confusion   phantom-typed resource keyed in global storage
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from omniaudit.analyzer.base import ChainAnalyzer, find_block_end, line_of
from omniaudit.analyzer.tools.base import StaticToolAdapter
from omniaudit.analyzer.tools.move import AptosMoveAdapter, SuiMoveAdapter
from omniaudit.core.types import CanonicalVulnerability, ContractInput, Severity


# ── Types ────────────────────────────────────────────────────────────────────


@dataclass
class MoveFunction:
    """Parsed Move function definition."""
    name: str
    line: int
    visibility: str = ""  # public, public(friend), public(package), ""
    is_entry: bool = False
    params: str = ""
    has_signer_param: bool = False
    acquires: list[str] = field(default_factory=list)
    borrows_global: list[str] = field(default_factory=list)
    moves_to: list[str] = field(default_factory=list)
    body: str = ""


@dataclass
class MoveStruct:
    """Parsed Move struct / resource definition."""
    name: str
    line: int
    has_key: bool = False
    has_store: bool = False
    has_drop: bool = False
    has_copy: bool = False


@dataclass
class MoveModule:
    module_name: str = ""
    module_address: str = ""
    functions: list[MoveFunction] = field(default_factory=list)
    structs: list[MoveStruct] = field(default_factory=list)


# ── Patterns ─────────────────────────────────────────────────────────────────

_MODULE_RE = re.compile(r"module\s+(?:(\w+)::)?(\w+)\s*[{;]", re.MULTILINE)
_FUNCTION_RE = re.compile(
    r"(public(?:\s*\(\s*\w+\s*\))?\s+)?(entry\s+)?fun\s+(\w+)"
    r"(?:<[^>]*>)?\s*\(([^)]*)\)"
    r"(?:\s*:\s*[^{]+?)?"
    r"(?:\s+acquires\s+([\w,\s]+))?"
    r"\s*\{",
    re.MULTILINE,
)
_STRUCT_RE = re.compile(r"struct\s+(\w+)(?:<[^>]*>)?\s+has\s+([\w,\s]+)\s*\{", re.MULTILINE)
_BORROW_GLOBAL_RE = re.compile(r"borrow_global(?:_mut)?\s*<\s*(\w+)")
_MOVE_TO_RE = re.compile(r"\bmove_to\s*(?:<\s*(\w+)\s*>)?\s*\(")
_PHANTOM_STRUCT_RE = re.compile(r"struct\s+(\w+)\s*<\s*phantom\s+(\w+)[^>]*>")
_MUT_REF_PARAM_RE = re.compile(r":\s*&mut\s+(\w+)")
_SUI_SENDER_RE = re.compile(r"tx_context::sender\s*\(|\.sender\s*\(\s*\)")


def parse_move_module(source: str) -> MoveModule:
    """Extract the module header, structs and functions of a Move module."""
    module = MoveModule()

    mod_match = _MODULE_RE.search(source)
    if mod_match:
        module.module_address = mod_match.group(1) or ""
        module.module_name = mod_match.group(2) or ""

    for m in _STRUCT_RE.finditer(source):
        abilities = {a.strip() for a in m.group(2).split(",")}
        module.structs.append(MoveStruct(
            name=m.group(1),
            line=line_of(source, m.start()),
            has_key="key" in abilities,
            has_store="store" in abilities,
            has_drop="drop" in abilities,
            has_copy="copy" in abilities,
        ))

    for m in _FUNCTION_RE.finditer(source):
        params = m.group(4)
        acquires_str = m.group(5) or ""
        body_start = m.end() - 1
        body = source[body_start:find_block_end(source, body_start)]
        module.functions.append(MoveFunction(
            name=m.group(3),
            line=line_of(source, m.start(3)),
            visibility=re.sub(r"\s+", "", m.group(1) or ""),
            is_entry=bool(m.group(2)),
            params=params,
            has_signer_param="signer" in params,
            acquires=[a.strip() for a in acquires_str.split(",") if a.strip()],
            borrows_global=[b.group(1) for b in _BORROW_GLOBAL_RE.finditer(body)],
            moves_to=[t.group(1) or "" for t in _MOVE_TO_RE.finditer(body)],
            body=body,
        ))

    return module


# ── Analyzer ─────────────────────────────────────────────────────────────────


class MoveAnalyzer(ChainAnalyzer):
    """Shared Move heuristics; subclasses pick the toolchain and initializer name."""

    init_function = "init_module"
    required_declarations = (
        (re.compile(r"\bmodule\s+[\w:]+"), "No Move module definition found"),
    )

    def heuristic_checks(self, contract: ContractInput, filename: str) -> list[CanonicalVulnerability]:
        source = contract.code
        module = parse_move_module(source)
        findings: list[CanonicalVulnerability] = []
        findings.extend(self._detect_missing_acquires(module, filename))
        findings.extend(self._detect_unchecked_signer(module, filename))
        findings.extend(self._detect_resource_leak(module, source, filename))
        findings.extend(self._detect_flash_loan_pattern(module, filename))
        findings.extend(self._detect_unprotected_init(module, filename))
        findings.extend(self._detect_phantom_type_confusion(source, filename))
        return findings

    # ── Detectors ────────────────────────────────────────────────────

    def _detect_missing_acquires(self, module: MoveModule, filename: str) -> list[CanonicalVulnerability]:
        findings = []
        resource_names = {s.name for s in module.structs if s.has_key}
        for func in module.functions:
            for borrowed in dict.fromkeys(func.borrows_global):
                if borrowed not in resource_names or borrowed in func.acquires:
                    continue
                findings.append(self.finding(
                    "missing-acquires",
                    Severity.HIGH,
                    "Missing acquires annotation",
                    f"Function `{func.name}` accesses global resource `{borrowed}` "
                    f"but does not include it in the `acquires` clause.",
                    filename,
                    func.line,
                    confidence=0.9,
                    recommendation=f"Add `acquires {borrowed}` to the function signature.",
                    function=func.name,
                ))
        return findings

    def _detect_unchecked_signer(self, module: MoveModule, filename: str) -> list[CanonicalVulnerability]:
        return [
            self.finding(
                "unchecked-signer",
                Severity.CRITICAL,
                "Missing signer check in entry function",
                f"Entry function `{func.name}` modifies global state via `move_to` "
                f"but does not accept a `&signer` parameter for authorization.",
                filename,
                func.line,
                confidence=0.85,
                recommendation="Add a `&signer` parameter and validate the sender address.",
                function=func.name,
            )
            for func in module.functions
            if func.is_entry and not func.has_signer_param and func.moves_to
        ]

    def _detect_resource_leak(
        self, module: MoveModule, source: str, filename: str,
    ) -> list[CanonicalVulnerability]:
        findings = []
        for struct in module.structs:
            if not struct.has_key or struct.has_drop:
                continue
            instantiation = _find_construction(source, struct.name)
            if instantiation is None:
                continue
            line_start = source.rfind("\n", 0, instantiation) + 1
            window = source[line_start:instantiation + 500]
            if "move_to" in window or "transfer" in window or "share_object" in window:
                continue
            findings.append(self.finding(
                "resource-leak",
                Severity.MEDIUM,
                "Potential resource leak",
                f"Resource `{struct.name}` (has `key` but not `drop`) is instantiated "
                f"but may not be stored. A resource that is never stored aborts the transaction "
                f"or is lost.",
                filename,
                line_of(source, instantiation),
                confidence=0.55,
                recommendation="Store the resource with `move_to` / transfer it, or destroy it explicitly.",
                resource=struct.name,
            ))
        return findings

    def _detect_flash_loan_pattern(self, module: MoveModule, filename: str) -> list[CanonicalVulnerability]:
        findings = []
        for func in module.functions:
            if not func.is_entry or "borrow_global_mut" not in func.body:
                continue
            if "assert!" in func.body or "abort" in func.body:
                continue
            findings.append(self.finding(
                "flash-loan-pattern",
                Severity.HIGH,
                "Flash-loan-like pattern without repay check",
                f"Function `{func.name}` borrows mutable global state but does not assert "
                f"invariants before returning, which allows flash-loan style attacks where "
                f"borrowed value is not repaid.",
                filename,
                func.line,
                confidence=0.6,
                recommendation="Add `assert!` checks on state invariants (e.g. balance >= borrowed) before returning.",
                function=func.name,
            ))
        return findings

    def _detect_unprotected_init(self, module: MoveModule, filename: str) -> list[CanonicalVulnerability]:
        return [
            self.finding(
                "unprotected-init",
                Severity.CRITICAL,
                "Publicly visible module initializer",
                f"Module initializer `{func.name}` has public visibility. It should be "
                f"private to prevent external re-initialization.",
                filename,
                func.line,
                confidence=0.95,
                recommendation=f"Remove `public` from `{func.name}`; the runtime calls it on publish.",
                function=func.name,
            )
            for func in module.functions
            if func.name == self.init_function and (func.visibility.startswith("public") or func.is_entry)
        ]

    def _detect_phantom_type_confusion(self, source: str, filename: str) -> list[CanonicalVulnerability]:
        findings = []
        for m in _PHANTOM_STRUCT_RE.finditer(source):
            struct_name, phantom_param = m.group(1), m.group(2)
            rest = source[m.end():]
            if not re.search(rf"(borrow_global(?:_mut)?|exists)\s*<\s*{struct_name}\b", rest):
                continue
            findings.append(self.finding(
                "phantom-type-confusion",
                Severity.MEDIUM,
                "Phantom type parameter used in access control",
                f"Struct `{struct_name}` uses phantom type parameter `{phantom_param}` and is "
                f"read from global storage. Code that checks only the outer type can be "
                f"confused between instantiations.",
                filename,
                line_of(source, m.start()),
                confidence=0.55,
                recommendation="Constrain the type parameter explicitly where the resource is authorised.",
                resource=struct_name,
            ))
        return findings


class AptosAnalyzer(MoveAnalyzer):
    init_function = "init_module"

    def build_static_tool(self) -> StaticToolAdapter:
        return AptosMoveAdapter(platform=self.platform_id)


class SuiAnalyzer(MoveAnalyzer):
    """Sui Move: objects instead of global storage, `init` instead of `init_module`."""

    init_function = "init"

    def build_static_tool(self) -> StaticToolAdapter:
        return SuiMoveAdapter(platform=self.platform_id)

    def _detect_unchecked_signer(self, module: MoveModule, filename: str) -> list[CanonicalVulnerability]:
        # Sui authorises through owned capabilities or the transaction sender
        objects = {s.name for s in module.structs if s.has_key}
        findings = []
        for func in module.functions:
            if not (func.is_entry or func.visibility == "public"):
                continue
            mutated = [t for t in _MUT_REF_PARAM_RE.findall(func.params) if t in objects]
            if not mutated:
                continue
            if "Cap" in func.params or _SUI_SENDER_RE.search(func.body):
                continue
            findings.append(self.finding(
                "unchecked-signer",
                Severity.HIGH,
                "Shared object mutated without authorization",
                f"Function `{func.name}` takes `&mut {mutated[0]}` but neither requires a "
                f"capability object nor checks the transaction sender.",
                filename,
                func.line,
                confidence=0.6,
                recommendation="Require an owned capability (e.g. `&AdminCap`) or assert on `tx_context::sender`.",
                function=func.name,
            ))
        return findings


def _find_construction(source: str, struct_name: str) -> int | None:
    """Offset of the first `Name { ... }` that builds a value (not a definition or destructure)."""
    for match in re.finditer(rf"\b{struct_name}\s*\{{", source):
        line_start = source.rfind("\n", 0, match.start()) + 1
        prefix = source[line_start:match.start()]
        if re.search(r"\bstruct\s*$", prefix) or re.match(r"\s*let\b", prefix):
            continue
        return match.start()
    return None
