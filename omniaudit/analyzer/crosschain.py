"""Cross-chain risk analyzer.

Runs over the per-platform results of one job once at least two platforms
succeeded, and derives:

    - bridge security: locking / message-passing / validator-set scores
    - state consistency: state-handling findings grouped by category
    - interoperability risks: architecture differences between platform pairs
    - recommendations: ranked remediation steps

Everything here is a pure function of its inputs.
"""

from __future__ import annotations

import enum
import itertools
import logging

from pydantic import BaseModel, Field

from omniaudit.core.types import (
    SEVERITY_RANK,
    AnalysisResult,
    CanonicalVulnerability,
    Severity,
)
from omniaudit.platforms.catalog import EUTXO, EVM_ACCOUNT, PROGRAM_ACCOUNT, RESOURCE
from omniaudit.platforms.registry import PlatformRegistry

logger = logging.getLogger(__name__)


# ── Schemas ──────────────────────────────────────────────────────────────────


class Priority(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK: dict[Priority, int] = {
    Priority.CRITICAL: 3,
    Priority.HIGH: 2,
    Priority.MEDIUM: 1,
    Priority.LOW: 0,
}


class MechanismAssessment(BaseModel):
    score: float = Field(default=100.0, ge=0.0, le=100.0)
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class BridgeSecurityAssessment(BaseModel):
    locking_mechanism: MechanismAssessment
    message_passing: MechanismAssessment
    validator_set: MechanismAssessment
    overall_score: float = Field(ge=0.0, le=100.0)


class StateInconsistency(BaseModel):
    category: str
    description: str
    risk_weight: float = Field(ge=0.0, le=1.0)
    affected_platforms: list[str]
    vulnerability_types: list[str]


class StateConsistencyAnalysis(BaseModel):
    inconsistencies: list[StateInconsistency] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class InteroperabilityRisk(BaseModel):
    type: str
    severity: Severity
    description: str
    affected_platforms: list[str]
    mitigation: str


class CrossChainRecommendation(BaseModel):
    category: str
    description: str
    priority: Priority
    affected_platforms: list[str]
    cross_chain_impact: bool = True


class CrossChainAnalysisResult(BaseModel):
    platforms: list[str]
    bridge_security: BridgeSecurityAssessment
    state_consistency: StateConsistencyAnalysis
    interoperability_risks: list[InteroperabilityRisk]
    recommendations: list[CrossChainRecommendation]


# ── Tables ───────────────────────────────────────────────────────────────────


_SEVERITY_PENALTY: dict[Severity, int] = {
    Severity.CRITICAL: 30,
    Severity.HIGH: 20,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
    Severity.INFORMATIONAL: 1,
}

_SEVERITY_RISK_WEIGHT: dict[Severity, float] = {
    Severity.CRITICAL: 1.0,
    Severity.HIGH: 0.8,
    Severity.MEDIUM: 0.6,
    Severity.LOW: 0.4,
    Severity.INFORMATIONAL: 0.2,
}

_SEVERITY_PRIORITY: dict[Severity, Priority] = {
    Severity.CRITICAL: Priority.CRITICAL,
    Severity.HIGH: Priority.HIGH,
    Severity.MEDIUM: Priority.MEDIUM,
    Severity.LOW: Priority.LOW,
    Severity.INFORMATIONAL: Priority.LOW,
}

# (keywords matched against the finding type, weight, recommendation)
_MECHANISMS: dict[str, tuple[tuple[str, ...], float, str]] = {
    "locking_mechanism": (
        ("lock", "mint", "burn", "escrow", "vault", "reentrancy", "withdraw",
         "suicidal", "arbitrary-send", "unprotected"),
        0.4,
        "Protect lock / mint / burn paths with reentrancy guards and strict access control.",
    ),
    "message_passing": (
        ("message", "signature", "replay", "nonce", "cpi", "delegatecall",
         "lowlevel", "oracle", "relay"),
        0.35,
        "Authenticate every cross-chain message and bind it to a nonce and chain id.",
    ),
    "validator_set": (
        ("validator", "governance", "admin", "upgrade", "owner", "signer",
         "multisig", "centraliz", "tx-origin", "authority"),
        0.25,
        "Require a decentralised, threshold-signed validator set with rotation procedures.",
    ),
}

# (category, keywords, recommendation)
_STATE_CATEGORIES: tuple[tuple[str, tuple[str, ...], str], ...] = (
    ("storage", ("storage", "state", "shadowing", "variable"),
     "Define a canonical storage layout and reconcile it across deployments."),
    ("initialization", ("init", "constructor"),
     "Make initialization idempotent and verify it atomically on every platform."),
    ("account-data", ("account", "owner-check", "pda", "duplicate-mutable"),
     "Validate account ownership and derivation before mirroring account data."),
    ("datum-utxo", ("datum", "utxo", "redeemer"),
     "Validate datums and UTXO values before relaying state to other chains."),
    ("resource", ("resource", "acquires", "move-to", "phantom"),
     "Ensure resources are conserved when represented on other chains."),
)

# Architecture differences keyed by the execution models of a platform pair
_INTEROP_CATALOG: dict[frozenset[str], tuple[str, Severity, str, str]] = {
    frozenset({EVM_ACCOUNT}): (
        "cross_evm_replay",
        Severity.MEDIUM,
        "Identical EVM contracts on several chains may accept messages or signatures "
        "replayed from a sibling chain",
        "Bind signatures and messages to the chain id (EIP-155 / EIP-712 domain separator)",
    ),
    frozenset({EVM_ACCOUNT, PROGRAM_ACCOUNT}): (
        "security_model_mismatch",
        Severity.MEDIUM,
        "EVM contract accounts and Solana program-owned accounts have different "
        "security assumptions",
        "Implement careful state mapping and validation between account models",
    ),
    frozenset({EVM_ACCOUNT, EUTXO}): (
        "transaction_model_mismatch",
        Severity.HIGH,
        "The account-based EVM model and Cardano's eUTXO model require careful state "
        "synchronization",
        "Implement robust state mapping between account-based and UTXO models",
    ),
    frozenset({EVM_ACCOUNT, RESOURCE}): (
        "asset_model_mismatch",
        Severity.MEDIUM,
        "EVM balances are plain storage while Move assets are linear resources",
        "Reconcile supply accounting so a resource is never duplicated as an EVM balance",
    ),
    frozenset({PROGRAM_ACCOUNT, EUTXO}): (
        "transaction_model_mismatch",
        Severity.HIGH,
        "Solana's mutable accounts and Cardano's eUTXO model require careful state "
        "synchronization",
        "Implement robust state mapping between account-based and UTXO models",
    ),
    frozenset({PROGRAM_ACCOUNT, RESOURCE}): (
        "ownership_model_mismatch",
        Severity.MEDIUM,
        "Program-owned accounts and Move resource ownership express authority differently",
        "Map ownership explicitly and verify it on both sides of every transfer",
    ),
    frozenset({EUTXO, RESOURCE}): (
        "state_model_mismatch",
        Severity.HIGH,
        "Cardano's eUTXO state and Move global resources evolve under different "
        "concurrency rules",
        "Serialize cross-chain updates and validate state transitions on both chains",
    ),
    frozenset({RESOURCE}): (
        "move_dialect_divergence",
        Severity.LOW,
        "Aptos and Sui Move differ in object, storage and initializer semantics",
        "Audit each Move dialect separately instead of sharing modules verbatim",
    ),
}

_GOVERNANCE_KEYWORDS = ("governance", "admin", "upgrade", "centraliz")


def _normalized_type(vuln: CanonicalVulnerability) -> str:
    return vuln.type.lower().replace("_", "-")


def _matches(vuln: CanonicalVulnerability, keywords: tuple[str, ...]) -> bool:
    vuln_type = _normalized_type(vuln)
    return any(keyword in vuln_type for keyword in keywords)


# ── Analyzer ─────────────────────────────────────────────────────────────────


class CrossChainRiskAnalyzer:
    """Synthesises a cross-chain risk picture from per-platform results."""

    def __init__(self, registry: PlatformRegistry) -> None:
        self.registry = registry

    @staticmethod
    def successful(results: dict[str, AnalysisResult]) -> dict[str, AnalysisResult]:
        return {pid: r for pid, r in results.items() if r.success}

    def precondition_met(self, results: dict[str, AnalysisResult]) -> bool:
        return len(self.successful(results)) >= 2

    def analyze(self, results: dict[str, AnalysisResult]) -> CrossChainAnalysisResult | None:
        """Cross-chain assessment, or ``None`` when fewer than two platforms succeeded."""
        succeeded = self.successful(results)
        if len(succeeded) < 2:
            logger.info("Cross-chain analysis skipped: %d successful platforms", len(succeeded))
            return None

        platforms = list(succeeded)
        findings = {pid: r.vulnerabilities for pid, r in succeeded.items()}

        risks = self.interoperability_risks(platforms, findings)
        result = CrossChainAnalysisResult(
            platforms=platforms,
            bridge_security=self.bridge_security(findings),
            state_consistency=self.state_consistency(platforms, findings),
            interoperability_risks=risks,
            recommendations=self.recommendations(platforms, findings, risks),
        )
        logger.info(
            "Cross-chain analysis over %s: bridge score %.1f, %d risks",
            ", ".join(platforms), result.bridge_security.overall_score, len(risks),
        )
        return result

    # ── Bridge security ──────────────────────────────────────────────

    def bridge_security(self, findings: dict[str, list[CanonicalVulnerability]]) -> BridgeSecurityAssessment:
        assessments: dict[str, MechanismAssessment] = {}
        overall = 0.0
        for mechanism, (keywords, weight, recommendation) in _MECHANISMS.items():
            penalty = 0
            issues: list[str] = []
            for platform_id, vulns in findings.items():
                for vuln in vulns:
                    if _matches(vuln, keywords):
                        penalty += _SEVERITY_PENALTY[vuln.severity]
                        issues.append(f"[{platform_id}] {vuln.title}")
            score = float(max(0, 100 - penalty))
            assessments[mechanism] = MechanismAssessment(
                score=score,
                issues=issues,
                recommendations=[recommendation] if issues else [],
            )
            overall += score * weight
        return BridgeSecurityAssessment(**assessments, overall_score=round(overall, 2))

    # ── State consistency ────────────────────────────────────────────

    def state_consistency(
        self, platforms: list[str], findings: dict[str, list[CanonicalVulnerability]],
    ) -> StateConsistencyAnalysis:
        analysis = StateConsistencyAnalysis()
        for category, keywords, recommendation in _STATE_CATEGORIES:
            affected: list[str] = []
            types: list[str] = []
            worst: Severity | None = None
            for platform_id in platforms:
                matched = [v for v in findings[platform_id] if _matches(v, keywords)]
                if not matched:
                    continue
                affected.append(platform_id)
                for vuln in matched:
                    if vuln.type not in types:
                        types.append(vuln.type)
                    if worst is None or SEVERITY_RANK[vuln.severity] > SEVERITY_RANK[worst]:
                        worst = vuln.severity
            if worst is None:
                continue

            weight = _SEVERITY_RISK_WEIGHT[worst]
            divergent = len(affected) < len(platforms)
            if divergent:
                weight += 0.1
            analysis.inconsistencies.append(StateInconsistency(
                category=category,
                description=(
                    f"{category} issues on {', '.join(affected)}"
                    + (" but not on the other platforms" if divergent else " on every platform")
                ),
                risk_weight=round(min(1.0, weight), 2),
                affected_platforms=affected,
                vulnerability_types=types,
            ))
            analysis.recommendations.append(recommendation)
        return analysis

    # ── Interoperability ─────────────────────────────────────────────

    def interoperability_risks(
        self, platforms: list[str], findings: dict[str, list[CanonicalVulnerability]],
    ) -> list[InteroperabilityRisk]:
        by_type: dict[str, InteroperabilityRisk] = {}
        for first, second in itertools.combinations(platforms, 2):
            models = self._execution_models(first, second)
            if models is None or models not in _INTEROP_CATALOG:
                continue
            risk_type, severity, description, mitigation = _INTEROP_CATALOG[models]
            existing = by_type.get(risk_type)
            if existing is None:
                by_type[risk_type] = InteroperabilityRisk(
                    type=risk_type,
                    severity=severity,
                    description=description,
                    affected_platforms=[first, second],
                    mitigation=mitigation,
                )
                continue
            for platform_id in (first, second):
                if platform_id not in existing.affected_platforms:
                    existing.affected_platforms.append(platform_id)

        risks = list(by_type.values())
        if len(platforms) > 1:
            risks.append(InteroperabilityRisk(
                type="finality_timing_mismatch",
                severity=Severity.MEDIUM,
                description="The platforms have different block times and finality guarantees",
                affected_platforms=list(platforms),
                mitigation="Wait for platform-specific confirmation depths before acting on cross-chain events",
            ))
            risks.append(InteroperabilityRisk(
                type="economic_security_disparity",
                severity=Severity.HIGH,
                description="The platforms differ in economic security and validator incentives",
                affected_platforms=list(platforms),
                mitigation="Size security thresholds to the weakest platform in the system",
            ))

        governed = [
            pid for pid in platforms
            if any(_matches(v, _GOVERNANCE_KEYWORDS) for v in findings[pid])
        ]
        if governed:
            risks.append(InteroperabilityRisk(
                type="governance_centralization",
                severity=Severity.HIGH,
                description="Centralized governance or upgrade authority can compromise the cross-chain system",
                affected_platforms=governed,
                mitigation="Use decentralized governance with time delays and multi-signature requirements",
            ))

        return sorted(risks, key=lambda r: SEVERITY_RANK[r.severity], reverse=True)

    def _execution_models(self, first: str, second: str) -> frozenset[str] | None:
        a = self.registry.get(first)
        b = self.registry.get(second)
        if a is None or b is None:
            return None
        return frozenset({a.execution_model, b.execution_model})

    # ── Recommendations ──────────────────────────────────────────────

    def recommendations(
        self,
        platforms: list[str],
        findings: dict[str, list[CanonicalVulnerability]],
        risks: list[InteroperabilityRisk],
    ) -> list[CrossChainRecommendation]:
        recs = [
            CrossChainRecommendation(
                category="risk_mitigation",
                description=risk.mitigation,
                priority=_SEVERITY_PRIORITY[risk.severity],
                affected_platforms=list(risk.affected_platforms),
            )
            for risk in risks
        ]

        for platform_id in platforms:
            serious = [
                v for v in findings[platform_id]
                if v.severity in (Severity.CRITICAL, Severity.HIGH)
            ]
            if not serious:
                continue
            has_critical = any(v.severity is Severity.CRITICAL for v in serious)
            recs.append(CrossChainRecommendation(
                category="platform_security",
                description=(
                    f"Address {len(serious)} critical/high findings on {platform_id} "
                    f"before cross-chain deployment"
                ),
                priority=Priority.CRITICAL if has_critical else Priority.HIGH,
                affected_platforms=[platform_id],
                cross_chain_impact=False,
            ))

        recs.extend([
            CrossChainRecommendation(
                category="security",
                description="Implement cross-chain monitoring and alerting for every bridge path",
                priority=Priority.HIGH,
                affected_platforms=list(platforms),
            ),
            CrossChainRecommendation(
                category="testing",
                description="Run cross-chain integration tests covering partial failure and rollback",
                priority=Priority.HIGH,
                affected_platforms=list(platforms),
            ),
            CrossChainRecommendation(
                category="documentation",
                description="Document every cross-chain interaction and its failure recovery procedure",
                priority=Priority.MEDIUM,
                affected_platforms=list(platforms),
            ),
        ])
        return sorted(recs, key=lambda r: PRIORITY_RANK[r.priority], reverse=True)
