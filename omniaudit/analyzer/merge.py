"""Finding merge helpers shared by the AI ensemble and the platform analyzers.

Two findings describe the same issue when they share a ``type``, sit in the
same file and their lines are within a small tolerance. Agreement between
independent contributors (models, or static vs. AI) is folded into one
``combined`` finding whose confidence is the noisy-OR of the contributors'
confidences: ``1 - Π(1 - c_i)``. That value never drops below the strongest
contributor and grows with every additional agreeing one.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from omniaudit.core.types import (
    SEVERITY_RANK,
    CanonicalVulnerability,
    CodeLocation,
    FindingSource,
)


def locations_overlap(a: CodeLocation, b: CodeLocation, line_tolerance: int = 2) -> bool:
    if a.file != b.file:
        return False
    if a.line == 0 or b.line == 0:
        # Unknown lines only match each other
        return a.line == b.line
    return abs(a.line - b.line) <= line_tolerance


def noisy_or(confidences: list[float]) -> float:
    if not confidences:
        return 0.0
    miss = math.prod(1.0 - min(1.0, max(0.0, c)) for c in confidences)
    return max(max(confidences), min(1.0, 1.0 - miss))


@dataclass
class FindingCluster:
    """Findings judged identical, at most one per contributor."""

    members: dict[str, CanonicalVulnerability] = field(default_factory=dict)

    @property
    def anchor(self) -> CanonicalVulnerability:
        return next(iter(self.members.values()))

    def accepts(self, label: str, vuln: CanonicalVulnerability, line_tolerance: int) -> bool:
        if label in self.members or vuln.type != self.anchor.type:
            return False
        return any(
            locations_overlap(vuln.location, member.location, line_tolerance)
            for member in self.members.values()
        )


def cluster_findings(
    contributions: list[tuple[str, list[CanonicalVulnerability]]],
    line_tolerance: int = 2,
) -> list[FindingCluster]:
    """Group findings across contributors, preserving first-seen order."""
    clusters: list[FindingCluster] = []
    for label, vulns in contributions:
        for vuln in vulns:
            target = next((c for c in clusters if c.accepts(label, vuln, line_tolerance)), None)
            if target is None:
                target = FindingCluster()
                clusters.append(target)
            target.members[label] = vuln
    return clusters


def backing_models(vuln: CanonicalVulnerability) -> list[str]:
    """AI models behind a finding, whether it came from one model or an ensemble merge."""
    if "models" in vuln.metadata:
        return list(vuln.metadata["models"])
    model = vuln.metadata.get("model")
    return [model] if model else []


def merge_cluster(cluster: FindingCluster) -> CanonicalVulnerability:
    """Collapse a cluster into a single finding."""
    members = list(cluster.members.values())
    best = max(members, key=lambda v: v.confidence)
    if len(members) == 1:
        return best

    worst = max(members, key=lambda v: SEVERITY_RANK[v.severity])
    contributors = sorted(cluster.members)
    metadata = dict(best.metadata)
    metadata.update({
        "contributors": contributors,
        "models": sorted({m for v in members for m in backing_models(v)}),
        "agreement": len(contributors),
        "member_confidences": {label: v.confidence for label, v in cluster.members.items()},
    })
    recommendation = best.recommendation or next(
        (v.recommendation for v in members if v.recommendation), ""
    )

    data = best.model_dump()
    data.update(
        id="",
        severity=worst.severity,
        source=FindingSource.COMBINED,
        confidence=noisy_or([v.confidence for v in members]),
        recommendation=recommendation,
        metadata=metadata,
    )
    return CanonicalVulnerability.model_validate(data)


def merge_contributions(
    contributions: list[tuple[str, list[CanonicalVulnerability]]],
    line_tolerance: int = 2,
) -> list[CanonicalVulnerability]:
    return [merge_cluster(c) for c in cluster_findings(contributions, line_tolerance)]


def deduplicate(vulns: list[CanonicalVulnerability]) -> list[CanonicalVulnerability]:
    """Drop exact repeats (type, file, line, column), keeping the most confident."""
    kept: dict[tuple[str, str, int, int], CanonicalVulnerability] = {}
    for vuln in vulns:
        current = kept.get(vuln.dedup_key)
        if current is None or vuln.confidence > current.confidence:
            kept[vuln.dedup_key] = vuln
    return list(kept.values())
