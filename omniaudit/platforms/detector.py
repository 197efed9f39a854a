"""Platform detection: ranks registered platforms against a piece of source code.

Confidence for a platform is the matched pattern weight divided by the total
pattern weight of that platform. :meth:`PlatformDetector.detect` returns every
non-zero match; applying the confidence threshold is left to callers
(:meth:`PlatformDetector.resolve_platform` is the usual one).
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

from omniaudit.core.config import get_settings
from omniaudit.core.types import ContractInput
from omniaudit.platforms.registry import (
    BlockchainPlatform,
    DetectionPattern,
    PlatformRegistry,
)

logger = logging.getLogger(__name__)


@dataclass
class PlatformDetectionResult:
    """Confidence that a piece of code targets ``platform``."""

    platform: BlockchainPlatform
    confidence: float
    matched_patterns: list[DetectionPattern] = field(default_factory=list)

    @property
    def platform_id(self) -> str:
        return self.platform.id


@dataclass
class AssignmentReport:
    """Outcome of :meth:`PlatformDetector.validate_assignments`."""

    valid: bool
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


_LANGUAGE_HINTS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"pragma\s+solidity", re.IGNORECASE), "solidity"),
    (re.compile(r"#\s*@version|@external|@internal"), "vyper"),
    (re.compile(r"use\s+anchor_lang|\bfn\s+\w+\s*\(|\bimpl\b"), "rust"),
    (re.compile(r"import\s+Plutus|\{-#\s*LANGUAGE"), "haskell"),
    (re.compile(r"module\s+[\w:]+::\w+"), "move"),
]


def score_platform(platform: BlockchainPlatform, code: str, filename: str | None = None) -> PlatformDetectionResult:
    """Score one platform; 0 when it declares no patterns."""
    total = sum(p.weight for p in platform.detection_patterns)
    if total <= 0:
        return PlatformDetectionResult(platform=platform, confidence=0.0)
    matched = [p for p in platform.detection_patterns if p.matches(code, filename)]
    confidence = sum(p.weight for p in matched) / total
    return PlatformDetectionResult(
        platform=platform,
        confidence=min(1.0, confidence),
        matched_patterns=matched,
    )


class PlatformDetector:
    """Ranks active platforms by confidence for given source code."""

    def __init__(
        self,
        registry: PlatformRegistry,
        threshold: float | None = None,
        high_confidence_threshold: float | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self.threshold = (
            threshold if threshold is not None else settings.detection_confidence_threshold
        )
        self.high_confidence_threshold = (
            high_confidence_threshold
            if high_confidence_threshold is not None
            else settings.detection_high_confidence_threshold
        )

    # ── Public API ───────────────────────────────────────────────────────

    def detect(self, code: str, filename: str | None = None) -> list[PlatformDetectionResult]:
        """All non-zero matches, highest confidence first.

        Ties keep registry iteration order (``sorted`` is stable).
        """
        results = [
            score_platform(platform, code, filename)
            for platform in self._registry.list_active()
        ]
        results = [r for r in results if r.confidence > 0]
        return sorted(results, key=lambda r: r.confidence, reverse=True)

    def detect_primary(self, code: str, filename: str | None = None) -> PlatformDetectionResult | None:
        results = self.detect(code, filename)
        return results[0] if results else None

    def is_confident(self, result: PlatformDetectionResult | None) -> bool:
        return result is not None and result.confidence >= self.threshold

    def resolve_platform(
        self, contract: ContractInput, candidates: Iterable[str] | None = None
    ) -> str | None:
        """Confident platform id for a contract, or None when detection is inconclusive.

        With ``candidates`` only those platforms compete: the best-scoring
        candidate wins when it clears the threshold, even if a platform outside
        the set scored as high.
        """
        allowed = set(candidates) if candidates is not None else None
        best = next(
            (r for r in self.detect(contract.code, contract.filename) if allowed is None or r.platform_id in allowed),
            None,
        )
        if not self.is_confident(best):
            logger.info(
                "Platform detection inconclusive for %s (best=%s)",
                contract.display_name,
                f"{best.platform_id}:{best.confidence:.2f}" if best else "none",
            )
            return None
        return best.platform_id

    def recommendations(self, code: str, filename: str | None = None) -> list[PlatformDetectionResult]:
        """Matches at or above the configured threshold."""
        return [r for r in self.detect(code, filename) if r.confidence >= self.threshold]

    def auto_assign_platforms(self, contracts: list[ContractInput]) -> list[ContractInput]:
        """Fill in platform and language for contracts that lack a platform.

        Contracts whose detection is inconclusive are returned unchanged.
        """
        assigned: list[ContractInput] = []
        for contract in contracts:
            if contract.platform:
                assigned.append(contract)
                continue
            platform_id = self.resolve_platform(contract)
            if platform_id is None:
                assigned.append(contract)
                continue
            platform = self._registry.get(platform_id)
            language = contract.language or self.detect_language(contract.code, platform)
            assigned.append(contract.model_copy(update={"platform": platform_id, "language": language}))
        return assigned

    def validate_assignments(self, contracts: list[ContractInput]) -> AssignmentReport:
        """Check explicit platform assignments against the registry and detection."""
        issues: list[str] = []
        warnings: list[str] = []
        for contract in contracts:
            name = contract.display_name
            if not contract.platform:
                issues.append(f"No platform assigned for contract {name}")
                continue
            platform = self._registry.get(contract.platform)
            if platform is None:
                issues.append(f"Unknown platform '{contract.platform}' for contract {name}")
                continue
            if not platform.is_active:
                issues.append(f"Platform '{contract.platform}' is not active for contract {name}")
                continue
            best = self.detect_primary(contract.code, contract.filename)
            if (
                best is not None
                and best.confidence > self.high_confidence_threshold
                and best.platform_id != contract.platform
            ):
                warnings.append(
                    f"Contract {name} is assigned to '{contract.platform}' but looks like "
                    f"'{best.platform_id}' ({best.confidence:.0%} confidence)"
                )
        return AssignmentReport(valid=not issues, issues=issues, warnings=warnings)

    def detect_language(self, code: str, platform: BlockchainPlatform | None = None) -> str:
        if platform is not None:
            return platform.languages[0] if platform.languages else "unknown"
        for pattern, language in _LANGUAGE_HINTS:
            if pattern.search(code):
                return language
        return "unknown"

    def suggest_by_extension(self, filename: str) -> list[BlockchainPlatform]:
        return self._registry.platforms_for_extension(filename)

    def explain(self, code: str, filename: str | None = None) -> dict[str, list[tuple[DetectionPattern, bool]]]:
        """Per-platform pattern hit list, for debugging detection."""
        return {
            platform.id: [(p, p.matches(code, filename)) for p in platform.detection_patterns]
            for platform in self._registry.list_all()
        }

    def statistics(self, contracts: list[ContractInput]) -> dict[str, object]:
        """Per-platform detection counts and mean confidence over a batch."""
        counts: Counter[str] = Counter()
        confidence_sums: dict[str, float] = {}
        undetected = 0
        for contract in contracts:
            best = self.detect_primary(contract.code, contract.filename)
            if not self.is_confident(best):
                undetected += 1
                continue
            counts[best.platform_id] += 1
            confidence_sums[best.platform_id] = confidence_sums.get(best.platform_id, 0.0) + best.confidence
        return {
            "total": len(contracts),
            "undetected": undetected,
            "by_platform": dict(counts),
            "average_confidence": {
                pid: round(confidence_sums[pid] / count, 3) for pid, count in counts.items()
            },
        }
