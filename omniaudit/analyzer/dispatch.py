"""Analyzer dispatch: maps platform ids to their analyzer classes."""

from __future__ import annotations

import asyncio
import logging

from omniaudit.analyzer.base import ChainAnalyzer
from omniaudit.analyzer.cardano import CardanoAnalyzer
from omniaudit.analyzer.ensemble import AIEnsembleAnalyzer
from omniaudit.analyzer.evm import EVMAnalyzer
from omniaudit.analyzer.move import AptosAnalyzer, SuiAnalyzer
from omniaudit.analyzer.solana import SolanaAnalyzer
from omniaudit.core.types import HealthCheckResult
from omniaudit.platforms.registry import PlatformRegistry

logger = logging.getLogger(__name__)

ANALYZER_CLASSES: dict[str, type[ChainAnalyzer]] = {
    "ethereum": EVMAnalyzer,
    "bsc": EVMAnalyzer,
    "polygon": EVMAnalyzer,
    "solana": SolanaAnalyzer,
    "cardano": CardanoAnalyzer,
    "aptos": AptosAnalyzer,
    "sui": SuiAnalyzer,
}


class AnalyzerDispatch:
    """Builds and caches one analyzer per active, implemented platform."""

    def __init__(
        self,
        registry: PlatformRegistry,
        ensemble: AIEnsembleAnalyzer | None = None,
        analyzer_classes: dict[str, type[ChainAnalyzer]] | None = None,
    ) -> None:
        self.registry = registry
        self.ensemble = ensemble
        self._classes = dict(analyzer_classes if analyzer_classes is not None else ANALYZER_CLASSES)
        self._instances: dict[str, ChainAnalyzer] = {}

    def get_analyzer(self, platform_id: str) -> ChainAnalyzer | None:
        """Analyzer for ``platform_id``, or ``None`` if unknown, inactive or unimplemented."""
        platform = self.registry.get(platform_id)
        if platform is None or not platform.is_active:
            logger.warning("No analyzer: platform %s is unknown or inactive", platform_id)
            return None
        analyzer_cls = self._classes.get(platform_id)
        if analyzer_cls is None:
            logger.warning("No analyzer implemented for platform %s", platform_id)
            return None

        analyzer = self._instances.get(platform_id)
        if analyzer is None or analyzer.platform != platform:
            analyzer = analyzer_cls(platform, ensemble=self.ensemble)
            self._instances[platform_id] = analyzer
        return analyzer

    def register(self, platform_id: str, analyzer_cls: type[ChainAnalyzer]) -> None:
        self._classes[platform_id] = analyzer_cls
        self._instances.pop(platform_id, None)

    def supported_platforms(self) -> list[str]:
        return [p.id for p in self.registry.list_active() if p.id in self._classes]

    async def check_all_health(self) -> dict[str, HealthCheckResult]:
        """Run every analyzer's installation check concurrently."""
        pairs = [(pid, self.get_analyzer(pid)) for pid in self.supported_platforms()]
        platform_ids = [pid for pid, analyzer in pairs if analyzer is not None]
        results = await asyncio.gather(
            *(analyzer.check_health() for _, analyzer in pairs if analyzer is not None),
            return_exceptions=True,
        )
        health: dict[str, HealthCheckResult] = {}
        for platform_id, result in zip(platform_ids, results):
            if isinstance(result, BaseException):
                logger.error("Health check for %s failed: %s", platform_id, result)
                health[platform_id] = HealthCheckResult(installed=False, error=str(result))
            else:
                health[platform_id] = result
        return health

    async def validate_analyzer(self, platform_id: str) -> HealthCheckResult:
        analyzer = self.get_analyzer(platform_id)
        if analyzer is None:
            return HealthCheckResult(installed=False, error=f"No analyzer available for {platform_id}")
        return await analyzer.check_health()
