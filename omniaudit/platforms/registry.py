"""Blockchain platform registry.

The registry is an explicitly constructed object (see
:func:`omniaudit.platforms.catalog.default_registry`)
shared by the detector and the analyzer dispatch. Reads never lock: writers
build a new mapping under a lock and swap it in, so a reader always iterates
a consistent snapshot.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import Callable

from omniaudit.core.types import ContractInput, ValidationResult

logger = logging.getLogger(__name__)


# ── Types ────────────────────────────────────────────────────────────────────


class PatternKind(str, enum.Enum):
    SYNTAX = "syntax"
    IMPORT = "import"
    PRAGMA = "pragma"
    KEYWORD = "keyword"
    FILENAME = "filename"


@dataclass(frozen=True)
class DetectionPattern:
    """Weighted heuristic used to recognise a platform.

    ``matcher`` is either a literal substring or a compiled regular expression.
    Filename patterns are tested against the filename only, every other kind
    against the source text.
    """

    kind: PatternKind
    matcher: str | re.Pattern[str]
    weight: float
    description: str = ""

    def __post_init__(self) -> None:
        if not 0.0 < self.weight <= 1.0:
            raise ValueError(f"pattern weight must be in (0, 1], got {self.weight}")

    def matches(self, code: str, filename: str | None = None) -> bool:
        if self.kind is PatternKind.FILENAME:
            if not filename:
                return False
            target = filename
        else:
            target = code
        if isinstance(self.matcher, re.Pattern):
            return self.matcher.search(target) is not None
        return self.matcher in target


@dataclass(frozen=True)
class ValidationRule:
    """Platform-specific validation step run by :meth:`PlatformRegistry.validate_contract`."""

    id: str
    name: str
    description: str
    validator: Callable[[str, str | None], ValidationResult]


@dataclass(frozen=True)
class BlockchainPlatform:
    """A supported blockchain / VM."""

    id: str
    name: str
    display_name: str
    execution_model: str
    languages: tuple[str, ...]
    file_extensions: tuple[str, ...]
    detection_patterns: tuple[DetectionPattern, ...] = ()
    validation_rules: tuple[ValidationRule, ...] = ()
    description: str = ""
    is_active: bool = True

    def supports_language(self, language: str) -> bool:
        return language.lower() in self.languages

    def accepts_file(self, filename: str) -> bool:
        return file_extension(filename) in self.file_extensions


def file_extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lower()


# ── Registry ─────────────────────────────────────────────────────────────────


class PlatformRegistry:
    """Catalog of supported platforms keyed by id."""

    def __init__(self, platforms: list[BlockchainPlatform] | None = None) -> None:
        self._platforms: dict[str, BlockchainPlatform] = {}
        self._write_lock = threading.Lock()
        for platform in platforms or []:
            self.register(platform)

    # ── Writes ───────────────────────────────────────────────────────────

    def register(self, platform: BlockchainPlatform) -> None:
        """Add a platform; a later registration with the same id replaces it."""
        with self._write_lock:
            updated = dict(self._platforms)
            if platform.id in updated:
                logger.warning("Overriding registered platform %s", platform.id)
            updated[platform.id] = platform
            self._platforms = updated
        logger.debug("Registered platform %s", platform.id)

    def activate(self, platform_id: str) -> bool:
        return self._set_active(platform_id, True)

    def deactivate(self, platform_id: str) -> bool:
        return self._set_active(platform_id, False)

    def _set_active(self, platform_id: str, active: bool) -> bool:
        with self._write_lock:
            current = self._platforms.get(platform_id)
            if current is None:
                return False
            updated = dict(self._platforms)
            updated[platform_id] = dataclasses.replace(current, is_active=active)
            self._platforms = updated
        logger.info("Platform %s %s", platform_id, "activated" if active else "deactivated")
        return True

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, platform_id: str) -> BlockchainPlatform | None:
        return self._platforms.get(platform_id)

    def list_all(self) -> list[BlockchainPlatform]:
        return list(self._platforms.values())

    def list_active(self) -> list[BlockchainPlatform]:
        return [p for p in self._platforms.values() if p.is_active]

    def is_active(self, platform_id: str) -> bool:
        platform = self._platforms.get(platform_id)
        return platform is not None and platform.is_active

    def supports_language(self, platform_id: str, language: str) -> bool:
        platform = self._platforms.get(platform_id)
        return platform is not None and platform.supports_language(language)

    def platforms_for_language(self, language: str) -> list[BlockchainPlatform]:
        return [p for p in self.list_active() if p.supports_language(language)]

    def platforms_for_extension(self, filename: str) -> list[BlockchainPlatform]:
        return [p for p in self.list_active() if p.accepts_file(filename)]

    def validate_contract(self, platform_id: str, contract: ContractInput) -> ValidationResult:
        """Run the extension check and every validation rule of a platform."""
        platform = self._platforms.get(platform_id)
        if platform is None:
            return ValidationResult(is_valid=False, errors=[f"Unknown platform: {platform_id}"])
        return apply_platform_rules(platform, contract)


def apply_platform_rules(platform: BlockchainPlatform, contract: ContractInput) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []

    if contract.filename and not platform.accepts_file(contract.filename):
        warnings.append(
            f"File extension '{file_extension(contract.filename)}' is not typical for "
            f"{platform.name}. Expected: {', '.join(platform.file_extensions)}"
        )

    for rule in platform.validation_rules:
        try:
            result = rule.validator(contract.code, contract.filename)
        except Exception:
            logger.exception("Validation rule %s failed", rule.id)
            warnings.append(f"Validation rule '{rule.name}' encountered an error")
            continue
        errors.extend(result.errors)
        warnings.extend(result.warnings)

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
