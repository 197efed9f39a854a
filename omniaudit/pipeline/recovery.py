"""Recovery hints for failed platform analyses.

Hints are attached to the ``suggestions`` of each error recorded for a failed
platform so the caller can tell a retryable hiccup from a broken toolchain.
"""

from __future__ import annotations

from omniaudit.core.errors import ErrorCode
from omniaudit.core.types import Issue
from omniaudit.platforms.registry import BlockchainPlatform

RETRY_HINT = "This failure is usually temporary; retrying the analysis may succeed"

RETRYABLE_CODES = frozenset({
    ErrorCode.TOOL_TIMEOUT,
    ErrorCode.ANALYSIS_TIMEOUT,
    ErrorCode.MODEL_UNAVAILABLE,
    ErrorCode.AI_ANALYSIS_FAILED,
})

# Failures where the platform's toolchain is the likely culprit
_TOOLCHAIN_CODES = frozenset({
    ErrorCode.TOOL_NOT_INSTALLED,
    ErrorCode.TOOL_EXECUTION_FAILED,
    ErrorCode.TOOL_OUTPUT_UNPARSEABLE,
    ErrorCode.ANALYSIS_FAILED,
})

_CODE_HINTS: dict[ErrorCode, tuple[str, ...]] = {
    ErrorCode.TOOL_NOT_INSTALLED: (
        "Configure AI models for the ensemble so the platform can be analyzed without its static tool",
    ),
    ErrorCode.TOOL_TIMEOUT: (
        "Raise OMNIAUDIT_STATIC_TOOL_TIMEOUT_SECONDS or submit fewer contracts per job",
    ),
    ErrorCode.TOOL_OUTPUT_UNPARSEABLE: (
        "Check that the installed tool version emits JSON output",
    ),
    ErrorCode.ANALYSIS_TIMEOUT: (
        "Raise timeout_ms in the analysis options or split the contracts into smaller jobs",
    ),
    ErrorCode.MODEL_UNAVAILABLE: (
        "Check the AI provider API keys and the configured model names",
    ),
    ErrorCode.AI_ANALYSIS_FAILED: (
        "Check the AI provider API keys and the configured model names",
    ),
    ErrorCode.VALIDATION_FAILED: (
        "Make sure at least one contract targets this platform and passes its validation rules",
    ),
    ErrorCode.PLATFORM_ANALYZER_MISSING: (
        "Activate the platform in the registry or request a supported platform",
    ),
}

# Keyed by the platform's primary language
_TOOLCHAIN_HINTS: dict[str, tuple[str, ...]] = {
    "solidity": (
        "Ensure Slither is installed and on PATH",
        "Check that the solc version matches the contract's pragma",
    ),
    "rust": (
        "Ensure cargo and clippy are installed (rustup component add clippy)",
        "Check the Anchor version and the Cargo.toml dependencies",
    ),
    "haskell": (
        "Ensure hlint is installed and on PATH",
        "Check that the Plutus imports resolve with the installed GHC",
    ),
    "move": (
        "Ensure the aptos or sui CLI is installed and on PATH",
        "Check the Move package dependencies in Move.toml",
    ),
}

_GENERIC_HINTS = (
    "Check the system requirements and tool installations",
    "Inspect the worker logs for this job id if the issue persists",
)


def recovery_suggestions(issue: Issue, platform: BlockchainPlatform | None = None) -> list[str]:
    """Ordered, de-duplicated hints for one error."""
    hints: list[str] = []
    if issue.code in RETRYABLE_CODES:
        hints.append(RETRY_HINT)
    hints.extend(_CODE_HINTS.get(issue.code, ()))
    if issue.code in _TOOLCHAIN_CODES and platform is not None and platform.languages:
        hints.extend(_TOOLCHAIN_HINTS.get(platform.languages[0], ()))
    return list(dict.fromkeys(hints)) or list(_GENERIC_HINTS)


def with_suggestions(issues: list[Issue], platform: BlockchainPlatform | None = None) -> list[Issue]:
    return [
        issue.model_copy(update={"suggestions": recovery_suggestions(issue, platform)})
        for issue in issues
    ]
