"""Error taxonomy for the OmniAudit engine.

Tool- and model-level problems are not raised: they are recorded as
:class:`~omniaudit.core.types.Issue` entries carrying one of the codes below.
Exceptions are reserved for caller mistakes (unknown job, wrong owner,
unusable request).
"""

from __future__ import annotations

from enum import Enum
from typing import Any


# ── Error Codes ──────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Codes attached to issues and exceptions."""

    # Detection / dispatch
    DETECTION_INCONCLUSIVE = "DetectionInconclusive"
    PLATFORM_ANALYZER_MISSING = "PlatformAnalyzerMissing"

    # Static tools
    TOOL_NOT_INSTALLED = "ToolNotInstalled"
    TOOL_TIMEOUT = "ToolTimeout"
    TOOL_OUTPUT_UNPARSEABLE = "ToolOutputUnparseable"
    TOOL_EXECUTION_FAILED = "ToolExecutionFailed"

    # AI ensemble
    MODEL_UNAVAILABLE = "ModelUnavailable"
    AI_ANALYSIS_FAILED = "AIAnalysisFailed"

    # Jobs
    VALIDATION_FAILED = "ValidationFailed"
    ANALYSIS_TIMEOUT = "AnalysisTimeout"
    ANALYSIS_FAILED = "AnalysisFailed"
    PARTIAL_PLATFORM_FAILURE = "PartialPlatformFailure"
    CROSS_CHAIN_PRECONDITION_UNMET = "CrossChainPreconditionUnmet"

    # Caller errors
    INVALID_REQUEST = "InvalidRequest"
    ACCESS_DENIED = "AccessDenied"
    NOT_FOUND = "NotFound"

    # Informational warnings
    NOTICE = "Notice"


# ── Exceptions ───────────────────────────────────────────────────────────────


class OmniAuditError(Exception):
    """Base exception carrying an :class:`ErrorCode`."""

    code: ErrorCode = ErrorCode.ANALYSIS_FAILED

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class JobNotFoundError(OmniAuditError):
    code = ErrorCode.NOT_FOUND


class AccessDeniedError(OmniAuditError):
    code = ErrorCode.ACCESS_DENIED


class InvalidRequestError(OmniAuditError):
    code = ErrorCode.INVALID_REQUEST


class JobSupersededError(OmniAuditError):
    """The stored job record reached a terminal state written by another process."""
