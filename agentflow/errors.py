"""
Error taxonomy for the agent engine.

ConfigError is fatal at load time. The remaining errors are scoped to a single
invocation and are converted into error envelopes by `agentflow.engine`.
"""

from __future__ import annotations

from typing import Any, Optional


class EngineError(RuntimeError):
    """Base engine error carrying a stable code and optional details."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigError(EngineError):
    """Raised when the configuration is malformed or inconsistent."""

    code = "CONFIG_INVALID"


class ValidationError(EngineError):
    """Raised when an input does not conform to its declared request format."""

    code = "INPUT_VALIDATION_ERROR"


class CapabilityError(EngineError):
    """Raised when a capability is missing, unauthorized, times out or fails."""

    code = "CAPABILITY_ERROR"

    def __init__(self, message: str, path: str, details: Any = None):
        super().__init__(message, details)
        self.path = path


class SectionError(EngineError):
    """Raised when a mandatory section could not be rendered."""

    code = "SECTION_ERROR"

    def __init__(self, section: str, cause: Optional[BaseException] = None):
        reason = str(cause) if cause is not None else "unknown failure"
        super().__init__(
            f"Mandatory section '{section}' failed: {reason}",
            details={"section": section, "reason": reason},
        )
        self.section = section
        self.cause = cause


class NoTemplateError(EngineError):
    """Raised when no response template matches the resolved status."""

    code = "NO_TEMPLATE"
