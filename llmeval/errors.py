"""Unified exception hierarchy for LLMEval.

Exception Hierarchy:
    LLMEvalError (base)
    ├── ConfigurationError - Out-of-range settings overrides
    ├── ModelError - Model loading and generation failures
    │   ├── ModelLoadError - Failed to fetch or initialize model/tokenizer
    │   └── ModelGenerationError - Encoding or sampling failed
    └── GenerationCancelled - Generation stopped by a cancellation signal

The generation controller is the error boundary: none of these escape
LLMEvaluator.generate(). They surface as "Failed: <message>" in the output
text and as the error field of the GenerationResult.

Usage:
    from llmeval.errors import ModelLoadError

    try:
        backend.load(profile, on_progress)
    except ModelLoadError as e:
        logger.error("Load failed: %s (code: %s)", e.message, e.code)
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    # Configuration errors (CFG_*)
    CFG_INVALID = "CFG_INVALID"

    # Model errors (MDL_*)
    MDL_LOAD_FAILED = "MDL_LOAD_FAILED"
    MDL_NOT_FOUND = "MDL_NOT_FOUND"
    MDL_ENCODE_FAILED = "MDL_ENCODE_FAILED"
    MDL_GENERATION_FAILED = "MDL_GENERATION_FAILED"
    MDL_CANCELLED = "MDL_CANCELLED"
    MDL_BUSY = "MDL_BUSY"

    # Resource errors (RES_*)
    RES_MEMORY_EXHAUSTED = "RES_MEMORY_EXHAUSTED"

    # Generic errors
    UNKNOWN = "UNKNOWN"


class LLMEvalError(Exception):
    """Base exception for all LLMEval errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code from ErrorCode enum.
        details: Optional additional context about the error.
        cause: Optional original exception that caused this error.
    """

    default_message: str = "An error occurred"
    default_code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause

        super().__init__(self.message)

        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        parts = [f"{self.__class__.__name__}({self.message!r}"]
        if self.code != self.default_code:
            parts.append(f", code={self.code.value!r}")
        if self.details:
            parts.append(f", details={self.details!r}")
        if self.cause:
            parts.append(f", cause={self.cause!r}")
        parts.append(")")
        return "".join(parts)

class ConfigurationError(LLMEvalError):
    """Raised for out-of-range settings passed in code or on the command line."""

    default_message = "Configuration error"
    default_code = ErrorCode.CFG_INVALID

    def __init__(
        self,
        message: str | None = None,
        *,
        config_key: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, code=code, details=details, cause=cause)


class ModelError(LLMEvalError):
    """Base class for model-related errors."""

    default_message = "Model error"
    default_code = ErrorCode.MDL_GENERATION_FAILED

    def __init__(
        self,
        message: str | None = None,
        *,
        model_name: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize a model error.

        Args:
            message: Human-readable error message.
            model_name: Id of the model that caused the error.
            code: Error code for programmatic handling.
            details: Additional context as key-value pairs.
            cause: Original exception that caused this error.
        """
        details = details or {}
        if model_name:
            details["model_name"] = model_name
        super().__init__(message, code=code, details=details, cause=cause)


class ModelLoadError(ModelError):
    """Raised when weights or tokenizer cannot be fetched or initialized.

    Not fatal: the controller stays unloaded and retries on the next call.
    """

    default_message = "Failed to load model"
    default_code = ErrorCode.MDL_LOAD_FAILED


class ModelGenerationError(ModelError):
    """Raised when encoding the prompt or sampling tokens fails."""

    default_message = "Text generation failed"
    default_code = ErrorCode.MDL_GENERATION_FAILED

    def __init__(
        self,
        message: str | None = None,
        *,
        prompt: str | None = None,
        model_name: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if prompt is not None:
            # Truncate long prompts in error details
            details["prompt_preview"] = prompt[:200] + "..." if len(prompt) > 200 else prompt
        super().__init__(message, model_name=model_name, code=code, details=details, cause=cause)


class GenerationCancelled(LLMEvalError):
    """Describes a generation stopped by a cancellation signal.

    Not a failure: partial output is kept and the controller ends in a clean
    state. Only raised by code that wants to turn a cancelled result into an
    exception (see GenerationResult.raise_for_status).
    """

    default_message = "Generation cancelled"
    default_code = ErrorCode.MDL_CANCELLED

    def __init__(self, message: str | None = None, *, tokens_generated: int = 0) -> None:
        super().__init__(message, details={"tokens_generated": tokens_generated})


# Convenience functions for common error scenarios


def model_not_found(model_name: str) -> ModelLoadError:
    """Create a ModelLoadError for a repo or path that does not exist."""
    return ModelLoadError(
        f"Model not found: {model_name}",
        model_name=model_name,
        code=ErrorCode.MDL_NOT_FOUND,
    )


def model_out_of_memory(
    model_name: str, available_mb: int | None = None, required_mb: int | None = None
) -> ModelLoadError:
    """Create a ModelLoadError for insufficient memory during loading.

    Args:
        model_name: Id of the model.
        available_mb: Available memory in MB.
        required_mb: Required memory in MB.
    """
    details: dict[str, Any] = {}
    if available_mb is not None:
        details["available_mb"] = available_mb
    if required_mb is not None:
        details["required_mb"] = required_mb

    return ModelLoadError(
        f"Insufficient memory to load model: {model_name}",
        model_name=model_name,
        code=ErrorCode.RES_MEMORY_EXHAUSTED,
        details=details,
    )


def encode_failed(model_name: str, prompt: str, cause: Exception) -> ModelGenerationError:
    """Create a ModelGenerationError for a prompt the tokenizer rejected."""
    return ModelGenerationError(
        f"Failed to encode prompt: {cause}",
        prompt=prompt,
        model_name=model_name,
        code=ErrorCode.MDL_ENCODE_FAILED,
        cause=cause,
    )


def generation_in_progress(model_name: str | None = None) -> ModelGenerationError:
    """Create a ModelGenerationError for a request made while another is running."""
    return ModelGenerationError(
        "Generation already in progress",
        model_name=model_name,
        code=ErrorCode.MDL_BUSY,
    )


__all__ = [
    "ErrorCode",
    "LLMEvalError",
    "ConfigurationError",
    "ModelError",
    "ModelLoadError",
    "ModelGenerationError",
    "GenerationCancelled",
    "model_not_found",
    "model_out_of_memory",
    "encode_failed",
    "generation_in_progress",
]
