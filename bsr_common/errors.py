"""Shared error taxonomy for browser-suite-runner."""

from __future__ import annotations

from typing import Any, Mapping, TypeVar


def _normalize_context_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return normalize_context(value)
    if isinstance(value, (list, tuple)):
        return [_normalize_context_value(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def normalize_context(context: Mapping[str, Any]) -> dict[str, Any]:
    """Return a JSON-friendly copy of an error context mapping."""
    return {key: _normalize_context_value(val) for key, val in context.items()}


class BSRError(Exception):
    """Base error type for typed failure handling."""

    def __init__(
        self,
        message: str,
        *,
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.context = normalize_context(context or {})
        if cause is not None:
            self.__cause__ = cause

    @property
    def error_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.error_type, "message": str(self), "context": self.context}


class RunnerError(BSRError):
    """Standardized failure raised by the run coordinator."""


class SuiteInitError(RunnerError):
    """A test suite could not be constructed or initialized."""


class ReportPersistenceError(BSRError):
    """Failure persisting the global report."""


class WorkerCrashError(BSRError):
    """A worker process exited without reporting results."""


class RunInterrupted(BSRError):
    """The process received a termination signal."""


class ConfigurationError(BSRError):
    """Failure due to invalid configuration."""


T = TypeVar("T", bound=BSRError)


def wrap_error(
    error_cls: type[T],
    message: str,
    *,
    context: Mapping[str, Any] | None = None,
    cause: BaseException | None = None,
) -> T:
    """Create a typed BSRError with optional context and cause."""
    return error_cls(message, context=context, cause=cause)


def create_runner_error(
    err: BaseException, *, context: Mapping[str, Any] | None = None
) -> BSRError:
    """Wrap a construction-time failure into the standard runner error."""
    if isinstance(err, BSRError):
        return err
    message = f"{type(err).__name__}: {err}"
    return wrap_error(SuiteInitError, message, context=context, cause=err)


def error_to_payload(error: BSRError) -> dict[str, Any]:
    """Convert a BSRError to a report payload."""
    return {
        "error_type": error.error_type,
        "error": str(error),
        "error_context": error.context,
    }
