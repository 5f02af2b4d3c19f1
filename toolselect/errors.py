"""
Error classes for toolselect.

Line-level errors are captured into the failing line's output and the run
continues; the model is expected to read them and correct itself on the next
step. ProcessFault is the only error that ends a run early, because it means
the sandbox itself is gone rather than one call inside it.

Errors cross the process boundary as {type, message, details} dicts, never
as opaque strings.
"""

from typing import Any, Dict, Optional, Type


class ToolSelectError(Exception):
    """Base exception for toolselect."""

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class GenerationFailure(ToolSelectError):
    """The model call failed or returned something that is not a script."""
    pass


class LineExecutionError(ToolSelectError):
    """A single line raised; recorded in that line's output."""
    pass


class CallBudgetExceeded(LineExecutionError):
    """Too many search/ask calls in one run."""
    pass


class RPCTimeout(LineExecutionError):
    """One call across the channel got no response in time."""
    pass


class LineTimeout(LineExecutionError):
    """One line ran past its wall-clock bound."""
    pass


class SandboxViolation(LineExecutionError):
    """Disallowed syntax, name or attribute in model code."""
    pass


class RemoteOperationError(LineExecutionError):
    """Any other structured error received from the other side of the channel."""

    def __init__(
        self,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
        error_type: str = "RemoteOperationError",
    ):
        super().__init__(message, details)
        self.error_type = error_type


class ProcessFault(ToolSelectError):
    """
    The sandbox child process died, hung, or never became ready.

    Fatal to the run: every pending and future call on the engine fails.
    """
    pass


_ERROR_TYPES: Dict[str, Type[ToolSelectError]] = {
    cls.__name__: cls
    for cls in (
        GenerationFailure,
        LineExecutionError,
        CallBudgetExceeded,
        RPCTimeout,
        LineTimeout,
        SandboxViolation,
        ProcessFault,
    )
}


def error_type_name(exc: BaseException) -> str:
    if isinstance(exc, RemoteOperationError):
        return exc.error_type
    return type(exc).__name__


def error_message(exc: BaseException) -> str:
    if isinstance(exc, ToolSelectError) and exc.message:
        return exc.message
    text = str(exc)
    return text or type(exc).__name__


def error_to_payload(exc: BaseException) -> Dict[str, Any]:
    details: Dict[str, Any] = {}
    if isinstance(exc, ToolSelectError):
        details = dict(exc.details)
    return {"type": error_type_name(exc), "message": error_message(exc), "details": details}


def error_from_payload(payload: Any) -> ToolSelectError:
    if not isinstance(payload, dict):
        return RemoteOperationError(str(payload))
    error_type = str(payload.get("type") or "RemoteOperationError")
    message = str(payload.get("message") or error_type)
    details = payload.get("details") if isinstance(payload.get("details"), dict) else {}
    cls = _ERROR_TYPES.get(error_type)
    if cls is not None:
        return cls(message, details)
    return RemoteOperationError(message, details, error_type=error_type)
