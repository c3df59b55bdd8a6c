"""Exceptions raised inside the coordination core."""
from __future__ import annotations

from mcp_core.core.models import ErrorCode


class CoordinationError(Exception):
    """Base error; ``error_code`` is what the coordinator reports in ERROR envelopes."""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, *, error_code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code


class UnknownCommandError(CoordinationError):
    error_code = ErrorCode.COMMAND_ERROR


class AgentNotFoundError(CoordinationError):
    error_code = ErrorCode.NOT_FOUND_ERROR


class AgentExecutionError(CoordinationError):
    error_code = ErrorCode.PROCESSING_ERROR


class AgentTimeoutError(AgentExecutionError):
    error_code = ErrorCode.TIMEOUT_ERROR


def error_code_for(exc: BaseException, default: ErrorCode = ErrorCode.COMMAND_PROCESSING_ERROR) -> ErrorCode:
    """Map an exception raised by an agent to the code carried in its ERROR envelope."""
    if isinstance(exc, CoordinationError):
        return exc.error_code
    if isinstance(exc, TimeoutError):
        return ErrorCode.TIMEOUT_ERROR
    return default
