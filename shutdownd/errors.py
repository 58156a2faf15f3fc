# shutdownd/errors.py
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    MALFORMED = "malformed"
    INVALID_SCHEMA = "invalid_schema"
    UNEXPECTED_TOPIC = "unexpected_topic"
    COMPILE_FAILURE = "compile_failure"
    EVAL_FAILURE = "eval_failure"
    ACTION_FAILURE = "action_failure"


class ShutdowndError(Exception):
    kind: ErrorKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MalformedMessage(ShutdowndError):
    """Payload could not be decoded into a power event."""

    kind = ErrorKind.MALFORMED


class InvalidSchema(ShutdowndError):
    """Payload decoded, but a field is outside its allowed range."""

    kind = ErrorKind.INVALID_SCHEMA


class UnexpectedTopic(ShutdowndError):
    kind = ErrorKind.UNEXPECTED_TOPIC


class CompileFailure(ShutdowndError):
    """A policy expression failed to parse or does not type-check to bool."""

    kind = ErrorKind.COMPILE_FAILURE


class EvalFailure(ShutdowndError):
    kind = ErrorKind.EVAL_FAILURE


class ActionFailure(ShutdowndError):
    """The shutdown command could not be executed."""

    kind = ErrorKind.ACTION_FAILURE


# Errors the strict flag decides about. Everything else is always fatal.
DROPPABLE_KINDS = frozenset(
    {
        ErrorKind.MALFORMED,
        ErrorKind.INVALID_SCHEMA,
        ErrorKind.UNEXPECTED_TOPIC,
    }
)


class FatalError(Exception):
    """
    Raised when the daemon must stop.

    `cause` is the error that triggered it; `exit_code` is what the
    process should exit with.
    """

    def __init__(self, cause: BaseException, exit_code: int = 1) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.exit_code = exit_code
