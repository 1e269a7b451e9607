from __future__ import annotations

from enum import Enum

from kubernetes.client import ApiException

# Statuses that mean the API server rejected the object itself.
REJECTED_REQUEST_STATUSES = frozenset({400, 409, 422})


class ErrorKind(str, Enum):
    FATAL = "fatal"
    TEMPORARY = "temporary"


class OperatorError(RuntimeError):
    """Base class for classified reconcile failures."""

    kind: ErrorKind

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        normalized = message.strip() or "unknown error"
        super().__init__(normalized)
        self.cause = cause


class FatalError(OperatorError):
    """Raised when retrying cannot help until the resource itself is corrected."""

    kind = ErrorKind.FATAL


class TemporaryError(OperatorError):
    """Raised for transient infrastructure failures that the next tick retries."""

    kind = ErrorKind.TEMPORARY


class NotFoundError(LookupError):
    """Raised by status sources when a backup no longer exists."""

    def __init__(self, backup_id: str) -> None:
        super().__init__(f"backup {backup_id} not found")
        self.backup_id = backup_id


def new_fatal_error(message: str, *args: object) -> FatalError:
    return FatalError(message % args if args else message)


def new_temporary_error(cause: BaseException) -> TemporaryError:
    if isinstance(cause, TemporaryError):
        return cause
    return TemporaryError(error_message(cause), cause=cause)


def classify(error: BaseException) -> OperatorError:
    if isinstance(error, OperatorError):
        return error
    return new_temporary_error(error)


def classify_rejected_request(error: BaseException) -> OperatorError:
    if isinstance(error, ApiException) and error.status in REJECTED_REQUEST_STATUSES:
        return FatalError(api_error_message(error), cause=error)
    return classify(error)


def is_fatal(error: BaseException) -> bool:
    return classify(error).kind is ErrorKind.FATAL


def is_temporary(error: BaseException) -> bool:
    return classify(error).kind is ErrorKind.TEMPORARY


def is_not_found(error: BaseException) -> bool:
    if isinstance(error, NotFoundError):
        return True
    return isinstance(error, ApiException) and error.status == 404


def error_message(error: BaseException) -> str:
    if isinstance(error, ApiException):
        return api_error_message(error)
    message = str(error).strip()
    return message or error.__class__.__name__


def api_error_message(error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"API status {status} ({reason})"
