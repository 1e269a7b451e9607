from __future__ import annotations

import pytest
from kubernetes.client import ApiException

from arangodb_operator.errors import (
    ErrorKind,
    FatalError,
    NotFoundError,
    TemporaryError,
    classify,
    classify_rejected_request,
    error_message,
    is_fatal,
    is_not_found,
    is_temporary,
    new_fatal_error,
    new_temporary_error,
)


def test_new_fatal_error_formats_message_arguments() -> None:
    error = new_fatal_error("missing field %s", ".status.backup")

    assert isinstance(error, FatalError)
    assert error.kind is ErrorKind.FATAL
    assert str(error) == "missing field .status.backup"


def test_new_temporary_error_keeps_cause() -> None:
    cause = ConnectionError("reset by peer")

    error = new_temporary_error(cause)

    assert error.kind is ErrorKind.TEMPORARY
    assert error.cause is cause
    assert str(error) == "reset by peer"


def test_new_temporary_error_with_temporary_error_returns_it() -> None:
    error = TemporaryError("already classified")

    assert new_temporary_error(error) is error


def test_classify_with_unknown_exception_is_temporary() -> None:
    assert is_temporary(ValueError("boom"))
    assert not is_fatal(ValueError("boom"))


def test_classify_with_classified_error_keeps_kind() -> None:
    fatal = FatalError("bad record")

    assert classify(fatal) is fatal
    assert is_fatal(fatal)


@pytest.mark.parametrize("status", [400, 409, 422])
def test_classify_rejected_request_with_validation_status_is_fatal(status: int) -> None:
    assert isinstance(classify_rejected_request(ApiException(status=status, reason="Invalid")), FatalError)


@pytest.mark.parametrize("status", [401, 403, 429, 500, 503])
def test_classify_rejected_request_with_other_status_is_temporary(status: int) -> None:
    assert isinstance(classify_rejected_request(ApiException(status=status, reason="Error")), TemporaryError)


def test_is_not_found_recognizes_api_404_and_status_source_miss() -> None:
    assert is_not_found(ApiException(status=404, reason="Not Found"))
    assert is_not_found(NotFoundError("backup-1"))
    assert not is_not_found(ApiException(status=500, reason="boom"))
    assert not is_not_found(KeyError("backup-1"))


def test_error_message_with_empty_message_uses_class_name() -> None:
    assert error_message(TimeoutError()) == "TimeoutError"
    assert error_message(ApiException(status=503, reason="Service Unavailable")) == "API status 503 (Service Unavailable)"
