import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from qsrls.core.errors import (
    ErrorKind,
    MissingArgument,
    Outcome,
    RemoteError,
    classify,
    remote_call,
    require,
)


def _client_error(code: str, message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "AnyOperation")


@pytest.mark.parametrize(
    ("code", "kind", "status"),
    [
        ("ResourceNotFoundException", ErrorKind.NOT_FOUND, 404),
        ("EntityNotFoundException", ErrorKind.NOT_FOUND, 404),
        ("AccessDeniedException", ErrorKind.PERMISSION_DENIED, 403),
        ("ThrottlingException", ErrorKind.THROTTLED, 429),
        ("ConflictException", ErrorKind.CONFLICT, 409),
        ("InvalidParameterValueException", ErrorKind.VALIDATION, 400),
        ("InternalFailureException", ErrorKind.TRANSIENT, 500),
    ],
)
def test_remote_call_classifies_client_errors(code: str, kind: ErrorKind, status: int):
    with pytest.raises(RemoteError) as info:
        with remote_call("DescribeDataSet"):
            raise _client_error(code, "nope")

    err = info.value
    assert err.kind is kind
    assert err.status_code == status
    assert err.error_type == code
    assert err.message == "DescribeDataSet: nope"


def test_remote_call_keeps_unknown_identifier():
    with pytest.raises(RemoteError) as info:
        with remote_call("PutObject"):
            raise _client_error("SomethingNew")

    assert info.value.kind is ErrorKind.UNKNOWN
    assert info.value.status_code == 500
    assert info.value.error_type == "SomethingNew"


def test_remote_call_maps_transport_errors_to_transient():
    with pytest.raises(RemoteError) as info:
        with remote_call("ListUsers"):
            raise EndpointConnectionError(endpoint_url="https://quicksight.example")

    assert info.value.kind is ErrorKind.TRANSIENT
    assert info.value.status_code == 503
    assert info.value.error_type == "EndpointConnectionError"


def test_classify_without_identifier_is_unknown():
    assert classify(None) == (ErrorKind.UNKNOWN, 500)


def test_outcome_from_remote_error_names_context_and_type():
    exc = RemoteError("GetDatabase: db not found", error_type="EntityNotFoundException")

    outcome = Outcome.from_error(exc, context="Validating Glue database 'db'")

    assert not outcome.ok
    assert outcome.status_code == 404
    assert outcome.kind is ErrorKind.NOT_FOUND
    assert outcome.message == (
        "[EntityNotFoundException] Validating Glue database 'db': GetDatabase: db not found"
    )


def test_outcome_from_missing_argument_is_validation():
    with pytest.raises(MissingArgument) as info:
        require(region="eu-west-1", bucket="")

    outcome = Outcome.from_error(info.value, context="Stage 0")

    assert outcome.status_code == 400
    assert outcome.kind is ErrorKind.VALIDATION
    assert outcome.error_type == "ReferenceError"
    assert "Missing 'bucket'" in outcome.message


def test_outcome_failure_defaults_status_from_kind():
    assert Outcome.failure("x", kind=ErrorKind.TIMED_OUT).status_code == 504
    assert Outcome.failure("x").error_type == "UnknownError"
    assert Outcome.success("fine", status_code=201).ok
