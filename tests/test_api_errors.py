from __future__ import annotations

from marketauth.api.errors import ApiError, ApiErrorCode, to_error_payload


def test_to_error_payload_preserves_structured_detail() -> None:
    payload = to_error_payload(
        {"error_code": "AUTH_TOKEN_INVALID", "message": "Invalid"},
        401,
    )

    assert payload == {"error_code": "AUTH_TOKEN_INVALID", "message": "Invalid"}


def test_to_error_payload_keeps_attempts_and_retry_after() -> None:
    payload = to_error_payload(
        {
            "error_code": "OTP_MISMATCH",
            "message": "Invalid code",
            "attempts_remaining": 3,
            "retry_after_seconds": None,
        },
        400,
    )

    assert payload == {
        "error_code": "OTP_MISMATCH",
        "message": "Invalid code",
        "attempts_remaining": 3,
    }


def test_to_error_payload_normalizes_plain_string() -> None:
    payload = to_error_payload("boom", 500)

    assert payload == {"error_code": "HTTP_500", "message": "boom"}


def test_api_error_sets_retry_after_header() -> None:
    error = ApiError(
        status_code=429,
        error_code=ApiErrorCode.OTP_COOLDOWN,
        message="wait",
        retry_after_seconds=42,
    )

    assert error.headers == {"Retry-After": "42"}
    assert error.detail["retry_after_seconds"] == 42
    assert error.error_code == ApiErrorCode.OTP_COOLDOWN


def test_api_error_without_retry_has_no_headers() -> None:
    error = ApiError(status_code=404, error_code=ApiErrorCode.NOT_FOUND, message="missing")

    assert error.headers is None
    assert error.detail == {"error_code": "NOT_FOUND", "message": "missing"}
