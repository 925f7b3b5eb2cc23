from __future__ import annotations

import pytest

from backend.agenttube.errors import (
    AUTH_RATE_LIMITED_MESSAGE,
    PROVIDER_RETRIES_EXHAUSTED_MESSAGE,
    ArtifactTimeoutError,
    AuthProviderError,
    EntitlementCheckError,
    ErrorKind,
    MissingContextError,
    QuotaExceededError,
    TranscriptUnavailableError,
    classify_error,
    classify_provider_signal,
    translate_upstream_error,
)


class _UpstreamError(Exception):
    def __init__(self, message: str, **fields: object) -> None:
        super().__init__(message)
        for name, value in fields.items():
            setattr(self, name, value)


@pytest.mark.parametrize(
    ("message", "expected_kind", "expected_status"),
    [
        ("The model is overloaded. Please try later.", ErrorKind.PROVIDER_OVERLOADED, 503),
        ("Service Unavailable", ErrorKind.PROVIDER_OVERLOADED, 503),
        ("Request failed with 429", ErrorKind.PROVIDER_RATE_LIMITED, 429),
        ("Rate limit reached for gpt-4o-mini", ErrorKind.PROVIDER_RATE_LIMITED, 429),
        ("Your request was rejected by our safety system", ErrorKind.CONTENT_POLICY_VIOLATION, 400),
        ("Request timed out.", ErrorKind.PROVIDER_TIMEOUT, 504),
        ("something odd happened", ErrorKind.UNKNOWN, 500),
    ],
)
def test_translate_upstream_error_maps_raw_messages(
    message: str,
    expected_kind: ErrorKind,
    expected_status: int,
) -> None:
    classified = classify_error(translate_upstream_error(RuntimeError(message)))

    assert classified.kind == expected_kind
    assert classified.http_status == expected_status
    assert message not in classified.user_message


def test_translate_upstream_error_reads_vendor_status_fields() -> None:
    assert translate_upstream_error(_UpstreamError("boom", status_code=529)).kind == ErrorKind.PROVIDER_OVERLOADED
    assert translate_upstream_error(_UpstreamError("boom", statusCode="429")).kind == ErrorKind.PROVIDER_RATE_LIMITED
    assert translate_upstream_error(_UpstreamError("boom", status=504)).kind == ErrorKind.PROVIDER_TIMEOUT


def test_untagged_errors_are_unknown_whatever_their_text() -> None:
    for error in (
        RuntimeError("503 unavailable"),
        KeyError("rate limit"),
        _UpstreamError("boom", status_code=529),
    ):
        classified = classify_error(error)

        assert classified.kind == ErrorKind.UNKNOWN
        assert classified.http_status == 500


def test_retries_exhausted_reason_uses_dedicated_copy() -> None:
    translated = translate_upstream_error(
        _UpstreamError("RetryError", reason="maxRetriesExceeded", lastError="overloaded")
    )

    classified = classify_error(translated)
    assert classified.kind == ErrorKind.PROVIDER_OVERLOADED
    assert classified.user_message == PROVIDER_RETRIES_EXHAUSTED_MESSAGE


def test_transient_auth_error_with_429_asks_user_to_wait() -> None:
    classified = classify_error(
        AuthProviderError("too many requests", status_code=429, transient=True)
    )

    assert classified.kind == ErrorKind.AUTH_TRANSIENT
    assert classified.http_status == 429
    assert classified.user_message == AUTH_RATE_LIMITED_MESSAGE
    assert classified.retryable is True


def test_transient_auth_error_without_429_is_service_unavailable() -> None:
    classified = classify_error(AuthProviderError("upstream down", status_code=503, transient=True))

    assert classified.kind == ErrorKind.AUTH_TRANSIENT
    assert classified.http_status == 503


def test_non_transient_auth_error_is_unknown() -> None:
    classified = classify_error(AuthProviderError("bad config", status_code=400, transient=False))

    assert classified.kind == ErrorKind.UNKNOWN
    assert classified.http_status == 500


def test_tagged_errors_keep_their_kind_and_copy() -> None:
    quota = classify_error(QuotaExceededError("limit", user_message="Upgrade to keep going."))
    assert (quota.kind, quota.http_status, quota.user_message) == (
        ErrorKind.QUOTA_EXCEEDED,
        403,
        "Upgrade to keep going.",
    )

    unavailable = classify_error(TranscriptUnavailableError())
    assert unavailable.http_status == 404
    assert unavailable.user_message == "Transcript not available for this video."

    missing = classify_error(MissingContextError())
    assert (missing.http_status, missing.user_message) == (400, "Video context missing")

    assert classify_error(ArtifactTimeoutError()).retryable is True
    assert classify_error(EntitlementCheckError("schematic down")).http_status == 500


def test_provider_signal_prefers_overload_over_rate_limit_text() -> None:
    error = classify_provider_signal(message="503 overloaded, rate limit soon", status_code=None)
    assert error.kind == ErrorKind.PROVIDER_OVERLOADED
