from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    AUTH_TRANSIENT = "auth_transient"
    QUOTA_EXCEEDED = "quota_exceeded"
    STORE_UNAVAILABLE = "store_unavailable"
    PROVIDER_OVERLOADED = "provider_overloaded"
    PROVIDER_RATE_LIMITED = "provider_rate_limited"
    PROVIDER_TIMEOUT = "provider_timeout"
    CONTENT_POLICY_VIOLATION = "content_policy_violation"
    ARTIFACT_TIMEOUT = "artifact_timeout"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    MISSING_CONTEXT = "missing_context"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    http_status: int
    user_message: str
    retryable: bool


@dataclass(frozen=True)
class _KindDefaults:
    http_status: int
    user_message: str
    retryable: bool


_KIND_DEFAULTS: dict[ErrorKind, _KindDefaults] = {
    ErrorKind.AUTH_TRANSIENT: _KindDefaults(
        503,
        "Authentication is temporarily unavailable. Please wait a moment and try again.",
        True,
    ),
    ErrorKind.QUOTA_EXCEEDED: _KindDefaults(
        403,
        "You have reached your plan limit for this feature. Upgrade your plan to continue.",
        False,
    ),
    ErrorKind.STORE_UNAVAILABLE: _KindDefaults(
        503,
        "Your library is temporarily unavailable. Please try again in a moment.",
        True,
    ),
    ErrorKind.PROVIDER_OVERLOADED: _KindDefaults(
        503,
        "The AI model is overloaded right now. Please wait a few seconds and try again.",
        True,
    ),
    ErrorKind.PROVIDER_RATE_LIMITED: _KindDefaults(
        429,
        "We're hitting a temporary AI rate limit. Please slow down and retry in a moment.",
        True,
    ),
    ErrorKind.PROVIDER_TIMEOUT: _KindDefaults(
        504,
        "The AI service took too long to respond. Please try again shortly.",
        True,
    ),
    ErrorKind.CONTENT_POLICY_VIOLATION: _KindDefaults(
        400,
        "The AI provider declined this request. Try rephrasing your description.",
        False,
    ),
    ErrorKind.ARTIFACT_TIMEOUT: _KindDefaults(
        504,
        "Your result was saved but is still processing. Refresh in a few seconds to see it.",
        True,
    ),
    ErrorKind.RESOURCE_UNAVAILABLE: _KindDefaults(
        404,
        "The requested content is not available for this video.",
        False,
    ),
    ErrorKind.MISSING_CONTEXT: _KindDefaults(400, "Video context missing", False),
    ErrorKind.UNKNOWN: _KindDefaults(
        500,
        "Something went wrong on our side. Please try again later.",
        False,
    ),
}

AUTH_RATE_LIMITED_MESSAGE = (
    "You're making requests too quickly. Please wait a few seconds before trying again."
)
PROVIDER_RETRIES_EXHAUSTED_MESSAGE = (
    "The AI service could not respond after a few attempts. Give it another try shortly."
)


class ServiceError(Exception):
    """Base for failures that already carry a taxonomy kind.

    ``str(exc)`` is internal detail for logs; ``user_message`` is the only text that
    may reach a client and is left ``None`` to use the kind's default copy.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", *, user_message: str | None = None) -> None:
        super().__init__(message or self.kind.value)
        self.user_message = user_message


class AuthTransientError(ServiceError):
    kind = ErrorKind.AUTH_TRANSIENT

    def __init__(self, message: str = "", *, status_code: int = 503) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExceededError(ServiceError):
    kind = ErrorKind.QUOTA_EXCEEDED


class EntitlementCheckError(ServiceError):
    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "") -> None:
        super().__init__(
            message,
            user_message="We couldn't verify your plan usage right now. Please try again later.",
        )


class StoreUnavailableError(ServiceError):
    kind = ErrorKind.STORE_UNAVAILABLE


class ProviderOverloadedError(ServiceError):
    kind = ErrorKind.PROVIDER_OVERLOADED


class ProviderRateLimitedError(ServiceError):
    kind = ErrorKind.PROVIDER_RATE_LIMITED


class ProviderTimeoutError(ServiceError):
    kind = ErrorKind.PROVIDER_TIMEOUT


class ContentPolicyViolationError(ServiceError):
    kind = ErrorKind.CONTENT_POLICY_VIOLATION


class ArtifactTimeoutError(ServiceError):
    kind = ErrorKind.ARTIFACT_TIMEOUT


class ResourceUnavailableError(ServiceError):
    kind = ErrorKind.RESOURCE_UNAVAILABLE


class TranscriptUnavailableError(ResourceUnavailableError):
    def __init__(self, message: str = "transcript unavailable") -> None:
        super().__init__(
            message,
            user_message="Transcript not available for this video.",
        )


class MissingContextError(ServiceError):
    kind = ErrorKind.MISSING_CONTEXT


class TranscriptProviderError(ServiceError):
    kind = ErrorKind.UNKNOWN


class AuthProviderError(Exception):
    """Raw failure raised by an auth provider before translation."""

    def __init__(self, message: str, *, status_code: int, transient: bool) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


def classify_error(exc: BaseException) -> ClassifiedError:
    """Classify a raised error by its tag; untagged exceptions are unknown.

    Provider adapters translate raw upstream failures with
    ``translate_upstream_error`` before they reach this point.
    """
    if isinstance(exc, AuthProviderError):
        exc = translate_auth_error(exc)
    elif not isinstance(exc, ServiceError):
        exc = ServiceError(str(exc))

    defaults = _KIND_DEFAULTS[exc.kind]
    http_status = defaults.http_status
    user_message = exc.user_message or defaults.user_message
    if isinstance(exc, AuthTransientError) and exc.status_code == 429:
        http_status = 429
        user_message = exc.user_message or AUTH_RATE_LIMITED_MESSAGE
    return ClassifiedError(
        kind=exc.kind,
        http_status=http_status,
        user_message=user_message,
        retryable=defaults.retryable,
    )


def translate_auth_error(exc: AuthProviderError) -> ServiceError:
    if exc.transient or exc.status_code in {429, 502, 503, 504}:
        return AuthTransientError(str(exc), status_code=exc.status_code)
    return ServiceError(str(exc))


def translate_upstream_error(exc: BaseException) -> ServiceError:
    """Map an untyped upstream failure to a tagged error from its message and fields."""
    status_code = _extract_status_code(exc)
    reason = _extract_text_field(exc, ("reason", "code"))
    message = " ".join(
        part
        for part in (
            str(exc),
            _extract_text_field(exc, ("message",)),
            _extract_text_field(exc, ("last_error", "lastError")),
        )
        if part
    )
    return classify_provider_signal(message=message, status_code=status_code, reason=reason)


def classify_provider_signal(
    *,
    message: str,
    status_code: int | None = None,
    reason: str | None = None,
) -> ServiceError:
    normalized = message.lower()
    normalized_reason = (reason or "").strip().lower()

    if normalized_reason in {"maxretriesexceeded", "max_retries_exceeded"}:
        return ProviderOverloadedError(
            message,
            user_message=PROVIDER_RETRIES_EXHAUSTED_MESSAGE,
        )
    if (
        status_code in {502, 503, 529}
        or "model is overloaded" in normalized
        or "overloaded" in normalized
        or "503" in normalized
        or "unavailable" in normalized
    ):
        return ProviderOverloadedError(message)
    if (
        status_code == 429
        or "429" in normalized
        or "rate limit" in normalized
        or "too many requests" in normalized
    ):
        return ProviderRateLimitedError(message)
    if (
        normalized_reason == "content_policy_violation"
        or "content_policy_violation" in normalized
        or "content policy" in normalized
        or "safety system" in normalized
    ):
        return ContentPolicyViolationError(message)
    if status_code in {408, 504} or "timed out" in normalized:
        return ProviderTimeoutError(message)
    return ServiceError(message)


def _extract_status_code(exc: BaseException) -> int | None:
    for attribute in ("status_code", "statusCode", "status", "code"):
        value: Any = getattr(exc, attribute, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def _extract_text_field(exc: BaseException, attributes: tuple[str, ...]) -> str | None:
    for attribute in attributes:
        value: Any = getattr(exc, attribute, None)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
