"""Exception hierarchy and error classification for the provider layer.

Upstream failures come from several unrelated HTTP APIs that share no error
schema, so classification is a prioritized keyword table applied to the
error text rather than structured parsing.  :func:`classify` is the single
source of the ``retryable`` flag used by :mod:`llmchat.providers.retry` and
of the message/suggested action shown to the user.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ProviderError(Exception):
    """Base exception for all errors raised by this package.

    Attributes:
        message: Human-readable error description.
        provider: Provider name (e.g. "openai", "gateway").  ``None`` when
            the provider could not be determined.
        original_error: The upstream exception that caused this error, if any.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.message = message
        self.provider = provider
        self.original_error = original_error
        super().__init__(message)


class ValidationError(ProviderError):
    """Raised for requests rejected locally before any network call."""


class ConfigurationError(ProviderError):
    """Raised when a credential or endpoint for the requested provider is missing."""


class ModelNotFoundError(ProviderError):
    """Raised when a model id is not in the catalog for the requested provider."""


class ProviderHTTPError(ProviderError):
    """Raised when a provider or the gateway answers with a non-2xx status.

    Attributes:
        status_code: HTTP status returned by the upstream service.
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        provider: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, provider=provider, original_error=original_error)
        self.status_code = status_code


class GatewayResponseError(ProviderError):
    """Raised when the gateway returns a payload that does not match its schema."""


class UpstreamStreamError(ProviderError):
    """Raised when a stream carries an in-band error frame.

    Attributes:
        raw: The decoded error frame as received.
    """

    def __init__(self, message: str, raw: Any = None, provider: str | None = None) -> None:
        super().__init__(message, provider=provider)
        self.raw = raw


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    NETWORK_ERROR = "NETWORK_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    MODEL_ERROR = "MODEL_ERROR"
    TIMEOUT = "TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"
    CONTEXT_LENGTH = "CONTEXT_LENGTH"
    VALIDATION = "VALIDATION"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ClassifiedError:
    """Caller-facing description of a failure.

    Attributes:
        kind: Taxonomy bucket the error fell into.
        message: Short human-readable summary.
        retryable: Whether re-issuing the same call may succeed.
        suggested_action: What the user can do about it.
    """

    kind: ErrorKind
    message: str
    retryable: bool
    suggested_action: str | None = None

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "suggested_action": self.suggested_action,
        }


_DEFAULT_MESSAGE = "An unexpected error occurred"

# (kind, any-of keywords, required keywords, message, retryable, suggested action)
# Evaluated top to bottom; the first match wins.
_RULES: tuple[tuple[ErrorKind, tuple[str, ...], tuple[str, ...], str, bool, str], ...] = (
    (
        ErrorKind.NETWORK_ERROR,
        ("fetch", "network"),
        (),
        "Network connection error",
        True,
        "Check your internet connection and try again",
    ),
    (
        ErrorKind.AUTH_ERROR,
        ("api key", "unauthorized", "401"),
        (),
        "Invalid or missing API key",
        False,
        "Check the API keys in your configuration",
    ),
    (
        ErrorKind.RATE_LIMIT,
        ("rate limit", "429", "too many requests"),
        (),
        "Rate limit exceeded",
        True,
        "Wait a moment before trying again",
    ),
    (
        ErrorKind.MODEL_ERROR,
        ("404", "not found"),
        ("model",),
        "Model not found or unavailable",
        False,
        "Pick a different model",
    ),
    (
        ErrorKind.TIMEOUT,
        ("timeout", "timed out"),
        (),
        "Request timed out",
        True,
        "Try again or shorten your message",
    ),
    (
        ErrorKind.SERVER_ERROR,
        ("500", "server error"),
        (),
        "Server error",
        True,
        "The server encountered an error, retry later",
    ),
    (
        ErrorKind.CONTEXT_LENGTH,
        ("context", "token", "too long"),
        (),
        "Message too long",
        False,
        "The conversation is too long, start a new conversation",
    ),
)


def _haystack(error: BaseException) -> str:
    # Class names take part so httpx.ConnectError (a NetworkError) and
    # httpx.ReadTimeout match without a message.
    names = [cls.__name__ for cls in type(error).__mro__ if cls is not object]
    message = getattr(error, "message", None) or str(error)
    return " ".join([str(message), *names]).lower()


def classify(error: object) -> ClassifiedError:
    """Map any caught error to a :class:`ClassifiedError`.

    Never raises.  Input that is not an exception at all yields the
    ``UNKNOWN`` default.
    """
    if not isinstance(error, BaseException):
        return ClassifiedError(
            kind=ErrorKind.UNKNOWN,
            message=_DEFAULT_MESSAGE,
            retryable=True,
            suggested_action="Please try again",
        )

    # CancelledError, KeyboardInterrupt and friends end the request.
    if not isinstance(error, Exception):
        return ClassifiedError(
            kind=ErrorKind.UNKNOWN,
            message="Request was interrupted",
            retryable=False,
        )

    if isinstance(error, ValidationError):
        return ClassifiedError(
            kind=ErrorKind.VALIDATION,
            message=error.message,
            retryable=False,
            suggested_action="Fix the request and send it again",
        )

    try:
        text = _haystack(error)
    except Exception:  # a broken __str__ must not escape the classifier
        text = type(error).__name__.lower()

    for kind, any_of, required, message, retryable, action in _RULES:
        if any(word in text for word in any_of) and all(word in text for word in required):
            return ClassifiedError(
                kind=kind,
                message=message,
                retryable=retryable,
                suggested_action=action,
            )

    try:
        original = getattr(error, "message", None) or str(error)
    except Exception:
        original = ""
    return ClassifiedError(
        kind=ErrorKind.UNKNOWN,
        message=str(original) or _DEFAULT_MESSAGE,
        retryable=True,
        suggested_action="Please try again",
    )
