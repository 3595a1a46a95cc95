"""Error classification.

:func:`classify` turns any exception into an :class:`ErrorClassification`:
a category, a default retry strategy, a retryable flag, a severity, and a
suggested action.  Every routing decision in the retry coordinator, the
circuit breaker and the recovery orchestrator is made on the classification,
never on the raw exception.

Precedence
~~~~~~~~~~
1. Errors raised by this package for their own reasons (open circuit,
   admission refusal) carry a dedicated service code and map directly.
2. A service-specific error code (``service_code`` / ``code`` attribute).
3. An HTTP-like status code (``status_code`` / ``status`` attribute, an
   ``httpx.HTTPStatusError`` response, or ``status: 503`` in the message).
4. Exception type (``TimeoutError``, ``ConnectionError``, ``httpx``
   transport errors) and then message keywords, as a last resort.

:func:`classify` is total: whatever it is given, it returns a
classification and never raises.

Typical usage::

    from transcribeflow.resilience.classifier import classify

    try:
        await gateway.submit(request)
    except Exception as exc:
        c = classify(exc)
        if c.requires_user_intervention:
            logger.warning("%s", c.user_action)
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Final

import httpx

from transcribeflow.core.models import ErrorCategory, ErrorClassification, RetryStrategy

__all__ = [
    "classify",
    "classify_many",
    "ClassificationSummary",
    "is_recoverable",
    "retry_strategy_for",
    "user_message",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Rule:
    category: ErrorCategory
    strategy: RetryStrategy
    retryable: bool
    severity: int


_QUOTA = _Rule(ErrorCategory.QUOTA, RetryStrategy.EXPONENTIAL, True, 3)
_AUTH = _Rule(ErrorCategory.AUTHENTICATION, RetryStrategy.NONE, False, 4)
_CONFIG = _Rule(ErrorCategory.CONFIGURATION, RetryStrategy.NONE, False, 3)
_SERVICE = _Rule(ErrorCategory.SERVICE, RetryStrategy.EXPONENTIAL, True, 4)
_NETWORK = _Rule(ErrorCategory.NETWORK, RetryStrategy.LINEAR, True, 2)
_AUDIO = _Rule(ErrorCategory.AUDIO, RetryStrategy.NONE, False, 3)
_CIRCUIT = _Rule(ErrorCategory.CIRCUIT_OPEN, RetryStrategy.FIXED, True, 2)
_UNKNOWN = _Rule(ErrorCategory.UNKNOWN, RetryStrategy.NONE, False, 3)

#: Service error codes, grouped by the rule they select.
_SERVICE_CODES: Final[dict[str, _Rule]] = {
    **dict.fromkeys(
        ("QuotaExceeded", "RateLimitExceeded", "ConcurrentRequestLimitExceeded"), _QUOTA
    ),
    **dict.fromkeys(
        ("Unauthorized", "Forbidden", "InvalidSubscriptionKey", "InvalidApiKey"), _AUTH
    ),
    **dict.fromkeys(
        (
            "InvalidRequest",
            "BadRequest",
            "ValidationError",
            "InvalidParameter",
            "NotFound",
            "ResourceNotFound",
            "TranscriptionNotFound",
            "ResultNotFound",
        ),
        _CONFIG,
    ),
    **dict.fromkeys(("InternalServerError", "ServiceUnavailable", "ServiceError"), _SERVICE),
    **dict.fromkeys(("RequestTimeout", "GatewayTimeout", "OperationTimeout"), _NETWORK),
    **dict.fromkeys(
        (
            "UnsupportedMediaType",
            "InvalidAudioFormat",
            "AudioTooLong",
            "AudioTooShort",
            "CorruptedResult",
            "UnparseableResult",
        ),
        _AUDIO,
    ),
    "CircuitOpen": _CIRCUIT,
}

#: Codes that mean "the thing you asked for does not exist".
_NOT_FOUND_CODES: Final[frozenset[str]] = frozenset(
    {"NotFound", "ResourceNotFound", "TranscriptionNotFound", "ResultNotFound"}
)

_STATUS_IN_MESSAGE = re.compile(r"\b(?:status|code)\b[:\s]*(\d{3})\b", re.IGNORECASE)
_NETWORK_WORDS = re.compile(
    r"network|connection|fetch|cors|dns|timeout|timed out|abort|socket", re.I
)
_AUDIO_WORDS = re.compile(r"audio|media|codec|format|duration|sample|bitrate", re.I)

#: Expected seconds until the condition clears, per category.
_RECOVERY_SECONDS: Final[dict[ErrorCategory, float | None]] = {
    ErrorCategory.QUOTA: 60.0,
    ErrorCategory.NETWORK: 5.0,
    ErrorCategory.SERVICE: 120.0,
    ErrorCategory.CIRCUIT_OPEN: 60.0,
    ErrorCategory.AUTHENTICATION: None,
    ErrorCategory.CONFIGURATION: None,
    ErrorCategory.AUDIO: None,
    ErrorCategory.UNKNOWN: 30.0,
}

#: Categories that always need a human, even when retrying is technically possible.
_INTERVENTION_CATEGORIES: Final[frozenset[ErrorCategory]] = frozenset(
    {ErrorCategory.AUTHENTICATION, ErrorCategory.AUDIO, ErrorCategory.CONFIGURATION}
)


# ---------------------------------------------------------------------------
# Extraction helpers
# ---------------------------------------------------------------------------


def _message_of(error: BaseException | str | None) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, str):
        return error or "Unknown error"
    text = str(error)
    return text or type(error).__name__


def _service_code_of(error: object) -> str | None:
    for attr in ("service_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, str) and value:
            return value
    return None


def _status_code_of(error: object, message: str) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    match = _STATUS_IN_MESSAGE.search(message)
    if match and 100 <= int(match.group(1)) <= 599:
        return int(match.group(1))
    return None


def _rule_for_status(status: int) -> _Rule:
    if status == 429:
        return _QUOTA
    if status in (401, 403):
        return _AUTH
    if status in (408, 504):
        return _NETWORK
    if status == 503:
        return _Rule(ErrorCategory.SERVICE, RetryStrategy.EXPONENTIAL, True, 3)
    if status >= 500:
        return _SERVICE
    if status >= 400:
        return _CONFIG
    return _UNKNOWN


def _rule_for_fallback(error: object, message: str) -> _Rule:
    if isinstance(error, (TimeoutError, ConnectionError, httpx.TransportError)):
        return _NETWORK
    text = f"{type(error).__name__}: {message}" if isinstance(error, BaseException) else message
    if _NETWORK_WORDS.search(text):
        return _NETWORK
    if _AUDIO_WORDS.search(text):
        return _AUDIO
    if "auth" in text.lower():
        return _AUTH
    return _UNKNOWN


def _user_action(category: ErrorCategory, status: int | None, code: str | None) -> str:
    match category:
        case ErrorCategory.AUTHENTICATION:
            return (
                "Authentication failed. Please check your speech service "
                "subscription key and region configuration."
            )
        case ErrorCategory.QUOTA:
            return (
                "Speech service rate limit exceeded. Please wait and try again, "
                "or upgrade your subscription for higher limits."
            )
        case ErrorCategory.AUDIO:
            return (
                "Audio file format or content issue. Please check that the file is "
                "in a supported format (WAV, MP3, MP4) and is not corrupted."
            )
        case ErrorCategory.CONFIGURATION:
            if status == 404 or code in _NOT_FOUND_CODES:
                return "The requested resource was not found. Please check the audio URL."
            return "Please check the transcription request parameters and audio URL."
        case ErrorCategory.NETWORK:
            return "Network connection issue. Please check your internet connection and try again."
        case ErrorCategory.SERVICE:
            return "The speech service is experiencing issues. Please try again later."
        case ErrorCategory.CIRCUIT_OPEN:
            return (
                "The speech service is temporarily blocked after repeated failures. "
                "Requests will resume automatically."
            )
        case ErrorCategory.UNKNOWN:
            return "An unexpected error occurred. Please try again or contact support."


def _technical_details(message: str, status: int | None, code: str | None) -> str:
    parts = [f"Error: {message}"]
    if status is not None:
        parts.append(f"HTTP Status: {status}")
    if code:
        parts.append(f"Service Code: {code}")
    return ", ".join(parts)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def classify(error: BaseException | str | None) -> ErrorClassification:
    """Classify *error*.  Never raises.

    Args:
        error: An exception, a bare message string, or ``None``.

    Returns:
        A fresh :class:`ErrorClassification`.
    """
    message = "Unknown error"
    try:
        message = _message_of(error)
        code = _service_code_of(error)
        status = _status_code_of(error, message)

        if code and code in _SERVICE_CODES:
            rule = _SERVICE_CODES[code]
        elif code:
            rule = _UNKNOWN if status is None else _rule_for_status(status)
        elif status is not None:
            rule = _rule_for_status(status)
        else:
            rule = _rule_for_fallback(error, message)

        retry_after = getattr(error, "retry_after", None)
        if not isinstance(retry_after, (int, float)) or isinstance(retry_after, bool):
            retry_after = None

        estimated = _RECOVERY_SECONDS[rule.category]
        if retry_after is not None and estimated is not None:
            estimated = float(retry_after)

        return ErrorClassification(
            category=rule.category,
            retry_strategy=rule.strategy,
            retryable=rule.retryable,
            severity=rule.severity,
            requires_user_intervention=(
                not rule.retryable or rule.category in _INTERVENTION_CATEGORIES
            ),
            user_action=_user_action(rule.category, status, code),
            technical_details=_technical_details(message, status, code),
            estimated_recovery_s=estimated,
            message=message,
            status_code=status,
            service_code=code,
            retry_after=retry_after,
            classified_at=datetime.now(UTC),
        )
    except Exception:  # noqa: BLE001
        logger.debug("Classifier fell back to UNKNOWN", exc_info=True)
        return ErrorClassification(
            category=ErrorCategory.UNKNOWN,
            retry_strategy=RetryStrategy.NONE,
            retryable=False,
            severity=3,
            requires_user_intervention=True,
            user_action=_user_action(ErrorCategory.UNKNOWN, None, None),
            technical_details=f"Error: {message}",
            estimated_recovery_s=_RECOVERY_SECONDS[ErrorCategory.UNKNOWN],
            message=message,
            classified_at=datetime.now(UTC),
        )


@dataclass
class ClassificationSummary:
    """Aggregate view over a batch of classified errors.

    Attributes:
        total: Number of errors classified.
        retryable: How many were retryable.
        requires_intervention: How many need a human.
        by_category: Count per :class:`ErrorCategory`.
        by_severity: Count per severity level.
        classifications: The individual classifications, in input order.
    """

    total: int = 0
    retryable: int = 0
    requires_intervention: int = 0
    by_category: Counter[ErrorCategory] = field(default_factory=Counter)
    by_severity: Counter[int] = field(default_factory=Counter)
    classifications: list[ErrorClassification] = field(default_factory=list, repr=False)


def classify_many(errors: Iterable[BaseException | str | None]) -> ClassificationSummary:
    """Classify every error in *errors* and aggregate the results."""
    summary = ClassificationSummary()
    for error in errors:
        c = classify(error)
        summary.classifications.append(c)
        summary.total += 1
        summary.retryable += int(c.retryable)
        summary.requires_intervention += int(c.requires_user_intervention)
        summary.by_category[c.category] += 1
        summary.by_severity[c.severity] += 1
    return summary


def is_recoverable(error: BaseException | str | None) -> bool:
    """``True`` when another attempt could succeed without human action."""
    c = classify(error)
    return c.retryable and not c.requires_user_intervention


def retry_strategy_for(error: BaseException | str | None) -> RetryStrategy:
    """Default backoff shape for *error*."""
    return classify(error).retry_strategy


def user_message(error: BaseException | str | None) -> str:
    """Category-prefixed message followed by the suggested action."""
    c = classify(error)
    label = c.category.value.replace("_", " ").capitalize()
    return f"{label} error: {c.message}. {c.user_action}"
