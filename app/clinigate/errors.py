"""Error taxonomy and recovery planning for gateway failures."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from clinigate.schemas import ErrorResponse, RecoveryPlan

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    category = "unknown"
    retryable = False
    # Set by the orchestrator once the rejection has been audited.
    response: Any = None

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ModelTimeoutError(GatewayError):
    category = "timeout"
    retryable = True


class ProviderUnavailableError(GatewayError):
    category = "provider_unavailable"
    retryable = True


class SafetyViolationError(GatewayError):
    category = "safety_violation"


class PermissionDeniedError(SafetyViolationError):
    """Role is not allowed to run the requested task."""


class ValidationFailureError(GatewayError):
    category = "validation_failure"


class RateLimitedError(GatewayError):
    category = "rate_limited"

    def __init__(self, message: str, *, retry_after: int | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        self.retry_after = retry_after


class QuotaExceededError(RateLimitedError):
    category = "quota_exceeded"


class CancelledStreamError(GatewayError):
    """Client went away before the stream finished."""

    category = "unknown"


_USER_MESSAGES = {
    "timeout": "The AI service took too long to respond. Please try again.",
    "provider_unavailable": "The AI service is temporarily unavailable. Please try again shortly.",
    "safety_violation": "The AI response did not pass safety checks. Please rely on clinical judgment.",
    "validation_failure": "The AI response could not be validated. Please review manually.",
    "rate_limited": "Too many AI requests. Please wait before trying again.",
    "quota_exceeded": "The daily AI request quota has been reached.",
    "unknown": "An unexpected error occurred with the AI service.",
}

_RETRY_AFTER = {
    "timeout": 5,
    "provider_unavailable": 10,
    "rate_limited": 60,
    "quota_exceeded": 86400,
}

_LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "high": logging.ERROR,
    "medium": logging.WARNING,
    "low": logging.INFO,
}

MANUAL_REVIEW_SUGGESTION = "Fall back to manual clinical review."
MAX_RETRIES = 3


def categorize(exc: BaseException) -> str:
    if isinstance(exc, GatewayError):
        return exc.category
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return "rate_limited"
        if status >= 500:
            return "provider_unavailable"
        return "validation_failure"
    if isinstance(exc, (httpx.ConnectError, httpx.RemoteProtocolError, httpx.NetworkError)):
        return "provider_unavailable"
    if isinstance(exc, (ValidationError, json.JSONDecodeError)):
        return "validation_failure"

    message = str(exc).lower()
    if "timeout" in message or "timed out" in message:
        return "timeout"
    if "connection refused" in message or "unavailable" in message:
        return "provider_unavailable"
    return "unknown"


def is_transient(exc: BaseException) -> bool:
    return categorize(exc) in {"timeout", "provider_unavailable"}


def severity_for(category: str, *, clinical: bool) -> str:
    if category == "safety_violation":
        return "critical"
    if clinical:
        if category in {"timeout", "provider_unavailable"}:
            return "high"
        return "medium"
    if category == "provider_unavailable":
        return "medium"
    return "low"


def error_code(category: str, message: str) -> str:
    digest = hashlib.md5(f"{category}:{message}".encode("utf-8")).hexdigest()[:6]
    return f"AI_{category[:3].upper()}_{digest.upper()}"


class ErrorHandler:
    def __init__(self, *, fallback_configured: bool = False):
        self._fallback_configured = fallback_configured

    def handle(
        self,
        exc: BaseException,
        *,
        task: str | None = None,
        clinical: bool = False,
        request_id: str | None = None,
    ) -> ErrorResponse:
        category = categorize(exc)
        severity = severity_for(category, clinical=clinical)
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        recovery = self._recovery(category, exc, clinical=clinical)

        response = ErrorResponse(
            code=error_code(category, message),
            category=category,
            severity=severity,
            message=message,
            user_message=_USER_MESSAGES[category],
            recovery=recovery,
            retryable=recovery.strategy in {"retry", "fallback"},
            request_id=request_id,
            task=task,
        )
        logger.log(
            _LOG_LEVELS[severity],
            "ai_error: code=%s category=%s severity=%s task=%s error=%s",
            response.code,
            category,
            severity,
            task,
            f"{type(exc).__name__}: {message}",
        )
        return response

    def _recovery(self, category: str, exc: BaseException, *, clinical: bool) -> RecoveryPlan:
        suggestions: list[str] = []
        retry_after = getattr(exc, "retry_after", None) or _RETRY_AFTER.get(category)

        if category in {"timeout", "provider_unavailable"}:
            strategy = "fallback" if self._fallback_configured else "retry"
            max_retries = MAX_RETRIES
            suggestions.append("Retry the request after a short wait.")
            if category == "timeout":
                suggestions.append("Shorten the request context or lower the word limit.")
            else:
                suggestions.append("Check that the local model runtime is running.")
        elif category in {"rate_limited", "quota_exceeded"}:
            strategy = "degrade"
            max_retries = 0
            suggestions.append(f"Wait {retry_after} seconds before sending another request.")
        elif category == "safety_violation":
            strategy = "abort"
            max_retries = 0
            retry_after = None
            suggestions.append("Do not act on AI output for this request.")
        elif category == "validation_failure":
            strategy = "abort"
            max_retries = 0
            retry_after = None
            suggestions.append("Review the request inputs and the assessment manually.")
        else:
            strategy = "abort"
            max_retries = 0
            retry_after = None
            suggestions.append("Contact support if the problem persists.")

        if clinical:
            suggestions.append(MANUAL_REVIEW_SUGGESTION)

        return RecoveryPlan(
            strategy=strategy,
            suggestions=suggestions,
            max_retries=max_retries,
            retry_after_seconds=retry_after,
        )
