from __future__ import annotations

from typing import Any

import requests


class UnicalError(Exception):
    """Base class for every error raised by unical."""

    kind = "unknown"


class SyncError(UnicalError):
    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider


class CredentialExpired(SyncError):
    """Remote auth was rejected. The user has to reconnect the account."""

    kind = "credential_expired"


class RateLimited(SyncError):
    """The provider throttled us. Never retried immediately."""

    kind = "rate_limited"

    def __init__(self, message: str, provider: str = "", retry_after: float | None = None) -> None:
        super().__init__(message, provider)
        self.retry_after = retry_after


class TransientNetwork(SyncError):
    """Timeouts and 5xx responses. Retried on the next scheduled sync."""

    kind = "transient_network"


class ParseError(UnicalError):
    kind = "parse_error"


class RRuleParseError(ParseError):
    pass


class ConflictError(SyncError):
    """A write lost a race with a concurrent remote change."""

    kind = "conflict"


class IncrementalSyncInvalidated(SyncError):
    """The stored sync token was rejected; a full listing is required."""

    kind = "sync_token_invalidated"


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, UnicalError):
        return exc.kind
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return TransientNetwork.kind
    return UnicalError.kind


def _retry_after_seconds(response: requests.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _error_reasons(payload: Any) -> set[str]:
    if not isinstance(payload, dict):
        return set()
    error = payload.get("error")
    if not isinstance(error, dict):
        return set()
    reasons = {str(item.get("reason", "")) for item in error.get("errors", []) if isinstance(item, dict)}
    code = error.get("code")
    if isinstance(code, str):
        reasons.add(code)
    return {reason for reason in reasons if reason}


def raise_for_status(response: requests.Response, provider: str) -> None:
    """Translate a provider HTTP error response into the sync error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    try:
        payload = response.json()
    except ValueError:
        payload = None
    reasons = _error_reasons(payload)
    detail = f"{provider} API error {status}: {response.text[:300]}"

    if status == 429 or reasons & {"rateLimitExceeded", "userRateLimitExceeded", "TooManyRequests"}:
        raise RateLimited(detail, provider, retry_after=_retry_after_seconds(response))
    if status in {401, 403}:
        raise CredentialExpired(detail, provider)
    if status == 410:
        raise IncrementalSyncInvalidated(detail, provider)
    if status in {409, 412}:
        raise ConflictError(detail, provider)
    if status >= 500:
        raise TransientNetwork(detail, provider)
    raise SyncError(detail, provider)


class NotFound(UnicalError):
    kind = "not_found"
