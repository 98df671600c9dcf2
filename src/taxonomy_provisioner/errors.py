"""Error taxonomy and classification for remote provider calls.

Objective:
    Turn failed remote calls into one of a small set of error kinds so the
    retry policy and the reconciler can react without inspecting raw HTTP
    responses.

Responsibilities:
    - Define :class:`ErrorKind` and the exception hierarchy
      (:class:`ProviderError` for per-call failures, fatal errors for
      conditions that must abort a run).
    - Build a :class:`ProviderError` from a ``requests`` response
      (:func:`provider_error_from_response`).
    - Classify any exception into an :class:`ErrorKind`
      (:func:`classify_error`).

Classification order:
    1. Provider error code (Graph ``error.code``, Gmail ``error.status`` or
       ``errors[].reason``).
    2. HTTP status code.
    3. Substring matching on the message, as a last resort only.
"""

import logging
from enum import Enum
from typing import Optional

import requests

logger = logging.getLogger(__name__)

RECONNECT_MESSAGE = "Please reconnect your email account."


class ErrorKind(str, Enum):
    """Classes of remote call failures."""

    NETWORK = "network"
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    FORBIDDEN = "forbidden"
    FETCH_INCOMPLETE = "fetch_incomplete"
    PARENT_MISSING = "parent_missing"
    UNKNOWN = "unknown"


AUTH_CODES = {
    "invalidauthenticationtoken",
    "authenticationfailed",
    "unauthenticated",
    "autherror",
    "invalid_grant",
}
DUPLICATE_CODES = {
    "errorfolderexists",
    "errorfoldernameconflict",
    "errorfolderhierarchyconflict",
    "conflict",
    "already_exists",
    "duplicate",
}
VALIDATION_CODES = {
    "invalidrequest",
    "errorinvalidrequest",
    "errorinvalididmalformed",
    "errorinvalidparameter",
    "errorpropertyvalidationfailure",
    "invalid_argument",
    "invalidargument",
    "badrequest",
    "failed_precondition",
}
FORBIDDEN_CODES = {
    "forbidden",
    "insufficientprivileges",
    "erroraccessdenied",
    "accessdenied",
    "permission_denied",
    "insufficientpermissions",
}
RATE_LIMIT_CODES = {
    "toomanyrequests",
    "quotaexceeded",
    "throttledrequest",
    "throttledrequestexception",
    "applicationthrottled",
    "ratelimitexceeded",
    "userratelimitexceeded",
    "resource_exhausted",
}
TRANSIENT_CODES = {
    "internalservererror",
    "serviceunavailable",
    "gatewaytimeout",
    "backenderror",
    "unavailable",
}
NOT_FOUND_CODES = {
    "itemnotfound",
    "erroritemnotfound",
    "not_found",
    "notfound",
}


class ProviderError(Exception):
    """
    A failed call to a mailbox provider.

    Attributes:
        message: Raw provider error message.
        status_code: HTTP status code, when the call reached the provider.
        code: Provider-specific error code.
        retry_after: Seconds suggested by a ``Retry-After`` header.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.retry_after = retry_after

    @property
    def kind(self) -> ErrorKind:
        return classify_error(self)

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.append(f"code={self.code}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        return " ".join(parts)


class FatalProvisioningError(Exception):
    """Base class for errors that abort the current provisioning run."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class ForbiddenError(FatalProvisioningError):
    """The credential lacks permission; retrying will not help."""

    kind = ErrorKind.FORBIDDEN


class FetchIncompleteError(FatalProvisioningError):
    """Remote state could not be fully enumerated."""

    kind = ErrorKind.FETCH_INCOMPLETE


class ReconnectRequiredError(FatalProvisioningError):
    """Authentication still fails after one credential refresh."""

    kind = ErrorKind.AUTH_EXPIRED

    def __init__(self, message: str = RECONNECT_MESSAGE) -> None:
        super().__init__(message)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def provider_error_from_response(response: requests.Response) -> ProviderError:
    """
    Build a :class:`ProviderError` from a non-2xx response.

    Understands both error envelopes:
    - Graph: ``{"error": {"code": "ErrorFolderExists", "message": "..."}}``
    - Gmail: ``{"error": {"code": 409, "status": "ALREADY_EXISTS",
      "message": "...", "errors": [{"reason": "..."}]}}``

    Args:
        response: Failed HTTP response.

    Returns:
        ProviderError: Structured error.
    """
    message = response.text or response.reason or "Provider request failed"
    code: Optional[str] = None

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        message = error.get("message") or message
        if isinstance(error.get("code"), str):
            code = error["code"]
        elif error.get("status"):
            code = str(error["status"])
        details = error.get("errors") or []
        if details and isinstance(details[0], dict) and details[0].get("reason"):
            reason = str(details[0]["reason"])
            # Gmail reasons are more specific than its generic status
            if reason.lower() in RATE_LIMIT_CODES | FORBIDDEN_CODES | DUPLICATE_CODES:
                code = reason
            code = code or reason

    return ProviderError(
        message=message,
        status_code=response.status_code,
        code=code,
        retry_after=_parse_retry_after(response.headers.get("Retry-After")),
    )


def _classify_code(code: Optional[str]) -> Optional[ErrorKind]:
    if not code:
        return None
    lowered = code.lower()
    if lowered in DUPLICATE_CODES:
        return ErrorKind.DUPLICATE
    if lowered in AUTH_CODES:
        return ErrorKind.AUTH_EXPIRED
    if lowered in RATE_LIMIT_CODES:
        return ErrorKind.RATE_LIMITED
    if lowered in FORBIDDEN_CODES:
        return ErrorKind.FORBIDDEN
    if lowered in VALIDATION_CODES:
        return ErrorKind.VALIDATION
    if lowered in TRANSIENT_CODES:
        return ErrorKind.NETWORK
    if lowered in NOT_FOUND_CODES:
        return ErrorKind.PARENT_MISSING
    return None


def _classify_status(status_code: Optional[int]) -> Optional[ErrorKind]:
    if status_code is None:
        return None
    if status_code == 401:
        return ErrorKind.AUTH_EXPIRED
    if status_code == 403:
        return ErrorKind.FORBIDDEN
    if status_code == 404:
        return ErrorKind.PARENT_MISSING
    if status_code == 409:
        return ErrorKind.DUPLICATE
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (400, 422):
        return ErrorKind.VALIDATION
    if status_code == 408 or status_code >= 500:
        return ErrorKind.NETWORK
    return None


def _classify_text(message: str) -> ErrorKind:
    text = (message or "").lower()
    if "already exists" in text or "conflict" in text:
        return ErrorKind.DUPLICATE
    if "rate limit" in text or "too many requests" in text or "quota" in text:
        return ErrorKind.RATE_LIMITED
    if "expired" in text or "unauthorized" in text or "invalid token" in text:
        return ErrorKind.AUTH_EXPIRED
    if "permission" in text or "forbidden" in text or "access denied" in text:
        return ErrorKind.FORBIDDEN
    if "invalid" in text or "color" in text:
        return ErrorKind.VALIDATION
    if "timeout" in text or "timed out" in text or "connection" in text:
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def classify_error(error: BaseException) -> ErrorKind:
    """
    Classify an exception raised by a remote call.

    Args:
        error: Exception raised by an adapter or the transport.

    Returns:
        ErrorKind: The error class driving retry and fallback behavior.
    """
    if isinstance(error, FatalProvisioningError):
        return error.kind
    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return ErrorKind.NETWORK
    if isinstance(error, ProviderError):
        kind = _classify_code(error.code) or _classify_status(error.status_code)
        if kind is None:
            kind = _classify_text(error.message)
            logger.debug(f"Classified provider error by message text as {kind.value}")
        return kind
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return classify_error(provider_error_from_response(error.response))
    if isinstance(error, requests.RequestException):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN
