"""Retry policy for individual remote calls.

Objective:
    Apply the per-error-class retry, backoff and fallback strategy to one
    remote call at a time (one list or one create), never to a whole run.

Policy table (defaults, overridable through settings):

    ============  =======  ============================  =========================
    Class         Retries  Backoff                       Fallback
    ============  =======  ============================  =========================
    network       3        exponential, 1s base, 10s cap none
    rate_limited  3 / 1    outlook 2s/30s, gmail 1s/10s  none
    auth_expired  1        immediate                     refresh credential once
    validation    0        -                             minimal payload retry
    duplicate     0        -                             caller re-resolves
    forbidden     0        -                             fatal
    ============  =======  ============================  =========================

High-level call tree:
    - :class:`RetryingExecutor`
        - :meth:`RetryingExecutor.run`
            - :meth:`CredentialSource.get_credential`
            - :func:`src.taxonomy_provisioner.errors.classify_error`
            - :meth:`RetryTable.policy_for` -> :class:`RetryPolicy`
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import requests

from .config import ProviderKind, Settings
from .credentials import CredentialIssueError, CredentialSource
from .errors import (
    ErrorKind,
    ForbiddenError,
    ProviderError,
    ReconnectRequiredError,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_RETRY_KINDS = {
    ErrorKind.VALIDATION,
    ErrorKind.DUPLICATE,
    ErrorKind.FORBIDDEN,
    ErrorKind.PARENT_MISSING,
    ErrorKind.UNKNOWN,
    ErrorKind.FETCH_INCOMPLETE,
}


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and exponential backoff for one error class."""

    max_retries: int = 0
    base_delay: float = 0.0
    max_delay: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Return the delay before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


class RetryTable:
    """
    Maps ``(error kind, provider)`` to a :class:`RetryPolicy`.

    Attributes:
        settings: Settings supplying the numeric parameters.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()

    def policy_for(self, kind: ErrorKind, provider: ProviderKind) -> RetryPolicy:
        s = self.settings
        if kind == ErrorKind.NETWORK:
            return RetryPolicy(
                s.network_max_retries, s.network_base_delay_seconds, s.network_max_delay_seconds
            )
        if kind == ErrorKind.RATE_LIMITED:
            if provider == ProviderKind.OUTLOOK:
                return RetryPolicy(
                    s.outlook_rate_limit_max_retries,
                    s.outlook_rate_limit_base_delay_seconds,
                    s.outlook_rate_limit_max_delay_seconds,
                )
            return RetryPolicy(
                s.gmail_rate_limit_max_retries,
                s.gmail_rate_limit_base_delay_seconds,
                s.gmail_rate_limit_max_delay_seconds,
            )
        if kind == ErrorKind.AUTH_EXPIRED:
            return RetryPolicy(max_retries=1)
        return RetryPolicy()


class RetryingExecutor:
    """
    Runs remote operations for one ``(user, provider)`` under the retry table.

    An operation is a callable receiving the bearer credential. Errors that
    survive the policy are re-raised unchanged so the caller can record them;
    ``forbidden`` and exhausted ``auth_expired`` become fatal exceptions.

    Attributes:
        credentials: Bearer credential source.
        user_id: Mailbox owner.
        provider: Provider the operations target.
        table: Retry table.
    """

    def __init__(
        self,
        credentials: CredentialSource,
        user_id: str,
        provider: ProviderKind,
        table: Optional[RetryTable] = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.credentials = credentials
        self.user_id = user_id
        self.provider = provider
        self.table = table or RetryTable()
        self.sleep_fn = sleep_fn

    def _get_credential(self, force_refresh: bool = False) -> str:
        """Fetch a bearer credential; an issuer failure means the user must reconnect."""
        try:
            if force_refresh:
                return self.credentials.get_credential(
                    self.user_id, self.provider, force_refresh=True
                )
            return self.credentials.get_credential(self.user_id, self.provider)
        except CredentialIssueError as exc:
            logger.error(
                f"No {ProviderKind(self.provider).value} credential for {self.user_id}: {exc}"
            )
            raise ReconnectRequiredError() from exc

    def run(
        self,
        operation: Callable[[str], T],
        fallback: Optional[Callable[[str], T]] = None,
        description: str = "remote call",
    ) -> T:
        """
        Execute one remote call with retries.

        Args:
            operation: Callable taking the bearer credential.
            fallback: Minimal-payload variant used once after a validation
                error.
            description: Short label for log messages.

        Returns:
            T: The operation's result.

        Raises:
            ReconnectRequiredError: Authentication failed after one refresh, or
                no credential could be issued.
            ForbiddenError: The provider denied permission.
            ProviderError: Any other failure once its policy is exhausted.
        """
        credential = self._get_credential()
        current = operation
        refreshed = False
        used_fallback = False
        attempts: dict[ErrorKind, int] = {}

        while True:
            try:
                return current(credential)
            except (ProviderError, requests.RequestException) as exc:
                kind = classify_error(exc)

                if kind == ErrorKind.AUTH_EXPIRED:
                    if refreshed:
                        logger.error(f"{description}: authentication failed after refresh")
                        raise ReconnectRequiredError() from exc
                    refreshed = True
                    logger.info(f"{description}: credential expired, refreshing once")
                    credential = self._get_credential(force_refresh=True)
                    continue

                if kind == ErrorKind.FORBIDDEN:
                    logger.error(f"{description}: permission denied: {exc}")
                    raise ForbiddenError(str(exc)) from exc

                if kind == ErrorKind.VALIDATION and fallback is not None and not used_fallback:
                    used_fallback = True
                    current = fallback
                    logger.warning(f"{description}: validation error, retrying with minimal payload")
                    continue

                if kind in NO_RETRY_KINDS:
                    raise

                policy = self.table.policy_for(kind, self.provider)
                attempt = attempts.get(kind, 0) + 1
                if attempt > policy.max_retries:
                    logger.warning(
                        f"{description}: giving up after {attempt - 1} {kind.value} retries"
                    )
                    raise

                attempts[kind] = attempt
                delay = policy.delay_for(attempt)
                retry_after = getattr(exc, "retry_after", None)
                if kind == ErrorKind.RATE_LIMITED and retry_after is not None:
                    delay = min(retry_after, policy.max_delay)
                logger.info(
                    f"{description}: {kind.value} error, "
                    f"retry {attempt}/{policy.max_retries} in {delay:.1f}s"
                )
                if delay > 0:
                    self.sleep_fn(delay)
