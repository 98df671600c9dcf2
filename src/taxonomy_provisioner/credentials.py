"""Bearer credential sources.

Objective:
    Supply an opaque bearer credential per ``(user, provider)`` to the retry
    executor. Token acquisition itself belongs to an external issuer; this
    module only caches issued credentials and exposes a refresh path.

Responsibilities:
    - Define the :class:`CredentialSource` contract.
    - Cache issued credentials with a constructor-injected TTL and explicit
      invalidation (:class:`CredentialCache`).
    - Wrap an issuer callable with the cache (:class:`CachedCredentialSource`).
    - Provide issuers: :class:`MsalCredentialIssuer` (Microsoft Graph client
      credentials), :class:`StaticCredentialIssuer` (fixed tokens) and
      :class:`ProviderCredentialIssuer` (per-provider routing).

High-level call tree:
    - :meth:`CachedCredentialSource.get_credential`
        - :meth:`CredentialCache.get`
        - issuer(user_id, provider)
            - :meth:`MsalCredentialIssuer.__call__`
                - ``msal.ConfidentialClientApplication.acquire_token_for_client``
        - :meth:`CredentialCache.put`

Operational notes:
    - Credentials are never persisted and never logged.
    - The cache is the only state shared between concurrent runs; entries are
      keyed by ``(user, provider)`` so different users never contend.
"""

import logging
import threading
import time
from typing import Callable, Optional, Protocol

import msal

from .config import ProviderKind, Settings

logger = logging.getLogger(__name__)

CredentialIssuer = Callable[[str, ProviderKind], str]


class CredentialIssueError(RuntimeError):
    """Raised when an issuer cannot produce a credential."""


class CredentialSource(Protocol):
    """Anything that can hand out a bearer credential."""

    def get_credential(
        self, user_id: str, provider: ProviderKind, force_refresh: bool = False
    ) -> str:
        ...


class CredentialCache:
    """
    TTL cache of bearer credentials keyed by ``(user_id, provider)``.

    Attributes:
        ttl_seconds: Lifetime of a cached entry.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _key(self, user_id: str, provider: ProviderKind) -> tuple[str, str]:
        return (user_id, ProviderKind(provider).value)

    def get(self, user_id: str, provider: ProviderKind) -> Optional[str]:
        """Return a live credential or None when missing or expired."""
        key = self._key(user_id, provider)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            credential, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return credential

    def put(self, user_id: str, provider: ProviderKind, credential: str) -> None:
        with self._lock:
            self._entries[self._key(user_id, provider)] = (
                credential,
                self._clock() + self.ttl_seconds,
            )

    def invalidate(self, user_id: str, provider: ProviderKind) -> None:
        """Drop the cached credential for one user and provider."""
        with self._lock:
            self._entries.pop(self._key(user_id, provider), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CachedCredentialSource:
    """
    Credential source backed by an issuer and a :class:`CredentialCache`.

    Attributes:
        issuer: Callable issuing a fresh credential.
        cache: Credential cache.
    """

    def __init__(self, issuer: CredentialIssuer, cache: CredentialCache) -> None:
        self.issuer = issuer
        self.cache = cache

    def get_credential(
        self, user_id: str, provider: ProviderKind, force_refresh: bool = False
    ) -> str:
        """
        Return a bearer credential, issuing one when needed.

        Args:
            user_id: Mailbox owner.
            provider: Target provider.
            force_refresh: Discard any cached credential first.

        Returns:
            str: Bearer credential.
        """
        if force_refresh:
            self.cache.invalidate(user_id, provider)
        else:
            cached = self.cache.get(user_id, provider)
            if cached:
                return cached

        credential = self.issuer(user_id, provider)
        if not credential:
            raise CredentialIssueError(f"No credential issued for {provider} user {user_id}")
        self.cache.put(user_id, provider, credential)
        logger.debug(f"Issued new {ProviderKind(provider).value} credential for {user_id}")
        return credential


class StaticCredentialIssuer:
    """Issuer returning fixed tokens, for scripts and tests.

    Args:
        tokens: Mapping of ``(user_id, provider value)`` or provider value to
            a bearer token.
    """

    def __init__(self, tokens: dict) -> None:
        self.tokens = tokens

    def __call__(self, user_id: str, provider: ProviderKind) -> str:
        value = ProviderKind(provider).value
        token = self.tokens.get((user_id, value)) or self.tokens.get(value)
        if not token:
            raise CredentialIssueError(f"No static token configured for {value} user {user_id}")
        return token


class ProviderCredentialIssuer:
    """Routes issuance to the issuer configured for each provider.

    Args:
        issuers: Issuer per provider; providers without one raise
            :class:`CredentialIssueError`.
    """

    def __init__(self, issuers: dict[ProviderKind, CredentialIssuer]) -> None:
        self.issuers = {ProviderKind(kind): issuer for kind, issuer in issuers.items()}

    def __call__(self, user_id: str, provider: ProviderKind) -> str:
        issuer = self.issuers.get(ProviderKind(provider))
        if issuer is None:
            raise CredentialIssueError(
                f"No credential issuer configured for {ProviderKind(provider).value}"
            )
        return issuer(user_id, provider)


class MsalCredentialIssuer:
    """
    Microsoft Graph credential issuer using the client credentials flow.

    Requires application permissions (``Mail.ReadWrite``) granted to the Azure
    AD application in an organizational tenant.

    Attributes:
        settings: Settings with Azure AD client credentials.
        _app: MSAL confidential client application instance.
    """

    GRAPH_APP_SCOPES = [
        "https://graph.microsoft.com/.default",
    ]

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._app: Optional[msal.ConfidentialClientApplication] = None

    def _get_app(self) -> msal.ConfidentialClientApplication:
        """
        Get or create the MSAL confidential client application.

        Returns:
            msal.ConfidentialClientApplication: MSAL app instance.

        Raises:
            CredentialIssueError: If client credentials are not configured.
        """
        if self._app is None:
            s = self.settings
            if not (s.azure_client_id and s.azure_client_secret and s.azure_tenant_id):
                raise CredentialIssueError(
                    "AZURE_CLIENT_ID, AZURE_CLIENT_SECRET and AZURE_TENANT_ID must be set"
                )
            self._app = msal.ConfidentialClientApplication(
                client_id=s.azure_client_id,
                client_credential=s.azure_client_secret,
                authority=f"https://login.microsoftonline.com/{s.azure_tenant_id}",
            )
            logger.debug("Created MSAL confidential client application")
        return self._app

    def __call__(self, user_id: str, provider: ProviderKind) -> str:
        """
        Acquire a Graph access token.

        Args:
            user_id: Mailbox owner (unused; application tokens are tenant-wide).
            provider: Must be Outlook.

        Returns:
            str: Access token.

        Raises:
            CredentialIssueError: On an unsupported provider or MSAL failure.
        """
        if ProviderKind(provider) != ProviderKind.OUTLOOK:
            raise CredentialIssueError("MSAL issuer only supports the outlook provider")

        result = self._get_app().acquire_token_for_client(scopes=self.GRAPH_APP_SCOPES)
        if "access_token" in result:
            logger.debug("Acquired Graph token via client credentials")
            return result["access_token"]

        error_description = result.get("error_description", "Unknown error")
        error = result.get("error", "unknown")
        logger.error(f"Failed to acquire token: {error} - {error_description}")
        raise CredentialIssueError(f"Failed to acquire access token: {error_description}")
