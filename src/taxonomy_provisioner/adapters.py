"""Provider adapter contract and shared HTTP plumbing.

Objective:
    Hide the two incompatible mailbox models (flat label namespace and real
    folder tree) behind one interface so the fetcher and the reconciler stay
    provider-agnostic.

Responsibilities:
    - Define :class:`ProviderAdapter` (``list_all``, ``create``, ``get``).
    - Define :class:`DuplicateSignal`, returned instead of raising when the
      provider reports that a container already exists.
    - Issue authenticated HTTP requests (via :mod:`requests`) and convert
      non-2xx responses into :class:`~src.taxonomy_provisioner.errors.ProviderError`.

High-level call tree:
    - :class:`ProviderAdapter`
        - :meth:`ProviderAdapter._make_request` (auth header + timeout + errors)
        - :meth:`ProviderAdapter.list_all` -> :class:`RemoteIndex`
        - :meth:`ProviderAdapter.get`
        - :meth:`ProviderAdapter.create`
            - :meth:`ProviderAdapter._resolve_parent` (parent validation)

Operational notes:
    - Adapters are stateless apart from settings; the bearer credential is
      passed into every call so the retry executor can swap it after a
      refresh.
    - Timeouts surface as ``requests.Timeout`` and are classified ``network``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AbstractSet, Optional, Union

import requests

from .config import ProviderKind, Settings
from .errors import ErrorKind, ProviderError, classify_error, provider_error_from_response
from .models import LabelColor, RemoteContainer, RemoteIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DuplicateSignal:
    """A create call hit an existing container.

    Attributes:
        name: Leaf name the caller attempted to create.
        full_path: Path the provider saw (``parent/child`` for flat providers).
        parent_remote_id: Parent the create targeted, if any.
    """

    name: str
    full_path: str
    parent_remote_id: Optional[str] = None


CreateOutcome = Union[RemoteContainer, DuplicateSignal]


class ProviderAdapter(ABC):
    """
    Base class for mailbox provider adapters.

    Attributes:
        provider: Provider identifier.
        hierarchical: True when the provider has a real folder tree.
        settings: Application settings.
    """

    provider: ProviderKind
    hierarchical: bool = False

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Base URL that endpoint paths are appended to."""

    def _make_request(
        self,
        credential: str,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
        suppress_statuses: Optional[AbstractSet[int]] = None,
    ) -> dict:
        """Make an authenticated request to the provider.

        This helper:
        - Adds the Bearer credential header.
        - Applies the configured timeout.
        - Raises :class:`ProviderError` for non-2xx responses.
        - Returns decoded JSON or ``{}`` for 204 responses.

        Args:
            credential: Bearer credential.
            method: HTTP method (GET, POST).
            endpoint: Path relative to :attr:`base_url`, or an absolute
                paging URL.
            params: Query parameters.
            json_data: JSON body data.
            suppress_statuses: Statuses logged at DEBUG instead of ERROR.

        Returns:
            dict: Response JSON data.

        Raises:
            ProviderError: If the provider rejects the request.
            requests.RequestException: On transport failures and timeouts.
        """
        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
        }

        response = requests.request(
            method=method,
            url=url,
            headers=headers,
            params=params,
            json=json_data,
            timeout=self.settings.request_timeout_seconds,
        )

        if not response.ok:
            error = provider_error_from_response(response)
            if suppress_statuses and response.status_code in suppress_statuses:
                logger.debug(
                    f"{self.provider.value} API expected non-2xx: {response.status_code} - {error}"
                )
            else:
                logger.error(f"{self.provider.value} API error: {response.status_code} - {error}")
            raise error

        if response.status_code == 204 or not response.content:
            return {}

        return response.json()

    @abstractmethod
    def list_all(self, credential: str) -> RemoteIndex:
        """Enumerate every container in the mailbox."""

    @abstractmethod
    def get(self, credential: str, remote_id: str) -> Optional[RemoteContainer]:
        """Fetch one container by ID; None when it no longer exists."""

    @abstractmethod
    def _create(
        self,
        credential: str,
        name: str,
        parent: Optional[RemoteContainer],
        color: Optional[LabelColor],
        minimal: bool,
    ) -> CreateOutcome:
        """Issue the provider create call for an already-validated parent."""

    def _resolve_parent(self, credential: str, parent_id: Optional[str]) -> Optional[RemoteContainer]:
        """Re-fetch a parent before a child create.

        Returns:
            Optional[RemoteContainer]: The parent, or None when it vanished
            (the child is then created at the root).
        """
        if not parent_id:
            return None
        parent = self.get(credential, parent_id)
        if parent is None:
            logger.warning(
                f"Parent {parent_id} no longer exists; creating child at the root instead"
            )
        return parent

    def create(
        self,
        credential: str,
        name: str,
        parent_id: Optional[str] = None,
        color: Optional[LabelColor] = None,
        minimal: bool = False,
    ) -> CreateOutcome:
        """
        Create one container.

        Args:
            credential: Bearer credential.
            name: Leaf name of the new container.
            parent_id: Parent container ID (None for a top-level container).
            color: Optional label color.
            minimal: Send only the required fields (validation fallback).

        Returns:
            RemoteContainer | DuplicateSignal: The created container, or a
            duplicate signal when the provider reports it already exists.

        Raises:
            ProviderError: Any failure other than a duplicate.
        """
        parent = self._resolve_parent(credential, parent_id)
        return self._create(credential, name, parent, color, minimal)

    def _get_or_none(self, credential: str, endpoint: str) -> Optional[dict]:
        """GET an endpoint, mapping "not found" to None."""
        try:
            return self._make_request(credential, "GET", endpoint, suppress_statuses={404})
        except ProviderError as exc:
            if classify_error(exc) == ErrorKind.PARENT_MISSING:
                return None
            raise

    def _is_duplicate(self, error: ProviderError) -> bool:
        return classify_error(error) == ErrorKind.DUPLICATE
