"""Remote state fetcher.

Objective:
    Produce a complete :class:`~src.taxonomy_provisioner.models.RemoteIndex`
    for one mailbox, or fail loudly. Reconciliation decisions are never made
    from a partial index: a missing page would look like missing containers
    and lead to duplicate creation.

High-level call tree:
    - :meth:`RemoteStateFetcher.fetch`
        - :meth:`RetryingExecutor.run` (one auth refresh, rate-limit and
          network retries)
            - :meth:`ProviderAdapter.list_all`
"""

import logging

import requests

from .adapters import ProviderAdapter
from .errors import FetchIncompleteError, ProviderError
from .models import RemoteIndex
from .retry import RetryingExecutor

logger = logging.getLogger(__name__)


class RemoteStateFetcher:
    """
    Fetches and indexes every remote container of a mailbox.

    Attributes:
        adapter: Provider adapter.
        executor: Retry executor bound to the mailbox owner.
    """

    def __init__(self, adapter: ProviderAdapter, executor: RetryingExecutor) -> None:
        self.adapter = adapter
        self.executor = executor

    def fetch(self) -> RemoteIndex:
        """
        Enumerate all remote containers.

        Returns:
            RemoteIndex: Complete index of the mailbox.

        Raises:
            FetchIncompleteError: If enumeration failed after retries.
            ReconnectRequiredError: If authentication failed after a refresh.
            ForbiddenError: If the provider denied access.
        """
        provider = self.adapter.provider.value
        try:
            index = self.executor.run(
                self.adapter.list_all, description=f"list {provider} containers"
            )
        except (ProviderError, requests.RequestException) as exc:
            logger.error(f"Failed to enumerate {provider} containers: {exc}")
            raise FetchIncompleteError(
                f"Could not enumerate {provider} containers: {exc}"
            ) from exc

        logger.info(f"Fetched {len(index)} {provider} containers")
        return index
