"""Gmail adapter: flat label namespace.

Objective:
    Implement :class:`~src.taxonomy_provisioner.adapters.ProviderAdapter` for
    Gmail, where hierarchy is encoded in ``/``-delimited label names.

Gmail endpoints used:
    - ``GET /labels`` (list every label)
    - ``GET /labels/{id}`` (parent validation)
    - ``POST /labels`` (create)

Operational notes:
    - A child's create name is ``<parent full name>/<child>``.
    - System labels (``INBOX``, ``SENT``, ``CATEGORY_*``) are indexed with
      ``is_system=True`` so coverage checks can skip them.
    - Duplicate names yield HTTP 409, returned as a
      :class:`~src.taxonomy_provisioner.adapters.DuplicateSignal`.
"""

import logging
from typing import Optional
from urllib.parse import quote

from .adapters import CreateOutcome, DuplicateSignal, ProviderAdapter
from .config import ProviderKind
from .errors import ProviderError
from .models import LabelColor, RemoteContainer, RemoteIndex

logger = logging.getLogger(__name__)


def _container_from_label(label: dict, parent_remote_id: Optional[str] = None) -> RemoteContainer:
    name = str(label.get("name", ""))
    return RemoteContainer(
        remote_id=str(label["id"]),
        display_name=name.rsplit("/", 1)[-1],
        parent_remote_id=parent_remote_id,
        full_path=name,
        is_system=label.get("type") == "system",
    )


class GmailAdapter(ProviderAdapter):
    """Flat-namespace adapter for the Gmail REST API."""

    provider = ProviderKind.GMAIL
    hierarchical = False

    @property
    def base_url(self) -> str:
        return self.settings.gmail_api_base_url.rstrip("/")

    def list_all(self, credential: str) -> RemoteIndex:
        """
        List every label and link children to parents by name prefix.

        Args:
            credential: Bearer credential.

        Returns:
            RemoteIndex: Index over all labels.
        """
        response = self._make_request(credential, "GET", "/labels")
        labels = response.get("labels", [])
        ids_by_name = {str(label.get("name", "")).lower(): str(label["id"]) for label in labels}

        containers = []
        for label in labels:
            name = str(label.get("name", ""))
            parent_name = name.rsplit("/", 1)[0] if "/" in name else ""
            parent_id = ids_by_name.get(parent_name.lower()) if parent_name else None
            containers.append(_container_from_label(label, parent_id))

        logger.debug(f"Found {len(containers)} Gmail labels")
        return RemoteIndex(containers)

    def get(self, credential: str, remote_id: str) -> Optional[RemoteContainer]:
        label = self._get_or_none(credential, f"/labels/{quote(remote_id, safe='')}")
        if label is None:
            return None
        return _container_from_label(label)

    def _create(
        self,
        credential: str,
        name: str,
        parent: Optional[RemoteContainer],
        color: Optional[LabelColor],
        minimal: bool,
    ) -> CreateOutcome:
        full_name = f"{parent.full_path}/{name}" if parent else name
        parent_id = parent.remote_id if parent else None

        if minimal:
            body: dict = {"name": full_name}
        else:
            body = {
                "name": full_name,
                "labelListVisibility": "labelShow",
                "messageListVisibility": "show",
            }
            if color is not None:
                body["color"] = color.as_payload()

        try:
            label = self._make_request(
                credential, "POST", "/labels", json_data=body, suppress_statuses={409}
            )
        except ProviderError as exc:
            if self._is_duplicate(exc):
                logger.debug(f"Label already exists: {full_name}")
                return DuplicateSignal(name=name, full_path=full_name, parent_remote_id=parent_id)
            raise

        logger.debug(f"Created label: {full_name}")
        return _container_from_label(label, parent_id)
