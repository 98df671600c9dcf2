"""Outlook adapter: Microsoft Graph mail folder tree.

Objective:
    Implement :class:`~src.taxonomy_provisioner.adapters.ProviderAdapter` for
    Outlook, where hierarchy is a real parent/child folder tree.

Graph endpoints used:
    - ``GET {mailbox}/mailFolders`` (root folders)
    - ``GET {mailbox}/mailFolders/{id}/childFolders`` (recursive descent)
    - ``GET {mailbox}/mailFolders/{id}`` (parent validation)
    - ``POST {mailbox}/mailFolders`` (create root folder)
    - ``POST {mailbox}/mailFolders/{id}/childFolders`` (create child folder)

    ``{mailbox}`` is ``/me`` for delegated tokens or ``/users/{user}`` for
    application tokens.

Operational notes:
    - Listing follows ``@odata.nextLink`` pages and descends into every folder
      with ``childFolderCount > 0``. Any failure propagates: a partial tree is
      never returned.
    - Graph folders carry no color; a color argument is ignored.
    - Well-known root folders (Inbox, Sent Items, ...) are marked
      ``is_system``.
"""

import logging
from typing import Optional
from urllib.parse import quote

from .adapters import CreateOutcome, DuplicateSignal, ProviderAdapter
from .config import ProviderKind, Settings
from .errors import ProviderError
from .models import LabelColor, RemoteContainer, RemoteIndex

logger = logging.getLogger(__name__)

FOLDER_SELECT = "id,displayName,parentFolderId,childFolderCount"


class OutlookAdapter(ProviderAdapter):
    """
    Hierarchical adapter for Microsoft Graph mail folders.

    Attributes:
        mailbox_user: User principal name addressed with application tokens;
            None addresses ``/me``.
    """

    provider = ProviderKind.OUTLOOK
    hierarchical = True

    def __init__(self, settings: Optional[Settings] = None, mailbox_user: Optional[str] = None) -> None:
        super().__init__(settings)
        self.mailbox_user = mailbox_user

    @property
    def base_url(self) -> str:
        return self.settings.graph_api_base_url.rstrip("/")

    @property
    def mailbox(self) -> str:
        if self.mailbox_user:
            return f"/users/{quote(self.mailbox_user, safe='')}"
        return "/me"

    def _folder_endpoint(self, folder_id: str) -> str:
        return f"{self.mailbox}/mailFolders/{quote(folder_id, safe='')}"

    def _list_pages(self, credential: str, endpoint: str) -> list[dict]:
        """Return every item of a paged Graph collection."""
        items: list[dict] = []
        params: Optional[dict] = {"$top": 100, "$select": FOLDER_SELECT}
        while endpoint:
            response = self._make_request(credential, "GET", endpoint, params=params)
            items.extend(response.get("value", []))
            endpoint = response.get("@odata.nextLink")
            # nextLink already embeds the query string
            params = None
        return items

    def _walk(
        self,
        credential: str,
        endpoint: str,
        parent_id: Optional[str],
        parent_path: str,
        out: list[RemoteContainer],
    ) -> None:
        """Depth-first traversal of a folder collection."""
        ignored = set(self.settings.ignored_system_folder_list)
        for item in self._list_pages(credential, endpoint):
            name = str(item.get("displayName", ""))
            path = f"{parent_path}/{name}" if parent_path else name
            folder = RemoteContainer(
                remote_id=str(item["id"]),
                display_name=name,
                parent_remote_id=parent_id,
                full_path=path,
                is_system=parent_id is None and name.lower() in ignored,
            )
            out.append(folder)
            if int(item.get("childFolderCount") or 0) > 0:
                self._walk(
                    credential,
                    f"{self._folder_endpoint(folder.remote_id)}/childFolders",
                    folder.remote_id,
                    path,
                    out,
                )

    def list_all(self, credential: str) -> RemoteIndex:
        """
        Enumerate the whole folder tree.

        Root folders get ``parent_remote_id=None`` (Graph reports the hidden
        message-folder root as their parent).

        Args:
            credential: Bearer credential.

        Returns:
            RemoteIndex: Index over every folder, keyed by name and full path.
        """
        folders: list[RemoteContainer] = []
        self._walk(credential, f"{self.mailbox}/mailFolders", None, "", folders)
        logger.debug(f"Found {len(folders)} Outlook folders")
        return RemoteIndex(folders)

    def get(self, credential: str, remote_id: str) -> Optional[RemoteContainer]:
        item = self._get_or_none(credential, self._folder_endpoint(remote_id))
        if item is None:
            return None
        name = str(item.get("displayName", ""))
        return RemoteContainer(
            remote_id=str(item["id"]),
            display_name=name,
            parent_remote_id=item.get("parentFolderId"),
            full_path=name,
        )

    def _create(
        self,
        credential: str,
        name: str,
        parent: Optional[RemoteContainer],
        color: Optional[LabelColor],
        minimal: bool,
    ) -> CreateOutcome:
        if color is not None:
            logger.debug(f"Ignoring color for Outlook folder {name}")

        if parent:
            endpoint = f"{self._folder_endpoint(parent.remote_id)}/childFolders"
            parent_id = parent.remote_id
        else:
            endpoint = f"{self.mailbox}/mailFolders"
            parent_id = None

        try:
            item = self._make_request(
                credential,
                "POST",
                endpoint,
                json_data={"displayName": name},
                suppress_statuses={409},
            )
        except ProviderError as exc:
            if self._is_duplicate(exc):
                logger.debug(f"Folder already exists: {name}")
                return DuplicateSignal(name=name, full_path=name, parent_remote_id=parent_id)
            raise

        logger.debug(f"Created folder: {name}")
        return RemoteContainer(
            remote_id=str(item["id"]),
            display_name=str(item.get("displayName", name)),
            parent_remote_id=parent_id,
            full_path=name,
        )
