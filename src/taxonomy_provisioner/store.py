"""Record store: per-user persistence of provisioning artifacts.

Objective:
    Persist the few durable artifacts of a provisioning run (the friendly-key
    label map, the expected-folder list and the last result) keyed by user and
    category, behind a small interface with interchangeable backends.

Key points:
    - :class:`RecordStore` is the contract (``get``, ``put``, ``update``).
    - :class:`InMemoryRecordStore` for tests and one-shot runs.
    - :class:`JsonFileRecordStore` keeps one JSON document per user on disk.
    - :class:`BlobRecordStore` keeps one JSON blob per user in Azure Blob
      Storage with ETag optimistic concurrency and DefaultAzureCredential.

Operational notes:
    - ``update`` is a read-modify-write; the blob backend re-reads and
      re-applies the change when another writer won the race.
    - Records never contain credentials.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Tuple

from azure.core.exceptions import ResourceExistsError, ResourceModifiedError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobClient

from .config import ProviderKind, Settings

logger = logging.getLogger(__name__)

LABEL_MAP = "label_map"
EXPECTED_FOLDERS = "expected_folders"
PROVISIONING_RESULT = "provisioning_result"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._@-]")

Updater = Callable[[Optional[Any]], Any]


class RecordStoreError(RuntimeError):
    """Raised when a record cannot be read or written."""


def record_category(name: str, provider: ProviderKind) -> str:
    """Return the category key for a provider-specific record."""
    return f"{ProviderKind(provider).value}.{name}"


def _safe_name(user_id: str) -> str:
    return _UNSAFE_CHARS.sub("_", user_id) or "_"


class RecordStore(Protocol):
    """Generic record store keyed by user and category."""

    def get(self, user_id: str, category: str) -> Optional[Any]:
        ...

    def put(self, user_id: str, category: str, record: Any) -> None:
        ...

    def update(self, user_id: str, category: str, fn: Updater) -> Any:
        ...


class InMemoryRecordStore:
    """Process-local record store."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, category: str) -> Optional[Any]:
        with self._lock:
            return deepcopy(self._records.get((user_id, category)))

    def put(self, user_id: str, category: str, record: Any) -> None:
        with self._lock:
            self._records[(user_id, category)] = deepcopy(record)

    def update(self, user_id: str, category: str, fn: Updater) -> Any:
        with self._lock:
            value = fn(deepcopy(self._records.get((user_id, category))))
            self._records[(user_id, category)] = deepcopy(value)
            return value


class JsonFileRecordStore:
    """
    One JSON document per user under a directory.

    Attributes:
        directory: Directory holding ``<user>.json`` files.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _path(self, user_id: str) -> Path:
        return self.directory / f"{_safe_name(user_id)}.json"

    def _read(self, user_id: str) -> dict[str, Any]:
        path = self._path(user_id)
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise RecordStoreError(f"Failed to read records for {user_id}: {exc}") from exc

    def _write(self, user_id: str, document: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(user_id)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise RecordStoreError(f"Failed to write records for {user_id}: {exc}") from exc

    def get(self, user_id: str, category: str) -> Optional[Any]:
        with self._lock:
            return self._read(user_id).get(category)

    def put(self, user_id: str, category: str, record: Any) -> None:
        with self._lock:
            document = self._read(user_id)
            document[category] = record
            self._write(user_id, document)

    def update(self, user_id: str, category: str, fn: Updater) -> Any:
        with self._lock:
            document = self._read(user_id)
            value = fn(document.get(category))
            document[category] = value
            self._write(user_id, document)
            return value


@dataclass(frozen=True)
class BlobRecordLocation:
    """Location of the record blobs.

    Args:
        account_url: Storage account blob endpoint URL.
        container_name: Blob container name.
        prefix: Blob name prefix inside the container.
    """

    account_url: str
    container_name: str
    prefix: str = "records"


class BlobRecordStore:
    """Store user records as JSON blobs in Azure Blob Storage.

    This store implements ETag-based optimistic concurrency to avoid
    overwriting updates when multiple writers are present.
    """

    def __init__(self, location: BlobRecordLocation, max_retries: int = 5) -> None:
        """Initialize the blob record store.

        Args:
            location: Target container and prefix.
            max_retries: Number of retries on ETag conflicts.
        """

        self._location = location
        self._max_retries = max_retries
        self._credential = DefaultAzureCredential(exclude_interactive_browser_credential=True)

    def _blob_name(self, user_id: str) -> str:
        return f"{self._location.prefix}/{_safe_name(user_id)}.json"

    def _get_blob_client(self, user_id: str) -> BlobClient:
        """Create a BlobClient using DefaultAzureCredential.

        Returns:
            BlobClient: Configured blob client.
        """

        return BlobClient(
            account_url=self._location.account_url,
            container_name=self._location.container_name,
            blob_name=self._blob_name(user_id),
            credential=self._credential,
        )

    def download(self, user_id: str) -> Tuple[dict[str, Any], Optional[str]]:
        """Download a user's record document and its ETag.

        Returns:
            tuple[dict, Optional[str]]: (document, etag). A missing blob yields
            ``({}, None)``.
        """

        client = self._get_blob_client(user_id)
        try:
            data = client.download_blob().readall()
            etag = client.get_blob_properties().etag
        except ResourceNotFoundError:
            return {}, None

        text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else str(data)
        try:
            return json.loads(text or "{}"), etag
        except ValueError:
            logger.warning("Record blob for %s is not valid JSON; treating as empty", user_id)
            return {}, etag

    def _upload(self, user_id: str, document: dict[str, Any], etag: Optional[str]) -> None:
        client = self._get_blob_client(user_id)
        payload = json.dumps(document, sort_keys=True).encode("utf-8")
        if etag is None:
            # Create only if it doesn't exist
            client.upload_blob(payload, overwrite=False)
        else:
            # Overwrite only if ETag matches
            client.upload_blob(payload, overwrite=True, if_match=etag)

    def get(self, user_id: str, category: str) -> Optional[Any]:
        document, _etag = self.download(user_id)
        return document.get(category)

    def put(self, user_id: str, category: str, record: Any) -> None:
        self.update(user_id, category, lambda _current: record)

    def update(self, user_id: str, category: str, fn: Updater) -> Any:
        """Read-modify-write one category with ETag concurrency.

        Raises:
            RecordStoreError: If the write keeps conflicting or fails.
        """

        for attempt in range(self._max_retries):
            document, etag = self.download(user_id)
            value = fn(deepcopy(document.get(category)))
            document[category] = value
            try:
                self._upload(user_id, document, etag)
                return value
            except (ResourceModifiedError, ResourceExistsError):
                # Someone updated the blob between download and upload
                logger.warning(
                    "Record blob ETag conflict for %s; retrying (attempt=%s)", user_id, attempt + 1
                )
            except Exception as exc:
                raise RecordStoreError(f"Failed to upload record blob: {exc}") from exc

            # Small backoff
            time.sleep(0.2 * (attempt + 1))

        raise RecordStoreError("Failed to upload record blob due to repeated ETag conflicts")


def create_record_store(settings: Settings) -> RecordStore:
    """
    Build the record store selected by ``settings.record_store_backend``.

    Args:
        settings: Application settings.

    Returns:
        RecordStore: Configured backend.

    Raises:
        ValueError: On an unknown backend or incomplete blob settings.
    """
    backend = (settings.record_store_backend or "file").strip().lower()
    if backend == "memory":
        return InMemoryRecordStore()
    if backend == "file":
        return JsonFileRecordStore(Path(settings.record_store_path))
    if backend == "azure_blob":
        account_url = (settings.record_store_blob_account_url or "").strip()
        container = (settings.record_store_blob_container or "").strip()
        if not (account_url and container):
            raise ValueError(
                "record_store_backend=azure_blob requires RECORD_STORE_BLOB_ACCOUNT_URL "
                "and RECORD_STORE_BLOB_CONTAINER"
            )
        return BlobRecordStore(BlobRecordLocation(account_url=account_url, container_name=container))
    raise ValueError(f"Unknown record store backend: {settings.record_store_backend}")
