"""
Shared fixtures: an in-memory provider adapter and credential helpers.
"""

from typing import Optional

import pytest

from src.taxonomy_provisioner.adapters import DuplicateSignal, ProviderAdapter
from src.taxonomy_provisioner.config import ProviderKind, Settings
from src.taxonomy_provisioner.credentials import (
    CachedCredentialSource,
    CredentialCache,
    StaticCredentialIssuer,
)
from src.taxonomy_provisioner.models import RemoteContainer, RemoteIndex
from src.taxonomy_provisioner.retry import RetryingExecutor, RetryTable


class FakeAdapter(ProviderAdapter):
    """In-memory mailbox recording every create call.

    ``failures`` maps a container name to exceptions raised (in order) by the
    next create calls for that name.
    """

    def __init__(
        self,
        provider: ProviderKind = ProviderKind.OUTLOOK,
        hierarchical: bool = True,
        settings: Optional[Settings] = None,
    ) -> None:
        super().__init__(settings or Settings(_env_file=None))
        self.provider = provider
        self.hierarchical = hierarchical
        self.containers: dict[str, RemoteContainer] = {}
        self.create_calls: list[tuple[str, Optional[str], bool]] = []
        self.list_calls = 0
        self.failures: dict[str, list[Exception]] = {}
        self.list_failures: list[Exception] = []
        self._next_id = 0

    @property
    def base_url(self) -> str:
        return "https://mail.example.test"

    def seed(
        self,
        name: str,
        parent: Optional[RemoteContainer] = None,
        remote_id: Optional[str] = None,
        is_system: bool = False,
    ) -> RemoteContainer:
        """Put a container into the mailbox without recording a create."""
        self._next_id += 1
        container = RemoteContainer(
            remote_id=remote_id or f"seed-{self._next_id}",
            display_name=name,
            parent_remote_id=parent.remote_id if parent else None,
            full_path=f"{parent.full_path}/{name}" if parent else name,
            is_system=is_system,
        )
        self.containers[container.remote_id] = container
        return container

    def list_all(self, credential: str) -> RemoteIndex:
        self.list_calls += 1
        if self.list_failures:
            raise self.list_failures.pop(0)
        return RemoteIndex(list(self.containers.values()))

    def get(self, credential: str, remote_id: str) -> Optional[RemoteContainer]:
        return self.containers.get(remote_id)

    def _create(self, credential, name, parent, color, minimal):
        parent_id = parent.remote_id if parent else None
        self.create_calls.append((name, parent_id, minimal))

        queue = self.failures.get(name)
        if queue:
            raise queue.pop(0)

        full_path = f"{parent.full_path}/{name}" if parent else name
        for existing in self.containers.values():
            if existing.parent_remote_id == parent_id and existing.display_name.lower() == name.lower():
                return DuplicateSignal(name=name, full_path=full_path, parent_remote_id=parent_id)

        self._next_id += 1
        container = RemoteContainer(
            remote_id=f"id-{self._next_id}",
            display_name=name,
            parent_remote_id=parent_id,
            full_path=full_path,
        )
        self.containers[container.remote_id] = container
        return container

    def created_names(self) -> list[str]:
        return [name for name, _parent, _minimal in self.create_calls]


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def fake_adapter():
    """Create an empty in-memory Outlook-like mailbox."""
    return FakeAdapter()


@pytest.fixture
def credentials():
    """Credential source issuing fixed tokens."""
    return CachedCredentialSource(
        StaticCredentialIssuer({"outlook": "token-outlook", "gmail": "token-gmail"}),
        CredentialCache(ttl_seconds=60),
    )


@pytest.fixture
def sleeps():
    """Collects every retry delay instead of sleeping."""
    return []


@pytest.fixture
def executor(credentials, settings, sleeps):
    """Retry executor for user-1 on Outlook that never really sleeps."""
    return RetryingExecutor(
        credentials,
        "user-1",
        ProviderKind.OUTLOOK,
        table=RetryTable(settings),
        sleep_fn=sleeps.append,
    )


@pytest.fixture
def make_adapter():
    """Factory building fake adapters of a chosen provider flavour."""
    return FakeAdapter
