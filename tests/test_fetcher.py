"""
Tests for the fetcher module.
"""

import pytest
import requests

from src.taxonomy_provisioner.errors import (
    FetchIncompleteError,
    ForbiddenError,
    ProviderError,
    ReconnectRequiredError,
)
from src.taxonomy_provisioner.fetcher import RemoteStateFetcher


def test_fetch_returns_complete_index(fake_adapter, executor):
    banking = fake_adapter.seed("BANKING", remote_id="bank")
    fake_adapter.seed("Receipts", parent=banking)

    index = RemoteStateFetcher(fake_adapter, executor).fetch()

    assert len(index) == 2
    assert index.by_path("BANKING/Receipts").parent_remote_id == "bank"


def test_transient_failure_is_retried(fake_adapter, executor, sleeps):
    fake_adapter.seed("SALES")
    fake_adapter.list_failures = [requests.ConnectionError("reset by peer")]

    index = RemoteStateFetcher(fake_adapter, executor).fetch()

    assert len(index) == 1
    assert fake_adapter.list_calls == 2
    assert sleeps == [1.0]


def test_exhausted_retries_raise_fetch_incomplete(fake_adapter, executor):
    fake_adapter.list_failures = [ProviderError("Service Unavailable", status_code=503)] * 4

    with pytest.raises(FetchIncompleteError) as excinfo:
        RemoteStateFetcher(fake_adapter, executor).fetch()

    assert "outlook" in str(excinfo.value)
    assert fake_adapter.list_calls == 4


def test_non_retryable_failure_raises_fetch_incomplete(fake_adapter, executor):
    fake_adapter.list_failures = [ProviderError("Bad request", status_code=400)]

    with pytest.raises(FetchIncompleteError):
        RemoteStateFetcher(fake_adapter, executor).fetch()

    assert fake_adapter.list_calls == 1


def test_fatal_errors_propagate_unchanged(fake_adapter, executor):
    fake_adapter.list_failures = [ProviderError("Access is denied", status_code=403)]

    with pytest.raises(ForbiddenError):
        RemoteStateFetcher(fake_adapter, executor).fetch()


def test_auth_failure_after_refresh(fake_adapter, executor):
    fake_adapter.list_failures = [
        ProviderError("expired", status_code=401),
        ProviderError("expired", status_code=401),
    ]

    with pytest.raises(ReconnectRequiredError):
        RemoteStateFetcher(fake_adapter, executor).fetch()
