"""
Tests for the credentials module.
"""

import pytest
from unittest.mock import MagicMock, patch

from src.taxonomy_provisioner.config import ProviderKind, Settings
from src.taxonomy_provisioner.credentials import (
    CachedCredentialSource,
    CredentialCache,
    CredentialIssueError,
    MsalCredentialIssuer,
    ProviderCredentialIssuer,
    StaticCredentialIssuer,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestCredentialCache:
    """Tests for the TTL credential cache."""

    def test_entry_expires_after_ttl(self):
        clock = _Clock()
        cache = CredentialCache(ttl_seconds=10, clock=clock)
        cache.put("u1", ProviderKind.GMAIL, "tok")

        clock.now = 9.9
        assert cache.get("u1", ProviderKind.GMAIL) == "tok"

        clock.now = 10.0
        assert cache.get("u1", ProviderKind.GMAIL) is None

    def test_entries_are_keyed_by_user_and_provider(self):
        cache = CredentialCache(ttl_seconds=10, clock=_Clock())
        cache.put("u1", ProviderKind.GMAIL, "gmail-tok")

        assert cache.get("u1", ProviderKind.OUTLOOK) is None
        assert cache.get("u2", ProviderKind.GMAIL) is None
        assert cache.get("u1", "gmail") == "gmail-tok"

    def test_invalidate(self):
        cache = CredentialCache(ttl_seconds=10, clock=_Clock())
        cache.put("u1", ProviderKind.GMAIL, "tok")

        cache.invalidate("u1", ProviderKind.GMAIL)

        assert cache.get("u1", ProviderKind.GMAIL) is None


class TestCachedCredentialSource:
    """Tests for issuing and caching credentials."""

    def test_issues_once_then_caches(self):
        issuer = MagicMock(return_value="tok")
        source = CachedCredentialSource(issuer, CredentialCache(ttl_seconds=60))

        assert source.get_credential("u1", ProviderKind.OUTLOOK) == "tok"
        assert source.get_credential("u1", ProviderKind.OUTLOOK) == "tok"
        issuer.assert_called_once_with("u1", ProviderKind.OUTLOOK)

    def test_force_refresh_reissues(self):
        issuer = MagicMock(side_effect=["old", "new"])
        source = CachedCredentialSource(issuer, CredentialCache(ttl_seconds=60))

        source.get_credential("u1", ProviderKind.OUTLOOK)

        assert source.get_credential("u1", ProviderKind.OUTLOOK, force_refresh=True) == "new"
        assert source.get_credential("u1", ProviderKind.OUTLOOK) == "new"

    def test_empty_credential_raises(self):
        source = CachedCredentialSource(MagicMock(return_value=""), CredentialCache(ttl_seconds=60))

        with pytest.raises(CredentialIssueError):
            source.get_credential("u1", ProviderKind.GMAIL)


class TestStaticCredentialIssuer:
    def test_user_specific_token_wins(self):
        issuer = StaticCredentialIssuer({("u1", "gmail"): "mine", "gmail": "shared"})

        assert issuer("u1", ProviderKind.GMAIL) == "mine"
        assert issuer("u2", ProviderKind.GMAIL) == "shared"

    def test_missing_token_raises(self):
        with pytest.raises(CredentialIssueError):
            StaticCredentialIssuer({})("u1", ProviderKind.OUTLOOK)


class TestMsalCredentialIssuer:
    """Tests for the Microsoft Graph client-credentials issuer."""

    @pytest.fixture
    def msal_settings(self):
        return Settings(
            _env_file=None,
            azure_client_id="client",
            azure_client_secret="secret",
            azure_tenant_id="tenant",
        )

    def test_acquires_token_for_client(self, msal_settings):
        with patch(
            "src.taxonomy_provisioner.credentials.msal.ConfidentialClientApplication"
        ) as app_cls:
            app_cls.return_value.acquire_token_for_client.return_value = {"access_token": "graph"}

            token = MsalCredentialIssuer(msal_settings)("u1", ProviderKind.OUTLOOK)

        assert token == "graph"
        app_cls.assert_called_once_with(
            client_id="client",
            client_credential="secret",
            authority="https://login.microsoftonline.com/tenant",
        )

    def test_error_result_raises(self, msal_settings):
        with patch(
            "src.taxonomy_provisioner.credentials.msal.ConfidentialClientApplication"
        ) as app_cls:
            app_cls.return_value.acquire_token_for_client.return_value = {
                "error": "invalid_client",
                "error_description": "bad secret",
            }

            with pytest.raises(CredentialIssueError, match="bad secret"):
                MsalCredentialIssuer(msal_settings)("u1", ProviderKind.OUTLOOK)

    def test_requires_client_settings(self, settings):
        with pytest.raises(CredentialIssueError):
            MsalCredentialIssuer(settings)("u1", ProviderKind.OUTLOOK)

    def test_gmail_is_not_supported(self, msal_settings):
        with pytest.raises(CredentialIssueError):
            MsalCredentialIssuer(msal_settings)("u1", ProviderKind.GMAIL)


class TestProviderCredentialIssuer:
    def test_routes_by_provider(self):
        issuer = ProviderCredentialIssuer(
            {ProviderKind.GMAIL: StaticCredentialIssuer({"gmail": "g-token"})}
        )

        assert issuer("u1", ProviderKind.GMAIL) == "g-token"

    def test_unconfigured_provider_raises(self):
        issuer = ProviderCredentialIssuer({})

        with pytest.raises(CredentialIssueError, match="outlook"):
            issuer("u1", ProviderKind.OUTLOOK)
