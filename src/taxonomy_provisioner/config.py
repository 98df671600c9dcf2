"""Application configuration and settings.

Objective:
    Provide a single source of truth for runtime configuration used across the
    provisioner (provider endpoints, retry table, credential cache, record
    store backend and the provisioning policy thresholds).

Responsibilities:
    - Define the supported mailbox providers (:class:`ProviderKind`).
    - Load environment-driven settings via :class:`Settings` (Pydantic
      BaseSettings).
    - Provide small convenience helpers for frequently used derived settings
      (e.g., parsing comma-separated category lists).

High-level call tree:
    - :func:`get_settings` -> returns :class:`Settings`
    - :class:`Settings`
        - :attr:`Settings.core_category_list`
        - :attr:`Settings.ignored_system_folder_list`

Operational notes:
    - ``Settings`` loads from ``.env`` by default via ``pydantic-settings``.
    - Every field has a default, so an empty environment is a valid
      configuration. Components accept a ``Settings`` object explicitly to
      enable testing; the provisioner falls back to :func:`get_settings`.
"""

from enum import Enum
from typing import Optional
import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_BUSINESS_TYPE = "Pools & Spas"

# Categories whose presence decides whether a mailbox counts as provisioned
DEFAULT_CORE_CATEGORIES = (
    "BANKING,FORMSUB,GOOGLE REVIEW,MANAGER,SALES,SUPPLIERS,SUPPORT,"
    "URGENT,MISC,PHONE,PROMO,RECRUITMENT,SOCIALMEDIA"
)

# Outlook well-known folders that a classifier never routes into
DEFAULT_IGNORED_SYSTEM_FOLDERS = (
    "Inbox,Drafts,Sent Items,Deleted Items,Junk Email,Archive,Outbox,"
    "Conversation History,RSS Feeds,RSS Subscriptions,Sync Issues,Notes"
)


class ProviderKind(str, Enum):
    """Supported mailbox providers.

    The value is the identifier used in record-store keys, CLI flags and API
    payloads.
    """

    GMAIL = "gmail"
    OUTLOOK = "outlook"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The settings model is intentionally flat and human-editable via `.env`.
    Most fields map directly to environment variables.

    Function tree:
        - :meth:`core_category_list` derives a normalized list from the raw
          comma-separated env var.
        - :meth:`ignored_system_folder_list` does the same for system folders.

    Attributes:
        gmail_api_base_url: Gmail REST base URL for the authenticated user.
        graph_api_base_url: Microsoft Graph base URL.
        request_timeout_seconds: Per-call HTTP timeout.
        credential_ttl_seconds: Lifetime of a cached bearer credential.
        record_store_backend: Where label maps and results are persisted.
        core_presence_threshold: Fraction of core categories that must exist
            at the root before a mailbox may skip a reconciliation pass.
        log_level: Logging level.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Provider endpoints
    gmail_api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1/users/me",
        description="Gmail REST API base URL (users/me scope)",
    )
    graph_api_base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Microsoft Graph API base URL",
    )
    request_timeout_seconds: float = Field(
        default=30, gt=0, description="Timeout applied to every provider call"
    )

    # Retry table
    network_max_retries: int = Field(default=3, ge=0)
    network_base_delay_seconds: float = Field(default=1.0, ge=0)
    network_max_delay_seconds: float = Field(default=10.0, ge=0)
    outlook_rate_limit_max_retries: int = Field(default=3, ge=0)
    outlook_rate_limit_base_delay_seconds: float = Field(default=2.0, ge=0)
    outlook_rate_limit_max_delay_seconds: float = Field(default=30.0, ge=0)
    gmail_rate_limit_max_retries: int = Field(default=1, ge=0)
    gmail_rate_limit_base_delay_seconds: float = Field(default=1.0, ge=0)
    gmail_rate_limit_max_delay_seconds: float = Field(default=10.0, ge=0)

    # Credentials
    credential_ttl_seconds: int = Field(
        default=3000,
        ge=1,
        description="Seconds a bearer credential stays in the credential cache",
    )
    azure_client_id: Optional[str] = Field(
        default=None, description="Azure AD application client ID"
    )
    azure_client_secret: Optional[str] = Field(
        default=None, description="Azure AD application client secret (client credentials flow)"
    )
    azure_tenant_id: Optional[str] = Field(
        default=None, description="Azure AD tenant ID (organizational tenant)"
    )
    outlook_application_permissions: bool = Field(
        default=False,
        description=(
            "Address Outlook mailboxes as /users/{user_id} with an application token "
            "instead of /me with a delegated token."
        ),
    )
    gmail_access_token: Optional[str] = Field(
        default=None,
        description="Bearer token used for Gmail mailboxes (issued by the onboarding flow)",
    )
    outlook_access_token: Optional[str] = Field(
        default=None,
        description="Bearer token used for Outlook mailboxes instead of MSAL client credentials",
    )

    # Record store persistence
    record_store_backend: str = Field(
        default="file",
        description=(
            "Record store backend. 'memory' keeps records in-process, 'file' stores "
            "one JSON document per user, 'azure_blob' stores them in Azure Blob Storage."
        ),
    )
    record_store_path: str = Field(
        default=".taxonomy_records",
        description="Directory used by the 'file' record store backend",
    )
    record_store_blob_account_url: Optional[str] = Field(
        default=None,
        description="Azure Storage account URL, e.g. https://<account>.blob.core.windows.net",
    )
    record_store_blob_container: Optional[str] = Field(
        default=None,
        description="Azure Blob container name for user records",
    )

    # Provisioning policy
    default_business_type: str = Field(default=DEFAULT_BUSINESS_TYPE)
    team_folders_for_all_members: bool = Field(
        default=False,
        description=(
            "Create a top-level folder for every roster member instead of only "
            "for members that do not fit a numbered placeholder slot."
        ),
    )
    core_presence_threshold: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description=(
            "Fraction of core categories that must exist at the root to skip a "
            "reconciliation pass. It can only force a pass: skipping also requires "
            "every compiled taxonomy path to resolve, so it only decides the outcome "
            "for core categories the compiled taxonomy does not contain"
        ),
    )
    healthy_percentage_threshold: float = Field(
        default=90.0,
        ge=0,
        le=100,
        description="Health percentage at or above which onboarding skips provisioning",
    )
    coverage_warning_threshold: float = Field(
        default=90.0,
        ge=0,
        le=100,
        description="Classifier coverage below this percentage produces a warning",
    )
    core_categories: str = Field(
        default=DEFAULT_CORE_CATEGORIES,
        description="Comma-separated list of core category names",
    )
    ignored_system_folders: str = Field(
        default=DEFAULT_IGNORED_SYSTEM_FOLDERS,
        description="Comma-separated provider folders excluded from classifier coverage",
    )

    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def core_category_list(self) -> list[str]:
        """
        Parse core category names from comma-separated string.

        Used by :meth:`src.taxonomy_provisioner.health.HealthValidator.needs_reprovisioning`.

        Returns:
            list[str]: Core category names, upper-cased.
        """
        if not self.core_categories:
            return []
        return [
            name.strip().upper()
            for name in self.core_categories.split(",")
            if name.strip()
        ]

    @property
    def ignored_system_folder_list(self) -> list[str]:
        """
        Parse ignored system folder names from comma-separated string.

        Returns:
            list[str]: Lower-cased folder names.
        """
        if not self.ignored_system_folders:
            return []
        return [
            name.strip().lower()
            for name in self.ignored_system_folders.split(",")
            if name.strip()
        ]


def get_settings() -> Settings:
    """
    Get application settings instance.

    Returns:
        Settings: Application settings loaded from environment.
    """
    return Settings()
