"""Provisioning orchestrator.

Objective:
    Coordinate the end-to-end provisioning workflow for one mailbox:
    1) Compile the taxonomy for the user's business types and roster
    2) Fetch the complete remote index
    3) Decide whether reconciliation is needed
    4) Reconcile (create what is missing, parent before child)
    5) Persist the friendly-key label map, expected folders and result
    6) Re-validate health against the updated index

Responsibilities:
    - Compose the core components (template compiler, provider adapter,
      retry executor, fetcher, reconciler, record store, health validator).
    - Provide an imperative API (:meth:`FolderProvisioner.provision`) that can
      be called from the CLI, the FastAPI webapp, or other scripts.
    - Expose the onboarding triggers (business type change, team setup,
      onboarding completion).

High-level call tree:
    - :class:`FolderProvisioner`
        - :meth:`FolderProvisioner.provision`
            - :meth:`SchemaCompiler.compile`
            - :meth:`RemoteStateFetcher.fetch`
            - :meth:`HealthValidator.needs_reprovisioning`
            - :meth:`Reconciler.run`
            - :meth:`FolderProvisioner._persist`
                - :func:`build_id_map` / :func:`merge_label_map`
                - :func:`merge_expected_folders`
            - :meth:`HealthValidator.evaluate`
        - :meth:`FolderProvisioner.check_health`
        - :meth:`FolderProvisioner.on_business_type_change`
        - :meth:`FolderProvisioner.on_team_setup`
        - :meth:`FolderProvisioner.on_onboarding_complete`
    - :func:`provisioning_feedback` user-facing summary

Operational notes:
    - Runs for different users are independent; the credential cache is the
      only shared state.
    - Fatal errors (forbidden, fetch incomplete, reconnect required) propagate
      to the caller; nothing is persisted for an aborted run.
"""

import logging
import time
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .adapters import ProviderAdapter
from .config import ProviderKind, Settings, get_settings
from .credentials import (
    CachedCredentialSource,
    CredentialCache,
    CredentialIssuer,
    CredentialSource,
    MsalCredentialIssuer,
    ProviderCredentialIssuer,
    StaticCredentialIssuer,
)
from .fetcher import RemoteStateFetcher
from .gmail_adapter import GmailAdapter
from .health import HealthValidator
from .id_map import (
    build_id_map,
    expected_folders_from_result,
    merge_expected_folders,
    merge_label_map,
)
from .models import (
    CompiledTaxonomy,
    ContainerLevel,
    ExpectedFolder,
    HealthReport,
    ProvisioningResult,
    Roster,
    TeamFolderValidation,
)
from .outlook_adapter import OutlookAdapter
from .reconciler import Reconciler
from .retry import RetryingExecutor, RetryTable
from .schema_compiler import SchemaCompiler
from .store import (
    EXPECTED_FOLDERS,
    LABEL_MAP,
    PROVISIONING_RESULT,
    RecordStore,
    create_record_store,
    record_category,
)

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, ProviderKind], ProviderAdapter]


class ProvisioningOutcome(BaseModel):
    """
    Result of one provisioning request.

    Attributes:
        user_id: Mailbox owner.
        provider: Provider of the mailbox.
        business_types: Canonical business types the taxonomy was built from.
        skipped: True when no reconciliation was needed.
        reason: Why the run was skipped, if it was.
        result: Reconciliation result.
        label_map: Persisted friendly-key map after the run.
        health: Health report after the run.
    """

    user_id: str = Field(alias="userId")
    provider: ProviderKind
    business_types: list[str] = Field(default_factory=list, alias="businessTypes")
    skipped: bool = False
    reason: Optional[str] = None
    result: ProvisioningResult = Field(default_factory=ProvisioningResult)
    label_map: dict[str, str] = Field(default_factory=dict, alias="labelMap")
    health: Optional[HealthReport] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def success(self) -> bool:
        return self.result.success


def default_adapter_factory(settings: Settings) -> AdapterFactory:
    """Return a factory building the adapter for a user and provider."""

    def _factory(user_id: str, provider: ProviderKind) -> ProviderAdapter:
        if ProviderKind(provider) == ProviderKind.GMAIL:
            return GmailAdapter(settings)
        mailbox_user = user_id if settings.outlook_application_permissions else None
        return OutlookAdapter(settings, mailbox_user=mailbox_user)

    return _factory


def default_credential_source(settings: Settings) -> CredentialSource:
    """
    Return the cached credential source configured by settings.

    Outlook uses ``OUTLOOK_ACCESS_TOKEN`` when set and MSAL client credentials
    otherwise; Gmail uses ``GMAIL_ACCESS_TOKEN``. A provider without a
    credential makes every call for it fail with a reconnect request.
    """
    issuers: dict[ProviderKind, CredentialIssuer] = {
        ProviderKind.OUTLOOK: MsalCredentialIssuer(settings),
    }
    tokens = {
        ProviderKind.GMAIL.value: settings.gmail_access_token,
        ProviderKind.OUTLOOK.value: settings.outlook_access_token,
    }
    for value, token in tokens.items():
        if token:
            issuers[ProviderKind(value)] = StaticCredentialIssuer({value: token})

    return CachedCredentialSource(
        ProviderCredentialIssuer(issuers),
        CredentialCache(settings.credential_ttl_seconds),
    )


class FolderProvisioner:
    """
    Orchestrates folder/label provisioning for mailboxes.

    This class is glue code: it connects the compiler, the provider adapter,
    the reconciler and the record store without embedding business rules.

    Attributes:
        settings: Application settings.
        store: Record store for label maps and expected folders.
        credentials: Bearer credential source.
        adapter_factory: Builds a provider adapter per ``(user, provider)``.
        compiler: Schema compiler.
        health: Health validator.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[RecordStore] = None,
        credentials: Optional[CredentialSource] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        compiler: Optional[SchemaCompiler] = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the provisioner with all components.

        Components not provided are built from settings, which makes testing
        easy. If settings are not provided, :func:`get_settings` is used.

        Args:
            settings: Application settings (loads from env if None).
            store: Record store (built from settings if None).
            credentials: Credential source (MSAL-backed if None).
            adapter_factory: Adapter factory (Gmail/Outlook adapters if None).
            compiler: Schema compiler (built from settings if None).
            sleep_fn: Sleep used between retries.
        """
        self.settings = settings or get_settings()
        self.store = store if store is not None else create_record_store(self.settings)
        self.credentials = credentials or default_credential_source(self.settings)
        self.adapter_factory = adapter_factory or default_adapter_factory(self.settings)
        self.compiler = compiler or SchemaCompiler(
            team_folders_for_all_members=self.settings.team_folders_for_all_members,
            default_business_type=self.settings.default_business_type,
        )
        self.health = HealthValidator(self.store, self.settings, self.compiler.store)
        self.retry_table = RetryTable(self.settings)
        self.sleep_fn = sleep_fn

    def _session(
        self, user_id: str, provider: ProviderKind
    ) -> tuple[ProviderAdapter, RetryingExecutor, RemoteStateFetcher]:
        adapter = self.adapter_factory(user_id, provider)
        executor = RetryingExecutor(
            self.credentials, user_id, provider, table=self.retry_table, sleep_fn=self.sleep_fn
        )
        return adapter, executor, RemoteStateFetcher(adapter, executor)

    def preview(
        self, business_types: list[str], roster: Optional[Roster] = None
    ) -> CompiledTaxonomy:
        """Compile a taxonomy without touching any mailbox."""
        return self.compiler.compile(business_types, roster)

    def provision(
        self,
        user_id: str,
        provider: ProviderKind,
        business_types: list[str],
        roster: Optional[Roster] = None,
        force: bool = False,
    ) -> ProvisioningOutcome:
        """
        Provision one mailbox.

        Args:
            user_id: Mailbox owner.
            provider: Provider of the mailbox.
            business_types: Ordered business type names or aliases.
            roster: Team roster.
            force: Reconcile even when the mailbox already looks provisioned.

        Returns:
            ProvisioningOutcome: Result, persisted label map and health.

        Raises:
            UnknownBusinessTypeError: If a business type has no template.
            FatalProvisioningError: On forbidden, fetch-incomplete or
                reconnect-required conditions.
        """
        provider = ProviderKind(provider)
        taxonomy = self.compiler.compile(business_types, roster)
        adapter, executor, fetcher = self._session(user_id, provider)

        index = fetcher.fetch()

        skipped = False
        reason = None
        if not force and not self.health.needs_reprovisioning(taxonomy, index):
            # Every path resolves, so the reconciler only matches.
            skipped = True
            reason = "All folders already exist"
            logger.info(f"{user_id} ({provider.value}): {reason}, skipping creation")

        recorded = {
            folder.path: folder.remote_id
            for folder in self.health.load_expected(user_id, provider)
            if folder.remote_id
        }
        result = Reconciler(adapter, executor, fetcher).run(taxonomy, index, recorded)

        label_map, expected = self._persist(user_id, provider, result)
        health = self.health.evaluate(expected, index, taxonomy.vocabulary())

        logger.info(
            f"Provisioned {user_id} ({provider.value}): {result.summary()}, "
            f"health {health.health_percentage}%"
        )
        return ProvisioningOutcome(
            user_id=user_id,
            provider=provider,
            business_types=taxonomy.business_types,
            skipped=skipped,
            reason=reason,
            result=result,
            label_map=label_map,
            health=health,
        )

    def _persist(
        self, user_id: str, provider: ProviderKind, result: ProvisioningResult
    ) -> tuple[dict[str, str], list[ExpectedFolder]]:
        """Merge the run into the user's records and return the merged state."""
        id_map = build_id_map(result)
        label_map = self.store.update(
            user_id,
            record_category(LABEL_MAP, provider),
            lambda current: merge_label_map(current, id_map),
        )

        new_folders = expected_folders_from_result(result)

        def _merge_expected(current: Optional[list[dict[str, Any]]]) -> list[dict[str, Any]]:
            existing = [ExpectedFolder.model_validate(item) for item in current or []]
            merged = merge_expected_folders(existing, new_folders)
            return [folder.model_dump(by_alias=True) for folder in merged]

        raw_expected = self.store.update(
            user_id, record_category(EXPECTED_FOLDERS, provider), _merge_expected
        )
        self.store.put(
            user_id,
            record_category(PROVISIONING_RESULT, provider),
            result.model_dump(mode="json", by_alias=True),
        )
        return label_map, [ExpectedFolder.model_validate(item) for item in raw_expected]

    def label_map(self, user_id: str, provider: ProviderKind) -> dict[str, str]:
        """Return the persisted friendly-key map for a user."""
        return self.store.get(user_id, record_category(LABEL_MAP, provider)) or {}

    def check_health(
        self,
        user_id: str,
        provider: ProviderKind,
        business_types: Optional[list[str]] = None,
        roster: Optional[Roster] = None,
    ) -> HealthReport:
        """
        Compute the health report for a mailbox.

        When business types are given, classifier coverage is measured
        against the compiled taxonomy's vocabulary; otherwise against the
        recorded folders.
        """
        provider = ProviderKind(provider)
        vocabulary = None
        if business_types:
            vocabulary = self.compiler.compile(business_types, roster).vocabulary()
        _adapter, _executor, fetcher = self._session(user_id, provider)
        return self.health.check_health(user_id, provider, fetcher, vocabulary)

    def validate_team_folders(
        self, user_id: str, provider: ProviderKind, roster: Roster
    ) -> TeamFolderValidation:
        """Report which roster members have a container in the mailbox."""
        _adapter, _executor, fetcher = self._session(user_id, ProviderKind(provider))
        return self.health.validate_team_folders(fetcher.fetch(), roster)

    def on_business_type_change(
        self,
        user_id: str,
        provider: ProviderKind,
        business_types: list[str],
        roster: Optional[Roster] = None,
    ) -> ProvisioningOutcome:
        """Provision after the business types changed.

        With no roster yet, only the skeleton (static categories) is created.
        """
        roster = roster or Roster()
        if roster.is_empty:
            logger.info(f"{user_id}: no team yet, provisioning skeleton folders")
        return self.provision(user_id, provider, business_types, roster)

    def on_team_setup(
        self,
        user_id: str,
        provider: ProviderKind,
        business_types: list[str],
        roster: Roster,
    ) -> ProvisioningOutcome:
        """Provision after the team roster was entered or edited."""
        return self.provision(user_id, provider, business_types, roster, force=True)

    def on_onboarding_complete(
        self,
        user_id: str,
        provider: ProviderKind,
        business_types: list[str],
        roster: Optional[Roster] = None,
    ) -> ProvisioningOutcome:
        """Final provisioning pass at the end of onboarding.

        Skipped when every recorded folder is present and health is at or
        above ``healthy_percentage_threshold``.
        """
        provider = ProviderKind(provider)
        report = self.check_health(user_id, provider, business_types, roster)
        if report.all_present and report.health_percentage >= self.settings.healthy_percentage_threshold:
            logger.info(f"{user_id} ({provider.value}): folders healthy, skipping provisioning")
            return ProvisioningOutcome(
                user_id=user_id,
                provider=provider,
                business_types=[self.compiler.store.canonical_name(b) for b in business_types],
                skipped=True,
                reason="Folders are already healthy",
                label_map=self.label_map(user_id, provider),
                health=report,
            )
        return self.provision(user_id, provider, business_types, roster, force=True)


def provisioning_feedback(outcome: ProvisioningOutcome) -> dict[str, Any]:
    """
    Build a user-facing summary of a provisioning outcome.

    Returns:
        dict[str, Any]: ``{"type", "title", "message", "details"}`` where
        type is one of ``info``, ``success``, ``warning`` or ``error``.
    """
    result = outcome.result
    details: dict[str, Any] = {
        **result.summary(),
        "errors": [f"{e.path}: {e.error}" for e in result.errors],
    }
    if outcome.health is not None:
        details["healthPercentage"] = outcome.health.health_percentage
        details["warnings"] = list(outcome.health.warnings)

    if outcome.skipped and not result.created and not result.errors:
        return {
            "type": "info",
            "title": "Folders already set up",
            "message": outcome.reason or "No changes were needed.",
            "details": details,
        }

    if not result.success:
        failed = [e.name for e in result.errors if e.level == ContainerLevel.CATEGORY]
        return {
            "type": "error",
            "title": "Folder setup failed",
            "message": f"Could not create {len(failed)} main folders: {', '.join(failed)}",
            "details": details,
        }

    if result.errors:
        return {
            "type": "warning",
            "title": "Folders partially set up",
            "message": (
                f"Created {len(result.created)} folders; {len(result.errors)} "
                "could not be created."
            ),
            "details": details,
        }

    return {
        "type": "success",
        "title": "Folders ready",
        "message": (
            f"Created {len(result.created)} folders, "
            f"{len(result.matched)} already existed."
        ),
        "details": details,
    }
