"""Health and drift validation.

Objective:
    Compare the containers recorded for a user against what the mailbox
    actually holds, and estimate how much of the mailbox the downstream
    classifier can route into.

Responsibilities:
    - Detect manual deletions (recorded but gone) and lost records (nothing
      recorded but the mailbox is populated -> ``needs_sync``).
    - Compute health (found / expected) and classifier coverage.
    - Decide whether a mailbox needs re-provisioning (core-category presence
      threshold).
    - Report which roster members have a container.

High-level call tree:
    - :meth:`HealthValidator.check_health`
        - :meth:`RemoteStateFetcher.fetch`
        - :meth:`HealthValidator.load_expected`
        - :meth:`HealthValidator.evaluate`
            - :meth:`HealthValidator.classifier_coverage`
    - :meth:`HealthValidator.needs_reprovisioning`
    - :meth:`HealthValidator.validate_team_folders`

Operational notes:
    - Never mutates provisioning state.
    - Low coverage is a warning, never an error.
"""

import logging
import re
from typing import Iterable, Optional

from .config import ProviderKind, Settings
from .fetcher import RemoteStateFetcher
from .models import (
    ClassifierCoverage,
    CompiledTaxonomy,
    ExpectedFolder,
    HealthReport,
    RemoteIndex,
    Roster,
    TeamFolderValidation,
)
from .store import EXPECTED_FOLDERS, RecordStore, record_category
from .templates import TemplateStore

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\s_\-/\\.]+")


def normalize_token(value: str) -> str:
    """Lower-case and strip separators for coverage matching."""
    return _SEPARATORS.sub("", (value or "").lower())


class HealthValidator:
    """
    Computes health reports for provisioned mailboxes.

    Attributes:
        store: Record store holding expected folders.
        settings: Application settings (thresholds).
        templates: Template store used for the fallback vocabulary.
    """

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[Settings] = None,
        templates: Optional[TemplateStore] = None,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.templates = templates or TemplateStore()

    def load_expected(self, user_id: str, provider: ProviderKind) -> list[ExpectedFolder]:
        """Load the recorded expected-folder list for a user."""
        raw = self.store.get(user_id, record_category(EXPECTED_FOLDERS, provider)) or []
        return [ExpectedFolder.model_validate(item) for item in raw]

    def default_vocabulary(self, expected: Iterable[ExpectedFolder]) -> set[str]:
        """Vocabulary from recorded paths, falling back to the base template."""
        vocabulary = {
            segment.lower()
            for folder in expected
            for segment in folder.path.split("/")
            if segment.strip()
        }
        if vocabulary:
            return vocabulary

        def _names(nodes):
            for node in nodes:
                if not node.is_placeholder:
                    yield node.name.lower()
                yield from _names(node.children)

        return set(_names(self.templates.base().categories))

    def check_health(
        self,
        user_id: str,
        provider: ProviderKind,
        fetcher: RemoteStateFetcher,
        vocabulary: Optional[set[str]] = None,
    ) -> HealthReport:
        """
        Fetch remote state and evaluate it against the user's record.

        Args:
            user_id: Mailbox owner.
            provider: Provider of the mailbox.
            fetcher: Fetcher bound to the same user and provider.
            vocabulary: Classifier vocabulary; derived when omitted.

        Returns:
            HealthReport: Health and coverage summary.

        Raises:
            FatalProvisioningError: If remote state cannot be fetched.
        """
        index = fetcher.fetch()
        expected = self.load_expected(user_id, provider)
        if vocabulary is None:
            vocabulary = self.default_vocabulary(expected)
        report = self.evaluate(expected, index, vocabulary)
        logger.info(
            f"Health for {user_id} ({ProviderKind(provider).value}): "
            f"{report.total_found}/{report.total_expected} present, "
            f"coverage {report.classifier_coverage.coverage_percentage}%"
        )
        return report

    def evaluate(
        self,
        expected: list[ExpectedFolder],
        index: RemoteIndex,
        vocabulary: Iterable[str],
    ) -> HealthReport:
        """
        Evaluate recorded folders against a remote index.

        Args:
            expected: Recorded expected folders.
            index: Remote index.
            vocabulary: Classifier vocabulary.

        Returns:
            HealthReport: Health and coverage summary.
        """
        coverage = self.classifier_coverage(index, vocabulary)
        warnings: list[str] = []

        if coverage.coverage_percentage < self.settings.coverage_warning_threshold:
            warnings.append(
                f"Only {coverage.coverage_percentage}% of folders can be classified; "
                f"unclassifiable: {', '.join(coverage.unclassifiable_folders)}"
            )

        if not expected:
            needs_sync = bool(index.user_containers())
            if needs_sync:
                warnings.append(
                    "No provisioned folders are recorded but the mailbox already has "
                    "folders; a sync is required"
                )
            return HealthReport(
                total_expected=0,
                total_found=0,
                missing_folders=[],
                all_present=False,
                health_percentage=0.0,
                needs_sync=needs_sync,
                classifier_coverage=coverage,
                warnings=warnings,
            )

        found = 0
        missing: list[str] = []
        for folder in expected:
            container = (
                index.by_id(folder.remote_id)
                or index.by_path(folder.path)
                or index.by_name(folder.name)
            )
            if container is None:
                missing.append(folder.path)
            else:
                found += 1

        if missing:
            warnings.append(f"{len(missing)} provisioned folders are missing from the mailbox")

        return HealthReport(
            total_expected=len(expected),
            total_found=found,
            missing_folders=missing,
            all_present=not missing,
            health_percentage=round(found / len(expected) * 100, 2),
            needs_sync=False,
            classifier_coverage=coverage,
            warnings=warnings,
        )

    def classifier_coverage(self, index: RemoteIndex, vocabulary: Iterable[str]) -> ClassifierCoverage:
        """
        Count remote containers the classifier can map to a vocabulary token.

        A container is classifiable when any normalized token is a substring
        of its normalized display name. Provider-owned containers are not
        counted.
        """
        tokens = {normalize_token(token) for token in vocabulary}
        tokens.discard("")
        ignored = set(self.settings.ignored_system_folder_list)

        names = [
            c.display_name
            for c in index.user_containers()
            if c.display_name.lower() not in ignored
        ]
        unclassifiable = [
            name for name in names if not any(token in normalize_token(name) for token in tokens)
        ]
        classifiable = len(names) - len(unclassifiable)
        percentage = round(classifiable / len(names) * 100, 2) if names else 100.0

        return ClassifierCoverage(
            classifiable_folders=classifiable,
            unclassifiable_folders=unclassifiable,
            total_folders=len(names),
            coverage_percentage=percentage,
        )

    def needs_reprovisioning(self, taxonomy: CompiledTaxonomy, index: RemoteIndex) -> bool:
        """
        Decide whether a reconciliation pass is needed.

        Returns False only when at least ``core_presence_threshold`` of the
        core categories exist at the root and every taxonomy path resolves.
        The threshold therefore only changes the answer for core categories
        that the compiled taxonomy does not contain.
        """
        core = self.settings.core_category_list
        if core:
            present = sum(1 for name in core if index.root(name) is not None)
            ratio = present / len(core)
            if ratio < self.settings.core_presence_threshold:
                logger.info(
                    f"Only {present}/{len(core)} core categories present; provisioning required"
                )
                return True

        missing = [path for path in taxonomy.expected_paths() if index.by_path(path) is None]
        if missing:
            logger.info(f"{len(missing)} taxonomy folders missing; provisioning required")
            return True
        return False

    def validate_team_folders(self, index: RemoteIndex, roster: Roster) -> TeamFolderValidation:
        """Report which managers and suppliers have a container anywhere."""
        validation = TeamFolderValidation()
        for member in roster.managers:
            target = validation.found_managers if index.by_name(member.name) else validation.missing_managers
            target.append(member.name)
        for member in roster.suppliers:
            target = validation.found_suppliers if index.by_name(member.name) else validation.missing_suppliers
            target.append(member.name)
        return validation
