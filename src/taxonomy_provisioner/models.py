"""Pydantic data models used across the application.

Objective:
    Centralize all strongly-typed data structures representing:
    - Taxonomy nodes (template source and compiled form)
    - Team roster input used to resolve placeholders
    - Remote containers (labels or folders) as they exist in a mailbox
    - Reconciliation results and health reports

Design notes:
    - Remote-facing models use Pydantic aliases for the camelCase keys used in
      persisted records and API payloads (e.g. ``remoteId`` ->
      :attr:`RemoteContainer.remote_id`).
    - ``model_config = ConfigDict(populate_by_name=True)`` is used to allow
      constructing models with either alias names or pythonic field names.
    - :class:`RemoteIndex` is a plain class rather than a model: it is a
      per-run lookup structure, never serialized.

High-level structure:
    - Taxonomy primitives:
        - :class:`LabelColor`
        - :class:`TaxonomyNode`
        - :class:`CompiledTaxonomy`
    - Roster primitives:
        - :class:`RosterMember`
        - :class:`Roster`
    - Remote state primitives:
        - :class:`RemoteContainer`
        - :class:`RemoteIndex`
    - Results:
        - :class:`ProvisionedEntry` / :class:`ProvisioningErrorEntry`
        - :class:`ProvisioningResult`
        - :class:`ExpectedFolder`
        - :class:`ClassifierCoverage` / :class:`HealthReport`
        - :class:`TeamFolderValidation`

Call tree usage:
    - :mod:`src.taxonomy_provisioner.templates` parses JSON into :class:`TaxonomyNode`
    - :mod:`src.taxonomy_provisioner.schema_compiler` returns :class:`CompiledTaxonomy`
    - provider adapters return :class:`RemoteContainer` lists
    - :class:`src.taxonomy_provisioner.reconciler.Reconciler` returns
      :class:`ProvisioningResult`
    - :class:`src.taxonomy_provisioner.health.HealthValidator` returns
      :class:`HealthReport`
"""

from enum import Enum
from typing import Iterable, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeKind(str, Enum):
    """Origin of a taxonomy node."""

    STATIC = "static"
    MANAGER = "manager"
    SUPPLIER = "supplier"


class ContainerLevel(str, Enum):
    """Nesting level of a container inside the taxonomy."""

    CATEGORY = "category"
    SUBCATEGORY = "subcategory"
    NESTED = "nested"

    @classmethod
    def for_depth(cls, depth: int) -> "ContainerLevel":
        """Map a zero-based tree depth to a level."""
        if depth <= 0:
            return cls.CATEGORY
        if depth == 1:
            return cls.SUBCATEGORY
        return cls.NESTED


class LabelColor(BaseModel):
    """Label color pair.

    Mirrors the flat-namespace provider structure:
    ``{"backgroundColor": "#16a766", "textColor": "#ffffff"}``.
    """

    background_color: str = Field(alias="backgroundColor")
    text_color: str = Field(default="#ffffff", alias="textColor")

    model_config = ConfigDict(populate_by_name=True)

    def as_payload(self) -> dict[str, str]:
        """Return the provider payload representation."""
        return {"backgroundColor": self.background_color, "textColor": self.text_color}


class TaxonomyNode(BaseModel):
    """
    One node of a mailbox taxonomy.

    The same model is used for Template Store source data and for compiled
    output. In source data a placeholder node (``{{Manager2}}``) carries
    ``dynamic=True``, its ``kind`` and the 1-based ``slot``; in compiled
    output ``slot`` is always None and the name is a real display name.

    Attributes:
        name: Display name of the container.
        color: Optional label color (ignored by hierarchical providers).
        intent: Classifier intent identifier.
        description: Human-readable description.
        critical: Whether the category is business-critical.
        dynamic: Whether the node comes from roster data.
        kind: Origin of the node.
        slot: Placeholder slot number (source data only).
        children: Child nodes (source JSON key ``sub``).
    """

    name: str
    color: Optional[LabelColor] = None
    intent: Optional[str] = None
    description: Optional[str] = None
    critical: bool = False
    dynamic: bool = False
    kind: NodeKind = NodeKind.STATIC
    slot: Optional[int] = None
    children: list["TaxonomyNode"] = Field(default_factory=list, alias="sub")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_placeholder(self) -> bool:
        """Return True for an unresolved roster placeholder."""
        return self.slot is not None

    @property
    def nested_children(self) -> dict[str, list["TaxonomyNode"]]:
        """Map each child name to its own children (third level).

        Returns:
            dict[str, list[TaxonomyNode]]: Only children that have children.
        """
        return {child.name: child.children for child in self.children if child.children}

    def find_child(self, name: str) -> Optional["TaxonomyNode"]:
        """Find a direct child by name (case-insensitive)."""
        lowered = name.lower()
        for child in self.children:
            if child.name.lower() == lowered:
                return child
        return None


class CompiledTaxonomy(BaseModel):
    """
    Merged, placeholder-resolved taxonomy for one user.

    Immutable once built. ``root_order`` lists top-level names in creation
    order; categories missing from it are appended in template order by
    :meth:`ordered_categories`.
    """

    categories: list[TaxonomyNode] = Field(default_factory=list)
    root_order: list[str] = Field(default_factory=list)
    business_types: list[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def category(self, name: str) -> Optional[TaxonomyNode]:
        """Return a top-level node by name (case-insensitive)."""
        lowered = name.lower()
        for node in self.categories:
            if node.name.lower() == lowered:
                return node
        return None

    def ordered_categories(self) -> list[TaxonomyNode]:
        """Return top-level nodes in creation order."""
        by_name = {node.name: node for node in self.categories}
        ordered: list[TaxonomyNode] = []
        seen: set[str] = set()
        for name in self.root_order:
            node = by_name.get(name)
            if node is not None and name not in seen:
                ordered.append(node)
                seen.add(name)
        for node in self.categories:
            if node.name not in seen:
                ordered.append(node)
                seen.add(node.name)
        return ordered

    def iter_paths(self) -> Iterator[tuple[tuple[str, ...], TaxonomyNode]]:
        """Yield ``(path_parts, node)`` depth-first in creation order."""

        def _walk(prefix: tuple[str, ...], nodes: Iterable[TaxonomyNode]):
            for node in nodes:
                path = prefix + (node.name,)
                yield path, node
                yield from _walk(path, node.children)

        yield from _walk((), self.ordered_categories())

    def expected_paths(self) -> list[str]:
        """Return every node as a ``/``-joined path."""
        return ["/".join(parts) for parts, _ in self.iter_paths()]

    def vocabulary(self) -> set[str]:
        """Return every category/subcategory/nested name, lower-cased."""
        return {node.name.lower() for _, node in self.iter_paths()}

    def node_count(self) -> int:
        """Return the total number of nodes."""
        return sum(1 for _ in self.iter_paths())


class RosterMember(BaseModel):
    """A named team member (manager or supplier)."""

    name: str
    email: Optional[str] = None


class Roster(BaseModel):
    """
    Live team roster used for placeholder resolution.

    Blank names are dropped and names are trimmed on construction, so slot
    indexing (``{{Manager2}}`` -> ``managers[1]``) only counts real members.
    """

    managers: list[RosterMember] = Field(default_factory=list)
    suppliers: list[RosterMember] = Field(default_factory=list)

    @field_validator("managers", "suppliers", mode="before")
    @classmethod
    def _normalize_members(cls, value):
        members = []
        for item in value or []:
            if isinstance(item, str):
                item = {"name": item}
            elif isinstance(item, RosterMember):
                item = item.model_dump()
            name = (item.get("name") or "").strip()
            if not name:
                continue
            members.append({**item, "name": name})
        return members

    @classmethod
    def from_names(
        cls, managers: Optional[list[str]] = None, suppliers: Optional[list[str]] = None
    ) -> "Roster":
        """Build a roster from plain name lists."""
        return cls(managers=list(managers or []), suppliers=list(suppliers or []))

    def members(self, kind: NodeKind) -> list[RosterMember]:
        """Return the members for a dynamic node kind."""
        if kind == NodeKind.MANAGER:
            return self.managers
        if kind == NodeKind.SUPPLIER:
            return self.suppliers
        return []

    @property
    def is_empty(self) -> bool:
        return not self.managers and not self.suppliers


class RemoteContainer(BaseModel):
    """
    Provider-neutral view of a label or folder as it exists remotely.

    Attributes:
        remote_id: Provider-assigned ID.
        display_name: Leaf name of the container.
        parent_remote_id: Parent container ID, if nested.
        full_path: ``/``-joined path from the root.
        is_system: Provider-owned container (Inbox, SENT, ...).
    """

    remote_id: str = Field(alias="remoteId")
    display_name: str = Field(alias="displayName")
    parent_remote_id: Optional[str] = Field(default=None, alias="parentRemoteId")
    full_path: str = Field(default="", alias="fullPath")
    is_system: bool = Field(default=False, alias="isSystem")

    model_config = ConfigDict(populate_by_name=True)


class RemoteIndex:
    """
    Lookup structure over the remote containers of one mailbox.

    Names are not globally unique (a child can share a name with a root
    container), so lookups come in three flavours:
    - ``_by_name`` stores *one* container per lowercased display name.
    - ``_by_path`` stores containers by lowercased full path.
    - ``_children`` stores containers keyed by
      ``(parent_remote_id, lowercased_display_name)``.

    Attributes:
        containers: All containers in insertion order.
    """

    def __init__(self, containers: Optional[Iterable[RemoteContainer]] = None) -> None:
        self._reset(containers or [])

    def _reset(self, containers: Iterable[RemoteContainer]) -> None:
        self.containers: list[RemoteContainer] = []
        self._by_id: dict[str, RemoteContainer] = {}
        self._by_name: dict[str, RemoteContainer] = {}
        self._by_path: dict[str, RemoteContainer] = {}
        self._roots: dict[str, RemoteContainer] = {}
        self._children: dict[tuple[str, str], RemoteContainer] = {}
        for container in containers:
            self.add(container)

    def __len__(self) -> int:
        return len(self.containers)

    def __iter__(self) -> Iterator[RemoteContainer]:
        return iter(self.containers)

    def add(self, container: RemoteContainer) -> None:
        """Add or replace a container in every lookup table."""
        if container.remote_id in self._by_id:
            remaining = [c for c in self.containers if c.remote_id != container.remote_id]
            self._reset(remaining)
        self.containers.append(container)
        self._by_id[container.remote_id] = container

        name_key = container.display_name.lower()
        is_root = self.is_root(container)
        # Prefer a top-level container when names collide.
        if name_key not in self._by_name or is_root:
            self._by_name[name_key] = container

        if container.full_path:
            self._by_path.setdefault(container.full_path.lower(), container)

        if container.parent_remote_id:
            self._children[(container.parent_remote_id, name_key)] = container
        elif is_root:
            self._roots.setdefault(name_key, container)

    @staticmethod
    def is_root(container: RemoteContainer) -> bool:
        """Return True for a top-level container.

        A flat-namespace label such as ``Archive/BANKING`` whose parent label
        does not exist has no parent ID but is still nested.
        """
        if container.parent_remote_id:
            return False
        path = container.full_path or container.display_name
        return path.strip().lower() == container.display_name.strip().lower()

    def by_id(self, remote_id: Optional[str]) -> Optional[RemoteContainer]:
        if not remote_id:
            return None
        return self._by_id.get(remote_id)

    def by_name(self, name: str) -> Optional[RemoteContainer]:
        """Best-effort lookup by bare display name."""
        return self._by_name.get((name or "").strip().lower())

    def by_path(self, path: str) -> Optional[RemoteContainer]:
        return self._by_path.get((path or "").strip().lower())

    def root(self, name: str) -> Optional[RemoteContainer]:
        """Lookup a top-level container by display name."""
        return self._roots.get((name or "").strip().lower())

    def child(self, parent_remote_id: str, name: str) -> Optional[RemoteContainer]:
        """Lookup a container by name, scoped to its parent."""
        return self._children.get((parent_remote_id, (name or "").strip().lower()))

    def user_containers(self) -> list[RemoteContainer]:
        """Return every container that is not provider-owned."""
        return [c for c in self.containers if not c.is_system]


class ProvisionedEntry(BaseModel):
    """A node that exists remotely after reconciliation."""

    name: str
    path: str
    remote_id: str = Field(alias="remoteId")
    kind: ContainerLevel
    parent_remote_id: Optional[str] = Field(default=None, alias="parentRemoteId")

    model_config = ConfigDict(populate_by_name=True)


class ProvisioningErrorEntry(BaseModel):
    """A node that could not be resolved or created."""

    name: str
    path: str
    error: str
    kind: str
    level: ContainerLevel
    skipped_children: int = Field(default=0, alias="skippedChildren")

    model_config = ConfigDict(populate_by_name=True)


class ProvisioningResult(BaseModel):
    """
    Outcome of one reconciliation run.

    The run counts as successful when every category-level node resolved;
    failures below that level are itemized in :attr:`errors`.
    """

    created: list[ProvisionedEntry] = Field(default_factory=list)
    matched: list[ProvisionedEntry] = Field(default_factory=list)
    errors: list[ProvisioningErrorEntry] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def success(self) -> bool:
        return not any(error.level == ContainerLevel.CATEGORY for error in self.errors)

    def entries(self) -> list[ProvisionedEntry]:
        """Return created and matched entries in run order."""
        return [*self.created, *self.matched]

    def summary(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "matched": len(self.matched),
            "errors": len(self.errors),
        }


class ExpectedFolder(BaseModel):
    """A recorded container the user's mailbox is expected to contain."""

    path: str
    remote_id: Optional[str] = Field(default=None, alias="remoteId")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


class ClassifierCoverage(BaseModel):
    """How many remote containers the downstream classifier can map."""

    classifiable_folders: int = Field(default=0, alias="classifiableFolders")
    unclassifiable_folders: list[str] = Field(default_factory=list, alias="unclassifiableFolders")
    total_folders: int = Field(default=0, alias="totalFolders")
    coverage_percentage: float = Field(default=100.0, alias="coveragePercentage")

    model_config = ConfigDict(populate_by_name=True)


class HealthReport(BaseModel):
    """
    Health and drift summary of a mailbox against its recorded taxonomy.

    Recomputed on demand; never mutates provisioning state.
    """

    total_expected: int = Field(default=0, alias="totalExpected")
    total_found: int = Field(default=0, alias="totalFound")
    missing_folders: list[str] = Field(default_factory=list, alias="missingFolders")
    all_present: bool = Field(default=False, alias="allPresent")
    health_percentage: float = Field(default=0.0, alias="healthPercentage")
    needs_sync: bool = Field(default=False, alias="needsSync")
    classifier_coverage: ClassifierCoverage = Field(
        default_factory=ClassifierCoverage, alias="classifierCoverage"
    )
    warnings: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class TeamFolderValidation(BaseModel):
    """Which roster members have a container in the mailbox."""

    found_managers: list[str] = Field(default_factory=list, alias="foundManagers")
    missing_managers: list[str] = Field(default_factory=list, alias="missingManagers")
    found_suppliers: list[str] = Field(default_factory=list, alias="foundSuppliers")
    missing_suppliers: list[str] = Field(default_factory=list, alias="missingSuppliers")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def all_present(self) -> bool:
        return not self.missing_managers and not self.missing_suppliers
