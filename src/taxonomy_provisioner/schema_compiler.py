"""Schema compilation: templates + roster -> one taxonomy.

Objective:
    Turn a list of business types and the live team roster into a single
    :class:`~src.taxonomy_provisioner.models.CompiledTaxonomy` that the
    reconciler can provision.

Responsibilities:
    - Merge several business-type templates (shared categories merged by
      name, industry categories unioned without merging).
    - Compute the root creation order.
    - Resolve ``{{Manager<N>}}`` / ``{{Supplier<N>}}`` placeholders against the
      roster and drop unresolved slots.
    - Synthesize top-level team nodes for roster members without a slot.
    - Validate the result (unique sibling names, no placeholder tokens).

High-level call tree:
    - :class:`SchemaCompiler`
        - :meth:`SchemaCompiler.compile`
            - :meth:`TemplateStore.get`
            - :func:`merge_templates`
                - :func:`merge_nodes`
            - :func:`resolve_placeholders`
            - :meth:`SchemaCompiler._add_team_nodes`
            - :func:`validate_compiled_taxonomy`

Operational notes:
    - Compilation is pure: the same inputs always produce the same taxonomy.
    - Merging ``[A, B]`` and ``[B, A]`` yields the same name sets; only the
      root order of industry categories may differ.
"""

import logging
from typing import Iterable, Optional

from .config import DEFAULT_BUSINESS_TYPE
from .models import CompiledTaxonomy, NodeKind, Roster, TaxonomyNode
from .templates import PLACEHOLDER_PATTERN, BusinessTemplate, TemplateStore

logger = logging.getLogger(__name__)

# Category whose color team nodes inherit
TEAM_PARENT_CATEGORY = {
    NodeKind.MANAGER: "MANAGER",
    NodeKind.SUPPLIER: "SUPPLIERS",
}


class CompilationError(ValueError):
    """Raised when a compiled taxonomy violates its structural guarantees."""

    def __init__(self, issues: list[str]) -> None:
        super().__init__("Invalid compiled taxonomy: " + "; ".join(issues))
        self.issues = issues


def _base_names(nodes: Iterable[TaxonomyNode]) -> dict[str, str]:
    """Map every lower-cased base template name to its base casing."""
    names: dict[str, str] = {}
    stack = list(nodes)
    while stack:
        node = stack.pop()
        names.setdefault(node.name.lower(), node.name)
        stack.extend(node.children)
    return names


def _pick_name(first: str, second: str, base_names: dict[str, str]) -> str:
    """Choose the display casing for two same-named nodes, independent of order."""
    return base_names.get(first.lower()) or min(first, second)


def merge_nodes(
    primary: TaxonomyNode,
    other: TaxonomyNode,
    base_names: Optional[dict[str, str]] = None,
) -> TaxonomyNode:
    """
    Merge two same-named nodes.

    Children are unioned by name (case-insensitive) and the children of
    matching names are merged recursively. Metadata and child order of
    ``primary`` are kept. When the casing of a name differs, the base
    template's casing wins, otherwise the lexicographically smallest one.

    Args:
        primary: Node seen first.
        other: Node seen later.
        base_names: Lower-cased name -> base template casing.

    Returns:
        TaxonomyNode: A new merged node.
    """
    base_names = base_names or {}
    children = [child.model_copy(deep=True) for child in primary.children]
    positions = {child.name.lower(): i for i, child in enumerate(children)}

    for child in other.children:
        key = child.name.lower()
        if key in positions:
            children[positions[key]] = merge_nodes(children[positions[key]], child, base_names)
        else:
            positions[key] = len(children)
            children.append(child.model_copy(deep=True))

    name = _pick_name(primary.name, other.name, base_names)
    return primary.model_copy(update={"name": name, "children": children})


def merge_templates(
    templates: list[BusinessTemplate],
    shared_names: Iterable[str],
    base_order: list[str],
    base_categories: Optional[list[TaxonomyNode]] = None,
) -> tuple[list[TaxonomyNode], list[str]]:
    """
    Merge several business templates into one category forest.

    Args:
        templates: Applied templates in the caller's order.
        shared_names: Names of the standard categories (merged by name).
        base_order: The base template's declared creation order.
        base_categories: Base template nodes whose casing wins on conflicts.

    Returns:
        tuple[list[TaxonomyNode], list[str]]: Merged categories and root order.
    """
    shared = {name.lower() for name in shared_names}
    base_names = _base_names(base_categories or [])
    merged: list[TaxonomyNode] = []
    positions: dict[str, int] = {}

    for template in templates:
        for node in template.categories:
            key = node.name.lower()
            if key not in positions:
                positions[key] = len(merged)
                merged.append(node.model_copy(deep=True))
            elif key in shared:
                merged[positions[key]] = merge_nodes(merged[positions[key]], node, base_names)
            else:
                logger.debug(
                    f"Industry category {node.name} already provided by an earlier template"
                )

    order = [name for name in base_order if name.lower() in positions]
    seen = {name.lower() for name in order}
    for template in templates:
        candidates = [*template.provisioning_order, *(n.name for n in template.categories)]
        for name in candidates:
            key = name.lower()
            if key in shared or key in seen or key not in positions:
                continue
            order.append(merged[positions[key]].name)
            seen.add(key)

    return merged, order


def resolve_placeholders(nodes: list[TaxonomyNode], roster: Roster) -> list[TaxonomyNode]:
    """
    Substitute placeholder nodes with roster names, at every depth.

    A placeholder whose slot has no roster member is dropped entirely.
    Siblings that collide after substitution keep the first occurrence.

    Args:
        nodes: Sibling nodes possibly containing placeholders.
        roster: Team roster.

    Returns:
        list[TaxonomyNode]: Resolved siblings (new objects).
    """
    resolved: list[TaxonomyNode] = []
    seen: set[str] = set()

    for node in nodes:
        if node.is_placeholder:
            members = roster.members(node.kind)
            if node.slot > len(members):
                logger.debug(f"Dropping unresolved placeholder {node.name}")
                continue
            node = node.model_copy(update={"name": members[node.slot - 1].name, "slot": None})

        key = node.name.lower()
        if key in seen:
            logger.debug(f"Skipping duplicate sibling after resolution: {node.name}")
            continue
        seen.add(key)
        resolved.append(
            node.model_copy(update={"children": resolve_placeholders(node.children, roster)})
        )

    return resolved


def collect_slots(nodes: Iterable[TaxonomyNode]) -> dict[NodeKind, set[int]]:
    """Collect placeholder slot numbers per kind, at every depth."""
    slots: dict[NodeKind, set[int]] = {NodeKind.MANAGER: set(), NodeKind.SUPPLIER: set()}
    stack = list(nodes)
    while stack:
        node = stack.pop()
        if node.is_placeholder:
            slots[node.kind].add(node.slot)
        stack.extend(node.children)
    return slots


def validate_compiled_taxonomy(categories: list[TaxonomyNode]) -> list[str]:
    """
    Check the structural guarantees of a compiled forest.

    Args:
        categories: Top-level nodes.

    Returns:
        list[str]: Human-readable issues (empty when valid).
    """
    issues: list[str] = []

    def _check(nodes: list[TaxonomyNode], parent: str) -> None:
        seen: set[str] = set()
        for node in nodes:
            label = f"{parent}/{node.name}" if parent else node.name
            key = node.name.lower()
            if key in seen:
                issues.append(f"duplicate name {label}")
            seen.add(key)
            if node.is_placeholder or PLACEHOLDER_PATTERN.match(node.name) or "{{" in node.name:
                issues.append(f"unresolved placeholder {label}")
            if not node.name.strip():
                issues.append(f"empty name under {parent or 'root'}")
            _check(node.children, label)

    _check(categories, "")
    return issues


class SchemaCompiler:
    """
    Compiles business-type templates and a roster into a taxonomy.

    Attributes:
        store: Template store.
        team_folders_for_all_members: When True, every roster member gets a
            top-level node, not just members without a placeholder slot.
        default_business_type: Used when no business type is given.
    """

    def __init__(
        self,
        store: Optional[TemplateStore] = None,
        team_folders_for_all_members: bool = False,
        default_business_type: str = DEFAULT_BUSINESS_TYPE,
    ) -> None:
        self.store = store or TemplateStore()
        self.team_folders_for_all_members = team_folders_for_all_members
        self.default_business_type = default_business_type

    def compile(
        self, business_types: list[str], roster: Optional[Roster] = None
    ) -> CompiledTaxonomy:
        """
        Compile one taxonomy for a user.

        Args:
            business_types: Ordered business type names or aliases.
            roster: Team roster (empty when omitted).

        Returns:
            CompiledTaxonomy: Merged, resolved and validated taxonomy.

        Raises:
            UnknownBusinessTypeError: If a business type has no template.
            CompilationError: If the result violates structural guarantees.
        """
        roster = roster or Roster()
        canonical: list[str] = []
        for business_type in business_types or [self.default_business_type]:
            name = self.store.canonical_name(business_type)
            if name not in canonical:
                canonical.append(name)

        templates = [self.store.get(name) for name in canonical]
        if len(templates) == 1:
            categories = templates[0].categories
            order = list(templates[0].provisioning_order)
        else:
            base = self.store.base()
            categories, order = merge_templates(
                templates,
                [node.name for node in base.categories],
                base.provisioning_order,
                base.categories,
            )

        slots = collect_slots(categories)
        categories = resolve_placeholders(categories, roster)
        categories = self._add_team_nodes(categories, roster, slots)

        issues = validate_compiled_taxonomy(categories)
        if issues:
            raise CompilationError(issues)

        taxonomy = CompiledTaxonomy(
            categories=categories, root_order=order, business_types=canonical
        )
        logger.info(
            f"Compiled taxonomy for {', '.join(canonical)}: "
            f"{len(categories)} categories, {taxonomy.node_count()} nodes"
        )
        return taxonomy

    def _add_team_nodes(
        self,
        categories: list[TaxonomyNode],
        roster: Roster,
        slots: dict[NodeKind, set[int]],
    ) -> list[TaxonomyNode]:
        """Append one top-level node per roster member lacking a slot."""
        result = list(categories)
        top_level = {node.name.lower() for node in result}

        for kind, parent_name in TEAM_PARENT_CATEGORY.items():
            parent = next((n for n in result if n.name.lower() == parent_name.lower()), None)
            color = parent.color if parent else None
            for position, member in enumerate(roster.members(kind), start=1):
                if not self.team_folders_for_all_members and position in slots[kind]:
                    continue
                key = member.name.lower()
                if key in top_level:
                    logger.warning(
                        f"Team folder for {member.name} collides with an existing top-level name"
                    )
                    continue
                top_level.add(key)
                result.append(
                    TaxonomyNode(
                        name=member.name,
                        color=color,
                        intent=parent.intent if parent else None,
                        dynamic=True,
                        kind=kind,
                    )
                )

        return result


def compile_taxonomy(
    business_types: list[str],
    roster: Optional[Roster] = None,
    store: Optional[TemplateStore] = None,
) -> CompiledTaxonomy:
    """Convenience wrapper around :meth:`SchemaCompiler.compile`."""
    return SchemaCompiler(store=store).compile(business_types, roster)
