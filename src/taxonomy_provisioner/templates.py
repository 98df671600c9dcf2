"""Template Store: per-business-type taxonomy definitions.

Objective:
    Load the static taxonomy templates bundled with the package and expose one
    fully-applied template per business type.

Responsibilities:
    - Parse ``template_data/base.json`` (shared categories and creation order).
    - Parse one extension file per business type and apply its
      ``overrides``, ``additions`` and ``provisioning_order_override``.
    - Parse placeholder tokens (``{{Manager3}}``) once, at load time, into
      typed :class:`~src.taxonomy_provisioner.models.TaxonomyNode` fields.

High-level call tree:
    - :class:`TemplateStore`
        - :meth:`TemplateStore.get` -> :class:`BusinessTemplate`
            - :meth:`TemplateStore.base`
            - :meth:`TemplateStore._apply_extension`
        - :meth:`TemplateStore.shared_category_names`

Operational notes:
    - The store has no runtime state besides a per-instance parse cache.
    - Callers receive deep copies, so mutating a returned template never leaks
      into later calls.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from .models import LabelColor, NodeKind, TaxonomyNode

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "template_data"
BASE_TEMPLATE_FILE = "base.json"

PLACEHOLDER_PATTERN = re.compile(r"^\{\{\s*(Manager|Supplier)\s*(\d+)\s*\}\}$", re.IGNORECASE)

_PLACEHOLDER_KINDS = {
    "manager": NodeKind.MANAGER,
    "supplier": NodeKind.SUPPLIER,
}


class UnknownBusinessTypeError(ValueError):
    """Raised when no template exists for a business type."""

    def __init__(self, business_type: str) -> None:
        super().__init__(f"No template found for business type: {business_type}")
        self.business_type = business_type


class BusinessTemplate(BaseModel):
    """A fully-applied template for one business type.

    Attributes:
        business_type: Canonical business type name.
        categories: Top-level nodes in template order.
        provisioning_order: Declared creation order of top-level names.
    """

    business_type: str
    categories: list[TaxonomyNode] = Field(default_factory=list)
    provisioning_order: list[str] = Field(default_factory=list)


def parse_placeholder(name: str) -> Optional[tuple[NodeKind, int]]:
    """Parse a placeholder token.

    Args:
        name: Raw node name from template data.

    Returns:
        Optional[tuple[NodeKind, int]]: ``(kind, slot)`` or None for a
        literal name.
    """
    match = PLACEHOLDER_PATTERN.match((name or "").strip())
    if not match:
        return None
    return _PLACEHOLDER_KINDS[match.group(1).lower()], int(match.group(2))


def parse_node(raw: dict[str, Any]) -> TaxonomyNode:
    """Parse one raw template node (and its ``sub`` list) recursively."""
    name = str(raw["name"]).strip()
    children = [parse_node(child) for child in raw.get("sub") or []]
    color = raw.get("color")

    fields: dict[str, Any] = {
        "name": name,
        "color": LabelColor.model_validate(color) if color else None,
        "intent": raw.get("intent"),
        "description": raw.get("description"),
        "critical": bool(raw.get("critical", False)),
        "children": children,
    }

    placeholder = parse_placeholder(name)
    if placeholder:
        kind, slot = placeholder
        fields.update(dynamic=True, kind=kind, slot=slot)

    return TaxonomyNode(**fields)


class TemplateStore:
    """
    Read-only access to bundled business-type templates.

    Attributes:
        template_dir: Directory holding ``base.json`` and extension files.
    """

    def __init__(self, template_dir: Optional[Path] = None) -> None:
        """
        Initialize the template store.

        Args:
            template_dir: Alternative template directory (tests).
        """
        self.template_dir = Path(template_dir) if template_dir else TEMPLATE_DIR
        self._base: Optional[BusinessTemplate] = None
        self._extensions: Optional[dict[str, dict[str, Any]]] = None
        self._cache: dict[str, BusinessTemplate] = {}

    def _read_json(self, path: Path) -> dict[str, Any]:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def base(self) -> BusinessTemplate:
        """Return the shared base template."""
        if self._base is None:
            raw = self._read_json(self.template_dir / BASE_TEMPLATE_FILE)
            self._base = BusinessTemplate(
                business_type=raw.get("business_type", "base"),
                categories=[parse_node(item) for item in raw.get("categories", [])],
                provisioning_order=list(raw.get("provisioning_order", [])),
            )
        return self._base.model_copy(deep=True)

    def _load_extensions(self) -> dict[str, dict[str, Any]]:
        """Load every extension file, keyed by lower-cased name and alias."""
        if self._extensions is None:
            extensions: dict[str, dict[str, Any]] = {}
            for path in sorted(self.template_dir.glob("*.json")):
                if path.name == BASE_TEMPLATE_FILE:
                    continue
                raw = self._read_json(path)
                names = [raw["business_type"], *(raw.get("aliases") or [])]
                for name in names:
                    extensions[name.strip().lower()] = raw
            self._extensions = extensions
            logger.debug(f"Loaded {len(set(map(id, extensions.values())))} template extensions")
        return self._extensions

    def business_types(self) -> list[str]:
        """Return the canonical name of every available business type."""
        seen: list[str] = []
        for raw in self._load_extensions().values():
            if raw["business_type"] not in seen:
                seen.append(raw["business_type"])
        return seen

    def canonical_name(self, business_type: str) -> str:
        """Resolve an alias or differently-cased name to its canonical form.

        Raises:
            UnknownBusinessTypeError: If no extension matches.
        """
        raw = self._load_extensions().get((business_type or "").strip().lower())
        if raw is None:
            raise UnknownBusinessTypeError(business_type)
        return raw["business_type"]

    def shared_category_names(self) -> list[str]:
        """Return the names of the standard categories every template shares."""
        return [node.name for node in self.base().categories]

    def get(self, business_type: str) -> BusinessTemplate:
        """
        Return the template for a business type with its extension applied.

        Args:
            business_type: Business type name or alias (case-insensitive).

        Returns:
            BusinessTemplate: A deep copy safe to mutate.

        Raises:
            UnknownBusinessTypeError: If no extension matches.
        """
        canonical = self.canonical_name(business_type)
        if canonical not in self._cache:
            raw = self._load_extensions()[canonical.lower()]
            self._cache[canonical] = self._apply_extension(self.base(), raw)
        return self._cache[canonical].model_copy(deep=True)

    def _apply_extension(self, base: BusinessTemplate, raw: dict[str, Any]) -> BusinessTemplate:
        """Apply overrides, additions and order changes to a base copy."""
        categories = list(base.categories)
        order = list(base.provisioning_order)

        for name, override in (raw.get("overrides") or {}).items():
            index = next(
                (i for i, node in enumerate(categories) if node.name.lower() == name.lower()),
                None,
            )
            if index is None:
                logger.warning(f"Override for unknown category ignored: {name}")
                continue
            update: dict[str, Any] = {}
            if "sub" in override:
                update["children"] = [parse_node(child) for child in override["sub"] or []]
            if override.get("color"):
                update["color"] = LabelColor.model_validate(override["color"])
            for field in ("intent", "description", "critical"):
                if field in override:
                    update[field] = override[field]
            categories[index] = categories[index].model_copy(update=update)

        anchor = raw.get("insert_before")
        existing = {node.name.lower() for node in categories}
        for item in raw.get("additions") or []:
            node = parse_node(item)
            if node.name.lower() in existing:
                logger.warning(f"Addition duplicates an existing category: {node.name}")
                continue
            categories.append(node)
            existing.add(node.name.lower())
            if node.name in order:
                continue
            if anchor and anchor in order:
                order.insert(order.index(anchor), node.name)
            else:
                order.append(node.name)

        if raw.get("provisioning_order_override"):
            order = list(raw["provisioning_order_override"])

        return BusinessTemplate(
            business_type=raw["business_type"],
            categories=categories,
            provisioning_order=order,
        )
