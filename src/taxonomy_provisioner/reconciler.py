"""Reconciler: drive a mailbox toward its compiled taxonomy.

Objective:
    Diff a :class:`~src.taxonomy_provisioner.models.CompiledTaxonomy` against
    a fetched :class:`~src.taxonomy_provisioner.models.RemoteIndex` and create
    whatever is missing, parent before child, one call at a time.

Per-node state machine:
    1. Resolve against the index, trying in turn:
       - the remote ID recorded by an earlier run,
       - the display name at the expected nesting level (scoped to the
         parent),
       - the full path (hierarchical providers only).
    2. If unresolved, create it through the retry executor.
       - Success: add to the index, record as ``created``.
       - Duplicate: re-fetch, re-resolve, record as ``matched``.
       - Failure: record one error carrying the number of descendants that
         are skipped, and do not descend.
    3. Recurse into children with the resolved container as parent.

High-level call tree:
    - :meth:`Reconciler.run`
        - :meth:`Reconciler._reconcile_node` (recursive)
            - :meth:`Reconciler._resolve`
            - :meth:`Reconciler._create`
                - :meth:`RetryingExecutor.run` -> :meth:`ProviderAdapter.create`
                - :meth:`Reconciler._resolve_duplicate`
                    - :meth:`RemoteStateFetcher.fetch`

Operational notes:
    - Processing is strictly sequential in root order; sibling subtrees share
      one provider session and its rate-limit budget.
    - Fatal errors (forbidden, fetch incomplete, reconnect required) abort
      the run; every other failure is itemized and reconciliation continues.
    - Running twice against the same taxonomy and remote state creates
      nothing on the second run.
"""

import logging
from typing import Optional

import requests

from .adapters import DuplicateSignal, ProviderAdapter
from .errors import ErrorKind, ProviderError, classify_error
from .fetcher import RemoteStateFetcher
from .models import (
    CompiledTaxonomy,
    ContainerLevel,
    ProvisionedEntry,
    ProvisioningErrorEntry,
    ProvisioningResult,
    RemoteContainer,
    RemoteIndex,
    TaxonomyNode,
)
from .retry import RetryingExecutor

logger = logging.getLogger(__name__)


def count_descendants(node: TaxonomyNode) -> int:
    """Return the number of nodes below ``node``."""
    return sum(1 + count_descendants(child) for child in node.children)


class Reconciler:
    """
    Creates missing taxonomy nodes in dependency order.

    Attributes:
        adapter: Provider adapter.
        executor: Retry executor for the mailbox owner.
        fetcher: Fetcher used to re-resolve duplicates.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        executor: RetryingExecutor,
        fetcher: Optional[RemoteStateFetcher] = None,
    ) -> None:
        self.adapter = adapter
        self.executor = executor
        self.fetcher = fetcher or RemoteStateFetcher(adapter, executor)

    def run(
        self,
        taxonomy: CompiledTaxonomy,
        index: RemoteIndex,
        recorded_ids: Optional[dict[str, str]] = None,
    ) -> ProvisioningResult:
        """
        Reconcile one taxonomy against one remote index.

        The index is updated in place with every created or re-resolved
        container.

        Args:
            taxonomy: Desired state.
            index: Current remote state.
            recorded_ids: Remote IDs recorded by earlier runs, keyed by path.

        Returns:
            ProvisioningResult: Created, matched and failed nodes.

        Raises:
            FatalProvisioningError: On forbidden, fetch-incomplete or
                reconnect-required conditions.
        """
        recorded = {path.lower(): rid for path, rid in (recorded_ids or {}).items() if rid}
        result = ProvisioningResult()

        for category in taxonomy.ordered_categories():
            self._reconcile_node(category, None, (), 0, index, recorded, result)

        logger.info(
            f"Reconciliation finished: {len(result.created)} created, "
            f"{len(result.matched)} matched, {len(result.errors)} errors"
        )
        return result

    def _reconcile_node(
        self,
        node: TaxonomyNode,
        parent: Optional[RemoteContainer],
        prefix: tuple[str, ...],
        depth: int,
        index: RemoteIndex,
        recorded: dict[str, str],
        result: ProvisioningResult,
    ) -> None:
        parts = prefix + (node.name,)
        path = "/".join(parts)
        level = ContainerLevel.for_depth(depth)

        container = self._resolve(node.name, path, parent, index, recorded)
        if container is not None:
            logger.debug(f"Matched {path} -> {container.remote_id}")
            result.matched.append(self._entry(node.name, path, level, container))
        else:
            container = self._create(node, path, level, parent, index, result)

        if container is None:
            return

        for child in node.children:
            self._reconcile_node(child, container, parts, depth + 1, index, recorded, result)

    def _resolve(
        self,
        name: str,
        path: str,
        parent: Optional[RemoteContainer],
        index: RemoteIndex,
        recorded: dict[str, str],
    ) -> Optional[RemoteContainer]:
        """Look a node up by recorded ID, level-scoped name, then path."""
        container = index.by_id(recorded.get(path.lower()))
        if container is not None:
            return container

        if parent is None:
            container = index.root(name)
        else:
            container = index.child(parent.remote_id, name)
        if container is not None:
            return container

        if self.adapter.hierarchical:
            return index.by_path(path)
        return None

    def _create(
        self,
        node: TaxonomyNode,
        path: str,
        level: ContainerLevel,
        parent: Optional[RemoteContainer],
        index: RemoteIndex,
        result: ProvisioningResult,
    ) -> Optional[RemoteContainer]:
        """Create one node; returns None (after recording an error) on failure."""
        parent_id = parent.remote_id if parent else None
        logger.debug(f"Creating {level.value} {path}")

        try:
            outcome = self.executor.run(
                lambda credential: self.adapter.create(credential, node.name, parent_id, node.color),
                fallback=lambda credential: self.adapter.create(
                    credential, node.name, parent_id, None, minimal=True
                ),
                description=f"create {path}",
            )
        except (ProviderError, requests.RequestException) as exc:
            kind = classify_error(exc)
            if kind == ErrorKind.DUPLICATE:
                outcome = DuplicateSignal(name=node.name, full_path=path, parent_remote_id=parent_id)
            else:
                self._record_error(node, path, level, str(exc), kind, result)
                return None

        if isinstance(outcome, DuplicateSignal):
            return self._resolve_duplicate(node, path, level, parent, outcome, index, result)

        container = self._with_path(outcome, index)
        index.add(container)
        if parent_id and container.parent_remote_id != parent_id:
            logger.warning(f"{path} was created at the root because its parent vanished")
        result.created.append(self._entry(node.name, path, level, container))
        return container

    def _resolve_duplicate(
        self,
        node: TaxonomyNode,
        path: str,
        level: ContainerLevel,
        parent: Optional[RemoteContainer],
        signal: DuplicateSignal,
        index: RemoteIndex,
        result: ProvisioningResult,
    ) -> Optional[RemoteContainer]:
        """Re-fetch remote state and resolve the ID of an existing container."""
        logger.info(f"{path} already exists remotely; re-resolving its ID")
        for container in self.fetcher.fetch():
            index.add(container)

        container = self._resolve(node.name, path, parent, index, {})
        if container is None:
            container = index.by_path(signal.full_path)
        if container is None:
            self._record_error(
                node,
                path,
                level,
                "Provider reported a duplicate but the existing container was not found",
                ErrorKind.DUPLICATE,
                result,
            )
            return None

        result.matched.append(self._entry(node.name, path, level, container))
        return container

    def _with_path(self, container: RemoteContainer, index: RemoteIndex) -> RemoteContainer:
        """Fill in the full path of a freshly created folder from its parent."""
        if not self.adapter.hierarchical:
            return container
        parent = index.by_id(container.parent_remote_id)
        full_path = (
            f"{parent.full_path}/{container.display_name}" if parent else container.display_name
        )
        return container.model_copy(update={"full_path": full_path})

    def _entry(
        self, name: str, path: str, level: ContainerLevel, container: RemoteContainer
    ) -> ProvisionedEntry:
        return ProvisionedEntry(
            name=name,
            path=path,
            remote_id=container.remote_id,
            kind=level,
            parent_remote_id=container.parent_remote_id,
        )

    def _record_error(
        self,
        node: TaxonomyNode,
        path: str,
        level: ContainerLevel,
        message: str,
        kind: ErrorKind,
        result: ProvisioningResult,
    ) -> None:
        skipped = count_descendants(node)
        if skipped:
            message = f"{message} ({skipped} child containers skipped)"
        logger.error(f"Failed to provision {path}: {message}")
        result.errors.append(
            ProvisioningErrorEntry(
                name=node.name,
                path=path,
                error=message,
                kind=kind.value,
                level=level,
                skipped_children=skipped,
            )
        )
