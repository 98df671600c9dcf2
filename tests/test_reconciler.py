"""
Tests for the reconciler module.
"""

import pytest

from src.taxonomy_provisioner.config import ProviderKind
from src.taxonomy_provisioner.errors import ForbiddenError, ProviderError
from src.taxonomy_provisioner.gmail_adapter import GmailAdapter
from src.taxonomy_provisioner.models import (
    CompiledTaxonomy,
    ContainerLevel,
    RemoteIndex,
    TaxonomyNode,
)
from src.taxonomy_provisioner.reconciler import Reconciler, count_descendants


@pytest.fixture
def taxonomy():
    """Small taxonomy with a three-level branch and a custom root order."""
    return CompiledTaxonomy(
        categories=[
            TaxonomyNode(
                name="BANKING",
                children=[
                    TaxonomyNode(name="Receipts", children=[TaxonomyNode(name="Payment Sent")]),
                ],
            ),
            TaxonomyNode(name="SALES"),
            TaxonomyNode(name="MISC", children=[TaxonomyNode(name="General")]),
        ],
        root_order=["SALES", "BANKING"],
    )


def _run(adapter, executor, taxonomy, recorded=None):
    index = adapter.list_all("token")
    return Reconciler(adapter, executor).run(taxonomy, index, recorded)


class TestReconcilerCreation:
    """Tests for creating missing containers."""

    def test_creates_in_root_order_parent_before_child(self, fake_adapter, executor, taxonomy):
        """Roots follow root_order, then children follow their parent."""
        result = _run(fake_adapter, executor, taxonomy)

        assert fake_adapter.created_names() == [
            "SALES",
            "BANKING",
            "Receipts",
            "Payment Sent",
            "MISC",
            "General",
        ]
        assert len(result.created) == 6
        assert result.errors == []
        assert result.success is True

    def test_children_are_created_under_their_parent(self, fake_adapter, executor, taxonomy):
        result = _run(fake_adapter, executor, taxonomy)
        by_path = {entry.path: entry for entry in result.created}

        assert by_path["BANKING/Receipts"].parent_remote_id == by_path["BANKING"].remote_id
        assert (
            by_path["BANKING/Receipts/Payment Sent"].parent_remote_id
            == by_path["BANKING/Receipts"].remote_id
        )
        assert by_path["BANKING"].kind == ContainerLevel.CATEGORY
        assert by_path["BANKING/Receipts"].kind == ContainerLevel.SUBCATEGORY
        assert by_path["BANKING/Receipts/Payment Sent"].kind == ContainerLevel.NESTED

    def test_second_run_creates_nothing(self, fake_adapter, executor, taxonomy):
        """Reconciling an already reconciled mailbox is a no-op."""
        _run(fake_adapter, executor, taxonomy)
        fake_adapter.create_calls.clear()

        result = _run(fake_adapter, executor, taxonomy)

        assert fake_adapter.create_calls == []
        assert result.created == []
        assert len(result.matched) == 6

    def test_existing_containers_match_case_insensitively(self, fake_adapter, executor, taxonomy):
        fake_adapter.seed("banking", remote_id="bank-1")

        result = _run(fake_adapter, executor, taxonomy)

        assert "BANKING" not in fake_adapter.created_names()
        matched = {entry.path: entry.remote_id for entry in result.matched}
        assert matched == {"BANKING": "bank-1"}

    def test_recorded_id_wins_over_name(self, fake_adapter, executor, taxonomy):
        """A container renamed by the user is still matched by its recorded ID."""
        fake_adapter.seed("Money", remote_id="bank-1")

        result = _run(fake_adapter, executor, taxonomy, recorded={"BANKING": "bank-1"})

        assert "BANKING" not in fake_adapter.created_names()
        assert result.matched[0].remote_id == "bank-1"
        receipts = next(e for e in result.created if e.path == "BANKING/Receipts")
        assert receipts.parent_remote_id == "bank-1"

    def test_child_lookup_is_scoped_to_parent(self, fake_adapter, executor, taxonomy):
        """A root named like a subcategory does not satisfy the subcategory."""
        fake_adapter.seed("General", remote_id="root-general")

        result = _run(fake_adapter, executor, taxonomy)

        general = next(e for e in result.created if e.path == "MISC/General")
        assert general.remote_id != "root-general"
        assert ("General", general.parent_remote_id, False) in fake_adapter.create_calls

    def test_gmail_style_adapter_reconciles(self, make_adapter, executor, taxonomy):
        adapter = make_adapter(provider=ProviderKind.GMAIL, hierarchical=False)

        result = _run(adapter, executor, taxonomy)

        assert len(result.created) == 6
        paths = {c.full_path for c in adapter.containers.values()}
        assert "BANKING/Receipts/Payment Sent" in paths


class TestReconcilerFailures:
    """Tests for itemized failures and recovery paths."""

    def test_failed_category_skips_descendants(self, fake_adapter, executor, taxonomy):
        fake_adapter.failures["BANKING"] = [ProviderError("teapot", status_code=418)]

        result = _run(fake_adapter, executor, taxonomy)

        assert "Receipts" not in fake_adapter.created_names()
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.path == "BANKING"
        assert error.skipped_children == 2
        assert error.level == ContainerLevel.CATEGORY
        assert error.kind == "unknown"
        assert result.success is False
        # Sibling subtrees are still reconciled
        assert "SALES" in fake_adapter.created_names()
        assert "General" in fake_adapter.created_names()

    def test_subcategory_failure_keeps_run_successful(self, fake_adapter, executor, taxonomy):
        fake_adapter.failures["Receipts"] = [ProviderError("teapot", status_code=418)]

        result = _run(fake_adapter, executor, taxonomy)

        assert result.success is True
        assert result.errors[0].level == ContainerLevel.SUBCATEGORY
        assert result.errors[0].skipped_children == 1

    def test_validation_error_retries_with_minimal_payload(self, fake_adapter, executor, taxonomy):
        fake_adapter.failures["SALES"] = [ProviderError("Invalid label color", status_code=400)]

        result = _run(fake_adapter, executor, taxonomy)

        assert ("SALES", None, False) in fake_adapter.create_calls
        assert ("SALES", None, True) in fake_adapter.create_calls
        assert any(entry.path == "SALES" for entry in result.created)

    def test_validation_error_after_fallback_records_raw_message(self, fake_adapter, executor, taxonomy):
        fake_adapter.failures["SALES"] = [
            ProviderError("Invalid label color", status_code=400),
            ProviderError("Invalid label name", status_code=400),
        ]

        result = _run(fake_adapter, executor, taxonomy)

        error = next(e for e in result.errors if e.path == "SALES")
        assert error.kind == "validation"
        assert "Invalid label name" in error.error

    def test_duplicate_signal_re_resolves_existing_id(self, fake_adapter, executor, taxonomy):
        """A stale index leads to a duplicate, which is matched, not failed."""
        fake_adapter.seed("BANKING", remote_id="bank-1")
        stale_index = RemoteIndex()

        result = Reconciler(fake_adapter, executor).run(taxonomy, stale_index)

        assert result.errors == []
        assert {e.path: e.remote_id for e in result.matched}["BANKING"] == "bank-1"
        receipts = next(e for e in result.created if e.path == "BANKING/Receipts")
        assert receipts.parent_remote_id == "bank-1"
        assert fake_adapter.list_calls >= 1

    def test_duplicate_exception_re_resolves_existing_id(self, fake_adapter, executor, taxonomy):
        fake_adapter.seed("SALES", remote_id="sales-1")
        fake_adapter.failures["SALES"] = [ProviderError("Folder exists", status_code=409)]

        result = Reconciler(fake_adapter, executor).run(taxonomy, RemoteIndex())

        assert {e.path: e.remote_id for e in result.matched}["SALES"] == "sales-1"
        assert result.errors == []

    def test_missing_parent_creates_child_at_root(self, fake_adapter, executor, taxonomy):
        """A parent deleted after the fetch does not fail its children."""
        banking = fake_adapter.seed("BANKING", remote_id="bank-1")
        index = RemoteIndex([banking])
        del fake_adapter.containers["bank-1"]

        result = Reconciler(fake_adapter, executor).run(taxonomy, index)

        receipts = next(e for e in result.created if e.path == "BANKING/Receipts")
        assert receipts.parent_remote_id is None
        payment = next(e for e in result.created if e.path == "BANKING/Receipts/Payment Sent")
        assert payment.parent_remote_id == receipts.remote_id

    def test_rate_limit_is_retried(self, fake_adapter, executor, taxonomy, sleeps):
        fake_adapter.failures["SALES"] = [
            ProviderError("Too many requests", status_code=429, retry_after=1.5)
        ]

        result = _run(fake_adapter, executor, taxonomy)

        assert sleeps == [1.5]
        assert any(entry.path == "SALES" for entry in result.created)

    def test_forbidden_aborts_run(self, fake_adapter, executor, taxonomy):
        fake_adapter.failures["SALES"] = [ProviderError("Access denied", status_code=403)]

        with pytest.raises(ForbiddenError):
            _run(fake_adapter, executor, taxonomy)


def test_count_descendants():
    node = TaxonomyNode(
        name="A",
        children=[TaxonomyNode(name="B", children=[TaxonomyNode(name="C")]), TaxonomyNode(name="D")],
    )
    assert count_descendants(node) == 3
    assert count_descendants(TaxonomyNode(name="leaf")) == 0


def test_gmail_nested_label_does_not_satisfy_category(settings, executor):
    """'Archive/BANKING' without an 'Archive' label is not the BANKING category."""

    labels = {"L9": {"id": "L9", "name": "Archive/BANKING", "type": "user"}}
    posted = []

    def fake_request(credential, method, endpoint, params=None, json_data=None, suppress_statuses=None):
        if method == "POST":
            posted.append(json_data["name"])
            label = {"id": f"Label_{len(posted)}", "name": json_data["name"], "type": "user"}
            labels[label["id"]] = label
            return label
        if endpoint == "/labels":
            return {"labels": list(labels.values())}
        return labels[endpoint.rsplit("/", 1)[-1]]

    adapter = GmailAdapter(settings)
    adapter._make_request = fake_request
    taxonomy = CompiledTaxonomy(
        categories=[TaxonomyNode(name="BANKING", children=[TaxonomyNode(name="Receipts")])]
    )

    result = Reconciler(adapter, executor).run(taxonomy, adapter.list_all("tok"))

    assert posted == ["BANKING", "BANKING/Receipts"]
    assert result.matched == []
    assert all(entry.remote_id != "L9" for entry in result.created)
