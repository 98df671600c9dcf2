"""
Tests for the models module.
"""

import pytest

from src.taxonomy_provisioner.models import (
    CompiledTaxonomy,
    ContainerLevel,
    ExpectedFolder,
    LabelColor,
    NodeKind,
    ProvisioningErrorEntry,
    ProvisioningResult,
    RemoteContainer,
    RemoteIndex,
    Roster,
    RosterMember,
    TaxonomyNode,
)


@pytest.fixture
def sample_containers():
    """Create a small folder tree with a name shared by a root and a child."""
    return [
        RemoteContainer(remoteId="inbox", displayName="Inbox", fullPath="Inbox", isSystem=True),
        RemoteContainer(remoteId="misc", displayName="MISC", fullPath="MISC"),
        RemoteContainer(
            remoteId="misc-general",
            displayName="General",
            parentRemoteId="misc",
            fullPath="MISC/General",
        ),
        RemoteContainer(remoteId="general", displayName="General", fullPath="General"),
    ]


class TestRemoteIndex:
    """Tests for remote index lookups."""

    def test_lookup_by_id_and_path(self, sample_containers):
        index = RemoteIndex(sample_containers)

        assert len(index) == 4
        assert index.by_id("misc-general").display_name == "General"
        assert index.by_path("misc/general").remote_id == "misc-general"
        assert index.by_id(None) is None

    def test_name_lookup_prefers_root(self, sample_containers):
        index = RemoteIndex(sample_containers)

        assert index.by_name("general").remote_id == "general"
        assert index.root("GENERAL").remote_id == "general"

    def test_child_lookup_is_scoped(self, sample_containers):
        index = RemoteIndex(sample_containers)

        assert index.child("misc", "general").remote_id == "misc-general"
        assert index.child("inbox", "general") is None

    def test_user_containers_exclude_system(self, sample_containers):
        index = RemoteIndex(sample_containers)
        assert [c.remote_id for c in index.user_containers()] == ["misc", "misc-general", "general"]

    def test_add_replaces_existing_id(self, sample_containers):
        index = RemoteIndex(sample_containers)

        index.add(RemoteContainer(remoteId="misc", displayName="Other", fullPath="Other"))

        assert len(index) == 4
        assert index.root("MISC") is None
        assert index.root("Other").remote_id == "misc"

    def test_orphaned_nested_label_is_not_a_root(self):
        nested = RemoteContainer(remoteId="L9", displayName="BANKING", fullPath="Archive/BANKING")
        root = RemoteContainer(remoteId="L1", displayName="BANKING", fullPath="BANKING")

        index = RemoteIndex([nested])

        assert index.root("BANKING") is None
        assert index.by_path("archive/banking").remote_id == "L9"
        assert RemoteIndex.is_root(nested) is False

        index.add(root)
        assert index.root("BANKING").remote_id == "L1"
        assert index.by_name("banking").remote_id == "L1"


class TestRoster:
    """Tests for roster normalization."""

    def test_blank_names_dropped_and_trimmed(self):
        roster = Roster.from_names(managers=["  Alice ", "", "   ", "Bob"], suppliers=None)

        assert [m.name for m in roster.managers] == ["Alice", "Bob"]
        assert roster.suppliers == []
        assert roster.is_empty is False

    def test_accepts_member_dicts(self):
        roster = Roster(suppliers=[{"name": "Acme", "email": "a@acme.test"}, RosterMember(name="Pool Co")])

        assert roster.members(NodeKind.SUPPLIER)[0].email == "a@acme.test"
        assert roster.members(NodeKind.SUPPLIER)[1].name == "Pool Co"
        assert roster.members(NodeKind.STATIC) == []

    def test_empty_roster(self):
        assert Roster().is_empty is True


class TestCompiledTaxonomy:
    """Tests for taxonomy traversal helpers."""

    @pytest.fixture
    def taxonomy(self):
        return CompiledTaxonomy(
            categories=[
                TaxonomyNode(name="BANKING", sub=[TaxonomyNode(name="Receipts")]),
                TaxonomyNode(name="SALES"),
                TaxonomyNode(name="PROMO"),
            ],
            root_order=["SALES", "BANKING", "UNKNOWN"],
        )

    def test_ordered_categories_append_unlisted(self, taxonomy):
        assert [n.name for n in taxonomy.ordered_categories()] == ["SALES", "BANKING", "PROMO"]

    def test_expected_paths(self, taxonomy):
        assert taxonomy.expected_paths() == ["SALES", "BANKING", "BANKING/Receipts", "PROMO"]
        assert taxonomy.node_count() == 4

    def test_vocabulary_is_lowercased(self, taxonomy):
        assert taxonomy.vocabulary() == {"sales", "banking", "receipts", "promo"}

    def test_category_lookup(self, taxonomy):
        assert taxonomy.category("banking").name == "BANKING"
        assert taxonomy.category("missing") is None


def test_container_level_for_depth():
    assert ContainerLevel.for_depth(0) == ContainerLevel.CATEGORY
    assert ContainerLevel.for_depth(1) == ContainerLevel.SUBCATEGORY
    assert ContainerLevel.for_depth(4) == ContainerLevel.NESTED


def test_label_color_payload():
    color = LabelColor(backgroundColor="#16a766")
    assert color.as_payload() == {"backgroundColor": "#16a766", "textColor": "#ffffff"}


def test_result_success_only_fails_on_category_errors():
    result = ProvisioningResult(
        errors=[
            ProvisioningErrorEntry(
                name="Receipts", path="BANKING/Receipts", error="x", kind="unknown",
                level=ContainerLevel.SUBCATEGORY,
            )
        ]
    )
    assert result.success is True

    result.errors.append(
        ProvisioningErrorEntry(
            name="SALES", path="SALES", error="x", kind="unknown", level=ContainerLevel.CATEGORY
        )
    )
    assert result.success is False
    assert result.summary() == {"created": 0, "matched": 0, "errors": 2}


def test_expected_folder_name_and_alias():
    folder = ExpectedFolder.model_validate({"path": "BANKING/Receipts", "remoteId": "r1"})
    assert folder.name == "Receipts"
    assert folder.model_dump(by_alias=True) == {"path": "BANKING/Receipts", "remoteId": "r1"}
