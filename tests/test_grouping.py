"""
Tests for grouping public subsets for display.
"""
from typing import ClassVar, List

import pytest

from pydantic_model_subsets import (
    ModelSubsetsModel,
    SubsetBuilder,
    SubsetDeclaration,
    configure_subsets,
    grouped_subsets,
    reset_subsets_configuration,
    subset,
)
from pydantic_model_subsets.grouping import default_label_lookup

LABELS = {
    ("group", "default"): "General",
    ("group", "staff"): "Staff",
    ("group", "visitors"): "Visitors",
    ("subset", "person"): "Person",
    ("subset", "user"): "User",
    ("subset", "admin"): "Administrator",
    ("subset", "guest"): "Guest",
}


def lookup(kind, id):
    # Raises KeyError for anything not listed, e.g. template subsets.
    return LABELS[(kind, id)]


class Account(ModelSubsetsModel):
    declared_subsets: ClassVar[List[SubsetDeclaration]] = [
        subset("person"),
        subset("power_user", group="staff"),
        subset("hidden", template=True, group="staff"),
    ]


@pytest.fixture
def table():
    builder = SubsetBuilder()
    builder.fieldset("name", ["first", "last"])
    builder.subset("person")
    builder.subset("user", group="staff")
    builder.subset("admin", extends="user")
    builder.subset("hidden", template=True, group="staff")
    builder.subset("guest", group="visitors")
    return builder.build()


@pytest.fixture(autouse=True)
def reset_configuration():
    yield
    reset_subsets_configuration()


class TestGroupedSubsets:
    def test_groups_sorted_by_label(self, table):
        groups = grouped_subsets(table, lookup)
        assert [(g.group, g.label) for g in groups] == [
            ("default", "General"),
            ("staff", "Staff"),
            ("visitors", "Visitors"),
        ]

    def test_subsets_sorted_by_label_within_group(self, table):
        staff = grouped_subsets(table, lookup)[1]
        assert [(c.subset, c.label) for c in staff.subsets] == [
            ("admin", "Administrator"),
            ("user", "User"),
        ]

    def test_templates_are_left_out(self, table):
        subsets = [c.subset for g in grouped_subsets(table, lookup) for c in g.subsets]
        assert "hidden" not in subsets
        assert sorted(subsets) == ["admin", "guest", "person", "user"]

    def test_groups_sharing_a_label_are_merged(self):
        builder = SubsetBuilder()
        builder.subset("x", group="a")
        builder.subset("y", group="b")
        groups = grouped_subsets(
            builder.build(), lambda kind, id: "Team" if kind == "group" else id.upper()
        )
        assert len(groups) == 1
        assert groups[0].group == "a"
        assert [c.subset for c in groups[0].subsets] == ["x", "y"]

    def test_empty_table(self):
        assert grouped_subsets(SubsetBuilder().build(), lookup) == []

    def test_default_label_lookup(self):
        assert default_label_lookup("subset", "power_user") == "Power user"
        assert default_label_lookup("group", "default") == "Default"


class TestModelGroups:
    def test_default_labels(self):
        groups = Account.subsets_groups()
        assert [(g.group, g.label) for g in groups] == [
            ("default", "Default"),
            ("staff", "Staff"),
        ]
        assert groups[1].subsets[0].label == "Power user"

    def test_explicit_label_lookup(self):
        labels = {"default": "Everyone", "staff": "Back office"}
        groups = Account.subsets_groups(lambda kind, id: labels.get(id, id))
        assert [g.label for g in groups] == ["Back office", "Everyone"]

    def test_configured_default_group_and_lookup(self):
        configure_subsets(
            default_group="misc",
            label_lookup=lambda kind, id: f"{kind}:{id}",
        )
        groups = Account.subsets_groups()
        assert [g.label for g in groups] == ["group:misc", "group:staff"]
        assert groups[0].subsets[0].label == "subset:person"
