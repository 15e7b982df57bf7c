"""
Grouping of public subsets for display, e.g. a grouped select box.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel

from pydantic_model_subsets.engine import DEFAULT_GROUP, GroupId, SubsetId, SubsetTable

SUBSET_LABEL = "subset"
GROUP_LABEL = "group"


class LabelLookup(Protocol):
    def __call__(self, kind: str, id: str) -> str: ...


def default_label_lookup(kind: str, id: str) -> str:
    """Humanize an identifier: ``power_user`` becomes ``Power user``."""
    return id.replace("_", " ").strip().capitalize()


class SubsetChoice(BaseModel):
    subset: SubsetId
    label: str


class SubsetGroup(BaseModel):
    group: GroupId
    label: str
    subsets: List[SubsetChoice]


def grouped_subsets(
    table: SubsetTable,
    label_lookup: Optional[LabelLookup] = None,
    default_group: str = DEFAULT_GROUP,
) -> List[SubsetGroup]:
    """
    Bucket the public subsets of a table by group label.

    Args:
        table: Built subset table.
        label_lookup: Callable returning the display text of a subset or
            group id. Defaults to default_label_lookup.
        default_group: Group used for subsets that declare none.

    Returns:
        Groups sorted by label, each with its subsets sorted by label.
    """
    lookup = label_lookup or default_label_lookup
    group_labels: Dict[str, str] = {}
    buckets: Dict[str, Tuple[str, List[SubsetChoice]]] = {}

    for subset_id, definition in table.subsets().items():
        group_id = definition.group or default_group
        if group_id not in group_labels:
            group_labels[group_id] = lookup(GROUP_LABEL, group_id)
        group_label = group_labels[group_id]
        # Groups sharing a label are merged under the first group id seen.
        bucket = buckets.setdefault(group_label, (group_id, []))
        bucket[1].append(
            SubsetChoice(subset=subset_id, label=lookup(SUBSET_LABEL, subset_id))
        )

    return [
        SubsetGroup(
            group=group_id,
            label=label,
            subsets=sorted(choices, key=lambda c: (c.label, c.subset)),
        )
        for label, (group_id, choices) in sorted(buckets.items())
    ]
