"""Protein-group membership helpers used by the unique-group filter."""
from __future__ import annotations

from collections import defaultdict
from typing import Dict, FrozenSet, Iterable, Set

import polars as pl


def split_group(group: str, sep: str = ";") -> FrozenSet[str]:
    """'P1;P2' -> frozenset({'P1', 'P2'}); blanks are ignored."""
    if group is None:
        return frozenset()
    return frozenset(p.strip() for p in str(group).split(sep) if p.strip())


def smallest_unique_groups(groups: Iterable[str], sep: str = ";") -> Set[str]:
    """Groups that are not a strict superset of another observed group.

    A peptide mapped to {P1, P2} is dropped when another peptide maps to {P1} alone:
    its evidence is already explained by the more specific group. Empty groups are never kept.
    """
    members: Dict[str, FrozenSet[str]] = {g: split_group(g, sep) for g in set(groups) if g is not None}
    observed = {s for s in members.values() if s}

    # protein -> observed groups containing it
    containing: Dict[str, list] = defaultdict(list)
    for s in observed:
        for p in s:
            containing[p].append(s)

    keep: Set[str] = set()
    for name, s in members.items():
        if not s:
            continue
        candidates = (other for p in s for other in containing[p] if len(other) < len(s))
        if not any(other < s for other in candidates):
            keep.add(name)
    return keep


def unique_group_mask(df: pl.DataFrame, group_col: str = "PROTEIN_GROUP", sep: str = ";") -> pl.Series:
    """Boolean row mask for the smallest-unique-group rule."""
    groups = df.get_column(group_col).to_list()
    keep = smallest_unique_groups(groups, sep)
    return pl.Series("keep", [g in keep for g in groups], dtype=pl.Boolean)
