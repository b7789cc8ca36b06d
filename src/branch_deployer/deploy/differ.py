"""Branch differ: classify branches against the previously deployed state."""

from __future__ import annotations

from typing import Mapping

from branch_deployer.core.models import BranchUpdate, ChangeSet


def diff_branches(current: Mapping[str, str], previous: Mapping[str, str]) -> ChangeSet:
    """Compare current branch tips with the previous state.

    - in both maps with the same commit: untouched
    - only in ``current``: created
    - in both maps with different commits: updated
    - only in ``previous``: deleted

    A branch lands in at most one of the three lists. Ordering follows the
    iteration order of ``current`` (created, updated) and ``previous`` (deleted).
    """
    changes = ChangeSet()

    for branch, commit in current.items():
        if branch not in previous:
            changes.created.append(branch)
        elif previous[branch] != commit:
            changes.updated.append(BranchUpdate(branch, previous[branch], commit))

    for branch in previous:
        if branch not in current:
            changes.deleted.append(branch)

    return changes
