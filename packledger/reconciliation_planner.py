from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from .file_utils import digests_match
from .ledger import Ledger, prune_contributors
from .models import DeletionAction, InstallSide, LedgerEntry, Lock, LockedComponent


@dataclass(slots=True)
class ReconcilePlan:
    desired: Dict[str, LockedComponent] = field(default_factory=dict)
    deletions: List[DeletionAction] = field(default_factory=list)
    narrowed: List[LedgerEntry] = field(default_factory=list)
    dropped_records: List[str] = field(default_factory=list)
    fetches: List[LockedComponent] = field(default_factory=list)
    unchanged: List[LockedComponent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.deletions or self.narrowed or self.dropped_records or self.fetches)


def select_desired(lock: Lock, side: InstallSide) -> Dict[str, LockedComponent]:
    return {
        component_id: locked
        for component_id, locked in sorted(lock.entries.items())
        if side.accepts(locked.component.side)
    }


def plan_reconciliation(lock: Lock, ledger: Ledger, side: InstallSide = InstallSide.BOTH) -> ReconcilePlan:
    """Split the desired state into obsolete deletions, fetch-and-apply and no-op sets."""

    desired = select_desired(lock, side)
    plan = ReconcilePlan(desired=desired)

    for path, entry in sorted(ledger.files.items()):
        pruned = prune_contributors(entry, desired)
        if pruned is None:
            plan.deletions.append(
                DeletionAction(path=path, owner=entry.owner, reason="no longer in the lock")
            )
        elif pruned is not entry:
            plan.narrowed.append(pruned)

    plan.dropped_records = sorted(set(ledger.components) - set(desired))

    for component_id, locked in desired.items():
        record = ledger.record(component_id)
        if record is not None and digests_match(record.hash, locked.hash):
            plan.unchanged.append(locked)
        else:
            plan.fetches.append(locked)
    return plan


__all__ = ["ReconcilePlan", "select_desired", "plan_reconciliation"]
