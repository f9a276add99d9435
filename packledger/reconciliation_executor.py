from __future__ import annotations

import posixpath
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Set

from .artifacts import build_artifact
from .errors import (
    ConflictError,
    PackLedgerError,
    PathValidationError,
    ReconcileCancelled,
)
from .file_utils import compute_digest, digest_algorithm, digests_match, ensure_directory, remove_file
from .ledger import LEDGER_FILENAME, Ledger, LedgerDelta, ledger_path, load_ledger, save_ledger
from .load_config import ProgramConfig
from .logging_utils import log_error, log_info, log_ok, log_skip, log_warn
from .merge_engine import ApplyOutcome, MergeEngine
from .models import (
    MERGED_OWNER,
    ActionResult,
    ActionStatus,
    Artifact,
    ComponentRecord,
    InstallSide,
    LedgerEntry,
    Lock,
    LockedComponent,
    RunSummary,
)
from .policy import ClassificationTable
from .reconciliation_planner import ReconcilePlan, plan_reconciliation
from .resolver import ModSource, fetch_with_retry

EntryLookup = Callable[[str], "LedgerEntry | None"]


@dataclass(slots=True)
class ComponentChange:
    result: ActionResult
    upserts: Dict[str, LedgerEntry] = field(default_factory=dict)
    removals: Set[str] = field(default_factory=set)
    released: Set[str] = field(default_factory=set)
    record: ComponentRecord | None = None


def conflict_groups(write_sets: Mapping[str, Iterable[str]]) -> List[List[str]]:
    """Group components whose destination paths overlap, transitively.

    A path also overlaps every path beneath it, so a component writing
    ``config`` shares a group with one writing ``config/x.json``. Components
    in different groups never touch the same path and may be placed
    concurrently; components inside a group must run one after the other.
    Groups and their members come back in sorted id order.
    """

    parent: Dict[str, str] = {component_id: component_id for component_id in write_sets}

    def find(node: str) -> str:
        while parent[node] != node:
            parent[node] = parent[parent[node]]
            node = parent[node]
        return node

    def union(first: str, second: str) -> None:
        root_a, root_b = find(first), find(second)
        if root_a != root_b:
            parent[max(root_a, root_b)] = min(root_a, root_b)

    owner_of_path: Dict[str, str] = {}
    for component_id in sorted(write_sets):
        for path in write_sets[component_id]:
            union(owner_of_path.setdefault(path, component_id), component_id)

    for path, component_id in owner_of_path.items():
        ancestor = posixpath.dirname(path)
        while ancestor:
            if ancestor in owner_of_path:
                union(owner_of_path[ancestor], component_id)
            ancestor = posixpath.dirname(ancestor)

    grouped: Dict[str, List[str]] = {}
    for component_id in sorted(write_sets):
        grouped.setdefault(find(component_id), []).append(component_id)
    return [grouped[key] for key in sorted(grouped)]


def _contributors(entry: LedgerEntry) -> tuple[str, ...]:
    return entry.contributors or (entry.owner,)


class Reconciler:
    """Moves one install directory from its ledger state to a planned lock state."""

    def __init__(
        self,
        root: Path,
        source: ModSource,
        table: ClassificationTable,
        workers: int = 4,
        retry_attempts: int = 3,
        retry_backoff: float = 0.5,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.root = root
        self.source = source
        self.engine = MergeEngine(root, table, reserved_paths=(LEDGER_FILENAME,))
        self.workers = max(1, workers)
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.cancel_event = cancel_event or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def execute(self, plan: ReconcilePlan, ledger: Ledger) -> tuple[RunSummary, LedgerDelta]:
        summary = RunSummary()
        delta = LedgerDelta()
        deleted_paths: Set[str] = set()

        for entry in plan.narrowed:
            delta.put(entry)
        narrowed = {entry.path: entry for entry in plan.narrowed}

        if self.cancelled:
            summary.cancelled = True
            return summary, delta

        summary.deletions = self._delete_obsolete(plan, ledger, delta, deleted_paths)
        for component_id in plan.dropped_records:
            delta.drop_record(component_id)

        def base_lookup(path: str) -> LedgerEntry | None:
            if path in deleted_paths:
                return None
            return narrowed.get(path) or ledger.entry(path)

        results: Dict[str, ActionResult] = {}
        artifacts = self._fetch_all(plan.fetches, results)

        write_sets: Dict[str, Set[str]] = {}
        for component_id, artifact in artifacts.items():
            stale = {
                entry.path for entry in ledger.files_of(component_id) if entry.path not in artifact.files
            }
            write_sets[component_id] = set(artifact.files) | stale

        desired_ids = set(plan.desired)
        groups = conflict_groups(write_sets)
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [
                pool.submit(self._run_group, group, artifacts, ledger, base_lookup, desired_ids)
                for group in groups
            ]
            # Only this thread touches the delta.
            for future in as_completed(futures):
                for change in future.result():
                    self._record_change(change, delta)
                    results[change.result.component_id] = change.result

        for locked in plan.unchanged:
            results[locked.id] = ActionResult(locked.id, locked.version, ActionStatus.UNCHANGED)
        for component_id in plan.desired:
            if component_id in results:
                summary.add(results[component_id])
        summary.cancelled = self.cancelled
        return summary, delta

    def _delete_tracked(self, path: str, entry: LedgerEntry) -> bool:
        """Delete a tool-owned file if it still holds what the tool wrote.

        Returns ``False`` when the file was already gone. Raises
        :class:`ConflictError` if the user changed it.
        """

        destination = self.engine.destination(path)
        if not destination.is_file():
            return False
        live = compute_digest(destination.read_bytes(), digest_algorithm(entry.hash))
        if not digests_match(entry.hash, live):
            raise ConflictError(path, "modified since packledger wrote it; not deleting")
        return remove_file(destination)

    def _delete_obsolete(
        self,
        plan: ReconcilePlan,
        ledger: Ledger,
        delta: LedgerDelta,
        deleted_paths: Set[str],
    ) -> List[ActionResult]:
        by_owner: Dict[str, ActionResult] = {}
        for action in plan.deletions:
            entry = ledger.entry(action.path)
            if entry is None:
                continue
            record = ledger.record(action.owner)
            result = by_owner.setdefault(
                action.owner,
                ActionResult(action.owner, record.version if record else "", ActionStatus.APPLIED),
            )
            try:
                if self._delete_tracked(action.path, entry):
                    result.deleted.append(action.path)
            except ConflictError as exc:
                # The user now owns the file; stop tracking it.
                result.warnings.append(f"Skipped {exc}")
                log_warn(f"Skipped {exc}", indent=2)
            except PathValidationError as exc:
                result.warnings.append(f"Dropped ledger entry: {exc}")
            except OSError as exc:
                result.status = ActionStatus.FAILED
                result.error = f"Cannot delete {action.path}: {exc}"
                log_error(result.error, indent=2)
                continue
            else:
                log_info(f"Deleted {action.path} ({action.reason})", indent=2)
                deleted_paths.add(action.path)
            delta.remove(action.path)

        for result in by_owner.values():
            if result.status == ActionStatus.APPLIED and not result.deleted and result.warnings:
                result.status = ActionStatus.SKIPPED
        return [by_owner[owner] for owner in sorted(by_owner)]

    def _fetch(self, locked: LockedComponent) -> Artifact:
        fetched = fetch_with_retry(
            self.source,
            locked.source,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            cancel_event=self.cancel_event,
            algorithm=digest_algorithm(locked.hash),
        )
        return build_artifact(locked, fetched)

    def _fetch_all(
        self, fetches: List[LockedComponent], results: Dict[str, ActionResult]
    ) -> Dict[str, Artifact]:
        artifacts: Dict[str, Artifact] = {}
        if not fetches:
            return artifacts

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures: Dict[Future[Artifact], LockedComponent] = {
                pool.submit(self._fetch, locked): locked for locked in fetches
            }
            for future in as_completed(futures):
                locked = futures[future]
                try:
                    artifacts[locked.id] = future.result()
                    log_info(f"Fetched and verified {locked.label}")
                except (CancelledError, ReconcileCancelled):
                    results[locked.id] = self._cancelled_result(locked)
                except PackLedgerError as exc:
                    results[locked.id] = ActionResult(
                        locked.id, locked.version, ActionStatus.FAILED, error=str(exc)
                    )
                    log_error(f"{locked.label}: {exc}")
                if self.cancelled:
                    for pending in futures:
                        pending.cancel()
        return artifacts

    @staticmethod
    def _cancelled_result(locked: LockedComponent) -> ActionResult:
        log_skip(f"{locked.label}: cancelled")
        return ActionResult(
            locked.id, locked.version, ActionStatus.SKIPPED, warnings=["cancelled before placement"]
        )

    def _run_group(
        self,
        group: List[str],
        artifacts: Dict[str, Artifact],
        ledger: Ledger,
        base_lookup: EntryLookup,
        desired_ids: Set[str],
    ) -> List[ComponentChange]:
        overlay: Dict[str, LedgerEntry | None] = {}

        def lookup(path: str) -> LedgerEntry | None:
            if path in overlay:
                return overlay[path]
            return base_lookup(path)

        changes: List[ComponentChange] = []
        for component_id in group:
            artifact = artifacts[component_id]
            if self.cancelled:
                changes.append(ComponentChange(self._cancelled_result(artifact.locked)))
                continue
            try:
                change = self._place_component(artifact, ledger, lookup, desired_ids)
            except Exception as exc:
                locked = artifact.locked
                log_error(f"{locked.label}: {type(exc).__name__}: {exc}")
                change = ComponentChange(
                    ActionResult(
                        locked.id,
                        locked.version,
                        ActionStatus.FAILED,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                )
            for path in change.removals:
                overlay[path] = None
            overlay.update(change.upserts)
            changes.append(change)
        return changes

    def _place_component(
        self,
        artifact: Artifact,
        ledger: Ledger,
        lookup: EntryLookup,
        desired_ids: Set[str],
    ) -> ComponentChange:
        locked = artifact.locked
        result = ActionResult(locked.id, locked.version, ActionStatus.APPLIED)
        change = ComponentChange(result)
        log_info(f"Applying {locked.label}")

        try:
            self.engine.validate(artifact)
        except PathValidationError as exc:
            result.status = ActionStatus.FAILED
            result.error = str(exc)
            log_error(str(exc), indent=2)
            return change

        # Files the previous version owned that the new one no longer ships.
        for stale in ledger.files_of(locked.id):
            if stale.path in artifact.files:
                continue
            current = lookup(stale.path)
            if current is None:
                continue
            remaining = tuple(name for name in _contributors(current) if name != locked.id)
            if remaining:
                owner = remaining[0] if len(remaining) == 1 else MERGED_OWNER
                change.upserts[stale.path] = LedgerEntry(stale.path, current.hash, owner, remaining)
                continue
            try:
                if self._delete_tracked(stale.path, current):
                    result.deleted.append(stale.path)
                change.removals.add(stale.path)
            except ConflictError as exc:
                result.warnings.append(f"Skipped {exc}")
                change.released.add(stale.path)
            except PathValidationError as exc:
                result.warnings.append(f"Dropped ledger entry: {exc}")
                change.released.add(stale.path)
            except OSError as exc:
                result.status = ActionStatus.FAILED
                result.error = f"Cannot delete stale {stale.path}: {exc}"

        outcome = ApplyOutcome(component_id=locked.id)
        if result.status != ActionStatus.FAILED:
            try:
                self.engine.apply(artifact, lookup, outcome)
            except Exception as exc:
                # Files placed before the failure are still recorded below.
                result.status = ActionStatus.FAILED
                result.error = f"Placement failed: {type(exc).__name__}: {exc}"

        skipped_existing = False
        for file_outcome in outcome.files:
            if file_outcome.recorded:
                entry = file_outcome.ledger_entry()
                contributors = tuple(
                    name for name in entry.contributors if name in desired_ids or name == locked.id
                )
                owner = contributors[0] if len(contributors) == 1 else MERGED_OWNER
                change.upserts[entry.path] = LedgerEntry(entry.path, entry.hash, owner, contributors)
                change.removals.discard(entry.path)
                result.written.append(entry.path)
            elif file_outcome.status == "apply-once":
                skipped_existing = True
                result.warnings.append(f"Kept existing {file_outcome.path} (apply-once)")
        result.warnings.extend(outcome.warnings)

        if result.status == ActionStatus.FAILED:
            log_error(f"{locked.label}: {result.error}", indent=2)
            return change

        change.record = ComponentRecord(locked.id, locked.version, locked.hash)
        if not result.written and not result.deleted and (outcome.conflicts or skipped_existing):
            result.status = ActionStatus.SKIPPED
        for warning in result.warnings:
            log_warn(warning, indent=2)
        log_ok(f"{locked.label}: {len(result.written)} file(s) placed", indent=2)
        return change

    @staticmethod
    def _record_change(change: ComponentChange, delta: LedgerDelta) -> None:
        for path in change.removals | change.released:
            delta.remove(path)
        for entry in change.upserts.values():
            delta.put(entry)
        if change.record is not None:
            delta.put_record(change.record)


def planned_summary(plan: ReconcilePlan) -> RunSummary:
    summary = RunSummary(dry_run=True)
    by_owner: Dict[str, ActionResult] = {}
    for action in plan.deletions:
        result = by_owner.setdefault(
            action.owner, ActionResult(action.owner, "", ActionStatus.PLANNED)
        )
        result.deleted.append(action.path)
    summary.deletions = [by_owner[owner] for owner in sorted(by_owner)]
    for locked in plan.fetches:
        summary.add(ActionResult(locked.id, locked.version, ActionStatus.PLANNED, written=[locked.target]))
    for locked in plan.unchanged:
        summary.add(ActionResult(locked.id, locked.version, ActionStatus.UNCHANGED))
    return summary


def reconcile(
    install_root: Path,
    lock: Lock,
    source: ModSource,
    config: ProgramConfig | None = None,
    side: InstallSide = InstallSide.BOTH,
    dry_run: bool = False,
    cancel_event: threading.Event | None = None,
) -> RunSummary:
    """Run one reconciliation of ``install_root`` against ``lock``.

    The ledger is written once, at the end, and only if something changed.
    A :class:`LedgerError` while writing it leaves the previous ledger in place
    and propagates to the caller.
    """

    config = config or ProgramConfig()
    ensure_directory(install_root)
    ledger_file = ledger_path(install_root)
    base = load_ledger(ledger_file)
    plan = plan_reconciliation(lock, base, side)

    log_info(
        f"Plan: {len(plan.fetches)} to fetch, {len(plan.deletions)} to delete, "
        f"{len(plan.unchanged)} unchanged"
    )
    if dry_run:
        return planned_summary(plan)

    reconciler = Reconciler(
        install_root,
        source,
        config.classification_table(),
        workers=config.workers,
        retry_attempts=config.retry_attempts,
        retry_backoff=config.retry_backoff,
        cancel_event=cancel_event,
    )
    summary, delta = reconciler.execute(plan, base)
    if delta:
        save_ledger(delta.apply_to(base), ledger_file)
    return summary


__all__ = [
    "ComponentChange",
    "conflict_groups",
    "Reconciler",
    "planned_summary",
    "reconcile",
]
