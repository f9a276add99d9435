from __future__ import annotations

from pathlib import Path
from typing import Any, List

from openpyxl import Workbook

from .ledger import Ledger
from .logging_utils import log_error, log_info, log_ok, log_skip, log_warn
from .models import RunSummary
from .reconciliation_planner import ReconcilePlan


def print_plan(plan: ReconcilePlan) -> None:
    if plan.is_empty:
        log_ok("Install directory already matches the lock.")
        return
    if plan.deletions:
        log_info("Obsolete files:")
        for action in plan.deletions:
            log_info(f"{action.path} (owner {action.owner})", indent=2)
    if plan.fetches:
        log_info("To fetch and apply:")
        for locked in plan.fetches:
            log_info(f"{locked.label} -> {locked.target or '.'}", indent=2)
    if plan.unchanged:
        log_info(f"Unchanged: {', '.join(locked.label for locked in plan.unchanged)}")


def print_summary(summary: RunSummary) -> None:
    if summary.cancelled:
        log_warn("Run cancelled; only completed actions were recorded.")
    for result in summary.applied:
        log_ok(f"{result.label}: {len(result.written)} written, {len(result.deleted)} deleted")
    for result in summary.skipped:
        log_skip(f"{result.label}: skipped")
        for warning in result.warnings:
            log_warn(warning, indent=2)
    for result in summary.failed:
        log_error(f"{result.label}: {result.error}")
    log_info(
        f"Applied {len(summary.applied)}, skipped {len(summary.skipped)}, "
        f"failed {len(summary.failed)}"
    )


def _build_action_rows(summary: RunSummary) -> List[List[Any]]:
    rows: List[List[Any]] = []
    for kind, results in (("delete", summary.deletions), ("apply", summary.results)):
        for result in results:
            rows.append(
                [
                    kind,
                    result.component_id,
                    result.version,
                    result.status.value,
                    len(result.written),
                    len(result.deleted),
                    len(result.warnings),
                    result.error or "",
                ]
            )
    return rows


def export_report(output_path: Path, summary: RunSummary, ledger: Ledger | None = None) -> None:
    """Write an Excel workbook describing one reconciliation run."""

    output_path.parent.mkdir(parents=True, exist_ok=True)

    workbook = Workbook()

    actions_sheet = workbook.active
    if not actions_sheet:
        actions_sheet = workbook.create_sheet("actions")
    else:
        actions_sheet.title = "actions"
    actions_sheet.append(
        ["action", "component", "version", "status", "written", "deleted", "warnings", "error"]
    )
    for row in _build_action_rows(summary):
        actions_sheet.append(row)

    warnings_sheet = workbook.create_sheet("warnings")
    warnings_sheet.append(["component", "warning"])
    for label, warning in summary.warnings:
        warnings_sheet.append([label, warning])

    ledger_sheet = workbook.create_sheet("ledger")
    ledger_sheet.append(["path", "owner", "contributors", "hash"])
    if ledger is not None:
        for path, entry in sorted(ledger.files.items()):
            ledger_sheet.append([path, entry.owner, ", ".join(entry.contributors), entry.hash])

    workbook.save(output_path)
    workbook.close()


__all__ = ["print_plan", "print_summary", "export_report"]
