"""Core package for packledger: declarative mod pack installs with a file ledger."""

from .documents import DocumentFormat, ListNode, MapNode, Scalar, register_format
from .errors import (
    ConflictError,
    IntegrityError,
    LedgerError,
    MergeParseError,
    PackLedgerError,
    PathValidationError,
    RetrievalError,
)
from .ledger import Ledger, load_ledger, save_ledger
from .load_config import ProgramConfig, load_lock, load_manifest, load_program_config, save_lock
from .merge_engine import MergeEngine, merge_documents, merge_nodes
from .models import (
    ActionResult,
    ActionStatus,
    ApplyPolicy,
    Component,
    InstallSide,
    LockedComponent,
    RunSummary,
    Side,
)
from .policy import ClassificationTable, evaluate_policy
from .profiles import Profile, ProfileStore
from .reconciliation_executor import Reconciler, reconcile
from .reconciliation_planner import plan_reconciliation
from .report import export_report, print_plan, print_summary
from .resolver import SourceResolver, fetch_with_retry

__all__ = [
    "ActionResult",
    "ActionStatus",
    "ApplyPolicy",
    "ClassificationTable",
    "Component",
    "ConflictError",
    "DocumentFormat",
    "InstallSide",
    "IntegrityError",
    "Ledger",
    "LedgerError",
    "ListNode",
    "LockedComponent",
    "MapNode",
    "MergeEngine",
    "MergeParseError",
    "PackLedgerError",
    "PathValidationError",
    "Profile",
    "ProfileStore",
    "ProgramConfig",
    "Reconciler",
    "RetrievalError",
    "RunSummary",
    "Scalar",
    "Side",
    "SourceResolver",
    "evaluate_policy",
    "export_report",
    "fetch_with_retry",
    "load_ledger",
    "load_lock",
    "load_manifest",
    "load_program_config",
    "merge_documents",
    "merge_nodes",
    "plan_reconciliation",
    "print_plan",
    "print_summary",
    "reconcile",
    "register_format",
    "save_ledger",
    "save_lock",
]
