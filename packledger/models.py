from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

MERGED_OWNER = "<merged>"


class Side(str, Enum):
    CLIENT = "client"
    SERVER = "server"
    UNIVERSAL = "universal"

    @classmethod
    def parse(cls, raw: str) -> "Side":
        value = raw.strip().lower()
        if value in ("both", "universal"):
            return cls.UNIVERSAL
        return cls(value)


class InstallSide(str, Enum):
    CLIENT = "client"
    SERVER = "server"
    BOTH = "both"

    def accepts(self, side: Side) -> bool:
        if side == Side.UNIVERSAL or self == InstallSide.BOTH:
            return True
        return side.value == self.value


class ApplyPolicy(str, Enum):
    REPLACE = "replace"
    MERGE_OVERRIDE = "override"
    MERGE_RETAIN = "retain"

    @property
    def is_merge(self) -> bool:
        return self != ApplyPolicy.REPLACE


class ActionStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"
    PLANNED = "planned"


@dataclass(frozen=True, slots=True)
class Component:
    id: str
    name: str
    side: Side = Side.UNIVERSAL


@dataclass(frozen=True, slots=True)
class LockedComponent:
    component: Component
    version: str
    hash: str
    source: str
    target: str
    archive: bool = False
    apply_once: bool = False

    @property
    def id(self) -> str:
        return self.component.id

    @property
    def label(self) -> str:
        return f"{self.component.id}@{self.version}"


@dataclass(slots=True)
class Manifest:
    name: str
    components: Dict[str, Component] = field(default_factory=dict)
    forbidden: List[str] = field(default_factory=list)


@dataclass(slots=True)
class Lock:
    entries: Dict[str, LockedComponent] = field(default_factory=dict)

    def get(self, component_id: str) -> LockedComponent | None:
        return self.entries.get(component_id)


@dataclass(slots=True)
class Artifact:
    """Verified bytes of one locked component, exploded into relative paths."""

    locked: LockedComponent
    digest: str
    files: Dict[str, bytes] = field(default_factory=dict)

    @property
    def paths(self) -> List[str]:
        return sorted(self.files)


@dataclass(slots=True)
class LedgerEntry:
    path: str
    hash: str
    owner: str
    contributors: Tuple[str, ...] = ()

    @property
    def is_merged(self) -> bool:
        return self.owner == MERGED_OWNER


@dataclass(slots=True)
class ComponentRecord:
    id: str
    version: str
    hash: str


@dataclass(slots=True)
class DeletionAction:
    path: str
    owner: str
    reason: str


@dataclass(slots=True)
class ActionResult:
    component_id: str
    version: str
    status: ActionStatus
    written: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: str | None = None

    @property
    def label(self) -> str:
        return f"{self.component_id}@{self.version}" if self.version else self.component_id


@dataclass(slots=True)
class RunSummary:
    results: List[ActionResult] = field(default_factory=list)
    deletions: List[ActionResult] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False

    def add(self, result: ActionResult) -> None:
        self.results.append(result)

    def by_status(self, status: ActionStatus) -> List[ActionResult]:
        return [result for result in (*self.deletions, *self.results) if result.status == status]

    @property
    def applied(self) -> List[ActionResult]:
        return self.by_status(ActionStatus.APPLIED)

    @property
    def skipped(self) -> List[ActionResult]:
        return self.by_status(ActionStatus.SKIPPED)

    @property
    def failed(self) -> List[ActionResult]:
        return self.by_status(ActionStatus.FAILED)

    @property
    def warnings(self) -> List[Tuple[str, str]]:
        collected: List[Tuple[str, str]] = []
        for result in (*self.deletions, *self.results):
            collected.extend((result.label, warning) for warning in result.warnings)
        return collected

    @property
    def action_count(self) -> int:
        return len(self.applied) + len(self.failed) + len(self.skipped)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0
