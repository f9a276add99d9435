from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List

import toml

from .errors import LedgerError
from .file_utils import atomic_write_bytes
from .models import MERGED_OWNER, ComponentRecord, LedgerEntry

LEDGER_FILENAME = ".packledger.toml"


def ledger_path(install_root: Path) -> Path:
    return install_root / LEDGER_FILENAME


@dataclass(slots=True)
class Ledger:
    """What packledger last wrote into one install directory."""

    components: Dict[str, ComponentRecord] = field(default_factory=dict)
    files: Dict[str, LedgerEntry] = field(default_factory=dict)

    def entry(self, path: str) -> LedgerEntry | None:
        return self.files.get(path)

    def record(self, component_id: str) -> ComponentRecord | None:
        return self.components.get(component_id)

    def files_of(self, component_id: str) -> List[LedgerEntry]:
        return [
            entry
            for entry in self.files.values()
            if component_id in (entry.contributors or (entry.owner,))
        ]

    def copy(self) -> "Ledger":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "components": {
                component_id: {"version": record.version, "hash": record.hash}
                for component_id, record in sorted(self.components.items())
            },
            "files": {
                path: {
                    "hash": entry.hash,
                    "owner": entry.owner,
                    "contributors": list(entry.contributors),
                }
                for path, entry in sorted(self.files.items())
            },
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "Ledger":
        ledger = cls()
        for component_id, data in (raw.get("components") or {}).items():
            ledger.components[component_id] = ComponentRecord(
                id=component_id, version=str(data.get("version", "")), hash=str(data["hash"])
            )
        for path, data in (raw.get("files") or {}).items():
            owner = str(data["owner"])
            contributors = tuple(str(name) for name in data.get("contributors") or ())
            if not contributors and owner != MERGED_OWNER:
                contributors = (owner,)
            ledger.files[path] = LedgerEntry(
                path=path, hash=str(data["hash"]), owner=owner, contributors=contributors
            )
        return ledger


def load_ledger(path: Path) -> Ledger:
    if not path.exists():
        return Ledger()
    raw_text = path.read_text(encoding="utf-8")
    try:
        return Ledger.from_dict(toml.loads(raw_text))
    except (toml.TomlDecodeError, KeyError, TypeError, AttributeError) as exc:
        raise LedgerError(f"Ledger {path} is unreadable: {exc}") from exc


def save_ledger(ledger: Ledger, path: Path) -> None:
    """Persist ``ledger`` with write-to-temp-then-rename; the old file survives any failure."""

    try:
        atomic_write_bytes(path, toml.dumps(ledger.to_dict()).encode("utf-8"))
    except OSError as exc:
        raise LedgerError(f"Cannot persist ledger {path}: {exc}") from exc


class LedgerDelta:
    """Changes collected during one run, applied to the base ledger at the end.

    Only the coordinating thread mutates a delta.
    """

    def __init__(self) -> None:
        self.upserts: Dict[str, LedgerEntry] = {}
        self.removals: set[str] = set()
        self.records: Dict[str, ComponentRecord] = {}
        self.dropped_records: set[str] = set()

    def __bool__(self) -> bool:
        return bool(self.upserts or self.removals or self.records or self.dropped_records)

    def put(self, entry: LedgerEntry) -> None:
        self.removals.discard(entry.path)
        self.upserts[entry.path] = entry

    def remove(self, path: str) -> None:
        self.upserts.pop(path, None)
        self.removals.add(path)

    def put_record(self, record: ComponentRecord) -> None:
        self.dropped_records.discard(record.id)
        self.records[record.id] = record

    def drop_record(self, component_id: str) -> None:
        self.records.pop(component_id, None)
        self.dropped_records.add(component_id)

    def apply_to(self, base: Ledger) -> Ledger:
        updated = base.copy()
        for path in self.removals:
            updated.files.pop(path, None)
        updated.files.update(self.upserts)
        for component_id in self.dropped_records:
            updated.components.pop(component_id, None)
        updated.components.update(self.records)
        return updated


def prune_contributors(entry: LedgerEntry, desired: Iterable[str]) -> LedgerEntry | None:
    """Drop contributors that are no longer desired; ``None`` when none remain."""

    desired_ids = set(desired)
    remaining = tuple(name for name in (entry.contributors or (entry.owner,)) if name in desired_ids)
    if not remaining:
        return None
    if remaining == entry.contributors:
        return entry
    owner = remaining[0] if len(remaining) == 1 else MERGED_OWNER
    return LedgerEntry(path=entry.path, hash=entry.hash, owner=owner, contributors=remaining)


__all__ = [
    "LEDGER_FILENAME",
    "ledger_path",
    "Ledger",
    "load_ledger",
    "save_ledger",
    "LedgerDelta",
    "prune_contributors",
]
