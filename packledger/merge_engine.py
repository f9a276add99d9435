from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Hashable, Iterable, List, Sequence, Tuple

from .documents import DocumentFormat, MapNode, Node, decode_document, encode_document
from .errors import ConflictError, MergeParseError, PathValidationError
from .file_utils import atomic_write_bytes, compute_digest, digest_algorithm, digests_match, resolve_destination
from .models import MERGED_OWNER, ApplyPolicy, Artifact, LedgerEntry
from .policy import ClassificationTable, evaluate_policy

EntryLookup = Callable[[str], "LedgerEntry | None"]


def _format_key_path(path: Sequence[Hashable]) -> str:
    return "/" + "/".join(str(part) for part in path)


def _merge_node(
    existing: Node,
    incoming: Node,
    policy: ApplyPolicy,
    path: Tuple[Hashable, ...],
    warnings: List[str],
) -> Node:
    if isinstance(existing, MapNode) and isinstance(incoming, MapNode):
        merged = MapNode(dict(existing.entries))
        for key, incoming_value in incoming.entries.items():
            if key in merged.entries:
                merged.entries[key] = _merge_node(
                    merged.entries[key], incoming_value, policy, path + (key,), warnings
                )
            else:
                merged.entries[key] = copy.deepcopy(incoming_value)
        return merged

    incoming_wins = policy == ApplyPolicy.MERGE_OVERRIDE
    if existing.kind != incoming.kind:
        kept = incoming.kind if incoming_wins else existing.kind
        warnings.append(
            f"{_format_key_path(path)}: existing {existing.kind} conflicts with incoming "
            f"{incoming.kind}; kept the {kept}"
        )
    # Lists are never merged element-wise; they move as one value.
    return copy.deepcopy(incoming) if incoming_wins else existing


def merge_nodes(existing: Node, incoming: Node, policy: ApplyPolicy) -> Tuple[Node, List[str]]:
    """Merge ``incoming`` into ``existing`` under a merge policy.

    Maps are combined key by key and recursively. For keys present on both
    sides, ``MERGE_OVERRIDE`` keeps the incoming value and ``MERGE_RETAIN``
    keeps the existing one; keys present on one side only always survive.
    Lists and scalars are replaced or retained whole. Mismatched node kinds
    are resolved in favour of the winning side and reported as warnings.
    """

    if not policy.is_merge:
        raise ValueError(f"{policy.value} is not a merge policy")
    warnings: List[str] = []
    merged = _merge_node(existing, incoming, policy, (), warnings)
    return merged, warnings


def merge_documents(
    existing: bytes,
    incoming: bytes,
    document_format: DocumentFormat,
    policy: ApplyPolicy,
    label: str = "<document>",
) -> Tuple[bytes, List[str]]:
    existing_node = decode_document(existing, document_format, f"existing {label}")
    incoming_node = decode_document(incoming, document_format, f"incoming {label}")
    merged, warnings = merge_nodes(existing_node, incoming_node, policy)
    return encode_document(merged, document_format), warnings


@dataclass(slots=True)
class FileOutcome:
    path: str
    policy: ApplyPolicy
    status: str
    hash: str | None = None
    owner: str | None = None
    contributors: Tuple[str, ...] = ()
    warnings: List[str] = field(default_factory=list)

    @property
    def recorded(self) -> bool:
        return self.hash is not None

    def ledger_entry(self) -> LedgerEntry:
        assert self.hash is not None and self.owner is not None, "Only recorded outcomes have entries"
        return LedgerEntry(
            path=self.path, hash=self.hash, owner=self.owner, contributors=self.contributors
        )


@dataclass(slots=True)
class ApplyOutcome:
    component_id: str
    files: List[FileOutcome] = field(default_factory=list)

    @property
    def warnings(self) -> List[str]:
        return [warning for outcome in self.files for warning in outcome.warnings]

    @property
    def conflicts(self) -> List[FileOutcome]:
        return [outcome for outcome in self.files if outcome.status == "conflict"]


class MergeEngine:
    """Places artifacts into an install root under per-path apply policies."""

    def __init__(
        self,
        root: Path,
        table: ClassificationTable,
        reserved_paths: Iterable[str] = (),
    ) -> None:
        self.root = root
        self.table = table
        self.reserved_paths = tuple(reserved_paths)

    def destination(self, relative: str) -> Path:
        return resolve_destination(self.root, relative, self.reserved_paths)

    def validate(self, artifact: Artifact) -> Dict[str, Path]:
        """Resolve every artifact path, rejecting the artifact if any escapes the root."""

        destinations: Dict[str, Path] = {}
        for relative in artifact.paths:
            try:
                destinations[relative] = self.destination(relative)
            except PathValidationError as exc:
                raise PathValidationError(
                    f"Artifact {artifact.locked.label} rejected: {exc}"
                ) from exc
        return destinations

    def apply(
        self,
        artifact: Artifact,
        lookup: EntryLookup,
        outcome: ApplyOutcome | None = None,
    ) -> ApplyOutcome:
        """Place every file of ``artifact``.

        ``lookup`` returns the current ledger entry for a relative path, so
        earlier placements in the same run are seen. Outcomes are appended to
        ``outcome`` as each file finishes, which keeps them available to the
        caller if a later file raises.
        """

        destinations = self.validate(artifact)
        if outcome is None:
            outcome = ApplyOutcome(component_id=artifact.locked.id)
        for relative, destination in destinations.items():
            outcome.files.append(
                self.place_file(
                    relative,
                    artifact.files[relative],
                    destination,
                    artifact.locked.id,
                    lookup(relative),
                    apply_once=artifact.locked.apply_once,
                    algorithm=digest_algorithm(artifact.locked.hash),
                )
            )
        return outcome

    def place_file(
        self,
        relative: str,
        data: bytes,
        destination: Path,
        component_id: str,
        previous: LedgerEntry | None,
        apply_once: bool = False,
        algorithm: str = "sha512",
    ) -> FileOutcome:
        policy = evaluate_policy(relative, self.table)
        exists = destination.is_file()
        if destination.exists() and not exists:
            raise PathValidationError(f"Destination {relative} exists and is not a file")

        if apply_once and exists:
            return FileOutcome(relative, policy, "apply-once")

        if not exists:
            return self._write(relative, data, destination, policy, component_id, None, algorithm)

        warnings: List[str] = []
        if policy.is_merge:
            document_format = self.table.document_format(relative)
            if document_format is None:
                warnings.append(f"{relative}: no parser for this file type; replacing instead")
            else:
                try:
                    merged, merge_warnings = merge_documents(
                        destination.read_bytes(), data, document_format, policy, relative
                    )
                except MergeParseError as exc:
                    warnings.append(f"{exc}; replacing instead")
                else:
                    warnings.extend(f"{relative} {warning}" for warning in merge_warnings)
                    return self._write(
                        relative, merged, destination, policy, component_id, previous, algorithm, warnings
                    )

        try:
            self._check_replace(relative, destination, previous)
        except ConflictError as exc:
            warnings.append(f"Skipped {exc}")
            return FileOutcome(relative, policy, "conflict", warnings=warnings)
        if previous is None:
            warnings.append(f"{relative}: replaced a file not created by packledger")
        return self._write(
            relative, data, destination, ApplyPolicy.REPLACE, component_id, None, algorithm, warnings
        )

    @staticmethod
    def _check_replace(relative: str, destination: Path, previous: LedgerEntry | None) -> None:
        if previous is None:
            return
        live = compute_digest(destination.read_bytes(), digest_algorithm(previous.hash))
        if not digests_match(previous.hash, live):
            raise ConflictError(relative, "modified since packledger wrote it; not replacing")

    @staticmethod
    def _write(
        relative: str,
        data: bytes,
        destination: Path,
        policy: ApplyPolicy,
        component_id: str,
        previous: LedgerEntry | None,
        algorithm: str,
        warnings: List[str] | None = None,
    ) -> FileOutcome:
        if not (destination.is_file() and destination.read_bytes() == data):
            atomic_write_bytes(destination, data)
        contributors: Tuple[str, ...] = (component_id,)
        if previous is not None and policy.is_merge:
            known = previous.contributors or (previous.owner,)
            contributors = tuple(dict.fromkeys((*known, component_id)))
            contributors = tuple(name for name in contributors if name != MERGED_OWNER)
        owner = contributors[0] if len(contributors) == 1 else MERGED_OWNER
        return FileOutcome(
            path=relative,
            policy=policy,
            status="written",
            hash=compute_digest(data, algorithm),
            owner=owner,
            contributors=contributors,
            warnings=list(warnings or []),
        )


__all__ = [
    "merge_nodes",
    "merge_documents",
    "FileOutcome",
    "ApplyOutcome",
    "MergeEngine",
]
