from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import PurePosixPath
from typing import Dict, Mapping

from .documents import DocumentFormat, default_suffix_table, get_format
from .models import ApplyPolicy
from .text_utils import normalize_relative_path


@dataclass(slots=True)
class ClassificationTable:
    """Path classification used to pick an apply policy.

    ``suffixes`` maps a lower-case file suffix to a registered document format.
    ``overrides`` maps glob patterns over relative paths to a fixed policy and
    is consulted first, in insertion order.
    """

    suffixes: Dict[str, str] = field(default_factory=default_suffix_table)
    overrides: Dict[str, ApplyPolicy] = field(default_factory=dict)
    default_merge_policy: ApplyPolicy = ApplyPolicy.MERGE_OVERRIDE

    @classmethod
    def build(
        cls,
        extra_suffixes: Mapping[str, str] | None = None,
        overrides: Mapping[str, ApplyPolicy] | None = None,
        default_merge_policy: ApplyPolicy = ApplyPolicy.MERGE_OVERRIDE,
    ) -> "ClassificationTable":
        suffixes = default_suffix_table()
        for suffix, format_name in (extra_suffixes or {}).items():
            get_format(format_name)
            key = suffix.lower() if suffix.startswith(".") else f".{suffix.lower()}"
            suffixes[key] = format_name
        return cls(
            suffixes=suffixes,
            overrides=dict(overrides or {}),
            default_merge_policy=default_merge_policy,
        )

    def document_format(self, relative_path: str) -> DocumentFormat | None:
        suffix = PurePosixPath(relative_path).suffix.lower()
        format_name = self.suffixes.get(suffix)
        return get_format(format_name) if format_name else None


def evaluate_policy(relative_path: str, table: ClassificationTable) -> ApplyPolicy:
    """Return the apply policy for ``relative_path``; pure lookup."""

    normalized = normalize_relative_path(relative_path)
    for pattern, policy in table.overrides.items():
        if fnmatchcase(normalized, pattern):
            return policy
    if table.document_format(normalized) is None:
        return ApplyPolicy.REPLACE
    return table.default_merge_policy


__all__ = ["ClassificationTable", "evaluate_policy"]
