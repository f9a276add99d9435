from __future__ import annotations

import re
from pathlib import PurePosixPath, PureWindowsPath

SEPARATOR_PATTERN = re.compile(r"[\\/]+")
DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")


def normalize_relative_path(raw: str) -> str:
    """Return ``raw`` as a forward-slash relative path without ``.`` segments.

    ``..`` segments are kept so callers can reject them; absolute paths are
    returned unchanged apart from separator normalization.
    """

    text = SEPARATOR_PATTERN.sub("/", raw.strip())
    leading = "/" if text.startswith("/") else ""
    parts = [part for part in text.split("/") if part and part != "."]
    return leading + "/".join(parts)


def is_unsafe_relative_path(raw: str) -> bool:
    normalized = normalize_relative_path(raw)
    if not normalized:
        return True
    if normalized.startswith("/") or DRIVE_PATTERN.match(normalized):
        return True
    if PurePosixPath(normalized).is_absolute() or PureWindowsPath(raw).is_absolute():
        return True
    return ".." in normalized.split("/")


def join_relative(prefix: str, name: str) -> str:
    prefix = normalize_relative_path(prefix)
    name = normalize_relative_path(name)
    if not prefix:
        return name
    if not name:
        return prefix
    return f"{prefix}/{name}"
