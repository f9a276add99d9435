from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path
from typing import Iterable

from .errors import PathValidationError
from .text_utils import is_unsafe_relative_path, normalize_relative_path

DEFAULT_HASH_ALGORITHM = "sha512"


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def compute_digest(data: bytes, algorithm: str = DEFAULT_HASH_ALGORITHM) -> str:
    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def split_digest(digest: str) -> tuple[str, str]:
    """Split ``algorithm:hex``; bare hex is taken as the default algorithm."""

    if ":" in digest:
        algorithm, value = digest.split(":", 1)
        return algorithm.strip().lower(), value.strip().lower()
    return DEFAULT_HASH_ALGORITHM, digest.strip().lower()


def digest_algorithm(digest: str) -> str:
    return split_digest(digest)[0]


def digests_match(expected: str, actual: str) -> bool:
    return split_digest(expected) == split_digest(actual)


def hash_file(path: Path, algorithm: str = DEFAULT_HASH_ALGORITHM) -> str | None:
    if not path.is_file():
        return None
    return compute_digest(path.read_bytes(), algorithm)


def atomic_write_bytes(destination: Path, data: bytes) -> None:
    """Write ``data`` next to ``destination`` and rename it into place."""

    ensure_directory(destination.parent)
    handle, temp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
    )
    try:
        with os.fdopen(handle, "wb") as writer:
            writer.write(data)
            writer.flush()
            os.fsync(writer.fileno())
        os.replace(temp_name, destination)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def resolve_destination(root: Path, relative: str, reserved: Iterable[str] = ()) -> Path:
    """Map a relative install path onto ``root``, refusing anything outside it."""

    if is_unsafe_relative_path(relative):
        raise PathValidationError(f"Refusing unsafe path '{relative}'")
    normalized = normalize_relative_path(relative)
    if normalized in set(reserved):
        raise PathValidationError(f"Path '{normalized}' is reserved")
    base = root.resolve()
    candidate = (base / normalized).resolve()
    try:
        candidate.relative_to(base)
    except ValueError as exc:
        raise PathValidationError(f"Path '{relative}' escapes install root {base}") from exc
    return candidate


def remove_file(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


__all__ = [
    "ensure_directory",
    "compute_digest",
    "split_digest",
    "digest_algorithm",
    "digests_match",
    "hash_file",
    "atomic_write_bytes",
    "resolve_destination",
    "remove_file",
]
