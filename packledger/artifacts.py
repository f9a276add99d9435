from __future__ import annotations

import io
import stat
import zipfile
from typing import Dict

from .errors import ArtifactError, IntegrityError, PathValidationError
from .file_utils import compute_digest, digest_algorithm, digests_match
from .models import Artifact, LockedComponent
from .resolver import FetchResult
from .text_utils import is_unsafe_relative_path, join_relative


def verify_fetch(locked: LockedComponent, fetched: FetchResult) -> str:
    """Hash the fetched bytes and check them, and the source's own digest, against the lock."""

    actual = compute_digest(fetched.data, digest_algorithm(locked.hash))
    if not digests_match(locked.hash, actual):
        raise IntegrityError(locked.id, locked.hash, actual)
    if not digests_match(locked.hash, fetched.digest):
        raise IntegrityError(locked.id, locked.hash, fetched.digest)
    return actual


def _explode_archive(locked: LockedComponent, data: bytes) -> Dict[str, bytes]:
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise ArtifactError(f"{locked.label} is not a valid zip archive") from exc

    files: Dict[str, bytes] = {}
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            if is_unsafe_relative_path(info.filename):
                raise PathValidationError(
                    f"{locked.label} contains an entry outside its root: '{info.filename}'"
                )
            mode = info.external_attr >> 16
            if stat.S_ISLNK(mode):
                raise PathValidationError(f"{locked.label} contains a symlink: '{info.filename}'")
            relative = join_relative(locked.target, info.filename)
            if relative in files:
                raise ArtifactError(f"{locked.label} contains '{relative}' twice")
            files[relative] = archive.read(info)
    return files


def build_artifact(locked: LockedComponent, fetched: FetchResult) -> Artifact:
    """Verify fetched bytes against the lock and expand them into relative paths.

    Nothing is written here: a hash mismatch or an unsafe archive entry
    rejects the artifact before the merge engine sees it.
    """

    digest = verify_fetch(locked, fetched)
    if locked.archive:
        files = _explode_archive(locked, fetched.data)
    else:
        files = {locked.target: fetched.data}
    return Artifact(locked=locked, digest=digest, files=files)


__all__ = ["verify_fetch", "build_artifact"]
