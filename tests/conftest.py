"""Shared fixtures: an in-memory mod source and lock builders."""

from __future__ import annotations

import io
import threading
import zipfile
from pathlib import Path
from typing import Callable, Dict, List

import pytest

from packledger.file_utils import compute_digest
from packledger.models import Component, Lock, LockedComponent, Side
from packledger.resolver import FetchResult


class FakeSource:
    """Serves bytes by token and can be told to fail or trigger hooks."""

    def __init__(self) -> None:
        self.payloads: Dict[str, bytes] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def serve(self, token: str, data: bytes) -> None:
        self.payloads[token] = data

    def fail(self, token: str, *errors: Exception) -> None:
        self.failures[token] = list(errors)

    def fetch(self, token, cancel_event=None, algorithm="sha512") -> FetchResult:
        with self._lock:
            self.calls.append(token)
            pending = self.failures.get(token)
            error = pending.pop(0) if pending else None
        hook = self.hooks.get(token)
        if hook is not None:
            hook()
        if error is not None:
            raise error
        data = self.payloads[token]
        return FetchResult(data=data, digest=compute_digest(data, algorithm))


def make_zip(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in entries.items():
            archive.writestr(zipfile.ZipInfo(name), data)
    return buffer.getvalue()


class PackBuilder:
    """Builds locks whose entries are served by a :class:`FakeSource`."""

    def __init__(self, source: FakeSource) -> None:
        self.source = source

    def locked(
        self,
        component_id: str,
        data: bytes,
        target: str,
        version: str = "1.0",
        archive: bool = False,
        side: Side = Side.UNIVERSAL,
        apply_once: bool = False,
        digest: str | None = None,
    ) -> LockedComponent:
        token = f"mem://{component_id}/{version}"
        self.source.serve(token, data)
        return LockedComponent(
            component=Component(id=component_id, name=component_id.title(), side=side),
            version=version,
            hash=digest or compute_digest(data),
            source=token,
            target=target,
            archive=archive,
            apply_once=apply_once,
        )

    @staticmethod
    def lock(*entries: LockedComponent) -> Lock:
        return Lock(entries={entry.id: entry for entry in entries})


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def pack(source: FakeSource) -> PackBuilder:
    return PackBuilder(source)


@pytest.fixture
def instance(tmp_path: Path) -> Path:
    root = tmp_path / "instance"
    root.mkdir()
    return root


@pytest.fixture
def zip_bytes() -> Callable[[Dict[str, bytes]], bytes]:
    return make_zip
