"""Mod sources: turn a lock entry's source token into verified bytes."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Protocol
from urllib.parse import urlparse

import requests

from .errors import (
    ReconcileCancelled,
    RetrievalError,
    RetryableRetrievalError,
    TerminalRetrievalError,
)
from .file_utils import DEFAULT_HASH_ALGORITHM, compute_digest
from .logging_utils import log_warn

DEFAULT_TIMEOUT = 30.0
CHUNK_SIZE = 64 * 1024
TERMINAL_STATUS_CODES = {400, 401, 403, 404, 410}


@dataclass(frozen=True, slots=True)
class FetchResult:
    data: bytes
    digest: str


class ModSource(Protocol):
    def fetch(
        self,
        token: str,
        cancel_event: threading.Event | None = None,
        algorithm: str = DEFAULT_HASH_ALGORITHM,
    ) -> FetchResult:
        """Return the bytes behind ``token`` and their independently computed digest.

        Raises :class:`RetryableRetrievalError` for transient failures and
        :class:`TerminalRetrievalError` when the content cannot exist.
        """


class LocalSource:
    """Serves ``file:`` tokens and bare relative paths from the pack directory."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def fetch(
        self,
        token: str,
        cancel_event: threading.Event | None = None,
        algorithm: str = DEFAULT_HASH_ALGORITHM,
    ) -> FetchResult:
        raw_path = token[len("file:"):] if token.startswith("file:") else token
        path = Path(raw_path)
        if not path.is_absolute():
            path = self.base_dir / path
        if not path.is_file():
            raise TerminalRetrievalError(f"Local source {path} not found")
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise RetryableRetrievalError(f"Cannot read {path}: {exc}") from exc
        return FetchResult(data=data, digest=compute_digest(data, algorithm))


class HttpSource:
    def __init__(self, session: requests.Session | None = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(
        self,
        token: str,
        cancel_event: threading.Event | None = None,
        algorithm: str = DEFAULT_HASH_ALGORITHM,
    ) -> FetchResult:
        try:
            response = self.session.get(token, stream=True, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise RetryableRetrievalError(f"Cannot reach {token}: {exc}") from exc
        except requests.RequestException as exc:
            raise TerminalRetrievalError(f"Invalid request for {token}: {exc}") from exc

        with response:
            if response.status_code in TERMINAL_STATUS_CODES:
                raise TerminalRetrievalError(f"{token} returned HTTP {response.status_code}")
            if response.status_code == 429 or response.status_code >= 500:
                raise RetryableRetrievalError(f"{token} returned HTTP {response.status_code}")
            if response.status_code >= 300:
                raise TerminalRetrievalError(f"{token} returned HTTP {response.status_code}")

            chunks = []
            try:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if cancel_event is not None and cancel_event.is_set():
                        raise ReconcileCancelled(f"Download of {token} cancelled")
                    chunks.append(chunk)
            except (requests.ConnectionError, requests.Timeout) as exc:
                raise RetryableRetrievalError(f"Download of {token} interrupted: {exc}") from exc
        data = b"".join(chunks)
        return FetchResult(data=data, digest=compute_digest(data, algorithm))


class SourceResolver:
    """Dispatches source tokens to a :class:`ModSource` by URL scheme."""

    def __init__(self, sources: Dict[str, ModSource], default: ModSource | None = None) -> None:
        self.sources = dict(sources)
        self.default = default

    @classmethod
    def for_pack(cls, pack_dir: Path, session: requests.Session | None = None) -> "SourceResolver":
        local = LocalSource(pack_dir)
        http = HttpSource(session=session)
        return cls({"file": local, "http": http, "https": http}, default=local)

    def source_for(self, token: str) -> ModSource:
        scheme = urlparse(token).scheme.lower()
        # A single letter scheme is a Windows drive, not a URL.
        if len(scheme) > 1 and scheme in self.sources:
            return self.sources[scheme]
        if len(scheme) > 1 or self.default is None:
            raise TerminalRetrievalError(f"No source can handle '{token}'")
        return self.default

    def fetch(
        self,
        token: str,
        cancel_event: threading.Event | None = None,
        algorithm: str = DEFAULT_HASH_ALGORITHM,
    ) -> FetchResult:
        return self.source_for(token).fetch(token, cancel_event, algorithm)


def fetch_with_retry(
    source: ModSource,
    token: str,
    attempts: int = 3,
    backoff: float = 0.5,
    cancel_event: threading.Event | None = None,
    algorithm: str = DEFAULT_HASH_ALGORITHM,
    sleep: Callable[[float], None] = time.sleep,
) -> FetchResult:
    """Fetch ``token``, retrying transient failures with exponential backoff."""

    delay = backoff
    for attempt in range(1, max(attempts, 1) + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise ReconcileCancelled(f"Fetch of {token} cancelled")
        try:
            return source.fetch(token, cancel_event, algorithm)
        except RetryableRetrievalError as exc:
            if attempt >= attempts:
                raise RetrievalError(f"{exc} (gave up after {attempts} attempts)") from exc
            log_warn(f"{exc}; retrying in {delay:.1f}s ({attempt}/{attempts})", indent=2)
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise ReconcileCancelled(f"Fetch of {token} cancelled") from exc
            else:
                sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")


__all__ = [
    "FetchResult",
    "ModSource",
    "LocalSource",
    "HttpSource",
    "SourceResolver",
    "fetch_with_retry",
]
