from __future__ import annotations


class PackLedgerError(Exception):
    """Base class for every error raised by packledger."""


class ManifestError(PackLedgerError):
    pass


class LockError(PackLedgerError):
    pass


class ConfigError(PackLedgerError):
    pass


class IntegrityError(PackLedgerError):
    """Fetched bytes do not match the hash recorded in the lock."""

    def __init__(self, component_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Hash mismatch for '{component_id}': expected {expected}, got {actual}"
        )
        self.component_id = component_id
        self.expected = expected
        self.actual = actual


class RetrievalError(PackLedgerError):
    retryable = False


class RetryableRetrievalError(RetrievalError):
    retryable = True


class TerminalRetrievalError(RetrievalError):
    retryable = False


class ConflictError(PackLedgerError):
    """A tool-owned file was edited by the user and the planned action would destroy it."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class MergeParseError(PackLedgerError):
    pass


class PathValidationError(PackLedgerError):
    pass


class LedgerError(PackLedgerError):
    pass


class ArtifactError(PackLedgerError):
    """Verified bytes that cannot be unpacked into files."""


class ReconcileCancelled(PackLedgerError):
    pass


__all__ = [
    "PackLedgerError",
    "ManifestError",
    "LockError",
    "ConfigError",
    "IntegrityError",
    "RetrievalError",
    "RetryableRetrievalError",
    "TerminalRetrievalError",
    "ConflictError",
    "MergeParseError",
    "PathValidationError",
    "LedgerError",
    "ArtifactError",
    "ReconcileCancelled",
]
