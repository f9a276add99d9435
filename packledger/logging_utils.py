from __future__ import annotations

import threading

LEVEL_DEFAULT = "info"
QUIET_LEVELS = {"info", "ok", "skip"}

_output_lock = threading.Lock()
_quiet = False


def set_quiet(quiet: bool) -> None:
    global _quiet
    _quiet = quiet


def _normalize_level(level: str | None) -> str:
    if not level:
        return LEVEL_DEFAULT
    return level.strip().lower() or LEVEL_DEFAULT


def log(message: str, level: str = LEVEL_DEFAULT, indent: int = 0) -> None:
    normalized = _normalize_level(level)
    if _quiet and normalized in QUIET_LEVELS:
        return
    prefix = " " * max(indent, 0)
    # Workers log from several threads; keep each line whole.
    with _output_lock:
        print(f"{prefix}[{normalized}] {message}", flush=True)


def log_info(message: str, indent: int = 0) -> None:
    log(message, "info", indent)


def log_warn(message: str, indent: int = 0) -> None:
    log(message, "warn", indent)


def log_error(message: str, indent: int = 0) -> None:
    log(message, "error", indent)


def log_skip(message: str, indent: int = 0) -> None:
    log(message, "skip", indent)


def log_ok(message: str, indent: int = 0) -> None:
    log(message, "ok", indent)
