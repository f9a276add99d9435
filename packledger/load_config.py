from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

import toml

from .errors import ConfigError, LockError, ManifestError
from .file_utils import atomic_write_bytes, split_digest
from .logging_utils import log_warn
from .models import ApplyPolicy, Component, Lock, LockedComponent, Manifest, Side
from .policy import ClassificationTable
from .text_utils import is_unsafe_relative_path, normalize_relative_path

MANIFEST_FILENAME = "modpack.toml"
LOCK_FILENAME = "modpack.lock"
CONFIG_FILENAME = "packledger.toml"

DEFAULT_WORKERS = 4
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF = 0.5


@dataclass(slots=True)
class ProgramConfig:
    workers: int = DEFAULT_WORKERS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    default_merge_policy: ApplyPolicy = ApplyPolicy.MERGE_OVERRIDE
    formats: Dict[str, str] = field(default_factory=dict)
    policies: Dict[str, ApplyPolicy] = field(default_factory=dict)
    export_report: Path | None = None

    def classification_table(self) -> ClassificationTable:
        try:
            return ClassificationTable.build(
                extra_suffixes=self.formats,
                overrides=self.policies,
                default_merge_policy=self.default_merge_policy,
            )
        except KeyError as exc:
            raise ConfigError(str(exc)) from exc


def _read_toml(path: Path, error_type: type[Exception], what: str) -> dict:
    raw_text = path.read_text(encoding="utf-8")
    try:
        return toml.loads(raw_text)
    except toml.TomlDecodeError as exc:
        raise error_type(f"Invalid TOML in {what}: {path}") from exc


def _parse_policy(raw: object, where: str) -> ApplyPolicy:
    try:
        return ApplyPolicy(str(raw).strip().lower())
    except ValueError as exc:
        choices = ", ".join(policy.value for policy in ApplyPolicy)
        raise ConfigError(f"Invalid policy '{raw}' for {where}. Expected one of: {choices}") from exc


def load_program_config(config_path: Path) -> ProgramConfig:
    """Load tool settings; a missing file yields the defaults."""

    if not config_path.exists():
        log_warn(f"Config file {config_path} not found. Proceeding with defaults.")
        return ProgramConfig()

    config = _read_toml(config_path, ConfigError, "config file")
    try:
        workers = int(config.get("workers", DEFAULT_WORKERS))
        retry_attempts = int(config.get("retry_attempts", DEFAULT_RETRY_ATTEMPTS))
        retry_backoff = float(config.get("retry_backoff", DEFAULT_RETRY_BACKOFF))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric setting in {config_path}: {exc}") from exc
    if workers < 1 or retry_attempts < 1 or retry_backoff < 0:
        raise ConfigError(f"workers and retry_attempts must be >= 1 and retry_backoff >= 0 in {config_path}")

    policies = {
        str(pattern): _parse_policy(value, f"pattern '{pattern}'")
        for pattern, value in (config.get("policies") or {}).items()
    }
    export_report = config.get("export_report") or None

    return ProgramConfig(
        workers=workers,
        retry_attempts=retry_attempts,
        retry_backoff=retry_backoff,
        default_merge_policy=_parse_policy(
            config.get("default_merge_policy", ApplyPolicy.MERGE_OVERRIDE.value), "default_merge_policy"
        ),
        formats={str(suffix): str(name) for suffix, name in (config.get("formats") or {}).items()},
        policies=policies,
        export_report=Path(export_report) if export_report else None,
    )


def load_manifest(pack_dir: Path) -> Manifest:
    manifest_path = pack_dir / MANIFEST_FILENAME
    if not manifest_path.exists():
        raise ManifestError(f"Directory '{pack_dir}' does not contain a {MANIFEST_FILENAME}.")

    config = _read_toml(manifest_path, ManifestError, "manifest")
    pack = config.get("pack") or {}
    forbidden: List[str] = [str(name) for name in pack.get("forbidden") or []]
    manifest = Manifest(name=str(pack.get("name", pack_dir.name)), forbidden=forbidden)

    for component_id, data in (config.get("mods") or {}).items():
        if component_id in forbidden:
            raise ManifestError(f"Mod '{component_id}' is forbidden in this pack")
        data = data or {}
        try:
            side = Side.parse(str(data.get("side", Side.UNIVERSAL.value)))
        except ValueError as exc:
            raise ManifestError(f"Invalid side '{data.get('side')}' for mod '{component_id}'") from exc
        manifest.components[component_id] = Component(
            id=component_id, name=str(data.get("name", component_id)), side=side
        )
    return manifest


def _parse_lock_entry(component: Component, data: dict, lock_path: Path) -> LockedComponent:
    try:
        version = str(data["version"])
        digest = str(data["hash"])
        source = str(data["source"])
        target = str(data["target"])
    except KeyError as exc:
        raise LockError(f"Lock entry '{component.id}' in {lock_path} is missing {exc}") from exc
    if not split_digest(digest)[1]:
        raise LockError(f"Lock entry '{component.id}' has an empty hash")
    archive = bool(data.get("archive", False))
    if is_unsafe_relative_path(target) and not (archive and normalize_relative_path(target) == ""):
        raise LockError(f"Lock entry '{component.id}' has an unsafe target '{target}'")
    return LockedComponent(
        component=component,
        version=version,
        hash=digest,
        source=source,
        target=normalize_relative_path(target),
        archive=archive,
        apply_once=bool(data.get("apply_once", False)),
    )


def load_lock(pack_dir: Path, manifest: Manifest) -> Lock:
    lock_path = pack_dir / LOCK_FILENAME
    if not lock_path.exists():
        raise LockError(f"No {LOCK_FILENAME} found in '{pack_dir}'. Run an update to pin the pack.")

    config = _read_toml(lock_path, LockError, "lock file")
    lock = Lock()
    for component_id, data in (config.get("mods") or {}).items():
        component = manifest.components.get(component_id)
        if component is None:
            log_warn(f"Lock entry '{component_id}' is not declared in the manifest. Ignoring it.")
            continue
        lock.entries[component_id] = _parse_lock_entry(component, data or {}, lock_path)
    check_lock_consistency(manifest, lock)
    return lock


def check_lock_consistency(manifest: Manifest, lock: Lock) -> None:
    missing = sorted(set(manifest.components) - set(lock.entries))
    if missing:
        raise LockError(f"Mods declared but not locked: {', '.join(missing)}")


def save_lock(pack_dir: Path, lock: Lock) -> Path:
    lock_path = pack_dir / LOCK_FILENAME
    mods: Dict[str, dict] = {}
    for component_id, locked in sorted(lock.entries.items()):
        mods[component_id] = {
            "version": locked.version,
            "hash": locked.hash,
            "source": locked.source,
            "target": locked.target,
            "archive": locked.archive,
            "apply_once": locked.apply_once,
        }
    atomic_write_bytes(lock_path, toml.dumps({"mods": mods}).encode("utf-8"))
    return lock_path


__all__ = [
    "MANIFEST_FILENAME",
    "LOCK_FILENAME",
    "CONFIG_FILENAME",
    "ProgramConfig",
    "load_program_config",
    "load_manifest",
    "load_lock",
    "save_lock",
    "check_lock_consistency",
]
