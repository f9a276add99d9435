from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

import toml

from .errors import ConfigError
from .file_utils import atomic_write_bytes, ensure_directory
from .ledger import Ledger, ledger_path, load_ledger
from .load_config import load_lock, load_manifest
from .logging_utils import log_info
from .models import InstallSide, Lock, Manifest

CONFIG_DIR_NAME = "packledger"
PROFILES_FILENAME = "profiles.toml"


def default_config_dir() -> Path:
    return Path.home() / ".config" / CONFIG_DIR_NAME


@dataclass(slots=True)
class ProfileState:
    manifest: Manifest
    lock: Lock
    ledger: Ledger


@dataclass(slots=True)
class Profile:
    name: str
    pack_dir: Path
    install_dir: Path
    side: InstallSide = InstallSide.BOTH

    def load_state(self) -> ProfileState:
        manifest = load_manifest(self.pack_dir)
        lock = load_lock(self.pack_dir, manifest)
        return ProfileState(manifest=manifest, lock=lock, ledger=load_ledger(ledger_path(self.install_dir)))


@dataclass(slots=True)
class ProfileStore:
    """Named profiles persisted in the user's config directory."""

    config_dir: Path = field(default_factory=default_config_dir)
    profiles: Dict[str, Profile] = field(default_factory=dict)

    @property
    def path(self) -> Path:
        return self.config_dir / PROFILES_FILENAME

    @classmethod
    def load(cls, config_dir: Path | None = None) -> "ProfileStore":
        store = cls(config_dir=config_dir or default_config_dir())
        if not store.path.exists():
            return store
        try:
            raw = toml.loads(store.path.read_text(encoding="utf-8"))
            for name, data in (raw.get("profiles") or {}).items():
                store.profiles[name] = Profile(
                    name=name,
                    pack_dir=Path(data["pack_dir"]),
                    install_dir=Path(data["install_dir"]),
                    side=InstallSide(data.get("side", InstallSide.BOTH.value)),
                )
        except (toml.TomlDecodeError, KeyError, ValueError) as exc:
            raise ConfigError(f"Invalid profiles file {store.path}: {exc}") from exc
        return store

    def save(self) -> None:
        if not self.config_dir.exists():
            log_info(f"Creating config directory {self.config_dir}...")
            ensure_directory(self.config_dir)
        payload = {
            "profiles": {
                name: {
                    "pack_dir": str(profile.pack_dir),
                    "install_dir": str(profile.install_dir),
                    "side": profile.side.value,
                }
                for name, profile in sorted(self.profiles.items())
            }
        }
        atomic_write_bytes(self.path, toml.dumps(payload).encode("utf-8"))

    def names(self) -> List[str]:
        return sorted(self.profiles)

    def add(self, profile: Profile) -> None:
        """Add or replace a profile."""
        self.profiles[profile.name] = profile

    def get(self, name: str) -> Profile:
        try:
            return self.profiles[name]
        except KeyError as exc:
            raise ConfigError(f"Profile '{name}' does not exist") from exc

    def remove(self, name: str) -> None:
        self.get(name)
        del self.profiles[name]


__all__ = ["Profile", "ProfileState", "ProfileStore", "default_config_dir"]
