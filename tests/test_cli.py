from __future__ import annotations

from pathlib import Path

import pytest

import cli
from packledger.file_utils import compute_digest
from packledger.ledger import ledger_path, load_ledger


@pytest.fixture
def local_pack(tmp_path: Path) -> Path:
    pack = tmp_path / "pack"
    (pack / "files").mkdir(parents=True)
    (pack / "files/sodium.jar").write_bytes(b"sodium")
    (pack / "modpack.toml").write_text('[pack]\nname = "demo"\n\n[mods.sodium]\nname = "Sodium"\n')
    (pack / "modpack.lock").write_text(
        "[mods.sodium]\n"
        'version = "0.5"\n'
        f'hash = "{compute_digest(b"sodium")}"\n'
        'source = "files/sodium.jar"\n'
        'target = "mods/sodium.jar"\n'
    )
    return pack


def _base_args(tmp_path: Path) -> list[str]:
    return ["--config-path", str(tmp_path / "missing.toml"), "--profiles-dir", str(tmp_path / "profiles")]


def test_install_from_local_pack(tmp_path: Path, local_pack: Path) -> None:
    instance = tmp_path / "instance"

    code = cli.main(_base_args(tmp_path) + ["install", "--pack", str(local_pack), "--instance", str(instance)])

    assert code == 0
    assert (instance / "mods/sodium.jar").read_bytes() == b"sodium"
    assert "sodium" in load_ledger(ledger_path(instance)).components


def test_install_dry_run_writes_nothing(tmp_path: Path, local_pack: Path) -> None:
    instance = tmp_path / "instance"

    code = cli.main(
        _base_args(tmp_path) + ["install", "--dry-run", "--pack", str(local_pack), "--instance", str(instance)]
    )

    assert code == 0
    assert not (instance / "mods").exists()


def test_install_through_saved_profile_with_report(tmp_path: Path, local_pack: Path) -> None:
    instance = tmp_path / "instance"
    base = _base_args(tmp_path)
    assert cli.main(base + ["profile", "add", "demo", "--pack", str(local_pack), "--instance", str(instance)]) == 0

    code = cli.main(base + ["install", "--profile", "demo", "--export-path", str(tmp_path / "reports")])

    assert code == 0
    assert (tmp_path / "reports/packledger_report.xlsx").exists()


def test_bad_manifest_exits_with_error_code(tmp_path: Path) -> None:
    pack = tmp_path / "pack"
    pack.mkdir()

    code = cli.main(_base_args(tmp_path) + ["plan", "--pack", str(pack), "--instance", str(tmp_path / "i")])

    assert code == 2
