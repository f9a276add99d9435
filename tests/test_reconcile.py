"""End-to-end reconciliation runs against a temporary install directory."""

from __future__ import annotations

import json
import threading

import pytest

from packledger.errors import LedgerError, RetryableRetrievalError, TerminalRetrievalError
from packledger.file_utils import compute_digest
from packledger.ledger import ledger_path, load_ledger
from packledger.load_config import ProgramConfig
from packledger.merge_engine import MergeEngine
from packledger.models import MERGED_OWNER, ActionStatus, ApplyPolicy, InstallSide, Side
from packledger.reconciliation_executor import reconcile
from packledger.resolver import FetchResult


@pytest.fixture
def config() -> ProgramConfig:
    return ProgramConfig(workers=4, retry_attempts=3, retry_backoff=0.0)


def _status(summary, component_id: str) -> ActionStatus:
    for result in (*summary.results, *summary.deletions):
        if result.component_id == component_id:
            return result.status
    raise AssertionError(f"no result for {component_id}")


def test_fresh_install_then_second_run_is_idempotent(pack, source, instance, config, zip_bytes) -> None:
    lock = pack.lock(
        pack.locked("sodium", b"jar bytes", "mods/sodium.jar"),
        pack.locked("tweaks", zip_bytes({"a.json": b'{"x": 1}', "sub/b.toml": b"k = 1\n"}), "config", archive=True),
    )

    first = reconcile(instance, lock, source, config)

    assert _status(first, "sodium") is ActionStatus.APPLIED
    assert (instance / "mods/sodium.jar").read_bytes() == b"jar bytes"
    assert json.loads((instance / "config/a.json").read_text()) == {"x": 1}
    assert (instance / "config/sub/b.toml").exists()
    ledger = load_ledger(ledger_path(instance))
    assert set(ledger.files) == {"mods/sodium.jar", "config/a.json", "config/sub/b.toml"}
    assert set(ledger.components) == {"sodium", "tweaks"}
    ledger_bytes = ledger_path(instance).read_bytes()

    calls_before = len(source.calls)
    second = reconcile(instance, lock, source, config)

    assert second.action_count == 0
    assert all(result.status is ActionStatus.UNCHANGED for result in second.results)
    assert len(source.calls) == calls_before
    assert ledger_path(instance).read_bytes() == ledger_bytes


def test_hash_mismatch_writes_nothing(pack, source, instance, config) -> None:
    lock = pack.lock(
        pack.locked("evil", b"tampered", "mods/evil.jar", digest=compute_digest(b"expected")),
        pack.locked("good", b"fine", "mods/good.jar"),
    )

    summary = reconcile(instance, lock, source, config)

    assert _status(summary, "evil") is ActionStatus.FAILED
    assert "mismatch" in summary.failed[0].error
    assert not (instance / "mods/evil.jar").exists()
    assert (instance / "mods/good.jar").exists()
    assert "evil" not in load_ledger(ledger_path(instance)).components
    assert summary.exit_code == 1


def test_removed_component_is_deleted(pack, source, instance, config) -> None:
    keep = pack.locked("keep", b"k", "mods/keep.jar")
    drop = pack.locked("drop", b"d", "mods/drop.jar")
    reconcile(instance, pack.lock(keep, drop), source, config)

    summary = reconcile(instance, pack.lock(keep), source, config)

    assert _status(summary, "drop") is ActionStatus.APPLIED
    assert summary.deletions[0].deleted == ["mods/drop.jar"]
    assert not (instance / "mods/drop.jar").exists()
    ledger = load_ledger(ledger_path(instance))
    assert set(ledger.files) == {"mods/keep.jar"}
    assert set(ledger.components) == {"keep"}


def test_user_edited_obsolete_file_is_kept(pack, source, instance, config) -> None:
    keep = pack.locked("keep", b"k", "mods/keep.jar")
    drop = pack.locked("drop", b"d", "config/drop.cfg")
    reconcile(instance, pack.lock(keep, drop), source, config)
    (instance / "config/drop.cfg").write_text("my settings")

    summary = reconcile(instance, pack.lock(keep), source, config)

    assert _status(summary, "drop") is ActionStatus.SKIPPED
    assert any("not deleting" in warning for _, warning in summary.warnings)
    assert (instance / "config/drop.cfg").read_text() == "my settings"
    assert reconcile(instance, pack.lock(keep), source, config).action_count == 0


def test_user_edited_file_is_not_replaced_on_update(pack, source, instance, config) -> None:
    reconcile(instance, pack.lock(pack.locked("mod", b"v1", "mods/mod.jar")), source, config)
    (instance / "mods/mod.jar").write_bytes(b"patched by user")

    summary = reconcile(
        instance, pack.lock(pack.locked("mod", b"v2", "mods/mod.jar", version="2.0")), source, config
    )

    assert _status(summary, "mod") is ActionStatus.SKIPPED
    assert (instance / "mods/mod.jar").read_bytes() == b"patched by user"
    ledger = load_ledger(ledger_path(instance))
    assert ledger.entry("mods/mod.jar").hash == compute_digest(b"v1")


def test_update_replaces_untouched_file_and_removes_stale_ones(pack, source, instance, config, zip_bytes) -> None:
    v1 = zip_bytes({"a.txt": b"a1", "old.txt": b"old"})
    v2 = zip_bytes({"a.txt": b"a2", "new.txt": b"new"})
    reconcile(instance, pack.lock(pack.locked("res", v1, "resources", archive=True)), source, config)

    summary = reconcile(
        instance, pack.lock(pack.locked("res", v2, "resources", archive=True, version="2.0")), source, config
    )

    result = summary.results[0]
    assert result.status is ActionStatus.APPLIED
    assert result.deleted == ["resources/old.txt"]
    assert (instance / "resources/a.txt").read_bytes() == b"a2"
    assert (instance / "resources/new.txt").read_bytes() == b"new"
    assert not (instance / "resources/old.txt").exists()
    assert set(load_ledger(ledger_path(instance)).files) == {"resources/a.txt", "resources/new.txt"}


@pytest.mark.parametrize(
    ("policy", "expected_k"),
    [(ApplyPolicy.MERGE_OVERRIDE, "new"), (ApplyPolicy.MERGE_RETAIN, "old")],
)
def test_merge_policies_against_existing_config(pack, source, instance, zip_bytes, policy, expected_k) -> None:
    (instance / "config").mkdir()
    (instance / "config/a.json").write_text(json.dumps({"k": "old", "mine": True}))
    artifact = zip_bytes({"a.json": json.dumps({"k": "new", "added": 1}).encode()})
    config = ProgramConfig(retry_backoff=0.0, default_merge_policy=policy)

    reconcile(instance, pack.lock(pack.locked("cfg", artifact, "config", archive=True)), source, config)

    merged = json.loads((instance / "config/a.json").read_text())
    assert merged == {"k": expected_k, "mine": True, "added": 1}


def test_directory_artifact_only_touches_its_own_paths(pack, source, instance, config, zip_bytes) -> None:
    (instance / "A/B").mkdir(parents=True)
    (instance / "A/a.json").write_text('{"mine": 1}')
    (instance / "A/B/x.txt").write_text("x")
    (instance / "A/B/y.txt").write_text("y")
    artifact = zip_bytes({"a.json": b'{"theirs": 2}', "b.json": b'{"b": true}'})

    reconcile(instance, pack.lock(pack.locked("tree", artifact, "A", archive=True)), source, config)

    assert json.loads((instance / "A/a.json").read_text()) == {"mine": 1, "theirs": 2}
    assert json.loads((instance / "A/b.json").read_text()) == {"b": True}
    assert (instance / "A/B/x.txt").read_text() == "x"
    assert (instance / "A/B/y.txt").read_text() == "y"
    assert set(load_ledger(ledger_path(instance)).files) == {"A/a.json", "A/b.json"}


def test_components_merging_into_one_document_are_serialized(pack, source, instance, zip_bytes) -> None:
    config = ProgramConfig(workers=8, retry_backoff=0.0)
    components = [
        pack.locked(
            f"mod{index}",
            zip_bytes({"shared.json": json.dumps({f"key{index}": index}).encode()}),
            "config",
            archive=True,
        )
        for index in range(6)
    ]

    summary = reconcile(instance, pack.lock(*components), source, config)

    assert all(result.status is ActionStatus.APPLIED for result in summary.results)
    merged = json.loads((instance / "config/shared.json").read_text())
    assert merged == {f"key{index}": index for index in range(6)}
    entry = load_ledger(ledger_path(instance)).entry("config/shared.json")
    assert entry.owner == MERGED_OWNER
    assert set(entry.contributors) == {f"mod{index}" for index in range(6)}
    assert entry.hash == compute_digest((instance / "config/shared.json").read_bytes())


def test_removing_one_contributor_keeps_shared_document(pack, source, instance, config, zip_bytes) -> None:
    first = pack.locked("first", zip_bytes({"shared.json": b'{"a": 1}'}), "config", archive=True)
    second = pack.locked("second", zip_bytes({"shared.json": b'{"b": 2}'}), "config", archive=True)
    reconcile(instance, pack.lock(first, second), source, config)

    summary = reconcile(instance, pack.lock(first), source, config)

    assert not summary.deletions
    assert (instance / "config/shared.json").exists()
    entry = load_ledger(ledger_path(instance)).entry("config/shared.json")
    assert entry.owner == "first" and entry.contributors == ("first",)


def test_archive_with_traversal_is_rejected_before_any_write(pack, source, instance, config, zip_bytes) -> None:
    artifact = zip_bytes({"ok.txt": b"fine", "../../escape.txt": b"bad"})

    summary = reconcile(instance, pack.lock(pack.locked("bad", artifact, "x", archive=True)), source, config)

    assert _status(summary, "bad") is ActionStatus.FAILED
    assert not (instance / "x/ok.txt").exists()
    assert not (instance.parent / "escape.txt").exists()


def test_side_filtering(pack, source, instance, config) -> None:
    lock = pack.lock(
        pack.locked("shaders", b"s", "mods/shaders.jar", side=Side.CLIENT),
        pack.locked("lib", b"l", "mods/lib.jar"),
    )

    reconcile(instance, lock, source, config, side=InstallSide.SERVER)

    assert not (instance / "mods/shaders.jar").exists()
    assert (instance / "mods/lib.jar").exists()


def test_apply_once_keeps_existing_destination(pack, source, instance, config) -> None:
    (instance / "options.txt").write_text("user options")

    summary = reconcile(
        instance, pack.lock(pack.locked("opts", b"defaults", "options.txt", apply_once=True)), source, config
    )

    assert _status(summary, "opts") is ActionStatus.SKIPPED
    assert (instance / "options.txt").read_text() == "user options"
    assert "options.txt" not in load_ledger(ledger_path(instance)).files


def test_retryable_failures_are_retried(pack, source, instance, config) -> None:
    locked = pack.locked("flaky", b"data", "mods/flaky.jar")
    source.fail(locked.source, RetryableRetrievalError("timeout"), RetryableRetrievalError("reset"))

    summary = reconcile(instance, pack.lock(locked), source, config)

    assert _status(summary, "flaky") is ActionStatus.APPLIED
    assert source.calls.count(locked.source) == 3


def test_terminal_failure_only_fails_that_component(pack, source, instance, config) -> None:
    missing = pack.locked("missing", b"x", "mods/missing.jar")
    fine = pack.locked("fine", b"y", "mods/fine.jar")
    source.fail(missing.source, TerminalRetrievalError("404"))

    summary = reconcile(instance, pack.lock(missing, fine), source, config)

    assert _status(summary, "missing") is ActionStatus.FAILED
    assert _status(summary, "fine") is ActionStatus.APPLIED
    assert source.calls.count(missing.source) == 1
    assert summary.exit_code == 1


def test_cancellation_never_records_unwritten_paths(pack, source, instance) -> None:
    cancel = threading.Event()
    first = pack.locked("first", b"1", "mods/first.jar")
    second = pack.locked("second", b"2", "mods/second.jar")
    source.hooks[first.source] = cancel.set
    config = ProgramConfig(workers=1, retry_backoff=0.0)

    summary = reconcile(instance, pack.lock(first, second), source, config, cancel_event=cancel)

    assert summary.cancelled
    ledger = load_ledger(ledger_path(instance))
    for path in ledger.files:
        assert (instance / path).exists()
    assert not (instance / "mods/second.jar").exists()
    assert "second" not in ledger.components


def test_dry_run_changes_nothing(pack, source, instance, config) -> None:
    summary = reconcile(
        instance, pack.lock(pack.locked("mod", b"m", "mods/mod.jar")), source, config, dry_run=True
    )

    assert summary.dry_run
    assert summary.results[0].status is ActionStatus.PLANNED
    assert not (instance / "mods").exists()
    assert not ledger_path(instance).exists()
    assert source.calls == []


def test_ledger_write_failure_aborts_and_keeps_previous_ledger(pack, source, instance, config, monkeypatch) -> None:
    reconcile(instance, pack.lock(pack.locked("a", b"a", "mods/a.jar")), source, config)
    before = ledger_path(instance).read_bytes()

    def failing_save(ledger, path):
        raise LedgerError("disk full")

    monkeypatch.setattr("packledger.reconciliation_executor.save_ledger", failing_save)
    with pytest.raises(LedgerError):
        reconcile(instance, pack.lock(pack.locked("b", b"b", "mods/b.jar")), source, config)

    assert ledger_path(instance).read_bytes() == before


class RestatingSource:
    """Returns other bytes than the lock pins while repeating the pinned digest."""

    def __init__(self, payloads) -> None:
        self.payloads = payloads

    def fetch(self, token, cancel_event=None, algorithm="sha512") -> FetchResult:
        data, digest = self.payloads[token]
        return FetchResult(data=data, digest=digest)


def test_integrity_is_checked_against_the_bytes_not_the_reported_digest(pack, instance, config) -> None:
    locked = pack.locked("alpha", b"genuine", "mods/alpha.jar")
    source = RestatingSource({locked.source: (b"tampered", locked.hash)})

    summary = reconcile(instance, pack.lock(locked), source, config)

    assert _status(summary, "alpha") is ActionStatus.FAILED
    assert not (instance / "mods/alpha.jar").exists()
    assert "alpha" not in load_ledger(ledger_path(instance)).components


def test_overly_nested_document_falls_back_without_aborting_siblings(pack, source, instance, config, zip_bytes) -> None:
    (instance / "config").mkdir()
    (instance / "config/deep.json").write_text('{"mine": 1}')
    lock = pack.lock(
        pack.locked("deep", zip_bytes({"deep.json": b"[" * 100000}), "config", archive=True),
        pack.locked("sibling", b"jar", "mods/sibling.jar"),
    )

    summary = reconcile(instance, lock, source, config)

    assert _status(summary, "sibling") is ActionStatus.APPLIED
    assert _status(summary, "deep") is ActionStatus.APPLIED
    assert any("replacing instead" in warning for _, warning in summary.warnings)
    ledger = load_ledger(ledger_path(instance))
    assert set(ledger.components) == {"deep", "sibling"}


def test_unexpected_placement_error_fails_only_that_component(
    pack, source, instance, config, monkeypatch
) -> None:
    original_apply = MergeEngine.apply

    def apply(self, artifact, lookup, outcome=None):
        if artifact.locked.id == "broken":
            raise RuntimeError("parser bug")
        return original_apply(self, artifact, lookup, outcome)

    monkeypatch.setattr(MergeEngine, "apply", apply)
    lock = pack.lock(
        pack.locked("broken", b"b", "mods/broken.jar"),
        pack.locked("sibling", b"s", "mods/sibling.jar"),
    )

    summary = reconcile(instance, lock, source, config)

    assert _status(summary, "broken") is ActionStatus.FAILED
    assert "RuntimeError" in summary.failed[0].error
    assert _status(summary, "sibling") is ActionStatus.APPLIED
    ledger = load_ledger(ledger_path(instance))
    assert set(ledger.components) == {"sibling"}
    assert set(ledger.files) == {"mods/sibling.jar"}
