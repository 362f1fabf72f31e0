"""Tests for the durable cache manifest."""

import json
import os
import random
import socket
import time
from datetime import datetime, timedelta, timezone

import pytest

from stheno.errors import ManifestWriteFailed
from stheno.manifest import (
    EMPTY_LOCK_GRACE_SECONDS,
    LockFile,
    Manifest,
    ManifestStore,
    PageCacheEntry,
    PendingInvalidation,
    parse_timestamp,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_store(tmp_path, **kwargs) -> ManifestStore:
    store = ManifestStore(tmp_path / ".stheno", **kwargs)
    store.ensure_directory()
    return store


def random_entry(rng: random.Random) -> PageCacheEntry:
    deps = {f"site/_partials/p{i}.html": f"sha256-{rng.getrandbits(64):x}" for i in range(rng.randint(0, 4))}
    if rng.random() < 0.5:
        deps["@collections"] = f"sha256-{rng.getrandbits(64):x}"
    return PageCacheEntry(
        content_hash=f"sha256-{rng.getrandbits(128):x}",
        dependency_hashes=deps,
        built_at=NOW - timedelta(seconds=rng.randint(0, 10**6)),
        published_at=NOW - timedelta(days=rng.randint(0, 2000)) if rng.random() < 0.7 else None,
        ttl_seconds_override=rng.choice([None, 0, 60, 3600]),
        max_age_cap_days_override=rng.choice([None, 30, 365]),
        tags=frozenset(rng.sample(["a", "b", "news", "blog", "x"], rng.randint(0, 3))),
        source_path=f"site/page{rng.randint(0, 999)}.md",
        force_rebuild=rng.random() < 0.1,
    )


def test_missing_manifest_loads_empty(tmp_path):
    """A project that was never built has an empty manifest."""
    manifest = make_store(tmp_path).load()
    assert manifest.entries == {}
    assert manifest.pending_invalidations == []


def test_round_trip_preserves_entries(tmp_path):
    rng = random.Random(1234)
    store = make_store(tmp_path)
    manifest = Manifest()
    for i in range(100):
        manifest.entries[f"/page-{i}/"] = random_entry(rng)
    manifest.pending_invalidations.append(PendingInvalidation("tag", "news", NOW))
    store.save(manifest)

    loaded = make_store(tmp_path).load()
    assert loaded.entries == manifest.entries
    assert loaded.pending_invalidations == [PendingInvalidation("tag", "news", NOW)]


def test_manifest_file_uses_camel_case_keys(tmp_path):
    store = make_store(tmp_path)
    manifest = Manifest()
    manifest.entries["/"] = PageCacheEntry("sha256-a", {"site/_layouts/default.html": "sha256-b"}, NOW)
    store.save(manifest)

    payload = json.loads(store.path.read_text())
    assert payload["schemaVersion"] == "1"
    entry = payload["entries"]["/"]
    assert entry["contentHash"] == "sha256-a"
    assert entry["dependencyHashes"] == {"site/_layouts/default.html": "sha256-b"}
    assert parse_timestamp(entry["builtAt"]) == NOW


@pytest.mark.parametrize(
    "content",
    [
        "",
        "   \n",
        "{not json",
        "[]",
        json.dumps({"schemaVersion": "0", "entries": {}}),
        json.dumps({"schemaVersion": "1", "entries": []}),
        json.dumps({"schemaVersion": "1", "entries": {}, "pendingInvalidations": [{"kind": "bogus"}]}),
    ],
)
def test_unusable_manifest_degrades_to_empty(tmp_path, caplog, content):
    store = make_store(tmp_path)
    store.path.write_text(content)
    with caplog.at_level("WARNING"):
        manifest = store.load()
    assert manifest.entries == {}
    assert "Cache manifest ignored" in caplog.text


def test_invalid_entry_is_dropped_others_kept(tmp_path, caplog):
    store = make_store(tmp_path)
    good = PageCacheEntry("sha256-a", {}, NOW).to_dict()
    payload = {
        "schemaVersion": "1",
        "entries": {"/good/": good, "/bad/": {"contentHash": 5}},
        "pendingInvalidations": [],
    }
    store.path.write_text(json.dumps(payload))
    with caplog.at_level("WARNING"):
        manifest = store.load()
    assert list(manifest.entries) == ["/good/"]
    assert "Removed 1 invalid cache entries" in caplog.text


def test_write_leaves_no_temporary_files(tmp_path):
    store = make_store(tmp_path)
    store.save(Manifest())
    store.append_pending_invalidation(PendingInvalidation("tag", "a", NOW))
    leftovers = [p.name for p in store.directory.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []
    assert not (store.directory / "manifest.lock").exists()


def test_save_merges_invalidations_recorded_meanwhile(tmp_path):
    """A build that loaded before an invalidate call must not lose the record."""
    build_store = make_store(tmp_path)
    manifest = build_store.load()

    make_store(tmp_path).append_pending_invalidation(PendingInvalidation("tag", "news", NOW))

    manifest.entries["/"] = PageCacheEntry("sha256-a", {}, NOW)
    build_store.save(manifest)

    loaded = make_store(tmp_path).load()
    assert "/" in loaded.entries
    assert [p.value for p in loaded.pending_invalidations] == ["news"]


def test_consumed_records_do_not_come_back_on_save(tmp_path):
    store = make_store(tmp_path)
    record = PendingInvalidation("tag", "news", NOW)
    store.append_pending_invalidation(record)

    manifest = store.load()
    removed = store.consume_pending_invalidations(manifest, [record], NOW)
    assert removed == [record]
    store.save(manifest)

    assert make_store(tmp_path).load().pending_invalidations == []


def test_pending_records_expire_after_ttl(tmp_path):
    store = make_store(tmp_path, pending_ttl=timedelta(days=1))
    old = PendingInvalidation("path", "/gone/**", NOW - timedelta(days=2))
    recent = PendingInvalidation("tag", "news", NOW - timedelta(hours=1))
    manifest = Manifest(pending_invalidations=[old, recent])

    removed = store.consume_pending_invalidations(manifest, [], NOW)
    assert removed == [old]
    assert manifest.pending_invalidations == [recent]


def test_append_deduplicates_identical_records(tmp_path):
    store = make_store(tmp_path)
    record = PendingInvalidation("tag", "news", NOW)
    store.append_pending_invalidation(record)
    manifest = store.append_pending_invalidation(record)
    assert manifest.pending_invalidations == [record]


def test_discard_removes_manifest(tmp_path):
    store = make_store(tmp_path)
    store.save(Manifest())
    assert store.path.exists()
    store.discard()
    assert not store.path.exists()


def test_save_failure_raises_manifest_write_failed(tmp_path):
    store = make_store(tmp_path)
    store.path.mkdir()
    with pytest.raises(ManifestWriteFailed):
        store.save(Manifest())


def test_stale_lock_from_dead_process_is_removed(tmp_path, monkeypatch):
    lock_path = tmp_path / "test.lock"
    lock_path.write_text("999999\n" + socket.gethostname() + "\n")

    def fake_kill(pid, signal):
        raise ProcessLookupError

    monkeypatch.setattr(os, "kill", fake_kill)
    with LockFile(lock_path, timeout=0):
        assert lock_path.read_text().startswith(str(os.getpid()))
    assert not lock_path.exists()


@pytest.mark.parametrize("content", ["", "not-a-pid\n"])
def test_abandoned_unparseable_lock_is_reclaimed(tmp_path, content):
    lock_path = tmp_path / "test.lock"
    lock_path.write_text(content)
    old = time.time() - EMPTY_LOCK_GRACE_SECONDS - 60
    os.utime(lock_path, (old, old))
    with LockFile(lock_path, timeout=0):
        assert lock_path.read_text().startswith(str(os.getpid()))


def test_fresh_empty_lock_is_respected(tmp_path):
    lock_path = tmp_path / "test.lock"
    lock_path.write_text("")
    with pytest.raises(TimeoutError):
        with LockFile(lock_path, timeout=0):
            pass
    assert lock_path.exists()


def test_held_lock_times_out(tmp_path):
    lock_path = tmp_path / "test.lock"
    with LockFile(lock_path):
        with pytest.raises(TimeoutError):
            with LockFile(lock_path, timeout=0):
                pass
