import os
import tarfile
import threading

import pytest

from layerforge.cache import MANIFEST_NAME, SnapshotRecord, SnapshotStore, cache_key, hash_path
from layerforge.errors import StoreError

from conftest import write_file


def _stage_tree(store, files):
    tmp = store.staging_dir("test")
    work = tmp / "rootfs"
    work.mkdir()
    for rel, text in files.items():
        write_file(work / rel, text)
    return work


def _put(store, key, files, parent=None, lease=None):
    work = _stage_tree(store, files)
    return store.store(key, work, SnapshotRecord(id=key, parent=parent, tree=key), lease)


def _age(store, snapshot_id, seconds_ago):
    marker = store.root / "snapshots" / snapshot_id / "last_used"
    ts = marker.stat().st_mtime - seconds_ago
    os.utime(marker, (ts, ts))


def test_cache_key_is_stable_and_input_sensitive():
    fp = {"kind": "run", "argv": ["make"], "env": {"B": "2", "A": "1"}}

    assert cache_key("p", fp) == cache_key("p", {"env": {"A": "1", "B": "2"}, "argv": ["make"], "kind": "run"})
    assert cache_key("p", fp) != cache_key("q", fp)
    assert cache_key("p", fp) != cache_key("p", {**fp, "argv": ["make", "-j2"]})
    assert cache_key(None, fp) != cache_key("p", fp)


def test_hash_path_tracks_content(tmp_path):
    write_file(tmp_path / "d" / "a.txt", "one")
    before = hash_path(tmp_path / "d")
    assert hash_path(tmp_path / "d") == before

    write_file(tmp_path / "d" / "a.txt", "two")
    assert hash_path(tmp_path / "d") != before


def test_hash_path_of_symlink_tracks_its_target(tmp_path):
    write_file(tmp_path / "a.txt", "one")
    write_file(tmp_path / "b.txt", "two")
    os.symlink("a.txt", tmp_path / "cur")
    before = hash_path(tmp_path / "cur")

    os.unlink(tmp_path / "cur")
    os.symlink("b.txt", tmp_path / "cur")
    assert hash_path(tmp_path / "cur") != before


def test_hash_path_includes_empty_directories(tmp_path):
    write_file(tmp_path / "d" / "a.txt", "one")
    before = hash_path(tmp_path / "d")

    (tmp_path / "d" / "var" / "log").mkdir(parents=True)
    assert hash_path(tmp_path / "d") != before


def test_store_then_lookup(store):
    snap = _put(store, "k1", {"etc/motd": "hi"})

    assert snap.id == "k1"
    assert (snap.rootfs / "etc" / "motd").read_text() == "hi"
    hit = store.lookup("k1")
    assert hit is not None and hit.rootfs == snap.rootfs
    assert store.lookup("missing") is None
    assert store.record("k1").size == 2


def test_first_writer_wins(store):
    first = _put(store, "k1", {"who": "first"})
    second = _put(store, "k1", {"who": "second"})

    assert second.id == first.id
    assert (second.rootfs / "who").read_text() == "first"
    assert [r.id for r in store.list_snapshots()] == ["k1"]


def test_concurrent_writers_store_one_entry(store):
    barrier = threading.Barrier(4)
    results = []

    def writer(n):
        work = _stage_tree(store, {"who": str(n)})
        barrier.wait(timeout=5)
        results.append(store.store("same", work, SnapshotRecord(id="same", tree="same")))

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    contents = {(s.rootfs / "who").read_text() for s in results}
    assert len(results) == 4
    assert len(contents) == 1
    assert [r.id for r in store.list_snapshots()] == ["same"]


def test_metadata_snapshot_shares_parent_tree(store):
    base = _put(store, "base", {"f": "x"})
    meta = store.store("meta", None, SnapshotRecord(id="meta", parent="base", tree="base", env={"A": "1"}))

    assert meta.rootfs == base.rootfs
    assert meta.env == {"A": "1"}


def test_metadata_snapshot_needs_existing_tree(store):
    with pytest.raises(StoreError):
        store.store("meta", None, SnapshotRecord(id="meta", tree="ghost"))


def test_record_id_must_match_key(store):
    work = _stage_tree(store, {})
    with pytest.raises(StoreError):
        store.store("k1", work, SnapshotRecord(id="other", tree="k1"))


def test_corrupt_record_raises_store_error(store):
    _put(store, "k1", {"f": "x"})
    (store.root / "snapshots" / "k1" / "meta.json").write_text("{not json")

    with pytest.raises(StoreError) as exc:
        store.lookup("k1")
    assert exc.value.snapshot == "k1"


def test_evict_drops_least_recently_used_first(store):
    _put(store, "old", {"f": "x" * 100})
    _put(store, "new", {"f": "y" * 100})
    _age(store, "old", 100)

    evicted = store.evict(150)

    assert evicted == ["old"]
    assert not store.exists("old")
    assert store.exists("new")


def test_evict_keeps_leased_snapshots_and_ancestors(store):
    _put(store, "root", {"f": "r" * 100})
    _put(store, "child", {"f": "c" * 100}, parent="root")
    _put(store, "other", {"f": "o" * 100})
    _age(store, "root", 300)
    _age(store, "child", 200)

    with store.lease() as lease:
        lease.hold("child")
        evicted = store.evict(0)
        assert evicted == ["other"]
        assert store.exists("root") and store.exists("child")

    assert sorted(store.evict(0)) == ["child", "root"]


def test_evict_cascades_to_snapshots_sharing_the_tree(store):
    _put(store, "base", {"f": "x" * 10})
    store.store("meta", None, SnapshotRecord(id="meta", parent="base", tree="base"))
    _age(store, "base", 100)

    assert sorted(store.evict(0)) == ["base", "meta"]
    assert store.list_snapshots() == []


def test_evict_removes_corrupt_entries_first(store):
    _put(store, "good", {"f": "x"})
    _put(store, "bad", {"f": "y"})
    (store.root / "snapshots" / "bad" / "meta.json").write_text("[]")

    assert store.evict(10 ** 6) == ["bad"]
    assert store.exists("good")


def test_store_with_size_limit_never_evicts_what_it_just_stored(tmp_path):
    store = SnapshotStore(tmp_path / "cache", max_bytes=10)
    _put(store, "first", {"f": "x" * 50})
    snap = _put(store, "second", {"f": "y" * 50})

    assert snap.id == "second"
    assert store.exists("second")
    assert not store.exists("first")


def test_tags(store):
    _put(store, "k1", {"f": "x"})
    store.tag("dev:1", "k1")

    assert store.resolve_tag("dev:1") == "k1"
    assert store.tags() == {"dev:1": "k1"}
    assert store.evict(0) == []

    with pytest.raises(StoreError):
        store.resolve_tag("nope")
    with pytest.raises(StoreError):
        store.tag("dev:2", "missing")
    with pytest.raises(StoreError):
        store.tag("../escape", "k1")


def test_export_tarball(store, tmp_path):
    _put(store, "k1", {"usr/bin/tool": "#!/bin/sh\n"})

    out = store.export("k1", tmp_path / "out" / "env.tar.gz")

    with tarfile.open(out) as tar:
        names = tar.getnames()
    assert "rootfs/usr/bin/tool" in names
    assert MANIFEST_NAME in names


def test_export_directory(store, tmp_path):
    _put(store, "k1", {"a.txt": "a"})

    out = store.export("k1", tmp_path / "env")

    assert (out / "rootfs" / "a.txt").read_text() == "a"
    assert (out / MANIFEST_NAME).is_file()
    with pytest.raises(StoreError):
        store.export("k1", tmp_path / "env")


def test_clean_staging(store):
    store.staging_dir("left-over")
    assert store.clean_staging() == 1
    assert list((store.root / "staging").iterdir()) == []
