# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import re
import shutil
import tarfile
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field, ValidationError

from .errors import StoreError
from .model import Snapshot

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Snapshot identity:
#   snapshot_id = cache_key = hash(
#       parent snapshot id,
#       operation fingerprint (kind + full argument set + resolved inputs)
#   )
#
# Wall-clock time and process output never enter the key.
#
# Layout:
#   root/
#     snapshots/<id>/meta.json     SnapshotRecord
#     snapshots/<id>/rootfs/       only for snapshots that own a tree
#     snapshots/<id>/last_used     access marker (mtime drives LRU)
#     staging/                     work in progress, never read back
#     tags/<name>                  snapshot id
#     trash/                       entries being deleted
#
# A new entry is assembled in staging/ and renamed into snapshots/ in one
# step. If the rename finds the key already present, another writer won
# and this one discards its copy.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".layerforge/cache"
MANIFEST_NAME = "layerforge-manifest.json"
TAG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:\-]*$")


class SnapshotRecord(BaseModel):
    """What meta.json holds for one snapshot."""
    v: int = 1
    id: str
    parent: Optional[str] = None
    tree: str
    env: Dict[str, str] = Field(default_factory=dict)
    workdir: str = "/"
    user: Optional[str] = None
    image: Optional[str] = None
    operation: Dict[str, Any] = Field(default_factory=dict)
    size: int = 0
    created_at_unix: int = Field(default_factory=lambda: int(time.time()))


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file() or p.is_symlink():
            yield p


def cache_key(parent_id: Optional[str], fingerprint: Dict[str, Any]) -> str:
    payload = {
        "v": 1,  # bump this if you change hashing format
        "parent": parent_id,
        "op": fingerprint,
    }
    return _sha256_str(_json_dumps_stable(payload))


def hash_path(path: Path) -> str:
    """
    Content digest of a file, symlink or directory tree:
      - relative paths, directories included
      - file contents and executable bit
      - symlinks by target, never followed
      - other special files by type only
    """
    if path.is_symlink():
        return _sha256_str(_json_dumps_stable(["link", os.readlink(path)]))
    if path.is_file():
        return _sha256_str(_json_dumps_stable(["file", _hash_file_contents(path), os.access(path, os.X_OK)]))

    entries: List[Tuple[str, str, bool]] = []
    for p in sorted(path.rglob("*")):
        rel = p.relative_to(path).as_posix()
        if p.is_symlink():
            entries.append((rel, "link:" + os.readlink(p), False))
        elif p.is_dir():
            entries.append((rel, "dir", False))
        elif p.is_file():
            entries.append((rel, _hash_file_contents(p), os.access(p, os.X_OK)))
        else:
            entries.append((rel, "special", False))
    return _sha256_str(_json_dumps_stable(["dir", entries]))


def dir_size(path: Path) -> int:
    total = 0
    for f in _iter_files_under(path):
        try:
            total += f.lstat().st_size
        except OSError:
            continue
    return total


class Lease:
    """
    Snapshots referenced by one in-progress build.

    The store never evicts a held snapshot, nor any of its ancestors.
    """

    def __init__(self, store: "SnapshotStore"):
        self._store = store
        self.held: Set[str] = set()

    def hold(self, snapshot_id: str) -> None:
        with self._store._lock:
            self.held.add(snapshot_id)

    def release(self) -> None:
        self._store._release(self)

    def __enter__(self) -> "Lease":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class SnapshotStore:
    """
    File-based, content-addressed snapshot store.

    Same-key work is serialized by per-key locks (`key_lock`); the store
    lock only guards the short index operations (rename into place,
    leases, eviction bookkeeping).
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, *, max_bytes: Optional[int] = None):
        self.root = Path(root).resolve()
        self.max_bytes = max_bytes
        self._snapshots = self.root / "snapshots"
        self._staging = self.root / "staging"
        self._tags = self.root / "tags"
        self._trash = self.root / "trash"
        try:
            for d in (self._snapshots, self._staging, self._tags, self._trash):
                d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"cannot create cache directory {self.root}: {e}")

        self._lock = threading.RLock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._leases: List[Lease] = []

    # -----------------------------------------------------------------
    # paths
    # -----------------------------------------------------------------

    def _entry_dir(self, snapshot_id: str) -> Path:
        return self._snapshots / snapshot_id

    def _meta_path(self, snapshot_id: str) -> Path:
        return self._entry_dir(snapshot_id) / "meta.json"

    def _marker_path(self, snapshot_id: str) -> Path:
        return self._entry_dir(snapshot_id) / "last_used"

    def rootfs_path(self, tree_id: str) -> Path:
        return self._entry_dir(tree_id) / "rootfs"

    # -----------------------------------------------------------------
    # locking + leases
    # -----------------------------------------------------------------

    def key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def lease(self) -> Lease:
        lease = Lease(self)
        with self._lock:
            self._leases.append(lease)
        return lease

    def _release(self, lease: Lease) -> None:
        with self._lock:
            if lease in self._leases:
                self._leases.remove(lease)
            lease.held.clear()

    def staging_dir(self, label: str) -> Path:
        try:
            return Path(tempfile.mkdtemp(dir=self._staging, prefix=f"{label}-"))
        except OSError as e:
            raise StoreError(f"cannot create staging directory: {e}")

    # -----------------------------------------------------------------
    # reads
    # -----------------------------------------------------------------

    def exists(self, snapshot_id: str) -> bool:
        return self._meta_path(snapshot_id).is_file()

    def record(self, snapshot_id: str) -> SnapshotRecord:
        meta = self._meta_path(snapshot_id)
        try:
            raw = meta.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StoreError("snapshot not found", snapshot=snapshot_id)
        except OSError as e:
            raise StoreError(f"cannot read snapshot record: {e}", snapshot=snapshot_id)
        try:
            rec = SnapshotRecord.model_validate_json(raw)
        except ValidationError as e:
            raise StoreError(f"corrupt snapshot record ({e.error_count()} errors)", snapshot=snapshot_id)
        if rec.id != snapshot_id:
            raise StoreError(f"snapshot record claims id {rec.id}", snapshot=snapshot_id)
        return rec

    def get(self, snapshot_id: str) -> Snapshot:
        rec = self.record(snapshot_id)
        rootfs = self.rootfs_path(rec.tree)
        if not rootfs.is_dir():
            raise StoreError(f"filesystem tree {rec.tree[:12]} is missing", snapshot=snapshot_id)
        return Snapshot(
            id=rec.id,
            parent=rec.parent,
            tree=rec.tree,
            rootfs=rootfs,
            env=dict(rec.env),
            workdir=rec.workdir,
            user=rec.user,
            image=rec.image,
            operation=dict(rec.operation),
        )

    def lookup(self, key: str, lease: Optional[Lease] = None) -> Optional[Snapshot]:
        """Return the stored snapshot for `key`, or None on a miss."""
        with self._lock:
            if not self.exists(key):
                return None
            snap = self.get(key)
            if lease is not None:
                lease.held.add(key)
            self._touch(key)
        return snap

    def _touch(self, snapshot_id: str) -> None:
        try:
            self._marker_path(snapshot_id).touch()
        except OSError:
            # access time only feeds LRU ordering
            pass

    # -----------------------------------------------------------------
    # writes
    # -----------------------------------------------------------------

    def store(
        self,
        key: str,
        staged: Optional[Path],
        record: SnapshotRecord,
        lease: Optional[Lease] = None,
    ) -> Snapshot:
        """
        Move a staged rootfs (or nothing, for metadata-only snapshots whose
        `record.tree` already exists) into place under `key`.

        First writer wins: if `key` is already present, the staged copy is
        discarded and the stored snapshot is returned.
        """
        if record.id != key:
            raise StoreError(f"record id {record.id[:12]} does not match key", snapshot=key)

        entry = Path(tempfile.mkdtemp(dir=self._staging, prefix=f"{key[:12]}-entry-"))
        won = False
        try:
            if staged is not None:
                os.rename(staged, entry / "rootfs")
                record.size = dir_size(entry / "rootfs")
            (entry / "meta.json").write_text(
                json.dumps(record.model_dump(), sort_keys=True, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            (entry / "last_used").touch()

            with self._lock:
                if staged is None and not self.rootfs_path(record.tree).is_dir():
                    raise StoreError(f"tree {record.tree[:12]} is not in the store", snapshot=key)
                try:
                    os.rename(entry, self._entry_dir(key))
                    won = True
                except OSError as e:
                    if not self.exists(key):
                        raise StoreError(f"cannot store snapshot: {e}", snapshot=key)
                    # lost the race: another writer stored this key first
                if lease is not None:
                    lease.held.add(key)
        except OSError as e:
            raise StoreError(f"cannot stage snapshot: {e}", snapshot=key)
        finally:
            if entry.exists():
                shutil.rmtree(entry, ignore_errors=True)

        if won and self.max_bytes is not None:
            self.evict(self.max_bytes, keep=[key])
        return self.get(key)

    # -----------------------------------------------------------------
    # tags
    # -----------------------------------------------------------------

    def tag(self, name: str, snapshot_id: str) -> None:
        if not TAG_RE.match(name):
            raise StoreError(f"invalid tag name {name!r}")
        if not self.exists(snapshot_id):
            raise StoreError("cannot tag a missing snapshot", snapshot=snapshot_id)
        target = self._tags / name
        tmp = target.with_name(f".{name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_text(snapshot_id, encoding="utf-8")
            tmp.replace(target)
        except OSError as e:
            raise StoreError(f"cannot write tag {name}: {e}", snapshot=snapshot_id)
        finally:
            tmp.unlink(missing_ok=True)

    def resolve_tag(self, name: str) -> str:
        try:
            snapshot_id = (self._tags / name).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            raise StoreError(f"unknown tag {name!r}")
        if not self.exists(snapshot_id):
            raise StoreError(f"tag {name!r} points at an evicted snapshot", snapshot=snapshot_id)
        return snapshot_id

    def tags(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for p in sorted(self._tags.iterdir()):
            if p.is_file() and not p.name.startswith("."):
                out[p.name] = p.read_text(encoding="utf-8").strip()
        return out

    # -----------------------------------------------------------------
    # listing + eviction
    # -----------------------------------------------------------------

    def list_snapshots(self) -> List[SnapshotRecord]:
        records = []
        for d in sorted(self._snapshots.iterdir()):
            if d.is_dir():
                records.append(self.record(d.name))
        return records

    def size(self) -> int:
        return sum(r.size for r in self.list_snapshots())

    def _last_used(self, snapshot_id: str) -> float:
        try:
            return self._marker_path(snapshot_id).stat().st_mtime
        except OSError:
            return 0.0

    def _protected(self, records: Dict[str, Optional[SnapshotRecord]], keep: Iterable[str] = ()) -> Set[str]:
        seeds: Set[str] = set(self.tags().values()) | set(keep)
        for lease in self._leases:
            seeds |= lease.held

        protected: Set[str] = set()
        for seed in seeds:
            cur: Optional[str] = seed
            while cur is not None and cur not in protected:
                protected.add(cur)
                rec = records.get(cur)
                if rec is None:
                    break
                protected.add(rec.tree)
                cur = rec.parent
        return protected

    def evict(self, max_bytes: int, keep: Iterable[str] = ()) -> List[str]:
        """
        Drop least-recently-used snapshots until the store fits `max_bytes`.

        Held, tagged and `keep` snapshots survive, with all their ancestors.
        Corrupt entries go first. Returns evicted ids.
        """
        doomed: List[Path] = []
        evicted: List[str] = []
        with self._lock:
            records: Dict[str, Optional[SnapshotRecord]] = {}
            for d in self._snapshots.iterdir():
                if not d.is_dir():
                    continue
                try:
                    records[d.name] = self.record(d.name)
                except StoreError:
                    records[d.name] = None

            protected = self._protected(records, keep)
            total = sum(r.size for r in records.values() if r is not None)
            candidates = sorted(
                (sid for sid in records if sid not in protected),
                key=lambda sid: (records[sid] is not None, self._last_used(sid)),
            )

            gone: Set[str] = set()
            for sid in candidates:
                if sid in gone:
                    continue
                if records[sid] is not None and total <= max_bytes:
                    break
                group = [sid] + [
                    other for other, rec in records.items()
                    if rec is not None and other != sid and rec.tree == sid and other not in gone
                ]
                for victim in group:
                    dest = self._trash / f"{victim}-{uuid.uuid4().hex[:8]}"
                    try:
                        os.rename(self._entry_dir(victim), dest)
                    except OSError as e:
                        raise StoreError(f"cannot evict snapshot: {e}", snapshot=victim)
                    gone.add(victim)
                    evicted.append(victim)
                    doomed.append(dest)
                    rec = records[victim]
                    total -= rec.size if rec is not None else 0

        for d in doomed:
            shutil.rmtree(d, ignore_errors=True)
        return evicted

    def clean_staging(self) -> int:
        """Remove leftovers from interrupted builds. Only safe when no build is running."""
        removed = 0
        for base in (self._staging, self._trash):
            for d in base.iterdir():
                if d.is_dir():
                    shutil.rmtree(d, ignore_errors=True)
                else:
                    d.unlink(missing_ok=True)
                removed += 1
        return removed

    # -----------------------------------------------------------------
    # export
    # -----------------------------------------------------------------

    def export(self, snapshot_id: str, dest: str | Path) -> Path:
        """
        Write a snapshot out as a runnable/exportable artifact:
          - `*.tar`, `*.tar.gz`, `*.tgz`: archive with rootfs/ + manifest
          - anything else: a directory with the same layout
        """
        snap = self.get(snapshot_id)
        manifest = json.dumps(
            self.record(snapshot_id).model_dump(), sort_keys=True, indent=2, ensure_ascii=False
        ).encode("utf-8")
        out = Path(dest).resolve()
        name = out.name

        try:
            if name.endswith((".tar", ".tar.gz", ".tgz")):
                mode = "w" if name.endswith(".tar") else "w:gz"
                out.parent.mkdir(parents=True, exist_ok=True)
                tmp = out.with_name(f".{name}.{uuid.uuid4().hex}.tmp")
                try:
                    with tarfile.open(str(tmp), mode=mode) as tar:
                        tar.add(str(snap.rootfs), arcname="rootfs")
                        info = tarfile.TarInfo(name=MANIFEST_NAME)
                        info.size = len(manifest)
                        info.mtime = int(time.time())
                        tar.addfile(info, fileobj=io.BytesIO(manifest))
                    tmp.replace(out)
                finally:
                    tmp.unlink(missing_ok=True)
            else:
                if out.exists():
                    raise StoreError(f"export destination {out} already exists", snapshot=snapshot_id)
                out.mkdir(parents=True)
                shutil.copytree(snap.rootfs, out / "rootfs", symlinks=True)
                (out / MANIFEST_NAME).write_bytes(manifest)
        except OSError as e:
            raise StoreError(f"export failed: {e}", snapshot=snapshot_id)
        return out
