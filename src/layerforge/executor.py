# executor.py
from __future__ import annotations

import os
import posixpath
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cache import Lease, SnapshotRecord, SnapshotStore, cache_key, hash_path
from .errors import (
    BaseUnavailable,
    CommandFailed,
    InvalidPath,
    MissingContextPath,
    MissingSourcePath,
    OperationError,
    StoreError,
)
from .model import (
    CopyFromContext,
    CopyFromStage,
    Operation,
    RunCommand,
    SetEnv,
    SetUser,
    SetWorkdir,
    Snapshot,
    is_metadata_only,
)
from .process import CancelToken, ProcessRunner

OUTPUT_TAIL = 4000
MAX_SYMLINK_HOPS = 40
DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
_VAR_RE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


@dataclass
class OperationOutcome:
    """Result of one operation: the snapshot plus output attributed to it."""
    snapshot: Snapshot
    cached: bool
    stdout: str = ""
    stderr: str = ""
    attempts: int = 0


def expand_vars(value: str, env: Dict[str, str]) -> str:
    """Expand $VAR and ${VAR} against a stage env; unset variables become empty."""
    return _VAR_RE.sub(lambda m: env.get(m.group(1) or m.group(2), ""), value)


def _tail(text: str) -> str:
    return text[-OUTPUT_TAIL:]


def _join(cwd: str, path: str) -> str:
    """Normalize `path` against `cwd` inside the stage root. '..' never climbs above '/'."""
    return posixpath.normpath(posixpath.join("/", cwd, path))


def _parts(path: str) -> List[str]:
    return [p for p in path.split("/") if p not in ("", ".")]


def resolve_in_root(root: Path, path: str, *, follow_last: bool = True) -> Path:
    """
    Map an absolute in-stage path to a host path under `root`.

    Symlinks are resolved one component at a time with `root` standing in
    for '/': absolute link targets restart at `root` and '..' stops there,
    so the result never leaves `root`. With follow_last=False a symlink in
    the final position is returned as-is.

    Raises ValueError on symlink loops and on non-directory components.
    """
    pending = _parts(path)
    resolved: List[str] = []
    hops = 0
    while pending:
        name = pending.pop(0)
        if name == "..":
            if resolved:
                resolved.pop()
            continue
        candidate = root.joinpath(*resolved, name)
        if candidate.is_symlink() and (pending or follow_last):
            hops += 1
            if hops > MAX_SYMLINK_HOPS:
                raise ValueError(f"too many levels of symbolic links in {path}")
            target = os.readlink(candidate)
            if target.startswith("/"):
                resolved = []
            pending = _parts(target) + pending
            continue
        if pending and candidate.exists() and not candidate.is_dir():
            raise ValueError(f"/{'/'.join(resolved + [name])} is not a directory")
        resolved.append(name)
    return root.joinpath(*resolved)


def _stage_path(root: Path, host_path: Path) -> str:
    rel = host_path.relative_to(root).as_posix()
    return "/" if rel == "." else "/" + rel


class BaseResolver:
    """
    Turns external base references into starting trees.

    Unknown references start from an empty root; `sources` maps references
    to local directories whose contents seed the base (and whose digest is
    part of the base snapshot id).
    """

    def __init__(self, sources: Optional[Dict[str, Path]] = None, *, env: Optional[Dict[str, str]] = None):
        self.sources = {k: Path(v) for k, v in (sources or {}).items()}
        self.env = dict(env) if env is not None else {"PATH": DEFAULT_PATH}

    def fingerprint(self, ref: str) -> Dict[str, Any]:
        digest = None
        if ref in self.sources:
            src = self.sources[ref]
            if not src.is_dir():
                raise BaseUnavailable(f"base directory for {ref!r} not found: {src}", operation=f"FROM {ref}")
            try:
                digest = hash_path(src)
            except OSError as e:
                raise BaseUnavailable(f"cannot read base directory {src}: {e}", operation=f"FROM {ref}")
        return {"kind": "base", "ref": ref, "digest": digest, "env": self.env}

    def populate(self, ref: str, dest: Path) -> None:
        if ref not in self.sources:
            return
        try:
            shutil.copytree(self.sources[ref], dest, symlinks=True, dirs_exist_ok=True)
        except OSError as e:
            # shutil.Error (one entry per unreadable file) is an OSError too
            raise BaseUnavailable(f"cannot seed base from {self.sources[ref]}: {e}", operation=f"FROM {ref}")


class OperationExecutor:
    """
    Applies one operation to one snapshot.

    Every application goes through the store: compute the key, return the
    stored snapshot on a hit, otherwise build the result in a staging copy
    and store it. Failures and cancellations never reach the store.
    """

    def __init__(
        self,
        store: SnapshotStore,
        runner: ProcessRunner,
        *,
        context_root: str | Path = ".",
        base_resolver: Optional[BaseResolver] = None,
        cancel: Optional[CancelToken] = None,
    ):
        self.store = store
        self.runner = runner
        self.context_root = Path(context_root).resolve()
        self.base_resolver = base_resolver or BaseResolver()
        self.cancel = cancel or CancelToken()

    # -----------------------------------------------------------------
    # cache keys
    # -----------------------------------------------------------------

    def _scoped(
        self,
        root: Path,
        path: str,
        op: Operation,
        stage: Optional[str],
        *,
        follow_last: bool = True,
    ) -> Path:
        try:
            return resolve_in_root(root, path, follow_last=follow_last)
        except ValueError as e:
            raise InvalidPath(str(e), stage=stage, operation=op.describe())

    def _context_source(self, op: CopyFromContext, stage: Optional[str]) -> Path:
        src = self._scoped(self.context_root, _join("/", op.source_path), op, stage, follow_last=False)
        if not src.exists() and not src.is_symlink():
            raise MissingContextPath(
                f"{op.source_path} not found in build context {self.context_root}",
                stage=stage,
                operation=op.describe(),
            )
        return src

    def _context_digest(self, op: CopyFromContext, stage: Optional[str]) -> str:
        src = self._context_source(op, stage)
        try:
            return hash_path(src)
        except OSError as e:
            raise OperationError(f"cannot read {op.source_path} from the build context: {e}",
                                 stage=stage, operation=op.describe())

    def fingerprint(
        self,
        snapshot: Snapshot,
        op: Operation,
        *,
        source: Optional[Snapshot] = None,
        stage: Optional[str] = None,
    ) -> Dict[str, Any]:
        """The operation's full argument set plus the inputs it reads."""
        if isinstance(op, RunCommand):
            return {
                "kind": op.kind,
                "argv": list(op.argv),
                "workdir": _join(snapshot.workdir, op.workdir or "."),
                "env": snapshot.env,
                "user": snapshot.user,
            }
        if isinstance(op, CopyFromStage):
            if source is None:
                raise OperationError(
                    f"source stage {op.source_stage!r} is not materialized",
                    stage=stage,
                    operation=op.describe(),
                )
            return {
                "kind": op.kind,
                "source_snapshot": source.id,
                "source_path": _join("/", op.source_path),
                "dest_path": op.dest_path,
                "workdir": snapshot.workdir,
            }
        if isinstance(op, CopyFromContext):
            return {
                "kind": op.kind,
                "source_path": op.source_path,
                "digest": self._context_digest(op, stage),
                "dest_path": op.dest_path,
                "workdir": snapshot.workdir,
            }
        if isinstance(op, SetEnv):
            return {"kind": op.kind, "pairs": [list(p) for p in op.pairs]}
        if isinstance(op, SetWorkdir):
            return {"kind": op.kind, "path": op.path}
        if isinstance(op, SetUser):
            return {"kind": op.kind, "name": op.name}
        raise TypeError(f"unsupported operation {op!r}")

    def key_for(self, snapshot: Snapshot, op: Operation, *, source: Optional[Snapshot] = None) -> str:
        return cache_key(snapshot.id, self.fingerprint(snapshot, op, source=source))

    # -----------------------------------------------------------------
    # public API
    # -----------------------------------------------------------------

    def base_snapshot(self, ref: str, *, lease: Optional[Lease] = None) -> OperationOutcome:
        """The starting snapshot for an external base reference."""
        fp = self.base_resolver.fingerprint(ref)
        key = cache_key(None, fp)

        hit = self.store.lookup(key, lease)
        if hit is not None:
            return OperationOutcome(snapshot=hit, cached=True)

        with self.store.key_lock(key):
            hit = self.store.lookup(key, lease)
            if hit is not None:
                return OperationOutcome(snapshot=hit, cached=True)

            tmp = self.store.staging_dir(key[:12])
            try:
                work = tmp / "rootfs"
                try:
                    work.mkdir()
                except OSError as e:
                    raise StoreError(f"cannot stage base snapshot: {e}", snapshot=key)
                self.base_resolver.populate(ref, work)
                self.cancel.raise_if_cancelled()
                record = SnapshotRecord(
                    id=key,
                    parent=None,
                    tree=key,
                    env=dict(self.base_resolver.env),
                    workdir="/",
                    image=ref,
                    operation=fp,
                )
                snap = self.store.store(key, work, record, lease)
            finally:
                shutil.rmtree(tmp, ignore_errors=True)
        return OperationOutcome(snapshot=snap, cached=False, attempts=1)

    def apply(
        self,
        snapshot: Snapshot,
        op: Operation,
        *,
        stage: Optional[str] = None,
        source: Optional[Snapshot] = None,
        lease: Optional[Lease] = None,
    ) -> OperationOutcome:
        """
        Execute `op` on `snapshot` (or reuse the stored result).

        `source` is the final snapshot of the stage a CopyFromStage reads.
        """
        self.cancel.raise_if_cancelled()
        fp = self.fingerprint(snapshot, op, source=source, stage=stage)
        key = cache_key(snapshot.id, fp)

        hit = self.store.lookup(key, lease)
        if hit is not None:
            return OperationOutcome(snapshot=hit, cached=True)

        with self.store.key_lock(key):
            # someone may have stored it while we waited for the lock
            hit = self.store.lookup(key, lease)
            if hit is not None:
                return OperationOutcome(snapshot=hit, cached=True)

            if is_metadata_only(op):
                record = self._metadata_record(key, snapshot, op, fp)
                snap = self.store.store(key, None, record, lease)
                return OperationOutcome(snapshot=snap, cached=False, attempts=1)

            return self._materialize(key, fp, snapshot, op, stage=stage, source=source, lease=lease)

    # -----------------------------------------------------------------
    # execution primitives
    # -----------------------------------------------------------------

    def _metadata_record(self, key: str, snapshot: Snapshot, op: Operation, fp: Dict[str, Any]) -> SnapshotRecord:
        env = dict(snapshot.env)
        workdir = snapshot.workdir
        user = snapshot.user
        if isinstance(op, SetEnv):
            for k, v in op.pairs:
                env[k] = expand_vars(v, snapshot.env)
        elif isinstance(op, SetWorkdir):
            workdir = _join(snapshot.workdir, expand_vars(op.path, snapshot.env))
        elif isinstance(op, SetUser):
            user = op.name
        return SnapshotRecord(
            id=key,
            parent=snapshot.id,
            tree=snapshot.tree,
            env=env,
            workdir=workdir,
            user=user,
            image=snapshot.image,
            operation=fp,
        )

    def _materialize(
        self,
        key: str,
        fp: Dict[str, Any],
        snapshot: Snapshot,
        op: Operation,
        *,
        stage: Optional[str],
        source: Optional[Snapshot],
        lease: Optional[Lease],
    ) -> OperationOutcome:
        attempts = 1 + (max(0, op.retries) if isinstance(op, RunCommand) else 0)

        for attempt in range(1, attempts + 1):
            tmp = self.store.staging_dir(key[:12])
            try:
                work = tmp / "rootfs"
                shutil.copytree(snapshot.rootfs, work, symlinks=True)

                stdout = stderr = ""
                if isinstance(op, RunCommand):
                    stdout, stderr = self._run(work, snapshot, op, stage)
                elif isinstance(op, CopyFromStage):
                    src = self._stage_source(source, op, stage)
                    self._copy(src, op, work, snapshot.workdir, stage)
                elif isinstance(op, CopyFromContext):
                    src = self._context_source(op, stage)
                    self._copy(src, op, work, snapshot.workdir, stage)

                # a cancelled operation writes nothing
                self.cancel.raise_if_cancelled()
                record = SnapshotRecord(
                    id=key,
                    parent=snapshot.id,
                    tree=key,
                    env=dict(snapshot.env),
                    workdir=snapshot.workdir,
                    user=snapshot.user,
                    image=snapshot.image,
                    operation=fp,
                )
                snap = self.store.store(key, work, record, lease)
                return OperationOutcome(snapshot=snap, cached=False, stdout=stdout, stderr=stderr, attempts=attempt)
            except CommandFailed:
                if attempt == attempts:
                    raise
            except OSError as e:
                raise OperationError(f"filesystem error: {e}", stage=stage, operation=op.describe())
            finally:
                shutil.rmtree(tmp, ignore_errors=True)

        raise AssertionError("unreachable")

    def _run(self, work: Path, snapshot: Snapshot, op: RunCommand, stage: Optional[str]) -> tuple[str, str]:
        cwd = self._scoped(work, _join(snapshot.workdir, op.workdir or "."), op, stage)
        cwd.mkdir(parents=True, exist_ok=True)

        env = dict(snapshot.env)
        env["STAGE_ROOT"] = self.runner.stage_root(work)

        result = self.runner.run(
            list(op.argv),
            root=work,
            workdir=_stage_path(work, cwd),
            env=env,
            user=snapshot.user,
            image=snapshot.image,
            cancel=self.cancel,
        )
        if result.exit_code != 0:
            raise CommandFailed(
                f"command exited with status {result.exit_code}",
                stage=stage,
                operation=op.describe(),
                exit_code=result.exit_code,
                stderr_tail=_tail(result.stderr or result.stdout),
            )
        return result.stdout, result.stderr

    def _stage_source(self, source: Optional[Snapshot], op: CopyFromStage, stage: Optional[str]) -> Path:
        if source is None:
            raise OperationError(
                f"source stage {op.source_stage!r} is not materialized",
                stage=stage,
                operation=op.describe(),
            )
        src = self._scoped(source.rootfs, _join("/", op.source_path), op, stage, follow_last=False)
        if not src.exists() and not src.is_symlink():
            raise MissingSourcePath(
                f"{op.source_path} does not exist in stage {op.source_stage!r}",
                stage=stage,
                operation=op.describe(),
            )
        return src

    def _copy(self, src: Path, op: Operation, work: Path, workdir: str, stage: Optional[str]) -> None:
        """
        Docker COPY semantics:
          - a directory source copies its contents into dest
          - a file source lands at dest, or inside it when dest ends
            with '/' or is an existing directory
          - a symlink source is copied as a link

        Every destination is resolved inside `work`, so links already in
        the tree can redirect a write but never out of it.
        """
        dest_path = _join(workdir, op.dest_path)
        dest = self._scoped(work, dest_path, op, stage)
        if src.is_dir() and not src.is_symlink():
            dest.mkdir(parents=True, exist_ok=True)
            self._copy_tree(src, work, _stage_path(work, dest), op, stage)
            return

        if op.dest_path.endswith("/") or dest.is_dir():
            dest_path = posixpath.join(_stage_path(work, dest), src.name)
        self._place(src, self._scoped(work, dest_path, op, stage, follow_last=False))

    def _copy_tree(self, src: Path, work: Path, dest_path: str, op: Operation, stage: Optional[str]) -> None:
        for item in sorted(src.iterdir()):
            item_path = posixpath.join(dest_path, item.name)
            if item.is_dir() and not item.is_symlink():
                target = self._scoped(work, item_path, op, stage)
                target.mkdir(parents=True, exist_ok=True)
                self._copy_tree(item, work, _stage_path(work, target), op, stage)
            else:
                self._place(item, self._scoped(work, item_path, op, stage, follow_last=False))

    @staticmethod
    def _place(src: Path, target: Path) -> None:
        """Copy a file or link to `target`, replacing a file or link already there."""
        if target.is_symlink() or target.is_file():
            target.unlink()
        elif target.is_dir():
            raise IsADirectoryError(f"cannot overwrite directory {target.name!r} with a file")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, target, follow_symlinks=False)
