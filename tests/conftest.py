"""Shared fixtures: a recording fake process runner, a temp store and build context."""

import io
import threading
from pathlib import Path

import pytest

from layerforge.cache import SnapshotStore
from layerforge.executor import OperationExecutor
from layerforge.process import ProcessResult
from layerforge.ui.console import Console


class FakeProcessRunner:
    """
    Stands in for real process spawning.

    `handlers` maps argv[0] to fn(root, workdir, env, argv) -> exit code or
    ProcessResult (None means 0). Every call is recorded.
    """

    def __init__(self, handlers=None):
        self.handlers = dict(handlers or {})
        self.calls = []
        self._lock = threading.Lock()

    def stage_root(self, root):
        return str(root)

    def run(self, argv, *, root, workdir, env, user=None, image=None, cancel=None):
        with self._lock:
            self.calls.append({"argv": list(argv), "workdir": workdir, "env": dict(env), "user": user, "image": image})
        handler = self.handlers.get(argv[0])
        if handler is None:
            return ProcessResult(exit_code=0)
        out = handler(Path(root), workdir, env, list(argv))
        if isinstance(out, ProcessResult):
            return out
        return ProcessResult(exit_code=out or 0)

    def argvs(self):
        return [c["argv"] for c in self.calls]


def write_file(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


@pytest.fixture
def fake_runner():
    return FakeProcessRunner()


@pytest.fixture
def store(tmp_path):
    return SnapshotStore(tmp_path / "cache")


@pytest.fixture
def context_dir(tmp_path):
    ctx = tmp_path / "context"
    write_file(ctx / "utils" / "fix.patch", "--- a/x\n+++ b/x\n")
    write_file(ctx / "scripts" / "setup.sh", "#!/bin/sh\necho setup\n")
    return ctx


@pytest.fixture
def executor(store, fake_runner, context_dir):
    return OperationExecutor(store, fake_runner, context_root=context_dir)


@pytest.fixture
def quiet_console():
    return Console(stream=io.StringIO())


def snapshot_ids(store):
    return {r.id for r in store.list_snapshots()}
