# src/layerforge/dsl.py
from __future__ import annotations

from typing import List, Optional, Sequence, Union

from .model import (
    BaseRef,
    CopyFromContext,
    CopyFromStage,
    ExternalImageRef,
    Operation,
    RunCommand,
    SetEnv,
    SetUser,
    SetWorkdir,
    StageDescriptor,
    StageRef,
)


# ---------------------------------------------------------------------
# Base helpers
# ---------------------------------------------------------------------

def image(ref: str) -> ExternalImageRef:
    """External base environment, e.g. image("rust:bookworm")."""
    return ExternalImageRef(ref)


def after(stage_name: str) -> StageRef:
    """Start from the final snapshot of an earlier stage."""
    return StageRef(stage_name)


# ---------------------------------------------------------------------
# Operation helpers
# ---------------------------------------------------------------------

def sh(cmd: str, *, workdir: str | None = None, retries: int = 0) -> RunCommand:
    """Shell-form command: sh("cd /opt && make")."""
    return RunCommand(argv=("/bin/sh", "-c", cmd), workdir=workdir, retries=retries)


def run(*argv: str, workdir: str | None = None, retries: int = 0) -> RunCommand:
    """Exec-form command: run("make", "-j4")."""
    return RunCommand(argv=tuple(argv), workdir=workdir, retries=retries)


def copy(src: str, dest: str, *, from_stage: str | None = None) -> Operation:
    if from_stage is not None:
        return CopyFromStage(source_stage=from_stage, source_path=src, dest_path=dest)
    return CopyFromContext(source_path=src, dest_path=dest)


def env(**values: str) -> List[Operation]:
    if not values:
        raise ValueError("env() needs at least one variable")
    # force values to str for stable hashing
    pairs = [(k, str(v)) for k, v in values.items()]
    return [SetEnv(key=pairs[0][0], value=pairs[0][1], extra=tuple(pairs[1:]))]


def workdir(path: str) -> SetWorkdir:
    return SetWorkdir(path=path)


def user(name: str) -> SetUser:
    return SetUser(name=name)


# ---------------------------------------------------------------------
# Functional stage helper
# ---------------------------------------------------------------------

OpOrOps = Union[Operation, Sequence[Operation]]


def _flatten(items: Sequence[OpOrOps]) -> List[Operation]:
    out: List[Operation] = []
    for item in items:
        if isinstance(item, (list, tuple)):
            out.extend(item)
        else:
            out.append(item)
    return out


def stage(name: str, base: Union[BaseRef, str], *operations: OpOrOps) -> StageDescriptor:
    """
    stage("openocd", after("base"), workdir("/src/openocd"), sh("make"))

    A plain string base is an external image.
    """
    if isinstance(base, str):
        base = ExternalImageRef(base)
    return StageDescriptor(name=name, base=base, operations=tuple(_flatten(operations)))


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, name: str):
        self.name = name
        self._base: Optional[BaseRef] = None
        self._ops: List[Operation] = []

    def from_image(self, ref: str):
        self._base = ExternalImageRef(ref)
        return self

    def from_stage(self, name: str):
        self._base = StageRef(name)
        return self

    def run(self, cmd: str, *, workdir: str | None = None, retries: int = 0):
        self._ops.append(sh(cmd, workdir=workdir, retries=retries))
        return self

    def run_argv(self, *argv: str, workdir: str | None = None, retries: int = 0):
        self._ops.append(run(*argv, workdir=workdir, retries=retries))
        return self

    def copy(self, src: str, dest: str, *, from_stage: str | None = None):
        self._ops.append(copy(src, dest, from_stage=from_stage))
        return self

    def env(self, **values: str):
        self._ops.extend(env(**values))
        return self

    def workdir(self, path: str):
        self._ops.append(SetWorkdir(path=path))
        return self

    def user(self, name: str):
        self._ops.append(SetUser(name=name))
        return self

    def build(self) -> StageDescriptor:
        if self._base is None:
            raise ValueError(f"stage '{self.name}' has no base (call from_image or from_stage)")
        return StageDescriptor(name=self.name, base=self._base, operations=tuple(self._ops))


def build(name: str) -> StageBuilder:
    """Convenience: build('toolchain').from_image('debian:12').run('make').build()"""
    return StageBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def pipeline(*stages: StageDescriptor) -> List[StageDescriptor]:
    """
    Users can write, in a *.py pipeline file:

        from layerforge.dsl import pipeline as stages, stage, image, after, sh

        def pipeline():
            return stages(
                stage("base", image("debian:12"), sh("apt-get update")),
                stage("tools", after("base"), sh("make")),
            )

    Or use STAGES directly:
        STAGES = pipeline(stage(...), stage(...))
    """
    return list(stages)
