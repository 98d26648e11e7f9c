# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union


# ---------------------------------------------------------------------
# Base references
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StageRef:
    """Reference to a stage declared earlier in the same graph (by name or index)."""
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class ExternalImageRef:
    """An externally published base environment, e.g. ``rust:bookworm``."""
    ref: str

    def __str__(self) -> str:
        return self.ref


BaseRef = Union[StageRef, ExternalImageRef]


# ---------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RunCommand:
    """Spawn a command inside the stage filesystem."""
    argv: Tuple[str, ...]
    workdir: Optional[str] = None
    # explicit opt-in; commands are never retried otherwise
    retries: int = 0
    kind: str = field(default="run", init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "argv", tuple(self.argv))
        if not self.argv:
            raise ValueError("RunCommand needs a non-empty argv")

    def describe(self) -> str:
        if self.argv[:2] == ("/bin/sh", "-c") and len(self.argv) == 3:
            return f"RUN {self.argv[2]}"
        return "RUN " + " ".join(self.argv)


@dataclass(frozen=True)
class CopyFromStage:
    source_stage: str
    source_path: str
    dest_path: str
    kind: str = field(default="copy-stage", init=False)

    def describe(self) -> str:
        return f"COPY --from={self.source_stage} {self.source_path} {self.dest_path}"


@dataclass(frozen=True)
class CopyFromContext:
    source_path: str
    dest_path: str
    kind: str = field(default="copy-context", init=False)

    def describe(self) -> str:
        return f"COPY {self.source_path} {self.dest_path}"


@dataclass(frozen=True)
class SetEnv:
    """
    One ENV instruction. `extra` holds the pairs after the first when the
    instruction sets several; all of them expand against the env as it
    was before the instruction.
    """
    key: str
    value: str
    extra: Tuple[Tuple[str, str], ...] = ()
    kind: str = field(default="env", init=False)

    @property
    def pairs(self) -> Tuple[Tuple[str, str], ...]:
        return ((self.key, self.value),) + tuple(self.extra)

    def describe(self) -> str:
        return "ENV " + " ".join(f"{k}={v}" for k, v in self.pairs)


@dataclass(frozen=True)
class SetWorkdir:
    path: str
    kind: str = field(default="workdir", init=False)

    def describe(self) -> str:
        return f"WORKDIR {self.path}"


@dataclass(frozen=True)
class SetUser:
    name: str
    kind: str = field(default="user", init=False)

    def describe(self) -> str:
        return f"USER {self.name}"


Operation = Union[RunCommand, CopyFromStage, CopyFromContext, SetEnv, SetWorkdir, SetUser]

METADATA_KINDS = frozenset({"env", "workdir", "user"})


def is_metadata_only(op: Operation) -> bool:
    return op.kind in METADATA_KINDS


# ---------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StageDescriptor:
    """
    One build stage: a base, then operations applied strictly in order.

    `line` is the declaration line in the source file (0 for stages built
    in Python) and only feeds error messages.
    """
    name: str
    base: BaseRef
    operations: Tuple[Operation, ...] = ()
    line: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "operations", tuple(self.operations))


# ---------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Snapshot:
    """
    Immutable filesystem + environment state owned by the SnapshotStore.

    `tree` names the snapshot whose rootfs directory holds the files; for
    metadata-only snapshots it is an ancestor's id.
    """
    id: str
    parent: Optional[str]
    tree: str
    rootfs: Path
    env: Dict[str, str] = field(default_factory=dict)
    workdir: str = "/"
    user: Optional[str] = None
    image: Optional[str] = None
    operation: Dict[str, Any] = field(default_factory=dict)

    @property
    def short_id(self) -> str:
        return self.id[:12]
