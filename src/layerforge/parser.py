# parser.py
"""
Stagefile parser.

A Stagefile is the Dockerfile subset the engine understands:

    FROM rust:bookworm AS base
    ENV LANG=C.UTF-8
    RUN apt-get update

    FROM base AS openocd_builder
    WORKDIR /src/openocd
    COPY utils/0001-fix.patch 0001-fix.patch
    RUN git apply 0001-fix.patch

    FROM base AS develop
    COPY --from=openocd_builder /src/openocd/src/openocd /usr/bin/openocd
    USER developer

Everything here is syntax only. Whether a `COPY --from` target exists is
decided by the graph builder; the parser only decides whether `FROM x`
names an earlier stage or an external image.
"""
from __future__ import annotations

import json
import re
import shlex
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .errors import MalformedReference, ParseError, UnknownDirective
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

STAGE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")
IMAGE_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-/:@]*$")
ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DIRECTIVES = ("FROM", "RUN", "COPY", "ENV", "WORKDIR", "USER")


def _logical_lines(text: str) -> Iterator[Tuple[int, str]]:
    """Yield (first line number, joined line) with comments and continuations handled."""
    buf: List[str] = []
    start = 0
    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not buf and (not stripped or stripped.startswith("#")):
            continue
        if buf and stripped.startswith("#"):
            # comment lines inside a continuation are dropped, like docker does
            continue
        if not buf:
            start = lineno
        if stripped.endswith("\\"):
            buf.append(stripped[:-1].strip())
            continue
        buf.append(stripped)
        yield start, " ".join(p for p in buf if p)
        buf = []
    if buf:
        yield start, " ".join(p for p in buf if p)


def _split(args: str, lineno: int, directive: str) -> List[str]:
    try:
        return shlex.split(args)
    except ValueError as e:
        raise ParseError(f"{directive}: cannot split arguments ({e})", line=lineno)


class _StageAccumulator:
    def __init__(self, name: str, base: BaseRef, line: int):
        self.name = name
        self.base = base
        self.line = line
        self.operations: List[Operation] = []

    def freeze(self) -> StageDescriptor:
        return StageDescriptor(name=self.name, base=self.base, operations=tuple(self.operations), line=self.line)


def _parse_from(args: str, lineno: int, declared: List[str]) -> Tuple[str, BaseRef]:
    tokens = args.split()
    if len(tokens) == 3 and tokens[1].upper() == "AS":
        ref, name = tokens[0], tokens[2]
        if not STAGE_NAME_RE.match(name):
            raise MalformedReference(f"invalid stage name {name!r}", line=lineno)
    elif len(tokens) == 1:
        ref, name = tokens[0], str(len(declared))
    else:
        raise MalformedReference(f"expected 'FROM <ref> [AS <name>]', got {args!r}", line=lineno)

    if ref.isdigit() or ref in declared:
        return name, StageRef(ref)
    if not IMAGE_REF_RE.match(ref):
        raise MalformedReference(f"invalid base reference {ref!r}", stage=name, line=lineno)
    return name, ExternalImageRef(ref)


def _parse_run(args: str, lineno: int) -> RunCommand:
    if not args:
        raise ParseError("RUN needs a command", line=lineno)
    if args.startswith("["):
        try:
            argv = json.loads(args)
        except json.JSONDecodeError as e:
            raise ParseError(f"RUN exec form is not valid JSON ({e.msg})", line=lineno)
        if not isinstance(argv, list) or not argv or not all(isinstance(a, str) for a in argv):
            raise ParseError("RUN exec form must be a non-empty list of strings", line=lineno)
        return RunCommand(argv=tuple(argv))
    return RunCommand(argv=("/bin/sh", "-c", args))


def _parse_copy(args: str, lineno: int) -> List[Operation]:
    tokens = _split(args, lineno, "COPY")
    source_stage: Optional[str] = None
    paths: List[str] = []
    for tok in tokens:
        if tok.startswith("--") and not paths:
            flag, _, value = tok.partition("=")
            if flag != "--from":
                raise ParseError(f"COPY flag {flag} is not supported", line=lineno)
            if not value or not (value.isdigit() or STAGE_NAME_RE.match(value)):
                raise MalformedReference(f"invalid --from reference {value!r}", line=lineno)
            source_stage = value
        else:
            paths.append(tok)

    if len(paths) < 2:
        raise ParseError("COPY needs at least one source and a destination", line=lineno)

    *sources, dest = paths
    if len(sources) > 1 and not dest.endswith("/"):
        dest += "/"

    if source_stage is not None:
        return [CopyFromStage(source_stage=source_stage, source_path=s, dest_path=dest) for s in sources]
    return [CopyFromContext(source_path=s, dest_path=dest) for s in sources]


def _parse_env(args: str, lineno: int) -> List[Operation]:
    tokens = _split(args, lineno, "ENV")
    if not tokens:
        raise ParseError("ENV needs a key and a value", line=lineno)

    pairs: List[Tuple[str, str]] = []
    if "=" in tokens[0]:
        for tok in tokens:
            key, eq, value = tok.partition("=")
            if not eq:
                raise ParseError(f"ENV: expected KEY=VALUE, got {tok!r}", line=lineno)
            pairs.append((key, value))
    else:
        if len(tokens) < 2:
            raise ParseError("ENV needs a key and a value", line=lineno)
        pairs.append((tokens[0], " ".join(tokens[1:])))

    for key, _ in pairs:
        if not ENV_KEY_RE.match(key):
            raise ParseError(f"ENV: invalid variable name {key!r}", line=lineno)
    (key, value), rest = pairs[0], pairs[1:]
    return [SetEnv(key=key, value=value, extra=tuple(rest))]


def parse_stagefile(text: str) -> List[StageDescriptor]:
    """
    Parse Stagefile text into stage descriptors, in declaration order.

    Raises:
      UnknownDirective, MalformedReference, ParseError (all GraphError)
    """
    stages: List[StageDescriptor] = []
    declared: List[str] = []
    current: Optional[_StageAccumulator] = None

    for lineno, line in _logical_lines(text):
        directive, _, args = line.partition(" ")
        directive = directive.upper()
        args = args.strip()

        if directive not in DIRECTIVES:
            raise UnknownDirective(f"unknown directive {directive!r}", line=lineno)

        if directive == "FROM":
            if current is not None:
                stages.append(current.freeze())
            name, base = _parse_from(args, lineno, declared)
            declared.append(name)
            current = _StageAccumulator(name, base, lineno)
            continue

        if current is None:
            raise ParseError(f"{directive} before the first FROM", line=lineno)

        if directive == "RUN":
            current.operations.append(_parse_run(args, lineno))
        elif directive == "COPY":
            current.operations.extend(_parse_copy(args, lineno))
        elif directive == "ENV":
            current.operations.extend(_parse_env(args, lineno))
        elif directive == "WORKDIR":
            if not args:
                raise ParseError("WORKDIR needs a path", line=lineno)
            current.operations.append(SetWorkdir(path=args))
        elif directive == "USER":
            if not args or len(args.split()) != 1:
                raise ParseError("USER needs exactly one name", line=lineno)
            current.operations.append(SetUser(name=args))

    if current is not None:
        stages.append(current.freeze())
    if not stages:
        raise ParseError("no stages declared (missing FROM)")
    return stages


def load_stagefile(path: str | Path) -> List[StageDescriptor]:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"cannot read {p}: {e.strerror or e}")
    return parse_stagefile(text)
