# runner.py
from __future__ import annotations

import os
import re
import runpy
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .cache import Lease, SnapshotStore
from .dag import BuildGraph, StageNode, build_graph
from .errors import BuildCancelled, LayerforgeError, OperationError, ParseError
from .executor import BaseResolver, OperationExecutor
from .model import ExternalImageRef, RunCommand, Snapshot, StageDescriptor
from .parser import load_stagefile
from .process import CancelToken, HostProcessRunner, ProcessRunner
from .ui.console import Console, get_console

STATUS_BUILT = "built"
STATUS_CACHED = "cached"
STATUS_FAILED = "failed"
STATUS_NOT_ATTEMPTED = "not-attempted"
STATUS_CANCELLED = "cancelled"

_ABS_PATH_RE = re.compile(r"""(?:^|[\s=:'"(])(/[^\s'";|&()<>]+)""")


# ----------------------------------------------------------------------
# Pipeline loading (Stagefile or python module)
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> List[StageDescriptor]:
    """
    Load stage declarations.

    `*.py` files must define either:
      - pipeline() -> List[StageDescriptor]
      - STAGES = [StageDescriptor, ...]
    Anything else is parsed as a Stagefile.
    """
    src = Path(path).expanduser().resolve()
    if not src.exists():
        raise ParseError(f"pipeline file not found: {src}")
    if src.suffix != ".py":
        return load_stagefile(src)

    module_name = f"layerforge_pipeline_{src.stem}"
    globals_dict = runpy.run_path(str(src), run_name=module_name)

    stages = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        stages = globals_dict["pipeline"]()
    elif "STAGES" in globals_dict:
        stages = globals_dict["STAGES"]

    if not isinstance(stages, list) or not all(isinstance(s, StageDescriptor) for s in stages):
        raise ParseError(
            "pipeline module must return/define a List[StageDescriptor]: "
            "define pipeline() -> List[StageDescriptor] or STAGES = [...]"
        )
    return stages


# ----------------------------------------------------------------------
# Report
# ----------------------------------------------------------------------

@dataclass
class StageResult:
    name: str
    index: int
    status: str = "pending"
    snapshot: Optional[str] = None
    executed: int = 0
    cached: int = 0
    duration: float = 0.0
    error: Optional[LayerforgeError] = None
    # name of the failed stage that kept this one from running
    blocked_by: Optional[str] = None


@dataclass
class BuildReport:
    target: str
    stages: List[StageResult] = field(default_factory=list)
    snapshot: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None and all(
            r.status in (STATUS_BUILT, STATUS_CACHED) for r in self.stages
        )

    @property
    def cancelled(self) -> bool:
        return any(r.status == STATUS_CANCELLED for r in self.stages)

    def result(self, name: str) -> StageResult:
        for r in reversed(self.stages):
            if r.name == name:
                return r
        raise KeyError(name)

    def failures(self) -> List[StageResult]:
        return [r for r in self.stages if r.status == STATUS_FAILED]

    def not_attempted(self) -> List[StageResult]:
        return [r for r in self.stages if r.status == STATUS_NOT_ATTEMPTED]

    def statuses(self) -> Dict[str, str]:
        return {r.name: r.status for r in self.stages}

    def first_error(self) -> Optional[LayerforgeError]:
        for r in self.stages:
            if r.error is not None and r.status == STATUS_FAILED:
                return r.error
        for r in self.stages:
            if r.error is not None:
                return r.error
        return None

    def raise_for_failure(self) -> None:
        err = self.first_error()
        if err is not None:
            raise err
        if self.snapshot is None:
            raise BuildCancelled("build stopped before the target was built")


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _build_stage(
    node: StageNode,
    finals: Dict[int, Snapshot],
    executor: OperationExecutor,
    lease: Lease,
    result: StageResult,
    console: Console,
) -> Snapshot:
    """Materialize one stage. Operations run strictly in order."""
    desc = node.descriptor
    started = time.monotonic()
    console.print_stage_start(desc.name, str(desc.base))

    try:
        if node.base_index is None:
            assert isinstance(desc.base, ExternalImageRef)
            snap = executor.base_snapshot(desc.base.ref, lease=lease).snapshot
        else:
            snap = finals[node.base_index]

        for pos, op in enumerate(desc.operations):
            source = finals[node.copy_sources[pos]] if pos in node.copy_sources else None
            outcome = executor.apply(snap, op, stage=desc.name, source=source, lease=lease)
            if outcome.cached:
                result.cached += 1
            else:
                result.executed += 1
            console.print_operation(desc.name, op.describe(), outcome)
            snap = outcome.snapshot
    finally:
        result.duration = time.monotonic() - started

    result.snapshot = snap.id
    result.status = STATUS_CACHED if result.executed == 0 else STATUS_BUILT
    return snap


def _blocked_by(graph: BuildGraph, index: int, failed: Set[int]) -> Optional[int]:
    """First failed stage (by index) that `index` transitively depends on."""
    seen: Set[int] = set()
    stack = list(graph.nodes[index].deps)
    hits: List[int] = []
    while stack:
        cur = stack.pop()
        if cur in seen:
            continue
        seen.add(cur)
        if cur in failed:
            hits.append(cur)
        stack.extend(graph.nodes[cur].deps)
    return min(hits) if hits else None


def host_path_warnings(graph: BuildGraph, indices: List[int]) -> List[Tuple[str, str, List[str]]]:
    """
    Absolute paths named by RUN arguments, per (stage, operation).

    Under the host runner these are paths on the build machine, not in the
    stage tree. argv[0] is skipped; /dev paths are fine on either side.
    """
    found: List[Tuple[str, str, List[str]]] = []
    for i in indices:
        node = graph.nodes[i]
        for op in node.descriptor.operations:
            if not isinstance(op, RunCommand):
                continue
            paths: List[str] = []
            for arg in op.argv[1:]:
                for p in _ABS_PATH_RE.findall(arg):
                    if not p.startswith("/dev/") and p not in paths:
                        paths.append(p)
            if paths:
                found.append((node.name, op.describe(), paths))
    return found


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_build(
    graph: BuildGraph,
    target: str | int,
    *,
    store: SnapshotStore,
    runner: Optional[ProcessRunner] = None,
    context_root: str | Path = ".",
    base_resolver: Optional[BaseResolver] = None,
    max_workers: int | None = None,
    fail_fast: bool = True,
    cancel: Optional[CancelToken] = None,
    tag: Optional[str] = None,
    console: Optional[Console] = None,
) -> BuildReport:
    """
    Build `target` and every stage it transitively depends on.

    Stages run on a thread pool as soon as all their dependencies have a
    final snapshot. fail_fast stops scheduling after the first failure;
    otherwise unrelated stages keep going (best effort).
    """
    console = console or get_console()
    cancel = cancel or CancelToken()
    runner = runner or HostProcessRunner()
    executor = OperationExecutor(
        store,
        runner,
        context_root=context_root,
        base_resolver=base_resolver,
        cancel=cancel,
    )

    target_idx = graph.index_of(target)
    wanted = graph.closure(target_idx)
    wanted_set = set(wanted)

    if isinstance(runner, HostProcessRunner):
        for name, what, paths in host_path_warnings(graph, wanted):
            console.print_warning(
                f"[{name}] {what} names {', '.join(paths)}; the host runner resolves these on this machine, "
                "not in the stage tree (use $STAGE_ROOT or --runner docker)"
            )

    adj: Dict[int, Set[int]] = {i: set() for i in wanted}   # dep -> dependents
    indeg: Dict[int, int] = {i: 0 for i in wanted}          # in-degree per stage
    for i in wanted:
        for d in graph.nodes[i].deps:
            if d in wanted_set:
                adj[d].add(i)
                indeg[i] += 1

    results: Dict[int, StageResult] = {
        i: StageResult(name=graph.nodes[i].name, index=i) for i in wanted
    }
    ready: List[int] = sorted(i for i, deg in indeg.items() if deg == 0)
    finals: Dict[int, Snapshot] = {}
    failed: Set[int] = set()
    stop = False

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    in_flight: Dict = {}

    with store.lease() as lease, ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            # schedule ready stages, at most one per worker
            while ready and not stop and len(in_flight) < max_workers:
                i = ready.pop(0)
                fut = pool.submit(_build_stage, graph.nodes[i], finals, executor, lease, results[i], console)
                in_flight[fut] = i

            if not in_flight:
                break

            # wait for one completion, then loop to schedule newly-ready stages
            fut = next(as_completed(list(in_flight.keys())))
            i = in_flight.pop(fut)
            res = results[i]

            try:
                finals[i] = fut.result()
            except BuildCancelled as e:
                res.status = STATUS_CANCELLED
                res.error = e
                stop = True
                continue
            except (LayerforgeError, OSError) as e:
                err = e if isinstance(e, LayerforgeError) else OperationError(f"filesystem error: {e}", stage=res.name)
                res.status = STATUS_FAILED
                res.error = err
                failed.add(i)
                console.print_stage_failed(res.name, err)
                if fail_fast:
                    stop = True
                continue

            console.print_stage_done(res)
            if cancel.cancelled:
                stop = True
            # unlock dependents only on success
            for nxt in sorted(adj[i]):
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    ready.append(nxt)

        for i in wanted:
            res = results[i]
            if res.status != "pending":
                continue
            blocker = _blocked_by(graph, i, failed)
            if blocker is not None:
                res.status = STATUS_NOT_ATTEMPTED
                res.blocked_by = graph.nodes[blocker].name
            elif cancel.cancelled:
                res.status = STATUS_CANCELLED
            else:
                res.status = STATUS_NOT_ATTEMPTED

        report = BuildReport(target=graph.nodes[target_idx].name, stages=[results[i] for i in wanted])
        if target_idx in finals:
            report.snapshot = finals[target_idx].id
            if tag:
                store.tag(tag, report.snapshot)

    return report


def build_target(
    stages: List[StageDescriptor],
    target: Optional[str] = None,
    **kwargs,
) -> Tuple[BuildGraph, BuildReport]:
    """Convenience: resolve the graph and build `target` (default: last stage)."""
    graph = build_graph(stages)
    report = run_build(graph, target if target is not None else len(graph) - 1, **kwargs)
    return graph, report
