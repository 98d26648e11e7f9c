# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .errors import AmbiguousStageName, CycleDetected, UnknownStageReference
from .model import CopyFromStage, StageDescriptor, StageRef


@dataclass(frozen=True)
class StageNode:
    """
    One resolved stage. Dependencies are arena indices into BuildGraph.nodes.

    `copy_sources` maps the position of each CopyFromStage operation to the
    index of the stage it copies from.
    """
    index: int
    descriptor: StageDescriptor
    base_index: Optional[int]
    copy_sources: Dict[int, int]
    deps: FrozenSet[int]
    rank: int

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def copy_deps(self) -> FrozenSet[int]:
        return frozenset(self.copy_sources.values())


@dataclass
class BuildGraph:
    nodes: List[StageNode]
    # (name, shadowed declaration index, shadowing declaration index)
    shadowed: List[Tuple[str, int, int]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.nodes)

    def index_of(self, ref: str | int) -> int:
        """Resolve a target to a stage index. Names resolve to their last declaration."""
        if isinstance(ref, int) or ref.isdigit():
            idx = int(ref)
            if 0 <= idx < len(self.nodes):
                return idx
        else:
            for node in reversed(self.nodes):
                if node.name == ref:
                    return node.index
        raise UnknownStageReference(
            f"no stage named {ref!r}",
            details={"known": ", ".join(n.name for n in self.nodes)},
        )

    def closure(self, target: str | int) -> List[int]:
        """Indices the target transitively depends on (target included), in topological order."""
        start = self.index_of(target)
        seen: Set[int] = set()
        stack = [start]
        while stack:
            idx = stack.pop()
            if idx in seen:
                continue
            seen.add(idx)
            stack.extend(self.nodes[idx].deps)
        return sorted(seen, key=lambda i: (self.nodes[i].rank, i))

    def levels(self, indices: Optional[Iterable[int]] = None) -> List[List[int]]:
        """Group stages by rank. Stages in one level can run in parallel."""
        wanted = range(len(self.nodes)) if indices is None else indices
        by_rank: Dict[int, List[int]] = {}
        for idx in wanted:
            by_rank.setdefault(self.nodes[idx].rank, []).append(idx)
        return [sorted(by_rank[r]) for r in sorted(by_rank)]

    def dependents(self, index: int) -> Set[int]:
        """Every stage that (transitively) depends on `index`."""
        out: Set[int] = set()
        frontier = [index]
        while frontier:
            cur = frontier.pop()
            for node in self.nodes:
                if cur in node.deps and node.index not in out:
                    out.add(node.index)
                    frontier.append(node.index)
        return out


# ----------------------------------------------------------------------
# Reference resolution
# ----------------------------------------------------------------------

def _resolve(ref: str, at: int, names: List[str]) -> Tuple[Optional[int], bool]:
    """
    Returns (index, is_forward).

    Earlier declarations win, the most recent one first. Failing that, a
    later (or the same) declaration is returned flagged as forward so cycle
    detection can see it. (None, False) means the name exists nowhere.
    """
    if ref.isdigit():
        idx = int(ref)
        if idx < at:
            return idx, False
        if idx < len(names):
            return idx, True
        return None, False

    for j in range(at - 1, -1, -1):
        if names[j] == ref:
            return j, False
    for j in range(at, len(names)):
        if names[j] == ref:
            return j, True
    return None, False


def topo_levels(adj: Dict[int, Set[int]], indeg: Dict[int, int]) -> Tuple[List[List[int]], List[int]]:
    """
    Convert the edge set into topological "levels" (Kahn).
    Returns (levels, stuck) where stuck lists nodes left on a cycle.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[int]] = []
    while q:
        level_size = len(q)
        level: List[int] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    stuck = sorted(n for n, d in indeg.items() if d > 0)
    return levels, stuck


def _find_cycle(stuck: List[int], deps: Dict[int, Set[int]]) -> List[int]:
    stuck_set = set(stuck)
    path: List[int] = []
    on_path: Set[int] = set()
    visited: Set[int] = set()

    def visit(n: int) -> Optional[List[int]]:
        path.append(n)
        on_path.add(n)
        for d in sorted(deps.get(n, set()) & stuck_set):
            if d in on_path:
                return path[path.index(d):] + [d]
            if d not in visited:
                found = visit(d)
                if found:
                    return found
        on_path.discard(path.pop())
        visited.add(n)
        return None

    for start in stuck:
        if start not in visited:
            found = visit(start)
            if found:
                return found
    return stuck


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def build_graph(stages: Iterable[StageDescriptor], *, strict: bool = False) -> BuildGraph:
    """
    Resolve ordered stage declarations into a BuildGraph.

    Raises:
      AmbiguousStageName    (strict mode only; otherwise reported in graph.shadowed)
      CycleDetected         (base/copy references loop back)
      UnknownStageReference (reference to a missing or later stage)
    """
    stages = list(stages)
    names = [s.name for s in stages]

    shadowed: List[Tuple[str, int, int]] = []
    last_seen: Dict[str, int] = {}
    for i, name in enumerate(names):
        if name in last_seen:
            if strict:
                raise AmbiguousStageName(
                    f"stage {name!r} is declared more than once",
                    stage=name,
                    line=stages[i].line or None,
                    details={"first": str(last_seen[name]), "again": str(i)},
                )
            shadowed.append((name, last_seen[name], i))
        last_seen[name] = i

    base_index: Dict[int, Optional[int]] = {}
    copy_sources: Dict[int, Dict[int, int]] = {}
    deps: Dict[int, Set[int]] = {i: set() for i in range(len(stages))}
    unknown: List[Tuple[int, str]] = []
    forward: List[Tuple[int, str, int]] = []

    def link(i: int, ref: str) -> Optional[int]:
        target, is_forward = _resolve(ref, i, names)
        if target is None:
            unknown.append((i, ref))
            return None
        if is_forward:
            forward.append((i, ref, target))
        deps[i].add(target)
        return target

    for i, stage in enumerate(stages):
        base_index[i] = link(i, stage.base.name) if isinstance(stage.base, StageRef) else None
        copy_sources[i] = {}
        for pos, op in enumerate(stage.operations):
            if isinstance(op, CopyFromStage):
                target = link(i, op.source_stage)
                if target is not None:
                    copy_sources[i][pos] = target

    # Edge dep -> stage (dep must be materialized before stage)
    adj: Dict[int, Set[int]] = {i: set() for i in deps}
    indeg: Dict[int, int] = {i: len(d) for i, d in deps.items()}
    for i, dset in deps.items():
        for d in dset:
            adj[d].add(i)

    levels, stuck = topo_levels(adj, indeg)
    if stuck:
        loop = _find_cycle(stuck, deps)
        cycle = [names[i] for i in loop]
        raise CycleDetected(
            f"stage references form a cycle: {' -> '.join(cycle)}",
            stage=cycle[0],
            line=stages[loop[0]].line or None,
            cycle=cycle,
        )

    if unknown:
        i, ref = unknown[0]
        raise UnknownStageReference(
            f"stage {names[i]!r} references unknown stage {ref!r}",
            stage=names[i],
            line=stages[i].line or None,
        )
    if forward:
        i, ref, target = forward[0]
        raise UnknownStageReference(
            f"stage {names[i]!r} references {ref!r}, which is only declared later (#{target})",
            stage=names[i],
            line=stages[i].line or None,
        )

    rank: Dict[int, int] = {}
    for level_idx, level in enumerate(levels):
        for i in level:
            rank[i] = level_idx

    nodes = [
        StageNode(
            index=i,
            descriptor=stage,
            base_index=base_index[i],
            copy_sources=copy_sources[i],
            deps=frozenset(deps[i]),
            rank=rank[i],
        )
        for i, stage in enumerate(stages)
    ]
    return BuildGraph(nodes=nodes, shadowed=shadowed)
