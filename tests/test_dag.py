import pytest

from layerforge.dag import build_graph, topo_levels
from layerforge.dsl import after, copy, image, sh, stage
from layerforge.errors import AmbiguousStageName, CycleDetected, UnknownStageReference
from layerforge.parser import parse_stagefile


def _three_stages():
    return [
        stage("A", image("debian:12"), sh("fetch src")),
        stage("B", image("debian:12"), sh("build-toolchain")),
        stage("C", after("B"), copy("/src/out", "/usr/bin/out", from_stage="A")),
    ]


def test_ranks_follow_longest_dependency_path():
    graph = build_graph(_three_stages())

    a, b, c = graph.nodes
    assert (a.rank, b.rank, c.rank) == (0, 0, 1)
    assert c.base_index == 1
    assert c.deps == frozenset({0, 1})
    assert c.copy_deps == frozenset({0})
    assert c.copy_sources == {0: 0}
    assert graph.levels() == [[0, 1], [2]]


def test_closure_only_pulls_in_dependencies():
    stages = _three_stages() + [stage("D", image("alpine:3"), sh("true"))]
    graph = build_graph(stages)

    assert graph.closure("C") == [0, 1, 2]
    assert graph.closure("B") == [1]
    assert graph.closure("D") == [3]
    assert graph.dependents(0) == {2}


def test_unknown_reference():
    stages = [stage("A", after("nope"))]
    with pytest.raises(UnknownStageReference) as exc:
        build_graph(stages)
    assert exc.value.stage == "A"


def test_unknown_copy_source():
    stages = [stage("A", image("x")), stage("B", after("A"), copy("/a", "/b", from_stage="ghost"))]
    with pytest.raises(UnknownStageReference):
        build_graph(stages)


def test_forward_reference_without_cycle_is_unknown():
    stages = [
        stage("A", image("x"), copy("/a", "/a", from_stage="B")),
        stage("B", image("x")),
    ]
    with pytest.raises(UnknownStageReference):
        build_graph(stages)


def test_copy_cycle_is_detected():
    stages = [
        stage("A", image("x"), copy("/b", "/b", from_stage="B")),
        stage("B", image("x"), copy("/a", "/a", from_stage="A")),
    ]
    with pytest.raises(CycleDetected) as exc:
        build_graph(stages)
    assert set(exc.value.cycle) == {"A", "B"}
    assert exc.value.cycle[0] == exc.value.cycle[-1]


def test_self_copy_is_a_cycle():
    stages = [stage("A", image("x"), copy("/a", "/b", from_stage="A"))]
    with pytest.raises(CycleDetected):
        build_graph(stages)


def test_duplicate_name_resolves_to_most_recent_earlier_declaration():
    text = """\
FROM alpine:3 AS tools
RUN echo one
FROM alpine:3 AS tools
RUN echo two
FROM tools AS app
"""
    graph = build_graph(parse_stagefile(text))

    assert graph.nodes[2].base_index == 1
    assert graph.shadowed == [("tools", 0, 1)]
    assert graph.index_of("tools") == 1


def test_reference_before_redeclaration_uses_earlier_stage():
    stages = [
        stage("tools", image("x")),
        stage("app", after("tools")),
        stage("tools", image("y")),
    ]
    graph = build_graph(stages)
    assert graph.nodes[1].base_index == 0


def test_strict_mode_rejects_duplicate_names():
    stages = [stage("tools", image("x")), stage("tools", image("y"))]
    with pytest.raises(AmbiguousStageName):
        build_graph(stages, strict=True)


def test_index_of_accepts_numeric_targets():
    graph = build_graph(_three_stages())
    assert graph.index_of("2") == 2
    assert graph.index_of(0) == 0
    with pytest.raises(UnknownStageReference):
        graph.index_of("9")


def test_topo_levels_reports_stuck_nodes():
    adj = {0: {1}, 1: {2}, 2: {1}}
    indeg = {0: 0, 1: 2, 2: 1}
    levels, stuck = topo_levels(adj, indeg)
    assert levels == [[0]]
    assert stuck == [1, 2]
