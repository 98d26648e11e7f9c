import os
import threading

import pytest

from layerforge.cache import SnapshotStore
from layerforge.dag import build_graph
from layerforge.dsl import after, copy, env, image, sh, stage, workdir
from layerforge.errors import BaseUnavailable, CommandFailed, CycleDetected, MissingSourcePath, OperationError
from layerforge.executor import BaseResolver
from layerforge.model import RunCommand
from layerforge.process import CancelToken, HostProcessRunner, ProcessResult
from layerforge.runner import build_target, host_path_warnings, load_pipeline, run_build

from conftest import FakeProcessRunner, snapshot_ids, write_file


def _fetch(root, wd, env_, argv):
    write_file(root / wd.lstrip("/") / "out", "compiled")


def dev_env_stages():
    """A fetches sources, B builds a toolchain, C is B plus A's artifact."""
    return [
        stage("A", image("debian:12"), workdir("/src"), RunCommand(("fetch", "src"))),
        stage("B", image("debian:12"), RunCommand(("build-toolchain",))),
        stage(
            "C",
            after("B"),
            copy("/src/out", "/usr/bin/out", from_stage="A"),
            copy("utils/fix.patch", "/work/fix.patch"),
            workdir("/work"),
            RunCommand(("patch", "-p1")),
        ),
    ]


@pytest.fixture
def dev_runner():
    return FakeProcessRunner({"fetch": _fetch})


def _build(stages, store, runner, context_dir, quiet_console, **kwargs):
    graph = build_graph(stages)
    target = kwargs.pop("target", graph.nodes[-1].name)
    return run_build(
        graph, target, store=store, runner=runner, context_root=context_dir, console=quiet_console, **kwargs
    )


def test_independent_stages_run_concurrently(store, context_dir, quiet_console):
    barrier = threading.Barrier(2, timeout=5)

    def rendezvous(root, wd, env_, argv):
        barrier.wait()
        if argv[0] == "fetch":
            _fetch(root, wd, env_, argv)

    runner = FakeProcessRunner({"fetch": rendezvous, "build-toolchain": rendezvous})

    report = _build(dev_env_stages(), store, runner, context_dir, quiet_console, max_workers=4)

    assert report.ok
    assert report.statuses() == {"A": "built", "B": "built", "C": "built"}
    final = store.get(report.snapshot)
    assert (final.rootfs / "usr" / "bin" / "out").read_text() == "compiled"
    assert (final.rootfs / "work" / "fix.patch").is_file()
    assert runner.argvs()[-1] == ["patch", "-p1"]
    assert runner.calls[-1]["workdir"] == "/work"


def test_warm_rebuild_executes_nothing(store, dev_runner, context_dir, quiet_console):
    first = _build(dev_env_stages(), store, dev_runner, context_dir, quiet_console)
    calls = len(dev_runner.calls)

    second = _build(dev_env_stages(), store, dev_runner, context_dir, quiet_console)

    assert len(dev_runner.calls) == calls
    assert second.snapshot == first.snapshot
    assert second.statuses() == {"A": "cached", "B": "cached", "C": "cached"}
    assert all(r.executed == 0 for r in second.stages)


def test_context_change_rebuilds_only_downstream(store, dev_runner, context_dir, quiet_console):
    first = _build(dev_env_stages(), store, dev_runner, context_dir, quiet_console)
    write_file(context_dir / "utils" / "fix.patch", "new patch\n")

    second = _build(dev_env_stages(), store, dev_runner, context_dir, quiet_console)

    assert second.snapshot != first.snapshot
    assert second.statuses() == {"A": "cached", "B": "cached", "C": "built"}


def test_results_do_not_depend_on_worker_count(tmp_path, context_dir, quiet_console):
    ids = []
    for workers in (1, 4):
        store = SnapshotStore(tmp_path / f"cache-{workers}")
        report = _build(
            dev_env_stages(), store, FakeProcessRunner({"fetch": _fetch}), context_dir, quiet_console,
            max_workers=workers,
        )
        ids.append(report.snapshot)
    assert ids[0] == ids[1]


def test_missing_copy_source_fails_the_stage(store, context_dir, quiet_console):
    runner = FakeProcessRunner()  # fetch writes nothing
    before = snapshot_ids(store)

    report = _build(dev_env_stages(), store, runner, context_dir, quiet_console)

    assert not report.ok
    c = report.result("C")
    assert c.status == "failed"
    assert isinstance(c.error, MissingSourcePath)
    assert report.snapshot is None
    # A and B still finished and were stored
    assert report.result("A").status == "built"
    assert len(snapshot_ids(store)) > len(before)
    with pytest.raises(MissingSourcePath):
        report.raise_for_failure()


def test_fail_fast_stops_scheduling(store, context_dir, quiet_console):
    runner = FakeProcessRunner({"fetch": lambda *a: ProcessResult(exit_code=1, stderr="no network")})
    stages = dev_env_stages()

    report = _build(stages, store, runner, context_dir, quiet_console, max_workers=1, fail_fast=True)

    assert report.statuses() == {"A": "failed", "B": "not-attempted", "C": "not-attempted"}
    assert report.result("B").blocked_by is None
    assert report.result("C").blocked_by == "A"
    assert isinstance(report.first_error(), CommandFailed)
    assert ["build-toolchain"] not in runner.argvs()


def test_best_effort_keeps_building_unrelated_stages(store, context_dir, quiet_console):
    runner = FakeProcessRunner({"fetch": lambda *a: 1})
    stages = dev_env_stages() + [stage("D", after("B"), sh("echo d"))]
    graph = build_graph(stages)

    reports = [
        run_build(graph, t, store=store, runner=runner, context_root=context_dir,
                  console=quiet_console, max_workers=1, fail_fast=False)
        for t in ("C", "D")
    ]

    c_report, d_report = reports
    assert c_report.statuses() == {"A": "failed", "B": "built", "C": "not-attempted"}
    assert c_report.result("C").blocked_by == "A"
    assert d_report.ok
    assert d_report.statuses() == {"B": "cached", "D": "built"}


def test_cycle_executes_nothing(store, context_dir, quiet_console):
    runner = FakeProcessRunner()
    stages = [
        stage("A", image("x"), sh("one"), copy("/b", "/b", from_stage="B")),
        stage("B", image("x"), sh("two"), copy("/a", "/a", from_stage="A")),
    ]
    with pytest.raises(CycleDetected):
        build_target(stages, store=store, runner=runner, context_root=context_dir, console=quiet_console)
    assert runner.calls == []
    assert snapshot_ids(store) == set()


def test_only_the_target_closure_is_built(store, dev_runner, context_dir, quiet_console):
    report = _build(dev_env_stages(), store, dev_runner, context_dir, quiet_console, target="B")

    assert report.ok
    assert [r.name for r in report.stages] == ["B"]
    assert dev_runner.argvs() == [["build-toolchain"]]


def test_shadowed_name_builds_latest_earlier_declaration(store, context_dir, quiet_console):
    runner = FakeProcessRunner()
    stages = [
        stage("tools", image("x"), sh("one")),
        stage("tools", image("x"), sh("two")),
        stage("app", after("tools"), sh("three")),
    ]
    report = _build(stages, store, runner, context_dir, quiet_console)

    assert report.ok
    assert [c["argv"][-1] for c in runner.calls] == ["two", "three"]


def test_cancellation_reports_cancelled_and_stores_nothing_new(store, context_dir, quiet_console):
    cancel = CancelToken()

    def interrupted(*args):
        cancel.cancel()

    runner = FakeProcessRunner({"build-toolchain": interrupted})
    stages = [stage("B", image("debian:12"), env(A="1"), RunCommand(("build-toolchain",)))]
    report = _build(stages, store, runner, context_dir, quiet_console, cancel=cancel)

    assert report.cancelled
    assert report.snapshot is None
    assert report.result("B").status == "cancelled"
    assert all(rec.operation.get("kind") != "run" for rec in store.list_snapshots())


def test_tag_target_snapshot(store, dev_runner, context_dir, quiet_console):
    report = _build(dev_env_stages(), store, dev_runner, context_dir, quiet_console, tag="dev:1")
    assert store.resolve_tag("dev:1") == report.snapshot


def test_load_pipeline_from_python_module(tmp_path):
    module = tmp_path / "dev_pipeline.py"
    module.write_text(
        "from layerforge.dsl import pipeline as stages, stage, image, after, sh\n"
        "\n"
        "def pipeline():\n"
        "    return stages(\n"
        "        stage('base', image('debian:12'), sh('apt-get update')),\n"
        "        stage('tools', after('base'), sh('make')),\n"
        "    )\n"
    )
    stages = load_pipeline(module)
    assert [s.name for s in stages] == ["base", "tools"]


def test_load_pipeline_from_stagefile(tmp_path):
    path = tmp_path / "Stagefile"
    path.write_text("FROM alpine:3 AS a\nRUN true\n")
    assert [s.name for s in load_pipeline(path)] == ["a"]


def test_unreadable_base_fails_the_stage(store, context_dir, quiet_console, tmp_path):
    seed = tmp_path / "seed"
    write_file(seed / "etc" / "os-release", "ID=test\n")
    os.mkfifo(seed / "run.pipe")
    stages = [stage("S", image("img"), RunCommand(("make",)))]

    report = _build(
        stages, store, FakeProcessRunner(), context_dir, quiet_console, base_resolver=BaseResolver({"img": seed})
    )

    assert report.statuses() == {"S": "failed"}
    assert isinstance(report.first_error(), BaseUnavailable)
    with pytest.raises(BaseUnavailable):
        report.raise_for_failure()


class _DeniedResolver(BaseResolver):
    def populate(self, ref, dest):
        raise PermissionError(13, "Permission denied", str(dest))


def test_filesystem_error_fails_the_stage_instead_of_escaping(store, context_dir, quiet_console):
    stages = [
        stage("A", image("img"), RunCommand(("make",))),
        stage("B", after("A"), RunCommand(("make", "install"))),
    ]

    report = _build(stages, store, FakeProcessRunner(), context_dir, quiet_console, base_resolver=_DeniedResolver())

    assert report.statuses() == {"A": "failed", "B": "not-attempted"}
    err = report.result("A").error
    assert isinstance(err, OperationError)
    assert err.stage == "A"
    assert "Permission denied" in str(err)


def test_host_path_warnings():
    graph = build_graph(
        [
            stage(
                "dev",
                image("debian:12"),
                sh("cp build/openocd /usr/bin/openocd && echo ok > /dev/null"),
                env(PATH="$PATH:/opt/riscv/bin"),
                RunCommand(("/usr/bin/make", "-C", "src", "PREFIX=/opt/riscv")),
                sh('touch "$STAGE_ROOT/etc/marker"'),
            )
        ]
    )

    found = host_path_warnings(graph, [0])

    assert found == [
        ("dev", "RUN cp build/openocd /usr/bin/openocd && echo ok > /dev/null", ["/usr/bin/openocd"]),
        ("dev", "RUN /usr/bin/make -C src PREFIX=/opt/riscv", ["/opt/riscv"]),
    ]


def test_host_runner_warns_about_host_paths(store, context_dir, quiet_console, capsys):
    stages = [stage("dev", image("scratch"), sh("test -d /opt/layerforge-missing || true"))]

    report = _build(stages, store, HostProcessRunner(poll_interval=0.05), context_dir, quiet_console)

    assert report.ok
    err = capsys.readouterr().err
    assert "WARNING: [dev]" in err
    assert "/opt/layerforge-missing" in err

    _build(stages, store, FakeProcessRunner(), context_dir, quiet_console)
    assert "WARNING" not in capsys.readouterr().err
