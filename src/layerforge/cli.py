# cli.py
from __future__ import annotations

import signal
import sys
from pathlib import Path
from typing import Dict

import click

from layerforge.cache import SnapshotStore
from layerforge.dag import build_graph
from layerforge.errors import (
    EXIT_GRAPH_ERROR,
    EXIT_INTERRUPTED,
    GraphError,
    LayerforgeError,
    OperationError,
    StoreError,
    exit_code_for,
)
from layerforge.executor import BaseResolver
from layerforge.process import CancelToken, make_runner
from layerforge.runner import load_pipeline, run_build
from layerforge.settings import load_settings, parse_size
from layerforge.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = ("Stagefile", "Dockerfile")


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_PIPELINE_FILES if (current_dir / name).exists()]
    found.extend(sorted(current_dir.glob("*_pipeline.py")))
    return found


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover the pipeline file from argument or default.

    Raises:
        SystemExit: If no pipeline can be found or the choice is ambiguous
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a Stagefile or point at one:\n  layerforge build --file path/to/Stagefile",
            )
            sys.exit(EXIT_GRAPH_ERROR)
        return path

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINE_FILES), "  *_pipeline.py"],
            suggestion="Create a Stagefile, or specify one explicitly:\n  layerforge build --file my_pipeline.py",
        )
        sys.exit(EXIT_GRAPH_ERROR)

    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion="Specify a pipeline explicitly:\n  layerforge build --file Stagefile",
        )
        sys.exit(EXIT_GRAPH_ERROR)

    return files[0]


def _parse_bases(values: tuple[str, ...]) -> Dict[str, Path]:
    bases: Dict[str, Path] = {}
    for value in values:
        ref, eq, directory = value.partition("=")
        if not eq or not ref or not directory:
            raise click.BadParameter(f"expected REF=DIR, got {value!r}", param_hint="--base")
        bases[ref] = Path(directory)
    return bases


def _fail(ctx, exc: LayerforgeError) -> None:
    console = get_console()
    if isinstance(exc, GraphError):
        title = "Invalid pipeline"
    elif isinstance(exc, StoreError):
        title = "Cache store error"
    elif isinstance(exc, OperationError):
        title = "Build failed"
    else:
        title = "Build stopped"
    console.print_error(title, str(exc))
    if ctx.obj.get("debug", False):
        import traceback
        traceback.print_exc()
    sys.exit(exit_code_for(exc))


def _open_store(ctx, cache_dir: str | None, max_bytes: int | None = None) -> SnapshotStore:
    settings = ctx.obj["settings"]
    return SnapshotStore(cache_dir or settings.cache_dir, max_bytes=max_bytes)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show command output and stack traces)",
)
@click.pass_context
def cli(ctx, debug):
    """layerforge: stage-graph environment builder with a content-addressed cache."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["settings"] = load_settings()
    except ValueError as e:
        raise click.UsageError(f"bad LAYERFORGE_* environment: {e}")


@cli.command()
@click.argument("target", required=False)
@click.option("--file", "-f", "pipeline_file", default=None, help="Stagefile or *_pipeline.py (auto-discovered)")
@click.option("--context", "-c", "context_dir", default=".", show_default=True, help="Build context directory")
@click.option("--cache-dir", default=None, help="Cache directory [env: LAYERFORGE_CACHE_DIR]")
@click.option("--workers", default=None, type=int, help="Number of parallel stage workers")
@click.option("--fail-fast/--best-effort", default=True, show_default=True,
              help="Stop scheduling stages after the first failure, or keep building unrelated stages")
@click.option("--tag", "-t", default=None, help="Tag the target's final snapshot")
@click.option("--output", "-o", default=None, help="Export the target snapshot (.tar, .tar.gz or directory)")
@click.option("--runner", type=click.Choice(["host", "docker"]), default=None, help="Process runner for RUN")
@click.option("--default-image", default=None, help="Container image when a lineage has none (docker runner)")
@click.option("--base", "bases", multiple=True, metavar="REF=DIR", help="Seed an external base from a directory")
@click.option("--max-cache-size", default=None, help="Evict least-recently-used snapshots above this size (e.g. 20G)")
@click.option("--strict", is_flag=True, default=False, help="Reject duplicate stage names instead of shadowing")
@click.pass_context
def build(ctx, target, pipeline_file, context_dir, cache_dir, workers, fail_fast, tag, output,
          runner, default_image, bases, max_cache_size, strict):
    """Build TARGET (default: the last declared stage)."""
    console = get_console()
    settings = ctx.obj["settings"]
    path = discover_pipeline(pipeline_file)

    try:
        max_bytes = parse_size(max_cache_size) if max_cache_size else settings.cache_max_bytes
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--max-cache-size")
    base_sources = _parse_bases(bases)

    cancel = CancelToken()

    def _on_sigint(signum, frame):
        console.print_info("\nInterrupted, cancelling in-flight operations...")
        cancel.cancel()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        stages = load_pipeline(path)
        graph = build_graph(stages, strict=strict)
        if graph.shadowed:
            console.print_shadowed(graph.shadowed)
        chosen = target if target is not None else graph.nodes[-1].name
        wanted = graph.closure(chosen)

        store = _open_store(ctx, cache_dir, max_bytes)
        console.print_debug(f"closure: {[graph.nodes[i].name for i in wanted]}, max cache bytes: {max_bytes}")
        console.print_run_started(
            pipeline=path.name,
            target=chosen,
            stage_count=len(wanted),
            cache_dir=str(store.root),
        )

        report = run_build(
            graph,
            chosen,
            store=store,
            runner=make_runner(runner or settings.runner, default_image=default_image or settings.default_image),
            context_root=context_dir,
            base_resolver=BaseResolver(base_sources),
            max_workers=workers or settings.max_workers,
            fail_fast=fail_fast,
            cancel=cancel,
            tag=tag,
        )
        console.print_results(report)

        if report.cancelled:
            sys.exit(EXIT_INTERRUPTED)
        report.raise_for_failure()

        if output:
            out = store.export(report.snapshot, output)
            console.print_info(f"Exported {report.snapshot[:12]} to {out}")
        if tag:
            console.print_info(f"Tagged {report.snapshot[:12]} as {tag}")
    except LayerforgeError as e:
        _fail(ctx, e)
    finally:
        signal.signal(signal.SIGINT, previous)


@cli.command()
@click.argument("target", required=False)
@click.option("--file", "-f", "pipeline_file", default=None, help="Stagefile or *_pipeline.py (auto-discovered)")
@click.option("--strict", is_flag=True, default=False, help="Reject duplicate stage names instead of shadowing")
@click.pass_context
def graph(ctx, target, pipeline_file, strict):
    """Resolve the stage graph and print it level by level, without building."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    try:
        resolved = build_graph(load_pipeline(path), strict=strict)
        if resolved.shadowed:
            console.print_shadowed(resolved.shadowed)
        console.print_graph(resolved, target)
    except LayerforgeError as e:
        _fail(ctx, e)


@cli.command()
@click.option("--cache-dir", default=None, help="Cache directory [env: LAYERFORGE_CACHE_DIR]")
@click.pass_context
def tags(ctx, cache_dir):
    """List tagged snapshots."""
    console = get_console()
    try:
        store = _open_store(ctx, cache_dir)
        found = store.tags()
    except StoreError as e:
        _fail(ctx, e)
        return
    if not found:
        console.print_info("No tags.")
    for name, snapshot_id in found.items():
        console.print_info(f"{name}\t{snapshot_id}")


@cli.command()
@click.option("--cache-dir", default=None, help="Cache directory [env: LAYERFORGE_CACHE_DIR]")
@click.pass_context
def snapshots(ctx, cache_dir):
    """List stored snapshots."""
    console = get_console()
    try:
        store = _open_store(ctx, cache_dir)
        records = store.list_snapshots()
    except StoreError as e:
        _fail(ctx, e)
        return
    for rec in records:
        what = rec.operation.get("kind", "?")
        parent = rec.parent[:12] if rec.parent else "-"
        console.print_info(f"{rec.id[:12]}  parent={parent}  {what:<13} {rec.size} bytes")
    console.print_info(f"{len(records)} snapshot(s)")


@cli.command()
@click.option("--cache-dir", default=None, help="Cache directory [env: LAYERFORGE_CACHE_DIR]")
@click.option("--max-size", default="0", show_default=True, help="Evict until the store fits this size")
@click.pass_context
def gc(ctx, cache_dir, max_size):
    """Remove build leftovers and evict least-recently-used snapshots."""
    console = get_console()
    try:
        limit = parse_size(max_size)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--max-size")
    try:
        store = _open_store(ctx, cache_dir)
        leftovers = store.clean_staging()
        evicted = store.evict(limit)
    except StoreError as e:
        _fail(ctx, e)
        return
    console.print_info(f"Removed {leftovers} leftover(s), evicted {len(evicted)} snapshot(s).")


@cli.command()
@click.argument("ref")
@click.argument("dest")
@click.option("--cache-dir", default=None, help="Cache directory [env: LAYERFORGE_CACHE_DIR]")
@click.pass_context
def export(ctx, ref, dest, cache_dir):
    """Export a tagged snapshot (or snapshot id) to DEST."""
    console = get_console()
    try:
        store = _open_store(ctx, cache_dir)
        snapshot_id = ref if store.exists(ref) else store.resolve_tag(ref)
        out = store.export(snapshot_id, dest)
    except StoreError as e:
        _fail(ctx, e)
        return
    console.print_info(f"Exported {snapshot_id[:12]} to {out}")


def main() -> None:
    try:
        cli()
    except KeyboardInterrupt:
        get_console().print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
