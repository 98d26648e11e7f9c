"""Console output formatting utilities for layerforge."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..dag import BuildGraph
    from ..executor import OperationOutcome
    from ..runner import BuildReport, StageResult


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show command output, debug lines and stack traces
            stream: Where normal output goes (defaults to sys.stdout)
        """
        self.debug = debug
        self._stream = stream
        self._lock = threading.Lock()

    def _out(self, text: str = "", *, err: bool = False) -> None:
        stream = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            print(text, file=stream)

    def print_run_started(self, pipeline: str, target: str, stage_count: int, cache_dir: str) -> None:
        """Print build start information."""
        self._out(
            "\nBUILD STARTED\n"
            f"Pipeline: {pipeline}\n"
            f"Target: {target}\n"
            f"Stages: {stage_count}\n"
            f"Cache: {cache_dir}\n"
        )

    def print_shadowed(self, shadowed: List[tuple]) -> None:
        """Warn about stage names declared more than once."""
        for name, old, new in shadowed:
            self._out(f"WARNING: stage {name!r} (#{old}) is shadowed by a later declaration (#{new})", err=True)

    def print_stage_start(self, name: str, base: str) -> None:
        self._out(f"[{name}] FROM {base}")

    def print_operation(self, stage: str, description: str, outcome: "OperationOutcome") -> None:
        """Print one operation line, plus its captured output in debug mode."""
        state = "CACHED" if outcome.cached else "DONE"
        lines = [f"[{stage}] {state} {description} -> {outcome.snapshot.short_id}"]
        if outcome.attempts > 1:
            lines.append(f"[{stage}]   succeeded on attempt {outcome.attempts}")
        if self.debug:
            for stream_name, text in (("stdout", outcome.stdout), ("stderr", outcome.stderr)):
                for line in text.splitlines():
                    lines.append(f"[{stage}] {stream_name}| {line}")
        self._out("\n".join(lines))

    def print_stage_done(self, result: "StageResult") -> None:
        short = (result.snapshot or "")[:12]
        self._out(
            f"[{result.name}] STATUS: {result.status} "
            f"({result.executed} executed, {result.cached} cached, {result.duration:.1f}s) -> {short}"
        )

    def print_stage_failed(self, name: str, error: Exception) -> None:
        """
        Print a stage failure.

        The captured output tail of a failed command is always shown; the
        full error only in debug mode.
        """
        lines = [f"[{name}] STATUS: failed"]
        kind = getattr(error, "kind", type(error).__name__)
        message = getattr(error, "message", str(error))
        lines.append(f"[{name}] {kind}: {message}")
        operation = getattr(error, "operation", None)
        if operation:
            lines.append(f"[{name}] operation: {operation}")
        exit_code = getattr(error, "exit_code", None)
        if exit_code is not None:
            lines.append(f"[{name}] exit code: {exit_code}")
        tail = getattr(error, "stderr_tail", "")
        if tail:
            lines.append(f"[{name}] output (tail):")
            lines.extend(f"[{name}]   {line}" for line in tail.splitlines())
        if self.debug:
            lines.append(f"Error details: {error}")
        self._out("\n".join(lines), err=True)

    def print_results(self, report: "BuildReport") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in report.stages:
            line = f"  {r.name}: {r.status.upper()}"
            if r.blocked_by:
                line += f" (blocked by {r.blocked_by})"
            lines.append(line)
        failed, skipped = report.failures(), report.not_attempted()
        if failed or skipped:
            lines.append(f"\n{len(failed)} failed, {len(skipped)} not attempted")
        if report.snapshot:
            lines.append(f"\nTarget {report.target}: {report.snapshot}")
        self._out("\n".join(lines))

    def print_graph(self, graph: "BuildGraph", target: Optional[str] = None) -> None:
        """Print the resolved stages level by level."""
        indices = graph.closure(target) if target is not None else None
        for level_idx, level in enumerate(graph.levels(indices)):
            self._out(f"=== Level {level_idx}: {[graph.nodes[i].name for i in level]} ===")
            for i in level:
                node = graph.nodes[i]
                base = graph.nodes[node.base_index].name if node.base_index is not None else str(node.descriptor.base)
                copies = sorted({graph.nodes[j].name for j in node.copy_deps})
                extra = f" copies-from={copies}" if copies else ""
                self._out(f"  #{i} {node.name} <- {base}{extra} ({len(node.descriptor.operations)} ops)")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
