# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


class LayerforgeError(Exception):
    """Root of every error the engine raises on purpose."""


# ----------------------------------------------------------------------
# Graph errors (structural, raised before any operation runs)
# ----------------------------------------------------------------------

@dataclass
class GraphError(LayerforgeError):
    """
    Structured graph error with enough context for:
      - clean CLI output
      - pointing at the offending declaration
    """
    message: str
    stage: Optional[str] = None
    line: Optional[int] = None
    details: Dict[str, str] = field(default_factory=dict)

    kind = "graph_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.stage:
            lines.append(f"stage={self.stage}")
        if self.line:
            lines.append(f"line={self.line}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ParseError(GraphError):
    kind = "parse_error"


class UnknownDirective(ParseError):
    kind = "unknown_directive"


class MalformedReference(ParseError):
    kind = "malformed_reference"


class UnknownStageReference(GraphError):
    kind = "unknown_stage_reference"


class AmbiguousStageName(GraphError):
    kind = "ambiguous_stage_name"


@dataclass
class CycleDetected(GraphError):
    cycle: List[str] = field(default_factory=list)

    kind = "cycle_detected"


# ----------------------------------------------------------------------
# Operation errors (execution time, fatal for the owning stage)
# ----------------------------------------------------------------------

@dataclass
class OperationError(LayerforgeError):
    message: str
    stage: Optional[str] = None
    operation: Optional[str] = None
    exit_code: Optional[int] = None
    stderr_tail: str = ""

    kind = "operation_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.stage:
            lines.append(f"stage={self.stage}")
        if self.operation:
            lines.append(f"operation={self.operation}")
        if self.exit_code is not None:
            lines.append(f"exit_code={self.exit_code}")
        return "\n".join(lines)


class CommandFailed(OperationError):
    kind = "command_failed"


class MissingSourcePath(OperationError):
    kind = "missing_source_path"


class MissingContextPath(OperationError):
    kind = "missing_context_path"


class InvalidPath(OperationError):
    kind = "invalid_path"


class BaseUnavailable(OperationError):
    kind = "base_unavailable"


# ----------------------------------------------------------------------
# Store + cancellation
# ----------------------------------------------------------------------

@dataclass
class StoreError(LayerforgeError):
    message: str
    snapshot: Optional[str] = None

    kind = "store_error"

    def __str__(self) -> str:
        if self.snapshot:
            return f"{self.kind}: {self.message}\nsnapshot={self.snapshot}"
        return f"{self.kind}: {self.message}"


class BuildCancelled(LayerforgeError):
    """The build-wide cancel token was set while work was in flight."""


EXIT_GRAPH_ERROR = 1
EXIT_OPERATION_FAILED = 2
EXIT_STORE_ERROR = 3
EXIT_INTERRUPTED = 130


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, GraphError):
        return EXIT_GRAPH_ERROR
    if isinstance(exc, StoreError):
        return EXIT_STORE_ERROR
    if isinstance(exc, BuildCancelled):
        return EXIT_INTERRUPTED
    return EXIT_OPERATION_FAILED

