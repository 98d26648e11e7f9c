from .dsl import after, build, copy, env, image, pipeline, run, sh, stage, user, workdir, StageBuilder
from .dag import BuildGraph, build_graph
from .cache import SnapshotStore
from .runner import BuildReport, load_pipeline, run_build
from .model import StageDescriptor, Snapshot

__all__ = [
    "after", "build", "copy", "env", "image", "pipeline", "run", "sh", "stage", "user", "workdir",
    "StageBuilder", "BuildGraph", "build_graph", "SnapshotStore", "BuildReport", "load_pipeline",
    "run_build", "StageDescriptor", "Snapshot",
]
