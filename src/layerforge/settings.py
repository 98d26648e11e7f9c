from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMGT]?)i?B?\s*$", re.IGNORECASE)
_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}


def parse_size(value: str) -> int:
    """'512M' -> bytes. Plain integers are bytes."""
    m = _SIZE_RE.match(value)
    if not m:
        raise ValueError(f"invalid size {value!r} (expected e.g. 512M, 20G)")
    return int(m.group(1)) * _UNITS[m.group(2).upper()]


@dataclass(frozen=True)
class Settings:
    cache_dir: str = ".layerforge/cache"
    max_workers: Optional[int] = None
    cache_max_bytes: Optional[int] = None
    runner: str = "host"
    default_image: Optional[str] = None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read LAYERFORGE_* environment variables; CLI options override these."""
    env = os.environ if environ is None else environ
    workers = env.get("LAYERFORGE_MAX_WORKERS")
    max_bytes = env.get("LAYERFORGE_CACHE_MAX_BYTES")
    return Settings(
        cache_dir=env.get("LAYERFORGE_CACHE_DIR", Settings.cache_dir),
        max_workers=int(workers) if workers else None,
        cache_max_bytes=parse_size(max_bytes) if max_bytes else None,
        runner=env.get("LAYERFORGE_RUNNER", Settings.runner),
        default_image=env.get("LAYERFORGE_DEFAULT_IMAGE") or None,
    )
