import pytest

from layerforge.dsl import build, env, sh, stage
from layerforge.model import ExternalImageRef, SetEnv, StageRef
from layerforge.settings import load_settings, parse_size


@pytest.mark.parametrize(
    "value,expected",
    [("512", 512), ("1K", 1024), ("20G", 20 * 1024 ** 3), ("3MiB", 3 * 1024 ** 2), ("2gb", 2 * 1024 ** 3)],
)
def test_parse_size(value, expected):
    assert parse_size(value) == expected


def test_parse_size_rejects_garbage():
    with pytest.raises(ValueError):
        parse_size("lots")


def test_load_settings_from_environment():
    settings = load_settings(
        {
            "LAYERFORGE_CACHE_DIR": "/var/cache/lf",
            "LAYERFORGE_MAX_WORKERS": "3",
            "LAYERFORGE_CACHE_MAX_BYTES": "1G",
            "LAYERFORGE_RUNNER": "docker",
        }
    )
    assert settings.cache_dir == "/var/cache/lf"
    assert settings.max_workers == 3
    assert settings.cache_max_bytes == 1024 ** 3
    assert settings.runner == "docker"
    assert settings.default_image is None


def test_load_settings_defaults():
    settings = load_settings({})
    assert settings.cache_dir == ".layerforge/cache"
    assert settings.max_workers is None
    assert settings.runner == "host"


def test_dsl_helpers_build_descriptors():
    base = stage("base", "debian:12", env(LANG="C.UTF-8", LC_ALL="C.UTF-8"), sh("apt-get update"))
    assert base.base == ExternalImageRef("debian:12")
    assert base.operations[0] == SetEnv("LANG", "C.UTF-8", extra=(("LC_ALL", "C.UTF-8"),))
    assert base.operations[0].describe() == "ENV LANG=C.UTF-8 LC_ALL=C.UTF-8"

    tools = build("tools").from_stage("base").workdir("/src").run("make").run_argv("make", "install").build()
    assert tools.base == StageRef("base")
    assert [op.kind for op in tools.operations] == ["workdir", "run", "run"]

    with pytest.raises(ValueError):
        build("orphan").run("make").build()
