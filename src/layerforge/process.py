# process.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .errors import BuildCancelled, OperationError

TOOL_HINTS = {
    "git": "Install git in the base environment or fix PATH.",
    "make": "Install make (e.g., apt-get install build-essential).",
    "patch": "Install patch (e.g., apt-get install patch).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


class CancelToken:
    """Build-wide cancellation signal shared by every in-flight operation."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise BuildCancelled("build cancelled")


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class ProcessRunner(Protocol):
    """Capability used by the executor to spawn RunCommand processes."""

    def stage_root(self, root: Path) -> str:
        """Where the stage filesystem appears to the spawned process."""
        ...

    def run(
        self,
        argv: List[str],
        *,
        root: Path,
        workdir: str,
        env: Dict[str, str],
        user: Optional[str] = None,
        image: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ProcessResult:
        ...


def _terminate(proc: subprocess.Popen, grace: float) -> None:
    """SIGTERM the process group, SIGKILL it if it does not exit within `grace`."""
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            return
        try:
            proc.wait(timeout=grace)
            return
        except subprocess.TimeoutExpired:
            continue


def _wait(proc: subprocess.Popen, cancel: Optional[CancelToken], poll: float, grace: float) -> ProcessResult:
    while True:
        try:
            out, err = proc.communicate(timeout=poll)
            return ProcessResult(exit_code=proc.returncode, stdout=out or "", stderr=err or "")
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                _terminate(proc, grace)
                # reap + close pipes
                proc.communicate()
                raise BuildCancelled("build cancelled while a command was running")


class HostProcessRunner:
    """
    Runs commands directly on the host, cwd inside the staged stage root.

    Absolute paths in commands still mean host paths; build scripts address
    the stage filesystem through $STAGE_ROOT or relative paths. USER is
    recorded but not switched to.
    """

    def __init__(self, *, poll_interval: float = 0.1, kill_grace: float = 5.0):
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def stage_root(self, root: Path) -> str:
        return str(root)

    def run(
        self,
        argv: List[str],
        *,
        root: Path,
        workdir: str,
        env: Dict[str, str],
        user: Optional[str] = None,
        image: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ProcessResult:
        cwd = root / workdir.lstrip("/")
        full_env = os.environ.copy()
        full_env.update(env)

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                start_new_session=True,  # own process group, so cancel reaches children
            )
        except FileNotFoundError:
            hint = TOOL_HINTS.get(argv[0], "")
            return ProcessResult(exit_code=127, stderr=f"{argv[0]}: command not found. {hint}".strip())
        return _wait(proc, cancel, self.poll_interval, self.kill_grace)


class DockerProcessRunner:
    """
    Runs commands in a throwaway container of the lineage's base image,
    with the staged stage root bind-mounted at `mount`.
    """

    def __init__(
        self,
        *,
        mount: str = "/stage",
        default_image: Optional[str] = None,
        poll_interval: float = 0.1,
        kill_grace: float = 5.0,
    ):
        self.mount = mount.rstrip("/") or "/stage"
        self.default_image = default_image
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace
        self._checked = False

    def stage_root(self, root: Path) -> str:
        return self.mount

    def _check_docker_available(self) -> None:
        if self._checked:
            return
        try:
            subprocess.run(["docker", "--version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise OperationError("Docker is not available", stderr_tail=TOOL_HINTS["docker"])
        self._checked = True

    def command(
        self,
        argv: List[str],
        *,
        root: Path,
        workdir: str,
        env: Dict[str, str],
        user: Optional[str],
        image: Optional[str],
    ) -> List[str]:
        image = image or self.default_image
        if not image:
            raise OperationError("no container image for this stage (set a default image)")

        cmd = ["docker", "run", "--rm"]
        cmd.extend(["-v", f"{root.resolve()}:{self.mount}"])
        container_cwd = f"{self.mount}/{workdir.lstrip('/')}".rstrip("/") or self.mount
        cmd.extend(["-w", container_cwd])
        for key in sorted(env):
            cmd.extend(["-e", f"{key}={env[key]}"])
        if user:
            cmd.extend(["--user", user])
        cmd.append(image)
        cmd.extend(argv)
        return cmd

    def run(
        self,
        argv: List[str],
        *,
        root: Path,
        workdir: str,
        env: Dict[str, str],
        user: Optional[str] = None,
        image: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ProcessResult:
        self._check_docker_available()
        cmd = self.command(argv, root=root, workdir=workdir, env=env, user=user, image=image)
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            start_new_session=True,
        )
        return _wait(proc, cancel, self.poll_interval, self.kill_grace)


def make_runner(name: str, *, default_image: Optional[str] = None) -> ProcessRunner:
    if name == "host":
        return HostProcessRunner()
    if name == "docker":
        return DockerProcessRunner(default_image=default_image)
    raise ValueError(f"unknown runner {name!r} (expected 'host' or 'docker')")
