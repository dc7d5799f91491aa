"""Utility functions for running subprocesses and writing build products."""
from __future__ import annotations

import os
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Mapping


class CommandError(subprocess.CalledProcessError):
    """A compiler or linker invocation that exited with a nonzero status.  Its string
    form holds the command line and the tool's diagnostics, which the invoker and
    linker carry into their own errors.
    """
    def __init__(self, returncode: int, cmd: list[str], stdout: str, stderr: str) -> None:
        super().__init__(returncode, cmd, stdout, stderr)

    def __str__(self) -> str:
        out = [
            f"Exit code {self.returncode} from command:\n\n"
            f"    {' '.join(shlex.quote(a) for a in self.cmd)}"
        ]
        if self.stderr:
            out.append(self.stderr.strip())
        return "\n\n".join(out)


class ChildProcesses:
    """A thread-safe registry of live child processes, so that an interrupted build
    can terminate every compiler that is still running instead of orphaning it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: set[subprocess.Popen[str]] = set()

    def add(self, process: subprocess.Popen[str]) -> None:
        """Register a newly spawned process.

        Parameters
        ----------
        process : subprocess.Popen
            The process to track.
        """
        with self._lock:
            self._live.add(process)

    def discard(self, process: subprocess.Popen[str]) -> None:
        """Stop tracking a process once it has exited.

        Parameters
        ----------
        process : subprocess.Popen
            The process to forget.
        """
        with self._lock:
            self._live.discard(process)

    def terminate(self, timeout: float = 5.0) -> int:
        """Terminate every live process, escalating to a kill if a process does not
        exit within the timeout.

        Parameters
        ----------
        timeout : float, optional
            Seconds to wait for each process after sending SIGTERM.

        Returns
        -------
        int
            The number of processes that were signalled.
        """
        with self._lock:
            live = list(self._live)
        for process in live:
            if process.poll() is None:
                process.terminate()
        for process in live:
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        return len(live)

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)


CHILDREN = ChildProcesses()


def run(
    argv: list[str],
    *,
    check: bool = True,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    children: ChildProcesses | None = None,
) -> subprocess.CompletedProcess[str]:
    """A wrapper around `subprocess.Popen` that blocks until the command exits,
    captures its output in text mode, and properly formats errors.

    Parameters
    ----------
    argv : list[str]
        The command and its arguments to run.
    check : bool, optional
        Whether to raise a `CommandError` if the command fails (default is True).
    cwd : Path | None, optional
        An optional working directory to run the command in.
    env : Mapping[str, str] | None, optional
        An optional environment dictionary to use for the command.  If None (the
        default), then the current process's environment will be used.
    children : ChildProcesses | None, optional
        The registry to track the process in while it runs.  Defaults to the global
        `CHILDREN` registry.

    Returns
    -------
    subprocess.CompletedProcess
        The completed process result, with stdout and stderr captured.

    Raises
    ------
    FileNotFoundError
        If the executable does not exist.
    CommandError
        If the command fails and `check` is True.  The text of the error reflects
        the error code, original command, and captured output from stderr.
    """
    registry = CHILDREN if children is None else children
    process = subprocess.Popen(
        argv,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        cwd=cwd,
        env=env,
    )
    registry.add(process)
    try:
        stdout, stderr = process.communicate()
    except BaseException:
        process.kill()
        process.wait()
        raise
    finally:
        registry.discard(process)

    result = subprocess.CompletedProcess(
        argv, process.returncode, stdout or "", stderr or ""
    )
    if check and result.returncode != 0:
        raise CommandError(result.returncode, argv, result.stdout, result.stderr)
    return result


def atomic_write_text(path: Path, text: str) -> None:
    """Atomically write text to a file, avoiding race conditions and partial writes.

    Parameters
    ----------
    path : Path
        The path to write to.
    text : str
        The text to write.
    """
    atomic_write_bytes(path, text.encode("utf-8"))


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Atomically write bytes to a file, avoiding race conditions and partial writes.

    Parameters
    ----------
    path : Path
        The path to write to.
    data : bytes
        The bytes to write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}.{time.monotonic_ns()}")
    tmp.write_bytes(data)
    try:
        with tmp.open("r+b") as f:
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        pass
    tmp.replace(path)
