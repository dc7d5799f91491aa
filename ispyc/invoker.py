"""Spawn the external SPMD compiler over a set of compile jobs.

The environment that the compiler is located through is captured once in a
`Toolchain` and passed in explicitly, so that nothing in this module reads
`os.environ` on its own.
"""
from __future__ import annotations

import functools
import hashlib
import os
import platform
import re
import shlex
import shutil
import sys
import sysconfig
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Sequence

from packaging.version import InvalidVersion, Version

from .errors import CompilationFailure, ToolNotFound
from .messages import CYAN, WHITE, YELLOW, DEBUG, INFO, WARN
from .run import CHILDREN, ChildProcesses, CommandError, run
from .targets import (
    CPU, Addressing, MathLib, OptimizationOpt, TargetISA, TargetOS, arch_flag,
    is_windows
)


@functools.cache
def host_triple() -> str:
    """Get the target triple of the machine running the build.

    Returns
    -------
    str
        The GNU host type that the interpreter was configured with, if available, or
        a triple synthesized from the platform module otherwise.

    Notes
    -----
    The result is computed once and memoized for the rest of the process.
    """
    triple = sysconfig.get_config_var("HOST_GNU_TYPE")
    if triple:
        return str(triple)
    machine = platform.machine().lower() or "unknown"
    if sys.platform == "win32":
        return f"{machine}-pc-windows-msvc"
    if sys.platform == "darwin":
        return f"{machine}-apple-darwin"
    return f"{machine}-unknown-{sys.platform}"


def _split_path(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(p for p in value.split(os.pathsep) if p)


@dataclass(frozen=True)
class Toolchain:
    """A snapshot of the external tools and search paths used for one build.

    Attributes
    ----------
    compiler : str
        The name or path of the SPMD compiler executable.
    path : tuple[str, ...]
        The directories searched for the compiler, in order.
    archiver : tuple[str, ...]
        The command used to create static archives.
    linker : tuple[str, ...]
        The command used to link shared libraries.
    libclang : Path | None
        A file or directory to load libclang from when generating bindings.  If
        None, then libclang is loaded from the default system locations.
    prebuilt : tuple[Path, ...]
        Directories searched for prebuilt libraries by the runtime locator.
    triple : str
        The target triple being built for.
    """
    compiler: str = "ispc"
    path: tuple[str, ...] = field(default_factory=lambda: _split_path(os.defpath))
    archiver: tuple[str, ...] = ("ar",)
    linker: tuple[str, ...] = ("cc",)
    libclang: Path | None = None
    prebuilt: tuple[Path, ...] = ()
    triple: str = field(default_factory=host_triple)

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> Toolchain:
        """Capture a toolchain from a set of environment variables.

        Parameters
        ----------
        environ : Mapping[str, str], optional
            The environment to read from.  Defaults to `os.environ`.

        Returns
        -------
        Toolchain
            A toolchain built from `ISPC`, `PATH`, `AR`, `CC`, `LIBCLANG_PATH` and
            `ISPYC_PREBUILT_PATH`, falling back to the interpreter's build
            configuration for the archiver and linker.
        """
        environ = os.environ if environ is None else environ
        triple = environ.get("ISPYC_TARGET") or host_triple()
        if is_windows(triple):
            default_ar, default_cc = "lib.exe", "link.exe"
        else:
            default_ar = sysconfig.get_config_var("AR") or "ar"
            default_cc = sysconfig.get_config_var("CC") or "cc"
        libclang = environ.get("LIBCLANG_PATH")
        return cls(
            compiler=environ.get("ISPC") or "ispc",
            path=_split_path(environ.get("PATH", os.defpath)),
            archiver=tuple(shlex.split(environ.get("AR") or default_ar)),
            linker=tuple(shlex.split(environ.get("CC") or default_cc)),
            libclang=Path(libclang) if libclang else None,
            prebuilt=tuple(Path(p) for p in _split_path(environ.get("ISPYC_PREBUILT_PATH"))),
            triple=triple,
        )

    def which(self, tool: str) -> str | None:
        """Resolve a tool against this toolchain's search path.

        Parameters
        ----------
        tool : str
            A bare executable name or a path to an executable.

        Returns
        -------
        str | None
            The resolved path, or None if the tool could not be found.
        """
        if os.sep in tool or (os.altsep and os.altsep in tool):
            return tool if Path(tool).is_file() and os.access(tool, os.X_OK) else None
        return shutil.which(tool, path=os.pathsep.join(self.path))


@dataclass(frozen=True)
class CompileUnit:
    """One source file compiled for one target ISA.

    Attributes
    ----------
    source : Path
        The source file.
    isa : TargetISA
        The ISA this unit produces code for.
    object : Path
        The object file this unit produces.
    """
    source: Path
    isa: TargetISA
    object: Path

    def __str__(self) -> str:
        return f"({self.source}, {self.isa})"


@dataclass(frozen=True)
class CompileJob:
    """All the units of a single source file, which the compiler fans out over the
    requested ISAs in a single invocation.

    Attributes
    ----------
    source : Path
        The source file to compile.
    units : tuple[CompileUnit, ...]
        One unit per requested ISA, in enumeration order.
    object : Path
        The object passed to the compiler's `-o` flag.  This is the only object for
        single-target builds, and the dispatch stub for multi-target builds.
    header : Path
        The header the compiler emits for this source.
    depfile : Path
        The file the compiler writes the source's include dependencies into.
    record : Path
        The persisted dependency record for this source.
    """
    source: Path
    units: tuple[CompileUnit, ...]
    object: Path
    header: Path
    depfile: Path
    record: Path

    @property
    def multi_target(self) -> bool:
        """True if the compiler emits a dispatch stub for this job."""
        return len(self.units) > 1

    @property
    def isas(self) -> tuple[TargetISA, ...]:
        """The ISAs covered by this job."""
        return tuple(unit.isa for unit in self.units)

    @property
    def objects(self) -> tuple[Path, ...]:
        """Every object file produced by this job, dispatch stub first."""
        if self.multi_target:
            return (self.object, *(unit.object for unit in self.units))
        return (self.object,)


@dataclass(frozen=True)
class CompileOptions:
    """An immutable snapshot of every option that is forwarded to the compiler."""
    isas: tuple[TargetISA, ...] = (TargetISA.HOST,)
    opt_level: int = 2
    debug: bool = False
    pic: bool = True
    triple: str = field(default_factory=host_triple)
    defines: tuple[tuple[str, str | None], ...] = ()
    include_paths: tuple[Path, ...] = ()
    math_lib: MathLib = MathLib.DEFAULT
    addressing: Addressing | None = None
    cpu: CPU | None = None
    target_os: TargetOS | None = None
    optimization_opts: tuple[OptimizationOpt, ...] = ()
    force_alignment: int | None = None
    no_omit_frame_pointer: bool = False
    no_stdlib: bool = False
    no_cpp: bool = False
    quiet: bool = False
    werror: bool = False
    woff: bool = False
    wno_perf: bool = False
    instrument: bool = False
    dllexport: bool = False
    extra_flags: tuple[str, ...] = ()


class CompilerInvoker:
    """Runs the compiler once per compile job, either sequentially or on a bounded
    thread pool.

    Parameters
    ----------
    toolchain : Toolchain
        The toolchain to locate the compiler through.
    workers : int, optional
        The maximum number of concurrent compiler processes.  Values less than 2
        compile sequentially.
    children : ChildProcesses, optional
        The registry that live compiler processes are tracked in, so they can be
        terminated if the build is interrupted.
    """

    VERSION = re.compile(
        r"Intel\(r\) (?:Implicit )?SPMD Program Compiler \(ispc\),?\s+(\d+\.\d+\.\d+)"
    )

    def __init__(
        self,
        toolchain: Toolchain,
        *,
        workers: int = 1,
        children: ChildProcesses | None = None,
    ) -> None:
        self.toolchain = toolchain
        self.workers = max(1, min(workers, os.cpu_count() or 1))
        self.children = CHILDREN if children is None else children
        self._lock = threading.Lock()
        self._executable: str | None = None
        self._version: Version | None = None
        self.invocations = 0

    def executable(self) -> str:
        """Locate the compiler executable.

        Returns
        -------
        str
            The resolved path to the compiler.

        Raises
        ------
        ToolNotFound
            If the compiler is not present on the toolchain's search path.
        """
        if self._executable is None:
            found = self.toolchain.which(self.toolchain.compiler)
            if found is None:
                raise ToolNotFound(
                    self.toolchain.compiler,
                    self.toolchain.path,
                    hint=(
                        "Install the compiler and add it to PATH, or set ISPC to the "
                        "path of the executable.  Prebuilt libraries can be linked "
                        "without it through ispyc.PackagedModule."
                    ),
                )
            self._executable = found
        return self._executable

    def version(self) -> Version:
        """Query the compiler's version number.

        Returns
        -------
        Version
            The version parsed from `--version`.

        Raises
        ------
        ToolNotFound
            If the compiler is not present on the toolchain's search path.
        CompilationFailure
            If the compiler does not report a recognizable version.
        """
        if self._version is None:
            cmd = [self.executable(), "--version"]
            result = run(cmd, check=False, children=self.children)
            match = self.VERSION.search(result.stdout)
            if result.returncode != 0 or match is None:
                raise CompilationFailure(
                    Path(cmd[0]),
                    [],
                    result.returncode,
                    cmd,
                    result.stderr or f"unrecognized version string: {result.stdout!r}",
                )
            try:
                self._version = Version(match.group(1))
            except InvalidVersion as err:
                raise CompilationFailure(
                    Path(cmd[0]), [], result.returncode, cmd, str(err)
                ) from err
            DEBUG(f"found compiler version {self._version} at {self.executable()}")
        return self._version

    def arguments(self, options: CompileOptions) -> list[str]:
        """Build the flags shared by every invocation of a build.

        Parameters
        ----------
        options : CompileOptions
            The options to encode.

        Returns
        -------
        list[str]
            The compiler flags, excluding the per-source input and output paths.
        """
        args: list[str] = []
        if options.debug:
            args.append("-g")

        # the compiler crashes when given -O0 together with --cpu=generic (ispc#1223)
        if options.cpu is CPU.GENERIC and options.opt_level == 0:
            WARN(f"omitting {YELLOW}-O0{WHITE} on {YELLOW}--cpu=generic{WHITE} (ispc#1223)")
        else:
            args.append(f"-O{options.opt_level}")
        if options.cpu is not None:
            args.append(options.cpu.flag)

        if options.pic:
            args.append("--pic")
        arch = arch_flag(options.triple)
        if arch:
            args.append(arch)
        if options.target_os is not None:
            args.append(options.target_os.flag)
        for name, value in options.defines:
            args.append(f"-D{name}" if value is None else f"-D{name}={value}")
        args.append(options.math_lib.flag)
        if options.addressing is not None:
            args.append(options.addressing.flag)
        if options.force_alignment is not None:
            args.append(f"--force-alignment={options.force_alignment}")
        args.extend(opt.flag for opt in options.optimization_opts)
        args.extend(f"-I{path}" for path in options.include_paths)
        if options.no_omit_frame_pointer:
            args.append("--no-omit-frame-pointer")
        if options.no_stdlib:
            args.append("--nostdlib")
        if options.no_cpp:
            args.append("--nocpp")
        if options.quiet:
            args.append("--quiet")
        if options.werror:
            args.append("--werror")
        if options.woff:
            args.append("--woff")
        if options.wno_perf:
            args.append("--wno-perf")
        if options.instrument:
            args.append("--instrument")
        if options.dllexport:
            args.append("--dllexport")
        if options.isas != (TargetISA.HOST,):
            args.append(f"--target={','.join(isa.value for isa in options.isas)}")
        args.extend(options.extra_flags)
        return args

    def fingerprint(self, arguments: Sequence[str]) -> str:
        """Hash a set of compiler flags, so that changing any of them invalidates
        previously compiled objects.

        Parameters
        ----------
        arguments : Sequence[str]
            The flags returned by `arguments()`.

        Returns
        -------
        str
            A SHA256 digest in hexadecimal form.
        """
        return hashlib.sha256(
            " ".join([self.toolchain.compiler, *arguments]).encode("utf-8")
        ).hexdigest()

    def command(self, job: CompileJob, arguments: Sequence[str]) -> list[str]:
        """Build the full command line for a single job.

        Parameters
        ----------
        job : CompileJob
            The job to compile.
        arguments : Sequence[str]
            The shared flags returned by `arguments()`.

        Returns
        -------
        list[str]
            The command to spawn.
        """
        return [
            self.executable(),
            *arguments,
            str(job.source),
            "-o", str(job.object),
            "-h", str(job.header),
            "-MMM", str(job.depfile),
        ]

    def compile(
        self,
        jobs: Sequence[CompileJob],
        arguments: Sequence[str],
        on_success: Callable[[CompileJob], object] | None = None,
    ) -> None:
        """Compile every job, stopping at the first failure.

        Parameters
        ----------
        jobs : Sequence[CompileJob]
            The jobs to compile, in order.
        arguments : Sequence[str]
            The shared flags returned by `arguments()`.
        on_success : Callable[[CompileJob], object], optional
            Called with each job as soon as it compiles successfully, from the
            thread that ran it.  Jobs that succeed before another one fails are
            still reported.

        Raises
        ------
        CompilationFailure
            For the first job that failed.  When compiling in parallel, jobs that
            were already running are allowed to finish, but no new jobs are started.
        ToolNotFound
            If the compiler disappeared from the search path.

        Notes
        -----
        If the build is interrupted (e.g. by a KeyboardInterrupt), every compiler
        process that is still running is terminated before the interruption
        propagates.
        """
        if not jobs:
            return
        if self.workers < 2 or len(jobs) < 2:
            for job in jobs:
                self._compile_one(job, arguments, on_success)
            return

        # set by the first failure, so that queued jobs return without spawning
        stop = threading.Event()
        futures: list[Future[None]] = []
        executor = ThreadPoolExecutor(
            max_workers=min(self.workers, len(jobs)),
            thread_name_prefix="ispyc",
        )
        try:
            futures = [
                executor.submit(self._compile_one, job, arguments, on_success, stop)
                for job in jobs
            ]
            wait(futures, return_when=FIRST_EXCEPTION)
        except BaseException:
            stop.set()
            for future in futures:
                future.cancel()
            self.children.terminate()
            raise
        finally:
            # running jobs drain
            for future in futures:
                future.cancel()
            executor.shutdown(wait=True)

        for future in futures:
            if not future.cancelled() and future.exception() is not None:
                raise future.exception()  # type: ignore[misc]

    def _compile_one(
        self,
        job: CompileJob,
        arguments: Sequence[str],
        on_success: Callable[[CompileJob], object] | None,
        stop: threading.Event | None = None,
    ) -> None:
        with self._lock:
            if stop is not None and stop.is_set():
                DEBUG(f"skipping {job.source} after an earlier failure")
                return
            self.invocations += 1
        try:
            self._spawn(job, arguments)
        except BaseException:
            if stop is not None:
                stop.set()
            raise
        if on_success is not None:
            on_success(job)

    def _spawn(self, job: CompileJob, arguments: Sequence[str]) -> None:
        cmd = self.command(job, arguments)
        isas = ", ".join(isa.value for isa in job.isas)
        INFO(f"compiling {CYAN}{job.source}{WHITE} for [{isas}]")
        DEBUG(" ".join(shlex.quote(a) for a in cmd))
        try:
            result = run(cmd, children=self.children)
        except FileNotFoundError as err:
            raise ToolNotFound(self.toolchain.compiler, self.toolchain.path) from err
        except CommandError as err:
            raise CompilationFailure(
                job.source,
                [isa.value for isa in job.isas],
                err.returncode,
                cmd,
                err.stderr,
            ) from err
        for line in result.stderr.splitlines():
            if line.strip():
                WARN(f"{job.source}: {line}")
