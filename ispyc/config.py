"""Configure and run an ispyc build.

A build compiles a set of SPMD source files for one or more target ISAs, merges the
resulting objects into a single library named after the target triple, and emits a
Python bindings module for it:

>>> from ispyc import BuildConfig, TargetISA
>>> result = (                                                  # doctest: +SKIP
...     BuildConfig()
...     .file("src/simple.ispc")
...     .target_isas([TargetISA.SSE2_I32X4, TargetISA.AVX2_I32X8])
...     .opt_level(3)
...     .compile("simple")
... )
>>> result.library.path                                          # doctest: +SKIP
PosixPath('build/ispyc/libsimple-x86_64-pc-linux-gnu.so')

Every setter validates its argument immediately and raises `ConfigurationError`
for contradictory settings, so errors surface before any process is spawned.
"""
from __future__ import annotations

import os
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from . import messages
from .codegen import BindingBridge, BindingModule, Parser, write_header
from .deps import BuildCache, DependencyTracker, clock, mtime
from .errors import ConfigurationError
from .invoker import (
    CompileJob, CompileOptions, CompilerInvoker, CompileUnit, Toolchain, host_triple
)
from .linker import Library, LinkDirective, Linker
from .messages import CYAN, GREEN, WHITE, YELLOW, DEBUG, INFO
from .settings import Settings
from .targets import (
    CPU, Addressing, LibraryKind, MathLib, OptimizationOpt, TargetISA, TargetOS,
    is_apple, is_windows, order
)
from .version import MIN_DISABLE_ZMM_VERSION, MIN_INSTRUMENT_VERSION


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class BuildResult:
    """Everything a build produced.

    Attributes
    ----------
    library : Library
        The linked library.
    bindings : BindingModule | None
        The generated bindings module, or None if binding generation was disabled.
    compiled : tuple[CompileUnit, ...]
        The units that were compiled in this build.
    reused : tuple[CompileUnit, ...]
        The units whose objects were reused from a previous build.
    directives : tuple[LinkDirective, ...]
        How a host build should link against the library.
    units : tuple[CompileUnit, ...]
        Every unit of the build, in source order then ISA order.
    """
    library: Library
    bindings: BindingModule | None
    compiled: tuple[CompileUnit, ...]
    reused: tuple[CompileUnit, ...]
    directives: tuple[LinkDirective, ...]
    units: tuple[CompileUnit, ...] = ()


class BuildConfig:
    """A builder that accumulates the configuration of a single library.

    Parameters
    ----------
    settings : Settings, optional
        Project defaults.  If None, they are loaded from the current directory's
        `pyproject.toml` and the environment.

    Notes
    -----
    Setters return the builder so that they can be chained.  Once `compile()` has
    been called, the configuration is frozen and every setter raises
    `ConfigurationError`.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = Settings.load() if settings is None else settings
        self._sources: list[Path] = []
        self._isas: list[TargetISA] = []
        self._opt_level = self._settings.opt_level
        self._debug = False
        self._out_dir = self._settings.out_dir
        self._include_paths: list[Path] = []
        self._defines: list[tuple[str, str | None]] = []
        self._math_lib = MathLib.DEFAULT
        self._pic: bool | None = None
        self._flags: list[str] = []
        self._triple: str | None = None
        self._kind = LibraryKind.SHARED
        self._workers = self._settings.workers
        self._addressing: Addressing | None = None
        self._cpu: CPU | None = None
        self._target_os: TargetOS | None = None
        self._optimization_opts: list[OptimizationOpt] = []
        self._force_alignment: int | None = None
        self._no_omit_frame_pointer = False
        self._no_stdlib = False
        self._no_cpp = False
        self._quiet = False
        self._werror = False
        self._woff = False
        self._wno_perf = False
        self._instrument = False
        self._bindings = True
        self._toolchain: Toolchain | None = None
        self._parser: Parser | None = None
        self._frozen = False

    @classmethod
    def from_settings(
        cls,
        root: Path | None = None,
        environ: dict[str, str] | None = None,
    ) -> BuildConfig:
        """Create a builder seeded from a project's settings.

        Parameters
        ----------
        root : Path, optional
            The directory containing `pyproject.toml`.
        environ : dict[str, str], optional
            The environment to read overrides from.

        Returns
        -------
        BuildConfig
            A new builder.
        """
        return cls(Settings.load(root, environ))

    def _mutable(self) -> None:
        if self._frozen:
            raise ConfigurationError(
                "build configuration cannot be modified after compile() was called"
            )

    @property
    def triple(self) -> str:
        """The target triple the build produces code for."""
        if self._triple is not None:
            return self._triple
        if self._toolchain is not None:
            return self._toolchain.triple
        return host_triple()

    @property
    def sources(self) -> tuple[Path, ...]:
        """The source files, in insertion order."""
        return tuple(self._sources)

    @property
    def isas(self) -> tuple[TargetISA, ...]:
        """The selected ISAs in enumeration order, or the host ISA if none were
        selected.
        """
        return tuple(order(self._isas)) if self._isas else (TargetISA.HOST,)

    def _check_debug(self) -> None:
        # the compiler emits corrupt debug info on this combination
        if (
            self._debug and
            len(self._sources) > 1 and
            len(self._isas) > 1 and
            is_apple(self.triple)
        ):
            raise ConfigurationError(
                f"debug builds of more than one source file for more than one target "
                f"ISA are not supported on {self.triple}"
            )

    ###############
    ####  I/O  ####
    ###############

    def file(self, path: str | Path) -> BuildConfig:
        """Add a source file.

        Raises
        ------
        ConfigurationError
            If the file does not exist, or if it or another file with the same stem
            was already added.  Sources with equal stems would produce colliding
            object files.
        """
        self._mutable()
        path = Path(path)
        if not path.is_file():
            raise ConfigurationError(f"source file does not exist: {path}")
        resolved = path.resolve()
        for existing in self._sources:
            if existing.resolve() == resolved:
                raise ConfigurationError(f"duplicate source file: {path}")
            if existing.stem == path.stem:
                raise ConfigurationError(
                    f"source files {existing} and {path} would produce the same "
                    f"object file '{path.stem}_ispc.o'"
                )
        self._sources.append(path)
        try:
            self._check_debug()
        except ConfigurationError:
            self._sources.pop()
            raise
        return self

    def files(self, paths: Iterable[str | Path]) -> BuildConfig:
        """Add several source files, in order.

        Raises
        ------
        ConfigurationError
            If `paths` is empty, or for any of the reasons listed in `file()`.
        """
        self._mutable()
        paths = list(paths)
        if not paths:
            raise ConfigurationError("source file list is empty")
        for path in paths:
            self.file(path)
        return self

    def out_dir(self, path: str | Path) -> BuildConfig:
        """Set the directory that objects, headers, libraries and bindings are
        written to.
        """
        self._mutable()
        self._out_dir = Path(path)
        return self

    def include_path(self, path: str | Path) -> BuildConfig:
        """Add a directory to the compiler's include search path."""
        self._mutable()
        self._include_paths.append(Path(path))
        return self

    def library_kind(self, kind: LibraryKind | str) -> BuildConfig:
        """Produce a static archive or a shared library.  Shared libraries can be
        loaded by the generated bindings; static archives are meant to be linked
        into extension modules.
        """
        self._mutable()
        try:
            self._kind = LibraryKind(kind) if isinstance(kind, str) else kind
        except ValueError as err:
            raise ConfigurationError(f"unknown library kind: {kind!r}") from err
        return self

    def bindings(self, enable: bool = True) -> BuildConfig:
        """Enable or disable generation of the Python bindings module."""
        self._mutable()
        self._bindings = enable
        return self

    def binding_parser(self, parser: Parser) -> BuildConfig:
        """Parse generated headers with an alternative parser instead of libclang."""
        self._mutable()
        self._parser = parser
        return self

    def toolchain(self, toolchain: Toolchain) -> BuildConfig:
        """Use an explicit toolchain rather than one captured from `os.environ`."""
        self._mutable()
        self._toolchain = toolchain
        self._check_debug()
        return self

    def workers(self, n: int) -> BuildConfig:
        """Set the maximum number of concurrent compiler processes.  0 uses every
        available core.
        """
        self._mutable()
        if n < 0:
            raise ConfigurationError(f"worker count must be non-negative, not {n}")
        self._workers = n
        return self

    #################
    ####  FLAGS  ####
    #################

    def target_isa(self, isa: TargetISA | str) -> BuildConfig:
        """Add a target ISA to compile for.

        Raises
        ------
        ConfigurationError
            If the ISA was already selected, if the host ISA is mixed with explicit
            ISAs, or if another selected ISA shares its object suffix.
        """
        self._mutable()
        isa = TargetISA.parse(isa)
        if isa in self._isas:
            raise ConfigurationError(f"duplicate target ISA: {isa}")
        if self._isas and (isa is TargetISA.HOST or TargetISA.HOST in self._isas):
            raise ConfigurationError(
                "the host ISA cannot be combined with explicit target ISAs"
            )
        for existing in self._isas:
            if existing.lib_suffix == isa.lib_suffix:
                raise ConfigurationError(
                    f"target ISAs {existing} and {isa} would both produce objects "
                    f"with suffix '_{isa.lib_suffix}'; select one per ISA family"
                )
        self._isas.append(isa)
        try:
            self._check_debug()
        except ConfigurationError:
            self._isas.pop()
            raise
        return self

    def target_isas(self, isas: Iterable[TargetISA | str]) -> BuildConfig:
        """Replace the selected target ISAs.

        Raises
        ------
        ConfigurationError
            If `isas` is empty, or for any of the reasons listed in `target_isa()`.
        """
        self._mutable()
        isas = list(isas)
        if not isas:
            raise ConfigurationError("target ISA list is empty")
        previous = self._isas
        self._isas = []
        try:
            for isa in isas:
                self.target_isa(isa)
        except ConfigurationError:
            self._isas = previous
            raise
        return self

    def opt_level(self, level: int) -> BuildConfig:
        """Set the optimization level, from 0 (off) to 3."""
        self._mutable()
        if isinstance(level, bool) or level not in (0, 1, 2, 3):
            raise ConfigurationError(f"optimization level must be 0-3, not {level!r}")
        self._opt_level = level
        return self

    def debug(self, enable: bool = True) -> BuildConfig:
        """Emit debug information."""
        self._mutable()
        previous = self._debug
        self._debug = enable
        try:
            self._check_debug()
        except ConfigurationError:
            self._debug = previous
            raise
        return self

    def add_define(self, name: str, value: str | int | None = None) -> BuildConfig:
        """Define a preprocessor macro, as `-DNAME` or `-DNAME=VALUE`."""
        self._mutable()
        if not _IDENTIFIER.match(name):
            raise ConfigurationError(f"invalid macro name: {name!r}")
        self._defines.append((name, None if value is None else str(value)))
        return self

    def math_lib(self, lib: MathLib | str) -> BuildConfig:
        """Select the math library used for transcendental functions."""
        self._mutable()
        self._math_lib = _parse(MathLib, lib)
        return self

    def pic(self, enable: bool = True) -> BuildConfig:
        """Generate position-independent code.  Enabled by default on every target
        except Windows.
        """
        self._mutable()
        self._pic = enable
        return self

    def flag(self, raw: str) -> BuildConfig:
        """Pass a raw flag through to the compiler."""
        self._mutable()
        self._flags.append(raw)
        return self

    def flags(self, raws: Iterable[str]) -> BuildConfig:
        """Pass several raw flags through to the compiler."""
        self._mutable()
        self._flags.extend(raws)
        return self

    def target(self, triple: str) -> BuildConfig:
        """Build for a different target triple than the toolchain's."""
        self._mutable()
        if not triple or any(c.isspace() for c in triple):
            raise ConfigurationError(f"invalid target triple: {triple!r}")
        previous = self._triple
        self._triple = triple
        try:
            self._check_debug()
        except ConfigurationError:
            self._triple = previous
            raise
        return self

    def addressing(self, mode: Addressing | str) -> BuildConfig:
        """Select 32 or 64 bit addressing calculations."""
        self._mutable()
        self._addressing = _parse(Addressing, mode)
        return self

    def cpu(self, cpu: CPU | str) -> BuildConfig:
        """Select the CPU model to tune for."""
        self._mutable()
        self._cpu = _parse(CPU, cpu)
        return self

    def target_os(self, target_os: TargetOS | str) -> BuildConfig:
        """Select the operating system to emit code for."""
        self._mutable()
        self._target_os = _parse(TargetOS, target_os)
        return self

    def optimization_opt(self, opt: OptimizationOpt | str) -> BuildConfig:
        """Enable an individual optimization switch."""
        self._mutable()
        opt = _parse(OptimizationOpt, opt)
        if opt not in self._optimization_opts:
            self._optimization_opts.append(opt)
        return self

    def force_alignment(self, alignment: int) -> BuildConfig:
        """Force the alignment of memory allocations, in bytes."""
        self._mutable()
        if alignment <= 0 or alignment & (alignment - 1):
            raise ConfigurationError(
                f"alignment must be a positive power of two, not {alignment}"
            )
        self._force_alignment = alignment
        return self

    def no_omit_frame_pointer(self, enable: bool = True) -> BuildConfig:
        """Keep frame pointers in generated code."""
        self._mutable()
        self._no_omit_frame_pointer = enable
        return self

    def no_stdlib(self, enable: bool = True) -> BuildConfig:
        """Do not make the compiler's standard library available."""
        self._mutable()
        self._no_stdlib = enable
        return self

    def no_cpp(self, enable: bool = True) -> BuildConfig:
        """Do not run the C preprocessor over sources."""
        self._mutable()
        self._no_cpp = enable
        return self

    def quiet(self, enable: bool = True) -> BuildConfig:
        """Suppress the compiler's diagnostic output."""
        self._mutable()
        self._quiet = enable
        return self

    def werror(self, enable: bool = True) -> BuildConfig:
        """Treat compiler warnings as errors."""
        self._mutable()
        self._werror = enable
        return self

    def woff(self, enable: bool = True) -> BuildConfig:
        """Disable compiler warnings."""
        self._mutable()
        self._woff = enable
        return self

    def wno_perf(self, enable: bool = True) -> BuildConfig:
        """Disable the compiler's performance warnings."""
        self._mutable()
        self._wno_perf = enable
        return self

    def instrument(self, enable: bool = True) -> BuildConfig:
        """Emit instrumentation calls for profiling.  Requires compiler 1.9.1+."""
        self._mutable()
        self._instrument = enable
        return self

    ###################
    ####  COMPILE  ####
    ###################

    def options(self) -> CompileOptions:
        """Snapshot the options forwarded to the compiler.

        Returns
        -------
        CompileOptions
            An immutable copy of the current configuration.
        """
        triple = self.triple
        windows = is_windows(triple)
        return CompileOptions(
            isas=self.isas,
            opt_level=self._opt_level,
            debug=self._debug,
            pic=(not windows) if self._pic is None else self._pic,
            triple=triple,
            defines=tuple(self._defines),
            include_paths=tuple(self._include_paths),
            math_lib=self._math_lib,
            addressing=self._addressing,
            cpu=self._cpu,
            target_os=self._target_os,
            optimization_opts=tuple(sorted(
                self._optimization_opts,
                key=list(OptimizationOpt).index,
            )),
            force_alignment=self._force_alignment,
            no_omit_frame_pointer=self._no_omit_frame_pointer,
            no_stdlib=self._no_stdlib,
            no_cpp=self._no_cpp,
            quiet=self._quiet,
            werror=self._werror,
            woff=self._woff,
            wno_perf=self._wno_perf,
            instrument=self._instrument,
            dllexport=windows and self._kind is LibraryKind.SHARED,
            extra_flags=tuple(self._flags),
        )

    def jobs(self, out_dir: Path | None = None) -> list[CompileJob]:
        """Expand the configuration into compile jobs.

        Parameters
        ----------
        out_dir : Path, optional
            The output directory.  Defaults to the configured one.

        Returns
        -------
        list[CompileJob]
            One job per source in insertion order, each holding one unit per ISA in
            enumeration order.
        """
        out_dir = self._out_dir if out_dir is None else out_dir
        ext = ".obj" if is_windows(self.triple) else ".o"
        isas = self.isas
        multi = len(isas) > 1
        result: list[CompileJob] = []
        for source in self._sources:
            stem = f"{source.stem}_ispc"
            obj = out_dir / f"{stem}{ext}"
            units = tuple(
                CompileUnit(
                    source,
                    isa,
                    out_dir / f"{stem}_{isa.lib_suffix}{ext}" if multi else obj,
                )
                for isa in isas
            )
            result.append(CompileJob(
                source=source,
                units=units,
                object=obj,
                header=out_dir / f"{stem}.h",
                depfile=out_dir / f"{stem}.idep",
                record=out_dir / f"{stem}.deps.json",
            ))
        return result

    def units(self) -> list[CompileUnit]:
        """Every (source, ISA) pair of the build, in source order then ISA order."""
        return [unit for job in self.jobs() for unit in job.units]

    def _validate(self, name: str) -> None:
        if not _IDENTIFIER.match(name):
            raise ConfigurationError(
                f"library name must be a valid Python identifier, not {name!r}"
            )
        if not self._sources:
            raise ConfigurationError("no source files were added to the build")
        for source in self._sources:
            if not source.is_file():
                raise ConfigurationError(f"source file does not exist: {source}")
        self._check_debug()

    def _check_versions(self, invoker: CompilerInvoker) -> None:
        if not self._instrument and OptimizationOpt.DISABLE_ZMM not in self._optimization_opts:
            return
        version = invoker.version()
        if self._instrument and version < MIN_INSTRUMENT_VERSION:
            raise ConfigurationError(
                f"instrumentation requires compiler {MIN_INSTRUMENT_VERSION} or newer "
                f"(found {version})"
            )
        if (
            OptimizationOpt.DISABLE_ZMM in self._optimization_opts and
            version < MIN_DISABLE_ZMM_VERSION
        ):
            raise ConfigurationError(
                f"--opt=disable-zmm requires compiler {MIN_DISABLE_ZMM_VERSION} or "
                f"newer (found {version})"
            )

    def _resolved_workers(self) -> int:
        cores = os.cpu_count() or 1
        return cores if self._workers == 0 else min(self._workers, cores)

    def compile(self, name: str) -> BuildResult:
        """Compile, link and bind the library.

        Parameters
        ----------
        name : str
            The logical library name.  It names the library file, the bindings
            module and the build cache, so it must be a valid Python identifier.

        Returns
        -------
        BuildResult
            The library, its bindings, and which units were compiled or reused.

        Raises
        ------
        ConfigurationError
            If the configuration is invalid.  Raised before any process is spawned
            or file is written.
        ToolNotFound
            If the compiler, archiver/linker or libclang could not be found.  A
            missing compiler is detected before any file is written.
        CompilationFailure
            If the compiler failed for any source.
        LinkFailure
            If the objects could not be combined into a library.
        BindingGenerationFailure
            If the generated headers could not be parsed.
        """
        self._validate(name)
        messages.configure(verbose=self._settings.verbose, quiet=self._settings.quiet)
        toolchain = self._toolchain or Toolchain.from_environ()
        if self._toolchain is None and self._triple is None:
            self._triple = toolchain.triple
            self._check_debug()
        invoker = CompilerInvoker(toolchain, workers=self._resolved_workers())
        invoker.executable()
        self._check_versions(invoker)
        self._frozen = True

        options = self.options()
        arguments = invoker.arguments(options)
        fingerprint = invoker.fingerprint(arguments)
        out_dir = self._out_dir
        out_dir.mkdir(parents=True, exist_ok=True)
        jobs = self.jobs(out_dir)

        # decide what is stale before anything is compiled
        tracker = DependencyTracker()
        stale: list[CompileJob] = []
        reused: list[CompileUnit] = []
        for job in jobs:
            verdict = tracker.status(job, fingerprint)
            if verdict.stale:
                DEBUG(f"{job.source} is stale: {verdict.reason}")
                stale.append(job)
            else:
                INFO(f"{GREEN}up to date{WHITE}: {CYAN}{job.source}{WHITE}")
                reused.extend(job.units)

        stamps: dict[Path, float] = {}
        for job in stale:
            tracker.invalidate(job)
            stamps[job.source] = mtime(job.source) or 0.0
        started = clock(out_dir)
        invoker.compile(
            stale,
            arguments,
            lambda job: tracker.record(job, fingerprint, stamps[job.source], started),
        )

        cache_path = out_dir / f".{name}.ispyc.json"
        cache = BuildCache.load(cache_path)
        try:
            library = Linker(toolchain).link(
                name, jobs, self._kind, options.triple, out_dir, cache
            )
            headers = [job.header for job in jobs]
            combined = write_header(name, headers, out_dir)
            bindings: BindingModule | None = None
            if self._bindings:
                bindings = BindingBridge(toolchain, self._parser).generate(
                    name, library.path.name, headers, out_dir, cache
                )
        finally:
            cache.save(cache_path)

        library = replace(
            library,
            header=combined,
            symbols=bindings.symbols if bindings is not None else (),
        )
        if self._settings.emit_directives:
            for directive in library.directives:
                print(directive)
        INFO(
            f"built {YELLOW}{name}{WHITE} ({len(stale)} compiled, "
            f"{len(jobs) - len(stale)} up to date): {CYAN}{library.path}{WHITE}"
        )
        return BuildResult(
            library=library,
            bindings=bindings,
            compiled=tuple(unit for job in stale for unit in job.units),
            reused=tuple(reused),
            directives=library.directives,
            units=tuple(unit for job in jobs for unit in job.units),
        )


def _parse(enum_type: Any, value: Any) -> Any:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).lower())
    except ValueError:
        pass
    try:
        return enum_type[str(value).upper().replace("-", "_")]
    except KeyError as err:
        raise ConfigurationError(
            f"unknown {enum_type.__name__} '{value}'; expected one of: "
            f"{', '.join(str(m.value) for m in enum_type)}"
        ) from err


# setters that compile_library() accepts as keyword options
OPTIONS: frozenset[str] = frozenset({
    "target_isa", "target_isas", "opt_level", "debug", "out_dir", "include_path",
    "math_lib", "pic", "flag", "flags", "target", "library_kind", "workers",
    "addressing", "cpu", "target_os", "optimization_opt", "force_alignment",
    "no_omit_frame_pointer", "no_stdlib", "no_cpp", "quiet", "werror", "woff",
    "wno_perf", "instrument", "bindings", "binding_parser", "toolchain",
})


def compile_library(
    name: str,
    files: Sequence[str | Path],
    *,
    settings: Settings | None = None,
    defines: Iterable[tuple[str, str | int | None]] = (),
    include_paths: Iterable[str | Path] = (),
    **options: Any,
) -> BuildResult:
    """Build a library in one call.

    Parameters
    ----------
    name : str
        The logical library name.
    files : Sequence[str | Path]
        The source files, in order.
    settings : Settings, optional
        Project defaults.
    defines : Iterable[tuple[str, str | int | None]], optional
        Preprocessor macros as `(name, value)` pairs.
    include_paths : Iterable[str | Path], optional
        Directories added to the include search path.
    **options : Any
        Any other `BuildConfig` setter, by name, e.g. `opt_level=3` or
        `target_isas=[TargetISA.AVX2_I32X8]`.

    Returns
    -------
    BuildResult
        The result of `BuildConfig.compile()`.

    Raises
    ------
    ConfigurationError
        If an option is unknown or invalid.
    """
    unknown = sorted(set(options) - OPTIONS)
    if unknown:
        raise ConfigurationError(f"unknown build options: {', '.join(unknown)}")
    config = BuildConfig(settings).files(files)
    for macro, value in defines:
        config.add_define(macro, value)
    for path in include_paths:
        config.include_path(path)
    for key, value in options.items():
        getattr(config, key)(value)
    return config.compile(name)
