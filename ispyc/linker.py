"""Combine compiled objects into a single static or shared library."""
from __future__ import annotations

import hashlib
import os
import shlex
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from importlib import resources
from pathlib import Path

from .deps import BuildCache, digest
from .errors import LinkFailure, ToolNotFound
from .invoker import CompileJob, Toolchain
from .messages import CYAN, GREEN, WHITE, DEBUG, INFO, WARN
from .run import CHILDREN, ChildProcesses, CommandError, run
from .targets import LibraryKind, TargetISA, is_apple, is_windows


# symbols that kernels import from the host when they launch tasks or are
# instrumented, provided by templates/tasksys.c in shared builds
RUNTIME_SYMBOLS: tuple[str, ...] = (
    "ISPCLaunch",
    "ISPCSync",
    "ISPCAlloc",
    "ISPCInstrument",
)
RUNTIME_SOURCE = "tasksys.c"


@dataclass(frozen=True)
class GeneratedArtifact:
    """An object file that goes into a library.

    Attributes
    ----------
    path : Path
        The object file.
    isa : TargetISA | None
        The ISA the object was compiled for, or None for a dispatch stub, which
        selects among the per-ISA objects at runtime.
    digest : str
        The SHA256 digest of the object's contents.
    """
    path: Path
    isa: TargetISA | None
    digest: str

    @property
    def dispatch(self) -> bool:
        """True if this object is a multi-target dispatch stub."""
        return self.isa is None

    @classmethod
    def from_path(cls, path: Path, isa: TargetISA | None) -> GeneratedArtifact:
        """Hash an object that the compiler produced.

        Parameters
        ----------
        path : Path
            The object file.
        isa : TargetISA | None
            The ISA it was compiled for, or None for a dispatch stub.

        Returns
        -------
        GeneratedArtifact
            The hashed artifact.

        Raises
        ------
        LinkFailure
            If the object does not exist.
        """
        try:
            return cls(path, isa, digest(path))
        except FileNotFoundError as err:
            kind = "dispatch object" if isa is None else f"object for {isa}"
            raise LinkFailure(f"missing {kind}: {path}") from err


@dataclass(frozen=True)
class LinkDirective:
    """An instruction for the host build system on how to link a library.

    Attributes
    ----------
    kind : str
        One of `search` (a library search directory), `static` or `dylib` (a
        library to link, by name), or `env` (an environment variable of the form
        `KEY=VALUE`).
    value : str
        The directive's payload.
    """
    kind: str
    value: str

    KINDS = ("search", "static", "dylib", "env")

    def __post_init__(self) -> None:
        if self.kind not in self.KINDS:
            raise ValueError(f"unknown link directive kind: {self.kind!r}")

    def __str__(self) -> str:
        return f"ispyc:{self.kind}={self.value}"


@dataclass(frozen=True)
class Library:
    """A library produced by the linker.

    Attributes
    ----------
    name : str
        The logical library name.
    path : Path
        The library file.
    kind : LibraryKind
        Whether the library is static or shared.
    triple : str
        The target triple the library was built for.
    objects : tuple[GeneratedArtifact, ...]
        The objects that went into the library, in link order.
    header : Path | None
        The combined header that declares the library's exports.
    symbols : tuple[str, ...]
        The names exported through the bindings module.
    directives : tuple[LinkDirective, ...]
        How a host build should link against the library.
    relinked : bool
        False if the library was reused from a previous build.
    runtime : tuple[str, ...]
        The host runtime symbols that the objects reference.  Shared libraries
        built on POSIX define them with a serial task system, so that they can be
        loaded on their own.
    """
    name: str
    path: Path
    kind: LibraryKind
    triple: str
    objects: tuple[GeneratedArtifact, ...]
    header: Path | None = None
    symbols: tuple[str, ...] = ()
    directives: tuple[LinkDirective, ...] = field(default=())
    relinked: bool = True
    runtime: tuple[str, ...] = ()

    @property
    def link_name(self) -> str:
        """The name passed to the host linker, e.g. `-l<link_name>`."""
        return f"{self.name}-{self.triple}"


def library_filename(name: str, triple: str, kind: LibraryKind) -> str:
    """Get the file name of a library for a given target triple.

    Parameters
    ----------
    name : str
        The logical library name.
    triple : str
        The target triple.
    kind : LibraryKind
        The kind of library.

    Returns
    -------
    str
        `lib{name}-{triple}.a` or `.so` (`.dylib` on Apple), or
        `{name}-{triple}.lib` or `.dll` on Windows.
    """
    stem = f"{name}-{triple}"
    if is_windows(triple):
        return f"{stem}.lib" if kind is LibraryKind.STATIC else f"{stem}.dll"
    if kind is LibraryKind.STATIC:
        return f"lib{stem}.a"
    return f"lib{stem}.dylib" if is_apple(triple) else f"lib{stem}.so"


def runtime_symbols(objects: Sequence[GeneratedArtifact]) -> tuple[str, ...]:
    """Find the host runtime symbols that a set of objects reference.

    Parameters
    ----------
    objects : Sequence[GeneratedArtifact]
        The compiled objects.

    Returns
    -------
    tuple[str, ...]
        The members of `RUNTIME_SYMBOLS` whose names occur in any object's symbol
        table, in declaration order.
    """
    found: set[str] = set()
    for obj in objects:
        data = obj.path.read_bytes()
        found.update(s for s in RUNTIME_SYMBOLS if s.encode("ascii") in data)
    return tuple(s for s in RUNTIME_SYMBOLS if s in found)


def directives(library: Library, out_dir: Path) -> tuple[LinkDirective, ...]:
    """Compute the link directives for a library.

    Parameters
    ----------
    library : Library
        The library to link against.
    out_dir : Path
        The directory the library was written to.

    Returns
    -------
    tuple[LinkDirective, ...]
        A search directive for the library's directory, a `static` or `dylib`
        directive naming it, and an `ISPC_OUT_DIR` environment directive.
    """
    kind = "static" if library.kind is LibraryKind.STATIC else "dylib"
    return (
        LinkDirective("search", str(out_dir)),
        LinkDirective(kind, library.link_name),
        LinkDirective("env", f"ISPC_OUT_DIR={out_dir}"),
    )


class Linker:
    """Archives or links the objects of a build into a single library.

    Parameters
    ----------
    toolchain : Toolchain
        The toolchain supplying the archiver and linker commands.
    children : ChildProcesses, optional
        The registry that live processes are tracked in.
    """

    def __init__(self, toolchain: Toolchain, children: ChildProcesses | None = None) -> None:
        self.toolchain = toolchain
        self.children = CHILDREN if children is None else children

    def collect(self, jobs: Sequence[CompileJob]) -> list[GeneratedArtifact]:
        """Gather the objects produced by a set of compile jobs in link order.

        Parameters
        ----------
        jobs : Sequence[CompileJob]
            Every job in the build, fresh or reused, in source order.

        Returns
        -------
        list[GeneratedArtifact]
            For each source in order, the dispatch stub (if any) followed by the
            per-ISA objects in enumeration order.

        Raises
        ------
        LinkFailure
            If any object is missing.
        """
        result: list[GeneratedArtifact] = []
        for job in jobs:
            if job.multi_target:
                result.append(GeneratedArtifact.from_path(job.object, None))
                for unit in sorted(job.units, key=lambda u: u.isa.rank):
                    result.append(GeneratedArtifact.from_path(unit.object, unit.isa))
            else:
                result.append(GeneratedArtifact.from_path(job.object, job.units[0].isa))
        return result

    def stamp(self, objects: Sequence[GeneratedArtifact], kind: LibraryKind, triple: str) -> str:
        """Hash everything that determines the contents of a library.

        Parameters
        ----------
        objects : Sequence[GeneratedArtifact]
            The objects in link order.
        kind : LibraryKind
            The kind of library.
        triple : str
            The target triple.

        Returns
        -------
        str
            A SHA256 digest in hexadecimal form.
        """
        h = hashlib.sha256(f"{kind.value} {triple}".encode("utf-8"))
        for obj in objects:
            h.update(f"\n{obj.path.name} {obj.digest}".encode("utf-8"))
        return h.hexdigest()

    def link(
        self,
        name: str,
        jobs: Sequence[CompileJob],
        kind: LibraryKind,
        triple: str,
        out_dir: Path,
        cache: BuildCache,
    ) -> Library:
        """Produce the library for a build, reusing the previous one if none of its
        inputs changed.

        Parameters
        ----------
        name : str
            The logical library name.
        jobs : Sequence[CompileJob]
            Every job in the build, in source order.
        kind : LibraryKind
            The kind of library to produce.
        triple : str
            The target triple.
        out_dir : Path
            The directory to write the library into.
        cache : BuildCache
            The build cache, whose link stamp is updated in place.

        Returns
        -------
        Library
            The library, without symbols or a header attached.

        Raises
        ------
        LinkFailure
            If an object is missing or the archiver/linker failed.
        ToolNotFound
            If the archiver/linker could not be found.
        """
        objects = self.collect(jobs)
        needed = runtime_symbols(objects)
        path = out_dir / library_filename(name, triple, kind)
        stamp = self.stamp(objects, kind, triple)

        if path.exists() and cache.link_stamp == stamp and cache.library == str(path):
            INFO(f"{GREEN}reusing{WHITE} {CYAN}{path}{WHITE}")
            relinked = False
        else:
            # archivers append to existing files, so always start from scratch
            path.unlink(missing_ok=True)
            INFO(f"linking {CYAN}{path}{WHITE} from {len(objects)} objects")
            if kind is LibraryKind.SHARED and needed and not is_windows(triple):
                source = resources.files("ispyc") / "templates" / RUNTIME_SOURCE
                with resources.as_file(source) as runtime:
                    DEBUG(f"linking task runtime for {', '.join(needed)}")
                    cmd, env = self._shared_command(path, objects, triple, runtime)
                    self._run(cmd, env)
            else:
                if needed:
                    WARN(
                        f"{path.name} references {', '.join(needed)}; the host "
                        f"program must provide these symbols"
                    )
                if kind is LibraryKind.STATIC:
                    cmd, env = self._archive_command(path, objects, triple)
                else:
                    cmd, env = self._shared_command(path, objects, triple)
                self._run(cmd, env)
            if not path.exists():
                raise LinkFailure(f"linker did not produce {path}")
            cache.link_stamp = stamp
            cache.library = str(path)
            relinked = True

        library = Library(
            name=name,
            path=path,
            kind=kind,
            triple=triple,
            objects=tuple(objects),
            relinked=relinked,
            runtime=needed,
        )
        return replace(library, directives=directives(library, out_dir))

    def _archive_command(
        self,
        path: Path,
        objects: Sequence[GeneratedArtifact],
        triple: str,
    ) -> tuple[list[str], dict[str, str] | None]:
        archiver = list(self.toolchain.archiver)
        paths = [str(obj.path) for obj in objects]
        if is_windows(triple):
            return [*archiver, "/NOLOGO", f"/OUT:{path}", *paths], None
        if is_apple(triple):
            # BSD ar has no deterministic modifier, but honors ZERO_AR_DATE
            env = dict(os.environ)
            env["ZERO_AR_DATE"] = "1"
            return [*archiver, "rcs", str(path), *paths], env
        return [*archiver, "rcsD", str(path), *paths], None

    def _shared_command(
        self,
        path: Path,
        objects: Sequence[GeneratedArtifact],
        triple: str,
        runtime: Path | None = None,
    ) -> tuple[list[str], dict[str, str] | None]:
        linker = list(self.toolchain.linker)
        paths = [str(obj.path) for obj in objects]
        if is_windows(triple):
            return [*linker, "/NOLOGO", "/DLL", f"/OUT:{path}", *paths], None
        cmd = [*linker, "-shared", "-o", str(path), *paths]
        if runtime is not None:
            cmd += ["-fPIC", str(runtime)]
        return cmd, None

    def _run(self, cmd: list[str], env: dict[str, str] | None) -> None:
        tool = cmd[0]
        resolved = self.toolchain.which(tool)
        if resolved is None:
            raise ToolNotFound(tool, self.toolchain.path)
        cmd = [resolved, *cmd[1:]]
        DEBUG(" ".join(shlex.quote(a) for a in cmd))
        try:
            result = run(cmd, env=env, children=self.children)
        except FileNotFoundError as err:
            raise ToolNotFound(tool, self.toolchain.path) from err
        except CommandError as err:
            raise LinkFailure(str(err)) from err
        for line in result.stderr.splitlines():
            if line.strip():
                WARN(f"{Path(tool).name}: {line}")
