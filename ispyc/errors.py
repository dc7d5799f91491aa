"""Exception types raised by the ispyc build pipeline.

Every fatal condition aborts the whole build and surfaces as exactly one of the
subclasses of `IspycError` below.  None of them are retried, since the external
tools are deterministic given identical inputs.
"""
from __future__ import annotations

import shlex
from collections.abc import Iterable, Sequence
from pathlib import Path


class IspycError(Exception):
    """Base class for all errors raised by ispyc."""


class ConfigurationError(IspycError, ValueError):
    """An invalid or contradictory build configuration.  Always raised before any
    process is spawned or any file is written.
    """


class ToolNotFound(IspycError, FileNotFoundError):
    """A required external tool could not be located.

    Parameters
    ----------
    tool : str
        The name of the missing tool, e.g. `ispc` or `libclang`.
    searched : Iterable[str | Path], optional
        The directories or paths that were searched.
    hint : str, optional
        A remediation hint appended to the message.
    """

    def __init__(
        self,
        tool: str,
        searched: Iterable[str | Path] | None = None,
        hint: str | None = None,
    ) -> None:
        self.tool = tool
        self.searched = [str(p) for p in searched or []]
        self.hint = hint
        super().__init__(str(self))

    def __str__(self) -> str:
        out = [f"could not find required tool '{self.tool}'"]
        if self.searched:
            out.append("searched:\n" + "\n".join(f"    {p}" for p in self.searched))
        if self.hint:
            out.append(self.hint)
        return "\n".join(out)


class CompilationFailure(IspycError):
    """The compiler exited with a non-zero status for a given source file.

    Parameters
    ----------
    source : Path
        The source file that failed to compile.
    isas : Sequence[str]
        The ISA spellings that the invocation was targeting.
    returncode : int
        The compiler's exit status.
    cmd : Sequence[str]
        The full command line that was run.
    stderr : str
        The compiler's captured stderr, reproduced verbatim.
    """

    def __init__(
        self,
        source: Path,
        isas: Sequence[str],
        returncode: int,
        cmd: Sequence[str],
        stderr: str,
    ) -> None:
        self.source = source
        self.isas = tuple(isas)
        self.returncode = returncode
        self.cmd = list(cmd)
        self.stderr = stderr
        super().__init__(str(self))

    def __str__(self) -> str:
        out = [
            f"failed to compile {self.source} for [{', '.join(self.isas)}] "
            f"(exit code {self.returncode}):\n\n"
            f"    {' '.join(shlex.quote(a) for a in self.cmd)}"
        ]
        if self.stderr:
            out.append(self.stderr)
        return "\n\n".join(out)


class LinkFailure(IspycError):
    """Objects could not be combined into a library, either because an object is
    missing or because the archiver/linker returned an error.
    """


class BindingGenerationFailure(IspycError):
    """The binding generation tool failed to process the generated header."""


class ArtifactNotFound(IspycError, FileNotFoundError):
    """No prebuilt library matching the requested target triple could be found.

    Parameters
    ----------
    name : str
        The logical library name that was requested.
    triple : str
        The target triple the library had to match.
    searched : Iterable[Path]
        The directories that were searched.
    """

    def __init__(self, name: str, triple: str, searched: Iterable[Path]) -> None:
        self.name = name
        self.triple = triple
        self.searched = list(searched)
        super().__init__(str(self))

    def __str__(self) -> str:
        out = f"no prebuilt artifact for library '{self.name}' on target {self.triple}"
        if self.searched:
            out += "\nsearched:\n" + "\n".join(f"    {p}" for p in self.searched)
        else:
            out += " (search path is empty)"
        return out


class UnsafeCallError(IspycError, RuntimeError):
    """A foreign function from a generated bindings module was called outside of an
    `ispyc.runtime.unsafe()` block.
    """


__all__ = [
    "ArtifactNotFound",
    "BindingGenerationFailure",
    "CompilationFailure",
    "ConfigurationError",
    "IspycError",
    "LinkFailure",
    "ToolNotFound",
    "UnsafeCallError",
]
