"""Dependency records that decide whether a compile job can reuse its outputs.

Each source file gets a JSON side file recording the include dependencies that the
compiler reported for it, together with their modification times and a hash of the
flags it was compiled with.  A source is only recompiled when this record says it
is stale.
"""
from __future__ import annotations

import enum
import hashlib
import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .invoker import CompileJob
from .messages import DEBUG, INFO, WARN
from .run import atomic_write_text
from .version import __version__


def mtime(path: Path) -> float | None:
    """Get the modification time of a file.

    Parameters
    ----------
    path : Path
        The file to stat.

    Returns
    -------
    float | None
        The modification time, or None if the file does not exist.
    """
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None


def clock(directory: Path) -> float:
    """Sample the current time from the filesystem that holds a directory.

    Parameters
    ----------
    directory : Path
        An existing directory, usually the build output directory.

    Returns
    -------
    float
        The modification time of a marker file touched inside the directory, which
        is directly comparable with the modification times of neighboring files,
        even when the filesystem's clock differs from the local one.
    """
    marker = directory / ".ispyc-clock"
    marker.touch()
    return marker.stat().st_mtime


def parse_depfile(text: str, cwd: Path | None = None) -> list[Path]:
    """Parse the dependency list written by the compiler.

    Parameters
    ----------
    text : str
        The contents of the dependency file.  This is either a flat list with one
        path per line, or a makefile rule with a target followed by a colon and
        a whitespace-separated list of dependencies, using trailing backslashes for
        line continuation.
    cwd : Path, optional
        The directory that relative paths are resolved against.  Defaults to the
        current working directory.

    Returns
    -------
    list[Path]
        The absolute paths of every dependency, without duplicates, in the order
        they were listed.
    """
    root = Path.cwd() if cwd is None else cwd
    sep = re.compile(r"(?<!\\)\s+")  # split on non-escaped whitespace
    seen: set[Path] = set()
    result: list[Path] = []

    def add(entry: str) -> None:
        entry = entry.replace("\\ ", " ").strip()
        if not entry:
            return
        path = Path(entry)
        if not path.is_absolute():
            path = root / path
        path = path.resolve()
        if path not in seen:
            seen.add(path)
            result.append(path)

    rule = re.compile(r"^(?:[^:]|:(?=[\\/]))+:(?:\s|$)")
    continued = False
    for raw in text.splitlines():
        line = raw.rstrip()
        more = line.endswith("\\")
        line = line.rstrip("\\").strip()
        match = rule.match(line) if not continued else None
        if match:  # makefile target; keep whatever follows the colon
            for dep in sep.split(line[match.end():].strip()):
                add(dep)
        elif continued:
            for dep in sep.split(line):
                add(dep)
        elif line:
            add(line)
        continued = more
    return result


class DependencyRecord(BaseModel):
    """The persisted record of a source file's last successful compilation.

    Attributes
    ----------
    version : str
        The version of ispyc that wrote the record.
    source : str
        The absolute path of the source file.
    source_mtime : float
        The source's modification time when it was compiled.
    compile_hash : str
        A hash of the compiler flags that the source was compiled with.
    dependencies : dict[str, float]
        Maps the absolute path of each file the source includes to its modification
        time when the source was compiled.
    objects : list[str]
        Every object file the compilation produced.
    header : str
        The header the compilation produced.
    """
    model_config = ConfigDict(extra="forbid")

    version: str = __version__
    source: str
    source_mtime: float
    compile_hash: str
    dependencies: dict[str, float] = Field(default_factory=dict)
    objects: list[str] = Field(default_factory=list)
    header: str

    @classmethod
    def load(cls, path: Path) -> DependencyRecord | None:
        """Read a record from disk.

        Parameters
        ----------
        path : Path
            The JSON file to read.

        Returns
        -------
        DependencyRecord | None
            The parsed record, or None if the file is missing or cannot be parsed,
            in which case the source is treated as stale.
        """
        try:
            return cls.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError, ValueError) as err:
            WARN(f"ignoring unreadable dependency record {path}: {err}")
            return None

    def save(self, path: Path) -> None:
        """Atomically write this record to disk.

        Parameters
        ----------
        path : Path
            The JSON file to write.
        """
        atomic_write_text(path, self.model_dump_json(indent=2) + "\n")


class Status(enum.Enum):
    """Whether a compile job's outputs can be reused."""
    FRESH = "fresh"
    STALE = "stale"


@dataclass(frozen=True)
class Verdict:
    """The result of checking a job against its dependency record."""
    status: Status
    reason: str

    @property
    def stale(self) -> bool:
        """True if the job must be recompiled."""
        return self.status is Status.STALE


class DependencyTracker:
    """Decides which compile jobs are stale, and records the jobs that were
    compiled successfully.

    Parameters
    ----------
    cwd : Path, optional
        The directory that relative paths in dependency files are resolved
        against.  Defaults to the current working directory.
    """

    def __init__(self, cwd: Path | None = None) -> None:
        self.cwd = cwd

    def status(self, job: CompileJob, compile_hash: str) -> Verdict:
        """Check whether a job's outputs are up to date.

        Parameters
        ----------
        job : CompileJob
            The job to check.
        compile_hash : str
            The fingerprint of the flags the job will be compiled with.

        Returns
        -------
        Verdict
            STALE if the record is missing, the source or any of its dependencies
            changed or disappeared since the record was written, the compiler flags
            changed, or any recorded output is missing.  FRESH otherwise.
        """
        record = DependencyRecord.load(job.record)
        if record is None:
            return Verdict(Status.STALE, "no dependency record")
        if record.compile_hash != compile_hash:
            return Verdict(Status.STALE, "compiler flags changed")

        current = mtime(job.source)
        if current is None:
            return Verdict(Status.STALE, f"source {job.source} is missing")
        if current != record.source_mtime:
            return Verdict(Status.STALE, f"source {job.source} was modified")

        for dep, recorded in record.dependencies.items():
            current = mtime(Path(dep))
            if current is None:
                return Verdict(Status.STALE, f"dependency {dep} is missing")
            if current != recorded:
                return Verdict(Status.STALE, f"dependency {dep} was modified")

        expected = {str(p) for p in job.objects}
        if set(record.objects) != expected:
            return Verdict(Status.STALE, "target ISAs changed")
        for output in (*job.objects, job.header):
            if not output.exists():
                return Verdict(Status.STALE, f"output {output} is missing")

        return Verdict(Status.FRESH, "up to date")

    def invalidate(self, job: CompileJob) -> None:
        """Remove a job's dependency record and dependency file, so that an
        interrupted or failed compilation leaves the job stale.

        Parameters
        ----------
        job : CompileJob
            The job about to be compiled.
        """
        job.record.unlink(missing_ok=True)
        job.depfile.unlink(missing_ok=True)

    def record(
        self,
        job: CompileJob,
        compile_hash: str,
        source_mtime: float,
        started: float | None = None,
    ) -> DependencyRecord | None:
        """Write the dependency record for a job that compiled successfully.

        Parameters
        ----------
        job : CompileJob
            The job that was compiled.
        compile_hash : str
            The fingerprint of the flags it was compiled with.
        source_mtime : float
            The source's modification time, sampled before the compiler was
            spawned, so that edits made during compilation are still detected.
        started : float, optional
            A `clock()` sample taken before the compiler was spawned.  If any
            dependency was modified after this time, then the compiler may
            have read an older version of it, so no record is written.

        Returns
        -------
        DependencyRecord | None
            The record that was written, or None if the compiler did not emit a
            dependency file, or a dependency changed while it was compiling.  In
            that case no record is written and the job stays stale, which forces it
            to be recompiled on the next build.
        """
        try:
            text = job.depfile.read_text(encoding="utf-8")
        except FileNotFoundError:
            WARN(
                f"compiler did not emit dependencies for {job.source}; it will be "
                f"recompiled on every build"
            )
            return None

        source = job.source.resolve()
        dependencies: dict[str, float] = {}
        for dep in parse_depfile(text, self.cwd):
            if dep == source:
                continue
            stamp = mtime(dep)
            if stamp is None:
                # reported but absent, e.g. a header behind a failed #if branch
                DEBUG(f"skipping missing dependency {dep} of {job.source}")
                continue
            if started is not None and stamp > started:
                INFO(
                    f"{dep} changed while {job.source} was compiling; it will be "
                    f"recompiled on the next build"
                )
                return None
            dependencies[str(dep)] = stamp

        record = DependencyRecord(
            source=str(source),
            source_mtime=source_mtime,
            compile_hash=compile_hash,
            dependencies=dependencies,
            objects=[str(p) for p in job.objects],
            header=str(job.header),
        )
        record.save(job.record)
        return record


class BuildCache(BaseModel):
    """Build-wide state that is kept between runs, stored next to the library.

    Attributes
    ----------
    version : str
        The version of ispyc that wrote the cache.
    link_stamp : str | None
        A hash of the library kind, triple, and the contents of every object that
        went into the library when it was last linked.
    library : str | None
        The library file that was last linked.
    header_hash : str | None
        A hash of the combined header that the bindings were last generated from.
    bindings : str | None
        The bindings module that was last generated.
    bound_library : str | None
        The library file name that the bindings module loads.
    symbols : list[str]
        The names exported by the bindings module.
    unsupported : dict[str, str]
        Declarations that were skipped during binding generation, mapped to the
        reason they were skipped.
    """
    model_config = ConfigDict(extra="ignore")

    version: str = __version__
    link_stamp: str | None = None
    library: str | None = None
    header_hash: str | None = None
    bindings: str | None = None
    bound_library: str | None = None
    symbols: list[str] = Field(default_factory=list)
    unsupported: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> BuildCache:
        """Read the cache from disk.

        Parameters
        ----------
        path : Path
            The JSON file to read.

        Returns
        -------
        BuildCache
            The parsed cache, or an empty one if the file is missing, unreadable,
            or was written by a different version of ispyc.
        """
        try:
            cache = cls.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return cls()
        except (OSError, ValidationError, ValueError) as err:
            WARN(f"ignoring unreadable build cache {path}: {err}")
            return cls()
        if cache.version != __version__:
            return cls()
        return cache

    def save(self, path: Path) -> None:
        """Atomically write the cache to disk.

        Parameters
        ----------
        path : Path
            The JSON file to write.
        """
        atomic_write_text(path, self.model_dump_json(indent=2) + "\n")


def digest(path: Path) -> str:
    """Compute the SHA256 digest of a file's contents.

    Parameters
    ----------
    path : Path
        The file to hash.

    Returns
    -------
    str
        The digest in hexadecimal form.
    """
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()
