"""Link against prebuilt libraries when the compiler is not available.

Libraries built by `BuildConfig.compile()` can be shipped in a `prebuilt/`
directory (or any directory on `ISPYC_PREBUILT_PATH`), named after the target
triple they were built for.  The locator finds the one matching the current target
and reports how to link it, without ever invoking the compiler:

>>> from ispyc import PackagedModule
>>> PackagedModule("simple").lib_path("vendor/prebuilt").link()     # doctest: +SKIP
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import ArtifactNotFound, ConfigurationError
from .invoker import Toolchain
from .linker import Library, LinkDirective, directives, library_filename
from .messages import CYAN, WHITE, DEBUG, INFO
from .settings import Settings
from .targets import LibraryKind


@dataclass(frozen=True)
class LinkResult:
    """A prebuilt library and how to link against it.

    Attributes
    ----------
    name : str
        The logical library name.
    library : Path
        The library file.
    kind : LibraryKind
        Whether the library is static or shared.
    triple : str
        The target triple it was built for.
    bindings : Path | None
        The bindings module shipped next to the library, if any.
    directives : tuple[LinkDirective, ...]
        How a host build should link against the library.
    """
    name: str
    library: Path
    kind: LibraryKind
    triple: str
    bindings: Path | None
    directives: tuple[LinkDirective, ...]


def search_path(
    toolchain: Toolchain,
    explicit: Sequence[Path] = (),
    settings: Settings | None = None,
) -> list[Path]:
    """Compute the directories searched for prebuilt libraries.

    Parameters
    ----------
    toolchain : Toolchain
        The toolchain whose `prebuilt` paths come from `ISPYC_PREBUILT_PATH`.
    explicit : Sequence[Path], optional
        Directories requested by the caller.  If given, these are the only
        directories searched.
    settings : Settings, optional
        Project settings naming the conventional prebuilt directory.

    Returns
    -------
    list[Path]
        The directories to search, in order, without duplicates.
    """
    if explicit:
        candidates: Iterable[Path] = explicit
    else:
        conventional = (settings or Settings()).prebuilt_dir
        candidates = [*toolchain.prebuilt, conventional]
    seen: set[Path] = set()
    result: list[Path] = []
    for path in candidates:
        key = path.absolute()
        if key not in seen:
            seen.add(key)
            result.append(path)
    return result


def locate(
    name: str,
    *,
    paths: Sequence[Path] = (),
    triple: str | None = None,
    kinds: Sequence[LibraryKind] = (LibraryKind.SHARED, LibraryKind.STATIC),
    toolchain: Toolchain | None = None,
    settings: Settings | None = None,
) -> LinkResult:
    """Find a prebuilt library for the current target.

    Parameters
    ----------
    name : str
        The logical library name.
    paths : Sequence[Path], optional
        Directories to search instead of the default search path.
    triple : str, optional
        The target triple to match.  Defaults to the toolchain's triple.
    kinds : Sequence[LibraryKind], optional
        The library kinds to accept, in order of preference.
    toolchain : Toolchain, optional
        The toolchain to read the environment's search path from.  Defaults to one
        captured from `os.environ`.
    settings : Settings, optional
        Project settings naming the conventional prebuilt directory.

    Returns
    -------
    LinkResult
        The first matching library.

    Raises
    ------
    ArtifactNotFound
        If no directory contains a library for the target triple.
    """
    toolchain = toolchain or Toolchain.from_environ()
    triple = triple or toolchain.triple
    searched = search_path(toolchain, paths, settings)
    for directory in searched:
        for kind in kinds:
            candidate = directory / library_filename(name, triple, kind)
            DEBUG(f"looking for prebuilt {candidate}")
            if candidate.is_file():
                INFO(f"using prebuilt {CYAN}{candidate}{WHITE}")
                bindings = directory / f"{name}.py"
                library = Library(
                    name=name,
                    path=candidate,
                    kind=kind,
                    triple=triple,
                    objects=(),
                )
                return LinkResult(
                    name=name,
                    library=candidate,
                    kind=kind,
                    triple=triple,
                    bindings=bindings if bindings.is_file() else None,
                    directives=directives(library, directory),
                )
    raise ArtifactNotFound(name, triple, searched)


class PackagedModule:
    """A builder for linking against a prebuilt library.

    Parameters
    ----------
    name : str
        The logical library name.

    Examples
    --------
    >>> PackagedModule("simple").lib_path("prebuilt").link()    # doctest: +SKIP
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._paths: list[Path] = []
        self._triple: str | None = None
        self._kinds: tuple[LibraryKind, ...] = (LibraryKind.SHARED, LibraryKind.STATIC)
        self._toolchain: Toolchain | None = None
        self._settings: Settings | None = None
        self._emit = False

    def lib_path(self, path: str | Path) -> PackagedModule:
        """Add a directory to search.  Once any directory is added, only the added
        directories are searched.
        """
        self._paths.append(Path(path))
        return self

    def target(self, triple: str) -> PackagedModule:
        """Match libraries built for a different target triple."""
        self._triple = triple
        return self

    def library_kind(self, *kinds: LibraryKind | str) -> PackagedModule:
        """Restrict the accepted library kinds, in order of preference.

        Raises
        ------
        ConfigurationError
            If no kind is given, or a kind is not recognized.
        """
        if not kinds:
            raise ConfigurationError("at least one library kind is required")
        try:
            self._kinds = tuple(LibraryKind(k) if isinstance(k, str) else k for k in kinds)
        except ValueError as err:
            raise ConfigurationError(f"unknown library kind in {kinds!r}") from err
        return self

    def toolchain(self, toolchain: Toolchain) -> PackagedModule:
        """Read the search path from an explicit toolchain."""
        self._toolchain = toolchain
        return self

    def settings(self, settings: Settings) -> PackagedModule:
        """Use explicit project settings."""
        self._settings = settings
        return self

    def emit_directives(self, enable: bool = True) -> PackagedModule:
        """Print the link directives to stdout when linking."""
        self._emit = enable
        return self

    def link(self) -> LinkResult:
        """Find the library and report how to link against it.

        Returns
        -------
        LinkResult
            The located library.

        Raises
        ------
        ArtifactNotFound
            If no matching library exists on the search path.
        """
        settings = self._settings or Settings.load()
        result = locate(
            self.name,
            paths=self._paths,
            triple=self._triple,
            kinds=self._kinds,
            toolchain=self._toolchain,
            settings=settings,
        )
        if self._emit or settings.emit_directives:
            for directive in result.directives:
                print(directive)
        return result
