"""Generate Python bindings for the headers emitted by the compiler.

The per-source headers of a build are combined into a single header, parsed with
libclang, and rendered into a `ctypes` module named after the library.  The module
is only regenerated when the content of the per-source headers changes.
"""
from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..deps import BuildCache
from ..invoker import Toolchain
from ..messages import CYAN, GREEN, WHITE, YELLOW, INFO, WARN
from ..run import atomic_write_text
from .header import (
    Declaration, EnumDecl, FunctionDecl, HeaderParser, ParsedHeader, RecordDecl,
    TypedefDecl, Unsupported
)
from .python import PyModule


INCLUDE_DIR = "_ispyc_include"


class Parser(Protocol):
    """Anything that can turn a combined header into declaration records."""

    def shim(self, directory: Path) -> Path: ...

    def parse(self, header: Path, sources: Sequence[Path], include: Path) -> ParsedHeader: ...


@dataclass(frozen=True)
class BindingModule:
    """A generated bindings module.

    Attributes
    ----------
    name : str
        The module name, which matches the library name.
    path : Path
        The generated `.py` file.
    header : Path
        The combined header the module was generated from.
    header_hash : str
        The SHA256 digest of the per-source headers.
    declarations : tuple[Declaration, ...]
        The declarations that were bound, if the module was regenerated in this
        build.  Empty when the module was reused.
    symbols : tuple[str, ...]
        The Python names of every bound function, in header order.
    unsupported : tuple[Unsupported, ...]
        Declarations that were skipped.
    regenerated : bool
        False if the module was reused from a previous build.
    """
    name: str
    path: Path
    header: Path
    header_hash: str
    declarations: tuple[Declaration, ...]
    symbols: tuple[str, ...]
    unsupported: tuple[Unsupported, ...]
    regenerated: bool


def combined_header_path(name: str, out_dir: Path) -> Path:
    """Get the path of the combined header for a library."""
    return out_dir / f"_{name}_ispc_bindgen_header.h"


def header_hash(headers: Sequence[Path]) -> str:
    """Hash the contents of a sequence of headers.

    Parameters
    ----------
    headers : Sequence[Path]
        The per-source headers, in source order.

    Returns
    -------
    str
        A SHA256 digest in hexadecimal form.
    """
    h = hashlib.sha256()
    for path in headers:
        data = path.read_bytes()
        h.update(f"{path.name}\0{len(data)}\0".encode("utf-8"))
        h.update(data)
    return h.hexdigest()


def write_header(name: str, headers: Sequence[Path], out_dir: Path) -> Path:
    """Write the combined header for a library, which includes every per-source
    header in source order.

    Parameters
    ----------
    name : str
        The library name.
    headers : Sequence[Path]
        The per-source headers.
    out_dir : Path
        The output directory.

    Returns
    -------
    Path
        The combined header.  It is left untouched if its content is unchanged.
    """
    guard = f"ISPYC_{name.upper()}_BINDGEN_HEADER_H"
    lines = [
        f"#ifndef {guard}",
        f"#define {guard}",
        "",
        "#include <stdint.h>",
        "#include <stdbool.h>",
        "",
        *(f'#include "{h.resolve().as_posix()}"' for h in headers),
        "",
        f"#endif  // {guard}",
        "",
    ]
    text = "\n".join(lines)
    path = combined_header_path(name, out_dir)
    if not path.exists() or path.read_text(encoding="utf-8") != text:
        atomic_write_text(path, text)
    return path


class BindingBridge:
    """Generates and caches the bindings module of a library.

    Parameters
    ----------
    toolchain : Toolchain
        The toolchain, whose `libclang` path selects the native libclang library.
    parser : Parser, optional
        An alternative header parser.  Defaults to a libclang `HeaderParser` for the
        toolchain's target triple.
    """

    def __init__(self, toolchain: Toolchain, parser: Parser | None = None) -> None:
        self.toolchain = toolchain
        self.parser = parser or HeaderParser(toolchain.libclang, toolchain.triple)

    def generate(
        self,
        name: str,
        library: str,
        headers: Sequence[Path],
        out_dir: Path,
        cache: BuildCache,
    ) -> BindingModule:
        """Produce the bindings module for a library, reusing the previous one if
        the headers did not change.

        Parameters
        ----------
        name : str
            The library name, which becomes the module name.
        library : str
            The file name of the shared library the module loads.
        headers : Sequence[Path]
            The per-source headers, in source order.
        out_dir : Path
            The output directory.
        cache : BuildCache
            The build cache, which is updated in place.

        Returns
        -------
        BindingModule
            The generated or reused module.

        Raises
        ------
        ToolNotFound
            If libclang could not be loaded.
        BindingGenerationFailure
            If the headers could not be parsed.
        """
        combined = write_header(name, headers, out_dir)
        digest = header_hash(headers)
        path = out_dir / f"{name}.py"

        if (
            path.exists() and
            cache.header_hash == digest and
            cache.bindings == str(path) and
            cache.bound_library == library
        ):
            INFO(f"{GREEN}reusing{WHITE} {CYAN}{path}{WHITE}")
            unsupported = tuple(Unsupported(k, v) for k, v in cache.unsupported.items())
            self._warn(unsupported)
            return BindingModule(
                name=name,
                path=path,
                header=combined,
                header_hash=digest,
                declarations=(),
                symbols=tuple(cache.symbols),
                unsupported=unsupported,
                regenerated=False,
            )

        INFO(f"generating bindings {CYAN}{path}{WHITE}")
        include = self.parser.shim(out_dir / INCLUDE_DIR)
        parsed = self.parser.parse(combined, headers, include)
        PyModule(
            path,
            library=library,
            header=combined.name,
            header_hash=digest,
            declarations=parsed.declarations,
            unsupported=parsed.unsupported,
        ).write()
        self._warn(parsed.unsupported)

        cache.header_hash = digest
        cache.bindings = str(path)
        cache.bound_library = library
        cache.symbols = parsed.symbols
        cache.unsupported = {u.name: u.reason for u in parsed.unsupported}
        return BindingModule(
            name=name,
            path=path,
            header=combined,
            header_hash=digest,
            declarations=tuple(parsed.declarations),
            symbols=tuple(parsed.symbols),
            unsupported=tuple(parsed.unsupported),
            regenerated=True,
        )

    def _warn(self, unsupported: Sequence[Unsupported]) -> None:
        for item in unsupported:
            WARN(f"skipping {YELLOW}{item.name}{WHITE}: {item.reason}")


__all__ = [
    "BindingBridge",
    "BindingModule",
    "Declaration",
    "EnumDecl",
    "FunctionDecl",
    "HeaderParser",
    "ParsedHeader",
    "PyModule",
    "RecordDecl",
    "TypedefDecl",
    "Unsupported",
    "combined_header_path",
    "header_hash",
    "write_header",
]
