"""Code generation tools to expose compiled libraries to Python through ctypes."""
from __future__ import annotations

from collections.abc import Sequence
from importlib import resources
from pathlib import Path

from jinja2 import Environment, StrictUndefined

from ..version import __version__
from .base import Module
from .header import (
    Declaration, EnumDecl, FunctionDecl, RecordDecl, TypedefDecl, Unsupported
)


TEMPLATE = "bindings.py.j2"


def _environment() -> Environment:
    jinja = Environment(
        autoescape=False,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    jinja.filters["pyrepr"] = repr
    return jinja


class PyModule(Module):
    """A Python module that binds every declaration of a compiled library.

    Parameters
    ----------
    path : Path
        Where the module is written.  Its stem becomes the module name.
    library : str
        The file name of the shared library, which is expected to sit next to the
        module at runtime.
    header : str
        The name of the header the declarations were parsed from.
    header_hash : str
        The SHA256 digest of that header, recorded in the module's preamble.
    declarations : Sequence[Declaration]
        The declarations to bind, in header order.
    unsupported : Sequence[Unsupported]
        Declarations that were skipped.  They are listed in the module's
        `UNSUPPORTED` mapping.
    """

    def __init__(
        self,
        path: Path,
        library: str,
        header: str,
        header_hash: str,
        declarations: Sequence[Declaration],
        unsupported: Sequence[Unsupported] = (),
    ) -> None:
        super().__init__(path)
        self.name = path.stem
        self.library = library
        self.header = header
        self.header_hash = header_hash
        self.declarations = list(declarations)
        self.unsupported = list(unsupported)

    @property
    def exports(self) -> list[str]:
        """Every public name the module defines, in header order."""
        out: list[str] = []
        for decl in self.declarations:
            if isinstance(decl, EnumDecl) and not decl.name:
                out.extend(name for name, _ in decl.constants)
            elif isinstance(decl, (FunctionDecl, RecordDecl, EnumDecl, TypedefDecl)):
                out.append(decl.pyname)
        return out

    def generate(self) -> str:
        """Render the module's source code.

        Returns
        -------
        str
            The source of the bindings module.
        """
        template = resources.files("ispyc").joinpath("templates").joinpath(TEMPLATE)
        return _environment().from_string(template.read_text(encoding="utf-8")).render(
            name=self.name,
            library=self.library,
            header=self.header,
            header_hash=self.header_hash,
            version=__version__,
            declarations=self.declarations,
            records=[d for d in self.declarations if isinstance(d, RecordDecl)],
            unsupported=self.unsupported,
            exports=self.exports,
        )
