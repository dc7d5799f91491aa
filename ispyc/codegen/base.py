"""Base classes for auto-generated binding files."""
from __future__ import annotations

from pathlib import Path

from ..run import atomic_write_text


class Module:
    """Base class for auto-generated binding files."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def generate(self) -> str:
        """Generate the module's source code as a string.

        Returns
        -------
        str
            The module's source code, which is typically written to `path`
            immediately after invoking this method.
        """
        raise NotImplementedError

    def write(self) -> Path:
        """Generate the module and atomically write it to `path`.

        Returns
        -------
        Path
            The path that was written.
        """
        atomic_write_text(self.path, self.generate())
        return self.path
