"""Project-level defaults for ispyc builds.

Defaults are read from the `[tool.ispyc]` table of a project's `pyproject.toml` and
may be overridden by environment variables:

    ISPYC_OUT_DIR       output directory for objects, libraries and bindings
    ISPYC_WORKERS       number of parallel compiler invocations (0 = all cores)
    ISPYC_OPT_LEVEL     default optimization level (0-3)
    ISPYC_VERBOSE       print debug messages (1/true/yes/on)
    ISPYC_QUIET         suppress informational messages
    ISPYC_DIRECTIVES    print link directives after each build
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import tomlkit
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tomlkit.exceptions import TOMLKitError
from tomlkit.items import AbstractTable as tomlkit_AbstractTable

from .errors import ConfigurationError
from .messages import CYAN, WHITE, YELLOW


PYPROJECT = "pyproject.toml"
ENV_OVERRIDES: dict[str, str] = {
    "ISPYC_OUT_DIR": "out_dir",
    "ISPYC_WORKERS": "workers",
    "ISPYC_OPT_LEVEL": "opt_level",
    "ISPYC_VERBOSE": "verbose",
    "ISPYC_QUIET": "quiet",
    "ISPYC_DIRECTIVES": "emit_directives",
}


class Settings(BaseModel):
    """Defaults applied to every `BuildConfig` created by a project."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    out_dir: Path = Field(
        default=Path("build") / "ispyc",
        description="Directory that objects, libraries, headers and bindings are "
        "written to.",
    )
    workers: int = Field(
        default=1,
        ge=0,
        description="Maximum number of concurrent compiler processes.  0 uses every "
        "available core.",
    )
    opt_level: int = Field(
        default=2,
        ge=0,
        le=3,
        description="Default optimization level passed to the compiler.",
    )
    verbose: bool = Field(default=False, description="Print debug messages.")
    quiet: bool = Field(default=False, description="Suppress informational messages.")
    emit_directives: bool = Field(
        default=False,
        description="Print link directives to stdout after each build.",
    )
    prebuilt_dir: Path = Field(
        default=Path("prebuilt"),
        description="Conventional directory searched for prebuilt libraries.",
    )

    @classmethod
    def load(
        cls,
        root: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> Settings:
        """Load settings for a project.

        Parameters
        ----------
        root : Path, optional
            The directory containing `pyproject.toml`.  Defaults to the current
            working directory.  A missing file yields the defaults.
        environ : Mapping[str, str], optional
            The environment to read overrides from.  Defaults to `os.environ`.

        Returns
        -------
        Settings
            The validated settings.

        Raises
        ------
        ConfigurationError
            If the table or an override is malformed.
        """
        root = Path.cwd() if root is None else root
        environ = os.environ if environ is None else environ
        data = cls._table(root / PYPROJECT)
        for var, key in ENV_OVERRIDES.items():
            value = environ.get(var)
            if value is not None and value.strip():
                data[key] = value.strip()
        try:
            return cls.model_validate(data)
        except ValidationError as err:
            raise ConfigurationError(f"invalid ispyc settings:\n{err}") from err

    @staticmethod
    def _table(path: Path) -> dict[str, Any]:
        try:
            with path.open("r", encoding="utf-8") as f:
                content = tomlkit.load(f)
        except FileNotFoundError:
            return {}
        except TOMLKitError as err:
            raise ConfigurationError(f"could not parse {path}: {err}") from err

        tool = content.get("tool")
        if tool is None:
            return {}
        if not isinstance(tool, tomlkit_AbstractTable):
            raise ConfigurationError(
                f"{YELLOW}[tool]{WHITE} must be a table, not {CYAN}{type(tool)}{WHITE}"
            )
        if "ispyc" not in tool:
            return {}
        table = tool["ispyc"]
        if not isinstance(table, tomlkit_AbstractTable):
            raise ConfigurationError(
                f"{YELLOW}[tool.ispyc]{WHITE} must be a table, not "
                f"{CYAN}{type(table)}{WHITE}"
            )
        return {k.replace("-", "_"): v for k, v in table.unwrap().items()}
