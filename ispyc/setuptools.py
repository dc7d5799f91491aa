"""Build ispyc libraries as part of a setuptools build.

Libraries are declared in `setup.py` and compiled by the `build_ext` command before
any extension module, so that extensions can link against them:

    from ispyc.setuptools import ISPCLibrary, setup

    setup(
        name="mypackage",
        packages=["mypackage"],
        ispc_libraries=[
            ISPCLibrary(
                "kernels",
                ["src/kernels.ispc"],
                package="mypackage",
                target_isas=["sse4-i32x4", "avx2-i32x8"],
            ),
        ],
    )

Shared libraries are copied into the package together with their bindings module,
so that `import mypackage.kernels` works from the installed package.
"""
from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import setuptools
from setuptools import Extension
from setuptools.command.build_ext import build_ext as setuptools_build_ext

from .config import OPTIONS, BuildConfig, BuildResult
from .errors import ConfigurationError
from .linker import LinkDirective
from .messages import CYAN, WHITE, YELLOW, INFO
from .settings import Settings
from .targets import LibraryKind


class ISPCLibrary:
    """Declares a library to be compiled by the `BuildISPC` command.

    Parameters
    ----------
    name : str
        The logical library name, which also names the bindings module.
    sources : Iterable[str | Path]
        The source files, in order.
    package : str, optional
        The dotted name of the package that the shared library and its bindings are
        copied into.  If None, they are copied to the root of the build tree.
    defines : Iterable[tuple[str, str | None]], optional
        Preprocessor macros as `(name, value)` pairs.
    include_dirs : Iterable[str | Path], optional
        Directories added to the include search path.
    configure : Callable[[BuildConfig], Any], optional
        A hook that receives the `BuildConfig` before compilation, for settings that
        cannot be expressed as keyword options.
    **options : Any
        Any other `BuildConfig` setter, by name, e.g. `opt_level=3`.

    Raises
    ------
    ConfigurationError
        If an option is not a `BuildConfig` setter.
    """

    def __init__(
        self,
        name: str,
        sources: Iterable[str | Path],
        *,
        package: str | None = None,
        defines: Iterable[tuple[str, str | None]] = (),
        include_dirs: Iterable[str | Path] = (),
        configure: Callable[[BuildConfig], Any] | None = None,
        **options: Any,
    ) -> None:
        unknown = sorted(set(options) - (OPTIONS - {"out_dir"}))
        if unknown:
            raise ConfigurationError(
                f"unsupported options for ISPCLibrary '{name}': {', '.join(unknown)}"
            )
        self.name = name
        self.sources = [Path(s) for s in sources]
        self.package = package
        self.defines = list(defines)
        self.include_dirs = [Path(p) for p in include_dirs]
        self.configure = configure
        self.options = options

    def config(self, out_dir: Path, settings: Settings | None = None) -> BuildConfig:
        """Create the build configuration for this library.

        Parameters
        ----------
        out_dir : Path
            The directory to build into.
        settings : Settings, optional
            Project defaults.

        Returns
        -------
        BuildConfig
            A configured builder, ready to compile.
        """
        config = BuildConfig(settings).files(self.sources).out_dir(out_dir)
        for macro, value in self.defines:
            config.add_define(macro, value)
        for path in self.include_dirs:
            config.include_path(path)
        for key, value in self.options.items():
            getattr(config, key)(value)
        if self.configure is not None:
            self.configure(config)
        return config

    def destination(self, root: Path) -> Path:
        """Get the directory that the library's files are copied into."""
        if self.package is None:
            return root
        return root.joinpath(*self.package.split("."))

    def __repr__(self) -> str:
        return f"ISPCLibrary({self.name!r}, {[str(s) for s in self.sources]!r})"


def apply_directives(ext: Extension, directives: Iterable[LinkDirective]) -> None:
    """Translate link directives into the link settings of an extension.

    Parameters
    ----------
    ext : Extension
        The extension to link against the library.
    directives : Iterable[LinkDirective]
        The directives reported by a build.
    """
    for directive in directives:
        if directive.kind == "search":
            if directive.value not in ext.library_dirs:
                ext.library_dirs.append(directive.value)
        elif directive.kind in ("static", "dylib"):
            if directive.value not in ext.libraries:
                ext.libraries.append(directive.value)


class BuildISPC(setuptools_build_ext):
    """A custom build_ext command that compiles ispyc libraries before any extension
    modules.

    Notes
    -----
    This command is intended to be placed within the `cmdclass` dictionary of a
    `setuptools.setup` call.  The `ispyc.setuptools.setup()` function does this
    automatically.  The standard `--parallel/-j` option sets the number of concurrent
    compiler processes.
    """

    def __init__(self, *args: Any, ispyc_libraries: list[ISPCLibrary], **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._ispyc_libraries = ispyc_libraries
        self._ispyc_results: list[BuildResult] = []

    def finalize_options(self) -> None:
        """Parse command-line options and validate the declared libraries.

        Raises
        ------
        TypeError
            If any library is not an `ISPCLibrary`.
        """
        super().finalize_options()
        for lib in self._ispyc_libraries:
            if not isinstance(lib, ISPCLibrary):
                raise TypeError(
                    f"ispc_libraries must contain {YELLOW}ISPCLibrary{WHITE} objects, "
                    f"not {CYAN}{type(lib)}{WHITE}"
                )

    def run(self) -> None:
        """Compile every declared library, then build the extension modules."""
        self.build_ispc()
        super().run()

    def build_ispc(self) -> list[BuildResult]:
        """Compile every declared library and install its files into the build tree.

        Returns
        -------
        list[BuildResult]
            The result of each build, in declaration order.
        """
        settings = Settings.load()
        root = Path.cwd() if self.inplace else Path(self.build_lib)
        workers = self.parallel if isinstance(self.parallel, int) else 1
        results: list[BuildResult] = []
        for lib in self._ispyc_libraries:
            out_dir = Path(self.build_temp) / "ispyc" / lib.name
            config = lib.config(out_dir, settings)
            if "workers" not in lib.options:
                config.workers(workers)
            result = config.compile(lib.name)
            self._install(lib, result, root)
            for ext in self.extensions or ():
                apply_directives(ext, result.directives)
            results.append(result)
        self._ispyc_results = results
        return results

    def _install(self, lib: ISPCLibrary, result: BuildResult, root: Path) -> None:
        if result.library.kind is not LibraryKind.SHARED:
            return
        dest = lib.destination(root)
        dest.mkdir(parents=True, exist_ok=True)
        files = [result.library.path]
        if result.bindings is not None:
            files.append(result.bindings.path)
        for path in files:
            INFO(f"copying {CYAN}{path}{WHITE} -> {CYAN}{dest}{WHITE}")
            shutil.copy2(path, dest / path.name)

    def get_outputs(self) -> list[str]:
        """Report the copied libraries and bindings as outputs of the command."""
        outputs = super().get_outputs()
        root = Path(self.build_lib)
        for lib, result in zip(self._ispyc_libraries, self._ispyc_results):
            if result.library.kind is LibraryKind.SHARED:
                dest = lib.destination(root)
                outputs.append(str(dest / result.library.path.name))
                if result.bindings is not None:
                    outputs.append(str(dest / result.bindings.path.name))
        return outputs


class _NativeDistribution(setuptools.Distribution):
    def has_ext_modules(self) -> bool:
        return True


def setup(
    *,
    ispc_libraries: Iterable[ISPCLibrary] | None = None,
    cmdclass: dict[str, Any] | None = None,
    **kwargs: Any,
) -> None:
    """A custom setup() function that automatically appends the BuildISPC command to
    the setup commands.

    Parameters
    ----------
    ispc_libraries : Iterable[ISPCLibrary], optional
        The libraries to compile before any extension module.
    cmdclass : dict[str, Any], optional
        A dictionary of command classes to override the default setuptools commands.
        If a `build_ext` command is given, it must subclass `BuildISPC`.
    **kwargs : Any
        Arbitrary keyword arguments passed to `setuptools.setup()`.

    Raises
    ------
    TypeError
        If a custom `build_ext` command does not subclass `BuildISPC`.
    """
    _libraries = list(ispc_libraries or [])

    cmd: type[BuildISPC] = BuildISPC
    if cmdclass is None:
        cmdclass = {}
    elif "build_ext" in cmdclass:
        cmd = cmdclass["build_ext"]
        if not issubclass(cmd, BuildISPC):
            raise TypeError(
                f"custom build_ext commands must subclass "
                f"`{YELLOW}ispyc.setuptools.BuildISPC{WHITE}`: {CYAN}{cmd}{WHITE}"
            )

    class _BuildISPCWrapper(cmd):  # type: ignore[valid-type, misc]
        def __init__(self, *a: Any, **kw: Any) -> None:
            super().__init__(*a, ispyc_libraries=_libraries, **kw)

    cmdclass["build_ext"] = _BuildISPCWrapper

    # build_ext only runs for distributions that report extension modules
    if _libraries and not kwargs.get("ext_modules") and "distclass" not in kwargs:
        kwargs["distclass"] = _NativeDistribution

    # defer to setuptools
    setuptools.setup(cmdclass=cmdclass, **kwargs)
