"""Compile SPMD kernels for several instruction sets into one library, and bind it to
Python.
"""
from .config import BuildConfig, BuildResult, compile_library
from .codegen import BindingModule
from .deps import DependencyRecord, DependencyTracker
from .errors import (
    ArtifactNotFound, BindingGenerationFailure, CompilationFailure,
    ConfigurationError, IspycError, LinkFailure, ToolNotFound, UnsafeCallError
)
from .invoker import CompileUnit, Toolchain
from .linker import GeneratedArtifact, Library, LinkDirective
from .locator import LinkResult, PackagedModule, locate
from .runtime import unsafe
from .settings import Settings
from .targets import (
    CPU, Addressing, LibraryKind, MathLib, OptimizationOpt, TargetISA, TargetOS
)
from .version import __version__
