"""Catalogs of the target ISAs and other option flags understood by the compiler.

Every option renders to exactly one command-line flag, so that the argument list for
a given configuration is fully determined by these enumerations.  The declaration
order of `TargetISA` is significant: it fixes the order in which per-ISA objects are
archived, which keeps repeated builds byte-for-byte reproducible.
"""
from __future__ import annotations

import enum
import re
from collections.abc import Iterable

from .errors import ConfigurationError


# the compiler names multi-target objects by ISA family rather than by the full
# target name, and AVX1 targets drop the trailing '1'
_LIB_SUFFIXES: dict[str, str] = {
    "host": "host",
    "sse2": "sse2",
    "sse4": "sse4",
    "avx1": "avx",
    "avx2": "avx2",
    "avx512knl": "avx512knl",
    "avx512skx": "avx512skx",
    "neon": "neon",
}
_TARGET = re.compile(r"^(?P<family>[a-z0-9]+)-(?P<mask>i\d+)x(?P<width>\d+)$")


class TargetISA(enum.Enum):
    """Target instruction sets and vector widths available to specialize for.  If
    none is selected, the compiler targets the host CPU's ISA and vector width.
    """

    HOST = "host"
    SSE2_I32X4 = "sse2-i32x4"
    SSE2_I32X8 = "sse2-i32x8"
    SSE4_I32X4 = "sse4-i32x4"
    SSE4_I32X8 = "sse4-i32x8"
    SSE4_I16X8 = "sse4-i16x8"
    SSE4_I8X16 = "sse4-i8x16"
    AVX1_I32X4 = "avx1-i32x4"
    AVX1_I32X8 = "avx1-i32x8"
    AVX1_I32X16 = "avx1-i32x16"
    AVX1_I64X4 = "avx1-i64x4"
    AVX2_I32X8 = "avx2-i32x8"
    AVX2_I32X16 = "avx2-i32x16"
    AVX2_I64X4 = "avx2-i64x4"
    AVX512KNL_I32X16 = "avx512knl-i32x16"
    AVX512SKX_I32X16 = "avx512skx-i32x16"
    AVX512SKX_I32X8 = "avx512skx-i32x8"
    NEON_I8X16 = "neon-i8x16"
    NEON_I16X8 = "neon-i16x8"
    NEON_I32X4 = "neon-i32x4"
    NEON_I32X8 = "neon-i32x8"

    @property
    def family(self) -> str:
        """The ISA family, e.g. `sse4` for `sse4-i32x8`.

        Returns
        -------
        str
            The family portion of the compiler spelling.
        """
        if self is TargetISA.HOST:
            return "host"
        match = _TARGET.match(self.value)
        assert match is not None
        return match.group("family")

    @property
    def width(self) -> int | None:
        """The number of program instances (vector lanes) for this target.

        Returns
        -------
        int | None
            The lane count, or None for the host target, whose width is chosen by
            the compiler.
        """
        if self is TargetISA.HOST:
            return None
        match = _TARGET.match(self.value)
        assert match is not None
        return int(match.group("width"))

    @property
    def lib_suffix(self) -> str:
        """The suffix that the compiler appends to object files for this ISA when
        building more than one target at once.

        Returns
        -------
        str
            A suffix such as `sse2` or `avx`, used to name `<stem>_ispc_<suffix>.o`.
        """
        return _LIB_SUFFIXES[self.family]

    @property
    def rank(self) -> int:
        """The position of this ISA in the enumeration, which is used to order
        objects deterministically.
        """
        return _ORDER[self]

    @classmethod
    def parse(cls, text: str | TargetISA) -> TargetISA:
        """Look up a target by its compiler spelling or its member name.

        Parameters
        ----------
        text : str | TargetISA
            Either a compiler spelling such as `avx2-i32x8`, a member name such as
            `AVX2_I32X8`, or an existing `TargetISA`.

        Returns
        -------
        TargetISA
            The matching target.

        Raises
        ------
        ConfigurationError
            If no target matches.
        """
        if isinstance(text, TargetISA):
            return text
        key = text.strip()
        try:
            return cls(key.lower())
        except ValueError:
            pass
        try:
            return cls[key.upper().replace("-", "_")]
        except KeyError as err:
            raise ConfigurationError(
                f"unknown target ISA '{text}'; expected one of: "
                f"{', '.join(isa.value for isa in cls)}"
            ) from err

    def __str__(self) -> str:
        return self.value


_ORDER: dict[TargetISA, int] = {isa: i for i, isa in enumerate(TargetISA)}


def order(isas: Iterable[TargetISA]) -> list[TargetISA]:
    """Sort a collection of ISAs by their enumeration order.

    Parameters
    ----------
    isas : Iterable[TargetISA]
        The ISAs to sort.

    Returns
    -------
    list[TargetISA]
        The ISAs in canonical order.
    """
    return sorted(isas, key=lambda isa: isa.rank)


class MathLib(enum.Enum):
    """Different math libraries that the compiler can use for computations."""

    DEFAULT = "default"     # the compiler's built-in math functions
    FAST = "fast"           # high-performance but lower-accuracy
    SVML = "svml"           # Intel(r) SVML
    SYSTEM = "system"       # the system's math library (may be quite slow)

    @property
    def flag(self) -> str:
        """The compiler flag selecting this library."""
        return f"--math-lib={self.value}"


class Addressing(enum.Enum):
    """Select 32 or 64 bit addressing calculations.  32-bit addressing is the
    compiler's default, even on 64 bit target architectures.
    """

    A32 = "32"
    A64 = "64"

    @property
    def flag(self) -> str:
        """The compiler flag selecting this addressing mode."""
        return f"--addressing={self.value}"


class CPU(enum.Enum):
    """Target CPU models.  If none is set, the compiler targets the machine it is
    running on.
    """

    GENERIC = "generic"
    BONNELL = "bonnell"         # synonym for atom
    CORE2 = "core2"
    PENRYN = "penryn"
    NEHALEM = "nehalem"         # synonym for corei7
    PS4 = "ps4"                 # synonym for btver2
    SANDY_BRIDGE = "sandybridge"
    IVY_BRIDGE = "ivybridge"
    HASWELL = "haswell"
    BROADWELL = "broadwell"
    KNL = "knl"
    SKX = "skx"
    ICL = "icl"
    SILVERMONT = "silvermont"
    CORTEX_A15 = "cortex-a15"
    CORTEX_A9 = "cortex-a9"
    CORTEX_A35 = "cortex-a35"
    CORTEX_A53 = "cortex-a53"
    CORTEX_A57 = "cortex-a57"

    @property
    def flag(self) -> str:
        """The compiler flag selecting this CPU."""
        return f"--cpu={self.value}"


class OptimizationOpt(enum.Enum):
    """Individual optimization switches.  Rendered in declaration order."""

    DISABLE_ASSERTIONS = "disable-assertions"
    DISABLE_FMA = "disable-fma"
    DISABLE_LOOP_UNROLL = "disable-loop-unroll"
    FAST_MASKED_VLOAD = "fast-masked-vload"
    FAST_MATH = "fast-math"
    FORCE_ALIGNED_MEMORY = "force-aligned-memory"
    DISABLE_ZMM = "disable-zmm"     # avx512skx-i32x16 only, compiler 1.13+

    @property
    def flag(self) -> str:
        """The compiler flag enabling this optimization switch."""
        return f"--opt={self.value}"


class TargetOS(enum.Enum):
    """Operating systems the compiler can emit code for."""

    WINDOWS = "windows"
    PS4 = "ps4"
    LINUX = "linux"
    MACOS = "macos"
    ANDROID = "android"
    IOS = "ios"

    @property
    def flag(self) -> str:
        """The compiler flag selecting this operating system."""
        return f"--target-os={self.value}"


class LibraryKind(enum.Enum):
    """The kind of library produced by the linker."""

    STATIC = "static"
    SHARED = "shared"


def arch_flag(triple: str) -> str | None:
    """Map a target triple onto the compiler's `--arch` flag.

    Parameters
    ----------
    triple : str
        A target triple such as `x86_64-pc-linux-gnu`.

    Returns
    -------
    str | None
        The architecture flag, or None if the compiler's default should be used.
    """
    if triple.startswith(("i686", "i586", "i386")):
        return "--arch=x86"
    if triple.startswith(("x86_64", "amd64", "AMD64")):
        return "--arch=x86-64"
    if triple.startswith(("aarch64", "arm64")):
        return "--arch=aarch64"
    if triple.startswith("arm"):
        return "--arch=arm"
    return None


def is_windows(triple: str) -> bool:
    """Check whether a target triple names a Windows platform."""
    return "windows" in triple or "mingw" in triple or "win32" in triple


def is_apple(triple: str) -> bool:
    """Check whether a target triple names an Apple platform."""
    return "apple" in triple or "darwin" in triple
