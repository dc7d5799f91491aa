"""Parse the headers emitted by the compiler into declaration records using libclang.

Every C type is mapped onto a `ctypes` expression that preserves its width and
signedness.  Declarations that have no faithful `ctypes` equivalent are reported as
`Unsupported` instead of being approximated.
"""
from __future__ import annotations

import keyword
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

from ..errors import BindingGenerationFailure, ToolNotFound
from ..messages import DEBUG
from ..run import atomic_write_text


# entry points that kernels import from the host rather than export
TASK_SYSTEM_SYMBOLS: dict[str, str] = {
    "ISPCLaunch": "task launch is provided by the host task runtime",
    "ISPCSync": "task synchronization is provided by the host task runtime",
    "ISPCAlloc": "task allocation is provided by the host task runtime",
    "ISPCInstrument": "instrumentation is routed through ForeignLibrary.set_instrument()",
}

_SIGNED = {1: "ctypes.c_int8", 2: "ctypes.c_int16", 4: "ctypes.c_int32", 8: "ctypes.c_int64"}
_UNSIGNED = {1: "ctypes.c_uint8", 2: "ctypes.c_uint16", 4: "ctypes.c_uint32", 8: "ctypes.c_uint64"}

# deterministic replacements for the C library headers that generated headers
# include, so that parsing never depends on the system's include directories
_SHIM_HEADERS: dict[str, str] = {
    "stdint.h": """\
#ifndef ISPYC_STDINT_H
#define ISPYC_STDINT_H
typedef __INT8_TYPE__ int8_t;
typedef __INT16_TYPE__ int16_t;
typedef __INT32_TYPE__ int32_t;
typedef __INT64_TYPE__ int64_t;
typedef __UINT8_TYPE__ uint8_t;
typedef __UINT16_TYPE__ uint16_t;
typedef __UINT32_TYPE__ uint32_t;
typedef __UINT64_TYPE__ uint64_t;
typedef __INTPTR_TYPE__ intptr_t;
typedef __UINTPTR_TYPE__ uintptr_t;
#endif
""",
    "stdbool.h": """\
#ifndef ISPYC_STDBOOL_H
#define ISPYC_STDBOOL_H
#define bool _Bool
#define true 1
#define false 0
#endif
""",
    "stddef.h": """\
#ifndef ISPYC_STDDEF_H
#define ISPYC_STDDEF_H
typedef __SIZE_TYPE__ size_t;
typedef __PTRDIFF_TYPE__ ptrdiff_t;
#define NULL ((void*)0)
#endif
""",
}


def identifier(name: str) -> str:
    """Make a C identifier safe to use as a Python identifier.

    Parameters
    ----------
    name : str
        The C identifier.

    Returns
    -------
    str
        The identifier, with a trailing underscore if it is a Python keyword.
    """
    return f"{name}_" if keyword.iskeyword(name) else name


@dataclass(frozen=True)
class Unsupported:
    """A declaration that was skipped during binding generation.

    Attributes
    ----------
    name : str
        The C name of the declaration.
    reason : str
        Why it could not be bound.
    """
    name: str
    reason: str


@dataclass(frozen=True)
class Field:
    """A member of a struct or union."""
    name: str
    ctype: str
    bits: int | None = None


@dataclass(frozen=True)
class Param:
    """A function parameter."""
    name: str
    ctype: str


@dataclass(frozen=True)
class FunctionDecl:
    """An exported function."""
    kind: ClassVar[str] = "function"
    name: str
    restype: str
    params: tuple[Param, ...] = ()
    variadic: bool = False

    @property
    def pyname(self) -> str:
        """The name the function is bound to in Python."""
        return identifier(self.name)


@dataclass
class RecordDecl:
    """A struct or union.  `fields` is None for records that are only ever declared,
    which are bound as opaque types.

    Records whose C layout differs from the one `ctypes` would compute on its own,
    usually because of an alignment attribute, are `packed`: their fields are laid
    out contiguously, with explicit padding members reproducing the C offsets and
    size.
    """
    kind: ClassVar[str] = "record"
    name: str
    union: bool = False
    fields: tuple[Field, ...] | None = None
    packed: bool = False

    @property
    def base(self) -> str:
        """The `ctypes` base class of the record."""
        return "ctypes.Union" if self.union else "ctypes.Structure"

    @property
    def pyname(self) -> str:
        """The name the record is bound to in Python."""
        return identifier(self.name)


@dataclass(frozen=True)
class EnumDecl:
    """An enumeration.  Anonymous enumerations have an empty name, and their
    constants are bound as module-level integers.
    """
    kind: ClassVar[str] = "enum"
    name: str
    ctype: str
    constants: tuple[tuple[str, int], ...] = ()

    @property
    def pyname(self) -> str:
        """The name the enumeration is bound to in Python."""
        return identifier(self.name)


@dataclass(frozen=True)
class TypedefDecl:
    """A type alias."""
    kind: ClassVar[str] = "typedef"
    name: str
    target: str

    @property
    def pyname(self) -> str:
        """The name the alias is bound to in Python."""
        return identifier(self.name)


Declaration = FunctionDecl | RecordDecl | EnumDecl | TypedefDecl


@dataclass
class ParsedHeader:
    """The result of parsing a set of generated headers.

    Attributes
    ----------
    declarations : list[Declaration]
        Every bound declaration, in header order.
    unsupported : list[Unsupported]
        Every skipped declaration, in header order.
    """
    declarations: list[Declaration] = field(default_factory=list)
    unsupported: list[Unsupported] = field(default_factory=list)

    @property
    def symbols(self) -> list[str]:
        """The Python names of every function, in header order."""
        return [d.pyname for d in self.declarations if isinstance(d, FunctionDecl)]


class Unmappable(Exception):
    """Internal signal that a type has no `ctypes` equivalent."""


def _load_cindex(libclang: Path | None) -> Any:
    try:
        from clang import cindex  # pylint: disable=import-outside-toplevel
    except ImportError as err:
        raise ToolNotFound(
            "libclang",
            hint="Install the 'libclang' Python distribution to generate bindings.",
        ) from err

    if libclang is not None and not cindex.Config.loaded:
        if libclang.is_dir():
            cindex.Config.set_library_path(str(libclang))
        else:
            cindex.Config.set_library_file(str(libclang))
    return cindex


class HeaderParser:
    """Parses generated headers with libclang.

    Parameters
    ----------
    libclang : Path, optional
        The libclang shared library, or a directory containing it.  If None, the
        library bundled with the `libclang` distribution is used.
    triple : str, optional
        The target triple to parse for, which determines the sizes of `long` and
        pointer types.
    """

    def __init__(self, libclang: Path | None = None, triple: str | None = None) -> None:
        self.libclang = libclang
        self.triple = triple
        self._cindex: Any = None

    @property
    def cindex(self) -> Any:
        """The `clang.cindex` module, configured to load the requested library."""
        if self._cindex is None:
            self._cindex = _load_cindex(self.libclang)
        return self._cindex

    def index(self) -> Any:
        """Create a libclang index.

        Raises
        ------
        ToolNotFound
            If the native libclang library cannot be loaded.
        """
        cindex = self.cindex
        try:
            return cindex.Index.create()
        except (cindex.LibclangError, OSError) as err:
            raise ToolNotFound(
                "libclang",
                [self.libclang] if self.libclang else None,
                hint="Set LIBCLANG_PATH to the directory containing libclang.",
            ) from err

    def shim(self, directory: Path) -> Path:
        """Write the replacement C library headers used while parsing.

        Parameters
        ----------
        directory : Path
            The directory to write the headers into.

        Returns
        -------
        Path
            The directory, for use as an include path.
        """
        for name, text in _SHIM_HEADERS.items():
            path = directory / name
            if not path.exists() or path.read_text(encoding="utf-8") != text:
                atomic_write_text(path, text)
        return directory

    def parse(self, header: Path, sources: Sequence[Path], include: Path) -> ParsedHeader:
        """Parse a combined header into declaration records.

        Parameters
        ----------
        header : Path
            The combined header, which includes every per-source header.
        sources : Sequence[Path]
            The per-source headers.  Only declarations located in one of these
            files are bound.
        include : Path
            The directory holding the replacement C library headers.

        Returns
        -------
        ParsedHeader
            The declarations, in header order.

        Raises
        ------
        ToolNotFound
            If libclang cannot be loaded.
        BindingGenerationFailure
            If the header could not be parsed.
        """
        cindex = self.cindex
        index = self.index()
        args = ["-x", "c", "-std=c11", "-nostdinc", "-isystem", str(include)]
        if self.triple:
            args.append(f"--target={self.triple}")
        DEBUG(f"parsing {header} with libclang: {' '.join(args)}")
        try:
            tu = index.parse(
                str(header),
                args=args,
                options=cindex.TranslationUnit.PARSE_SKIP_FUNCTION_BODIES,
            )
        except cindex.TranslationUnitLoadError as err:
            raise BindingGenerationFailure(f"failed to parse {header}: {err}") from err

        errors = [
            f"{d.location.file}:{d.location.line}: {d.spelling}"
            for d in tu.diagnostics
            if d.severity >= cindex.Diagnostic.Error
        ]
        if errors:
            raise BindingGenerationFailure(
                f"failed to parse {header}:\n" + "\n".join(f"    {e}" for e in errors)
            )
        return _Walker(cindex, {p.resolve() for p in sources}).walk(tu.cursor)


def _padding(index: int, size: int) -> Field:
    return Field(f"_pad{index}", f"(ctypes.c_uint8 * {size})")


class _Walker:
    """Visits the top-level cursors of a translation unit in order."""

    def __init__(self, cindex: Any, files: set[Path]) -> None:
        self.cindex = cindex
        self.kinds = cindex.CursorKind
        self.types = cindex.TypeKind
        self.files = files
        self.result = ParsedHeader()
        self.records: dict[str, RecordDecl] = {}
        self.layouts: dict[str, tuple[int, int]] = {}  # ctypes (size, alignment)
        self.typedefs: set[str] = set()
        self.seen: set[str] = set()

    def ours(self, cursor: Any) -> bool:
        location = cursor.location.file
        return location is not None and Path(location.name).resolve() in self.files

    def skip(self, name: str, reason: str) -> None:
        if name not in self.seen:
            self.seen.add(name)
            self.result.unsupported.append(Unsupported(name, reason))

    def walk(self, root: Any) -> ParsedHeader:
        children = [c for c in root.get_children() if self.ours(c)]

        # records may be referenced through pointers before they are defined
        for cursor in children:
            if cursor.kind in (self.kinds.STRUCT_DECL, self.kinds.UNION_DECL):
                if cursor.spelling and not self.anonymous(cursor):
                    self.records.setdefault(
                        cursor.spelling,
                        RecordDecl(cursor.spelling, cursor.kind == self.kinds.UNION_DECL),
                    )

        emitted: set[str] = set()
        for cursor in children:
            kind = cursor.kind
            if kind == self.kinds.FUNCTION_DECL:
                self.function(cursor)
            elif kind in (self.kinds.STRUCT_DECL, self.kinds.UNION_DECL):
                self.record(cursor, emitted)
            elif kind == self.kinds.ENUM_DECL:
                self.enum(cursor)
            elif kind == self.kinds.TYPEDEF_DECL:
                self.typedef(cursor)
        return self.result

    def anonymous(self, cursor: Any) -> bool:
        spelling = cursor.spelling
        return not spelling or "(unnamed" in spelling or "(anonymous" in spelling

    def function(self, cursor: Any) -> None:
        name = cursor.spelling
        if name in self.seen:
            return
        if name in TASK_SYSTEM_SYMBOLS:
            self.skip(name, TASK_SYSTEM_SYMBOLS[name])
            return
        try:
            restype = self.ctype(cursor.result_type)
            params = tuple(
                Param(arg.spelling or f"arg{i}", self.ctype(arg.type))
                for i, arg in enumerate(cursor.get_arguments())
            )
        except Unmappable as err:
            self.skip(name, str(err))
            return
        variadic = (
            cursor.type.kind == self.types.FUNCTIONPROTO and
            cursor.type.is_function_variadic()
        )
        self.seen.add(name)
        self.result.declarations.append(FunctionDecl(name, restype, params, variadic))

    def record(self, cursor: Any, emitted: set[str]) -> None:
        if self.anonymous(cursor):
            return
        name = cursor.spelling
        decl = self.records[name]
        if name not in emitted:
            emitted.add(name)
            self.result.declarations.append(decl)
        if not cursor.is_definition() or decl.fields is not None:
            return

        members: list[tuple[Any, Field]] = []
        try:
            for child in cursor.get_children():
                if child.kind != self.kinds.FIELD_DECL:
                    continue
                bits = child.get_bitfield_width() if child.is_bitfield() else None
                member = Field(child.spelling, self.ctype(child.type), bits)
                members.append((child, member))
            fields = self.layout(cursor, decl, members)
        except Unmappable as err:
            self.result.declarations.remove(decl)
            del self.records[name]
            self.skip(name, str(err))
            return
        decl.fields = tuple(fields)

    def natural(self, t: Any) -> tuple[int, int]:
        """The size and alignment that `ctypes` gives the mapping of a type."""
        t = t.get_canonical()
        if t.kind == self.types.RECORD:
            layout = self.layouts.get(t.get_declaration().spelling)
            if layout is not None:
                return layout
        elif t.kind == self.types.CONSTANTARRAY:
            size, align = self.natural(t.element_type)
            return size * t.element_count, align
        size = t.get_size()
        if size < 0:
            # flexible array members and other incomplete types
            raise Unmappable(f"member of type '{t.spelling}' has no fixed size")
        return size, t.get_align()

    def layout(
        self,
        cursor: Any,
        decl: RecordDecl,
        members: list[tuple[Any, Field]],
    ) -> list[Field]:
        """Check a record's fields against the layout that the C compiler chose, and
        pad them explicitly if `ctypes` would place them differently.
        """
        size = cursor.type.get_size()
        align = cursor.type.get_align()
        natural = [self.natural(child.type) for child, _ in members]
        widest = max((a for _, a in natural), default=1)

        if any(f.bits is not None for _, f in members):
            # ctypes packs bit-fields the way the platform compiler does, but cannot
            # pad around them
            if align != widest:
                raise Unmappable(
                    f"bit-fields in a record aligned to {align} bytes have no ctypes "
                    f"equivalent"
                )
            self.layouts[decl.name] = (size, widest)
            return [f for _, f in members]

        offsets = [child.get_field_offsetof() // 8 for child, _ in members]
        end = 0
        matches = True
        for offset, (width, alignment) in zip(offsets, natural):
            expected = 0 if decl.union else -(-end // alignment) * alignment
            if offset != expected:
                matches = False
            end = max(end, offset + width)
        if matches and -(-end // widest) * widest == size:
            self.layouts[decl.name] = (size, widest)
            return [f for _, f in members]

        DEBUG(f"padding {decl.name} to its {size}-byte, {align}-aligned C layout")
        fields: list[Field] = []
        position = 0
        for offset, (width, _), (_, f) in zip(offsets, natural, members):
            if offset > position:
                fields.append(_padding(len(fields), offset - position))
            fields.append(f)
            position = max(position, offset + width)
        if size > position:
            # union members all start at offset zero
            extra = size if decl.union else size - position
            fields.append(_padding(len(fields), extra))
        decl.packed = True
        self.layouts[decl.name] = (size, 1)
        return fields

    def enum(self, cursor: Any) -> None:
        try:
            ctype = self.ctype(cursor.enum_type)
        except Unmappable as err:
            self.skip(cursor.spelling, str(err))
            return
        constants = tuple(
            (identifier(c.spelling), c.enum_value)
            for c in cursor.get_children()
            if c.kind == self.kinds.ENUM_CONSTANT_DECL
        )
        name = "" if self.anonymous(cursor) else cursor.spelling
        if name and name in self.seen:
            return
        if name:
            self.seen.add(name)
        self.result.declarations.append(EnumDecl(name, ctype, constants))

    def typedef(self, cursor: Any) -> None:
        name = cursor.spelling
        if name in self.seen or name in self.typedefs:
            return
        underlying = cursor.underlying_typedef_type
        decl = underlying.get_declaration()
        if decl is not None and decl.spelling == name:
            return  # typedef struct Foo Foo;
        try:
            target = self.ctype(underlying)
        except Unmappable as err:
            self.skip(name, str(err))
            return
        self.typedefs.add(name)
        self.result.declarations.append(TypedefDecl(name, target))

    def ctype(self, t: Any) -> str:
        """Map a libclang type onto a `ctypes` expression."""
        types = self.types
        kind = t.kind
        if kind == types.ELABORATED:
            t = t.get_named_type()
            kind = t.kind

        if kind == types.TYPEDEF:
            name = t.get_declaration().spelling
            if name in self.typedefs:
                return identifier(name)
            return self.ctype(t.get_canonical())

        if kind == types.VOID:
            return "None"
        if kind == types.BOOL:
            return "ctypes.c_bool"
        if kind in (types.FLOAT, types.DOUBLE, types.LONGDOUBLE):
            return {
                types.FLOAT: "ctypes.c_float",
                types.DOUBLE: "ctypes.c_double",
                types.LONGDOUBLE: "ctypes.c_longdouble",
            }[kind]
        if kind in (
            types.CHAR_S, types.SCHAR, types.SHORT, types.INT, types.LONG,
            types.LONGLONG, types.WCHAR,
        ):
            return self.sized(t, _SIGNED)
        if kind in (
            types.CHAR_U, types.UCHAR, types.USHORT, types.UINT, types.ULONG,
            types.ULONGLONG, types.CHAR16, types.CHAR32,
        ):
            return self.sized(t, _UNSIGNED)

        if kind == types.POINTER:
            pointee = t.get_pointee()
            canonical = pointee.get_canonical()
            if canonical.kind == types.VOID:
                return "ctypes.c_void_p"
            if canonical.kind in (types.FUNCTIONPROTO, types.FUNCTIONNOPROTO):
                return self.callback(canonical)
            return f"ctypes.POINTER({self.ctype(pointee)})"

        if kind == types.CONSTANTARRAY:
            return f"({self.ctype(t.element_type)} * {t.element_count})"
        if kind == types.INCOMPLETEARRAY:
            return f"ctypes.POINTER({self.ctype(t.element_type)})"

        if kind == types.RECORD:
            decl = t.get_declaration()
            if self.anonymous(decl):
                raise Unmappable("anonymous struct or union")
            if decl.spelling not in self.records and decl.spelling in self.seen:
                raise Unmappable(f"record {decl.spelling} is unsupported")
            if decl.spelling not in self.records:
                raise Unmappable(f"record {decl.spelling} is not declared by the library")
            return identifier(decl.spelling)

        if kind == types.ENUM:
            # enums are passed by value as their underlying integer type
            return self.ctype(t.get_declaration().enum_type)

        for name in ("HALF", "FLOAT16"):
            if kind == getattr(types, name, None):
                raise Unmappable(f"half-precision type '{t.spelling}' has no ctypes equivalent")
        for name in ("VECTOR", "EXTVECTOR"):
            if kind == getattr(types, name, None):
                raise Unmappable(f"vector type '{t.spelling}' has no ctypes equivalent")
        raise Unmappable(f"type '{t.spelling}' has no ctypes equivalent")

    def sized(self, t: Any, table: dict[int, str]) -> str:
        size = t.get_size()
        if size not in table:
            raise Unmappable(f"{size}-byte integer '{t.spelling}' has no ctypes equivalent")
        return table[size]

    def callback(self, t: Any) -> str:
        restype = self.ctype(t.get_result())
        if t.kind == self.types.FUNCTIONPROTO:
            if t.is_function_variadic():
                raise Unmappable(f"variadic function pointer '{t.spelling}'")
            args = [self.ctype(a) for a in t.argument_types()]
        else:
            args = []
        return f"ctypes.CFUNCTYPE({', '.join([restype, *args])})"

