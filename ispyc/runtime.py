"""Support code imported by generated bindings modules.

Foreign functions bypass every guarantee the interpreter makes about memory safety,
so they can only be called inside an explicit `unsafe()` block:

>>> from ispyc.runtime import unsafe
>>> import mylib                        # doctest: +SKIP
>>> with unsafe():                      # doctest: +SKIP
...     mylib.square(3.0)
9.0

The shared library itself is loaded lazily, exactly once, on the first call.
"""
from __future__ import annotations

import contextvars
import ctypes
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .errors import UnsafeCallError


_UNSAFE_DEPTH: contextvars.ContextVar[int] = contextvars.ContextVar(
    "ispyc_unsafe_depth",
    default=0,
)


# signature of the hook invoked by kernels compiled with --instrument
INSTRUMENT_CALLBACK = ctypes.CFUNCTYPE(
    None,
    ctypes.c_char_p,
    ctypes.c_char_p,
    ctypes.c_int,
    ctypes.c_uint64,
)


@contextmanager
def unsafe() -> Iterator[None]:
    """Allow foreign functions to be called for the duration of a block.

    Blocks may be nested.  The permission is scoped to the current context, so it
    does not leak into other threads or asyncio tasks.
    """
    token = _UNSAFE_DEPTH.set(_UNSAFE_DEPTH.get() + 1)
    try:
        yield
    finally:
        _UNSAFE_DEPTH.reset(token)


def in_unsafe() -> bool:
    """Check whether the caller is inside an `unsafe()` block."""
    return _UNSAFE_DEPTH.get() > 0


class ForeignLibrary:
    """A shared library that is loaded on first use.

    Parameters
    ----------
    name : str
        The logical library name.
    filename : str
        The library's file name.
    directory : Path, optional
        The directory containing the library.  If None, the file name is passed to
        the platform loader as-is, which searches the system's library path.
    loader : Callable[[str], Any], optional
        The function used to load the library.  Defaults to `ctypes.CDLL`.
    """

    def __init__(
        self,
        name: str,
        filename: str,
        directory: Path | None = None,
        loader: Callable[[str], Any] = ctypes.CDLL,
    ) -> None:
        self.name = name
        self.filename = filename
        self.directory = directory
        self._loader = loader
        self._lock = threading.Lock()
        self._handle: Any = None
        self._instrument: Any = None

    @property
    def path(self) -> str:
        """The path handed to the loader."""
        if self.directory is None:
            return self.filename
        return str(self.directory / self.filename)

    @property
    def loaded(self) -> bool:
        """True once the library has been loaded."""
        return self._handle is not None

    def handle(self) -> Any:
        """Load the library if necessary and return its handle.

        Returns
        -------
        Any
            The loaded library, usually a `ctypes.CDLL`.

        Raises
        ------
        OSError
            If the library cannot be loaded.
        """
        handle = self._handle
        if handle is None:
            with self._lock:
                if self._handle is None:
                    self._handle = self._loader(self.path)
                handle = self._handle
        return handle

    def set_instrument(
        self,
        callback: Callable[[bytes, bytes, int, int], None] | None,
    ) -> None:
        """Route instrumentation events from the library's kernels to a callback.

        Parameters
        ----------
        callback : Callable[[bytes, bytes, int, int], None] | None
            Called with the source file, the event note, the line number and the mask
            of active program instances.  None removes the current hook.

        Raises
        ------
        AttributeError
            If the library was not linked with the task runtime, which only happens
            when its kernels reference it.
        """
        setter = self.handle().ispyc_set_instrument
        setter.restype = None
        setter.argtypes = [INSTRUMENT_CALLBACK]
        if callback is None:
            hook = INSTRUMENT_CALLBACK()
        else:
            hook = INSTRUMENT_CALLBACK(callback)
        setter(hook)
        self._instrument = hook  # must outlive the library's reference

    def __repr__(self) -> str:
        return f"ForeignLibrary({self.name!r}, {self.path!r})"


class ForeignFunction:
    """A function exported by a `ForeignLibrary`.

    Parameters
    ----------
    library : ForeignLibrary
        The library that exports the function.
    name : str
        The exported symbol.
    restype : Any
        The `ctypes` return type, or None for void.
    argtypes : Sequence[Any]
        The `ctypes` parameter types.
    variadic : bool, optional
        If True, arguments beyond `argtypes` are accepted and converted by ctypes'
        default rules.
    """

    def __init__(
        self,
        library: ForeignLibrary,
        name: str,
        restype: Any,
        argtypes: Sequence[Any],
        variadic: bool = False,
    ) -> None:
        self.library = library
        self.name = name
        self.restype = restype
        self.argtypes = tuple(argtypes)
        self.variadic = variadic
        self._lock = threading.Lock()
        self._function: Any = None

    def bind(self) -> Any:
        """Resolve the symbol in the loaded library, once.

        Returns
        -------
        Any
            The configured `ctypes` function pointer.

        Raises
        ------
        AttributeError
            If the library does not export the symbol.
        """
        function = self._function
        if function is None:
            with self._lock:
                if self._function is None:
                    function = getattr(self.library.handle(), self.name)
                    function.restype = self.restype
                    if not self.variadic:
                        function.argtypes = list(self.argtypes)
                    self._function = function
                function = self._function
        return function

    def __call__(self, *args: Any) -> Any:
        if not in_unsafe():
            raise UnsafeCallError(
                f"foreign function '{self.name}' from library '{self.library.name}' "
                f"must be called inside an ispyc.runtime.unsafe() block"
            )
        return self.bind()(*args)

    def __repr__(self) -> str:
        return f"<foreign function {self.name} from {self.library.name}>"
