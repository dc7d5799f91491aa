from __future__ import annotations

import asyncio
import ctypes
import ctypes.util
import sys
import threading
import time

import pytest

from ispyc.errors import UnsafeCallError
from ispyc.runtime import ForeignFunction, ForeignLibrary, in_unsafe, unsafe


class FakeSymbol:
    """Stands in for a ctypes function pointer."""

    def __init__(self, impl):
        self.impl = impl
        self.restype = "unset"
        self.argtypes = "unset"

    def __call__(self, *args):
        return self.impl(*args)


class FakeHandle:
    def __init__(self, **symbols):
        for name, impl in symbols.items():
            setattr(self, name, FakeSymbol(impl))


class CountingLoader:
    def __init__(self, handle, delay: float = 0.0):
        self.handle = handle
        self.delay = delay
        self.paths: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, path: str):
        time.sleep(self.delay)
        with self._lock:
            self.paths.append(path)
        return self.handle


#######################
####    UNSAFE     ####
#######################


def test_unsafe_nests():
    assert not in_unsafe()
    with unsafe():
        assert in_unsafe()
        with unsafe():
            assert in_unsafe()
        assert in_unsafe()
    assert not in_unsafe()


def test_unsafe_resets_on_error():
    with pytest.raises(KeyError):
        with unsafe():
            raise KeyError("x")
    assert not in_unsafe()


def test_unsafe_does_not_leak_into_other_threads():
    seen = []
    with unsafe():
        thread = threading.Thread(target=lambda: seen.append(in_unsafe()))
        thread.start()
        thread.join()
    assert seen == [False]


def test_unsafe_is_scoped_to_tasks():
    async def inner():
        return in_unsafe()

    async def outer():
        with unsafe():
            inside = await inner()
        other = await asyncio.create_task(inner())
        return inside, other

    assert asyncio.run(outer()) == (True, False)


##########################
####    LIBRARIES     ####
##########################


def test_library_path(tmp_path):
    assert ForeignLibrary("k", "libk.so").path == "libk.so"
    assert ForeignLibrary("k", "libk.so", tmp_path).path == str(tmp_path / "libk.so")


def test_library_loads_once_across_threads(tmp_path):
    loader = CountingLoader(FakeHandle(), delay=0.05)
    library = ForeignLibrary("k", "libk.so", tmp_path, loader=loader)
    assert not library.loaded

    handles = []
    threads = [
        threading.Thread(target=lambda: handles.append(library.handle()))
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert loader.paths == [str(tmp_path / "libk.so")]
    assert all(h is loader.handle for h in handles)
    assert library.loaded


def test_failed_load_is_retried():
    calls = []

    def loader(path):
        calls.append(path)
        raise OSError(f"cannot open {path}")

    library = ForeignLibrary("k", "libk.so", loader=loader)
    for _ in range(2):
        with pytest.raises(OSError, match="libk.so"):
            library.handle()
    assert len(calls) == 2
    assert not library.loaded


##########################
####    FUNCTIONS     ####
##########################


def test_call_outside_unsafe_is_rejected():
    loader = CountingLoader(FakeHandle(add=lambda a, b: a + b))
    add = ForeignFunction(ForeignLibrary("k", "libk.so", loader=loader), "add",
                          ctypes.c_int32, (ctypes.c_int32, ctypes.c_int32))
    with pytest.raises(UnsafeCallError, match="add"):
        add(1, 2)
    assert loader.paths == []


def test_call_inside_unsafe_binds_signature():
    handle = FakeHandle(add=lambda a, b: a + b)
    library = ForeignLibrary("k", "libk.so", loader=CountingLoader(handle))
    add = ForeignFunction(library, "add", ctypes.c_int32, (ctypes.c_int32, ctypes.c_int32))
    with unsafe():
        assert add(1, 2) == 3
        assert add(3, 4) == 7
    assert handle.add.restype is ctypes.c_int32
    assert handle.add.argtypes == [ctypes.c_int32, ctypes.c_int32]


def test_variadic_leaves_argtypes_unset():
    handle = FakeHandle(log=lambda *args: len(args))
    library = ForeignLibrary("k", "libk.so", loader=CountingLoader(handle))
    log = ForeignFunction(library, "log", None, (ctypes.c_int32,), variadic=True)
    with unsafe():
        assert log(1, 2, 3) == 3
    assert handle.log.restype is None
    assert handle.log.argtypes == "unset"


def test_missing_symbol():
    library = ForeignLibrary("k", "libk.so", loader=CountingLoader(FakeHandle()))
    missing = ForeignFunction(library, "missing", None, ())
    with unsafe():
        with pytest.raises(AttributeError):
            missing()


def test_repr():
    library = ForeignLibrary("k", "libk.so")
    assert repr(library) == "ForeignLibrary('k', 'libk.so')"
    assert repr(ForeignFunction(library, "f", None, ())) == "<foreign function f from k>"


LIBC = ctypes.util.find_library("c")


@pytest.mark.skipif(LIBC is None or sys.platform == "win32", reason="no C library found")
def test_real_library():
    library = ForeignLibrary("c", LIBC)
    labs = ForeignFunction(library, "labs", ctypes.c_long, (ctypes.c_long,))
    with unsafe():
        assert labs(-42) == 42
    assert library.loaded
    assert isinstance(library.handle(), ctypes.CDLL)
    assert library.path == LIBC
