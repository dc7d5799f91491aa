"""Linking kernels that call back into the host for tasks and instrumentation."""
from __future__ import annotations

import ctypes
import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

from ispyc import LibraryKind
from ispyc.deps import BuildCache
from ispyc.invoker import Toolchain, host_triple
from ispyc.linker import RUNTIME_SYMBOLS, GeneratedArtifact, Linker, runtime_symbols
from ispyc.runtime import ForeignLibrary

from tests import posix_only
from tests.conftest import TRIPLE, FakeTools, make_job


CC = shutil.which("cc")

real_cc = pytest.mark.skipif(
    CC is None or sys.platform == "win32",
    reason="requires a native C compiler",
)


# stands in for the object that ispc emits for a kernel with a launch[] statement
# and --instrument: the task function and its launcher live in the same object,
# and the runtime entry points are left undefined
TASK_KERNEL = r"""
#include <stdint.h>

extern void *ISPCAlloc(void **handle, int64_t size, int32_t alignment);
extern void ISPCLaunch(void **handle, void *f, void *data, int c0, int c1, int c2);
extern void ISPCSync(void *handle);
extern void ISPCInstrument(const char *file, const char *note, int line, uint64_t mask);

struct params {
    int *out;
    int scale;
};

static void fill(
    void *data, int thread_index, int thread_count, int task_index, int task_count,
    int i0, int i1, int i2, int c0, int c1, int c2
) {
    struct params *p = (struct params *)data;
    p->out[task_index] = task_index * p->scale + i1 * 100 + task_count * 1000;
}

int plain(int n) {
    return n + 1;
}

int launcher(int *out, int scale) {
    void *handle = 0;
    struct params *p = ISPCAlloc(&handle, sizeof(struct params), 64);
    int aligned = ((uintptr_t)p % 64) == 0;
    p->out = out;
    p->scale = scale;
    ISPCLaunch(&handle, (void *)fill, p, 3, 2, 1);
    ISPCSync(handle);
    return aligned;
}

void traced(int line) {
    ISPCInstrument("kernel.ispc", "function entry", line, 0xffULL);
}
"""


def artifact(path: Path, data: bytes) -> GeneratedArtifact:
    path.write_bytes(data)
    return GeneratedArtifact.from_path(path, None)


#############################
####    SYMBOL SCANNING    ####
#############################


def test_runtime_symbols(tmp_path):
    objects = [
        artifact(tmp_path / "a.o", b"\x7fELF\0plain\0"),
        artifact(tmp_path / "b.o", b"\x7fELF\0ISPCSync\0ISPCLaunch\0"),
        artifact(tmp_path / "c.o", b"\x7fELF\0ISPCAlloc\0ISPCLaunch\0"),
    ]
    assert runtime_symbols(objects) == ("ISPCLaunch", "ISPCSync", "ISPCAlloc")
    assert runtime_symbols(objects[:1]) == ()


def test_runtime_symbols_include_instrumentation(tmp_path):
    objects = [artifact(tmp_path / "a.o", b"\0ISPCInstrument\0")]
    assert runtime_symbols(objects) == ("ISPCInstrument",)


###############################
####    LINKING (FAKES)    ####
###############################


@pytest.fixture
def task_job(src, out_dir):
    source = src / "tasks.ispc"
    source.write_text("// tasks")
    out_dir.mkdir(parents=True, exist_ok=True)
    job = make_job(source, out_dir)
    job.object.write_bytes(b"\x7fELF\0tasks\0ISPCLaunch\0ISPCSync\0ISPCAlloc\0")
    return job


@posix_only
def test_shared_link_adds_task_runtime(tools: FakeTools, task_job, out_dir):
    library = Linker(tools.toolchain).link(
        "kernels", [task_job], LibraryKind.SHARED, TRIPLE, out_dir, BuildCache()
    )
    assert library.runtime == ("ISPCLaunch", "ISPCSync", "ISPCAlloc")

    (argv,) = tools.links()
    assert argv[:4] == ["cc", "-shared", "-o", str(library.path)]
    assert argv[4] == str(task_job.object)
    assert argv[5] == "-fPIC"
    assert Path(argv[6]).name == "tasksys.c"
    assert b"ISPCLaunch" in library.path.read_bytes()


@posix_only
def test_plain_objects_link_without_runtime(tools: FakeTools, src, out_dir):
    source = src / "plain.ispc"
    source.write_text("// plain")
    out_dir.mkdir(parents=True, exist_ok=True)
    job = make_job(source, out_dir)
    job.object.write_bytes(b"\x7fELF\0plain\0")
    library = Linker(tools.toolchain).link(
        "kernels", [job], LibraryKind.SHARED, TRIPLE, out_dir, BuildCache()
    )
    assert library.runtime == ()
    (argv,) = tools.links()
    assert "-fPIC" not in argv
    assert not any(a.endswith("tasksys.c") for a in argv)


@posix_only
def test_static_link_warns_about_runtime(tools: FakeTools, task_job, out_dir, capsys):
    library = Linker(tools.toolchain).link(
        "kernels", [task_job], LibraryKind.STATIC, TRIPLE, out_dir, BuildCache()
    )
    assert library.runtime == ("ISPCLaunch", "ISPCSync", "ISPCAlloc")
    (argv,) = tools.links()
    assert argv[0] == "ar"
    assert not any(a.endswith("tasksys.c") for a in argv)
    err = capsys.readouterr().err
    assert "ISPCLaunch, ISPCSync, ISPCAlloc" in err
    assert "host program must provide" in err


##############################
####    LINKING (REAL)    ####
##############################


@pytest.fixture
def native_library(tmp_path):
    source = tmp_path / "tasks.ispc"
    source.write_text("// tasks")
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    job = make_job(source, out_dir)
    c_source = tmp_path / "tasks.c"
    c_source.write_text(TASK_KERNEL)
    subprocess.run(
        [CC, "-c", "-fPIC", "-o", str(job.object), str(c_source)],
        check=True,
        capture_output=True,
    )
    toolchain = Toolchain(
        path=tuple(os.environ.get("PATH", os.defpath).split(os.pathsep)),
        linker=("cc",),
        triple=host_triple(),
    )
    library = Linker(toolchain).link(
        "tasks", [job], LibraryKind.SHARED, toolchain.triple, out_dir, BuildCache()
    )
    return library


@real_cc
def test_task_library_loads(native_library):
    assert set(native_library.runtime) == set(RUNTIME_SYMBOLS)
    lib = ctypes.CDLL(str(native_library.path))
    assert lib.plain(1) == 2

    out = (ctypes.c_int * 6)()
    assert lib.launcher(out, 3) == 1
    assert list(out) == [
        index * 3 + (index // 3) * 100 + 6000 for index in range(6)
    ]


@real_cc
def test_instrumentation_hook(native_library):
    path = native_library.path
    library = ForeignLibrary("tasks", path.name, path.parent)
    events = []
    library.set_instrument(lambda *event: events.append(event))
    handle = library.handle()
    handle.traced(12)
    handle.traced(13)
    assert events == [
        (b"kernel.ispc", b"function entry", 12, 0xFF),
        (b"kernel.ispc", b"function entry", 13, 0xFF),
    ]

    library.set_instrument(None)
    handle.traced(14)
    assert len(events) == 2
