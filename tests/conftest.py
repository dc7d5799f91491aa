"""Shared fixtures: a fake compiler, archiver and linker that stand in for the real
toolchain, so that whole builds can run without it.

The fake compiler understands a few directives embedded in source files:

    //! <decl>      copied verbatim into the generated header
    #include "x"    reported as a dependency
    #error          exit with status 1 and a diagnostic on stderr
    #warn           print a warning on stderr and succeed
    #nodeps         do not write the dependency file
    #sleep <secs>   pause before compiling
"""
from __future__ import annotations

import json
import re
import stat
import sys
from collections.abc import Sequence
from pathlib import Path

import pytest

from ispyc.codegen import FunctionDecl, ParsedHeader, Unsupported
from ispyc.codegen.header import TASK_SYSTEM_SYMBOLS
from ispyc.config import BuildConfig
from ispyc.invoker import CompileJob, CompileUnit, Toolchain
from ispyc.settings import Settings
from ispyc.targets import TargetISA


TRIPLE = "x86_64-unknown-linux-gnu"


FAKE_ISPC = r'''#!{python}
import hashlib
import json
import re
import sys
import time
from pathlib import Path

LOG = Path({log!r})


def main(argv):
    if "--version" in argv:
        print("Intel(r) SPMD Program Compiler (ispc), {version} (build commit 1 @ 20240101, LLVM 17.0.6)")
        return 0
    with LOG.open("a") as f:
        f.write(json.dumps(argv) + "\n")

    source = obj = header = depfile = None
    targets = []
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg in ("-o", "-h", "-MMM"):
            value = argv[i + 1]
            if arg == "-o":
                obj = value
            elif arg == "-h":
                header = value
            else:
                depfile = value
            i += 2
            continue
        if arg.startswith("--target="):
            targets = arg.split("=", 1)[1].split(",")
        elif arg.endswith(".ispc"):
            source = arg
        i += 1

    src = Path(source)
    text = src.read_text()
    pause = re.search(r"#sleep\s+([\d.]+)", text)
    if pause:
        time.sleep(float(pause.group(1)))
    if "#error" in text:
        sys.stderr.write(f"{{source}}:1:1: Error: forced failure\n")
        return 1
    if "#warn" in text:
        sys.stderr.write(f"{{source}}:2:1: Warning: forced warning\n")

    deps = [str(src.resolve())]
    for match in re.finditer(r'#include\s+"([^"]+)"', text):
        deps.append(str((src.parent / match.group(1)).resolve()))
    content = text + "".join(Path(d).read_text() for d in deps[1:])
    flags = " ".join(a for a in argv if a.startswith("-") and a not in ("-o", "-h", "-MMM"))
    digest = hashlib.sha256((content + flags).encode()).hexdigest()

    out = Path(obj)
    if len(targets) > 1:
        out.write_bytes(f"dispatch {{src.name}} {{digest}}\n".encode())
        for target in targets:
            family = target.split("-")[0]
            suffix = "avx" if family == "avx1" else family
            path = out.with_name(f"{{out.stem}}_{{suffix}}{{out.suffix}}")
            path.write_bytes(f"{{target}} {{src.name}} {{digest}}\n".encode())
    else:
        target = targets[0] if targets else "host"
        out.write_bytes(f"{{target}} {{src.name}} {{digest}}\n".encode())

    guard = "ISPC_" + re.sub(r"\W", "_", Path(header).name).upper()
    decls = [line[4:] for line in text.splitlines() if line.startswith("//! ")]
    Path(header).write_text(
        f"#ifndef {{guard}}\n#define {{guard}}\n\n#include <stdint.h>\n\n"
        + "".join(d + "\n" for d in decls)
        + "\n#endif\n"
    )
    if "#nodeps" not in text:
        Path(depfile).write_text("\n".join(deps) + "\n")
    return 0


sys.exit(main(sys.argv[1:]))
'''


FAKE_LINKER = r'''#!{python}
import json
import sys
from pathlib import Path

LOG = Path({log!r})

argv = sys.argv[1:]
with LOG.open("a") as f:
    f.write(json.dumps([Path(sys.argv[0]).name] + argv) + "\n")

if Path(sys.argv[0]).name == "ar":
    mode, out, objects = argv[0], argv[1], argv[2:]
    assert "c" in mode and "r" in mode, mode
else:
    assert argv[0] == "-shared" and argv[1] == "-o", argv
    out, objects = argv[2], [a for a in argv[3:] if not a.startswith("-")]

data = bytearray(b"!<fake>\n")
for obj in objects:
    path = Path(obj)
    data += f"{{path.name}}\n".encode() + path.read_bytes()
Path(out).write_bytes(bytes(data))
'''


def _script(path: Path, text: str) -> None:
    path.write_text(text)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


class FakeTools:
    """A directory of fake toolchain executables and their invocation logs."""

    def __init__(self, root: Path, version: str = "1.23.0") -> None:
        self.bin = root / "bin"
        self.bin.mkdir(parents=True, exist_ok=True)
        self.compile_log = root / "ispc.log"
        self.link_log = root / "link.log"
        python = sys.executable
        _script(
            self.bin / "ispc",
            FAKE_ISPC.format(python=python, log=str(self.compile_log), version=version),
        )
        for name in ("ar", "cc"):
            _script(
                self.bin / name,
                FAKE_LINKER.format(python=python, log=str(self.link_log)),
            )
        self.toolchain = Toolchain(
            compiler="ispc",
            path=(str(self.bin),),
            archiver=("ar",),
            linker=("cc",),
            libclang=None,
            prebuilt=(),
            triple=TRIPLE,
        )

    def compiles(self) -> list[list[str]]:
        """Every recorded compiler invocation, excluding version queries."""
        if not self.compile_log.exists():
            return []
        return [json.loads(line) for line in self.compile_log.read_text().splitlines()]

    def compiled_sources(self) -> list[str]:
        """The file names of every source passed to the compiler, in order."""
        return [
            Path(next(a for a in argv if a.endswith(".ispc"))).name
            for argv in self.compiles()
        ]

    def links(self) -> list[list[str]]:
        """Every recorded archiver/linker invocation."""
        if not self.link_log.exists():
            return []
        return [json.loads(line) for line in self.link_log.read_text().splitlines()]


class StubParser:
    """A header parser that binds every `name(` declaration as a function returning
    `int32_t`, and counts how often it runs.
    """

    DECL = re.compile(r"^\s*\w+\s+(\w+)\s*\(", re.MULTILINE)

    def __init__(self) -> None:
        self.calls = 0

    def shim(self, directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def parse(self, header: Path, sources: Sequence[Path], include: Path) -> ParsedHeader:
        self.calls += 1
        result = ParsedHeader()
        for source in sources:
            for name in self.DECL.findall(source.read_text()):
                if name in TASK_SYSTEM_SYMBOLS:
                    result.unsupported.append(Unsupported(name, TASK_SYSTEM_SYMBOLS[name]))
                else:
                    result.declarations.append(FunctionDecl(name, "ctypes.c_int32", ()))
        return result


@pytest.fixture
def tools(tmp_path: Path) -> FakeTools:
    """Fake compiler, archiver and linker on an explicit search path."""
    return FakeTools(tmp_path / "tools")


@pytest.fixture
def src(tmp_path: Path) -> Path:
    """An empty directory for source files."""
    path = tmp_path / "src"
    path.mkdir()
    return path


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    """The build output directory.  Not created in advance."""
    return tmp_path / "out"


@pytest.fixture
def settings(out_dir: Path) -> Settings:
    """Settings isolated from the environment and any pyproject.toml."""
    return Settings(out_dir=out_dir, workers=1)


@pytest.fixture
def parser() -> StubParser:
    """A header parser that does not need libclang."""
    return StubParser()


@pytest.fixture
def config(tools: FakeTools, settings: Settings, parser: StubParser):
    """A factory for build configurations wired to the fake toolchain."""
    def make() -> BuildConfig:
        return BuildConfig(settings).toolchain(tools.toolchain).binding_parser(parser)
    return make


def write_source(directory: Path, name: str, *lines: str) -> Path:
    """Write a source file for the fake compiler."""
    path = directory / name
    path.write_text("\n".join(lines) + "\n")
    return path


def make_job(source: Path, out: Path, isas=(TargetISA.HOST,)) -> CompileJob:
    """Lay out a compile job the same way `BuildConfig.jobs()` does."""
    stem = f"{source.stem}_ispc"
    obj = out / f"{stem}.o"
    multi = len(isas) > 1
    units = tuple(
        CompileUnit(source, isa, out / f"{stem}_{isa.lib_suffix}.o" if multi else obj)
        for isa in isas
    )
    return CompileJob(
        source=source,
        units=units,
        object=obj,
        header=out / f"{stem}.h",
        depfile=out / f"{stem}.idep",
        record=out / f"{stem}.deps.json",
    )
