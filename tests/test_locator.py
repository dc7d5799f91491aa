from __future__ import annotations

from pathlib import Path

import pytest

from ispyc import ArtifactNotFound, ConfigurationError, LibraryKind, PackagedModule, locate
from ispyc.invoker import Toolchain
from ispyc.linker import library_filename
from ispyc.locator import search_path
from ispyc.settings import Settings

from tests import make_parameters
from tests.conftest import TRIPLE


@pytest.mark.parametrize("triple, kind, expected", make_parameters(
    [
        TRIPLE, TRIPLE, "aarch64-apple-darwin", "aarch64-apple-darwin",
        "x86_64-pc-windows-msvc", "x86_64-pc-windows-msvc",
    ],
    [
        LibraryKind.STATIC, LibraryKind.SHARED, LibraryKind.STATIC,
        LibraryKind.SHARED, LibraryKind.STATIC, LibraryKind.SHARED,
    ],
    [
        f"libsimple-{TRIPLE}.a",
        f"libsimple-{TRIPLE}.so",
        "libsimple-aarch64-apple-darwin.a",
        "libsimple-aarch64-apple-darwin.dylib",
        "simple-x86_64-pc-windows-msvc.lib",
        "simple-x86_64-pc-windows-msvc.dll",
    ],
))
def test_library_filename(triple, kind, expected):
    assert library_filename("simple", triple, kind) == expected


@pytest.fixture
def toolchain() -> Toolchain:
    return Toolchain(path=(), triple=TRIPLE)


@pytest.fixture
def prebuilt(tmp_path) -> Path:
    path = tmp_path / "prebuilt"
    path.mkdir()
    (path / f"libsimple-{TRIPLE}.so").write_bytes(b"so")
    (path / f"libsimple-{TRIPLE}.a").write_bytes(b"a")
    (path / "simple.py").write_text("# bindings\n")
    return path


######################
####    SEARCH    ####
######################


def test_explicit_paths_replace_defaults(tmp_path):
    toolchain = Toolchain(path=(), prebuilt=(tmp_path / "env",), triple=TRIPLE)
    explicit = [tmp_path / "a", tmp_path / "b", tmp_path / "a"]
    assert search_path(toolchain, explicit) == [tmp_path / "a", tmp_path / "b"]


def test_default_search_path(tmp_path):
    toolchain = Toolchain(path=(), prebuilt=(tmp_path / "env",), triple=TRIPLE)
    settings = Settings(prebuilt_dir=tmp_path / "vendor")
    assert search_path(toolchain, (), settings) == [tmp_path / "env", tmp_path / "vendor"]


@pytest.mark.parametrize("kinds, chosen", [
    ((LibraryKind.SHARED, LibraryKind.STATIC), LibraryKind.SHARED),
    ((LibraryKind.STATIC, LibraryKind.SHARED), LibraryKind.STATIC),
    ((LibraryKind.STATIC,), LibraryKind.STATIC),
])
def test_locate_prefers_kinds_in_order(prebuilt, toolchain, kinds, chosen):
    result = locate("simple", paths=[prebuilt], kinds=kinds, toolchain=toolchain)
    assert result.kind is chosen
    assert result.library == prebuilt / library_filename("simple", TRIPLE, chosen)
    assert result.bindings == prebuilt / "simple.py"
    assert result.triple == TRIPLE


def test_locate_searches_in_order(tmp_path, prebuilt, toolchain):
    first = tmp_path / "first"
    first.mkdir()
    (first / f"libsimple-{TRIPLE}.a").write_bytes(b"a")
    result = locate("simple", paths=[first, prebuilt], toolchain=toolchain)
    assert result.library == first / f"libsimple-{TRIPLE}.a"
    assert result.bindings is None


def test_locate_directives(prebuilt, toolchain):
    result = locate("simple", paths=[prebuilt], toolchain=toolchain)
    assert [str(d) for d in result.directives] == [
        f"ispyc:search={prebuilt}",
        f"ispyc:dylib=simple-{TRIPLE}",
        f"ispyc:env=ISPC_OUT_DIR={prebuilt}",
    ]


def test_locate_uses_environment_path(prebuilt):
    toolchain = Toolchain.from_environ({
        "ISPYC_PREBUILT_PATH": str(prebuilt),
        "ISPYC_TARGET": TRIPLE,
    })
    assert locate("simple", toolchain=toolchain).library.parent == prebuilt


@pytest.mark.parametrize("triple", [
    "aarch64-unknown-linux-gnu",
    "x86_64-pc-windows-msvc",
])
def test_locate_wrong_triple(prebuilt, toolchain, triple):
    with pytest.raises(ArtifactNotFound) as excinfo:
        locate("simple", paths=[prebuilt], triple=triple, toolchain=toolchain)
    err = excinfo.value
    assert err.triple == triple
    assert err.searched == [prebuilt]
    assert str(prebuilt) in str(err)


def test_not_found_with_empty_search_path(toolchain, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ArtifactNotFound, match="simple"):
        locate("simple", toolchain=toolchain, settings=Settings())


##############################
####    PACKAGED MODULE    ####
##############################


def test_packaged_module(prebuilt, toolchain, capsys):
    result = (
        PackagedModule("simple")
        .lib_path(prebuilt)
        .toolchain(toolchain)
        .settings(Settings())
        .library_kind("static")
        .emit_directives()
        .link()
    )
    assert result.kind is LibraryKind.STATIC
    out = capsys.readouterr().out
    assert f"ispyc:static=simple-{TRIPLE}\n" in out


def test_packaged_module_target(tmp_path, toolchain):
    (tmp_path / "libsimple-aarch64-apple-darwin.dylib").write_bytes(b"")
    result = (
        PackagedModule("simple")
        .lib_path(tmp_path)
        .target("aarch64-apple-darwin")
        .toolchain(toolchain)
        .settings(Settings())
        .link()
    )
    assert result.library.suffix == ".dylib"


def test_packaged_module_silent_by_default(prebuilt, toolchain, capsys):
    PackagedModule("simple").lib_path(prebuilt).toolchain(toolchain).settings(Settings()).link()
    assert "ispyc:" not in capsys.readouterr().out


def test_packaged_module_rejects_empty_kinds():
    with pytest.raises(ConfigurationError, match="at least one"):
        PackagedModule("simple").library_kind()
    with pytest.raises(ConfigurationError, match="unknown library kind"):
        PackagedModule("simple").library_kind("dynamic")
