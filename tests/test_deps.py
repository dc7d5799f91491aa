from __future__ import annotations

import os
from pathlib import Path

import pytest

from ispyc.deps import (
    BuildCache, DependencyRecord, DependencyTracker, Status, clock, digest, mtime,
    parse_depfile
)
from ispyc.invoker import CompileJob
from ispyc.targets import TargetISA
from ispyc.version import __version__

from tests.conftest import make_job


def fake_compile(job: CompileJob, deps: list[Path]) -> None:
    """Produce every output a successful compile would."""
    job.object.parent.mkdir(parents=True, exist_ok=True)
    for obj in job.objects:
        obj.write_bytes(b"obj")
    job.header.write_text("// header\n")
    job.depfile.write_text("\n".join(str(p) for p in [job.source, *deps]) + "\n")


def touch(path: Path, offset: float) -> None:
    stamp = path.stat().st_mtime + offset
    os.utime(path, (stamp, stamp))


##########################
####    DEPFILES     ####
##########################


def test_parse_flat_list(tmp_path):
    text = "/abs/a.ispc\nrel/b.isph\n\n/abs/a.ispc\n"
    assert parse_depfile(text, tmp_path) == [
        Path("/abs/a.ispc").resolve(), (tmp_path / "rel" / "b.isph").resolve()
    ]


def test_parse_makefile_rule(tmp_path):
    text = (
        "out/a_ispc.o: src/a.ispc \\\n"
        "  src/common.isph \\\n"
        "  src/with\\ space.isph\n"
    )
    assert parse_depfile(text, tmp_path) == [
        (tmp_path / "src" / "a.ispc").resolve(),
        (tmp_path / "src" / "common.isph").resolve(),
        (tmp_path / "src" / "with space.isph").resolve(),
    ]


def test_parse_windows_drive_in_target(tmp_path):
    text = "C:/out/a_ispc.obj: dep.isph\n"
    assert parse_depfile(text, tmp_path) == [(tmp_path / "dep.isph").resolve()]


def test_parse_empty():
    assert parse_depfile("") == []


def test_mtime_of_missing_file(tmp_path):
    assert mtime(tmp_path / "nope") is None


def test_digest(tmp_path):
    path = tmp_path / "f"
    path.write_bytes(b"abc")
    assert digest(path) == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )


#########################
####    TRACKER     ####
#########################


@pytest.fixture
def job(tmp_path) -> CompileJob:
    source = tmp_path / "src" / "a.ispc"
    source.parent.mkdir()
    source.write_text("// a\n")
    return make_job(source, tmp_path / "out")


@pytest.fixture
def header(tmp_path) -> Path:
    path = tmp_path / "src" / "common.isph"
    path.write_text("// common\n")
    return path


def compile_and_record(tracker, job, deps, compile_hash="h1"):
    stamp = mtime(job.source)
    tracker.invalidate(job)
    fake_compile(job, deps)
    return tracker.record(job, compile_hash, stamp)


def test_missing_record_is_stale(job):
    verdict = DependencyTracker().status(job, "h1")
    assert verdict.status is Status.STALE
    assert "no dependency record" in verdict.reason


def test_recorded_job_is_fresh(job, header):
    tracker = DependencyTracker()
    record = compile_and_record(tracker, job, [header])
    assert record.dependencies == {str(header.resolve()): header.stat().st_mtime}
    assert str(job.source.resolve()) not in record.dependencies
    assert tracker.status(job, "h1").status is Status.FRESH


def test_flag_change_is_stale(job, header):
    tracker = DependencyTracker()
    compile_and_record(tracker, job, [header])
    assert "flags" in tracker.status(job, "h2").reason


def test_source_change_is_stale(job, header):
    tracker = DependencyTracker()
    compile_and_record(tracker, job, [header])
    touch(job.source, 10)
    assert tracker.status(job, "h1").stale


def test_older_source_is_still_stale(job, header):
    tracker = DependencyTracker()
    compile_and_record(tracker, job, [header])
    touch(job.source, -10)
    assert tracker.status(job, "h1").stale


def test_dependency_change_is_stale(job, header):
    tracker = DependencyTracker()
    compile_and_record(tracker, job, [header])
    touch(header, 10)
    verdict = tracker.status(job, "h1")
    assert verdict.stale
    assert "common.isph" in verdict.reason


def test_dependency_changed_during_compile_is_not_recorded(job, header, capsys):
    tracker = DependencyTracker()
    stamp = mtime(job.source)
    tracker.invalidate(job)
    job.object.parent.mkdir(parents=True, exist_ok=True)
    started = clock(job.object.parent)
    fake_compile(job, [header])
    os.utime(header, (started + 5, started + 5))  # saved while the compiler ran

    assert tracker.record(job, "h1", stamp, started) is None
    assert not job.record.exists()
    assert "common.isph changed while" in capsys.readouterr().out
    assert tracker.status(job, "h1").stale

    # the next build compiles the new version and records it
    fake_compile(job, [header])
    record = tracker.record(job, "h1", stamp, started + 10)
    assert record.dependencies == {str(header.resolve()): header.stat().st_mtime}
    assert tracker.status(job, "h1").status is Status.FRESH


def test_clock(tmp_path):
    first = clock(tmp_path)
    assert first == (tmp_path / ".ispyc-clock").stat().st_mtime
    assert clock(tmp_path) >= first


def test_deleted_dependency_is_stale(job, header):
    tracker = DependencyTracker()
    compile_and_record(tracker, job, [header])
    header.unlink()
    assert "missing" in tracker.status(job, "h1").reason


def test_missing_output_is_stale(job):
    tracker = DependencyTracker()
    compile_and_record(tracker, job, [])
    job.header.unlink()
    assert "output" in tracker.status(job, "h1").reason


def test_isa_change_is_stale(job, tmp_path):
    tracker = DependencyTracker()
    compile_and_record(tracker, job, [])
    wider = make_job(job.source, tmp_path / "out", (TargetISA.SSE2_I32X4, TargetISA.AVX2_I32X8))
    assert "ISAs" in tracker.status(wider, "h1").reason


def test_reported_but_absent_dependency_is_skipped(job, tmp_path):
    tracker = DependencyTracker()
    record = compile_and_record(tracker, job, [tmp_path / "ghost.isph"])
    assert record.dependencies == {}
    assert tracker.status(job, "h1").status is Status.FRESH


def test_no_depfile_means_no_record(job, capsys):
    tracker = DependencyTracker()
    tracker.invalidate(job)
    fake_compile(job, [])
    job.depfile.unlink()
    assert tracker.record(job, "h1", mtime(job.source)) is None
    assert not job.record.exists()
    assert tracker.status(job, "h1").stale
    assert "recompiled on every build" in capsys.readouterr().err


def test_invalidate_removes_record_and_depfile(job):
    tracker = DependencyTracker()
    compile_and_record(tracker, job, [])
    tracker.invalidate(job)
    assert not job.record.exists()
    assert not job.depfile.exists()
    tracker.invalidate(job)  # idempotent


def test_unreadable_record(job, capsys):
    job.record.parent.mkdir(parents=True)
    job.record.write_text("{not json")
    assert DependencyRecord.load(job.record) is None
    assert "unreadable" in capsys.readouterr().err


def test_record_round_trip(tmp_path):
    record = DependencyRecord(
        source="/a.ispc", source_mtime=1.5, compile_hash="x", header="/a_ispc.h"
    )
    path = tmp_path / "r.json"
    record.save(path)
    assert DependencyRecord.load(path) == record
    assert record.version == __version__


#######################
####    CACHE     ####
#######################


def test_missing_cache_is_empty(tmp_path):
    cache = BuildCache.load(tmp_path / "cache.json")
    assert cache.link_stamp is None
    assert cache.symbols == []


def test_cache_persists(tmp_path):
    path = tmp_path / "cache.json"
    BuildCache(link_stamp="s", library="lib", symbols=["f"], unsupported={"g": "why"}).save(path)
    cache = BuildCache.load(path)
    assert cache.link_stamp == "s"
    assert cache.unsupported == {"g": "why"}


def test_cache_from_other_version_is_discarded(tmp_path):
    path = tmp_path / "cache.json"
    BuildCache(version="0.0.0-other", link_stamp="s").save(path)
    assert BuildCache.load(path).link_stamp is None
