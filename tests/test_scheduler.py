"""Scheduler tests with fake encode/analyze collaborators (no external tools)."""
import threading
import time
from collections import Counter, defaultdict
from pathlib import Path

import pytest

from adm.clip_report import ClipReport
from adm.config import AdmSettings
from adm.errors import AnalysisUnavailable, EncodeFailed, SchedulerBusy
from adm.items import StatusKind
from adm.paths import OutputPolicy
from adm.scheduler import (
    ConversionScheduler,
    ProcessingMode,
    ProcessingPolicy,
    WorkerPool,
)


class FakeTools:
    def __init__(self, delay=0.0, fail_encode=(), fail_analyze=(), gate=None):
        self.delay = delay
        self.fail_encode = set(fail_encode)
        self.fail_analyze = set(fail_analyze)
        self.gate = gate
        self.encoded = Counter()
        self.analyzed = []
        self._lock = threading.Lock()

    def encode(self, src, dest, *, soundcheck, on_progress):
        with self._lock:
            self.encoded[src.name] += 1
        on_progress(0.25)
        if self.gate is not None:
            self.gate.wait(5)
        time.sleep(self.delay)
        if src.name in self.fail_encode:
            raise EncodeFailed("afconvert: bad input", returncode=1, stage="pass 1")
        on_progress(0.75)
        dest.write_bytes(b"m4a")

    def analyze(self, path):
        with self._lock:
            self.analyzed.append(Path(path))
        if Path(path).name in self.fail_analyze:
            raise AnalysisUnavailable(path, "afclip missing")
        return ClipReport(filename=Path(path).name, path=str(path), has_no_clipping=True)


def _make(tmp_path, tools, max_concurrent=4):
    return ConversionScheduler(
        max_concurrent=max_concurrent,
        temp_dir=tmp_path / "tmp",
        encode_fn=tools.encode,
        analyze_fn=tools.analyze,
    )


def _sources(root: Path, n: int, ext: str = "wav"):
    root.mkdir(parents=True, exist_ok=True)
    paths = []
    for i in range(n):
        p = root / f"track{i:02d}.{ext}"
        p.write_bytes(b"RIFF")
        paths.append(p)
    return paths


def test_concurrency_bound_never_exceeded(tmp_path):
    _sources(tmp_path / "src", 50)
    tools = FakeTools(delay=0.005)
    sched = _make(tmp_path, tools, max_concurrent=4)
    max_active = []
    sched.subscribe(lambda ev: max_active.append(ev.counts.active))
    sched.submit([tmp_path / "src"])

    counts = sched.run()

    assert counts.completed == 50
    assert counts.failed == 0
    assert max(max_active) <= 4
    assert max(max_active) >= 1
    assert not sched.is_running


def test_start_while_running_is_noop(tmp_path):
    _sources(tmp_path / "src", 6)
    gate = threading.Event()
    tools = FakeTools(gate=gate)
    sched = _make(tmp_path, tools, max_concurrent=2)
    sched.submit([tmp_path / "src"])

    assert sched.start() is True
    assert sched.start() is False
    gate.set()
    assert sched.wait(10)

    assert sched.counts().completed == 6
    assert all(n == 1 for n in tools.encoded.values())
    assert len(tools.encoded) == 6


def test_start_with_nothing_pending(tmp_path):
    sched = _make(tmp_path, FakeTools())
    assert sched.start() is False
    assert not sched.is_running


def test_clear_rejected_while_running(tmp_path):
    _sources(tmp_path / "src", 2)
    gate = threading.Event()
    sched = _make(tmp_path, FakeTools(gate=gate))
    sched.submit([tmp_path / "src"])
    sched.start()
    with pytest.raises(SchedulerBusy):
        sched.clear()
    gate.set()
    sched.wait(10)
    sched.clear()
    assert sched.items() == []
    assert sched.counts().total == 0


def test_status_sequence_for_converted_item(tmp_path):
    (src,) = _sources(tmp_path / "src", 1)
    sched = _make(tmp_path, FakeTools())
    history = defaultdict(list)
    sched.subscribe(lambda ev: ev.item and history[ev.item.id].append(ev.item.status))
    sched.submit([src])
    sched.run()

    (statuses,) = history.values()
    kinds = [s.kind for s in statuses]
    assert kinds == [
        StatusKind.CONVERTING,
        StatusKind.CONVERTING,
        StatusKind.CONVERTING,
        StatusKind.ANALYZING,
        StatusKind.COMPLETED,
    ]
    assert [s.progress for s in statuses[:3]] == [0.0, 0.25, 0.75]
    (snap,) = sched.items()
    assert snap.output_path == tmp_path / "src" / "track00.m4a"
    assert snap.output_path.read_bytes() == b"m4a"


def test_m4a_items_skip_encoding(tmp_path):
    (m4a,) = _sources(tmp_path / "src", 1, ext="m4a")
    tools = FakeTools()
    sched = _make(tmp_path, tools)
    sched.submit([m4a])
    sched.run()

    assert tools.encoded == Counter()
    assert tools.analyzed == [m4a]
    (snap,) = sched.items()
    assert snap.status.kind is StatusKind.COMPLETED
    assert snap.output_path is None


def test_failures_stay_local_to_their_item(tmp_path):
    _sources(tmp_path / "src", 5)
    tools = FakeTools(fail_encode={"track02.wav"}, fail_analyze={"track03.m4a"})
    sched = _make(tmp_path, tools)
    sched.submit([tmp_path / "src"])
    counts = sched.run()

    assert counts.completed == 3
    assert counts.failed == 2
    by_name = {s.name: s for s in sched.items()}
    assert "afconvert: bad input" in by_name["track02.wav"].status.message
    assert "afclip missing" in by_name["track03.wav"].status.message
    # Failed encode leaves no placeholder behind
    assert not (tmp_path / "src" / "track02.m4a").exists()


def test_analyze_only_mode_discards_outputs(tmp_path):
    _sources(tmp_path / "src", 3)
    tools = FakeTools()
    sched = _make(tmp_path, tools)
    sched.submit([tmp_path / "src"])
    counts = sched.run(ProcessingMode.ANALYZE_ONLY)

    assert counts.completed == 3
    assert sorted(p.suffix for p in (tmp_path / "src").iterdir()) == [".wav"] * 3
    assert list((tmp_path / "tmp").iterdir()) == []
    assert all(p.parent == tmp_path / "tmp" for p in tools.analyzed)
    assert all(s.output_path is None for s in sched.items())


def test_subfolder_policy_and_collisions(tmp_path):
    (src,) = _sources(tmp_path / "src", 1)
    (tmp_path / "src" / "M4A").mkdir()
    (tmp_path / "src" / "M4A" / "track00.m4a").write_bytes(b"old")
    sched = _make(tmp_path, FakeTools())
    sched.submit([src])
    sched.run(output_policy=OutputPolicy.SUBFOLDER)

    (snap,) = sched.items()
    assert snap.output_path == tmp_path / "src" / "M4A" / "track00-1.m4a"
    assert (tmp_path / "src" / "M4A" / "track00.m4a").read_bytes() == b"old"


def test_items_added_during_run_wait_for_next_start(tmp_path):
    _sources(tmp_path / "first", 2)
    _sources(tmp_path / "second", 3)
    gate = threading.Event()
    finished = []
    sched = _make(tmp_path, FakeTools(gate=gate))
    sched.subscribe(lambda ev: ev.kind == "finished" and finished.append(ev))
    sched.submit([tmp_path / "first"])
    sched.start()
    sched.submit([tmp_path / "second"])
    gate.set()
    sched.wait(10)

    counts = sched.counts()
    assert (counts.completed, counts.pending) == (2, 3)
    assert len(finished) == 1

    assert sched.run().completed == 5
    assert len(finished) == 2


def test_stop_leaves_undispatched_items_pending(tmp_path):
    _sources(tmp_path / "src", 4)
    gate = threading.Event()
    first_started = threading.Event()
    sched = _make(tmp_path, FakeTools(gate=gate), max_concurrent=1)
    sched.subscribe(lambda ev: ev.kind == "item" and first_started.set())
    sched.submit([tmp_path / "src"])
    sched.start()
    assert first_started.wait(5)
    sched.stop()
    gate.set()
    assert sched.wait(10)

    counts = sched.counts()
    assert (counts.completed, counts.pending, counts.failed) == (1, 3, 0)
    assert not sched.is_running


def test_listener_errors_do_not_break_processing(tmp_path):
    _sources(tmp_path / "src", 2)
    sched = _make(tmp_path, FakeTools())

    def bad_listener(ev):
        raise RuntimeError("observer bug")

    sched.subscribe(bad_listener)
    sched.submit([tmp_path / "src"])
    assert sched.run().completed == 2


def test_from_settings_uses_policy_worker_counts(tmp_path):
    cfg = AdmSettings(interactive_workers=3, batch_workers=9, temp_dir=str(tmp_path))
    assert ConversionScheduler.from_settings(cfg).max_concurrent == 3
    batch = ConversionScheduler.from_settings(cfg, ProcessingPolicy.BATCH)
    assert batch.max_concurrent == 9
    assert batch.temp_dir == tmp_path


def test_worker_pool_bounds_in_flight_jobs():
    pool = WorkerPool(max_workers=8)
    lock = threading.Lock()
    state = {"now": 0, "peak": 0}

    def job(n):
        with lock:
            state["now"] += 1
            state["peak"] = max(state["peak"], state["now"])
        time.sleep(0.002)
        with lock:
            state["now"] -= 1
        return n * n

    try:
        results = sorted(r for _, r in pool.imap_unordered_bounded(job, range(20), max_pending=3))
    finally:
        pool.shutdown()
    assert results == sorted(n * n for n in range(20))
    assert state["peak"] <= 3


def test_worker_pool_propagates_job_errors():
    pool = WorkerPool(max_workers=1)

    def job(n):
        raise ValueError(n)

    try:
        with pytest.raises(ValueError):
            list(pool.imap_unordered_bounded(job, [1, 2], max_pending=1))
    finally:
        pool.shutdown()


def test_worker_pool_rejects_zero_window():
    pool = WorkerPool(max_workers=1)
    try:
        with pytest.raises(ValueError):
            list(pool.imap_unordered_bounded(lambda x: x, [1], max_pending=0))
    finally:
        pool.shutdown()
