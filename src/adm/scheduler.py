"""Worker pool and batch scheduler for conversion items.

`WorkerPool` runs jobs on a thread pool behind a counting admission gate, so
at most `max_pending` jobs are ever in flight and a slot is always returned,
even when a job raises.

`ConversionScheduler` owns the batch: it accepts paths, creates items, and on
`start()` drives every pending item through encode -> analyze on the pool
from a single coordinator thread. Observers subscribe to `SchedulerEvent`s,
which are emitted on every item transition.
"""
from __future__ import annotations

import enum
import queue
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Literal, Optional, Tuple, Union

from loguru import logger

from .analyzer import analyze_file
from .clip_report import ClipReport
from .config import AdmSettings
from .encoder import ProgressFn, encode_file
from .errors import ConversionError, SchedulerBusy
from .items import ConversionItem, ConversionStatus, ItemSnapshot, StatusKind
from .logging import log_event
from .paths import OutputPolicy, release_output_path, reserve_output_path
from .probe import probe_sample_rate
from .scanner import collect_audio_files
from .tool_check import Toolchain


class WorkerPool:
    def __init__(self, max_workers: int) -> None:
        self._exe = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="adm-worker")
        self._max_workers = max_workers

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        return self._exe.submit(fn, *args, **kwargs)

    def imap_unordered_bounded(
        self,
        fn: Callable[[Any], Any],
        iterable: Iterable[Any],
        max_pending: int,
        *,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[Tuple[Any, Any]]:
        """Yield (item, result) as they complete while keeping <= max_pending jobs in flight.

        - fn: function called as fn(item) -> result
        - iterable: items to process, submitted in order
        - max_pending: admission slots; the caller blocks until one is free
        - stop_event: if set, stops submitting new jobs; drains in-flight jobs
        """
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")
        logger.debug(f"bounded window: bound={max_pending} (workers={self._max_workers})")

        gate = threading.BoundedSemaphore(max_pending)
        done: "queue.Queue[Tuple[Any, Future]]" = queue.Queue()

        def run(item: Any) -> Any:
            try:
                return fn(item)
            finally:
                gate.release()

        def stopped() -> bool:
            return stop_event is not None and stop_event.is_set()

        in_flight = 0
        for item in iterable:
            if stopped():
                break
            gate.acquire()
            if stopped():
                gate.release()
                break
            fut = self._exe.submit(run, item)
            fut.add_done_callback(lambda f, item=item: done.put((item, f)))
            in_flight += 1
            # Hand back whatever already finished without blocking admission
            while True:
                try:
                    finished, f = done.get_nowait()
                except queue.Empty:
                    break
                in_flight -= 1
                yield finished, f.result()

        while in_flight:
            finished, f = done.get()
            in_flight -= 1
            yield finished, f.result()

    def shutdown(self, wait: bool = True) -> None:
        self._exe.shutdown(wait=wait)


class ProcessingMode(str, enum.Enum):
    CONVERT = "convert"  # keep the encoded M4A next to the source
    ANALYZE_ONLY = "analyze-only"  # encode to a temp file, analyze, discard


class ProcessingPolicy(str, enum.Enum):
    INTERACTIVE = "interactive"
    BATCH = "batch"


def workers_for(cfg: AdmSettings, policy: ProcessingPolicy) -> int:
    return cfg.batch_workers if policy is ProcessingPolicy.BATCH else cfg.interactive_workers


@dataclass(frozen=True)
class BatchCounts:
    total: int = 0
    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def finished(self) -> int:
        return self.completed + self.failed

    @property
    def fraction_done(self) -> float:
        return self.finished / self.total if self.total else 0.0


EventKind = Literal["submitted", "started", "item", "finished", "cleared"]


@dataclass(frozen=True)
class SchedulerEvent:
    kind: EventKind
    counts: BatchCounts
    item: Optional[ItemSnapshot] = None


@dataclass(frozen=True)
class RunOptions:
    mode: ProcessingMode = ProcessingMode.CONVERT
    soundcheck: bool = True
    output_policy: OutputPolicy = OutputPolicy.SAME_DIRECTORY


# encode_fn(src, dest, *, soundcheck, on_progress) / analyze_fn(path)
EncodeFn = Callable[..., None]
AnalyzeFn = Callable[[Path], ClipReport]
Listener = Callable[[SchedulerEvent], None]


class ConversionScheduler:
    def __init__(
        self,
        *,
        max_concurrent: int = 4,
        tools: Optional[Toolchain] = None,
        temp_dir: Optional[Path] = None,
        encode_fn: Optional[EncodeFn] = None,
        analyze_fn: Optional[AnalyzeFn] = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self.tools = tools or Toolchain()
        self.temp_dir = temp_dir or AdmSettings().resolved_temp_dir()
        self._encode = encode_fn or self._encode_with_tools
        self._analyze = analyze_fn or self._analyze_with_tools

        self._lock = threading.Lock()
        self._items: List[ConversionItem] = []
        self._listeners: List[Listener] = []
        self._running = False
        self._idle = threading.Event()
        self._idle.set()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(
        cls,
        cfg: AdmSettings,
        policy: ProcessingPolicy = ProcessingPolicy.INTERACTIVE,
        **kwargs: Any,
    ) -> "ConversionScheduler":
        return cls(
            max_concurrent=workers_for(cfg, policy),
            tools=Toolchain.from_settings(cfg),
            temp_dir=cfg.resolved_temp_dir(),
            **kwargs,
        )

    # --- observation -----------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _emit(self, event: SchedulerEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Scheduler listener failed")

    def _counts_locked(self) -> BatchCounts:
        pending = active = completed = failed = 0
        for item in self._items:
            kind = item.status.kind
            if kind is StatusKind.PENDING:
                pending += 1
            elif kind is StatusKind.COMPLETED:
                completed += 1
            elif kind is StatusKind.ERROR:
                failed += 1
            else:
                active += 1
        return BatchCounts(len(self._items), pending, active, completed, failed)

    def counts(self) -> BatchCounts:
        with self._lock:
            return self._counts_locked()

    def items(self) -> List[ItemSnapshot]:
        with self._lock:
            return [item.snapshot() for item in self._items]

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    # --- batch management --------------------------------------------------

    def submit(self, paths: Iterable[Union[str, Path]]) -> List[ItemSnapshot]:
        """Expand paths and append one pending item per accepted audio file."""
        new_items = [ConversionItem(p) for p in collect_audio_files(paths)]
        with self._lock:
            self._items.extend(new_items)
            counts = self._counts_locked()
        logger.debug(f"Submitted {len(new_items)} audio file(s); batch now {counts.total}")
        self._emit(SchedulerEvent("submitted", counts))
        return [item.snapshot() for item in new_items]

    def clear(self) -> None:
        with self._lock:
            if self._running:
                raise SchedulerBusy("cannot clear the batch while processing is active")
            self._items.clear()
            counts = self._counts_locked()
        self._emit(SchedulerEvent("cleared", counts))

    def start(
        self,
        mode: ProcessingMode = ProcessingMode.CONVERT,
        *,
        soundcheck: bool = True,
        output_policy: OutputPolicy = OutputPolicy.SAME_DIRECTORY,
    ) -> bool:
        """Begin processing all currently pending items.

        Returns False (and does nothing) when already running or when nothing
        is pending. Items submitted while running wait for the next start().
        """
        options = RunOptions(mode=mode, soundcheck=soundcheck, output_policy=output_policy)
        with self._lock:
            if self._running:
                logger.debug("start() ignored: batch already running")
                return False
            batch = [item for item in self._items if item.status.kind is StatusKind.PENDING]
            if not batch:
                return False
            self._running = True
            self._idle.clear()
            self._stop.clear()
            counts = self._counts_locked()
        logger.info(
            f"Starting {len(batch)} item(s) | Mode: {mode.value} | Workers: {self.max_concurrent}"
            f" | SoundCheck: {'on' if soundcheck else 'off'} | Output: {output_policy.value}"
        )
        self._emit(SchedulerEvent("started", counts))
        self._thread = threading.Thread(
            target=self._run_batch, args=(batch, options), name="adm-coordinator", daemon=True
        )
        self._thread.start()
        return True

    def stop(self) -> None:
        """Stop dispatching new items; in-flight items run to completion."""
        self._stop.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current batch finishes. Returns False on timeout."""
        return self._idle.wait(timeout)

    def run(
        self,
        mode: ProcessingMode = ProcessingMode.CONVERT,
        *,
        soundcheck: bool = True,
        output_policy: OutputPolicy = OutputPolicy.SAME_DIRECTORY,
    ) -> BatchCounts:
        """start() and wait() in one call."""
        if self.start(mode, soundcheck=soundcheck, output_policy=output_policy):
            self.wait()
        return self.counts()

    # --- coordinator -----------------------------------------------------------

    def _run_batch(self, batch: List[ConversionItem], options: RunOptions) -> None:
        t_start = time.time()
        pool = WorkerPool(max_workers=self.max_concurrent)
        done = ok = failed = 0
        try:
            for item, success in pool.imap_unordered_bounded(
                lambda it: self._process_item(it, options),
                batch,
                max_pending=self.max_concurrent,
                stop_event=self._stop,
            ):
                done += 1
                if success:
                    ok += 1
                    logger.info(f"[{done}/{len(batch)}] OK  {item.name} | {item.status.describe()}")
                else:
                    failed += 1
                    logger.error(f"[{done}/{len(batch)}] ERR {item.name} | {item.status.message}")
        except Exception:
            logger.exception("Batch coordinator failed")
        finally:
            pool.shutdown()
            with self._lock:
                self._running = False
                counts = self._counts_locked()
            elapsed = time.time() - t_start
            skipped = len(batch) - done
            logger.info(
                f"Batch finished: Completed: {ok} | Failed: {failed}"
                + (f" | Not started: {skipped}" if skipped else "")
                + f" | {elapsed:.2f}s"
            )
            self._emit(SchedulerEvent("finished", counts))
            self._idle.set()

    # --- per-item pipeline -----------------------------------------------------

    def _transition(self, item: ConversionItem, status: ConversionStatus) -> None:
        with self._lock:
            item.transition(status)
            snap = item.snapshot()
            counts = self._counts_locked()
        self._emit(SchedulerEvent("item", counts, snap))

    def _process_item(self, item: ConversionItem, options: RunOptions) -> bool:
        """Encode (unless already M4A) then analyze one item. Never raises."""
        reserved: Optional[Path] = None
        temp_output: Optional[Path] = None
        try:
            if item.already_encoded:
                self._transition(item, ConversionStatus.analyzing())
                target = item.source
            else:
                self._transition(item, ConversionStatus.converting(0.0))
                if options.mode is ProcessingMode.CONVERT:
                    dest = reserved = reserve_output_path(item.source, options.output_policy)
                else:
                    self.temp_dir.mkdir(parents=True, exist_ok=True)
                    dest = temp_output = self.temp_dir / f"{uuid.uuid4().hex}.m4a"

                def on_progress(p: float) -> None:
                    self._transition(item, ConversionStatus.converting(p))

                self._encode(item.source, dest, soundcheck=options.soundcheck, on_progress=on_progress)
                reserved = None
                if options.mode is ProcessingMode.CONVERT:
                    with self._lock:
                        item.output_path = dest
                self._transition(item, ConversionStatus.analyzing())
                target = dest

            report = self._analyze(target)
            self._transition(item, ConversionStatus.completed(report))
            log_event("analyze", file=item.name, status="ok", clips=report.total_clips, msg="analysis complete", level="DEBUG")
            return True
        except ConversionError as e:
            self._fail(item, str(e))
            return False
        except Exception as e:
            logger.exception(f"Unexpected failure processing {item.name}")
            self._fail(item, f"Unexpected error: {e}")
            return False
        finally:
            if reserved is not None:
                release_output_path(reserved)
            if temp_output is not None:
                try:
                    temp_output.unlink(missing_ok=True)
                except OSError as e:
                    logger.debug(f"Could not remove {temp_output}: {e}")

    def _fail(self, item: ConversionItem, message: str) -> None:
        log_event("item", file=item.name, status="error", msg=message, level="DEBUG")
        self._transition(item, ConversionStatus.error(message))

    # --- default collaborators -------------------------------------------------

    def _encode_with_tools(self, src: Path, dest: Path, *, soundcheck: bool, on_progress: ProgressFn) -> None:
        rate = probe_sample_rate(src, info_bin=self.tools.info)
        encode_file(
            src,
            dest,
            soundcheck=soundcheck,
            sample_rate=rate,
            temp_dir=self.temp_dir,
            encoder=self.tools.encoder,
            on_progress=on_progress,
        )

    def _analyze_with_tools(self, path: Path) -> ClipReport:
        return analyze_file(path, analyzer=self.tools.analyzer)
