"""
Watch Loop - Rebuild on change with debouncing and cancellation

File-system notifications (watchdog) are turned into ChangeEvents and put
on a queue. A single coordinator thread consumes the queue and drives the
state machine:

    IDLE --change--> DEBOUNCING --quiet for debounce_ms--> BUILDING
    DEBOUNCING --change--> DEBOUNCING (timer reset)
    BUILDING --done--> IDLE
    BUILDING --change--> CANCELLING --cycle returns--> DEBOUNCING

Build cycles run on a one-thread executor; their completion is posted back
on the same queue, so the coordinator never blocks on a build. Cancelling
lets already-dispatched compile jobs finish (their artifacts are cached)
and skips the rest of the cycle.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import fnmatch
import logging
import os
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, List, Optional, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from .scheduler import CancellationToken

logger = logging.getLogger(__name__)


class WatchState(str, Enum):
    """States of the watch loop."""
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    BUILDING = "building"
    CANCELLING = "cancelling"


@dataclass(frozen=True)
class ChangeEvent:
    """One file-system change notification."""
    path: str
    kind: str
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class _CycleFinished:
    future: Future


_STOP = object()


def should_ignore(path: str, patterns: Sequence[str]) -> bool:
    """Check a path (and its basename) against glob patterns."""
    name = os.path.basename(path)
    for pattern in patterns:
        if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(name, pattern):
            return True
    return False


class ChangeEventHandler(FileSystemEventHandler):
    """Forward relevant watchdog events to the watch loop channel."""

    def __init__(self, channel: "queue.Queue[Any]", ignore_patterns: Sequence[str] = ()):
        super().__init__()
        self.channel = channel
        self.ignore_patterns = list(ignore_patterns)

    def handle(self, path: str, kind: str, is_directory: bool):
        if is_directory or should_ignore(path, self.ignore_patterns):
            return
        logger.debug(f"Change detected ({kind}): {path}")
        self.channel.put(ChangeEvent(path=path, kind=kind))

    def on_modified(self, event: FileSystemEvent):
        self.handle(event.src_path, "modified", event.is_directory)

    def on_created(self, event: FileSystemEvent):
        self.handle(event.src_path, "created", event.is_directory)

    def on_deleted(self, event: FileSystemEvent):
        self.handle(event.src_path, "deleted", event.is_directory)

    def on_moved(self, event: FileSystemEvent):
        # Editors often save via rename onto the target
        self.handle(event.dest_path, "moved", event.is_directory)


class WatchLoop:
    """
    Continuously rebuild a source document as files under its tree change.

    Usage:
        loop = WatchLoop(builder, Path("talk.tex"), debounce_ms=300)
        loop.run_forever()  # until Ctrl-C

    ``builder`` is anything with ``build(source, token) -> report``
    (normally an IncrementalBuilder).
    """

    def __init__(
        self,
        builder: Any,
        source: Path,
        debounce_ms: int = 300,
        root: Optional[Path] = None,
        ignore_patterns: Sequence[str] = (),
        use_polling: bool = False,
        on_report: Optional[Callable[[Any], None]] = None,
    ):
        """
        Initialize the watch loop.

        Args:
            builder: Build driver
            source: Source document
            debounce_ms: Quiet period before a build starts
            root: Directory to watch (defaults to the source's directory)
            ignore_patterns: Glob patterns of paths that never trigger
            use_polling: Use the polling observer (network filesystems)
            on_report: Called with each completed cycle report
        """
        self.builder = builder
        self.source = Path(source)
        self.debounce = max(0, debounce_ms) / 1000.0
        self.root = Path(root) if root else self.source.resolve().parent
        self.use_polling = use_polling
        self.on_report = on_report

        self.ignore_patterns: List[str] = list(ignore_patterns)
        output_for = getattr(builder, "output_for", None)
        if callable(output_for):
            output = Path(output_for(self.source)).resolve()
            self.ignore_patterns += [str(output), f"{output.parent}/.{output.stem}.*"]
        cache = getattr(builder, "cache", None)
        if cache is not None:
            self.ignore_patterns.append(f"{Path(cache.cache_dir).resolve()}/*")

        self.channel: "queue.Queue[Any]" = queue.Queue()
        self.reports: List[Any] = []
        self.state_history: Deque[WatchState] = deque([WatchState.IDLE], maxlen=200)

        self._state = WatchState.IDLE
        self._state_lock = threading.Lock()
        self._deadline: Optional[float] = None
        self._token: Optional[CancellationToken] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._observer = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> WatchState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: WatchState):
        with self._state_lock:
            if state == self._state:
                return
            logger.debug(f"Watch state {self._state.value} -> {state.value}")
            self._state = state
            self.state_history.append(state)

    @property
    def cycles(self) -> int:
        return len(self.reports)

    def notify(self, path: str, kind: str = "modified"):
        """Inject a change notification (used by the observer and tests)."""
        self.channel.put(ChangeEvent(path=str(path), kind=kind))

    # -------------------------------------------------------------------------
    # Coordinator
    # -------------------------------------------------------------------------

    def run(self, stop_event: Optional[threading.Event] = None):
        """
        Run the state machine until ``stop_event`` is set.

        Never exits because of a build outcome.
        """
        stop_event = stop_event or self._stop_event
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fastbeam-cycle")
        try:
            while not stop_event.is_set():
                try:
                    item = self.channel.get(timeout=self._wait_timeout())
                except queue.Empty:
                    item = None

                if item is _STOP:
                    break
                if isinstance(item, ChangeEvent):
                    self._on_change(item)
                elif isinstance(item, _CycleFinished):
                    self._on_cycle_finished(item.future)

                self._maybe_start_cycle()
        finally:
            if self._token is not None:
                self._token.cancel("watch loop stopping")
            self._executor.shutdown(wait=True)
            self._set_state(WatchState.IDLE)
            logger.info("Watch loop stopped")

    def _wait_timeout(self) -> float:
        if self.state == WatchState.DEBOUNCING and self._deadline is not None:
            return max(0.0, self._deadline - time.monotonic())
        return 0.5

    def _on_change(self, event: ChangeEvent):
        state = self.state
        self._deadline = time.monotonic() + self.debounce

        if state == WatchState.IDLE:
            logger.info(f"Change in {event.path}; rebuilding in {int(self.debounce * 1000)} ms")
            self._set_state(WatchState.DEBOUNCING)
        elif state == WatchState.BUILDING:
            logger.info(f"Change in {event.path} during build; cancelling current cycle")
            if self._token is not None:
                self._token.cancel("superseded by a newer change")
            self._set_state(WatchState.CANCELLING)
        # DEBOUNCING and CANCELLING: the deadline reset is all there is to do

    def _maybe_start_cycle(self):
        if self.state != WatchState.DEBOUNCING or self._deadline is None:
            return
        if time.monotonic() < self._deadline:
            return

        self._deadline = None
        self._token = CancellationToken()
        self._set_state(WatchState.BUILDING)
        future = self._executor.submit(self._run_cycle, self._token)
        future.add_done_callback(lambda f: self.channel.put(_CycleFinished(f)))

    def _run_cycle(self, token: CancellationToken):
        try:
            return self.builder.build(self.source, token)
        except Exception:
            logger.exception("Build cycle crashed; waiting for the next change")
            return None

    def _on_cycle_finished(self, future: Future):
        report = future.result()
        self._token = None
        if report is not None:
            self.reports.append(report)
            if self.on_report:
                try:
                    self.on_report(report)
                except Exception:
                    logger.exception("Report callback failed")

        if self.state == WatchState.CANCELLING:
            self._set_state(WatchState.DEBOUNCING)
        else:
            self._set_state(WatchState.IDLE)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, initial_build: bool = True, observe: bool = True) -> bool:
        """
        Start the coordinator thread (and the file-system observer).

        Args:
            initial_build: Queue a build right away
            observe: Watch the file system (tests drive ``notify`` instead)

        Returns:
            True if started
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Watch loop already running")
            return False

        self._stop_event.clear()
        if observe:
            handler = ChangeEventHandler(self.channel, self.ignore_patterns)
            self._observer = PollingObserver() if self.use_polling else Observer()
            self._observer.schedule(handler, str(self.root), recursive=True)
            self._observer.start()
            logger.info(f"Watching {self.root} for changes")

        self._thread = threading.Thread(
            target=self.run, args=(self._stop_event,), daemon=True, name="FastbeamWatchLoop",
        )
        self._thread.start()

        if initial_build:
            self.notify(str(self.source), "initial")
        return True

    def stop(self, timeout: float = 30.0):
        """Stop the observer and the coordinator (waits for a running cycle)."""
        self._stop_event.set()
        self.channel.put(_STOP)

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=timeout)
            self._observer = None

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Watch loop did not stop within timeout")
            self._thread = None

    def run_forever(self):
        """Start and block until interrupted (Ctrl-C)."""
        self.start()
        try:
            while self._thread is not None and self._thread.is_alive():
                self._thread.join(timeout=0.5)
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            self.stop()
