"""
Tests for the Watch Loop

The state machine is driven through ``notify`` with a scripted builder;
one test runs the real polling observer against the fake engine.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import queue
import threading
import time

import pytest
from watchdog.events import DirModifiedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from fastbeam_core.watch import (
    ChangeEvent,
    ChangeEventHandler,
    WatchLoop,
    WatchState,
    should_ignore,
)


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class ScriptedBuilder:
    """Builder stand-in recording calls; optionally blocks until cancelled."""

    def __init__(self, block_first=False, fail_first=False):
        self.block_first = block_first
        self.fail_first = fail_first
        self.tokens = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    @property
    def calls(self):
        with self._lock:
            return len(self.tokens)

    def build(self, source, token):
        with self._lock:
            self.tokens.append(token)
            n = len(self.tokens)
        self.started.set()
        if n == 1 and self.fail_first:
            raise RuntimeError("builder exploded")
        if n == 1 and self.block_first:
            token.wait(10)
        return {"cycle": n, "cancelled": token.is_cancelled}


@pytest.fixture
def loop_factory(temp_dir):
    loops = []

    def _make(builder, debounce_ms=100, **kwargs):
        loop = WatchLoop(builder, temp_dir / "talk.tex", debounce_ms=debounce_ms, **kwargs)
        loops.append(loop)
        return loop

    yield _make
    for loop in loops:
        loop.stop(timeout=10)


class TestStateMachine:
    """Tests for debouncing and cancellation."""

    def test_debounce_coalesces_changes(self, loop_factory):
        """Test a burst of notifications produces a single cycle."""
        builder = ScriptedBuilder()
        loop = loop_factory(builder, debounce_ms=150)
        loop.start(initial_build=False, observe=False)

        for _ in range(5):
            loop.notify("talk.tex")
            time.sleep(0.02)

        assert wait_for(lambda: loop.cycles == 1)
        time.sleep(0.4)
        assert builder.calls == 1
        assert wait_for(lambda: loop.state == WatchState.IDLE)

    def test_initial_build(self, loop_factory):
        builder = ScriptedBuilder()
        loop = loop_factory(builder, debounce_ms=0)
        loop.start(initial_build=True, observe=False)
        assert wait_for(lambda: loop.cycles == 1)

    def test_change_during_build_cancels_and_rebuilds(self, loop_factory):
        """Test BUILDING -> CANCELLING -> DEBOUNCING -> BUILDING."""
        builder = ScriptedBuilder(block_first=True)
        loop = loop_factory(builder, debounce_ms=50)
        loop.start(initial_build=False, observe=False)

        loop.notify("talk.tex")
        assert builder.started.wait(5)
        assert wait_for(lambda: loop.state == WatchState.BUILDING)

        loop.notify("talk.tex")
        assert wait_for(lambda: builder.calls == 2)
        assert wait_for(lambda: loop.cycles == 2)

        assert builder.tokens[0].is_cancelled
        assert not builder.tokens[1].is_cancelled
        assert loop.reports[0]["cancelled"]
        history = list(loop.state_history)
        i = history.index(WatchState.CANCELLING)
        assert history[i + 1] == WatchState.DEBOUNCING
        assert WatchState.BUILDING in history[i + 2:]

    def test_survives_builder_crash(self, loop_factory):
        """Test the loop keeps watching after a cycle raises."""
        builder = ScriptedBuilder(fail_first=True)
        loop = loop_factory(builder, debounce_ms=20)
        loop.start(initial_build=False, observe=False)

        loop.notify("talk.tex")
        assert wait_for(lambda: builder.calls == 1)
        assert wait_for(lambda: loop.state == WatchState.IDLE)
        assert loop.cycles == 0

        loop.notify("talk.tex")
        assert wait_for(lambda: loop.cycles == 1)
        assert loop.reports[0]["cycle"] == 2

    def test_on_report_callback(self, loop_factory):
        seen = []
        loop = loop_factory(ScriptedBuilder(), debounce_ms=0, on_report=seen.append)
        loop.start(initial_build=True, observe=False)
        assert wait_for(lambda: len(seen) == 1)

    def test_stop_is_idempotent(self, loop_factory):
        loop = loop_factory(ScriptedBuilder())
        loop.start(initial_build=False, observe=False)
        loop.stop(timeout=5)
        loop.stop(timeout=5)
        assert loop.state == WatchState.IDLE


class TestEventFiltering:
    """Tests for ignore patterns and watchdog event translation."""

    def test_should_ignore(self):
        patterns = ["*.aux", "*/.git/*", ".*.swp"]
        assert should_ignore("/deck/talk.aux", patterns)
        assert should_ignore("/deck/.git/HEAD", patterns)
        assert should_ignore("/deck/.talk.tex.swp", patterns)
        assert not should_ignore("/deck/talk.tex", patterns)

    def test_handler_forwards_files_only(self):
        channel = queue.Queue()
        handler = ChangeEventHandler(channel, ["*.log"])

        handler.on_modified(FileModifiedEvent("/deck/talk.tex"))
        handler.on_modified(DirModifiedEvent("/deck"))
        handler.on_created(FileCreatedEvent("/deck/talk.log"))
        handler.on_moved(FileMovedEvent("/deck/.talk.tex.tmp", "/deck/talk.tex"))

        events = []
        while not channel.empty():
            events.append(channel.get_nowait())
        assert [(e.path, e.kind) for e in events] == [
            ("/deck/talk.tex", "modified"),
            ("/deck/talk.tex", "moved"),
        ]
        assert all(isinstance(e, ChangeEvent) for e in events)

    def test_builder_outputs_are_ignored(self, make_builder, temp_dir):
        """Test the loop never reacts to its own output or cache writes."""
        builder = make_builder()
        loop = WatchLoop(builder, temp_dir / "talk.tex")
        output = str((temp_dir / "talk.pdf").resolve())
        cached = str((builder.cache.cache_dir / "artifacts" / "ab" / "x.pdf").resolve())

        assert should_ignore(output, loop.ignore_patterns)
        assert should_ignore(cached, loop.ignore_patterns)
        assert not should_ignore(str((temp_dir / "talk.tex").resolve()), loop.ignore_patterns)


class TestWatchIntegration:
    def test_edit_triggers_incremental_rebuild(self, make_builder, write_deck):
        """Test a saved edit is picked up and only the edited frame rebuilt."""
        path = write_deck(["FRAME-ONE", "FRAME-TWO"])
        builder = make_builder()
        loop = WatchLoop(builder, path, debounce_ms=100, use_polling=True)
        loop.start(initial_build=True, observe=True)
        try:
            assert wait_for(lambda: loop.cycles >= 1, timeout=15)
            assert loop.reports[0].built == 2

            time.sleep(0.2)
            write_deck(["FRAME-ONE", "FRAME-TWO-EDITED"])
            assert wait_for(lambda: any(r.dispatched == [1] for r in loop.reports), timeout=15)
            assert all(r.success for r in loop.reports)
        finally:
            loop.stop(timeout=15)
