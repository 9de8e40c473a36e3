"""
Build Scheduler - Parallel compilation of stale units

For each unit the cache is consulted first; only misses are compiled.
Compile jobs run on a bounded thread pool, one engine subprocess per
worker. Jobs are dispatched in document order and never more than the
pool can run at once, so the cancellation token is honoured between job
boundaries: already-running jobs finish (and are cached), the rest of the
queue is dropped.

Units sharing a fingerprint (e.g. two identical frames) are compiled once.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import logging
import os
import shutil
import tempfile
import threading
import time
from collections import OrderedDict, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .artifact_cache import ArtifactCache, CacheConsistencyError
from .engine import (
    ToolUnavailableError,
    TransientCompileError,
    TypesettingEngine,
    materialize,
)
from .resilience import RetryConfig, retry_call
from .types import BuildResult, Document, SpanKind, Unit, UnitStatus

logger = logging.getLogger(__name__)


ProgressCallback = Callable[[Unit, BuildResult], None]


def default_workers() -> int:
    return os.cpu_count() or 1


def default_retry_config() -> RetryConfig:
    """One retry with backoff, transient failures only."""
    return RetryConfig(
        max_attempts=2,
        base_delay=0.5,
        retry_on=(TransientCompileError,),
    )


class CancellationToken:
    """
    Cooperative cancellation flag shared by a cycle and its canceller.

    Checked by the scheduler before each dispatch and by the pipeline
    before assembly. Never interrupts a running subprocess.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class ScheduleReport:
    """What the scheduler did in one cycle."""
    results: Dict[int, BuildResult] = field(default_factory=dict)
    dispatched: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    cache_hits: int = 0
    jobs: int = 0
    cancelled: bool = False
    format_name: Optional[str] = None
    consistency_violations: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def built(self) -> int:
        return sum(1 for r in self.results.values() if r.success and not r.from_cache)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results.values() if not r.success)

    def ordered_results(self, units: List[Unit]) -> List[Optional[BuildResult]]:
        """Results in document order (None for units never resolved)."""
        return [self.results.get(u.id) for u in units]


class BuildScheduler:
    """
    Resolve every unit of a document to an artifact or a failure.

    Usage:
        scheduler = BuildScheduler(cache, TypesettingEngine(), max_workers=4)
        report = scheduler.run(document)
    """

    def __init__(
        self,
        cache: ArtifactCache,
        engine: TypesettingEngine,
        max_workers: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
        precompile_preamble: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            cache: Artifact cache
            engine: Typesetting engine
            max_workers: Pool size (defaults to the CPU count)
            retry_config: Retry policy for transient failures
            precompile_preamble: Dump the preamble into a format first
            progress_callback: Called with (unit, result) as units resolve
        """
        self.cache = cache
        self.engine = engine
        self.max_workers = max(1, max_workers or default_workers())
        self.retry_config = retry_config or default_retry_config()
        self.precompile_preamble = precompile_preamble
        self.progress_callback = progress_callback

        self.build_root = cache.cache_dir / "build"
        self.formats_dir = cache.cache_dir / "formats"

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def run(self, document: Document, token: Optional[CancellationToken] = None) -> ScheduleReport:
        """
        Resolve all units of a fingerprinted document.

        Args:
            document: Parsed and fingerprinted document
            token: Cancellation token (optional)

        Returns:
            ScheduleReport

        Raises:
            ToolUnavailableError: The engine cannot be executed; raised
                before any job is dispatched
        """
        token = token or CancellationToken()
        start = time.time()
        report = ScheduleReport()

        with self.cache.build_session():
            jobs: "OrderedDict[str, List[Unit]]" = OrderedDict()
            for unit in document.units:
                path = self.cache.lookup(unit.fingerprint)
                if path is not None:
                    unit.status = UnitStatus.UNCHANGED
                    unit.artifact_path = path
                    result = BuildResult(
                        unit_id=unit.id,
                        fingerprint=unit.fingerprint,
                        success=True,
                        artifact_path=path,
                        from_cache=True,
                    )
                    report.results[unit.id] = result
                    report.cache_hits += 1
                    self._notify(unit, result)
                else:
                    unit.status = UnitStatus.STALE
                    jobs.setdefault(unit.fingerprint, []).append(unit)

            report.jobs = len(jobs)
            logger.info(
                f"{len(document.units)} units: {report.cache_hits} cached, "
                f"{sum(len(u) for u in jobs.values())} stale ({len(jobs)} jobs)"
            )

            if jobs:
                self.engine.check_available()
                if self.precompile_preamble and not document.fallback:
                    report.format_name = self._prepare_format(document)
                self._dispatch(document, jobs, token, report)

        report.cancelled = token.is_cancelled
        report.duration_ms = int((time.time() - start) * 1000)
        return report

    def _dispatch(
        self,
        document: Document,
        jobs: "OrderedDict[str, List[Unit]]",
        token: CancellationToken,
        report: ScheduleReport,
    ) -> None:
        """Run jobs on the pool, at most ``max_workers`` in flight."""
        queue: Deque[Tuple[str, List[Unit]]] = deque(jobs.items())
        in_flight: Dict[Future, Tuple[str, List[Unit]]] = {}
        tool_error: Optional[ToolUnavailableError] = None

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="fastbeam-compile"
        ) as executor:
            while queue or in_flight:
                while queue and len(in_flight) < self.max_workers:
                    if token.is_cancelled or tool_error is not None:
                        break
                    fp, units = queue.popleft()
                    for unit in units:
                        unit.status = UnitStatus.BUILDING
                    report.dispatched.extend(u.id for u in units)
                    logger.debug(f"Dispatching {units[0].label()}")
                    future = executor.submit(
                        self._compile_unit, document, units[0], report.format_name
                    )
                    in_flight[future] = (fp, units)

                if queue and (token.is_cancelled or tool_error is not None):
                    dropped = [u.id for _, units in queue for u in units]
                    report.skipped.extend(dropped)
                    queue.clear()
                    if token.is_cancelled:
                        logger.info(f"Cycle cancelled: {len(dropped)} units not dispatched")

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    fp, units = in_flight.pop(future)
                    try:
                        result = future.result()
                    except ToolUnavailableError as e:
                        tool_error = tool_error or e
                        result = BuildResult(
                            unit_id=units[0].id, fingerprint=fp, success=False,
                            diagnostic=str(e),
                        )
                    except CacheConsistencyError as e:
                        result = self._consistency_violation(units[0], e, report)
                    except Exception as e:
                        logger.exception(f"{units[0].label()}: compile job crashed")
                        result = BuildResult(
                            unit_id=units[0].id, fingerprint=fp, success=False,
                            diagnostic=f"internal error: {e}",
                        )
                    self._record(units, result, report)

        if tool_error is not None:
            raise tool_error

    def _record(self, units: List[Unit], result: BuildResult, report: ScheduleReport) -> None:
        for unit in units:
            unit_result = replace(result, unit_id=unit.id)
            unit.status = UnitStatus.BUILT if unit_result.success else UnitStatus.FAILED
            unit.artifact_path = unit_result.artifact_path
            report.results[unit.id] = unit_result
            if unit_result.success:
                logger.info(f"Built {unit.label()} in {unit_result.duration_ms} ms")
            else:
                logger.warning(f"Failed {unit.label()}: {_first_line(unit_result.diagnostic)}")
            self._notify(unit, unit_result)

    def _consistency_violation(
        self, unit: Unit, error: CacheConsistencyError, report: ScheduleReport
    ) -> BuildResult:
        """The existing artifact stays authoritative; the violation is reported."""
        logger.error(f"CACHE CONSISTENCY VIOLATION for {unit.label()}: {error}")
        report.consistency_violations.append(str(error))
        existing = self.cache.lookup(unit.fingerprint)
        return BuildResult(
            unit_id=unit.id,
            fingerprint=unit.fingerprint,
            success=existing is not None,
            artifact_path=existing,
            diagnostic=str(error),
        )

    def _notify(self, unit: Unit, result: BuildResult) -> None:
        if self.progress_callback:
            self.progress_callback(unit, result)

    # -------------------------------------------------------------------------
    # Jobs (worker threads)
    # -------------------------------------------------------------------------

    def _prepare_format(self, document: Document) -> Optional[str]:
        name = f"fb-{document.preamble_fingerprint[:16]}"
        try:
            return self.engine.precompile_preamble(
                document.preamble_text, name, self.formats_dir, document.source_dir
            )
        except ToolUnavailableError:
            raise
        except OSError as e:
            logger.warning(f"Preamble precompilation unavailable: {e}")
            return None

    def _compile_unit(self, document: Document, unit: Unit, format_name: Optional[str]) -> BuildResult:
        """Compile one unit and store its artifact (runs in a worker thread)."""
        start = time.time()
        attempts = 0
        source = materialize(unit, document.preamble_text, format_name)
        env_extra = self.engine.format_env(self.formats_dir) if format_name else None

        self.build_root.mkdir(parents=True, exist_ok=True)
        build_dir = Path(tempfile.mkdtemp(prefix=f"{unit.fingerprint[:12]}-", dir=self.build_root))
        jobname = f"unit-{unit.fingerprint[:16]}"

        def attempt():
            nonlocal attempts
            attempts += 1
            return self.engine.compile(source, jobname, build_dir, document.source_dir, env_extra)

        def elapsed() -> int:
            return int((time.time() - start) * 1000)

        try:
            try:
                outcome = retry_call(attempt, config=self.retry_config)
            except TransientCompileError as e:
                return BuildResult(
                    unit_id=unit.id, fingerprint=unit.fingerprint, success=False,
                    diagnostic=f"transient failure after {attempts} attempts: {e}",
                    attempts=attempts, duration_ms=elapsed(),
                )

            if not outcome.success:
                return BuildResult(
                    unit_id=unit.id, fingerprint=unit.fingerprint, success=False,
                    diagnostic=outcome.diagnostic, returncode=outcome.returncode,
                    attempts=attempts, duration_ms=elapsed(),
                )

            # A unit without pages is cached as an empty artifact
            data = outcome.output_path.read_bytes() if outcome.output_path else b""
            if unit.kind == SpanKind.FRAME and not data:
                logger.warning(f"{unit.label()} produced no pages")
            path = self.cache.store(unit.fingerprint, data)
            return BuildResult(
                unit_id=unit.id, fingerprint=unit.fingerprint, success=True,
                artifact_path=path, returncode=outcome.returncode,
                attempts=attempts, duration_ms=elapsed(),
            )
        finally:
            shutil.rmtree(build_dir, ignore_errors=True)


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return "no diagnostic"
