"""
Incremental Build Pipeline - One build cycle, end to end

    source text -> parse -> fingerprint -> schedule (cache + engine) -> assemble

The builder keeps the fingerprints of the last completed cycle per source
so that the FIRST_CHANGED output mode knows which unit was just edited.
Everything else is recomputed from the source text on every cycle.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .artifact_cache import ArtifactCache
from .assembler import Assembler, AssemblyReport, OutputMode
from .config import FastbeamConfig
from .engine import (
    MergeError,
    MergeTool,
    ToolUnavailableError,
    TransientCompileError,
    TypesettingEngine,
)
from .fingerprint import fingerprint_document
from .logging_utils import BuildLogger
from .parsing import parse_document
from .resilience import RetryConfig
from .scheduler import BuildScheduler, CancellationToken, ProgressCallback, ScheduleReport
from .types import Document

logger = logging.getLogger(__name__)


class BuildExitCode(int, Enum):
    """Process exit codes for build invocations."""

    SUCCESS = 0
    FAILURE = 1
    PARTIAL_SUCCESS = 2
    CONFIGURATION_ERROR = 10
    TOOL_UNAVAILABLE = 20
    CANCELLED = 30


class CycleStatus(str, Enum):
    """Overall outcome of one build cycle."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


_EXIT_CODES = {
    CycleStatus.SUCCESS: BuildExitCode.SUCCESS,
    CycleStatus.PARTIAL: BuildExitCode.PARTIAL_SUCCESS,
    CycleStatus.FAILED: BuildExitCode.FAILURE,
    CycleStatus.CANCELLED: BuildExitCode.CANCELLED,
}


@dataclass
class UnitFailure:
    """A unit that could not be built, with where it lives in the source."""
    unit_id: int
    kind: str
    line: int
    diagnostic: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "kind": self.kind,
            "line": self.line,
            "diagnostic": self.diagnostic,
        }


@dataclass
class CycleReport:
    """Result of one build cycle."""

    source: Path
    status: CycleStatus = CycleStatus.SUCCESS
    exit_code: BuildExitCode = BuildExitCode.SUCCESS
    units: int = 0
    cache_hits: int = 0
    built: int = 0
    failed: int = 0
    skipped: int = 0
    dispatched: List[int] = field(default_factory=list)
    changed: List[int] = field(default_factory=list)
    failures: List[UnitFailure] = field(default_factory=list)
    output_path: Optional[Path] = None
    parse_diagnostics: List[str] = field(default_factory=list)
    fallback: bool = False
    consistency_violations: List[str] = field(default_factory=list)
    pruned: int = 0
    message: str = ""
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == CycleStatus.SUCCESS

    def finish(self, status: CycleStatus, message: str = "",
               exit_code: Optional[BuildExitCode] = None) -> "CycleReport":
        self.status = status
        self.exit_code = exit_code if exit_code is not None else _EXIT_CODES[status]
        if message:
            self.message = message
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "source": str(self.source),
            "status": self.status.value,
            "exit_code": int(self.exit_code),
            "units": self.units,
            "cache_hits": self.cache_hits,
            "built": self.built,
            "failed": self.failed,
            "skipped": self.skipped,
            "dispatched": self.dispatched,
            "changed": self.changed,
            "failures": [f.to_dict() for f in self.failures],
            "output_path": str(self.output_path) if self.output_path else None,
            "parse_diagnostics": self.parse_diagnostics,
            "fallback": self.fallback,
            "consistency_violations": self.consistency_violations,
            "pruned": self.pruned,
            "message": self.message,
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
        }


class IncrementalBuilder:
    """
    Drives build cycles for one or more source documents.

    Usage:
        builder = IncrementalBuilder.from_config(load_config())
        report = builder.build(Path("talk.tex"))
        sys.exit(report.exit_code)
    """

    def __init__(
        self,
        cache: ArtifactCache,
        engine: Optional[TypesettingEngine] = None,
        merge_tool: Optional[MergeTool] = None,
        output: Optional[Path] = None,
        mode: OutputMode = OutputMode.MERGE,
        max_workers: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
        precompile_preamble: bool = False,
        prune_after_build: bool = False,
        prune_older_than_days: Optional[float] = None,
        build_logger: Optional[BuildLogger] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """
        Initialize the builder.

        Args:
            cache: Artifact cache shared by all cycles
            engine: Typesetting engine (pdflatex by default)
            merge_tool: Merge tool (pdfunite by default)
            output: Output path (defaults to the source with a .pdf suffix)
            mode: Output mode
            max_workers: Compile pool size
            retry_config: Retry policy for transient compile failures
            precompile_preamble: Dump the preamble into a format file
            prune_after_build: Prune unreferenced entries after each cycle
            prune_older_than_days: Age threshold for pruning
            build_logger: Optional persistent cycle log
            progress_callback: Called as each unit resolves
        """
        self.cache = cache
        self.engine = engine or TypesettingEngine()
        self.output = Path(output) if output else None
        self.mode = OutputMode(mode)
        self.precompile_preamble = precompile_preamble
        self.prune_after_build = prune_after_build
        self.prune_older_than_days = prune_older_than_days
        self.build_logger = build_logger

        self.scheduler = BuildScheduler(
            cache,
            self.engine,
            max_workers=max_workers,
            retry_config=retry_config,
            precompile_preamble=precompile_preamble,
            progress_callback=progress_callback,
        )
        self.assembler = Assembler(merge_tool or MergeTool(), self.mode)

        self._previous: Dict[Path, Set[str]] = {}
        self._previous_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: FastbeamConfig,
        output: Optional[Path] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> "IncrementalBuilder":
        """Build an IncrementalBuilder from a loaded configuration."""
        cache = ArtifactCache(config.cache_dir())
        engine = TypesettingEngine(
            command=config.engine.command,
            args=config.engine.args,
            passes=config.engine.passes,
            timeout=config.engine.timeout,
        )
        merge_tool = MergeTool(
            command=config.merge.command,
            args=config.merge.args,
            timeout=config.merge.timeout,
        )
        retry_config = RetryConfig(
            max_attempts=config.scheduler.retry_attempts,
            base_delay=config.scheduler.retry_base_delay,
            retry_on=(TransientCompileError,),
        )
        build_logger = BuildLogger(cache.cache_dir / "logs") if config.logging.build_log else None
        if output is None and config.output.path:
            output = Path(config.output.path).expanduser()

        return cls(
            cache,
            engine=engine,
            merge_tool=merge_tool,
            output=output,
            mode=OutputMode(config.output.mode),
            max_workers=config.scheduler.max_workers,
            retry_config=retry_config,
            precompile_preamble=config.engine.precompile_preamble,
            prune_after_build=config.cache.prune_after_build,
            prune_older_than_days=config.cache.prune_older_than_days,
            build_logger=build_logger,
            progress_callback=progress_callback,
        )

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    @property
    def build_signature(self) -> str:
        return f"{self.engine.build_signature()}\x1fprecompile={self.precompile_preamble}"

    def output_for(self, source: Path) -> Path:
        """Output path for a source document."""
        if self.output is not None:
            return self.output
        return Path(source).with_suffix(".pdf")

    def prepare(self, source: Path, text: str) -> Document:
        """Parse and fingerprint document text."""
        document = parse_document(text, Path(source))
        return fingerprint_document(document, self.build_signature)

    def build(self, source: Path, token: Optional[CancellationToken] = None) -> CycleReport:
        """
        Run one complete build cycle.

        Args:
            source: Source document path
            token: Cancellation token (checked before dispatches and assembly)

        Returns:
            CycleReport (never raises for build outcomes)
        """
        source = Path(source)
        token = token or CancellationToken()
        start = time.time()
        report = CycleReport(source=source)

        try:
            self._run_cycle(source, token, report)
        finally:
            report.duration_ms = int((time.time() - start) * 1000)
            self._log_report(report)

        return report

    def _run_cycle(self, source: Path, token: CancellationToken, report: CycleReport) -> None:
        try:
            text = source.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            report.finish(CycleStatus.FAILED, f"cannot read {source}: {e}")
            logger.error(report.message)
            return

        document = self.prepare(source, text)
        report.units = len(document.units)
        report.parse_diagnostics = list(document.diagnostics)
        report.fallback = document.fallback

        with self._previous_lock:
            previous = self._previous.get(source.resolve(), set())
        report.changed = [u.id for u in document.units if u.fingerprint not in previous]

        if token.is_cancelled:
            report.finish(CycleStatus.CANCELLED, "cancelled before dispatch")
            return

        # Cache hits must stay on disk until they are merged
        with self.cache.build_session():
            assembly = self._schedule_and_assemble(source, document, token, report)
        if assembly is None:
            return

        self._conclude(report, assembly)

        with self._previous_lock:
            self._previous[source.resolve()] = set(document.fingerprints())

        if self.prune_after_build:
            older_than = (
                self.prune_older_than_days * 86400
                if self.prune_older_than_days is not None else None
            )
            report.pruned = self.cache.prune(keep=document.fingerprints(), older_than=older_than)

    def _schedule_and_assemble(
        self,
        source: Path,
        document: Document,
        token: CancellationToken,
        report: CycleReport,
    ) -> Optional[AssemblyReport]:
        """Compile stale units and assemble; None when the cycle ended early (report finished)."""
        try:
            schedule = self.scheduler.run(document, token)
        except ToolUnavailableError as e:
            report.finish(
                CycleStatus.FAILED,
                f"typesetting engine unavailable: {e}",
                BuildExitCode.TOOL_UNAVAILABLE,
            )
            logger.error(report.message)
            return None

        self._collect(document, schedule, report)

        if token.is_cancelled:
            report.finish(
                CycleStatus.CANCELLED,
                f"cancelled ({token.reason or 'superseded'}); assembly skipped",
            )
            logger.info(report.message)
            return None

        try:
            return self.assembler.assemble(
                document.units, schedule.results, self.output_for(source), report.changed
            )
        except ToolUnavailableError as e:
            report.finish(
                CycleStatus.FAILED, f"merge tool unavailable: {e}", BuildExitCode.TOOL_UNAVAILABLE
            )
        except MergeError as e:
            report.finish(CycleStatus.FAILED, f"merge failed: {e}")
        logger.error(report.message)
        return None

    def _collect(self, document: Document, schedule: ScheduleReport, report: CycleReport) -> None:
        report.cache_hits = schedule.cache_hits
        report.built = schedule.built
        report.failed = schedule.failed
        report.skipped = len(schedule.skipped)
        report.dispatched = list(schedule.dispatched)
        report.consistency_violations = list(schedule.consistency_violations)

        for unit in document.units:
            result = schedule.results.get(unit.id)
            if result is not None and not result.success:
                report.failures.append(UnitFailure(
                    unit_id=unit.id,
                    kind=unit.kind.value,
                    line=unit.line,
                    diagnostic=result.diagnostic,
                ))

    def _conclude(self, report: CycleReport, assembly: AssemblyReport) -> None:
        report.output_path = assembly.output_path
        # A preview link left untouched still shows a built unit
        usable = assembly.produced or (
            assembly.mode == OutputMode.FIRST_CHANGED and bool(assembly.included or assembly.empty)
        )
        if not report.failures:
            report.finish(CycleStatus.SUCCESS, assembly.message)
        elif usable:
            report.finish(CycleStatus.PARTIAL, assembly.message)
        else:
            report.finish(CycleStatus.FAILED, f"no output: {assembly.message}")

    def _log_report(self, report: CycleReport) -> None:
        logger.info(
            f"Cycle {report.status.value}: {report.units} units, {report.cache_hits} cached, "
            f"{report.built} built, {report.failed} failed in {report.duration_ms} ms"
        )
        for failure in report.failures:
            logger.warning(
                f"  unit #{failure.unit_id} ({failure.kind}, line {failure.line}) failed"
            )
        if self.build_logger is not None:
            try:
                self.build_logger.log_cycle(report.to_dict())
            except OSError as e:
                logger.warning(f"Cannot write build log: {e}")
