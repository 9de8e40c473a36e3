"""
fastbeam Core - Incremental build engine for beamer slide decks

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

from .version import __version__

from .types import (
    SpanKind,
    UnitStatus,
    Span,
    Unit,
    Document,
    BuildResult,
)
from .parsing import ParseFailure, parse_document, segment, find_dependencies
from .fingerprint import (
    DependencyResolver,
    fingerprint,
    fingerprint_document,
    preamble_fingerprint,
)
from .artifact_cache import ArtifactCache, CacheConsistencyError, CacheEntry, CacheStats
from .engine import (
    CompileOutcome,
    MergeError,
    MergeTool,
    ToolUnavailableError,
    TransientCompileError,
    TypesettingEngine,
    materialize,
)
from .resilience import RetryConfig, backoff_delay, retry_call
from .scheduler import BuildScheduler, CancellationToken, ScheduleReport
from .assembler import Assembler, AssemblyReport, OutputMode
from .pipeline import (
    BuildExitCode,
    CycleReport,
    CycleStatus,
    IncrementalBuilder,
    UnitFailure,
)
from .watch import ChangeEvent, ChangeEventHandler, WatchLoop, WatchState
from .config import ConfigError, FastbeamConfig, find_config_file, load_config
from .logging_utils import BuildLogger, setup_logging

__all__ = [
    "__version__",
    # Data model
    "SpanKind",
    "UnitStatus",
    "Span",
    "Unit",
    "Document",
    "BuildResult",
    # Parsing and fingerprinting
    "ParseFailure",
    "parse_document",
    "segment",
    "find_dependencies",
    "DependencyResolver",
    "fingerprint",
    "fingerprint_document",
    "preamble_fingerprint",
    # Cache
    "ArtifactCache",
    "CacheConsistencyError",
    "CacheEntry",
    "CacheStats",
    # External tools
    "CompileOutcome",
    "MergeError",
    "MergeTool",
    "ToolUnavailableError",
    "TransientCompileError",
    "TypesettingEngine",
    "materialize",
    # Retry
    "RetryConfig",
    "backoff_delay",
    "retry_call",
    # Build
    "BuildScheduler",
    "CancellationToken",
    "ScheduleReport",
    "Assembler",
    "AssemblyReport",
    "OutputMode",
    "BuildExitCode",
    "CycleReport",
    "CycleStatus",
    "IncrementalBuilder",
    "UnitFailure",
    # Watch
    "ChangeEvent",
    "ChangeEventHandler",
    "WatchLoop",
    "WatchState",
    # Config / logging
    "ConfigError",
    "FastbeamConfig",
    "find_config_file",
    "load_config",
    "BuildLogger",
    "setup_logging",
]
