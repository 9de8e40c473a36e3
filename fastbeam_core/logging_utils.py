"""
Logging Utilities for fastbeam

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import json
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


class LogLevel(str, Enum):
    """Log levels for the build log."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


_LEVELS = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARNING, LogLevel.ERROR]


def setup_logging(verbose: bool = False, level: Optional[str] = None):
    """
    Configure console logging.

    Args:
        verbose: Force DEBUG level
        level: Level name used when not verbose (default INFO)
    """
    if verbose:
        resolved = logging.DEBUG
    else:
        resolved = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )
    # Filesystem event chatter
    logging.getLogger("watchdog").setLevel(max(resolved, logging.INFO))


class BuildLogger:
    """
    File-based record of build cycles.

    Logs are written to:
    - {log_dir}/builds.log - one human-readable line per cycle
    - {log_dir}/builds.jsonl - full cycle reports as JSON lines
    """

    def __init__(self, log_dir: Path, min_level: LogLevel = LogLevel.INFO):
        """
        Initialize build logger.

        Args:
            log_dir: Directory for log files
            min_level: Minimum log level to write
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.min_level = min_level

        self.text_log = self.log_dir / "builds.log"
        self.json_log = self.log_dir / "builds.jsonl"
        self._lock = threading.Lock()

    def _should_log(self, level: LogLevel) -> bool:
        return _LEVELS.index(level) >= _LEVELS.index(self.min_level)

    def log_text(self, line: str, level: LogLevel = LogLevel.INFO):
        """Append a timestamped line to the text log."""
        if not self._should_log(level):
            return

        timestamp = datetime.now(timezone.utc).isoformat()
        with self._lock, self.text_log.open("a", encoding="utf-8") as f:
            f.write(f"[{timestamp}] [{level.value}] {line}\n")

    def log_jsonl(self, event_type: str, data: Dict[str, Any], level: LogLevel = LogLevel.INFO):
        """
        Append a structured event to the JSONL log.

        Args:
            event_type: Type of event (e.g. "cycle", "prune")
            data: Event data dictionary
            level: Log level
        """
        if not self._should_log(level):
            return

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.value,
            "type": event_type,
            "data": data,
        }
        with self._lock, self.json_log.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event, default=str) + "\n")

    def log_cycle(self, report: Dict[str, Any]):
        """Record one build cycle report in both logs."""
        status = report.get("status", "unknown")
        level = {
            "success": LogLevel.INFO,
            "partial": LogLevel.WARNING,
            "cancelled": LogLevel.INFO,
        }.get(status, LogLevel.ERROR)

        summary = (
            f"SOURCE='{report.get('source')}' STATUS={status} "
            f"UNITS={report.get('units', 0)} HITS={report.get('cache_hits', 0)} "
            f"BUILT={report.get('built', 0)} FAILED={report.get('failed', 0)} "
            f"DURATION={report.get('duration_ms', 0)}ms"
        )
        self.log_text(summary, level)
        self.log_jsonl("cycle", report, level)
