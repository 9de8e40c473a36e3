"""
fastbeam Types - Data model shared by the incremental build engine

A Document is rebuilt from source text on every cycle: one optional
preamble span and an ordered list of Units. Units carry the fingerprint
that keys the artifact cache; positions (``id``) are only meaningful
within a single parse.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class SpanKind(str, Enum):
    """Kinds of top-level spans produced by the structural parser."""
    PREAMBLE = "preamble"
    FRAME = "frame"
    OTHER = "other"
    DOCUMENT = "document"  # whole-document fallback unit


class UnitStatus(str, Enum):
    """Lifecycle of a unit within one build cycle."""
    UNCHANGED = "unchanged"
    STALE = "stale"
    BUILDING = "building"
    BUILT = "built"
    FAILED = "failed"


@dataclass(frozen=True)
class Span:
    """A typed range of the source document.

    Attributes:
        kind: Span kind
        start: Start offset (characters) in the document text
        end: End offset (exclusive)
        text: The exact source text ``document[start:end]``
        line: 1-based line number of ``start``
        dependencies: Include declarations found in the span, as
            ``(command, name)`` pairs in source order
    """
    kind: SpanKind
    start: int
    end: int
    text: str
    line: int = 1
    dependencies: Tuple[Tuple[str, str], ...] = ()


@dataclass
class Unit:
    """One independently compilable slide-sized segment."""
    id: int
    kind: SpanKind
    span: Span
    fingerprint: str = ""
    dependency_hashes: Tuple[str, ...] = ()
    status: UnitStatus = UnitStatus.STALE
    artifact_path: Optional[Path] = None

    @property
    def text(self) -> str:
        return self.span.text

    @property
    def line(self) -> int:
        return self.span.line

    def label(self) -> str:
        """Short human-readable identity used in logs and reports."""
        return f"#{self.id} {self.kind.value} (line {self.line})"


@dataclass
class Document:
    """A parsed and fingerprinted source document."""
    path: Optional[Path]
    text: str
    preamble: Optional[Span]
    units: List[Unit] = field(default_factory=list)
    preamble_fingerprint: str = ""
    diagnostics: List[str] = field(default_factory=list)
    fallback: bool = False

    @property
    def preamble_text(self) -> str:
        return self.preamble.text if self.preamble else ""

    @property
    def source_dir(self) -> Path:
        if self.path is not None:
            return Path(self.path).resolve().parent
        return Path.cwd()

    def fingerprints(self) -> List[str]:
        """Unit fingerprints in document order."""
        return [u.fingerprint for u in self.units]


@dataclass
class BuildResult:
    """Outcome of resolving one unit: cache hit, fresh compile, or failure."""
    unit_id: int
    fingerprint: str
    success: bool
    artifact_path: Optional[Path] = None
    diagnostic: str = ""
    returncode: Optional[int] = None
    attempts: int = 0
    duration_ms: int = 0
    from_cache: bool = False

    @property
    def is_empty(self) -> bool:
        """True when the unit compiled to no pages."""
        if not self.success or self.artifact_path is None:
            return False
        try:
            return self.artifact_path.stat().st_size == 0
        except OSError:
            return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "fingerprint": self.fingerprint,
            "success": self.success,
            "artifact_path": str(self.artifact_path) if self.artifact_path else None,
            "diagnostic": self.diagnostic,
            "returncode": self.returncode,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "from_cache": self.from_cache,
        }
