"""
Assembler - Produce the final document from per-unit artifacts

Two output modes:
- MERGE: every successful, non-empty artifact is merged in document order
  (completion order of the compile jobs is irrelevant here)
- FIRST_CHANGED: the output becomes a symlink to the artifact of the first
  unit that changed since the previous cycle (instant preview)

Failed units never discard the deck: their positions are reported and the
rest is merged. With zero usable artifacts no output is written.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import logging
import os
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .engine import MergeTool
from .types import BuildResult, Unit

logger = logging.getLogger(__name__)


class OutputMode(str, Enum):
    """How the final document is produced."""
    MERGE = "merge"
    FIRST_CHANGED = "first-changed"


@dataclass
class AssemblyReport:
    """Outcome of the assembly step."""
    mode: OutputMode
    output_path: Optional[Path] = None
    produced: bool = False
    included: List[int] = field(default_factory=list)
    empty: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    missing: List[int] = field(default_factory=list)
    target_unit: Optional[int] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "output_path": str(self.output_path) if self.output_path else None,
            "produced": self.produced,
            "included": self.included,
            "empty": self.empty,
            "failed": self.failed,
            "missing": self.missing,
            "target_unit": self.target_unit,
            "message": self.message,
        }


def _usable(result: Optional[BuildResult]) -> bool:
    return result is not None and result.success and result.artifact_path is not None and not result.is_empty


class Assembler:
    """
    Merge (or link) per-unit artifacts into the output document.
    """

    def __init__(self, merge_tool: Optional[MergeTool] = None, mode: OutputMode = OutputMode.MERGE):
        self.merge_tool = merge_tool or MergeTool()
        self.mode = OutputMode(mode)

    def assemble(
        self,
        units: Sequence[Unit],
        results: Mapping[int, BuildResult],
        output: Path,
        changed: Optional[Iterable[int]] = None,
    ) -> AssemblyReport:
        """
        Produce the output document.

        Args:
            units: Units in document order
            results: Build result per unit id
            output: Output document path
            changed: Ids of units whose fingerprint changed since the
                previous cycle, in document order (FIRST_CHANGED mode)

        Returns:
            AssemblyReport

        Raises:
            MergeError: The merge tool failed
            ToolUnavailableError: The merge tool cannot be executed
        """
        output = Path(output)
        report = AssemblyReport(mode=self.mode)

        for unit in units:
            result = results.get(unit.id)
            if result is None:
                report.missing.append(unit.id)
            elif not result.success:
                report.failed.append(unit.id)
            elif result.is_empty:
                report.empty.append(unit.id)
            else:
                report.included.append(unit.id)

        if self.mode == OutputMode.FIRST_CHANGED:
            return self._link_first_changed(units, results, output, changed, report)

        if not report.included:
            report.message = "no unit produced an artifact; output not written"
            logger.error(report.message)
            return report

        inputs = [results[uid].artifact_path for uid in report.included]
        self.merge_tool.merge(inputs, output)
        report.output_path = output
        report.produced = True

        positions = report.failed + report.missing
        if positions:
            report.message = (
                f"merged {len(report.included)} units; missing positions "
                f"{', '.join(str(p) for p in sorted(positions))}"
            )
            logger.warning(report.message)
        else:
            report.message = f"merged {len(report.included)} units"
        return report

    def _link_first_changed(
        self,
        units: Sequence[Unit],
        results: Mapping[int, BuildResult],
        output: Path,
        changed: Optional[Iterable[int]],
        report: AssemblyReport,
    ) -> AssemblyReport:
        changed_ids = list(changed or [])
        if os.path.lexists(output):
            # existing preview, relinked below if a changed unit built
            report.output_path = output
        if not changed_ids:
            report.message = "nothing changed; output left untouched"
            logger.info(report.message)
            return report

        target = next((uid for uid in changed_ids if _usable(results.get(uid))), None)
        if target is None:
            report.message = "no changed unit built successfully; output left untouched"
            logger.warning(report.message)
            return report

        artifact = results[target].artifact_path
        _replace_symlink(output, artifact)
        report.output_path = output
        report.produced = True
        report.target_unit = target
        label = next((u.label() for u in units if u.id == target), f"#{target}")
        report.message = f"output links to {label}"
        logger.info(report.message)
        return report


def _replace_symlink(link: Path, target: Path) -> None:
    """Point ``link`` at ``target`` atomically (temp link + rename)."""
    link.parent.mkdir(parents=True, exist_ok=True)
    tmp = link.parent / f".{link.name}.{uuid.uuid4().hex[:8]}.lnk"
    os.symlink(Path(target).resolve(), tmp)
    try:
        os.replace(tmp, link)
    except OSError:
        tmp.unlink()
        raise
