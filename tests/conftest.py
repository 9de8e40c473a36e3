"""
Pytest Configuration and Fixtures

Compile and merge steps run through small Python scripts under
tests/fixtures/ that mimic pdflatex and pdfunite, so the real subprocess
path is exercised without a TeX installation.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import sys
import tempfile
from pathlib import Path
from typing import Callable, Generator, List, Optional

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from fastbeam_core.artifact_cache import ArtifactCache  # noqa: E402
from fastbeam_core.engine import MergeTool, TransientCompileError, TypesettingEngine  # noqa: E402
from fastbeam_core.pipeline import IncrementalBuilder  # noqa: E402
from fastbeam_core.resilience import RetryConfig  # noqa: E402

FIXTURES = Path(__file__).parent / "fixtures"
FAKE_LATEX = FIXTURES / "fake_latex.py"
FAKE_UNITE = FIXTURES / "fake_unite.py"

PREAMBLE = r"""\documentclass{beamer}
\usetheme{Madrid}
\title{Incremental Decks}
"""


def deck_text(frames: List[str], preamble: str = PREAMBLE, extra_body: str = "") -> str:
    """Assemble a beamer document from frame bodies."""
    parts = [preamble, "\\begin{document}\n"]
    if extra_body:
        parts.append(extra_body + "\n")
    for i, body in enumerate(frames, 1):
        parts.append(f"\\begin{{frame}}{{Slide {i}}}\n{body}\n\\end{{frame}}\n\n")
    parts.append("\\end{document}\n")
    return "".join(parts)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_engine() -> TypesettingEngine:
    """Engine running the fake pdflatex script."""
    return TypesettingEngine(command=sys.executable, args=[str(FAKE_LATEX)], timeout=60)


@pytest.fixture
def fake_merge() -> MergeTool:
    """Merge tool running the fake pdfunite script."""
    return MergeTool(command=sys.executable, args=[str(FAKE_UNITE)], timeout=60)


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry once, almost without waiting."""
    return RetryConfig(
        max_attempts=2,
        base_delay=0.01,
        retry_on=(TransientCompileError,),
    )


@pytest.fixture
def cache(temp_dir: Path) -> ArtifactCache:
    return ArtifactCache(temp_dir / "cache")


@pytest.fixture
def write_deck(temp_dir: Path) -> Callable[..., Path]:
    """Write a deck into the temp dir and return its path."""
    def _write(frames: List[str], preamble: str = PREAMBLE, extra_body: str = "",
               name: str = "talk.tex") -> Path:
        path = temp_dir / name
        path.write_text(deck_text(frames, preamble, extra_body), encoding="utf-8")
        return path
    return _write


@pytest.fixture
def make_builder(cache, fake_engine, fake_merge, fast_retry) -> Callable[..., IncrementalBuilder]:
    """Factory for builders wired to the fake tools."""
    def _make(output: Optional[Path] = None, **kwargs) -> IncrementalBuilder:
        kwargs.setdefault("max_workers", 2)
        kwargs.setdefault("retry_config", fast_retry)
        return IncrementalBuilder(
            cache,
            engine=kwargs.pop("engine", fake_engine),
            merge_tool=kwargs.pop("merge_tool", fake_merge),
            output=output,
            **kwargs,
        )
    return _make
