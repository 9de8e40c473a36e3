"""
Tests for the Incremental Build Pipeline

End-to-end cycles with the fake engine and merge tool: parse, fingerprint,
schedule against the cache, assemble.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import json
import os
import sys
from concurrent.futures import ThreadPoolExecutor

import pytest

from fastbeam_core.assembler import OutputMode
from fastbeam_core.config import FastbeamConfig
from fastbeam_core.engine import MergeTool, TypesettingEngine
from fastbeam_core.logging_utils import BuildLogger
from fastbeam_core.pipeline import BuildExitCode, CycleStatus, IncrementalBuilder
from fastbeam_core.scheduler import CancellationToken

from conftest import FAKE_LATEX, FAKE_UNITE, PREAMBLE

FRAMES = ["FRAME-ONE", "FRAME-TWO", "FRAME-THREE"]


def _order(data, markers):
    """Positions of each marker in the merged output (-1 if absent)."""
    return [data.find(m.encode()) for m in markers]


class TestIncrementalCycles:
    """Tests for rebuilding only what changed."""

    def test_first_build(self, make_builder, write_deck):
        path = write_deck(FRAMES)
        report = make_builder().build(path)

        assert report.status == CycleStatus.SUCCESS
        assert report.exit_code == BuildExitCode.SUCCESS
        assert report.units == 3
        assert report.built == 3
        assert report.output_path == path.with_suffix(".pdf")
        positions = _order(report.output_path.read_bytes(), FRAMES)
        assert -1 not in positions
        assert positions == sorted(positions)

    def test_edit_one_frame(self, make_builder, write_deck):
        """Test editing F2 rebuilds only F2 and keeps the deck order."""
        builder = make_builder()
        path = write_deck(FRAMES)
        builder.build(path)

        write_deck(["FRAME-ONE", "FRAME-TWO-EDITED", "FRAME-THREE"])
        report = builder.build(path)

        assert report.dispatched == [1]
        assert report.cache_hits == 2
        assert report.changed == [1]
        data = report.output_path.read_bytes()
        positions = _order(data, ["FRAME-ONE", "FRAME-TWO-EDITED", "FRAME-THREE"])
        assert -1 not in positions
        assert positions == sorted(positions)

    def test_unchanged_rebuild_is_all_hits(self, make_builder, write_deck):
        builder = make_builder()
        path = write_deck(FRAMES)
        builder.build(path)
        report = builder.build(path)
        assert report.dispatched == []
        assert report.cache_hits == 3
        assert report.changed == []
        assert report.success

    def test_preamble_edit_rebuilds_all(self, make_builder, write_deck):
        builder = make_builder()
        path = write_deck(FRAMES)
        builder.build(path)

        write_deck(FRAMES, preamble=PREAMBLE + "\\author{Someone}\n")
        report = builder.build(path)
        assert report.dispatched == [0, 1, 2]
        assert report.cache_hits == 0

    def test_nested_include_edit_rebuilds(self, make_builder, write_deck, temp_dir):
        """Test editing a file included by an included file rebuilds the deck."""
        (temp_dir / "macros.tex").write_text("\\input{colors}\n", encoding="utf-8")
        (temp_dir / "colors.tex").write_text("% palette v1\n", encoding="utf-8")
        builder = make_builder()
        path = write_deck(["FRAME-ONE", "FRAME-TWO"], preamble=PREAMBLE + "\\input{macros}\n")
        builder.build(path)

        (temp_dir / "colors.tex").write_text("% palette v2\n", encoding="utf-8")
        report = builder.build(path)
        assert report.dispatched == [0, 1]
        assert report.cache_hits == 0

    def test_revert_hits_cache(self, make_builder, write_deck):
        """Test reverting an edit reuses the artifact built before the edit."""
        builder = make_builder()
        path = write_deck(FRAMES)
        builder.build(path)
        write_deck(["FRAME-ONE", "EDIT", "FRAME-THREE"])
        builder.build(path)

        write_deck(FRAMES)
        report = builder.build(path)
        assert report.dispatched == []
        assert report.cache_hits == 3
        assert report.changed == [1]

    def test_cache_shared_between_builders(self, make_builder, write_deck):
        """Test a fresh process (new builder) reuses the persistent cache."""
        path = write_deck(FRAMES)
        make_builder().build(path)
        report = make_builder().build(path)
        assert report.cache_hits == 3
        assert report.dispatched == []

    def test_overlapping_cycles_share_cache_safely(self, make_builder, write_deck, temp_dir, cache):
        """Test two concurrent cycles on one cache leave only complete entries."""
        path = write_deck(FRAMES)
        builders = [make_builder(output=temp_dir / f"out{i}.pdf") for i in range(2)]
        with ThreadPoolExecutor(max_workers=2) as pool:
            reports = list(pool.map(lambda b: b.build(path), builders))

        assert all(r.success for r in reports)
        assert all(not r.consistency_violations for r in reports)
        entries = list(cache.iter_entries())
        assert len(entries) == 3
        for entry in entries:
            assert cache.lookup(entry.fingerprint) is not None

    def test_explicit_output(self, make_builder, write_deck, temp_dir):
        path = write_deck(FRAMES)
        output = temp_dir / "out" / "slides.pdf"
        report = make_builder(output=output).build(path)
        assert report.output_path == output
        assert output.exists()


class TestFailureHandling:
    """Tests for exit codes and partial output."""

    def test_partial_failure(self, make_builder, write_deck):
        path = write_deck(["FRAME-ONE", "\\fastbeamfail", "FRAME-THREE"])
        report = make_builder().build(path)

        assert report.status == CycleStatus.PARTIAL
        assert report.exit_code == BuildExitCode.PARTIAL_SUCCESS
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure.unit_id == 1
        assert failure.kind == "frame"
        assert failure.line == path.read_text().splitlines().index("\\begin{frame}{Slide 2}") + 1
        assert "Undefined control sequence" in failure.diagnostic

        data = report.output_path.read_bytes()
        assert b"FRAME-ONE" in data and b"FRAME-THREE" in data

    def test_all_failed(self, make_builder, write_deck):
        path = write_deck(["\\fastbeamfail", "\\fastbeamfail x"])
        report = make_builder().build(path)
        assert report.status == CycleStatus.FAILED
        assert report.exit_code == BuildExitCode.FAILURE
        assert report.output_path is None
        assert not path.with_suffix(".pdf").exists()

    def test_engine_missing(self, make_builder, write_deck):
        path = write_deck(FRAMES)
        builder = make_builder(engine=TypesettingEngine(command="fastbeam-no-such-engine"))
        report = builder.build(path)

        assert report.status == CycleStatus.FAILED
        assert report.exit_code == BuildExitCode.TOOL_UNAVAILABLE
        assert "fastbeam-no-such-engine" in report.message
        assert not path.with_suffix(".pdf").exists()

    def test_merge_tool_missing(self, make_builder, write_deck):
        path = write_deck(FRAMES)
        report = make_builder(merge_tool=MergeTool(command="fastbeam-no-such-merger")).build(path)
        assert report.exit_code == BuildExitCode.TOOL_UNAVAILABLE
        assert report.built == 3

    def test_missing_source(self, make_builder, temp_dir):
        report = make_builder().build(temp_dir / "absent.tex")
        assert report.status == CycleStatus.FAILED
        assert "cannot read" in report.message

    def test_unparseable_deck_builds_whole(self, make_builder, temp_dir):
        """Test structural parse failure falls back to one whole-document unit."""
        path = temp_dir / "broken.tex"
        path.write_text(
            PREAMBLE + "\\begin{document}\n\\begin{frame}\nBROKEN {\n\\end{frame}\n\\end{document}\n",
            encoding="utf-8",
        )
        report = make_builder().build(path)

        assert report.fallback
        assert report.parse_diagnostics
        assert report.units == 1
        assert report.success
        assert b"BROKEN" in report.output_path.read_bytes()

    def test_cancelled_cycle(self, make_builder, write_deck):
        path = write_deck(FRAMES)
        token = CancellationToken()
        token.cancel("test")
        report = make_builder().build(path, token)

        assert report.status == CycleStatus.CANCELLED
        assert report.exit_code == BuildExitCode.CANCELLED
        assert not path.with_suffix(".pdf").exists()


class TestMaintenance:
    """Tests for pruning, logging and configuration wiring."""

    def test_prune_after_build(self, make_builder, write_deck, cache):
        builder = make_builder(prune_after_build=True)
        path = write_deck(FRAMES)
        builder.build(path)
        write_deck(["FRAME-ONE", "FRAME-TWO-EDITED", "FRAME-THREE"])
        report = builder.build(path)

        assert report.pruned == 1
        assert len(list(cache.iter_entries())) == 3

    def test_prune_respects_age(self, make_builder, write_deck, cache):
        builder = make_builder(prune_after_build=True, prune_older_than_days=30)
        path = write_deck(FRAMES)
        builder.build(path)
        write_deck(["FRAME-ONE", "FRAME-TWO-EDITED", "FRAME-THREE"])
        report = builder.build(path)

        assert report.pruned == 0
        assert len(list(cache.iter_entries())) == 4

    def test_build_log(self, make_builder, write_deck, temp_dir):
        logs = BuildLogger(temp_dir / "logs")
        path = write_deck(FRAMES)
        make_builder(build_logger=logs).build(path)

        lines = logs.json_log.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        event = json.loads(lines[0])
        assert event["type"] == "cycle"
        assert event["data"]["status"] == "success"
        assert "STATUS=success" in logs.text_log.read_text(encoding="utf-8")

    def test_progress_callback(self, make_builder, write_deck):
        seen = []
        path = write_deck(FRAMES)
        make_builder(progress_callback=lambda unit, result: seen.append((unit.id, result.success))).build(path)
        assert sorted(seen) == [(0, True), (1, True), (2, True)]

    def test_report_to_dict(self, make_builder, write_deck):
        path = write_deck(["FRAME-ONE", "\\fastbeamfail"])
        data = make_builder().build(path).to_dict()
        assert data["status"] == "partial"
        assert data["exit_code"] == 2
        assert data["failures"][0]["unit_id"] == 1
        json.dumps(data)

    def test_from_config(self, temp_dir, write_deck):
        config = FastbeamConfig()
        config.cache.dir = str(temp_dir / "cfg-cache")
        config.engine.command = sys.executable
        config.engine.args = [str(FAKE_LATEX)]
        config.merge.command = sys.executable
        config.merge.args = [str(FAKE_UNITE)]
        config.output.path = str(temp_dir / "from-config.pdf")
        config.scheduler.max_workers = 2

        builder = IncrementalBuilder.from_config(config)
        report = builder.build(write_deck(FRAMES))

        assert report.success
        assert (temp_dir / "from-config.pdf").exists()
        assert (temp_dir / "cfg-cache" / "logs" / "builds.jsonl").exists()

    def test_build_signature_includes_precompile(self, make_builder):
        assert make_builder().build_signature != make_builder(precompile_preamble=True).build_signature


@pytest.mark.skipif(os.name == "nt", reason="symlinks")
class TestFirstChangedOutput:
    def test_preview_follows_edits(self, make_builder, write_deck, temp_dir):
        output = temp_dir / "preview.pdf"
        builder = make_builder(output=output, mode=OutputMode.FIRST_CHANGED)
        path = write_deck(FRAMES)

        first = builder.build(path)
        assert first.success
        assert b"FRAME-ONE" in output.read_bytes()

        write_deck(["FRAME-ONE", "FRAME-TWO", "FRAME-THREE-EDITED"])
        builder.build(path)
        assert output.is_symlink()
        assert b"FRAME-THREE-EDITED" in output.read_bytes()

    def test_unchanged_rebuild_with_failure_is_partial(self, make_builder, write_deck, temp_dir):
        """Test a failing unit does not turn an unchanged preview cycle into a failure."""
        output = temp_dir / "preview.pdf"
        builder = make_builder(output=output, mode=OutputMode.FIRST_CHANGED)
        path = write_deck(["FRAME-ONE", "\\fastbeamfail", "FRAME-THREE"])

        first = builder.build(path)
        assert first.status == CycleStatus.PARTIAL

        second = builder.build(path)
        assert second.changed == []
        assert second.status == CycleStatus.PARTIAL
        assert second.exit_code == BuildExitCode.PARTIAL_SUCCESS
        assert second.output_path == output
        assert b"FRAME-ONE" in output.read_bytes()

    def test_only_changed_unit_fails_is_partial(self, make_builder, write_deck, temp_dir):
        output = temp_dir / "preview.pdf"
        builder = make_builder(output=output, mode=OutputMode.FIRST_CHANGED)
        path = write_deck(FRAMES)
        builder.build(path)

        write_deck(["FRAME-ONE", "\\fastbeamfail", "FRAME-THREE"])
        report = builder.build(path)
        assert report.status == CycleStatus.PARTIAL
        assert report.failures[0].unit_id == 1
        assert b"FRAME-ONE" in output.read_bytes()

    def test_everything_failed_is_failure(self, make_builder, write_deck, temp_dir):
        builder = make_builder(output=temp_dir / "preview.pdf", mode=OutputMode.FIRST_CHANGED)
        report = builder.build(write_deck(["\\fastbeamfail", "\\fastbeamfail x"]))
        assert report.status == CycleStatus.FAILED
        assert report.exit_code == BuildExitCode.FAILURE
