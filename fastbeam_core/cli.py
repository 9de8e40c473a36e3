#!/usr/bin/env python3
"""
fastbeam Command Line Interface
===============================

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12

Usage:
    fastbeam build SOURCE      Incremental build of a beamer deck
    fastbeam watch SOURCE      Rebuild on every change until Ctrl-C
    fastbeam cache stats       Show artifact cache statistics
    fastbeam cache prune       Remove unreferenced/old cache entries
    fastbeam cache clear       Remove every cache entry
    fastbeam units SOURCE      List units and fingerprints
    fastbeam doctor            Check external tools and cache
    fastbeam config            Show the effective configuration
"""

import argparse
import json
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from .artifact_cache import ArtifactCache
from .config import ConfigError, FastbeamConfig, load_config
from .engine import MergeTool, ToolUnavailableError, TypesettingEngine
from .logging_utils import setup_logging
from .pipeline import BuildExitCode, CycleReport, IncrementalBuilder
from .version import get_short_banner, get_version
from .watch import WatchLoop

# =============================================================================
# ANSI Colors
# =============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    CYAN = '\033[0;36m'
    BOLD = '\033[1m'
    NC = '\033[0m'  # No Color

    @classmethod
    def disable(cls):
        """Disable colors (for non-TTY output)."""
        cls.RED = cls.GREEN = cls.YELLOW = cls.BLUE = ''
        cls.CYAN = cls.BOLD = cls.NC = ''


def print_ok(msg: str) -> None:
    print(f"{Colors.GREEN}✓{Colors.NC} {msg}")


def print_warn(msg: str) -> None:
    print(f"{Colors.YELLOW}⚠{Colors.NC} {msg}")


def print_error(msg: str) -> None:
    print(f"{Colors.RED}✗{Colors.NC} {msg}")


def print_info(msg: str) -> None:
    print(f"{Colors.BLUE}ℹ{Colors.NC} {msg}")


def print_header(msg: str) -> None:
    print(f"\n{Colors.BOLD}{Colors.CYAN}{msg}{Colors.NC}")
    print("=" * len(msg))


# =============================================================================
# Configuration
# =============================================================================

def _resolve_config(args: argparse.Namespace) -> FastbeamConfig:
    """Load config file + environment, then apply command-line flags."""
    source = getattr(args, "source", None)
    start = Path(source).resolve().parent if source else None
    config_path = Path(args.config) if getattr(args, "config", None) else None
    config = load_config(config_path, start_path=start)
    if not getattr(args, "verbose", False):
        logging.getLogger().setLevel(config.logging.level)

    if getattr(args, "cache_dir", None):
        config.cache.dir = args.cache_dir
    if getattr(args, "jobs", None) is not None:
        if args.jobs < 1:
            raise ConfigError(f"--jobs must be >= 1, got {args.jobs}")
        config.scheduler.max_workers = args.jobs
    if getattr(args, "mode", None):
        config.output.mode = args.mode
    if getattr(args, "engine", None):
        config.engine.command = args.engine
    if getattr(args, "precompile_preamble", False):
        config.engine.precompile_preamble = True
    if getattr(args, "debounce_ms", None) is not None:
        config.watch.debounce_ms = args.debounce_ms
    if getattr(args, "polling", False):
        config.watch.use_polling = True
    return config


def _print_report(report: CycleReport, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
        return

    summary = (
        f"{report.units} units | {report.cache_hits} cached | "
        f"{report.built} built | {report.failed} failed | {report.duration_ms} ms"
    )
    if report.fallback:
        print_warn("Structure not recognised, compiled as a single unit:")
        for diag in report.parse_diagnostics:
            print(f"    {diag}")

    if report.status.value == "success":
        print_ok(summary)
    elif report.status.value == "partial":
        print_warn(summary)
    elif report.status.value == "cancelled":
        print_info(summary)
    else:
        print_error(summary)

    for failure in report.failures:
        print_error(f"unit #{failure.unit_id} ({failure.kind}, line {failure.line})")
        for line in failure.diagnostic.strip().splitlines()[:12]:
            print(f"    {line}")
    for violation in report.consistency_violations:
        print_error(f"cache consistency violation: {violation}")

    if report.output_path:
        print_info(f"Output: {report.output_path}")
    elif report.message:
        print_info(report.message)


# =============================================================================
# Commands
# =============================================================================

def cmd_build(args: argparse.Namespace) -> int:
    """One-shot incremental build."""
    source = Path(args.source)
    if not source.is_file():
        print_error(f"Source not found: {source}")
        return int(BuildExitCode.CONFIGURATION_ERROR)

    config = _resolve_config(args)
    builder = IncrementalBuilder.from_config(
        config, output=Path(args.output) if args.output else None
    )
    report = builder.build(source)
    _print_report(report, as_json=args.json)
    return int(report.exit_code)


def cmd_watch(args: argparse.Namespace) -> int:
    """Watch the source tree and rebuild on change."""
    source = Path(args.source)
    if not source.is_file():
        print_error(f"Source not found: {source}")
        return int(BuildExitCode.CONFIGURATION_ERROR)

    config = _resolve_config(args)
    builder = IncrementalBuilder.from_config(
        config, output=Path(args.output) if args.output else None
    )
    loop = WatchLoop(
        builder,
        source,
        debounce_ms=config.watch.debounce_ms,
        ignore_patterns=config.watch.ignore_patterns,
        use_polling=config.watch.use_polling,
        on_report=_print_report,
    )
    print_header(f"fastbeam watch - {source}")
    print_info("Press Ctrl-C to stop")
    loop.run_forever()
    return int(BuildExitCode.SUCCESS)


def cmd_cache_stats(args: argparse.Namespace) -> int:
    config = _resolve_config(args)
    cache = ArtifactCache(config.cache_dir())
    stats = cache.get_stats()

    if args.json:
        print(json.dumps(stats, indent=2))
        return 0

    print_header("Artifact Cache")
    print(f"  Directory: {stats['cache_dir']}")
    print(f"  Entries:   {stats['entry_count']}")
    print(f"  Size:      {stats['total_size_mb']} MB")
    return 0


def cmd_cache_prune(args: argparse.Namespace) -> int:
    config = _resolve_config(args)
    cache = ArtifactCache(config.cache_dir())

    keep: List[str] = []
    for source in args.keep or []:
        path = Path(source)
        if not path.is_file():
            print_error(f"Source not found: {path}")
            return int(BuildExitCode.CONFIGURATION_ERROR)
        builder = IncrementalBuilder.from_config(config)
        document = builder.prepare(path, path.read_text(encoding="utf-8", errors="replace"))
        keep.extend(document.fingerprints())

    days = args.older_than_days
    if days is None and not keep:
        days = config.cache.prune_older_than_days
    older_than = days * 86400 if days is not None else None

    removed = cache.prune(keep=keep, older_than=older_than)
    print_ok(f"Pruned {removed} entries")
    return 0


def cmd_cache_clear(args: argparse.Namespace) -> int:
    config = _resolve_config(args)
    cache = ArtifactCache(config.cache_dir())
    removed = cache.clear()
    print_ok(f"Cleared {removed} entries from {cache.cache_dir}")
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    """Check external tools, cache directory and configuration."""
    print_header(f"fastbeam Doctor - {get_short_banner()}")
    config = _resolve_config(args)
    all_ok = True

    if config.source:
        print_ok(f"Configuration: {config.source}")
    else:
        print_info("Configuration: defaults (no fastbeam.yaml found)")

    engine = TypesettingEngine(command=config.engine.command, args=config.engine.args)
    try:
        print_ok(f"Typesetting engine: {engine.check_available()}")
    except ToolUnavailableError as e:
        print_error(f"Typesetting engine: {e}")
        all_ok = False

    merge = MergeTool(command=config.merge.command, args=config.merge.args)
    try:
        print_ok(f"Merge tool: {merge.check_available()}")
    except ToolUnavailableError as e:
        (print_error if config.output.mode == "merge" else print_warn)(f"Merge tool: {e}")
        all_ok = all_ok and config.output.mode != "merge"

    kpsewhich = shutil.which("kpsewhich")
    if kpsewhich:
        result = subprocess.run(
            [kpsewhich, "mylatexformat.ltx"], capture_output=True, text=True, timeout=10
        )
        found = result.stdout.strip()
        (print_ok if found else print_info)(
            f"mylatexformat: {found or 'not found (preamble precompilation unavailable)'}"
        )
    else:
        print_info("kpsewhich: not found (cannot check mylatexformat)")

    try:
        cache = ArtifactCache(config.cache_dir())
        writable = os.access(cache.cache_dir, os.W_OK)
        (print_ok if writable else print_error)(f"Cache directory: {cache.cache_dir}")
        all_ok = all_ok and writable
    except OSError as e:
        print_error(f"Cache directory: {e}")
        all_ok = False

    print_header("Summary")
    if all_ok:
        print_ok("All critical checks passed!")
        return 0
    print_warn("Some checks failed. See above for details.")
    return int(BuildExitCode.TOOL_UNAVAILABLE)


def cmd_config(args: argparse.Namespace) -> int:
    """Show the effective configuration."""
    config = _resolve_config(args)
    print(f"# source: {config.source or 'defaults'}")
    print(yaml.safe_dump(config.to_dict(), default_flow_style=False, sort_keys=False), end="")
    return 0


def cmd_units(args: argparse.Namespace) -> int:
    """List the units of a document with their fingerprints."""
    source = Path(args.source)
    if not source.is_file():
        print_error(f"Source not found: {source}")
        return int(BuildExitCode.CONFIGURATION_ERROR)

    builder = IncrementalBuilder.from_config(_resolve_config(args))
    document = builder.prepare(source, source.read_text(encoding="utf-8", errors="replace"))
    for diag in document.diagnostics:
        print_warn(diag)
    for unit in document.units:
        print(f"  {unit.id:4d}  {unit.kind.value:9s} line {unit.line:<6d} {unit.fingerprint[:16]}")
    return 0


# =============================================================================
# Entry Point
# =============================================================================

def _add_common(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("--config", help="Configuration file (default: search fastbeam.yaml)")
    sub.add_argument("--cache-dir", help="Artifact cache directory")
    sub.add_argument("-v", "--verbose", action="store_true", help="Debug logging")


def _add_build_options(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("source", help="Beamer source document")
    sub.add_argument("-o", "--output", help="Output PDF (default: SOURCE with .pdf)")
    sub.add_argument("-j", "--jobs", type=int, help="Parallel compile jobs (default: CPU count)")
    sub.add_argument("--mode", choices=["merge", "first-changed"], help="Output mode")
    sub.add_argument("--engine", help="Typesetting engine command (default: pdflatex)")
    sub.add_argument("--precompile-preamble", action="store_true",
                     help="Dump the preamble into a format file first")


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    if not sys.stdout.isatty():
        Colors.disable()

    parser = argparse.ArgumentParser(
        prog="fastbeam",
        description="fastbeam - Incremental builds for beamer slide decks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fastbeam build talk.tex               Build talk.pdf, recompiling changed frames only
  fastbeam build talk.tex -j 8 -o out.pdf
  fastbeam watch talk.tex --mode first-changed
  fastbeam cache prune --keep talk.tex  Drop artifacts talk.tex no longer uses
  fastbeam doctor                       Check pdflatex / pdfunite
        """
    )
    parser.add_argument("--version", action="version", version=f"fastbeam {get_version()}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # build
    sub = subparsers.add_parser("build", help="Incremental build")
    _add_build_options(sub)
    _add_common(sub)
    sub.add_argument("--json", action="store_true", help="Print the cycle report as JSON")
    sub.set_defaults(func=cmd_build)

    # watch
    sub = subparsers.add_parser("watch", help="Rebuild on change")
    _add_build_options(sub)
    _add_common(sub)
    sub.add_argument("--debounce-ms", type=int, help="Quiet period before rebuilding")
    sub.add_argument("--polling", action="store_true", help="Use the polling observer")
    sub.set_defaults(func=cmd_watch, json=False)

    # cache
    cache_parser = subparsers.add_parser("cache", help="Artifact cache management")
    cache_sub = cache_parser.add_subparsers(dest="cache_command")

    sub = cache_sub.add_parser("stats", help="Show cache statistics")
    _add_common(sub)
    sub.add_argument("--json", action="store_true", help="JSON output")
    sub.set_defaults(func=cmd_cache_stats)

    sub = cache_sub.add_parser("prune", help="Remove unreferenced entries")
    _add_common(sub)
    sub.add_argument("--keep", nargs="*", metavar="SOURCE",
                     help="Keep every artifact these documents currently use")
    sub.add_argument("--older-than-days", type=float,
                     help="Only remove entries older than this")
    sub.set_defaults(func=cmd_cache_prune)

    sub = cache_sub.add_parser("clear", help="Remove every entry")
    _add_common(sub)
    sub.set_defaults(func=cmd_cache_clear)

    # units
    sub = subparsers.add_parser("units", help="List the units of a document")
    sub.add_argument("source", help="Beamer source document")
    _add_common(sub)
    sub.set_defaults(func=cmd_units)

    # doctor
    sub = subparsers.add_parser("doctor", help="Check tools and cache")
    _add_common(sub)
    sub.set_defaults(func=cmd_doctor)

    # config
    sub = subparsers.add_parser("config", help="Show effective configuration")
    _add_common(sub)
    sub.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    if getattr(args, "func", None) is None:
        parser.print_help()
        return 0

    setup_logging(verbose=args.verbose)
    try:
        return int(args.func(args))
    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        return int(BuildExitCode.CONFIGURATION_ERROR)
    except KeyboardInterrupt:
        print_info("Interrupted")
        return int(BuildExitCode.CANCELLED)


if __name__ == "__main__":
    sys.exit(main())
