"""
External Tools - Typesetting engine and merge tool invocation

Both tools are external processes:
- the typesetting engine compiles one self-contained unit document
  (preamble + one unit) and leaves ``<jobname>.pdf`` in a build directory
- the merge tool concatenates an explicit, ordered list of artifacts

Error mapping:
- executable missing or not runnable  -> ToolUnavailableError
- resource exhaustion / killed by signal -> TransientCompileError
- non-zero exit                        -> failed CompileOutcome (data)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import errno
import logging
import os
import shutil
import subprocess
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .types import SpanKind, Unit

logger = logging.getLogger(__name__)


DEFAULT_ENGINE_ARGS = ["-interaction=nonstopmode", "-halt-on-error", "-shell-escape"]

# Errors worth a second attempt: the next run may well succeed
TRANSIENT_ERRNOS = {errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE}

# Reproducible PDFs: same unit source, same bytes
REPRODUCIBLE_ENV = {"SOURCE_DATE_EPOCH": "0", "FORCE_SOURCE_DATE": "1"}

DIAGNOSTIC_TAIL_LINES = 40


class ToolUnavailableError(Exception):
    """An external tool cannot be invoked."""

    def __init__(self, tool: str, reason: str):
        self.tool = tool
        self.reason = reason
        super().__init__(f"{tool}: {reason}")


class TransientCompileError(Exception):
    """A compile job failed for reasons unrelated to the unit's markup."""


class MergeError(Exception):
    """The merge tool ran but did not produce the merged document."""


@dataclass
class CompileOutcome:
    """Result of one engine invocation for one unit."""
    success: bool
    output_path: Optional[Path]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    log_errors: List[str] = field(default_factory=list)

    @property
    def diagnostic(self) -> str:
        """Compiler errors first, then the tail of the console output."""
        parts: List[str] = []
        if self.log_errors:
            parts.append("\n".join(self.log_errors))
        tail = "\n".join(self.stdout.strip().splitlines()[-DIAGNOSTIC_TAIL_LINES:])
        if tail:
            parts.append(tail)
        if self.stderr.strip():
            parts.append(self.stderr.strip())
        if self.returncode not in (None, 0):
            parts.append(f"exit status {self.returncode}")
        return "\n\n".join(parts)


def materialize(unit: Unit, preamble_text: str, format_name: Optional[str] = None) -> str:
    """
    Build the standalone source compiled for one unit.

    Args:
        unit: Unit to compile
        preamble_text: Shared preamble
        format_name: Precompiled preamble format, if any

    Returns:
        Complete LaTeX document text
    """
    if unit.kind == SpanKind.DOCUMENT:
        return unit.text

    header = f"%&{format_name}\n" if format_name else ""
    return (
        header
        + preamble_text
        + "\n\\begin{document}\n"
        + unit.text
        + "\n\\end{document}\n"
    )


def extract_log_errors(log_text: str, limit: int = 20) -> List[str]:
    """Collect ``! ...`` error lines and their ``l.<n>`` context from a TeX log."""
    errors: List[str] = []
    lines = log_text.splitlines()
    for i, line in enumerate(lines):
        if line.startswith("!"):
            errors.append(line)
            for follow in lines[i + 1:i + 8]:
                if follow.startswith("l."):
                    errors.append(follow)
                    break
            if len(errors) >= limit:
                break
    return errors


class TypesettingEngine:
    """
    Runs the typesetting engine (pdflatex by default) on unit documents.
    """

    def __init__(
        self,
        command: str = "pdflatex",
        args: Optional[Sequence[str]] = None,
        passes: int = 1,
        timeout: Optional[float] = 300.0,
        env: Optional[Dict[str, str]] = None,
    ):
        self.command = command
        self.args = list(DEFAULT_ENGINE_ARGS if args is None else args)
        self.passes = max(1, int(passes))
        self.timeout = timeout
        self.env = {**REPRODUCIBLE_ENV, **(env or {})}

    def build_signature(self) -> str:
        """Everything about the engine that changes the artifacts it makes."""
        return "\x1f".join([self.command, *self.args, f"passes={self.passes}"])

    def check_available(self) -> str:
        """
        Make sure the engine executable can be found.

        Returns:
            Resolved executable path

        Raises:
            ToolUnavailableError
        """
        resolved = shutil.which(self.command)
        if resolved is None:
            raise ToolUnavailableError(self.command, "executable not found on PATH")
        return resolved

    def _environment(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        if extra:
            env.update(extra)
        return env

    def _run(self, argv: List[str], cwd: Path, env: Dict[str, str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                argv,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ToolUnavailableError(self.command, f"cannot execute ({e})") from e
        except PermissionError as e:
            raise ToolUnavailableError(self.command, f"not executable ({e})") from e
        except OSError as e:
            if e.errno in TRANSIENT_ERRNOS:
                raise TransientCompileError(f"{self.command}: {e}") from e
            raise

    def compile(
        self,
        source: str,
        jobname: str,
        build_dir: Path,
        cwd: Path,
        env_extra: Optional[Dict[str, str]] = None,
    ) -> CompileOutcome:
        """
        Compile one standalone unit document.

        Args:
            source: Complete LaTeX document (see ``materialize``)
            jobname: Base name for the .tex/.pdf/.log files
            build_dir: Directory receiving all engine outputs
            cwd: Working directory (the source document's directory)
            env_extra: Additional environment variables

        Returns:
            CompileOutcome

        Raises:
            ToolUnavailableError: Engine cannot be executed
            TransientCompileError: Resource exhaustion or killed by signal
        """
        build_dir = Path(build_dir)
        build_dir.mkdir(parents=True, exist_ok=True)
        tex_path = build_dir / f"{jobname}.tex"
        tex_path.write_text(source, encoding="utf-8")

        argv = [
            self.command,
            *self.args,
            f"-jobname={jobname}",
            f"-output-directory={build_dir}",
            str(tex_path),
        ]
        env = self._environment(env_extra)

        proc: Optional[subprocess.CompletedProcess] = None
        for _ in range(self.passes):
            try:
                proc = self._run(argv, cwd, env)
            except subprocess.TimeoutExpired as e:
                return CompileOutcome(
                    success=False,
                    output_path=None,
                    returncode=None,
                    stdout=e.stdout if isinstance(e.stdout, str) else "",
                    stderr=f"timed out after {self.timeout}s",
                )
            if proc.returncode < 0:
                raise TransientCompileError(
                    f"{self.command} killed by signal {-proc.returncode}"
                )
            if proc.returncode != 0:
                break

        output = build_dir / f"{jobname}.pdf"
        log_path = build_dir / f"{jobname}.log"
        log_errors: List[str] = []
        if proc.returncode != 0 and log_path.exists():
            log_errors = extract_log_errors(log_path.read_text(encoding="utf-8", errors="replace"))

        success = proc.returncode == 0
        return CompileOutcome(
            success=success,
            output_path=output if success and output.exists() else None,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
            log_errors=log_errors,
        )

    def precompile_preamble(
        self,
        preamble_text: str,
        name: str,
        formats_dir: Path,
        cwd: Path,
    ) -> Optional[str]:
        """
        Dump the preamble into a format file (``mylatexformat``).

        Args:
            preamble_text: Shared preamble
            name: Format name (derived from the preamble fingerprint)
            formats_dir: Where ``<name>.fmt`` is stored
            cwd: Working directory (the source document's directory)

        Returns:
            The format name if the format is available, None otherwise
        """
        formats_dir = Path(formats_dir)
        formats_dir.mkdir(parents=True, exist_ok=True)
        final = formats_dir / f"{name}.fmt"
        if final.is_file():
            logger.info("Precompiled preamble already exists")
            return name

        # Dump under a private jobname; only a complete format is renamed to <name>.fmt
        job = f"{name}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        tex_path = formats_dir / f"{job}.tex"
        tex_path.write_text(
            preamble_text + "\n\\begin{document}\n\\end{document}\n", encoding="utf-8"
        )
        base = Path(self.command).name
        argv = [
            self.command,
            "-ini",
            "-interaction=nonstopmode",
            "-shell-escape",
            f"-jobname={job}",
            f"-output-directory={formats_dir}",
            f"&{base}",
            "mylatexformat.ltx",
            str(tex_path),
        ]
        logger.info(f"Precompiling preamble into {final}")
        try:
            try:
                proc = self._run(argv, cwd, self._environment())
            except (TransientCompileError, subprocess.TimeoutExpired) as e:
                logger.warning(f"Preamble precompilation failed: {e}")
                return None

            dumped = formats_dir / f"{job}.fmt"
            if proc.returncode != 0 or not dumped.is_file():
                logger.warning(
                    f"Preamble precompilation failed (exit {proc.returncode}); "
                    "compiling units without a format"
                )
                return None
            os.replace(dumped, final)
            return name
        finally:
            for leftover in formats_dir.glob(f"{job}.*"):
                try:
                    leftover.unlink()
                except OSError as e:
                    logger.debug(f"Cannot remove {leftover}: {e}")

    def format_env(self, formats_dir: Path) -> Dict[str, str]:
        """Environment making ``formats_dir`` visible to the engine."""
        # Trailing separator keeps the default search path
        return {"TEXFORMATS": f"{formats_dir}{os.pathsep}"}


class MergeTool:
    """
    Merges per-unit artifacts into one document (pdfunite by default).
    """

    def __init__(
        self,
        command: str = "pdfunite",
        args: Optional[Sequence[str]] = None,
        timeout: Optional[float] = 120.0,
    ):
        self.command = command
        self.args = list(args or [])
        self.timeout = timeout

    def check_available(self) -> str:
        resolved = shutil.which(self.command)
        if resolved is None:
            raise ToolUnavailableError(self.command, "executable not found on PATH")
        return resolved

    def merge(self, inputs: Sequence[Path], output: Path) -> Path:
        """
        Merge artifacts, in the given order, into ``output``.

        The merged file is written next to ``output`` and renamed onto it,
        so readers never see a half-written document.

        Args:
            inputs: Ordered artifact paths
            output: Destination path

        Returns:
            The output path

        Raises:
            MergeError: No inputs, or the tool failed
            ToolUnavailableError: The tool cannot be executed
        """
        if not inputs:
            raise MergeError("nothing to merge")

        output = Path(output)
        output.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=output.parent, prefix=f".{output.stem}.", suffix=output.suffix)
        os.close(fd)

        try:
            if len(inputs) == 1:
                shutil.copyfile(inputs[0], tmp)
            else:
                argv = [self.command, *self.args, *[str(p) for p in inputs], tmp]
                try:
                    proc = subprocess.run(
                        argv,
                        stdin=subprocess.DEVNULL,
                        capture_output=True,
                        text=True,
                        errors="replace",
                        timeout=self.timeout,
                    )
                except (FileNotFoundError, PermissionError) as e:
                    raise ToolUnavailableError(self.command, f"cannot execute ({e})") from e
                except subprocess.TimeoutExpired as e:
                    raise MergeError(f"{self.command} timed out after {self.timeout}s") from e
                if proc.returncode != 0:
                    raise MergeError(
                        f"{self.command} exited with {proc.returncode}: "
                        f"{(proc.stderr or proc.stdout).strip()}"
                    )
            os.replace(tmp, output)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

        logger.info(f"Merged {len(inputs)} artifacts into {output}")
        return output
