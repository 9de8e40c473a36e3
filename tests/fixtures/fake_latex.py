#!/usr/bin/env python3
"""
Stand-in for pdflatex used by the test suite.

Accepts the same command line shape as the real engine
(``[options] -jobname=J -output-directory=D file.tex``) and writes
``D/J.pdf`` whose bytes are derived from the document body only, so
recompiling the same unit yields the same artifact.

Markers recognised in the document body:
    \\fastbeamfail          compile error (exit 1, TeX-style log)
    % fastbeam-sleep=S      sleep S seconds before producing output
    % fastbeam-nopages      exit 0 without an output file
    % fastbeam-killonce=P   die by SIGKILL unless file P exists (creates it)

Every invocation appends its jobname to $FAKE_LATEX_LOG when set.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import os
import re
import signal
import sys
import time
from pathlib import Path


def main(argv):
    jobname = None
    outdir = Path(".")
    ini = False
    positional = []
    for arg in argv:
        if arg.startswith("-jobname="):
            jobname = arg.split("=", 1)[1]
        elif arg.startswith("-output-directory="):
            outdir = Path(arg.split("=", 1)[1])
        elif arg == "-ini":
            ini = True
        elif arg.startswith("-"):
            continue
        else:
            positional.append(arg)

    tex = Path(positional[-1])
    jobname = jobname or tex.stem
    text = tex.read_text(encoding="utf-8")

    log = os.environ.get("FAKE_LATEX_LOG")
    if log:
        with open(log, "a", encoding="utf-8") as f:
            f.write(jobname + "\n")

    if ini:
        (outdir / f"{jobname}.fmt").write_bytes(b"fake format\n")
        return 0

    m = re.search(r"\\begin\{document\}\n(.*)\n\\end\{document\}", text, re.S)
    body = m.group(1) if m else text

    m = re.search(r"% fastbeam-killonce=(\S+)", body)
    if m and not Path(m.group(1)).exists():
        Path(m.group(1)).write_text("killed\n")
        os.kill(os.getpid(), signal.SIGKILL)

    m = re.search(r"% fastbeam-sleep=([0-9.]+)", body)
    if m:
        time.sleep(float(m.group(1)))

    if "\\fastbeamfail" in body:
        (outdir / f"{jobname}.log").write_text(
            "This is fake pdfTeX\n"
            "! Undefined control sequence.\n"
            "l.7 \\fastbeamfail\n",
            encoding="utf-8",
        )
        print("! Undefined control sequence.")
        return 1

    if "% fastbeam-nopages" in body:
        return 0

    (outdir / f"{jobname}.pdf").write_bytes(b"%PDF-fake\n" + body.strip().encode("utf-8") + b"\n")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
