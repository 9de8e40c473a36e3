"""
Entry point for ``python -m fastbeam_core``.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import sys

from fastbeam_core.cli import main

if __name__ == "__main__":
    sys.exit(main())
