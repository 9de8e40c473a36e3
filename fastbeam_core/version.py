"""
fastbeam Version Management - Centralized version for all components

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

# =============================================================================
# fastbeam Version - Single Source of Truth
# =============================================================================

__version__ = "0.4.2"

VERSION_MAJOR = 0
VERSION_MINOR = 4
VERSION_PATCH = 2
VERSION_SUFFIX = ""  # e.g., "alpha", "beta", "rc1", ""

BUILD_DATE = "2026-10-12"

VERSION_FULL = f"{VERSION_MAJOR}.{VERSION_MINOR}.{VERSION_PATCH}"
if VERSION_SUFFIX:
    VERSION_FULL = f"{VERSION_FULL}-{VERSION_SUFFIX}"

# Bumped whenever the fingerprint recipe changes, so old cache entries are
# never mistaken for current ones.
FINGERPRINT_FORMAT = "fastbeam-fp-2"


def get_version() -> str:
    """Get the current fastbeam version string."""
    return __version__


def get_short_banner() -> str:
    """Get a compact version banner."""
    return f"fastbeam v{__version__} | incremental beamer builds | {BUILD_DATE}"
