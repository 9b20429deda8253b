"""
Version information for OpsGuard.

Single source of truth for the package version.
"""

__version__ = "1.0.0"

VERSION_INFO = {
    "version": __version__,
    "name": "OpsGuard",
    "full_name": "OpsGuard - Remediation Orchestration Core",
}


def get_version() -> str:
    """Return the current version string."""
    return __version__


def get_version_info() -> dict:
    """Return detailed version information."""
    return VERSION_INFO.copy()
