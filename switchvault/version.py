"""
SwitchVault Version.

This version is IMMUTABLE. Do not modify.
"""

# Immutable version - no env override
__version__ = "1.0.0"
__version_info__ = (1, 0, 0)

# Version metadata
VERSION_METADATA = {
    "name": "SwitchVault",
    "version": __version__,
    "release_date": "2026-10-19",
    "api": "switches/v1",
}


def get_version() -> str:
    """Return immutable version string."""
    return __version__


def get_version_info() -> tuple:
    """Return immutable version tuple."""
    return __version_info__
