"""
Utilities package for the File Upgrader.

Pure functions without side effects.
"""

from .naming import (
    disambiguate_name,
    file_extension,
    normalize_extensions,
    split_extension,
    timestamp_token,
)

__all__ = [
    "disambiguate_name",
    "file_extension",
    "normalize_extensions",
    "split_extension",
    "timestamp_token",
]
