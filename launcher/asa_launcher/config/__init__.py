"""
Konfigurations-Persistierung: Layout, Storage und INI-Merge.
"""

from .file_layout import FleetLayout
from .storage_backend import FileConfigStore
from .merger import IniMerger

__all__ = [
    "FleetLayout",
    "FileConfigStore",
    "IniMerger",
]
