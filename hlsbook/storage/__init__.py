"""
Storage Layer.

This package handles all data persistence, including INI job files and the
segment ledger database used to resume interrupted jobs.
"""

from .config_manager import ConfigManager
from .segment_ledger import SegmentLedger

__all__ = ["ConfigManager", "SegmentLedger"]
