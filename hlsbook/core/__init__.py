"""
Core application engine for orchestrating the assembly process.

This package contains the primary logic. The `AssemblyPipeline` acts as the
job-level coordinator, delegating the work on each individual source item to
the `SourceItemProcessor` before planning chapters and muxing.
"""

from .item_processor import SourceItemProcessor
from .pipeline import AssemblyPipeline

__all__ = ["AssemblyPipeline", "SourceItemProcessor"]
