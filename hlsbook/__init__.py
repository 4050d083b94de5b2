"""
hlsbook - assemble segmented HLS lecture streams into a chaptered M4B audiobook.
"""

__version__ = "0.3.0"
