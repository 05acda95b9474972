"""
Utility modules for the report engine.
"""

from .formatting import format_label, join_values, to_cell_text
from .config import Config

__all__ = ["format_label", "join_values", "to_cell_text", "Config"]
