"""
Utility modules for the tenancy engine.
"""

from .formatting import format_currency, format_timestamp
from .config import Config

__all__ = ["format_currency", "format_timestamp", "Config"]
