"""
factloom - A self-maintaining knowledge base for autonomous agents.

Facts accumulate with confidence, get reconciled and promoted, and a
metrics-driven loop adapts the store when performance degrades.
"""

from .core import Loom
from .storage import SQLiteStore

try:
    from importlib.metadata import version

    __version__ = version("factloom")
except Exception:
    __version__ = "0.0.0"

__all__ = ["Loom", "SQLiteStore"]
