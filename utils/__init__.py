"""
Utility modules for Flip.
"""

from .events import EventEmitter
from .console import console, VerboseLevel

__all__ = ["EventEmitter", "console", "VerboseLevel"]
