"""
Dispatch Engine Overrides

Manual and emergency reassignment with an audit trail.
"""

from .manager import OverrideManager

__all__ = ["OverrideManager"]
