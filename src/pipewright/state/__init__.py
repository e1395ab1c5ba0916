"""
Durable run state.
"""

from pipewright.state.store import StateStore

__all__ = ["StateStore"]
