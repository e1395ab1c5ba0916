"""
Tracking and cleanup of infrastructure provisioned by runs.
"""

from pipewright.resources.tracker import ResourceTracker, TeardownReport

__all__ = [
    "ResourceTracker",
    "TeardownReport",
]
