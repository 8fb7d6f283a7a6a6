"""
Lease reclaim, lock sweeping and retention cleanup.
"""

from vigil.reaper.maintenance import Maintenance

__all__ = ["Maintenance"]
