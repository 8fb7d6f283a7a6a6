"""
Schedulers decide which jobs should exist.
"""

from vigil.scheduler.backfill import BackfillScheduler, month_units
from vigil.scheduler.refresh import CredentialRefreshScheduler

__all__ = ["CredentialRefreshScheduler", "BackfillScheduler", "month_units"]
