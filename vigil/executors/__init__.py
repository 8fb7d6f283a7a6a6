"""
Executors for each job type.
"""

from vigil.executors.backfill import OrderBackfillExecutor
from vigil.executors.credential import CredentialRefreshExecutor
from vigil.executors.normalizer import NotificationNormalizer

__all__ = [
    "CredentialRefreshExecutor",
    "OrderBackfillExecutor",
    "NotificationNormalizer",
]
