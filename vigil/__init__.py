"""
Vigil job-processing substrate.

Durable leased queues for credential refresh, order backfill and inbound
notification ingestion, with retry classification, dead-lettering and
distributed locks for periodic maintenance.
"""

__version__ = "1.0.0"
