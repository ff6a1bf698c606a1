"""
Durable queues: generation jobs and deferred requests.
"""

from .deferred import DeferredRequestQueue
from .jobs import DrainOutcome, JobQueue

__all__ = ["DeferredRequestQueue", "DrainOutcome", "JobQueue"]
