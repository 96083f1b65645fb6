"""
Poll Scheduler

Fixed-cadence worker that drives the follow-up and reminder queue.
"""

from .stats import ExecutionStats
from .worker import (
    FollowUpWorker,
    get_followup_worker,
    start_followup_worker,
    stop_followup_worker
)

__all__ = [
    'ExecutionStats',
    'FollowUpWorker',
    'get_followup_worker',
    'start_followup_worker',
    'stop_followup_worker'
]
