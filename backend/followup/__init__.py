"""
Follow-up & Reminder Execution Engine

Eligibility checks, message personalization, orphan detection and the
per-item execution driver used by the poll scheduler.
"""

from .executor import ExecutionDriver, ExecutionResult
from .guards import EligibilityEvaluator, GuardAction, GuardDecision
from .orphan_detector import OrphanDetector
from .personalization import MessagePersonalizer
from .reminder_planner import ReminderPlanner

__all__ = [
    "ExecutionDriver",
    "ExecutionResult",
    "EligibilityEvaluator",
    "GuardAction",
    "GuardDecision",
    "OrphanDetector",
    "MessagePersonalizer",
    "ReminderPlanner",
]
