"""Parsing of the agent's JSON rule lists."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class FollowUpRule:
    id: str
    name: str
    delay_minutes: int
    message_template: str
    max_attempts: int = 3
    is_active: bool = True
    conditions: Dict[str, Any] = field(default_factory=dict)

    @property
    def business_hours_only(self) -> bool:
        return _business_hours_flag(self.conditions)


@dataclass
class ReminderRule:
    id: str
    name: str
    minutes_before: int
    message_template: str
    reminder_type: Optional[str] = None
    max_attempts: int = 3
    is_active: bool = True
    conditions: Dict[str, Any] = field(default_factory=dict)

    @property
    def business_hours_only(self) -> bool:
        return _business_hours_flag(self.conditions)


def _business_hours_flag(conditions: Dict[str, Any]) -> bool:
    # "exclude_business_hours" is the legacy spelling: exclude sends outside business hours
    return bool(conditions.get("business_hours_only") or conditions.get("exclude_business_hours"))


def _as_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_follow_up_rules(raw: Optional[List[dict]]) -> List[FollowUpRule]:
    rules = []
    for entry in raw or []:
        if not isinstance(entry, dict) or entry.get("id") is None:
            logger.warning(f"Ignoring malformed follow-up rule: {entry!r}")
            continue
        rules.append(FollowUpRule(
            id=str(entry["id"]),
            name=entry.get("name") or str(entry["id"]),
            delay_minutes=_as_int(entry.get("delay_minutes"), 0),
            message_template=entry.get("message_template") or "",
            max_attempts=max(_as_int(entry.get("max_attempts"), 3), 1),
            is_active=entry.get("is_active", True) is not False,
            conditions=entry.get("conditions") or {},
        ))
    return rules


def parse_reminder_rules(raw: Optional[List[dict]]) -> List[ReminderRule]:
    rules = []
    for entry in raw or []:
        if not isinstance(entry, dict) or entry.get("id") is None:
            logger.warning(f"Ignoring malformed reminder rule: {entry!r}")
            continue
        rules.append(ReminderRule(
            id=str(entry["id"]),
            name=entry.get("name") or str(entry["id"]),
            minutes_before=_as_int(entry.get("minutes_before"), 60),
            message_template=entry.get("message_template") or "",
            reminder_type=entry.get("reminder_type"),
            max_attempts=max(_as_int(entry.get("max_attempts"), 3), 1),
            is_active=entry.get("is_active", True) is not False,
            conditions=entry.get("conditions") or {},
        ))
    return rules


def find_rule(agent, kind: str, rule_id: str):
    """Rule of the agent matching rule_id, or None."""
    if agent is None:
        return None
    if kind == "reminder":
        rules = parse_reminder_rules(agent.reminder_rules)
    else:
        rules = parse_follow_up_rules(agent.follow_up_rules)
    for rule in rules:
        if rule.id == str(rule_id):
            return rule
    return None
