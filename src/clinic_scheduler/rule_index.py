"""
Rule Index for Clinic Shift Scheduling

Lookup structures derived from the session rule list, plus the calendar
predicates that decide whether a rule applies on a given date.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from .data_manager import ShiftRule, format_shift_key

logger = logging.getLogger(__name__)

SESSION_SUFFIX = "診"

_LEADING_NUMBER = re.compile(r"^(\d+)")


@dataclass(frozen=True)
class SessionId:
    """Canonical session id: "71" and "71診" are the same session"""
    value: str

    @classmethod
    def normalize(cls, raw) -> 'SessionId':
        return cls(str(raw).replace(SESSION_SUFFIX, "").strip())

    def __str__(self) -> str:
        return self.value


def first_week_start(month: date) -> date:
    """Monday of the week containing the first day of ``month``"""
    month_start = month.replace(day=1)
    return month_start - timedelta(days=month_start.weekday())


def week_of_month(day: date, scheduling_month: Optional[date] = None) -> int:
    """
    1-based index of the Monday-start week containing ``day``.

    Week 1 is the week containing the first day of ``scheduling_month``
    (defaults to the month of ``day``). Dates of a neighbouring month that
    fall in a displayed week are numbered relative to the same origin.
    """
    return (day - first_week_start(scheduling_month or day)).days // 7 + 1


def is_rule_active_on(rule: ShiftRule, day: date, scheduling_month: Optional[date] = None) -> bool:
    """True if the rule's weekday and week-of-month sets both contain ``day``"""
    weekday = day.isoweekday()
    if weekday == 7:  # Sunday
        return False
    if weekday not in rule.days:
        return False
    return week_of_month(day, scheduling_month) in rule.week_frequency


def numeric_sort_value(session_id: str) -> float:
    match = _LEADING_NUMBER.match(session_id)
    return int(match.group(1)) if match else math.inf


def sort_rules(rules: List[ShiftRule]) -> List[ShiftRule]:
    """Order rules by the leading number of the session id, then by the id text"""
    # Ties break on code-point order of the id, not locale collation
    return sorted(rules, key=lambda rule: (numeric_sort_value(rule.session_id), rule.session_id))


class RuleIndex:
    """Lookups over one rule list; rebuild when the list changes"""

    def __init__(self, rules: List[ShiftRule]):
        self.rules = rules
        self.by_session: Dict[SessionId, ShiftRule] = {}
        self.by_shift_and_session: Dict[Tuple[str, SessionId], ShiftRule] = {}
        self.by_full_key: Dict[str, ShiftRule] = {}
        self.hierarchy: Dict[str, Dict[str, List[str]]] = {}
        self.duplicate_session_ids: List[SessionId] = []

        for rule in rules:
            session = SessionId.normalize(rule.session_id)
            if session in self.by_session and session not in self.duplicate_session_ids:
                self.duplicate_session_ids.append(session)
            # Last definition wins for both session lookups
            self.by_session[session] = rule
            self.by_shift_and_session[(rule.shift_type, session)] = rule
            self.by_full_key.setdefault(rule.full_shift_key, rule)

        for rule in sort_rules(rules):
            sessions = self.hierarchy.setdefault(rule.shift_type, {}).setdefault(rule.time_slot, [])
            if rule.session_id not in sessions:
                sessions.append(rule.session_id)

        if self.duplicate_session_ids:
            logger.debug(f"Session ids defined more than once: {[str(s) for s in self.duplicate_session_ids]}")

    def rule_for_session(self, session_id: str) -> Optional[ShiftRule]:
        return self.by_session.get(SessionId.normalize(session_id))

    def rule_for_shift(self, shift_type: str, session_id: str) -> Optional[ShiftRule]:
        return self.by_shift_and_session.get((shift_type, SessionId.normalize(session_id)))

    def rule_for_slot(self, shift_type: str, time_slot: str, session_id: str) -> Optional[ShiftRule]:
        """Rule matching the exact (shift type, time slot, session id) triple"""
        return self.by_full_key.get(format_shift_key(shift_type, time_slot, session_id))

    def time_slots_for(self, shift_type: str) -> List[str]:
        return list(self.hierarchy.get(shift_type, {}).keys())

    def sessions_for(self, shift_type: str, time_slot: str) -> List[str]:
        return list(self.hierarchy.get(shift_type, {}).get(time_slot, []))
