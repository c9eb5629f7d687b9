"""
Scheduler Logic for Clinic Shift Scheduling

Assignment and validation engine: decides which sessions may be offered for
a cell, how full a session is, whether a move or swap is legal, and turns
every edit into a single history commit.
"""

from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from .data_manager import (
    ALL_SHIFT_TYPES,
    LABEL_SEPARATOR,
    OFF_STATES,
    ROLES,
    SCHEDULABLE_WEEKDAYS,
    WEEK_FREQUENCIES,
    AppState,
    DataValidationError,
    Employee,
    Schedule,
    ScheduleKey,
    ShiftDoctor,
    ShiftEntry,
    ShiftRule,
    apply_import,
    export_snapshot,
    format_shift_key,
)
from .history import HistoryStore
from .rule_index import RuleIndex, SessionId, is_rule_active_on

logger = logging.getLogger(__name__)


class ConstraintViolation:
    """Reasons an edit is declined"""
    DIFFERENT_SHIFT_TYPE = "Shifts can only be moved between cells of the same shift type"
    SAME_CELL = "Source and destination are the same cell"
    EMPTY_SOURCE = "Source cell is empty"
    RULE_RESTRICTION = "is not allowed on this date (rule restriction)"
    EMPLOYEE_NOT_FOUND = "Employee not found"
    EMPTY_NAME = "Employee name must not be empty"
    UNKNOWN_ROLE = "Unknown employee role"
    MAIN_SESSION_TAKEN = "Main session is already used by another employee"
    INVALID_RULE = "Rule days must be within Monday-Saturday and weeks within 1-5"
    OFF_ON_WORKING_DAY = "A day off cannot be placed on a day that already has sessions assigned"


@dataclass(frozen=True)
class CellRef:
    """One cell of the schedule grid"""
    date: str
    employee_id: int
    shift_type: str

    @property
    def key(self) -> ScheduleKey:
        return ScheduleKey(self.date, self.employee_id, self.shift_type)


@dataclass
class EditResult:
    """Outcome of an engine operation"""
    success: bool
    message: str
    action: Optional[str] = None
    needs_selection: bool = False
    violations: List[str] = field(default_factory=list)


@dataclass
class SessionOption:
    """A session that may be offered for a cell"""
    session_id: str
    full_shift_key: str
    capacity: int
    current_usage: int
    required_skills: List[str]
    meets_skill_requirement: bool
    is_full: bool
    is_current: bool = False

    @property
    def is_difficult(self) -> bool:
        return len(self.required_skills) > 0

    @property
    def is_selectable(self) -> bool:
        return self.meets_skill_requirement and (not self.is_full or self.is_current)


def next_month_start(today: Optional[date] = None) -> date:
    month_start = (today or date.today()).replace(day=1)
    return (month_start + timedelta(days=32)).replace(day=1)


def apply_entry(schedule: Schedule, date_str: str, emp_id: int, shift_type: str,
                entry: Optional[ShiftEntry]) -> Schedule:
    """
    Return a copy of ``schedule`` with one cell written (or cleared when
    ``entry`` is None), keeping OFF a whole-day state:

    - writing OFF/OFF_CONFIRMED writes it to every shift type of the day
    - writing a session removes OFF states from the other shift types
    - clearing an OFF cell clears the whole day
    """
    new_schedule = dict(schedule)
    key = ScheduleKey(date_str, emp_id, shift_type)
    day_keys = [ScheduleKey(date_str, emp_id, st) for st in ALL_SHIFT_TYPES]

    if entry is None:
        current = new_schedule.get(key)
        if current is not None and current.is_off:
            for day_key in day_keys:
                new_schedule.pop(day_key, None)
        else:
            new_schedule.pop(key, None)
    elif entry.is_off:
        for day_key in day_keys:
            new_schedule[day_key] = entry
    else:
        new_schedule[key] = entry
        for day_key in day_keys:
            other = new_schedule.get(day_key)
            if day_key != key and other is not None and other.is_off:
                del new_schedule[day_key]

    return new_schedule


class ShiftScheduler:
    """Engine over the application state owned by a history store"""

    def __init__(self, history: HistoryStore[AppState], scheduling_month: Optional[date] = None):
        self.history = history
        self.scheduling_month = (scheduling_month or next_month_start()).replace(day=1)
        self._rule_index: Optional[RuleIndex] = None

    @property
    def state(self) -> AppState:
        return self.history.state

    @property
    def rule_index(self) -> RuleIndex:
        """Rule index for the current rule list, rebuilt when the list object changes"""
        rules = self.state.rules
        if self._rule_index is None or self._rule_index.rules is not rules:
            self._rule_index = RuleIndex(rules)
        return self._rule_index

    # Employees

    def get_employees(self, active_only: bool = True) -> List[Employee]:
        """Employees in display order"""
        employees = [e for e in self.state.employees if e.is_active or not active_only]
        return sorted(employees, key=lambda e: (e.display_order, e.id))

    def get_employee_by_id(self, emp_id: int) -> Optional[Employee]:
        for emp in self.state.employees:
            if emp.id == emp_id:
                return emp
        return None

    def get_entry(self, date_str: str, emp_id: int, shift_type: str) -> Optional[ShiftEntry]:
        return self.state.schedule.get(ScheduleKey(date_str, emp_id, shift_type))

    # Capacity and candidates

    def session_capacity_count(self, date_str: str, full_shift_key: str,
                               schedule: Optional[Schedule] = None) -> int:
        """Number of entries on ``date_str`` whose label starts with ``full_shift_key``"""
        if schedule is None:
            schedule = self.state.schedule
        return sum(
            1 for key, entry in schedule.items()
            if key.date == date_str and entry.label.startswith(full_shift_key)
        )

    def is_session_allowed_on(self, session_id: str, date_str: str) -> bool:
        """Rule check for placing ``session_id`` on a date; sessions without a rule are unrestricted"""
        rule = self.rule_index.rule_for_session(session_id)
        if rule is None:
            return True
        return is_rule_active_on(rule, date.fromisoformat(date_str), self.scheduling_month)

    def time_slots_for(self, shift_type: str) -> List[str]:
        return self.rule_index.time_slots_for(shift_type)

    def available_sessions(self, emp_id: int, date_str: str, shift_type: str,
                           time_slot: str) -> List[SessionOption]:
        """Sessions active on the date for a shift type and time slot, with fullness and skill info"""
        employee = self.get_employee_by_id(emp_id)
        employee_skills = set(employee.skills) if employee else set()
        current = self.get_entry(date_str, emp_id, shift_type)
        day = date.fromisoformat(date_str)
        options = []

        for session_id in self.rule_index.sessions_for(shift_type, time_slot):
            rule = self.rule_index.rule_for_slot(shift_type, time_slot, session_id)
            if rule is None or not is_rule_active_on(rule, day, self.scheduling_month):
                continue

            full_shift_key = rule.full_shift_key
            usage = self.session_capacity_count(date_str, full_shift_key)
            options.append(SessionOption(
                session_id=session_id,
                full_shift_key=full_shift_key,
                capacity=rule.capacity,
                current_usage=usage,
                required_skills=list(rule.required_skills),
                meets_skill_requirement=all(s in employee_skills for s in rule.required_skills),
                is_full=usage >= rule.capacity,
                is_current=current is not None and current.label == full_shift_key
            ))

        return options

    # Cell edits

    def _commit_schedule(self, change: Callable[[Schedule], Schedule], action: str) -> EditResult:
        self.history.commit(lambda state: replace(state, schedule=change(state.schedule)), action)
        return EditResult(True, action, action=action)

    def set_entry(self, emp_id: int, date_str: str, shift_type: str,
                  label: str, memo: str = "") -> EditResult:
        """Write a compound label or an OFF state into a cell"""
        memo = memo.strip()
        if label in OFF_STATES or LABEL_SEPARATOR in label:
            entry = ShiftEntry(label, memo)
        else:
            entry = ShiftEntry(label)
        return self._commit_schedule(
            lambda schedule: apply_entry(schedule, date_str, emp_id, shift_type, entry),
            "Update schedule"
        )

    def clear_entry(self, emp_id: int, date_str: str, shift_type: str) -> EditResult:
        """Delete a cell; clearing an OFF cell clears the whole day"""
        return self._commit_schedule(
            lambda schedule: apply_entry(schedule, date_str, emp_id, shift_type, None),
            "Clear schedule"
        )

    def erase_cell(self, emp_id: int, date_str: str, shift_type: str) -> EditResult:
        """Eraser tool: like clear_entry, but an empty cell is left alone"""
        if self.get_entry(date_str, emp_id, shift_type) is None:
            return EditResult(True, "Cell is already empty")
        return self._commit_schedule(
            lambda schedule: apply_entry(schedule, date_str, emp_id, shift_type, None),
            "Quick erase"
        )

    def paint_cell(self, emp_id: int, date_str: str, shift_type: str) -> EditResult:
        """
        Paint tool: fill the cell with the employee's main session.

        Falls through with ``needs_selection=True`` (and writes nothing) when
        the employee has no main session or no rule matches it for this
        shift type.
        """
        employee = self.get_employee_by_id(emp_id)
        if employee is None:
            return EditResult(False, ConstraintViolation.EMPLOYEE_NOT_FOUND)

        rule = None
        if employee.main_session_id:
            rule = self.rule_index.rule_for_shift(shift_type, employee.main_session_id)

        if rule is None:
            return EditResult(False, "Select a session manually", needs_selection=True)

        entry = ShiftEntry(format_shift_key(shift_type, rule.time_slot, rule.session_id))
        return self._commit_schedule(
            lambda schedule: apply_entry(schedule, date_str, emp_id, shift_type, entry),
            "Quick fill"
        )

    def _has_session_elsewhere(self, cell: CellRef) -> bool:
        """True if the cell's day holds a concrete session in another shift type"""
        for shift_type in ALL_SHIFT_TYPES:
            entry = self.get_entry(cell.date, cell.employee_id, shift_type)
            if shift_type != cell.shift_type and entry is not None and not entry.is_off:
                return True
        return False

    def validate_move(self, source: CellRef, target: CellRef) -> List[str]:
        """
        Check a drag from ``source`` to ``target``.
        Returns list of violations (empty if the move is legal).
        """
        if source.key == target.key:
            return [ConstraintViolation.SAME_CELL]
        if source.shift_type != target.shift_type:
            return [ConstraintViolation.DIFFERENT_SHIFT_TYPE]

        schedule = self.state.schedule
        source_entry = schedule.get(source.key)
        target_entry = schedule.get(target.key)
        if source_entry is None:
            return [ConstraintViolation.EMPTY_SOURCE]

        violations = []
        moved_session = source_entry.session_id
        if moved_session and not self.is_session_allowed_on(moved_session, target.date):
            violations.append(f"{moved_session} {ConstraintViolation.RULE_RESTRICTION}")

        if target_entry is not None:
            returned_session = target_entry.session_id
            if returned_session and not self.is_session_allowed_on(returned_session, source.date):
                violations.append(f"{returned_session} {ConstraintViolation.RULE_RESTRICTION}")

        # OFF is whole-day, so it may only land on a day with no other sessions
        if source_entry.is_off and self._has_session_elsewhere(target):
            violations.append(ConstraintViolation.OFF_ON_WORKING_DAY)
        if target_entry is not None and target_entry.is_off and self._has_session_elsewhere(source):
            violations.append(ConstraintViolation.OFF_ON_WORKING_DAY)

        return violations

    def move_shift(self, source: CellRef, target: CellRef) -> EditResult:
        """
        Move a cell into an empty target, or swap it with an occupied one.

        Besides the two cells, only OFF siblings of an OFF value that arrives
        or leaves are written, so sessions elsewhere on either day survive.
        """
        violations = self.validate_move(source, target)
        if violations:
            logger.info(f"Rejected move {source.key.to_str()} -> {target.key.to_str()}: {violations}")
            return EditResult(False, violations[0], violations=violations)

        schedule = self.state.schedule
        source_entry = schedule[source.key]
        target_entry = schedule.get(target.key)

        if target_entry is not None:
            action = f"Swap shifts: {source.date} <-> {target.date}"

            def change(current: Schedule) -> Schedule:
                swapped = apply_entry(current, source.date, source.employee_id, source.shift_type, target_entry)
                return apply_entry(swapped, target.date, target.employee_id, target.shift_type, source_entry)
        else:
            action = f"Move shift: {source.date} -> {target.date}"

            def change(current: Schedule) -> Schedule:
                moved = apply_entry(current, source.date, source.employee_id, source.shift_type, None)
                return apply_entry(moved, target.date, target.employee_id, target.shift_type, source_entry)

        return self._commit_schedule(change, action)

    # Roster edits

    def _find_main_session_holder(self, main_session_id: str, exclude_id: int) -> Optional[Employee]:
        session = SessionId.normalize(main_session_id)
        for emp in self.state.employees:
            if emp.id != exclude_id and emp.main_session_id and SessionId.normalize(emp.main_session_id) == session:
                return emp
        return None

    def _replace_employee(self, emp_id: int, action: str, **changes) -> EditResult:
        if self.get_employee_by_id(emp_id) is None:
            return EditResult(False, ConstraintViolation.EMPLOYEE_NOT_FOUND)

        def change(state: AppState) -> AppState:
            employees = [replace(e, **changes) if e.id == emp_id else e for e in state.employees]
            return replace(state, employees=employees)

        self.history.commit(change, action)
        return EditResult(True, action, action=action)

    def add_employee(self, name: str, role: str = "FULL_TIME") -> EditResult:
        name = (name or "").strip()
        if not name:
            return EditResult(False, ConstraintViolation.EMPTY_NAME)
        if role not in ROLES:
            return EditResult(False, f"{ConstraintViolation.UNKNOWN_ROLE}: {role}")

        def change(state: AppState) -> AppState:
            next_id = max((e.id for e in state.employees), default=0) + 1
            next_order = max((e.display_order for e in state.employees), default=0) + 1
            employee = Employee(id=next_id, name=name, role=role, display_order=next_order)
            return replace(state, employees=state.employees + [employee])

        self.history.commit(change, "Add employee")
        return EditResult(True, "Add employee", action="Add employee")

    def update_employee(self, emp_id: int, name: Optional[str] = None, role: Optional[str] = None,
                        skills: Optional[List[str]] = None, is_active: Optional[bool] = None) -> EditResult:
        """Edit employee details"""
        changes: Dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                return EditResult(False, ConstraintViolation.EMPTY_NAME)
            changes["name"] = name.strip()
        if role is not None:
            if role not in ROLES:
                return EditResult(False, f"{ConstraintViolation.UNKNOWN_ROLE}: {role}")
            changes["role"] = role
        if skills is not None:
            changes["skills"] = list(skills)
        if is_active is not None:
            changes["is_active"] = is_active
        return self._replace_employee(emp_id, "Edit employee", **changes)

    def set_employee_active(self, emp_id: int, is_active: bool) -> EditResult:
        action = "Reactivate employee" if is_active else "Deactivate employee"
        return self._replace_employee(emp_id, action, is_active=is_active)

    def set_major_shift(self, emp_id: int, major_shift: str, main_session_id: str) -> EditResult:
        """Set the default shift descriptor and main session, keeping main sessions unique"""
        main_session_id = (main_session_id or "").strip()
        if main_session_id:
            holder = self._find_main_session_holder(main_session_id, emp_id)
            if holder is not None:
                message = f"{ConstraintViolation.MAIN_SESSION_TAKEN}: {main_session_id} ({holder.name})"
                return EditResult(False, message, violations=[ConstraintViolation.MAIN_SESSION_TAKEN])
        return self._replace_employee(
            emp_id, "Update main session",
            major_shift=major_shift or "NONE", main_session_id=main_session_id
        )

    def delete_employee(self, emp_id: int) -> EditResult:
        """Remove an employee together with all of their schedule entries"""
        if self.get_employee_by_id(emp_id) is None:
            return EditResult(False, ConstraintViolation.EMPLOYEE_NOT_FOUND)

        def change(state: AppState) -> AppState:
            return replace(
                state,
                employees=[e for e in state.employees if e.id != emp_id],
                schedule={k: v for k, v in state.schedule.items() if k.employee_id != emp_id}
            )

        self.history.commit(change, "Delete employee")
        return EditResult(True, "Delete employee", action="Delete employee")

    def reorder_employees(self, ordered_ids: List[int]) -> EditResult:
        """Renumber display order; employees missing from ``ordered_ids`` go last"""
        position = {emp_id: idx + 1 for idx, emp_id in enumerate(ordered_ids)}

        def change(state: AppState) -> AppState:
            ranked = sorted(
                state.employees,
                key=lambda e: (position.get(e.id, len(position) + 1), e.display_order, e.id)
            )
            order = {e.id: idx + 1 for idx, e in enumerate(ranked)}
            return replace(state, employees=[replace(e, display_order=order[e.id]) for e in state.employees])

        self.history.commit(change, "Reorder employees")
        return EditResult(True, "Reorder employees", action="Reorder employees")

    # Catalogue edits

    def check_skill_usage(self, skill: str) -> Dict[str, List[str]]:
        return {
            "employees": [e.name for e in self.state.employees if skill in e.skills],
            "rules": [r.session_id for r in self.state.rules if skill in r.required_skills],
        }

    def save_skills(self, skills: List[str]) -> EditResult:
        self.history.commit(lambda state: replace(state, skills=list(skills)), "Update skills")
        return EditResult(True, "Update skills", action="Update skills")

    def force_delete_skill(self, skill: str) -> EditResult:
        """Remove a skill from the skill list, every employee and every rule in one step"""
        action = f"Force delete skill '{skill}'"

        def change(state: AppState) -> AppState:
            return replace(
                state,
                skills=[s for s in state.skills if s != skill],
                employees=[replace(e, skills=[s for s in e.skills if s != skill]) for e in state.employees],
                rules=[replace(r, required_skills=[s for s in r.required_skills if s != skill])
                       for r in state.rules]
            )

        self.history.commit(change, action)
        return EditResult(True, action, action=action)

    def save_rules(self, rules: List[ShiftRule]) -> EditResult:
        """Replace the rule list. Duplicate session ids resolve to the last rule (logged)."""
        for rule in rules:
            if (rule.capacity < 1 or
                    not set(rule.days) <= set(SCHEDULABLE_WEEKDAYS) or
                    not set(rule.week_frequency) <= set(WEEK_FREQUENCIES)):
                return EditResult(False, f"{ConstraintViolation.INVALID_RULE}: {rule.session_id}")

        index = RuleIndex(rules)
        if index.duplicate_session_ids:
            duplicates = ", ".join(str(s) for s in index.duplicate_session_ids)
            logger.warning(f"Sessions defined more than once, last definition wins for lookups: {duplicates}")

        self.history.commit(lambda state: replace(state, rules=list(rules)), "Update session rules")
        return EditResult(True, "Update session rules", action="Update session rules")

    def save_visible_shifts(self, visible_shifts: List[str]) -> EditResult:
        visible = [st for st in ALL_SHIFT_TYPES if st in visible_shifts]
        self.history.commit(lambda state: replace(state, visible_shifts=visible), "Update visible shifts")
        return EditResult(True, "Update visible shifts", action="Update visible shifts")

    def check_time_slot_usage(self, time_slot: str, shift_type: str) -> Dict[str, List[str]]:
        """Rules and schedule dates that use a time slot of a shift type"""
        rules = [r.session_id for r in self.state.rules
                 if r.time_slot == time_slot and r.shift_type == shift_type]
        prefix = format_shift_key(shift_type, time_slot, "")
        dates = sorted({k.date for k, v in self.state.schedule.items() if v.label.startswith(prefix)})
        return {"rules": rules, "schedule_dates": dates}

    def save_time_slots(self, time_slots: Dict[str, List[str]]) -> EditResult:
        slots = {k: list(v) for k, v in time_slots.items()}
        self.history.commit(lambda state: replace(state, time_slots=slots), "Update time slots")
        return EditResult(True, "Update time slots", action="Update time slots")

    def save_shift_doctors(self, shift_doctors: List[ShiftDoctor]) -> EditResult:
        self.history.commit(lambda state: replace(state, shift_doctors=list(shift_doctors)),
                            "Update session doctors")
        return EditResult(True, "Update session doctors", action="Update session doctors")

    # History, import and export

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    def undo(self) -> Optional[str]:
        return self.history.undo()

    def redo(self) -> Optional[str]:
        return self.history.redo()

    def import_data(self, payload: Any) -> EditResult:
        """Merge an exported snapshot into the current state as one undoable step"""
        try:
            self.history.commit(lambda state: apply_import(state, payload), "Import data")
        except DataValidationError as e:
            logger.warning(f"Import rejected: {e}")
            return EditResult(False, str(e))
        return EditResult(True, "Import data", action="Import data")

    def export_data(self) -> Dict[str, Any]:
        return export_snapshot(self.state)

    def reset(self, state: AppState) -> None:
        """Replace the state and drop all undo/redo history"""
        self.history.reset(state)
