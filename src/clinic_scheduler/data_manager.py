"""
Data Manager for Clinic Shift Scheduling

Defines the data model (employees, session rules, schedule entries and the
application state bundle) and handles JSON persistence, retention pruning
and snapshot import/export.
"""

import json
import logging
import sys
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90
EXPORT_VERSION = "1.0.4"

OFF = "OFF"
OFF_CONFIRMED = "OFF_CONFIRMED"
OFF_STATES = (OFF, OFF_CONFIRMED)
LABEL_SEPARATOR = " / "
KEY_SEPARATOR = "_"

ROLES = ("FULL_TIME", "PART_TIME", "SUPPORT")
SCHEDULABLE_WEEKDAYS = (1, 2, 3, 4, 5, 6)  # Monday..Saturday
WEEK_FREQUENCIES = (1, 2, 3, 4, 5)


class DataManagerError(Exception):
    """Base exception for DataManager operations"""
    pass


class DataFileCorruptedError(DataManagerError):
    """Raised when a data or import file cannot be parsed"""
    pass


class DataSaveError(DataManagerError):
    """Raised when saving data fails"""
    pass


class DataValidationError(DataManagerError):
    """Raised when data validation fails"""
    pass


class ShiftType(str, Enum):
    MORNING = "MORNING"
    AFTERNOON = "AFTERNOON"
    NIGHT = "NIGHT"


ALL_SHIFT_TYPES = [shift_type.value for shift_type in ShiftType]


def format_shift_key(shift_type: str, time_slot: str, session_id: str) -> str:
    """Build the compound "shiftType / timeSlot / sessionId" label"""
    return LABEL_SEPARATOR.join([str(shift_type), str(time_slot), str(session_id)])


class ScheduleKey(NamedTuple):
    """Composite key of a schedule entry"""
    date: str  # YYYY-MM-DD
    employee_id: int
    shift_type: str

    def to_str(self) -> str:
        return f"{self.date}{KEY_SEPARATOR}{self.employee_id}{KEY_SEPARATOR}{self.shift_type}"

    @classmethod
    def parse(cls, raw: str) -> 'ScheduleKey':
        parts = raw.split(KEY_SEPARATOR, 2)
        if len(parts) != 3:
            raise ValueError(f"Invalid schedule key: {raw!r}")
        date_str, emp_id, shift_type = parts
        date.fromisoformat(date_str)
        return cls(date_str, int(emp_id), shift_type)


@dataclass(frozen=True)
class ShiftEntry:
    """Value of one schedule cell: OFF, OFF_CONFIRMED or a compound label"""
    label: str
    memo: str = ""

    @property
    def is_off(self) -> bool:
        return self.label in OFF_STATES

    @property
    def session_id(self) -> Optional[str]:
        """Session id embedded in a compound label, None for anything else"""
        parts = self.label.split(LABEL_SEPARATOR)
        return parts[2] if len(parts) == 3 else None

    def to_value(self) -> Any:
        if self.memo:
            return {"label": self.label, "memo": self.memo}
        return self.label

    @classmethod
    def from_value(cls, value: Any) -> 'ShiftEntry':
        if isinstance(value, str) and value:
            return cls(value)
        if isinstance(value, dict) and isinstance(value.get("label"), str) and value["label"]:
            return cls(value["label"], str(value.get("memo") or "").strip())
        raise ValueError(f"Invalid schedule entry: {value!r}")


Schedule = Dict[ScheduleKey, ShiftEntry]


def _require_mapping(data: Any, kind: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{kind} must be an object, got {type(data).__name__}")
    return data


@dataclass(frozen=True)
class Employee:
    """Staff member; inactive employees are kept for historical entries"""
    id: int
    name: str
    role: str = "FULL_TIME"
    is_active: bool = True
    display_order: int = 0
    skills: List[str] = field(default_factory=list)
    major_shift: str = "NONE"
    main_session_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "isActive": self.is_active,
            "displayOrder": self.display_order,
            "skills": list(self.skills),
            "majorShift": self.major_shift,
            "mainSessionId": self.main_session_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Employee':
        data = _require_mapping(data, "Employee")
        return cls(
            id=int(data["id"]),
            name=str(data["name"]),
            role=data.get("role", "FULL_TIME"),
            is_active=data.get("isActive", True) is not False,
            display_order=int(data.get("displayOrder", data["id"])),
            skills=list(data.get("skills") or []),
            major_shift=data.get("majorShift") or "NONE",
            main_session_id=str(data.get("mainSessionId") or "").strip()
        )


@dataclass(frozen=True)
class ShiftRule:
    """Recurring clinic session definition"""
    id: int
    session_id: str
    shift_type: str
    time_slot: str
    capacity: int = 1
    days: List[int] = field(default_factory=list)  # 1=Monday .. 6=Saturday
    week_frequency: List[int] = field(default_factory=lambda: list(WEEK_FREQUENCIES))
    required_skills: List[str] = field(default_factory=list)
    is_tracked: bool = False
    department: Optional[str] = None

    @property
    def full_shift_key(self) -> str:
        return format_shift_key(self.shift_type, self.time_slot, self.session_id)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "sessionId": self.session_id,
            "shiftType": self.shift_type,
            "timeSlot": self.time_slot,
            "capacity": self.capacity,
            "days": list(self.days),
            "weekFrequency": list(self.week_frequency),
            "requiredSkills": list(self.required_skills),
            "isTracked": self.is_tracked
        }
        if self.department:
            data["department"] = self.department
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ShiftRule':
        data = _require_mapping(data, "Session rule")
        capacity = int(data.get("capacity", 1))
        if capacity < 1:
            raise ValueError(f"Rule capacity must be positive: {capacity}")
        return cls(
            id=data["id"],
            session_id=str(data["sessionId"]),
            shift_type=str(data["shiftType"]),
            time_slot=str(data["timeSlot"]),
            capacity=capacity,
            days=[int(d) for d in data.get("days") or []],
            week_frequency=[int(w) for w in data.get("weekFrequency") or WEEK_FREQUENCIES],
            required_skills=list(data.get("requiredSkills") or []),
            is_tracked=bool(data.get("isTracked", False)),
            department=data.get("department")
        )


@dataclass(frozen=True)
class ShiftDoctor:
    """Doctor attached to a session on given weekdays"""
    id: int
    session_id: str
    shift_type: str
    days: List[int] = field(default_factory=list)
    doctor_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "shiftType": self.shift_type,
            "days": list(self.days),
            "doctorName": self.doctor_name
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ShiftDoctor':
        data = _require_mapping(data, "Session doctor")
        return cls(
            id=data["id"],
            session_id=str(data["sessionId"]),
            shift_type=str(data["shiftType"]),
            days=[int(d) for d in data.get("days") or []],
            doctor_name=str(data.get("doctorName", ""))
        )


@dataclass(frozen=True)
class AppState:
    """The whole application state tracked by the history store"""
    employees: List[Employee]
    schedule: Schedule
    skills: List[str]
    rules: List[ShiftRule]
    visible_shifts: List[str]
    time_slots: Dict[str, List[str]]
    shift_doctors: List[ShiftDoctor]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "employees": [emp.to_dict() for emp in self.employees],
            "schedule": schedule_to_dict(self.schedule),
            "skills": list(self.skills),
            "customShiftRules": [rule.to_dict() for rule in self.rules],
            "visibleShifts": list(self.visible_shifts),
            "timeSlots": {k: list(v) for k, v in self.time_slots.items()},
            "shiftDoctors": [doc.to_dict() for doc in self.shift_doctors]
        }


# Default data

DEFAULT_SKILLS = ["Ultrasound", "Suture removal", "Casting", "Dr. Kao", "Other"]

DEFAULT_TIME_SLOTS = {
    "MORNING": ["8-12", "8'-12'", "9-1"],
    "AFTERNOON": ["12'-4'", "1-5", "1'-5'", "2-5", "2-6"],
    "NIGHT": ["5-9", "5'-9'", "6-9", "6-10"],
}

PRIME_SESSIONS = [
    "71診", "72診", "73診", "74診", "76診", "78診", "79診",
    "80診", "84診", "94診", "95診", "97診", "98診"
]


def _default_rules() -> List[ShiftRule]:
    rules = [
        ShiftRule(7, "83診", "MORNING", "8-12", 1, [1], required_skills=["Suture removal"]),
        ShiftRule(8, "82診", "MORNING", "8-12", 1, [1, 2, 3, 4, 5, 6], [1, 3],
                  required_skills=["Casting"], is_tracked=True),
        ShiftRule(9, "102診", "MORNING", "8-12", 1, [4]),
        ShiftRule(10, "105診", "MORNING", "8'-12'", 2, [1, 2], [2, 4]),
        ShiftRule(11, "105診", "MORNING", "8-12", 1, [4]),
    ]
    for idx, session_id in enumerate(PRIME_SESSIONS):
        rules.append(ShiftRule(200 + idx, session_id, "MORNING", "8'-12'", 1, [1, 2, 3, 4, 5]))
    rules.append(ShiftRule(400, "Clinic", "MORNING", "9-1", 1, [1, 2, 3, 4, 5, 6]))
    return rules


def _default_employees() -> List[Employee]:
    return [
        Employee(1, "Wang Hsiao-ming", "FULL_TIME", True, 1,
                 ["Suture removal", "Casting"], "8-12", "83"),
        Employee(2, "Li Ta-hua", "FULL_TIME", True, 2, ["Casting", "Ultrasound"], "8-4'", ""),
        Employee(3, "Chen Ya-ting", "PART_TIME", True, 3, ["Suture removal"], "8'-12'", "105"),
        Employee(4, "Chang Chih-hao", "SUPPORT", True, 4, [], "NONE", ""),
    ]


def create_default_state() -> AppState:
    """Create the state used when nothing has been persisted yet"""
    return AppState(
        employees=_default_employees(),
        schedule={},
        skills=list(DEFAULT_SKILLS),
        rules=_default_rules(),
        visible_shifts=list(ALL_SHIFT_TYPES),
        time_slots={k: list(v) for k, v in DEFAULT_TIME_SLOTS.items()},
        shift_doctors=[]
    )


# Conversion helpers

def schedule_to_dict(schedule: Schedule) -> Dict[str, Any]:
    return {key.to_str(): entry.to_value() for key, entry in schedule.items()}


def schedule_from_dict(raw: Mapping[str, Any]) -> Schedule:
    """Parse a persisted schedule mapping, dropping entries that do not parse"""
    schedule = {}
    for raw_key, raw_value in raw.items():
        try:
            schedule[ScheduleKey.parse(raw_key)] = ShiftEntry.from_value(raw_value)
        except (ValueError, TypeError) as e:
            logger.warning(f"Dropping malformed schedule entry {raw_key!r}: {e}")
    return schedule


def prune_schedule(raw_schedule: Optional[Mapping[str, Any]],
                   retention_days: int = DEFAULT_RETENTION_DAYS,
                   base_date: Optional[date] = None) -> Tuple[Dict[str, Any], int]:
    """
    Remove schedule entries older than the retention window.

    Args:
        raw_schedule: Persisted schedule mapping keyed by "date_empId_shiftType"
        retention_days: Number of days to keep before base_date
        base_date: Reference day (defaults to today)

    Returns:
        Tuple of (pruned mapping, number of entries removed). Keys whose date
        part does not parse are kept.
    """
    if not raw_schedule:
        return {}, 0

    cutoff = (base_date or date.today()) - timedelta(days=retention_days)
    pruned = {}
    deleted_count = 0

    for key, value in raw_schedule.items():
        date_str = key.split(KEY_SEPARATOR)[0]
        try:
            item_date = date.fromisoformat(date_str)
        except ValueError:
            pruned[key] = value
            continue
        if item_date < cutoff:
            deleted_count += 1
        else:
            pruned[key] = value

    return pruned, deleted_count


def _parse_strings(items: List[Any]) -> List[str]:
    if not all(isinstance(i, str) for i in items):
        raise ValueError("expected a list of strings")
    return list(items)


def _parse_time_slots(value: Dict[str, Any]) -> Dict[str, List[str]]:
    slots = {}
    for shift_type, labels in value.items():
        if not isinstance(labels, list):
            raise ValueError(f"time slots for {shift_type} must be a list")
        slots[str(shift_type)] = _parse_strings(labels)
    return slots


# persisted key -> (AppState field, expected JSON type, parser)
COLLECTIONS: Dict[str, Tuple[str, type, Callable[[Any], Any]]] = {
    "employees": ("employees", list, lambda v: [Employee.from_dict(item) for item in v]),
    "schedule": ("schedule", dict, schedule_from_dict),
    "skills": ("skills", list, _parse_strings),
    "customShiftRules": ("rules", list, lambda v: [ShiftRule.from_dict(item) for item in v]),
    "visibleShifts": ("visible_shifts", list, _parse_strings),
    "timeSlots": ("time_slots", dict, _parse_time_slots),
    "shiftDoctors": ("shift_doctors", list, lambda v: [ShiftDoctor.from_dict(item) for item in v]),
}


def apply_import(state: AppState, payload: Any) -> AppState:
    """
    Merge an imported snapshot into ``state``.

    Collections present in the payload with the right shape replace the
    current ones wholesale; everything else is carried over.

    Raises:
        DataValidationError: if the payload is not a mapping, has none of the
            core collections, or a supplied collection fails to parse.
    """
    if not isinstance(payload, dict):
        raise DataValidationError("Import data must be a JSON object")

    has_core_data = (
        isinstance(payload.get("employees"), list) or
        isinstance(payload.get("schedule"), dict) or
        isinstance(payload.get("customShiftRules"), list)
    )
    if not has_core_data:
        raise DataValidationError("Import data contains no employees, schedule or rules")

    updates = {}
    for key, (attr, kind, parser) in COLLECTIONS.items():
        if not isinstance(payload.get(key), kind):
            continue
        try:
            updates[attr] = parser(payload[key])
        except (KeyError, TypeError, ValueError) as e:
            raise DataValidationError(f"Invalid '{key}' in import data: {e}")

    return replace(state, **updates)


def export_snapshot(state: AppState, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Full snapshot of the state tagged with format version and timestamp"""
    snapshot = {"version": EXPORT_VERSION}
    snapshot.update(state.to_dict())
    snapshot["exportDate"] = (now or datetime.now()).isoformat()
    return snapshot


def _default_data_file() -> Path:
    if getattr(sys, 'frozen', False):
        base_path = Path(sys.executable).parent
    else:
        base_path = Path(__file__).parent.parent
    return base_path / "data" / "clinic_schedule.json"


class DataManager:
    """Loads and stores the application state, one key per collection"""

    def __init__(self, data_file: Optional[str] = None,
                 retention_days: int = DEFAULT_RETENTION_DAYS):
        self.data_file = Path(data_file) if data_file else _default_data_file()
        self.retention_days = retention_days

    def _read_json(self, path: Path) -> Dict[str, Any]:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise DataFileCorruptedError(f"{path} does not contain a JSON object")
        return data

    def _load_raw_data(self) -> Dict[str, Any]:
        """Read the data file, falling back to the backup and then to nothing"""
        backup_file = self.data_file.with_suffix('.bak')

        if self.data_file.exists():
            try:
                return self._read_json(self.data_file)
            except (json.JSONDecodeError, IOError, DataFileCorruptedError) as e:
                logger.error(f"Error loading main data file {self.data_file}: {e}")

        if backup_file.exists():
            try:
                logger.info(f"Attempting recovery from backup file {backup_file}")
                data = self._read_json(backup_file)
                logger.info("Successfully recovered data from backup")
                return data
            except (json.JSONDecodeError, IOError, DataFileCorruptedError) as e:
                logger.error(f"Backup file also unreadable: {e}")

        logger.info("No usable data file found, starting from defaults")
        return {}

    def load_state(self, today: Optional[date] = None) -> AppState:
        """
        Build the initial state from the data file.

        Each collection falls back to its default on its own when missing or
        malformed. Old schedule entries are pruned once here.
        """
        raw = self._load_raw_data()
        defaults = create_default_state()

        raw_schedule = raw.get("schedule")
        if isinstance(raw_schedule, dict):
            try:
                pruned, deleted_count = prune_schedule(raw_schedule, self.retention_days, today)
                if deleted_count > 0:
                    logger.info(f"Removed {deleted_count} schedule entries older than {self.retention_days} days")
                raw = dict(raw, schedule=pruned)
            except Exception as e:
                logger.error(f"Schedule cleanup failed, keeping unpruned data: {e}", exc_info=True)

        values = {}
        for key, (attr, kind, parser) in COLLECTIONS.items():
            if key not in raw or raw[key] is None:
                values[attr] = getattr(defaults, attr)
                continue
            if not isinstance(raw[key], kind):
                logger.error(f"'{key}' in {self.data_file} is not a {kind.__name__}, using defaults")
                values[attr] = getattr(defaults, attr)
                continue
            try:
                values[attr] = parser(raw[key])
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Malformed '{key}' in {self.data_file}, using defaults: {e}")
                values[attr] = getattr(defaults, attr)

        return AppState(**values)

    def save_state(self, state: AppState) -> bool:
        """Save the state to file atomically, keeping the previous file as backup"""
        temp_file = self.data_file.with_suffix('.tmp')
        backup_file = self.data_file.with_suffix('.bak')

        try:
            self.data_file.parent.mkdir(parents=True, exist_ok=True)

            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(state.to_dict(), f, indent=2, ensure_ascii=False)

            if self.data_file.exists():
                self.data_file.replace(backup_file)
            temp_file.replace(self.data_file)
            return True

        except (IOError, OSError, TypeError, ValueError) as e:
            logger.error(f"Error during save operation: {e}", exc_info=True)
            raise DataSaveError(f"Failed to save data: {e}")

        finally:
            if temp_file.exists():
                try:
                    temp_file.unlink()
                except OSError as cleanup_e:
                    logger.error(f"Failed to clean up temporary file {temp_file}: {cleanup_e}")

    def read_import_file(self, path: str) -> Dict[str, Any]:
        """Read an exported snapshot from disk"""
        try:
            return self._read_json(Path(path))
        except (json.JSONDecodeError, IOError) as e:
            raise DataFileCorruptedError(f"Cannot read import file {path}: {e}")
