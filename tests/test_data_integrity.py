import pytest
import sys
from pathlib import Path
from datetime import date, datetime
import tempfile
import os
import json
from dataclasses import replace

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from clinic_scheduler import data_manager as dm_module
from clinic_scheduler.data_manager import (
    EXPORT_VERSION, DataFileCorruptedError, DataManager, DataValidationError, ScheduleKey,
    ShiftEntry, ShiftRule, apply_import, create_default_state, export_snapshot, prune_schedule
)
from clinic_scheduler.main import ClinicSchedulerApp

TODAY = date(2026, 10, 19)


@pytest.fixture
def data_file():
    """Fixture for an isolated data file path, cleaned up with its backup."""
    with tempfile.NamedTemporaryFile(
        mode="w", suffix=".json", delete=False
    ) as temp_file:
        temp_path = temp_file.name
        json.dump({}, temp_file)

    yield temp_path
    for path in (Path(temp_path), Path(temp_path).with_suffix('.bak')):
        if path.exists():
            os.unlink(path)


def write_json(path, payload):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False)


def test_empty_file_loads_defaults(data_file):
    state = DataManager(data_file).load_state(TODAY)
    defaults = create_default_state()

    assert state.employees == defaults.employees
    assert state.rules == defaults.rules
    assert state.schedule == {}
    assert state.visible_shifts == ["MORNING", "AFTERNOON", "NIGHT"]


def test_missing_file_loads_defaults(tmp_path):
    state = DataManager(str(tmp_path / "nothing.json")).load_state(TODAY)
    assert len(state.employees) == 4


def test_collections_fall_back_independently(data_file):
    """A corrupt employee list must not take the schedule down with it."""
    write_json(data_file, {
        "employees": "corrupted",
        "schedule": {"2026-10-20_1_MORNING": "MORNING / 8-12 / 83診"},
        "customShiftRules": [{"id": 1}],
        "skills": ["Ultrasound"],
    })

    state = DataManager(data_file).load_state(TODAY)

    assert state.employees == create_default_state().employees
    assert state.rules == create_default_state().rules
    assert state.skills == ["Ultrasound"]
    assert state.schedule == {ScheduleKey("2026-10-20", 1, "MORNING"): ShiftEntry("MORNING / 8-12 / 83診")}


def test_malformed_schedule_entries_are_dropped(data_file):
    write_json(data_file, {"schedule": {
        "2026-10-20_1_MORNING": {"label": "OFF", "memo": " sick "},
        "2026-10-20_x_MORNING": "OFF",
        "garbage": "OFF",
        "2026-10-21_2_NIGHT": 42,
    }})

    schedule = DataManager(data_file).load_state(TODAY).schedule
    assert schedule == {ScheduleKey("2026-10-20", 1, "MORNING"): ShiftEntry("OFF", "sick")}


def test_prune_schedule_retention_window():
    raw = {
        "2026-07-20_1_MORNING": "OFF",
        "2026-07-21_1_MORNING": "OFF",
        "2026-10-01_2_NIGHT": "OFF",
        "not-a-date_1_MORNING": "OFF",
    }
    pruned, deleted = prune_schedule(raw, 90, TODAY)

    assert deleted == 1
    assert set(pruned) == {"2026-07-21_1_MORNING", "2026-10-01_2_NIGHT", "not-a-date_1_MORNING"}


def test_load_prunes_old_entries(data_file):
    write_json(data_file, {"schedule": {
        "2026-01-05_1_MORNING": "OFF",
        "2026-10-05_1_MORNING": "OFF",
    }})

    schedule = DataManager(data_file).load_state(TODAY).schedule
    assert list(schedule) == [ScheduleKey("2026-10-05", 1, "MORNING")]


def test_prune_failure_keeps_unpruned_data(data_file, monkeypatch):
    write_json(data_file, {"schedule": {"2026-01-05_1_MORNING": "OFF"}})

    def broken_prune(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(dm_module, "prune_schedule", broken_prune)
    schedule = DataManager(data_file).load_state(TODAY).schedule
    assert ScheduleKey("2026-01-05", 1, "MORNING") in schedule


@pytest.mark.parametrize("bad_rule", ["71", None, 42, {"id": 1, "sessionId": "71", "shiftType": "MORNING",
                                                       "timeSlot": "8-12", "capacity": 0}])
def test_bad_rule_item_falls_back_to_default_rules(data_file, bad_rule):
    """One unusable rule entry resets only the rule list."""
    write_json(data_file, {"customShiftRules": [bad_rule], "skills": ["A"]})

    state = DataManager(data_file).load_state(TODAY)

    assert state.rules == create_default_state().rules
    assert state.skills == ["A"]


def test_zero_capacity_rule_is_rejected():
    with pytest.raises(ValueError):
        ShiftRule.from_dict({"id": 1, "sessionId": "71", "shiftType": "MORNING", "timeSlot": "8-12", "capacity": 0})


@pytest.mark.parametrize("key", ["employees", "customShiftRules", "shiftDoctors"])
def test_apply_import_rejects_non_object_items(key):
    payload = {"schedule": {}, key: [None]}
    with pytest.raises(DataValidationError):
        apply_import(create_default_state(), payload)


def test_save_and_reload(data_file):
    manager = DataManager(data_file)
    state = manager.load_state(TODAY)
    key = ScheduleKey("2026-10-20", 1, "MORNING")
    state = replace(state, schedule={key: ShiftEntry("MORNING / 8-12 / 83診", "swap with Li")})

    assert manager.save_state(state)

    with open(data_file, encoding="utf-8") as f:
        raw = json.load(f)
    assert raw["schedule"] == {"2026-10-20_1_MORNING": {"label": "MORNING / 8-12 / 83診", "memo": "swap with Li"}}
    assert set(raw) == {"employees", "schedule", "skills", "customShiftRules",
                        "visibleShifts", "timeSlots", "shiftDoctors"}

    reloaded = DataManager(data_file).load_state(TODAY)
    assert reloaded == state


def test_corrupt_main_file_recovers_from_backup(data_file):
    manager = DataManager(data_file)
    state = manager.load_state(TODAY)
    manager.save_state(replace(state, skills=["First"]))
    manager.save_state(replace(state, skills=["Second"]))

    with open(data_file, "w", encoding="utf-8") as f:
        f.write("{not json")

    assert DataManager(data_file).load_state(TODAY).skills == ["First"]


def test_export_snapshot_has_version_and_timestamp():
    snapshot = export_snapshot(create_default_state(), datetime(2026, 10, 19, 9, 30))
    assert snapshot["version"] == EXPORT_VERSION
    assert snapshot["exportDate"] == "2026-10-19T09:30:00"
    assert len(snapshot["customShiftRules"]) == len(create_default_state().rules)


def test_apply_import_replaces_only_supplied_collections():
    state = create_default_state()
    imported = apply_import(state, {
        "schedule": {"2026-10-20_2_NIGHT": "OFF_CONFIRMED"},
        "timeSlots": {"NIGHT": ["6-9"]},
        "employees": None,
    })

    assert imported.employees is state.employees
    assert imported.time_slots == {"NIGHT": ["6-9"]}
    assert imported.schedule == {ScheduleKey("2026-10-20", 2, "NIGHT"): ShiftEntry("OFF_CONFIRMED")}


@pytest.mark.parametrize("payload", ["text", {"version": "1.0.4"}, {"schedule": []}])
def test_apply_import_rejects_payload_without_core_data(payload):
    with pytest.raises(DataValidationError):
        apply_import(create_default_state(), payload)


def test_read_import_file_rejects_invalid_json(tmp_path):
    path = tmp_path / "import.json"
    path.write_text("[1, 2", encoding="utf-8")

    with pytest.raises(DataFileCorruptedError):
        DataManager(str(tmp_path / "data.json")).read_import_file(str(path))


def test_app_autosaves_every_change(tmp_path):
    data_file = tmp_path / "data" / "clinic.json"
    app = ClinicSchedulerApp(str(data_file))
    assert app.initialize(TODAY)

    app.scheduler.set_entry(2, "2026-10-20", "MORNING", "OFF")

    with open(data_file, encoding="utf-8") as f:
        raw = json.load(f)
    assert raw["schedule"]["2026-10-20_2_AFTERNOON"] == "OFF"

    app.scheduler.undo()
    with open(data_file, encoding="utf-8") as f:
        assert json.load(f)["schedule"] == {}
