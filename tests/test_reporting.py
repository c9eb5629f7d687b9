import pytest
import sys
from dataclasses import replace
from datetime import date
from pathlib import Path

import pandas as pd

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from clinic_scheduler.data_manager import Employee, ShiftRule, create_default_state
from clinic_scheduler.history import HistoryStore
from clinic_scheduler.reporting import ReportGenerator, week_dates
from clinic_scheduler.scheduler_logic import ShiftScheduler

SCHEDULING_MONTH = date(2026, 6, 1)  # starts on a Monday
LABEL_71 = "MORNING / 8-12 / 71"
TRACKED_82 = "MORNING / 8-12 / 82"


def build(rules):
    employees = [Employee(1, "Alice", skills=["Casting"]), Employee(2, "Bob")]
    state = replace(create_default_state(), rules=rules, employees=employees)
    scheduler = ShiftScheduler(HistoryStore(state), scheduling_month=SCHEDULING_MONTH)
    return scheduler, ReportGenerator(scheduler)


@pytest.fixture
def weekday_71():
    """Fixture for one weekday session "71" with capacity 1."""
    return build([ShiftRule(1, "71", "MORNING", "8-12", 1, [1, 2, 3, 4, 5], [1, 2, 3, 4, 5])])


@pytest.fixture
def tracked():
    """Fixture for a tracked "82" session running Monday to Saturday."""
    return build([
        ShiftRule(1, "71", "MORNING", "8-12", 1, [1]),
        ShiftRule(2, "82", "MORNING", "8-12", 1, [1, 2, 3, 4, 5, 6], required_skills=["Casting"], is_tracked=True),
    ])


def test_week_dates_skip_sunday():
    days = week_dates(date(2026, 6, 4))
    assert days[0] == date(2026, 6, 1)
    assert days[-1] == date(2026, 6, 6)
    assert len(days) == 6


def test_overfilled_session_is_not_missing(weekday_71):
    """Two people on a capacity-1 session gives missing = -1, so the day is omitted."""
    scheduler, reports = weekday_71
    scheduler.set_entry(1, "2026-06-01", "MORNING", LABEL_71)
    scheduler.set_entry(2, "2026-06-01", "MORNING", LABEL_71)

    assert scheduler.session_capacity_count("2026-06-01", LABEL_71) == 2

    report = reports.missing_shift_report(date(2026, 6, 1))
    assert "2026-06-01" not in report
    assert sorted(report) == ["2026-06-02", "2026-06-03", "2026-06-04", "2026-06-05"]
    assert report["2026-06-02"][LABEL_71] == {
        'capacity': 1, 'current_usage': 0, 'missing': 1, 'required_skills': []
    }


def test_fully_staffed_week_is_empty():
    scheduler, reports = build([ShiftRule(1, "71", "MORNING", "8-12", 1, [1], [1, 2, 3, 4, 5])])
    scheduler.set_entry(1, "2026-06-08", "MORNING", LABEL_71)

    assert reports.missing_shift_report(date(2026, 6, 10)) == {}


def test_missing_report_respects_week_frequency():
    scheduler, reports = build([ShiftRule(1, "82", "MORNING", "8-12", 2, [1], [2])])

    assert reports.missing_shift_report(date(2026, 6, 1)) == {}
    week_two = reports.missing_shift_report(date(2026, 6, 8))
    assert week_two["2026-06-08"][TRACKED_82]['missing'] == 2


def test_tracking_report_empty_without_matches(tracked):
    scheduler, reports = tracked
    scheduler.set_entry(1, "2026-06-01", "MORNING", LABEL_71)

    assert reports.tracking_report(2026, 6) == {}


def test_tracking_report_counts_within_month(tracked):
    scheduler, reports = tracked
    scheduler.set_entry(1, "2026-06-15", "MORNING", TRACKED_82)
    scheduler.set_entry(1, "2026-06-02", "MORNING", TRACKED_82)
    scheduler.set_entry(1, "2026-07-01", "MORNING", TRACKED_82)
    scheduler.set_entry(2, "2026-05-29", "MORNING", TRACKED_82)

    report = reports.tracking_report(2026, 6)
    assert report == {"Alice": {TRACKED_82: {'count': 2, 'dates': ["2026-06-02", "2026-06-15"]}}}


def test_missing_shifts_dataframe(weekday_71):
    scheduler, reports = weekday_71
    df = reports.missing_shifts_dataframe(date(2026, 6, 1))

    assert isinstance(df, pd.DataFrame)
    assert len(df) == 5
    assert list(df['Day'])[:2] == ["Monday", "Tuesday"]
    assert df['Missing'].sum() == 5


def test_empty_tracking_dataframe_keeps_columns(tracked):
    scheduler, reports = tracked
    df = reports.tracking_dataframe(2026, 6)
    assert df.empty
    assert list(df.columns) == ['Employee', 'Session', 'Count', 'Dates']


def test_schedule_dataframe_grid(weekday_71):
    scheduler, reports = weekday_71
    scheduler.set_entry(2, "2026-06-03", "MORNING", LABEL_71)

    df = reports.schedule_dataframe(2026, 6)
    assert len(df) == 2 * 3
    assert len(df.columns) == 2 + 30
    bob_morning = df[(df['Employee'] == "Bob") & (df['Shift'] == "MORNING")].iloc[0]
    assert bob_morning["2026-06-03"] == LABEL_71
    assert bob_morning["2026-06-04"] == ""


def test_export_tracking_csv(tracked, tmp_path):
    scheduler, reports = tracked
    scheduler.set_entry(1, "2026-06-02", "MORNING", TRACKED_82)
    output = tmp_path / "tracking.csv"

    assert reports.export_tracking_csv(2026, 6, str(output))
    exported = pd.read_csv(output)
    assert exported.loc[0, 'Employee'] == "Alice"
    assert exported.loc[0, 'Count'] == 1


def test_dashboard_summary(weekday_71):
    scheduler, reports = weekday_71
    for day in range(1, 6):
        scheduler.set_entry(1, f"2026-06-0{day}", "MORNING", LABEL_71)

    summary = reports.create_dashboard_summary(date(2026, 6, 3))
    assert "week of 2026-06-01" in summary
    assert "fully staffed" in summary
    assert "June 2026" in summary
