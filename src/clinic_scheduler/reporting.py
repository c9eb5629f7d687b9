"""
Reporting Module for Clinic Shift Scheduling

Builds the missing-shift report for a displayed week and the per-employee
tracking report for a month, with pandas views and CSV export of both.
"""

import calendar
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import pandas as pd

from .rule_index import is_rule_active_on
from .scheduler_logic import ShiftScheduler

logger = logging.getLogger(__name__)


def week_dates(day: date) -> List[date]:
    """Monday..Saturday of the week containing ``day``"""
    monday = day - timedelta(days=day.weekday())
    return [monday + timedelta(days=offset) for offset in range(6)]


class ReportGenerator:
    """Generates reports over the scheduler's current state"""

    def __init__(self, scheduler: ShiftScheduler):
        self.scheduler = scheduler

    def missing_shift_report(self, week_day: date,
                             scheduling_month: Optional[date] = None) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """
        Under-filled sessions for the week containing ``week_day``.

        Args:
            week_day: Any date of the displayed week
            scheduling_month: Month used for week-of-month numbering
                (defaults to the scheduler's scheduling month)

        Returns:
            ``{date: {full_shift_key: {capacity, current_usage, missing,
            required_skills}}}``. Days without shortfalls are left out, so a
            fully staffed week yields an empty dict.
        """
        month = scheduling_month or self.scheduler.scheduling_month
        rules = self.scheduler.state.rules
        report = {}

        for day in week_dates(week_day):
            date_str = day.isoformat()
            day_report = {}

            for rule in rules:
                if not is_rule_active_on(rule, day, month):
                    continue

                full_shift_key = rule.full_shift_key
                current_usage = self.scheduler.session_capacity_count(date_str, full_shift_key)
                missing = rule.capacity - current_usage
                if missing > 0:
                    day_report[full_shift_key] = {
                        'capacity': rule.capacity,
                        'current_usage': current_usage,
                        'missing': missing,
                        'required_skills': list(rule.required_skills)
                    }

            if day_report:
                report[date_str] = day_report

        logger.debug(f"Missing-shift report for week of {week_dates(week_day)[0]}: {len(report)} day(s) short")
        return report

    def tracking_report(self, year: int, month: int) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """
        Count tracked-session assignments per employee within a month.

        Returns ``{employee_name: {full_shift_key: {count, dates}}}``;
        employees and rules without matches are omitted.
        """
        month_prefix = f"{year}-{month:02d}"
        state = self.scheduler.state
        tracked_rules = [rule for rule in state.rules if rule.is_tracked]
        report = {}

        for emp in state.employees:
            emp_entries = [
                (key.date, entry.label) for key, entry in state.schedule.items()
                if key.employee_id == emp.id and key.date.startswith(month_prefix)
            ]
            emp_report = {}

            for rule in tracked_rules:
                target_key = rule.full_shift_key
                dates = sorted(d for d, label in emp_entries if label.startswith(target_key))
                if dates:
                    emp_report[target_key] = {'count': len(dates), 'dates': dates}

            if emp_report:
                report[emp.name] = emp_report

        return report

    def missing_shifts_dataframe(self, week_day: date,
                                 scheduling_month: Optional[date] = None) -> pd.DataFrame:
        """Flatten the missing-shift report into one row per under-filled session"""
        report = self.missing_shift_report(week_day, scheduling_month)
        data = []

        for date_str, day_report in report.items():
            for full_shift_key, info in day_report.items():
                data.append({
                    'Date': date_str,
                    'Day': date.fromisoformat(date_str).strftime("%A"),
                    'Session': full_shift_key,
                    'Capacity': info['capacity'],
                    'Assigned': info['current_usage'],
                    'Missing': info['missing'],
                    'Required_Skills': ", ".join(info['required_skills'])
                })

        return pd.DataFrame(data, columns=['Date', 'Day', 'Session', 'Capacity',
                                           'Assigned', 'Missing', 'Required_Skills'])

    def tracking_dataframe(self, year: int, month: int) -> pd.DataFrame:
        report = self.tracking_report(year, month)
        data = []

        for name, emp_report in report.items():
            for full_shift_key, info in emp_report.items():
                data.append({
                    'Employee': name,
                    'Session': full_shift_key,
                    'Count': info['count'],
                    'Dates': ", ".join(info['dates'])
                })

        return pd.DataFrame(data, columns=['Employee', 'Session', 'Count', 'Dates'])

    def schedule_dataframe(self, year: int, month: int) -> pd.DataFrame:
        """Month grid: one row per active employee and shift type, one column per day"""
        days_in_month = calendar.monthrange(year, month)[1]
        dates = [date(year, month, day).isoformat() for day in range(1, days_in_month + 1)]
        state = self.scheduler.state
        data = []

        for emp in self.scheduler.get_employees():
            for shift_type in state.visible_shifts:
                row = {'Employee': emp.name, 'Shift': shift_type}
                for date_str in dates:
                    entry = self.scheduler.get_entry(date_str, emp.id, shift_type)
                    row[date_str] = entry.label if entry else ''
                data.append(row)

        return pd.DataFrame(data, columns=['Employee', 'Shift'] + dates)

    def export_tracking_csv(self, year: int, month: int, output_path: str) -> bool:
        """Export the tracking report to CSV"""
        try:
            self.tracking_dataframe(year, month).to_csv(output_path, index=False)
            return True
        except (IOError, OSError) as e:
            logger.error(f"Error exporting tracking report to CSV: {e}", exc_info=True)
            return False

    def export_schedule_csv(self, year: int, month: int, output_path: str) -> bool:
        """Export the month grid to CSV"""
        try:
            self.schedule_dataframe(year, month).to_csv(output_path, index=False)
            return True
        except (IOError, OSError) as e:
            logger.error(f"Error exporting schedule to CSV: {e}", exc_info=True)
            return False

    def create_dashboard_summary(self, week_day: date) -> str:
        """Text summary of the week's shortfalls and the month's tracked sessions"""
        missing = self.missing_shift_report(week_day)
        tracking = self.tracking_report(week_day.year, week_day.month)
        week_start = week_dates(week_day)[0]

        lines = [f"SCHEDULE SUMMARY - week of {week_start.isoformat()}", ""]

        if not missing:
            lines.append("All sessions are fully staffed this week.")
        else:
            total_missing = sum(info['missing'] for day in missing.values() for info in day.values())
            lines.append(f"Missing Shifts ({total_missing} open position(s)):")
            for date_str, day_report in missing.items():
                for full_shift_key, info in day_report.items():
                    skills = f" [{', '.join(info['required_skills'])}]" if info['required_skills'] else ""
                    lines.append(f"• {date_str} {full_shift_key}: "
                                 f"{info['current_usage']}/{info['capacity']}{skills}")

        lines.append("")
        lines.append(f"Tracked Sessions - {calendar.month_name[week_day.month]} {week_day.year}:")
        if not tracking:
            lines.append("• None")
        for name, emp_report in tracking.items():
            for full_shift_key, info in emp_report.items():
                lines.append(f"• {name}: {full_shift_key} x{info['count']}")

        return "\n".join(lines)
