"""
Clinic Shift Scheduling Core

Undo/redo state history, session rule lookups, assignment validation and
staffing reports for a clinic's weekly shift grid.
"""

__version__ = "1.0.0"
__author__ = "Clinic Scheduler Team"
