"""
Main Entry Point for Clinic Shift Scheduling

Wires persistence, history, the scheduling engine and reporting together
and provides the application entry point with logging and error handling.
"""

import sys
import logging
import traceback
from pathlib import Path
from datetime import date, datetime
from typing import Optional

from clinic_scheduler.data_manager import AppState, DataManager, DataSaveError
from clinic_scheduler.history import HistoryStore
from clinic_scheduler.scheduler_logic import ShiftScheduler
from clinic_scheduler.reporting import ReportGenerator


def setup_logging():
    """Setup application logging"""
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    log_file = log_dir / f"clinic_scheduler_{datetime.now().strftime('%Y%m%d')}.log"

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    return logging.getLogger(__name__)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Global exception handler"""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    logger = logging.getLogger(__name__)
    logger.error(
        "Uncaught exception",
        exc_info=(exc_type, exc_value, exc_traceback)
    )


class ClinicSchedulerApp:
    """Main application class"""

    def __init__(self, data_file: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self.data_file = data_file
        self.data_manager = None
        self.history = None
        self.scheduler = None
        self.report_generator = None

    def initialize(self, today: Optional[date] = None):
        """Load persisted data and build the engine around it"""
        try:
            self.logger.info("Initializing Clinic Scheduler Application")

            self.data_manager = DataManager(self.data_file)
            self.data_manager.data_file.parent.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"Persistent data file: {self.data_manager.data_file}")

            state = self.data_manager.load_state(today)
            self.history = HistoryStore(state)
            self.history.subscribe(self.autosave)
            self.logger.info(f"Loaded {len(state.employees)} employees, "
                             f"{len(state.rules)} session rules, {len(state.schedule)} schedule entries")

            self.scheduler = ShiftScheduler(self.history)
            self.report_generator = ReportGenerator(self.scheduler)
            self.logger.info(f"Scheduler initialized for {self.scheduler.scheduling_month:%Y-%m}")

            return True

        except Exception as e:
            self.logger.error(f"Failed to initialize application: {e}")
            self.logger.error(traceback.format_exc())
            return False

    def autosave(self, state: AppState):
        """History listener: persist every change, never failing the edit"""
        try:
            self.data_manager.save_state(state)
        except DataSaveError as e:
            self.logger.error(f"Autosave failed: {e}")

    def run(self):
        """Initialize and print the summary for the first week of the scheduling month"""
        try:
            if not self.initialize():
                return False

            summary = self.report_generator.create_dashboard_summary(self.scheduler.scheduling_month)
            print(summary)

            self.logger.info("Application closed normally")
            return True

        except Exception as e:
            self.logger.error(f"Application error: {e}")
            self.logger.error(traceback.format_exc())
            return False

        finally:
            self.cleanup()

    def cleanup(self):
        """Flush the current state to disk"""
        if self.data_manager and self.history:
            try:
                self.data_manager.save_state(self.history.state)
                self.logger.info("Data saved successfully")
            except DataSaveError as e:
                self.logger.error(f"Error during cleanup: {e}")


def main():
    """Main entry point"""
    sys.excepthook = handle_exception

    logger = setup_logging()
    logger.info("=" * 50)
    logger.info("Starting Clinic Scheduler Application")
    logger.info("=" * 50)

    app = ClinicSchedulerApp()
    success = app.run()

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
