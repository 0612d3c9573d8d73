"""Daily log files recording each finished sync run."""

import logging
from datetime import date
from pathlib import Path
from typing import Optional

from .models import SyncState, SyncStatus


class DailyLogger:
    """Logger that rotates log files daily."""

    def __init__(self, name: str, filename_template: str, log_dir: Path, subfolder: str = ""):
        """
        Initialize daily rotating logger.

        Args:
            name: Logger name
            filename_template: Template for log filename (e.g., "sync_runs_{date}.log")
            log_dir: Base log directory (e.g., Path("logs"))
            subfolder: Subfolder name within log_dir (e.g., "sync_runs")
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        self.filename_template = filename_template
        self.log_dir = Path(log_dir) / subfolder if subfolder else Path(log_dir)
        self.current_date: Optional[str] = None

    def current_file(self, today: Optional[date] = None) -> Path:
        today = today or date.today()
        return self.log_dir / str(today.year) / f"{today.month:02d}" / self.filename_template.format(date=today.isoformat())

    def get(self) -> logging.Logger:
        today = date.today()
        today_iso = today.isoformat()
        if self.current_date != today_iso:
            for handler in list(self.logger.handlers):
                self.logger.removeHandler(handler)
                handler.close()

            # logs/<subfolder>/YYYY/MM/<file>
            log_file = self.current_file(today)
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_file, encoding="utf-8")
            handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
            self.logger.addHandler(handler)
            self.current_date = today_iso
        return self.logger

    def close(self) -> None:
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()
        self.current_date = None


class SyncRunRecorder:
    """
    State subscriber that writes one line per finished run.

    A run is finished when the guard is released with a success or error
    status; running and idle transitions are not recorded.
    """

    def __init__(self, daily_logger: DailyLogger):
        self.daily_logger = daily_logger
        self._was_running = False

    def __call__(self, state: SyncState) -> None:
        finished = self._was_running and not state.is_running
        self._was_running = state.is_running
        if not finished:
            return

        logger = self.daily_logger.get()
        if state.last_status == SyncStatus.SUCCESS:
            logger.info(
                f"SUCCESS imported={state.imported_count} errors={state.error_count}"
                f"{f' message={state.last_message}' if state.last_message else ''}"
            )
        elif state.last_status == SyncStatus.ERROR:
            logger.error(f"ERROR total_errors={state.error_count} message={state.last_message}")
        else:
            logger.info(f"CANCELLED {state.last_message or ''}".rstrip())
