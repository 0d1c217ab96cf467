"""Custom logging handler utilities."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

DEFAULT_LOG_TIMEZONE = "Asia/Tokyo"


class DateStampedFileHandler(logging.FileHandler):
    """File handler that stores logs under date-stamped directories.

    Files land at ``<directory>/<YYYY-MM-DD>/<prefix>_<YYYY-MM-DD_HH-MM-SS>_<TZ>.log``
    with the date and time rendered in ``tz``.
    """

    def __init__(
        self,
        directory: str | Path = "logs",
        *,
        prefix: str = "yomiage",
        tz: str | ZoneInfo = DEFAULT_LOG_TIMEZONE,
        encoding: str | None = "utf-8",
        mode: str = "a",
        delay: bool = False,
        errors: Optional[str] = None,
        current_time: datetime | None = None,
    ) -> None:
        zone = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)
        timestamp = (current_time or datetime.now(timezone.utc)).astimezone(zone)

        tz_abbr = timestamp.tzname() or "UTC"
        date_folder = timestamp.strftime("%Y-%m-%d")
        human_time = timestamp.strftime("%Y-%m-%d_%H-%M-%S")
        file_name = f"{prefix}_{human_time}_{tz_abbr}.log"
        log_path = (Path(directory).resolve() / date_folder / file_name).resolve()

        log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path = log_path
        super().__init__(
            log_path,
            mode=mode,
            encoding=encoding,
            delay=delay,
            errors=errors,
        )


def cleanup_old_logs(
    log_directories: list[str | Path],
    retention_hours: int,
    logger: logging.Logger | None = None,
) -> tuple[int, int]:
    """
    Delete log files older than the specified retention period.

    Args:
        log_directories: Directories to sweep recursively for ``*.log`` files
        retention_hours: Files older than this many hours will be deleted (0 = disabled)
        logger: Optional logger for reporting cleanup activity

    Returns:
        Tuple of (files_deleted, errors_encountered)
    """
    if retention_hours <= 0:
        return (0, 0)

    cutoff_time = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
    files_deleted = 0
    errors = 0

    for directory in log_directories:
        dir_path = Path(directory).resolve()
        if not dir_path.exists():
            continue

        for log_file in dir_path.rglob("*.log"):
            try:
                mtime = datetime.fromtimestamp(log_file.stat().st_mtime, tz=timezone.utc)
                if mtime < cutoff_time:
                    log_file.unlink()
                    files_deleted += 1
                    if logger:
                        logger.debug("Deleted old log file: %s", log_file)
            except OSError as exc:
                errors += 1
                if logger:
                    logger.warning("Failed to delete %s: %s", log_file, exc)

        # Remove date directories emptied by the sweep
        for date_dir in dir_path.iterdir():
            if date_dir.is_dir() and not any(date_dir.iterdir()):
                try:
                    date_dir.rmdir()
                except OSError as exc:
                    errors += 1
                    if logger:
                        logger.warning("Failed to remove %s: %s", date_dir, exc)

    if logger and files_deleted > 0:
        logger.info(
            "Log cleanup complete: %d file(s) deleted, %d error(s) encountered",
            files_deleted,
            errors,
        )

    return (files_deleted, errors)


__all__ = ["DEFAULT_LOG_TIMEZONE", "DateStampedFileHandler", "cleanup_old_logs"]
