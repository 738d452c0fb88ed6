"""
Logging module for the roster sync tool.
Provides structured logging to both console and file.
"""
import logging
from pathlib import Path
from datetime import datetime
from typing import Optional
from enum import Enum


class LogAction(Enum):
    """Types of actions that can be logged."""
    # Session stage transitions
    STAGE_START = "STAGE_START"
    STAGE_END = "STAGE_END"

    # File operations
    FILE_LOADED = "FILE_LOADED"
    FILE_WRITTEN = "FILE_WRITTEN"
    FILE_REPLACED = "FILE_REPLACED"
    FILE_DELETED = "FILE_DELETED"
    BACKUP_CREATED = "BACKUP_CREATED"

    # Record store
    ROW_SKIPPED = "ROW_SKIPPED"
    DUPLICATE_MERGED = "DUPLICATE_MERGED"
    PLACEHOLDER_CREATED = "PLACEHOLDER_CREATED"

    # Distribution
    COPY_WRITTEN = "COPY_WRITTEN"
    COPY_SKIPPED = "COPY_SKIPPED"
    PLACEHOLDER_ASSIGNED = "PLACEHOLDER_ASSIGNED"

    # Merging
    MERGE_STEP = "MERGE_STEP"
    CONFLICT_RECORDED = "CONFLICT_RECORDED"
    CONFLICT_OVERRIDDEN = "CONFLICT_OVERRIDDEN"
    MERGE_CANCELLED = "MERGE_CANCELLED"

    # Errors and warnings
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class RosterSyncLogger:
    """
    Logger for a roster sync session (distribution or merge).
    Logs to both console and a timestamped file.
    """

    def __init__(self, log_dir: Path, session_name: Optional[str] = None):
        """
        Initialize the logger.

        Args:
            log_dir: Directory where log files will be stored
            session_name: Optional name for this session (default: timestamp)
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.session_name = session_name or timestamp
        self.log_file = self.log_dir / f"session_{self.session_name}.log"

        self.logger = logging.getLogger(f"roster_sync_{self.session_name}")
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        # Prevent duplicate handlers
        if self.logger.handlers:
            self.logger.handlers.clear()

        # File handler - detailed
        file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_format = logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(file_format)
        self.logger.addHandler(file_handler)

        # Console handler - less verbose
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_format = logging.Formatter('%(levelname)-8s | %(message)s')
        console_handler.setFormatter(console_format)
        self.logger.addHandler(console_handler)

        self.log(LogAction.INFO, f"Session started: {self.session_name}")
        self.log(LogAction.INFO, f"Log file: {self.log_file}")

    def log(self, action: LogAction, message: str, **kwargs):
        """
        Log an action with optional extra data.

        Args:
            action: The type of action being logged
            message: Human-readable message
            **kwargs: Additional data to include in the log
        """
        extra_str = ""
        if kwargs:
            extra_parts = [f"{k}={v}" for k, v in kwargs.items()]
            extra_str = " | " + " | ".join(extra_parts)

        full_message = f"[{action.value}] {message}{extra_str}"

        if action == LogAction.ERROR:
            self.logger.error(full_message)
        elif action in [LogAction.WARNING, LogAction.ROW_SKIPPED]:
            self.logger.warning(full_message)
        elif action in [LogAction.CONFLICT_RECORDED]:
            # One line per field conflict; file only
            self.logger.debug(full_message)
        else:
            self.logger.info(full_message)

    def stage_start(self, stage_name: str, detail: str = ""):
        """Log the start of a session stage."""
        self.log(LogAction.STAGE_START, f"=== STAGE START: {stage_name} === {detail}")

    def stage_end(self, stage_name: str, detail: str = ""):
        """Log the end of a session stage."""
        self.log(LogAction.STAGE_END, f"=== STAGE END: {stage_name} === {detail}")

    def file_loaded(self, path: Path, records: int, mode: str = ""):
        """Log a table being parsed into a record store."""
        self.log(LogAction.FILE_LOADED, f"Loaded: {Path(path).name}",
                 records=records, mode=mode)

    def file_written(self, path: Path, records: int):
        self.log(LogAction.FILE_WRITTEN, f"Wrote: {path}", records=records)

    def file_replaced(self, path: Path, records: int):
        """Log the authoritative file being replaced."""
        self.log(LogAction.FILE_REPLACED, f"Replaced: {path}", records=records)

    def file_deleted(self, path: Path, reason: str = ""):
        self.log(LogAction.FILE_DELETED, f"Deleted: {path}", reason=reason)

    def backup_created(self, source: Path, backup: Path):
        self.log(LogAction.BACKUP_CREATED, f"{source} -> {backup}")

    def row_skipped(self, source: str, row_number: int, reason: str):
        """Log a malformed row that was skipped."""
        self.log(LogAction.ROW_SKIPPED, f"Skipped row {row_number}",
                 source=source, reason=reason)

    def copy_written(self, path: Path, records: int, placeholders: int):
        """Log a worker copy being written."""
        self.log(LogAction.COPY_WRITTEN, f"Worker copy: {Path(path).name}",
                 records=records, placeholders=placeholders)

    def copy_skipped(self, path: Path, reason: str):
        self.log(LogAction.COPY_SKIPPED, f"Worker copy kept: {Path(path).name}",
                 reason=reason)

    def placeholder_assigned(self, path: Path, first: str, last: str, count: int):
        """Log the placeholder block assigned to a copy."""
        self.log(LogAction.PLACEHOLDER_ASSIGNED, f"{Path(path).name}: {first} .. {last}",
                 count=count)

    def merge_step(self, step: int, total: int, source: Path, added: int, conflicts: int):
        """Log one step of a merge fold."""
        self.log(LogAction.MERGE_STEP, f"Step {step}/{total}: {Path(source).name}",
                 added=added, conflicts=conflicts)

    def conflict_recorded(self, record_id: str, field_name: str, resolution: str):
        self.log(LogAction.CONFLICT_RECORDED, f"{record_id}.{field_name}",
                 resolution=resolution)

    def conflict_overridden(self, record_id: str, field_name: str, choice: str):
        """Log an operator override applied during review."""
        self.log(LogAction.CONFLICT_OVERRIDDEN, f"{record_id}.{field_name}", choice=choice)

    def merge_cancelled(self, completed_steps: int, intermediate: Optional[Path] = None):
        self.log(LogAction.MERGE_CANCELLED, f"Cancelled after {completed_steps} step(s)",
                 intermediate=intermediate or "None")

    def error(self, message: str, exception: Optional[Exception] = None):
        """Log an error."""
        if exception:
            self.log(LogAction.ERROR, f"{message}: {type(exception).__name__}: {exception}")
        else:
            self.log(LogAction.ERROR, message)

    def warning(self, message: str):
        """Log a warning."""
        self.log(LogAction.WARNING, message)

    def info(self, message: str):
        """Log info message."""
        self.log(LogAction.INFO, message)

    def close(self):
        """Close the logger and finalize the session."""
        self.log(LogAction.INFO, "Session ended")
        for handler in self.logger.handlers:
            handler.close()
        self.logger.handlers.clear()


# Quick test function
def test_logger():
    """Quick test of the logger module."""
    import tempfile

    with tempfile.TemporaryDirectory() as tmpdir:
        log_dir = Path(tmpdir)
        logger = RosterSyncLogger(log_dir, "test_session")

        logger.info("Starting test")
        logger.file_loaded(Path("/job/roster.csv"), 12, "identifier")
        logger.row_skipped("roster.csv", 7, "row shorter than resolved columns")
        logger.placeholder_assigned(Path("/job/roster_Ann.csv"), "Subject1", "Subject4", 4)
        logger.warning("This is a warning")
        logger.error("This is an error", ValueError("test error"))
        logger.close()

        log_files = list(log_dir.glob("*.log"))
        assert len(log_files) == 1, "Should create one log file"

        content = log_files[0].read_text(encoding='utf-8')
        assert "Starting test" in content
        assert "[FILE_LOADED] Loaded: roster.csv | records=12" in content
        assert "Subject1 .. Subject4" in content
        assert "ValueError: test error" in content

        print("✓ Logger test passed!")
        print(f"Log file content preview:\n{content[:500]}...")


if __name__ == "__main__":
    test_logger()
