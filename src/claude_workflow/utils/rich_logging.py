"""Workflow-aware logging with structured context and readable formatting."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "claude_workflow"


class WorkflowLogFormatter(logging.Formatter):
    """Custom formatter with workflow and phase context."""

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with context."""
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        workflow_context = ""
        if getattr(record, "workflow", None):
            workflow_context = f"[{record.workflow}] "

        phase_context = ""
        if getattr(record, "phase", None):
            phase_context = f"[{record.phase}] "

        # Color codes (only if enabled)
        if self.use_colors:
            level_colors = {
                "DEBUG": "\033[36m",      # Cyan
                "INFO": "\033[32m",       # Green
                "WARNING": "\033[33m",    # Yellow
                "ERROR": "\033[31m",      # Red
                "CRITICAL": "\033[35m",   # Magenta
            }
            reset = "\033[0m"
            level_color = level_colors.get(record.levelname, "")
        else:
            level_color = ""
            reset = ""

        message = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"{workflow_context}{phase_context}{record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class WorkflowLogger(logging.LoggerAdapter):
    """Logger adapter that tags every message with the workflow and current phase."""

    def __init__(self, logger: logging.Logger, workflow: str):
        super().__init__(logger, {})
        self.workflow = workflow
        self.current_phase: Optional[str] = None

    def process(self, msg, kwargs):
        """Add context to log record."""
        extra = kwargs.get("extra", {})
        extra["workflow"] = self.workflow
        if self.current_phase:
            extra["phase"] = self.current_phase
        kwargs["extra"] = extra
        return msg, kwargs

    def phase_change(self, phase: str):
        """Log entry into a phase."""
        self.current_phase = phase
        self.info(f"Phase: {phase}")

    def attempt(self, attempt: int, max_attempts: int, reason: str = ""):
        """Log a fix-loop attempt beyond the first."""
        msg = f"Attempt {attempt}/{max_attempts}"
        if reason:
            msg += f" to fix {reason}"
        self.warning(msg)

    def ci_progress(self, message: str, passed: int = 0, failed: int = 0, pending: int = 0):
        """Log a CI polling update."""
        self.info(f"CI: {message} ({passed} passed, {failed} failed, {pending} pending)")

    def workflow_completed(self, duration_seconds: float):
        """Log successful completion."""
        self.current_phase = None
        self.info(f"Workflow completed in {duration_seconds:.1f}s")

    def workflow_failed(self, error: str, recoverable: bool):
        """Log a recorded failure."""
        hint = "resume to retry" if recoverable else "not recoverable"
        self.error(f"Workflow failed ({hint}): {error}")


def setup_rich_logging(
    workflow: str,
    base_dir: Path,
    log_level: str = "INFO",
    use_file: bool = True,
    use_console: bool = True,
) -> WorkflowLogger:
    """
    Setup logging for one workflow run.

    Handlers are attached to the package logger so every module's
    ``logging.getLogger(__name__)`` output carries through.

    Args:
        workflow: Workflow name used for context and the log file name
        base_dir: Workflow state directory (logs go to ``<base_dir>/logs``)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_file: Write to ``<base_dir>/logs/<workflow>.log``
        use_console: Also write to stderr

    Returns:
        WorkflowLogger instance
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in package_logger.handlers[:]:
        handler.close()
        package_logger.removeHandler(handler)

    if use_console:
        console_handler = logging.StreamHandler(sys.stderr)
        use_colors = sys.stderr.isatty() if hasattr(sys.stderr, "isatty") else False
        console_handler.setFormatter(WorkflowLogFormatter(use_colors=use_colors))
        package_logger.addHandler(console_handler)

    if use_file:
        log_dir = Path(base_dir) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)

        # Use plain formatter for files (no ANSI codes)
        file_handler = logging.FileHandler(log_dir / f"{workflow}.log")
        file_handler.setFormatter(WorkflowLogFormatter(use_colors=False))
        package_logger.addHandler(file_handler)

    return WorkflowLogger(logging.getLogger(f"{PACKAGE_LOGGER}.workflow"), workflow)
