"""Console/file logging with work-unit and step context."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "agent_pipeline"


class PipelineLogFormatter(logging.Formatter):
    """Formatter that prefixes records with work-unit and step context."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        unit_context = f"[{record.unit_id}] " if getattr(record, "unit_id", None) else ""
        step_context = f"[{record.step}] " if getattr(record, "step", None) else ""

        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            level_color = ""
            reset = ""

        line = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"{record.name.rsplit('.', 1)[-1]}: {unit_context}{step_context}{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds work-unit and step context to all messages."""

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})
        self.unit_id: Optional[str] = None
        self.step: Optional[str] = None

    def set_context(self, unit_id: Optional[str] = None, step: Optional[str] = None):
        if unit_id:
            self.unit_id = unit_id
        if step is not None:
            self.step = step

    def clear_context(self):
        self.unit_id = None
        self.step = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        if self.unit_id:
            extra["unit_id"] = self.unit_id
        if self.step:
            extra["step"] = self.step
        kwargs["extra"] = extra
        return msg, kwargs

    def step_started(self, unit_id: str, step: str, title: str = ""):
        self.set_context(unit_id=unit_id, step=step)
        self.info(f"Starting step{': ' + title if title else ''}")

    def step_completed(self, status: str, issue_count: int, duration_seconds: float):
        self.info(f"Step {status} in {duration_seconds:.1f}s ({issue_count} issues)")
        self.clear_context()

    def step_failed(self, error: str):
        self.error(f"Step failed: {error}")
        self.clear_context()


def get_context_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name))


def setup_rich_logging(
    log_level: str = "INFO",
    logs_dir: Optional[Path] = None,
    use_colors: Optional[bool] = None,
) -> logging.Logger:
    """
    Configure the package logger with a console handler and optional file.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        logs_dir: When set, also write plain-text logs to logs_dir/agent-pipeline.log
        use_colors: Force colors on/off; defaults to stderr being a TTY

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_colors is None:
        use_colors = hasattr(sys.stderr, "isatty") and sys.stderr.isatty()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(PipelineLogFormatter(use_colors=use_colors))
    logger.addHandler(console_handler)

    if logs_dir is not None:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logs_dir / "agent-pipeline.log")
        file_handler.setFormatter(PipelineLogFormatter(use_colors=False))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
