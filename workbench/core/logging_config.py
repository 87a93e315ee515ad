"""
Logging configuration for QA Workbench.

Structured JSON logging for CI, readable text for desktop sessions, and
rotating log files under the application data directory.

Records logged inside ``run_context`` carry the run's id and test name,
also from tasks spawned within it, without passing them to every call.
"""

import logging
import logging.handlers
import json
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from .config import Config


# Context attributes promoted to top-level fields in JSON output
CONTEXT_FIELDS = ("run_id", "test_name", "workspace", "duration", "status")

_run_context: ContextVar[Dict[str, Any]] = ContextVar("workbench_run_context", default={})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def run_context(**fields: Any) -> Iterator[None]:
    """Bind run fields to every record logged in the current context."""
    token = _run_context.set({**_run_context.get(), **fields})
    try:
        yield
    finally:
        _run_context.reset(token)


class RunContextFilter(logging.Filter):
    """Copies the bound run fields onto records that do not set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _run_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter for structured JSON logging."""

    def __init__(self, session_id: str):
        super().__init__()
        self.session_id = session_id

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": _utcnow().isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "component": record.name,
            "session_id": self.session_id,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "metadata"):
            log_entry["metadata"] = record.metadata

        for attr in CONTEXT_FIELDS:
            value = getattr(record, attr, None)
            if value is not None:
                log_entry[attr] = value

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for desktop use."""

    def __init__(self, session_id: str):
        super().__init__()
        self.session_id = session_id

    def format(self, record: logging.LogRecord) -> str:
        timestamp = _utcnow().strftime("%Y-%m-%d %H:%M:%S")

        message = f"[{timestamp}] {record.levelname:8} {record.name:28} | {record.getMessage()}"

        run_id = getattr(record, "run_id", None)
        test_name = getattr(record, "test_name", None)
        if run_id and test_name:
            message += f" (run: {str(run_id)[:8]} {test_name})"
        elif run_id:
            message += f" (run: {str(run_id)[:8]})"
        else:
            message += f" (session: {self.session_id[:8]})"

        if hasattr(record, "metadata") and record.metadata:
            metadata_str = " | ".join(f"{k}={v}" for k, v in record.metadata.items())
            message += f" | {metadata_str}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


def setup_logging(
    config: Config, session_id: str, stream: Optional[object] = None
) -> logging.Logger:
    """
    Set up logging configuration based on environment and config.

    Args:
        config: Configuration object with logging settings
        session_id: Identifier used to correlate log lines of one process
        stream: Console stream, stdout by default. The forensics hook passes
            stderr so the engine's own output stays untouched.

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    context_filter = RunContextFilter()

    log_level = getattr(logging, config.log_level)
    root_logger.setLevel(log_level)

    if config.log_format == "json":
        formatter = StructuredFormatter(session_id)
    else:
        formatter = TextFormatter(session_id)

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if not config.is_ci_mode:
        file_handler = logging.handlers.RotatingFileHandler(
            config.get_log_file_path(),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

        if config.debug_enabled:
            debug_handler = logging.handlers.RotatingFileHandler(
                config.get_debug_log_dir() / f"debug-{session_id[:8]}.log",
                maxBytes=50 * 1024 * 1024,  # 50MB
                backupCount=3,
                encoding="utf-8",
            )
            debug_handler.setFormatter(formatter)
            debug_handler.setLevel(logging.DEBUG)
            debug_handler.addFilter(context_filter)
            root_logger.addHandler(debug_handler)

    logger = logging.getLogger("workbench.logging")
    logger.debug(
        "Logging configured",
        extra={
            "metadata": {
                "session_id": session_id,
                "log_level": config.log_level,
                "log_format": config.log_format,
                "ci_mode": config.is_ci_mode,
            }
        },
    )

    return root_logger


class ContextAdapter(logging.LoggerAdapter):
    """Adapter that merges fixed context into every record's extras."""

    def process(self, msg, kwargs):
        if "extra" not in kwargs:
            kwargs["extra"] = {}
        for key, value in self.extra.items():
            kwargs["extra"].setdefault(key, value)
        return msg, kwargs


def get_logger(name: str, **context) -> logging.Logger:
    """
    Get a logger with optional context.

    Args:
        name: Logger name (typically module name)
        **context: Additional context to include in log records

    Returns:
        Logger, wrapped in a ContextAdapter when context is given
    """
    logger = logging.getLogger(name)
    if context:
        return ContextAdapter(logger, context)
    return logger


def log_performance(
    logger: logging.Logger, operation: str, duration: float, **metadata
):
    """
    Log performance metrics for operations.

    Args:
        logger: Logger instance
        operation: Name of the operation
        duration: Duration in seconds
        **metadata: Additional metadata to include
    """
    logger.info(
        f"Performance: {operation} completed in {duration:.2f}s",
        extra={"metadata": {"operation": operation, "duration": duration, **metadata}},
    )


def log_process_call(
    logger: logging.Logger,
    command: str,
    duration: float,
    returncode: Optional[int],
    **metadata,
):
    """
    Log a helper process invocation (npm, npx, allure).

    Args:
        logger: Logger instance
        command: Short command description
        duration: Call duration in seconds
        returncode: Exit code, None when the process could not be started
        **metadata: Additional metadata
    """
    success = returncode == 0
    level = logging.DEBUG if success else logging.WARNING
    status = "success" if success else "failed"

    logger.log(
        level,
        f"Process call: {command} {status} in {duration:.2f}s",
        extra={
            "metadata": {
                "command": command,
                "duration": duration,
                "returncode": returncode,
                "success": success,
                **metadata,
            }
        },
    )
