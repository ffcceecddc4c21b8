"""
Structured logging system for chainsync.

Provides centralized logging with console and file outputs, job-level
metrics, and a middleware chain. Every call writes the local log line first;
middleware stages (such as failure reporting) then see the same event and
can never suppress or break the local line.
"""

import json
import logging
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional


@dataclass
class LogEvent:
    """One log call as seen by middleware stages."""

    level: int
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    logger_name: str = "chainsync"
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def level_name(self) -> str:
        return logging.getLevelName(self.level)


Middleware = Callable[[LogEvent], None]


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks metrics for monitoring oracle and reporter health.
    """

    def __init__(
        self,
        name: str = "chainsync",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()  # Remove existing handlers
        self.logger.propagate = False

        self._middlewares: List[Middleware] = []
        self._lock = threading.Lock()

        # Metrics tracking
        self.metrics = {
            "oracle_calls": 0,
            "oracle_failures": 0,
            "errors_by_type": {},
            "reports_sent": 0,
            "reports_failed": 0,
            "reports_dropped": 0,
        }

        # Console handler
        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        # File handler
        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir = Path(log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"chainsync_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def add_middleware(self, middleware: Middleware) -> None:
        """Register a stage that receives every LogEvent after it is written."""
        self._middlewares.append(middleware)

    def remove_middleware(self, middleware: Middleware) -> None:
        if middleware in self._middlewares:
            self._middlewares.remove(middleware)

    @property
    def middlewares(self) -> List[Middleware]:
        return list(self._middlewares)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, error: Optional[BaseException] = None, **kwargs):
        """Log error message, optionally with the exception that caused it."""
        self._log(logging.ERROR, message, kwargs, error)

    def critical(self, message: str, error: Optional[BaseException] = None, **kwargs):
        """Log critical message, optionally with the exception that caused it."""
        self._log(logging.CRITICAL, message, kwargs, error)

    def _log(
        self,
        level: int,
        message: str,
        context: dict,
        error: Optional[BaseException] = None,
    ):
        """Write the local line, then run the middleware chain."""
        line = message
        if error is not None:
            line = f"{line}: {error}"
        if context:
            line = f"{line} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, line)

        if not self._middlewares:
            return

        event = LogEvent(
            level=level,
            message=message,
            context=dict(context),
            error=error,
            logger_name=self.name,
        )
        for middleware in list(self._middlewares):
            try:
                middleware(event)
            except Exception as e:
                # A broken stage must not take the caller down with it.
                sys.stderr.write(f"chainsync: log middleware {middleware!r} failed: {e}\n")

    # Metric tracking methods

    def record_oracle_call(self):
        """Increment oracle call counter."""
        with self._lock:
            self.metrics["oracle_calls"] += 1

    def record_oracle_failure(self, error_type: str):
        """Record a failed oracle query by exception type."""
        with self._lock:
            self.metrics["oracle_failures"] += 1
            errors = self.metrics["errors_by_type"]
            errors[error_type] = errors.get(error_type, 0) + 1

    def record_report(self, outcome: str):
        """Record a failure-sink outcome: sent, failed or dropped."""
        key = f"reports_{outcome}"
        with self._lock:
            if key in self.metrics:
                self.metrics[key] += 1

    def get_metrics(self) -> dict:
        """Return a snapshot of current metrics."""
        with self._lock:
            metrics_copy = dict(self.metrics)
            metrics_copy["errors_by_type"] = dict(self.metrics["errors_by_type"])

        calls = metrics_copy["oracle_calls"]
        if calls > 0:
            metrics_copy["oracle_success_rate"] = round(
                (calls - metrics_copy["oracle_failures"]) / calls, 3
            )
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Oracle & Reporting Metrics ===")
        calls = metrics["oracle_calls"]
        failures = metrics["oracle_failures"]
        if calls:
            rate = metrics.get("oracle_success_rate", 0) * 100
            self.info(f"Oracle calls: {calls - failures}/{calls} ({rate:.1f}% success)")
        else:
            self.info("Oracle calls: 0")

        if metrics["errors_by_type"]:
            self.info("Oracle error types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")

        if metrics["reports_sent"] or metrics["reports_failed"] or metrics["reports_dropped"]:
            self.info(
                f"Failure reports: sent={metrics['reports_sent']} "
                f"failed={metrics['reports_failed']} dropped={metrics['reports_dropped']}"
            )


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "chainsync",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
