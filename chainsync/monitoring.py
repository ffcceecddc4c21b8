"""
Failure classification and reporting.

Every ERROR or CRITICAL log call goes through ReportingMiddleware, which
turns it into a FailureReport:

- the message and any exception are folded into one string, and the
  keyword context, exception stack, runtime details, bracket tags and the
  originating call site are merged into one context dict;
- a coarse phase (db, node, cache, ...) is derived from the call-site path;
- a severity tier is assigned from keyword hints, first match wins:
  major, then degraded, then minimal, else none.

Reports are handed to a bounded queue drained by a background thread, so
the logging call never waits on the network and never fails because of it.
Events tagged [GRAPHQL] and events raised while a request-scoped operation
is active are dropped; those already surface through the request itself.
"""

import json
import os
import platform
import queue
import re
import socket
import sys
import threading
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, Iterator, List, Optional

import requests

from .logger import LogEvent, StructuredLogger, get_logger
from .retry import CircuitBreaker, CircuitOpenError

_PROCESS_STARTED = time.monotonic()
_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
_SKIP_FILES = (
    os.path.join(_PACKAGE_DIR, "logger.py"),
    os.path.join(_PACKAGE_DIR, "monitoring.py"),
)

_current_operation: ContextVar[Optional[str]] = ContextVar("chainsync_operation", default=None)

_TAG_RE = re.compile(r"\[([^\]]+)\]")
_LEADING_TAGS_RE = re.compile(r"^(?:\[[^\]]+\])+\s*")


class Severity(IntEnum):
    NONE = 0
    MINIMAL = 1
    DEGRADED = 2
    MAJOR = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    def __str__(self) -> str:
        return self.label


MAJOR_HINTS = (
    "enotfound",
    "econnrefused",
    "econnreset",
    "connection refused",
    "conn_refused",
    "conn_reset",
    "failed to start",
    "migration failed",
    "eventsource connection error",
    "entire backfill halted",
    "fatal",
    ' code":"28000',
    'role "',
)

DEGRADED_HINTS = (
    "timeout",
    "timed out",
    "conn_timeout",
    "int_timeout",
    "sync_timeout",
    "partial",
    "incomplete",
    "retry",
    "rate limit",
    "delayed",
    "inconsistent",
    "exceed",
    "please backfill",
    "data_missing",
    "data_invalid",
    "data_format",
)

MINIMAL_HINTS = (
    "minor parsing",
    "non standard",
    "non-standard",
    "transient",
    "slow query",
    "slow queries",
    "occasionally retry",
    "occasional retry",
    "small gaps",
    "less critical",
    "less-critical",
    "minor formatting",
    "sporadic log gaps",
    "log gaps",
    "formatting issue",
)

PHASE_RULES = (
    ("/cache/", "cache"),
    ("streaming", "streaming"),
    ("database", "db"),
    ("migration", "db"),
    ("/models/", "db"),
    ("sqlalchemy", "db"),
    ("graphql", "graphql"),
    ("/price", "price"),
    ("oracle", "node"),
    ("balances", "balances"),
)


def classify_severity(message: str, extra: Any = None) -> Severity:
    """Assign a severity tier from keyword hints in the message and context."""
    try:
        extra_text = json.dumps(extra if extra is not None else "", default=str)
    except (TypeError, ValueError):
        extra_text = str(extra)
    hay = f"{(message or '').lower()} {extra_text.lower()}"

    if any(h in hay for h in MAJOR_HINTS):
        return Severity.MAJOR
    if any(h in hay for h in DEGRADED_HINTS):
        return Severity.DEGRADED
    if any(h in hay for h in MINIMAL_HINTS):
        return Severity.MINIMAL
    return Severity.NONE


def _phase_key(path: str) -> str:
    """Trim a source path to the part that names the code, not the checkout."""
    full = os.path.abspath(path)
    if full == _PACKAGE_DIR or full.startswith(_PACKAGE_DIR + os.sep):
        tail = os.path.relpath(full, _PACKAGE_DIR)
    else:
        norm = full.replace("\\", "/")
        marker = norm.rfind("site-packages/")
        tail = norm[marker + len("site-packages/"):] if marker >= 0 else os.path.basename(norm)
    return "/" + tail.replace("\\", "/").lower()


def derive_phase(path: Optional[str]) -> str:
    if not path:
        return "app"
    p = _phase_key(path)
    for fragment, phase in PHASE_RULES:
        if fragment in p:
            return phase
    return "app"



def extract_tags(message: str) -> List[str]:
    return [t for t in _TAG_RE.findall(message or "") if t]


def strip_tags(message: str) -> str:
    return _LEADING_TAGS_RE.sub("", message or "").strip()


def capture_callsite(error: Optional[BaseException] = None) -> Dict[str, Any]:
    """
    File, line and function where the event originated.

    Uses the innermost frame of the exception's traceback when there is
    one, otherwise the first stack frame outside the logging machinery.
    """
    if error is not None and error.__traceback__ is not None:
        frame = traceback.extract_tb(error.__traceback__)[-1]
        return {"file": frame.filename, "line": frame.lineno, "function": frame.name}

    frame = sys._getframe(1)
    while frame is not None:
        filename = frame.f_code.co_filename
        if os.path.abspath(filename) not in _SKIP_FILES and os.sep + "logging" + os.sep not in filename:
            return {"file": filename, "line": frame.f_lineno, "function": frame.f_code.co_name}
        frame = frame.f_back
    return {}


def current_operation() -> Optional[str]:
    return _current_operation.get()


@contextmanager
def operation_scope(name: str) -> Iterator[None]:
    """Mark a request-scoped operation; failures inside it are not reported."""
    token = _current_operation.set(name)
    try:
        yield
    finally:
        _current_operation.reset(token)


def runtime_info() -> Dict[str, Any]:
    return {
        "pid": os.getpid(),
        "python": platform.python_version(),
        "host": socket.gethostname(),
        "uptime": round(time.monotonic() - _PROCESS_STARTED),
    }


@dataclass
class FailureReport:
    endpoint: str
    message: str
    severity: Severity
    callsite: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: Dict[str, Any] = field(default_factory=dict)
    instance: Optional[str] = None
    operation: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """Body posted to the monitoring endpoint."""
        extra = dict(self.context)
        extra.update(self.callsite)
        extra["severity"] = self.severity.label
        return {
            "type": "error",
            "endpoint": self.endpoint,
            "instance": self.instance,
            "operation": self.operation,
            "date": self.timestamp.isoformat(),
            "data": {"error": self.message, "extra": extra},
        }


def normalize_event(message: str, error: Optional[BaseException], context: Dict[str, Any]):
    """
    Fold a log call into (message, raw_message, context).

    raw_message is the bare error text without bracket tags, kept so the
    sink can group reports regardless of how the call site decorated them.
    """
    extra: Dict[str, Any] = dict(context or {})

    if error is not None and message:
        text = f"{message}: {str(error) or type(error).__name__}"
    elif error is not None:
        text = str(error) or type(error).__name__
    else:
        text = message or "Unknown error"

    if error is not None:
        extra["error_type"] = type(error).__name__
        extra["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        raw = str(error) or type(error).__name__
    else:
        raw = strip_tags(message) or text

    extra.update(runtime_info())
    tags = extract_tags(message)
    if tags:
        extra["tags"] = tags
    extra["message"] = raw
    return text, raw, extra


def build_report(
    event: LogEvent,
    endpoint: str,
    instance: Optional[str] = None,
) -> Optional[FailureReport]:
    """Turn a log event into a report, or None if the event is suppressed."""
    if "[GRAPHQL]" in (event.message or ""):
        return None
    operation = current_operation()
    if operation:
        return None

    message, _, extra = normalize_event(event.message, event.error, event.context)
    callsite = capture_callsite(event.error)
    extra["phase"] = derive_phase(callsite.get("file"))
    severity = classify_severity(message, {k: v for k, v in extra.items() if k != "stack"})

    return FailureReport(
        endpoint=endpoint,
        message=message,
        severity=severity,
        callsite=callsite,
        timestamp=event.timestamp.astimezone(timezone.utc),
        context=extra,
        instance=instance,
        operation=operation,
    )


class HttpErrorReporter:
    """Posts failure reports to the monitoring service."""

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        breaker: Optional[CircuitBreaker] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60,
            expected_exception=requests.exceptions.RequestException,
        )
        self.logger = logger or get_logger()

    def _post(self, payload: Dict[str, Any]) -> None:
        resp = self.session.post(
            self.url,
            json=payload,
            headers={"Content-Type": "application/json", "x-api-key": self.api_key},
            timeout=self.timeout,
        )
        resp.raise_for_status()

    def report(self, report: FailureReport) -> bool:
        """
        Send one report. Failures are logged locally and swallowed.

        Returns:
            True if the monitoring service accepted the report
        """
        try:
            self.breaker.call(self._post, report.to_payload())
        except (requests.exceptions.RequestException, CircuitOpenError, TypeError, ValueError) as e:
            # Below ERROR so the failure does not loop back into reporting.
            self.logger.record_report("failed")
            self.logger.warning("Failed to report error", error=str(e), url=self.url)
            return False
        self.logger.record_report("sent")
        return True


class AsyncReporter:
    """
    Bounded outbound queue drained by one daemon thread.

    submit() never blocks: when the queue is full the report is dropped and
    counted.
    """

    _STOP = object()

    def __init__(self, reporter, max_queue: int = 1000, logger: Optional[StructuredLogger] = None):
        self.reporter = reporter
        self.logger = logger or get_logger()
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue)
        self._thread = threading.Thread(target=self._drain, name="chainsync-reporter", daemon=True)
        self._closed = False
        self._thread.start()

    def submit(self, report: FailureReport) -> bool:
        if self._closed:
            self.logger.record_report("dropped")
            return False
        try:
            self._queue.put_nowait(report)
        except queue.Full:
            self.logger.record_report("dropped")
            return False
        return True

    def _drain(self):
        while True:
            item = self._queue.get()
            try:
                if item is self._STOP:
                    return
                self.reporter.report(item)
            except Exception as e:
                self.logger.record_report("failed")
                self.logger.warning("Error reporter crashed on a report", error=str(e))
            finally:
                self._queue.task_done()

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until queued reports are sent. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        """Send what is queued, then stop the worker."""
        if self._closed:
            return
        self._closed = True
        self.flush(timeout)
        try:
            self._queue.put(self._STOP, timeout=timeout)
        except queue.Full:
            return
        self._thread.join(timeout)


class ReportingMiddleware:
    """Logger middleware stage: classify ERROR/CRITICAL events and queue them."""

    name = "failure-reporting"

    def __init__(self, sink: AsyncReporter, endpoint: str, instance: Optional[str] = None, min_level: int = 40):
        self.sink = sink
        self.endpoint = endpoint
        self.instance = instance
        self.min_level = min_level

    def __call__(self, event: LogEvent) -> None:
        if event.level < self.min_level:
            return
        try:
            report = build_report(event, self.endpoint, self.instance)
        except Exception as e:
            sys.stderr.write(f"chainsync: could not build failure report: {e}\n")
            return
        if report is not None:
            self.sink.submit(report)


def initialize_error_monitoring(settings, logger: Optional[StructuredLogger] = None) -> Optional[AsyncReporter]:
    """
    Attach failure reporting to the logger when monitoring is configured.

    Returns:
        The AsyncReporter to close at shutdown, or None if monitoring is
        disabled because MONITORING_URL, INSTANCE_NAME or
        ERROR_REPORT_API_KEY is missing
    """
    logger = logger or get_logger()
    missing = settings.missing_monitoring_vars()
    if missing:
        logger.warning(f"Monitoring not initialized. Missing env: {', '.join(missing)}")
        return None

    reporter = HttpErrorReporter(settings.monitoring_url, settings.error_report_api_key, logger=logger)
    sink = AsyncReporter(reporter, logger=logger)
    logger.add_middleware(
        ReportingMiddleware(sink, settings.monitoring_endpoint, instance=settings.instance_name)
    )
    return sink
