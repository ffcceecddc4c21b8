"""
Tests for failure classification and reporting.
"""

import os
import threading
import time

import pytest
import requests

from chainsync.config import Settings
from chainsync.logger import LogEvent
from chainsync.monitoring import (
    _PACKAGE_DIR,
    AsyncReporter,
    FailureReport,
    HttpErrorReporter,
    ReportingMiddleware,
    Severity,
    build_report,
    classify_severity,
    derive_phase,
    extract_tags,
    initialize_error_monitoring,
    operation_scope,
    strip_tags,
)
from chainsync.retry import CircuitBreaker

ENDPOINT = "http://localhost:3001/graphql"


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    def __init__(self, status_code=200, exc=None):
        self.status_code = status_code
        self.exc = exc
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return FakeResponse(self.status_code)


class RecordingSink:
    def __init__(self):
        self.reports = []

    def submit(self, report):
        self.reports.append(report)
        return True


class RecordingReporter:
    def __init__(self):
        self.reports = []

    def report(self, report):
        self.reports.append(report)
        return True


def make_report(message="boom"):
    return FailureReport(endpoint=ENDPOINT, message=message, severity=Severity.NONE)


def explode():
    raise ConnectionRefusedError("ECONNREFUSED 127.0.0.1:5432")


class TestClassifySeverity:

    @pytest.mark.parametrize("message,expected", [
        ("connect ECONNREFUSED 10.0.0.5:1848", Severity.MAJOR),
        ("Node query timed out on chain 3", Severity.DEGRADED),
        ("slow query on Balances", Severity.MINIMAL),
        ("something odd happened", Severity.NONE),
    ])
    def test_documented_examples(self, message, expected):
        assert classify_severity(message) == expected

    def test_first_match_wins(self):
        assert classify_severity("fatal: request timed out") == Severity.MAJOR
        assert classify_severity("transient timeout") == Severity.DEGRADED

    def test_context_is_searched(self):
        assert classify_severity("query failed", {"cause": "ECONNRESET"}) == Severity.MAJOR

    def test_tiers_are_ordered(self):
        assert Severity.MAJOR > Severity.DEGRADED > Severity.MINIMAL > Severity.NONE
        assert str(Severity.DEGRADED) == "degraded"


class TestTagsAndPhase:

    def test_extract_and_strip_tags(self):
        assert extract_tags("[DB][SYNC] lost connection") == ["DB", "SYNC"]
        assert strip_tags("[DB][SYNC] lost connection") == "lost connection"
        assert extract_tags("no tags") == []

    @pytest.mark.parametrize("path,phase", [
        (os.path.join(_PACKAGE_DIR, "migration.py"), "db"),
        (os.path.join(_PACKAGE_DIR, "oracle.py"), "node"),
        (os.path.join(_PACKAGE_DIR, "balances.py"), "balances"),
        (os.path.join(_PACKAGE_DIR, "app.py"), "app"),
        ("/usr/lib/python3/site-packages/sqlalchemy/engine/base.py", "db"),
        ("/opt/venv/lib/python3.12/site-packages/cache/redis.py", "cache"),
        (None, "app"),
    ])
    def test_derive_phase(self, path, phase):
        assert derive_phase(path) == phase

    @pytest.mark.parametrize("path", [
        "/home/dev/graphql-database/chainsync/app.py",
        "/srv/balances-migration/tools/run.py",
    ])
    def test_checkout_directory_does_not_pick_the_phase(self, path):
        assert derive_phase(path) == "app"

    def test_package_under_a_matching_checkout(self, monkeypatch):
        monkeypatch.setattr("chainsync.monitoring._PACKAGE_DIR", "/home/dev/graphql-database/chainsync")

        assert derive_phase("/home/dev/graphql-database/chainsync/app.py") == "app"
        assert derive_phase("/home/dev/graphql-database/chainsync/oracle.py") == "node"


class TestBuildReport:

    def test_from_exception(self):
        try:
            explode()
        except ConnectionRefusedError as e:
            event = LogEvent(level=40, message="[NODE] lookup failed", context={"row_id": 3}, error=e)

        report = build_report(event, ENDPOINT, instance="indexer-1")

        assert report.severity == Severity.MAJOR
        assert report.message == "[NODE] lookup failed: ECONNREFUSED 127.0.0.1:5432"
        assert report.callsite["function"] == "explode"
        assert report.context["row_id"] == 3
        assert report.context["tags"] == ["NODE"]
        assert report.context["error_type"] == "ConnectionRefusedError"
        assert report.context["message"] == "ECONNREFUSED 127.0.0.1:5432"
        assert "explode" in report.context["stack"]
        assert "pid" in report.context
        assert report.instance == "indexer-1"

    def test_callsite_without_exception_is_the_caller(self):
        report = build_report(LogEvent(level=40, message="slow query on Balances"), ENDPOINT)

        assert report.severity == Severity.MINIMAL
        assert report.callsite["file"].endswith("test_monitoring.py")
        assert report.callsite["function"] == "test_callsite_without_exception_is_the_caller"
        assert report.context["phase"] == "app"

    def test_graphql_tagged_events_are_suppressed(self):
        assert build_report(LogEvent(level=40, message="[GRAPHQL] resolver failed"), ENDPOINT) is None

    def test_events_inside_operation_are_suppressed(self):
        event = LogEvent(level=40, message="fatal")
        with operation_scope("balances"):
            assert build_report(event, ENDPOINT) is None
        assert build_report(event, ENDPOINT) is not None

    def test_payload_shape(self):
        report = build_report(LogEvent(level=40, message="Migration failed"), ENDPOINT, instance="i")

        payload = report.to_payload()

        assert payload["type"] == "error"
        assert payload["endpoint"] == ENDPOINT
        assert payload["instance"] == "i"
        assert payload["data"]["error"] == "Migration failed"
        assert payload["data"]["extra"]["severity"] == "major"
        assert "line" in payload["data"]["extra"]
        assert payload["date"].endswith("+00:00")


class TestReportingMiddleware:

    def test_only_error_and_above_are_reported(self, logger):
        sink = RecordingSink()
        logger.add_middleware(ReportingMiddleware(sink, ENDPOINT, instance="test"))

        logger.info("Balance sync progress: 10.0%")
        logger.warning("Failed to report error")
        logger.error("Node query timed out", row_id=5)
        logger.critical("Migration failed: entire backfill halted")

        assert [r.severity for r in sink.reports] == [Severity.DEGRADED, Severity.MAJOR]
        assert sink.reports[0].context["row_id"] == 5
        assert sink.reports[0].callsite["file"].endswith("test_monitoring.py")

    def test_local_line_survives_a_broken_sink(self, logger, events, tmp_path):
        class BrokenSink:
            def submit(self, report):
                raise RuntimeError("sink down")

        logger.add_middleware(ReportingMiddleware(BrokenSink(), ENDPOINT))

        logger.error("still written")

        assert events[-1].message == "still written"
        log_text = "".join(p.read_text() for p in (tmp_path / "logs").glob("*.log"))
        assert "still written" in log_text


class TestAsyncReporter:

    def test_flush_delivers_queued_reports(self):
        reporter = RecordingReporter()
        sink = AsyncReporter(reporter)

        for i in range(3):
            assert sink.submit(make_report(str(i)))

        assert sink.flush(timeout=5)
        assert [r.message for r in reporter.reports] == ["0", "1", "2"]
        sink.close()

    def test_full_queue_drops_without_blocking(self, logger):
        gate = threading.Event()

        class BlockedReporter:
            def report(self, report):
                gate.wait(5)

        sink = AsyncReporter(BlockedReporter(), max_queue=2)

        started = time.monotonic()
        accepted = [sink.submit(make_report()) for _ in range(6)]
        elapsed = time.monotonic() - started

        assert elapsed < 1
        assert accepted.count(False) >= 3
        assert logger.get_metrics()["reports_dropped"] == accepted.count(False)
        gate.set()
        sink.close()

    def test_reporter_crash_is_counted_and_worker_survives(self, logger):
        class FlakyReporter(RecordingReporter):
            def report(self, report):
                if report.message == "bad":
                    raise RuntimeError("serializer exploded")
                return super().report(report)

        reporter = FlakyReporter()
        sink = AsyncReporter(reporter)
        sink.submit(make_report("bad"))
        sink.submit(make_report("good"))
        sink.flush()

        assert [r.message for r in reporter.reports] == ["good"]
        assert logger.get_metrics()["reports_failed"] == 1
        sink.close()

    def test_submit_after_close_is_dropped(self, logger):
        sink = AsyncReporter(RecordingReporter())
        sink.close()

        assert sink.submit(make_report()) is False
        assert logger.get_metrics()["reports_dropped"] == 1


class TestHttpErrorReporter:

    def test_posts_payload_with_api_key(self, logger):
        session = FakeSession()
        reporter = HttpErrorReporter("https://monitor.example.com/api/errors", "secret", session=session)

        assert reporter.report(make_report("lost node")) is True

        post = session.posts[0]
        assert post["url"] == "https://monitor.example.com/api/errors"
        assert post["headers"]["x-api-key"] == "secret"
        assert post["timeout"] == 30.0
        assert post["json"]["data"]["error"] == "lost node"
        assert logger.get_metrics()["reports_sent"] == 1

    @pytest.mark.parametrize("session", [
        FakeSession(exc=requests.exceptions.ConnectionError("refused")),
        FakeSession(status_code=503),
    ])
    def test_failure_is_logged_and_swallowed(self, logger, events, session):
        reporter = HttpErrorReporter("https://monitor.example.com", "k", session=session)

        assert reporter.report(make_report()) is False

        assert logger.get_metrics()["reports_failed"] == 1
        warnings = [e for e in events if e.level_name == "WARNING"]
        assert warnings[-1].message == "Failed to report error"

    def test_circuit_opens_after_repeated_failures(self):
        session = FakeSession(exc=requests.exceptions.ConnectionError("refused"))
        breaker = CircuitBreaker(
            failure_threshold=2,
            recovery_timeout=60,
            expected_exception=requests.exceptions.RequestException,
        )
        reporter = HttpErrorReporter("https://monitor.example.com", "k", session=session, breaker=breaker)

        results = [reporter.report(make_report()) for _ in range(4)]

        assert results == [False] * 4
        assert len(session.posts) == 2


class TestInitializeErrorMonitoring:

    def test_missing_configuration_disables_reporting(self, logger, events):
        settings = Settings(database_url="sqlite://", monitoring_url="https://m.example.com")

        assert initialize_error_monitoring(settings, logger) is None

        assert len(logger.middlewares) == 1
        warning = [e for e in events if e.level_name == "WARNING"][-1]
        assert "INSTANCE_NAME" in warning.message
        assert "ERROR_REPORT_API_KEY" in warning.message
        assert "MONITORING_URL" not in warning.message

    def test_reports_flow_from_logger_to_sink(self, logger):
        settings = Settings(
            database_url="sqlite://",
            monitoring_url="https://m.example.com/errors",
            instance_name="indexer-1",
            error_report_api_key="secret",
        )

        sink = initialize_error_monitoring(settings, logger)
        session = FakeSession()
        sink.reporter.session = session

        logger.error("Connection refused by node")
        sink.flush()
        sink.close()

        assert len(session.posts) == 1
        payload = session.posts[0]["json"]
        assert payload["endpoint"] == ENDPOINT
        assert payload["instance"] == "indexer-1"
        assert payload["data"]["extra"]["severity"] == "major"
