from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from storefront.app.db.models.core_types import Severity
from storefront.services.security import SecurityEventLog, client_ip_from_headers


def test_recent_is_most_recent_first():
    log = SecurityEventLog(max_entries=10)
    log.record("A")
    log.record("B")
    log.record("C")

    assert [e.event for e in log.recent()] == ["C", "B", "A"]
    assert [e.event for e in log.recent(limit=2)] == ["C", "B"]


def test_recent_filters_by_severity():
    log = SecurityEventLog()
    log.record("ORDER_CREATED", Severity.low)
    log.record("INVENTORY_RESTORE_FAILED", "high")
    log.record("ORDER_CANCELLED", Severity.low)

    high = log.recent(severity="high")

    assert [e.event for e in high] == ["INVENTORY_RESTORE_FAILED"]
    assert high[0].severity == Severity.high


def test_ring_is_bounded():
    log = SecurityEventLog(max_entries=3)
    for i in range(5):
        log.record(f"E{i}")

    assert len(log) == 3
    assert [e.event for e in log.recent()] == ["E4", "E3", "E2"]


def test_invalid_max_entries():
    with pytest.raises(ValueError):
        SecurityEventLog(max_entries=0)


def test_high_severity_raises_an_alert():
    log = SecurityEventLog()

    with capture_logs() as logs:
        log.record("INVENTORY_RESTORE_FAILED", Severity.high, user_id="u1", details={"order_id": 7})
        log.record("ORDER_CREATED", Severity.low)

    assert logs[0]["event"] == "security_alert"
    assert logs[0]["alert"] is True
    assert logs[0]["log_level"] == "error"
    assert logs[0]["details"] == {"order_id": 7}
    assert logs[1]["event"] == "security_event"
    assert logs[1]["log_level"] == "info"


def test_detect_suspicious_activity():
    log = SecurityEventLog()
    for _ in range(10):
        log.record("INSUFFICIENT_INVENTORY", user_id="bot")

    assert log.detect_suspicious_activity("bot", "INSUFFICIENT_INVENTORY") is False

    log.record("INSUFFICIENT_INVENTORY", user_id="bot")

    assert log.detect_suspicious_activity("bot", "INSUFFICIENT_INVENTORY") is True
    assert log.detect_suspicious_activity("someone-else", "INSUFFICIENT_INVENTORY") is False
    assert log.detect_suspicious_activity("bot", "INSUFFICIENT_INVENTORY", window=timedelta(0)) is False


def test_client_ip_prefers_first_forwarded_address():
    headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1", "x-real-ip": "10.0.0.2"}

    assert client_ip_from_headers(headers) == "203.0.113.7"
    assert client_ip_from_headers({"cf-connecting-ip": "198.51.100.4"}) == "198.51.100.4"
    assert client_ip_from_headers({}, fallback="127.0.0.1") == "127.0.0.1"
