"""Tests for notifications module."""

import logging

import pytest

from notifications import NotificationLog


class TestNotificationLog:
    def test_publish_records_in_order(self) -> None:
        log = NotificationLog("test")
        log.publish("iteration-start", iteration=1)
        log.publish("cost-update", total_cost=0.5)
        assert [e.kind for e in log] == ["iteration-start", "cost-update"]
        assert len(log) == 2

    def test_of_kind(self) -> None:
        log = NotificationLog("test")
        log.publish("reset")
        log.publish("usage-update", tokens=10)
        log.publish("reset")
        assert len(log.of_kind("reset")) == 2
        assert log.of_kind("usage-update")[0].data == {"tokens": 10}

    def test_subscribers_called(self) -> None:
        seen = []
        log = NotificationLog("test")
        log.subscribe(seen.append)
        event = log.publish("emergency-reset")
        assert seen == [event]

    def test_failing_subscriber_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        seen = []

        def broken(_event) -> None:
            raise ValueError("subscriber bug")

        log = NotificationLog("test")
        log.subscribe(broken)
        log.subscribe(seen.append)
        with caplog.at_level(logging.WARNING, logger="notifications"):
            log.publish("reset")
        assert len(seen) == 1
        assert "subscriber bug" in caplog.text

    def test_instances_independent(self) -> None:
        a, b = NotificationLog("a"), NotificationLog("b")
        a.publish("reset")
        assert len(b) == 0

    def test_clear(self) -> None:
        log = NotificationLog("test")
        log.publish("reset")
        log.clear()
        assert len(log) == 0
