"""Tests for log formatting and event throttling."""

import json
import logging

from idehub.logging import EventJsonFormatter, EventTextFormatter, EventThrottleFilter
from idehub.logging_schema import LogEvent


def make_record(
    message: str,
    *,
    level: int = logging.WARNING,
    event: LogEvent | None = LogEvent.INSTANCE_STUCK,
    instance_id: str | None = "abc123",
) -> logging.LogRecord:
    record = logging.LogRecord("idehub.test", level, __file__, 10, message, None, None)
    if event is not None:
        record.event = event
    if instance_id is not None:
        record.instance_id = instance_id
    return record


class TestEventThrottleFilter:
    def test_repeat_within_window_dropped(self) -> None:
        throttle = EventThrottleFilter(window=60)

        assert throttle.filter(make_record("stuck")) is True
        assert throttle.filter(make_record("stuck")) is False

    def test_other_instance_passes(self) -> None:
        throttle = EventThrottleFilter(window=60)

        assert throttle.filter(make_record("stuck", instance_id="aaa111")) is True
        assert throttle.filter(make_record("stuck", instance_id="bbb222")) is True

    def test_errors_always_pass(self) -> None:
        throttle = EventThrottleFilter(window=60)

        assert throttle.filter(make_record("boom", level=logging.ERROR)) is True
        assert throttle.filter(make_record("boom", level=logging.ERROR)) is True

    def test_zero_window_disables(self) -> None:
        throttle = EventThrottleFilter(window=0)

        assert throttle.filter(make_record("stuck")) is True
        assert throttle.filter(make_record("stuck")) is True


class TestFormatters:
    def test_text_tag(self) -> None:
        line = EventTextFormatter().format(make_record("starting for 900s"))

        assert "[instance_stuck abc123] starting for 900s" in line

    def test_text_without_event(self) -> None:
        line = EventTextFormatter().format(
            make_record("plain", event=None, instance_id=None)
        )

        assert line.endswith("idehub.test plain")

    def test_json_fields(self) -> None:
        line = EventJsonFormatter("idehub").format(make_record("starting for 900s"))

        data = json.loads(line)
        assert data["message"] == "starting for 900s"
        assert data["event"] == "instance_stuck"
        assert data["instance_id"] == "abc123"
        assert data["service"] == "idehub"
        assert data["level"] == "WARNING"
