import json
import logging

from coinbase_feed_lake.core.logging import JsonLineFormatter, KeyValueFormatter, configure_logging, record_extras


def _record() -> logging.LogRecord:
    record = logging.LogRecord(
        "coinbase_feed_lake.test", logging.WARNING, __file__, 10, "Sequence gap detected", None, None
    )
    record.event = "gap_detected"
    record.low = 3
    record.high = 4
    return record


def test_record_extras_only_returns_extra_fields() -> None:
    assert record_extras(_record()) == {"event": "gap_detected", "low": 3, "high": 4}


def test_json_formatter_renders_extras() -> None:
    payload = json.loads(JsonLineFormatter().format(_record()))

    assert payload["message"] == "Sequence gap detected"
    assert payload["level"] == "WARNING"
    assert payload["event"] == "gap_detected"
    assert (payload["low"], payload["high"]) == (3, 4)


def test_key_value_formatter_appends_sorted_extras() -> None:
    line = KeyValueFormatter().format(_record())

    assert line.endswith("event=gap_detected high=4 low=3")


def test_configure_logging_replaces_handlers() -> None:
    root = logging.getLogger()
    previous = list(root.handlers)
    previous_level = root.level
    try:
        configure_logging("debug", json_output=False)
        configure_logging("info")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonLineFormatter)
        assert root.level == logging.INFO
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in previous:
            root.addHandler(handler)
        root.setLevel(previous_level)
