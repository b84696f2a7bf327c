import logging

import orjson

from usd1_radar.logging_utils import JsonFormatter, setup_logging


def _record(**extra):
    record = logging.LogRecord("usd1_radar.test", logging.WARNING, __file__, 12, "sweep %d", (3,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extras():
    payload = orjson.loads(JsonFormatter().format(_record(mint="M1")))
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "usd1_radar.test"
    assert payload["msg"] == "sweep 3"
    assert payload["mint"] == "M1"
    assert payload["ts"].endswith("Z")


def test_setup_logging_installs_single_handler():
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        first = setup_logging("debug")
        second = setup_logging(logging.INFO, json_logs=True)
        assert first is second
        assert root.handlers.count(first) == 1
        assert isinstance(first.formatter, JsonFormatter)
        assert root.level == logging.INFO
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
        root.setLevel(level)
