import json
import logging

from coinclash.core.logger import ColoredFormatter, JsonFormatter, PlainFormatter


def make_record(**extra):
    record = logging.LogRecord("coinclash.sessions", logging.INFO, __file__, 1, "Coin landed on %s", ("heads",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context():
    payload = json.loads(JsonFormatter().format(make_record(user_id=7, session_id="s1")))

    assert payload["message"] == "Coin landed on heads"
    assert payload["level"] == "INFO"
    assert payload["name"] == "coinclash.sessions"
    assert payload["user_id"] == 7
    assert payload["session_id"] == "s1"


def test_text_formatters_append_context():
    record = make_record(round_id="r1", user_id=3)

    plain = PlainFormatter().format(record)
    assert plain.endswith("Coin landed on heads [round_id=r1 user_id=3]")
    assert "round_id=r1" in ColoredFormatter().format(record)


def test_no_context_no_brackets():
    assert PlainFormatter().format(make_record()).endswith("Coin landed on heads")
