import json
import logging

from reverify.logging_config import StructuredFormatter, configure_logging, set_request_id


def test_structured_formatter_emits_json():
    set_request_id("req-1")
    record = logging.LogRecord("reverify.authentication", logging.WARNING, __file__, 10, "replay %s", ("S1",), None)
    record.extra_fields = {"subject_id": "S1"}

    out = json.loads(StructuredFormatter().format(record))

    assert out["level"] == "WARNING"
    assert out["logger"] == "reverify.authentication"
    assert out["message"] == "replay S1"
    assert out["request_id"] == "req-1"
    assert out["subject_id"] == "S1"


def test_configure_logging_installs_one_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("debug", json_format=True)
        configure_logging("info", json_format=True)

        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
