from __future__ import annotations

import io
import json
import logging

from cronic.log import JobLogger, JsonFormatter, TextFormatter, TEXT_FORMAT


def _logger_with(formatter: logging.Formatter, name: str) -> tuple:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    logger = logging.getLogger(name)
    logger.handlers = [handler]
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger, stream


def test_with_fields_merges_without_mutating_parent() -> None:
    parent = JobLogger(logging.getLogger("tests.log.merge"), {"job.position": 1})
    child = parent.with_fields({"iteration": 4})
    assert parent.fields == {"job.position": 1}
    assert child.fields == {"job.position": 1, "iteration": 4}


def test_text_formatter_appends_fields() -> None:
    logger, stream = _logger_with(TextFormatter(TEXT_FORMAT), "tests.log.text")
    JobLogger(logger, {"job.command": "echo hi", "channel": "stdout"}).info("hello")
    line = stream.getvalue().strip()
    assert line.endswith('INFO hello job.command="echo hi" channel=stdout')


def test_json_formatter_emits_one_object_per_record() -> None:
    logger, stream = _logger_with(JsonFormatter(), "tests.log.json")
    JobLogger(logger, {"iteration": 2}).with_fields({"channel": "stderr"}).warning("oops")
    payload = json.loads(stream.getvalue())
    assert payload["msg"] == "oops"
    assert payload["level"] == "warning"
    assert payload["iteration"] == 2
    assert payload["channel"] == "stderr"
    assert "time" in payload
