from __future__ import annotations

import io
import json
import logging

from trakt_mediator.backend.common.logging import get_logger, init_logging


def test_json_lines_include_extra_fields() -> None:
    stream = io.StringIO()
    init_logging("DEBUG", stream=stream)

    get_logger("backend.test").info("History saved for user %s", "bob", extra={"inserted": 2})

    record = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert record["msg"] == "History saved for user bob"
    assert record["level"] == "INFO"
    assert record["logger"] == "trakt_mediator.backend.test"
    assert record["inserted"] == 2


def test_level_filtering() -> None:
    stream = io.StringIO()
    init_logging("warning", stream=stream)

    log = get_logger("backend.test")
    log.info("hidden")
    log.warning("shown")

    lines = stream.getvalue().strip().splitlines()
    assert [json.loads(line)["msg"] for line in lines] == ["shown"]
    assert logging.getLogger("trakt_mediator").propagate is False


def test_module_names_are_namespaced_once() -> None:
    assert get_logger("trakt_mediator.x").name == "trakt_mediator.x"
    assert get_logger().name == "trakt_mediator"
