from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

from app.infra.logging import JSONFormatter, setup_logging


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.LogRecord(
        name="app.services.task_service",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="task transition applied",
        args=(),
        exc_info=None,
    )
    record.task_id = "task-1"
    record.to_status = "InProgress"

    payload = json.loads(JSONFormatter().format(record))
    assert payload["level"] == "INFO"
    assert payload["logger"] == "app.services.task_service"
    assert payload["message"] == "task transition applied"
    assert payload["extra"] == {"task_id": "task-1", "to_status": "InProgress"}


def test_json_formatter_renders_exceptions() -> None:
    try:
        raise ValueError("bad value")
    except ValueError:
        record = logging.LogRecord("app", logging.ERROR, __file__, 1, "failed", (), exc_info=sys.exc_info())
    payload = json.loads(JSONFormatter().format(record))
    assert "ValueError: bad value" in payload["exception"]


def test_setup_logging_writes_json_file(tmp_path: Path) -> None:
    logger = setup_logging("debug", "maintenance-test", str(tmp_path))
    assert logger.level == logging.DEBUG
    logging.getLogger("app.services.task_service").info("task created", extra={"task_id": "t-1"})
    for handler in logging.getLogger("app").handlers:
        handler.flush()

    log_files = list(tmp_path.glob("*.log"))
    assert len(log_files) == 1
    lines = [json.loads(line) for line in log_files[0].read_text().splitlines() if line]
    assert any(line["message"] == "task created" and line["extra"]["task_id"] == "t-1" for line in lines)

    for name in ("app", "maintenance-test"):
        for handler in logging.getLogger(name).handlers:
            handler.close()
        logging.getLogger(name).handlers.clear()


def test_setup_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        setup_logging("LOUD", "maintenance-test")
