import json
import logging

import structlog

from pipeline.config.logging import build_stdlib_formatter, setup_logging
from pipeline.config.settings import Settings


def test_stdlib_extra_fields_are_rendered():
    """Fields passed with ``extra=`` show up in the rendered event."""
    record = logging.makeLogRecord(
        {
            "name": "pipeline.v1.infra.jobs.store",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "Job enqueued",
            "job_id": 42,
            "priority": 90,
        }
    )

    rendered = json.loads(build_stdlib_formatter().format(record))

    assert rendered["event"] == "Job enqueued"
    assert rendered["job_id"] == 42
    assert rendered["priority"] == 90
    assert rendered["level"] == "info"
    assert rendered["logger"] == "pipeline.v1.infra.jobs.store"
    assert "timestamp" in rendered


def test_setup_logging_installs_one_handler():
    setup_logging(Settings())
    setup_logging(Settings())

    structured = [
        handler
        for handler in logging.getLogger().handlers
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter)
    ]
    assert len(structured) == 1
