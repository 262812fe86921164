from __future__ import annotations

import logging
from io import StringIO

from carlog_import.logging.init import (
    LOGGER_NAME,
    SUMMARY_LEVEL,
    LabeledFormatter,
    get_logger,
    log_summary,
    setup_logging,
)


def test_setup_logging_creates_labeled_logger(clean_logging):
    logger = setup_logging()
    assert logger.name == LOGGER_NAME == "carlog_import"
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, LabeledFormatter)
    assert logger.propagate is False


def test_setup_logging_is_idempotent_and_adjusts_level(clean_logging):
    first = setup_logging()
    second = setup_logging(debug=True)
    assert first is second
    assert len(second.handlers) == 1
    assert second.level == logging.DEBUG
    assert get_logger() is first


def test_labeled_prefixes():
    out = StringIO()
    logger = logging.getLogger("test_carlog_labels")
    logger.setLevel(logging.DEBUG)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    handler = logging.StreamHandler(out)
    handler.setFormatter(LabeledFormatter())
    logger.addHandler(handler)
    logger.propagate = False

    logger.info("info message")
    logger.warning("warn message")
    logger.error("error message")
    logger.log(SUMMARY_LEVEL, "total=1")

    assert out.getvalue().splitlines() == [
        "INFO info message",
        "WARN warn message",
        "ERROR error message",
        "SUMMARY total=1",
    ]


def test_module_loggers_propagate_to_app_handler(clean_logging, capsys):
    setup_logging()
    logging.getLogger("carlog_import.services.reconcile").warning("child message")
    log_summary("total=0 created=0")
    out = capsys.readouterr().out
    assert "WARN child message" in out
    assert "SUMMARY total=0 created=0" in out


def test_debug_records_hidden_by_default(clean_logging, capsys):
    setup_logging()
    logging.getLogger("carlog_import.excel.reader").debug("hidden")
    assert "hidden" not in capsys.readouterr().out
