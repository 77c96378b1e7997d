import json
import logging
from datetime import datetime

import pytest

from imgqueue.logging_setup import LOGGER_NAME, get_logger, init_logger


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _records(text):
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def test_component_and_fields_are_emitted_as_json(capsys):
    init_logger("info", False, "")
    capsys.readouterr()
    get_logger("main").info("hello")
    records = _records(capsys.readouterr().out)
    assert len(records) == 1
    record = records[0]
    assert record["message"] == "hello"
    assert record["level"] == "info"
    assert record["component"] == "main"
    assert isinstance(datetime.fromisoformat(record["timestamp"]), datetime)


def test_extra_fields_are_merged_with_component(capsys):
    init_logger("info", False, "")
    capsys.readouterr()
    get_logger("consumer").info("started", extra={"queue": "incoming"})
    record = _records(capsys.readouterr().out)[0]
    assert record["component"] == "consumer"
    assert record["queue"] == "incoming"


def test_init_announces_itself(capsys):
    init_logger("info", False, "")
    records = _records(capsys.readouterr().out)
    assert len(records) == 1
    assert records[0]["level"] == "info"


def test_unknown_level_falls_back_to_info(capsys):
    logger = init_logger("nonsense", False, "")
    assert logger.level == logging.INFO
    capsys.readouterr()
    get_logger("x").debug("hidden")
    assert capsys.readouterr().out == ""


def test_debug_level_lets_debug_through(capsys):
    logger = init_logger("DEBUG", False, "")
    assert logger.level == logging.DEBUG
    capsys.readouterr()
    get_logger("x").debug("shown")
    records = _records(capsys.readouterr().out)
    assert [r["message"] for r in records] == ["shown"]
    assert records[0]["level"] == "debug"


def test_warn_alias_filters_info(capsys):
    init_logger("warn", False, "")
    capsys.readouterr()
    log = get_logger("x")
    log.info("quiet")
    log.warning("loud")
    records = _records(capsys.readouterr().out)
    assert [r["message"] for r in records] == ["loud"]
    assert records[0]["level"] == "warning"


def test_reinitialising_does_not_duplicate_output(capsys):
    init_logger("info", False, "")
    init_logger("info", False, "")
    capsys.readouterr()
    get_logger("x").info("once")
    assert len(_records(capsys.readouterr().out)) == 1


def test_file_logging_creates_directory_and_file(tmp_path, capsys):
    log_dir = tmp_path / "nested" / "logs"
    init_logger("info", True, str(log_dir))
    get_logger("main").info("to file")
    files = list(log_dir.glob("processor-*.log"))
    assert len(files) == 1
    lines = _records(files[0].read_text(encoding="utf-8"))
    assert [r["message"] for r in lines][-1] == "to file"
    assert lines[-1]["component"] == "main"
    stdout_messages = [r["message"] for r in _records(capsys.readouterr().out)]
    assert "to file" in stdout_messages