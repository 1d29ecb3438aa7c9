import logging

import pytest

from tablet_volumes import logging_config
from tablet_volumes.logging_config import configure_logging, log


@pytest.fixture(autouse=True)
def restore_levels():
    names = ("", "tablet_volumes") + logging_config._QUIET_LOGGERS
    levels = {name: logging.getLogger(name).level for name in names}
    yield
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)


def test_configure_logging_keeps_storage_clients_quiet():
    assert configure_logging("debug") is log

    assert log.level == logging.DEBUG
    assert logging.getLogger("botocore").level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING


def test_log_level_falls_back_to_environment_then_info(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    assert logging_config._coerce_level(None) == logging.ERROR
    assert logging_config._coerce_level("nonsense") == logging.INFO
    assert logging_config._coerce_level(logging.DEBUG) == logging.DEBUG
