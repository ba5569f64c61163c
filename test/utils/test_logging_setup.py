"""Unit tests for setup_logging."""

import logging

import pytest

from ralph_controller.utils.logging_setup import setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_writes_debug_log_file(tmp_path):
    log_file = setup_logging("WARNING", log_dir=tmp_path / "logs")

    logging.getLogger("ralph_controller.test").debug("detail for the file")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_file is not None
    assert log_file.parent == tmp_path / "logs"
    assert log_file.name.startswith("ralph-")
    assert "detail for the file" in log_file.read_text()


def test_console_level(tmp_path):
    setup_logging("ERROR", log_dir=tmp_path)

    levels = sorted(h.level for h in logging.getLogger().handlers)

    assert levels == [logging.DEBUG, logging.ERROR]


def test_unwritable_log_dir(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")

    assert setup_logging(log_dir=blocker) is None
    assert len(logging.getLogger().handlers) == 1
