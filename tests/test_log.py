import io
import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from cadence.log import configure_logging, verbosity_to_level


@pytest.fixture(autouse=True)
def _restore_package_logger():
    yield
    logger = logging.getLogger("cadence")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


def test_reconfiguring_keeps_a_single_handler():
    first, second = io.StringIO(), io.StringIO()
    configure_logging(logging.INFO, first)
    logger = configure_logging(logging.DEBUG, second)

    assert len(logger.handlers) == 1
    assert logger.level == logging.DEBUG
    logging.getLogger("cadence.run").debug("pulse %d", 3)
    assert first.getvalue() == ""
    assert "| DEBUG | cadence.run | pulse 3" in second.getvalue()


def test_level_filters_module_loggers():
    stream = io.StringIO()
    configure_logging(logging.WARNING, stream)
    logging.getLogger("cadence.symbols").info("hidden")
    logging.getLogger("cadence.instrument").warning("shown")
    assert "hidden" not in stream.getvalue()
    assert "shown" in stream.getvalue()


def test_verbosity_to_level():
    assert verbosity_to_level(0) == logging.WARNING
    assert verbosity_to_level(1) == logging.INFO
    assert verbosity_to_level(3) == logging.DEBUG
