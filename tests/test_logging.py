import logging

import pytest
import structlog

from tokenwatch.logging import setup_logging


@pytest.fixture(autouse=True)
def restore_structlog() -> "object":
    yield
    structlog.reset_defaults()
    logging.getLogger("httpx").setLevel(logging.NOTSET)


class TestSetupLogging:
    def test_sets_root_level(self) -> "None":
        setup_logging("warning")

        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_verbose_enables_debug_and_httpx(self) -> "None":
        setup_logging("error", verbose=True)

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self) -> "None":
        setup_logging("chatty")

        assert logging.getLogger().level == logging.INFO
