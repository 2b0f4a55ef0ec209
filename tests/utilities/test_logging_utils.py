import logging

from rich.logging import RichHandler

from oauthmcp.utilities.logging import configure_logging, get_logger, redact


def test_get_logger_namespaces():
    assert get_logger("storage").name == "oauthmcp.storage"
    assert get_logger("oauthmcp.server.auth").name == "oauthmcp.server.auth"


def test_configure_logging_does_not_duplicate_handlers():
    logger = logging.getLogger("oauthmcp.tests.configure")
    configure_logging("DEBUG", logger=logger)
    configure_logging("WARNING", logger=logger)
    rich_handlers = [h for h in logger.handlers if isinstance(h, RichHandler)]
    assert len(rich_handlers) == 1
    assert logger.level == logging.WARNING


def test_redact():
    assert redact("abcdefghijklmnop") == "abcdefgh..."
    assert redact("abc", visible=2) == "ab..."
    assert redact(None) == "<none>"
    assert redact("") == "<none>"
