"""Console logging for the command line tools."""

import logging
import sys


def setup_logging(level: int = logging.INFO) -> None:
    """
    Send fieldrank log records to stderr.

    Library code only creates module loggers; handlers are installed here, by
    the CLI, and by nobody else.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    root_logger.addHandler(console_handler)
