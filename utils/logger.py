import logging
import sys

LOGGER_NAME = "spotify_now_playing"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

_logger = logging.getLogger(LOGGER_NAME)


def setup_logging(verbose: bool = False) -> None:
    """Configure root logging to stderr; stdout is reserved for track lines."""

    level = logging.DEBUG if verbose else logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y/%m/%d %H:%M:%S"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # httpx logs every request at INFO; keep that out of the poll output.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def log_debug(message: str) -> None:
    _logger.debug(message)


def log_info(message: str) -> None:
    _logger.info(message)


def log_success(message: str) -> None:
    _logger.info(f"✓ {message}")


def log_warning(message: str) -> None:
    _logger.warning(message)


def log_error(message: str) -> None:
    _logger.error(message)
