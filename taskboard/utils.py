import logging

from taskboard.core import config


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_package_logger = logging.getLogger("taskboard")
_package_logger.setLevel(config.LOG_LEVEL)
_package_logger.addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the ``taskboard`` hierarchy.

    Handlers are left to the host application. Without any, records go nowhere.
    """
    return logging.getLogger(name)


def configure_logging(level: str = config.LOG_LEVEL) -> None:
    """Configure root logging for command-line entry points."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
