"""Logging configuration for the pingflux daemon."""

import logging
import os
import sys

LOG_LEVEL_ENV = "PINGFLUX_LOG_LEVEL"

# Client libraries that log every HTTP request at DEBUG.
NOISY_LOGGERS = ("urllib3", "influxdb_client", "influxdb")


def resolve_level(name: str | None) -> int:
    """Map a level name to a logging constant, falling back to INFO."""
    level = logging.getLevelName((name or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger for the daemon.

    Records go to stderr, interleaving with anything fping itself prints
    there when run by hand. The level comes from ``level`` or, when not
    given, from PINGFLUX_LOG_LEVEL (default INFO).

    Examples:
        $ PINGFLUX_LOG_LEVEL=DEBUG pingflux
    """
    log_level = resolve_level(level or os.environ.get(LOG_LEVEL_ENV))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,
    )

    # Library chatter stays at WARNING or above unless pingflux runs at DEBUG
    library_level = log_level if log_level <= logging.DEBUG else max(log_level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logging.getLogger(__name__).debug(
        "Logging configured: level=%s", logging.getLevelName(log_level)
    )
