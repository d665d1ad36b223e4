"""Entry point for the pingflux daemon."""

import logging
import os
import sys

from pingflux.client import MetricsError
from pingflux.config import ConfigError, load_settings
from pingflux.fake_client import RecordingClient
from pingflux.logging_config import configure_logging
from pingflux.runner import run
from pingflux.supervisor import ProbeLaunchError

logger = logging.getLogger(__name__)

BACKEND_ENV = "PINGFLUX_BACKEND"


def main(argv: list[str] | None = None) -> int:
    """Run pingflux until fping exits.

    An optional single argument names the config file; otherwise
    PINGFLUX_CONFIG and the standard locations are searched.

    Returns:
        Process exit status: fping's status, or 1 on a fatal error
    """
    configure_logging()
    argv = sys.argv[1:] if argv is None else argv
    config_path = argv[0] if argv else None

    try:
        settings = load_settings(config_path)

        client = None
        if os.environ.get(BACKEND_ENV, "").lower() == "fake":
            logger.info("Using in-memory backend (%s=fake), nothing is stored", BACKEND_ENV)
            client = RecordingClient(measurement=settings.measurement, tags=settings.tags)

        return run(settings, client=client)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
    except MetricsError as e:
        logger.error("Metrics backend unavailable: %s", e)
    except ProbeLaunchError as e:
        logger.error("Unable to launch fping: %s", e)
    except OSError:
        logger.exception("Failed when obtaining and storing pings")
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
