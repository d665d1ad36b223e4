"""Wires fping output through the parser into a metrics backend."""

import logging
from dataclasses import dataclass
from typing import Iterable

from pingflux.client import MetricsClient, MetricsWriteError, Provisioning, create_client
from pingflux.config import Settings
from pingflux.parser import OutputParser
from pingflux.supervisor import ProcessSupervisor, build_fping_args

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Counters for one pass over the fping output."""

    points: int = 0
    written: int = 0
    failed: int = 0


def write_points(lines: Iterable[str], parser: OutputParser, client: MetricsClient) -> RunStats:
    """Parse ``lines`` and write each Point before reading the next line.

    A rejected point is logged and dropped. Errors reading ``lines``
    propagate to the caller.
    """
    stats = RunStats()
    for point in parser.parse(lines):
        stats.points += 1
        try:
            client.write(point)
        except MetricsWriteError as e:
            stats.failed += 1
            logger.warning("Error writing data point: host=%s, error=%s", point.target_host, e)
            continue

        stats.written += 1
        logger.debug(
            "Point written: host=%s, loss=%d%%, avg=%.2fms",
            point.target_host,
            point.loss_percent,
            point.avg_rtt,
        )
    return stats


def prepare_client(client: MetricsClient) -> None:
    """Health-check the backend and create its database where supported.

    Raises:
        MetricsUnavailableError: If the backend cannot be used
    """
    description = client.health_check()
    logger.info("Connected to %s", description)

    if isinstance(client, Provisioning):
        client.ensure_database()


def run(settings: Settings, client: MetricsClient | None = None) -> int:
    """Start fping and forward its reports until it exits.

    Args:
        settings: Loaded configuration
        client: Backend to write to; built from ``settings`` when None

    Returns:
        fping's exit status

    Raises:
        ConfigError: If the measurement template is invalid
        MetricsUnavailableError: If the backend fails its health check
        ProbeLaunchError: If fping cannot be started
    """
    measurement = settings.measurement
    if client is None:
        client = create_client(settings.influx, measurement, settings.tags)

    try:
        prepare_client(client)

        fping = settings.fping
        args = build_fping_args(
            settings.hosts,
            backoff=fping.backoff,
            retries=fping.retries,
            tos=fping.tos,
            summary=fping.summary,
            period=fping.period,
            custom=fping.custom,
        )
        parser = OutputParser(settings.hostname)

        logger.info("Launching fping with hosts: %s", ", ".join(settings.hosts))
        with ProcessSupervisor(args, binary=fping.binary or None) as supervisor:
            stats = write_points(supervisor.lines(), parser, client)
            returncode = supervisor.returncode
    finally:
        client.close()

    logger.info(
        "Probe stream ended: points=%d, written=%d, failed=%d",
        stats.points,
        stats.written,
        stats.failed,
    )
    return returncode or 0
