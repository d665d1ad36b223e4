"""In-memory metrics backend for dry runs and testing."""

import logging
from collections import deque
from typing import Mapping

from pingflux.client import PROBE_TIME, MetricsWriteError, Record, build_record
from pingflux.models import Point

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 1000


class RecordingClient:
    """MetricsClient that keeps written records in memory and logs them.

    Selected with ``PINGFLUX_BACKEND=fake`` to watch what would be written
    without a database. ``fail_hosts`` makes writes for those targets fail,
    which exercises the write-failure path. Only the newest ``max_records``
    records are kept.
    """

    def __init__(
        self,
        measurement: str = "pingflux",
        tags: Mapping[str, str] | None = None,
        timestamp_policy: str = PROBE_TIME,
        fail_hosts: set[str] | None = None,
        max_records: int | None = DEFAULT_MAX_RECORDS,
    ):
        self.measurement = measurement
        self.tags = dict(tags or {})
        self.timestamp_policy = timestamp_policy
        self.fail_hosts = set(fail_hosts or ())
        self.records: deque[Record] = deque(maxlen=max_records)
        self.closed = False

    def health_check(self) -> str:
        return "in-memory recorder"

    def write(self, point: Point) -> None:
        if point.target_host in self.fail_hosts:
            raise MetricsWriteError(f"Simulated write failure for {point.target_host}")

        record = build_record(point, self.measurement, self.tags, self.timestamp_policy)
        self.records.append(record)
        logger.info(
            "Point: measurement=%s, tags=%s, fields=%s, time=%s",
            record.measurement,
            record.tags,
            record.fields,
            record.time.isoformat(),
        )

    def close(self) -> None:
        self.closed = True
