"""Metrics client abstraction and the InfluxDB backends behind it.

Two InfluxDB generations are supported through one interface:

- ``InfluxQLClient``: InfluxDB 1.x (database + retention policy, user/password).
  Records carry the probe's report time by default, and the database is
  created on first use.
- ``InfluxV2Client``: InfluxDB 2.x (org + bucket, API token). Records carry
  the time of the write call by default; the bucket must already exist.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from influxdb import InfluxDBClient as InfluxQLConnection
from influxdb.exceptions import InfluxDBClientError, InfluxDBServerError
from influxdb_client import InfluxDBClient as InfluxV2Connection
from influxdb_client import Point as InfluxPoint
from influxdb_client import WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.rest import ApiException
from urllib3.exceptions import HTTPError

from pingflux.config import InfluxSettings
from pingflux.models import Point

logger = logging.getLogger(__name__)

PROBE_TIME = "probe"
WRITE_TIME = "write"
TIMESTAMP_POLICIES = (PROBE_TIME, WRITE_TIME)

SOURCE_TAG = "tx_host"
TARGET_TAG = "rx_host"


class MetricsError(Exception):
    """Base class for metrics backend failures."""


class MetricsUnavailableError(MetricsError):
    """The backend failed its health check or could not be provisioned."""


class MetricsWriteError(MetricsError):
    """The backend rejected a single point."""


class MetricsClient(Protocol):
    """Protocol implemented by every metrics backend."""

    def write(self, point: Point) -> None:
        """Persist one point. Raises MetricsWriteError on rejection."""
        ...

    def health_check(self) -> str:
        """Check reachability, returning a short backend description.

        Raises MetricsUnavailableError when the backend is unusable.
        """
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class Provisioning(Protocol):
    """Optional capability of backends that can create their own database."""

    def ensure_database(self) -> bool:
        """Create the target database if missing; True if it was created."""
        ...


@dataclass
class Record:
    """Backend-neutral form of one written point."""

    measurement: str
    tags: dict[str, str]
    fields: dict[str, Any]
    time: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_record(
    point: Point,
    measurement: str,
    static_tags: Mapping[str, str],
    timestamp_policy: str = PROBE_TIME,
    clock: Callable[[], datetime] = _utc_now,
    mirror_hosts: bool = False,
) -> Record:
    """Assemble the tags, fields and time written for a point.

    Tags are the static tags plus ``tx_host``/``rx_host``; the host tags win
    on a key clash. Fields are ``loss`` alone, or ``loss``, ``min``, ``avg``
    and ``max`` when the point has RTT values. With ``mirror_hosts`` the host
    names are repeated as fields alongside RTT values.

    Args:
        point: Parsed fping report
        measurement: Measurement (series) name
        static_tags: Configured tags added to every record
        timestamp_policy: PROBE_TIME for the report time, WRITE_TIME for now
        clock: Source of "now" for WRITE_TIME
        mirror_hosts: Also write the host names as fields

    Returns:
        Record ready to be converted to a backend's wire form
    """
    if timestamp_policy not in TIMESTAMP_POLICIES:
        raise ValueError(f"Unknown timestamp policy: {timestamp_policy!r}")

    tags = dict(static_tags)
    tags[SOURCE_TAG] = point.source_host
    tags[TARGET_TAG] = point.target_host

    fields: dict[str, Any] = {"loss": point.loss_percent}
    if point.has_rtt:
        if mirror_hosts:
            fields[SOURCE_TAG] = point.source_host
            fields[TARGET_TAG] = point.target_host
        fields["min"] = point.min_rtt
        fields["avg"] = point.avg_rtt
        fields["max"] = point.max_rtt

    timestamp = point.observed_at if timestamp_policy == PROBE_TIME else clock()
    return Record(measurement=measurement, tags=tags, fields=fields, time=timestamp)


class InfluxQLClient:
    """MetricsClient backed by InfluxDB 1.x."""

    def __init__(
        self,
        connection: InfluxQLConnection,
        database: str,
        measurement: str,
        retention_policy: str = "",
        tags: Mapping[str, str] | None = None,
        timestamp_policy: str = PROBE_TIME,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._connection = connection
        self.database = database
        self.measurement = measurement
        self.retention_policy = retention_policy
        self.tags = dict(tags or {})
        self.timestamp_policy = timestamp_policy
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: InfluxSettings, measurement: str, tags: Mapping[str, str]
    ) -> "InfluxQLClient":
        connection = InfluxQLConnection(
            host=settings.host,
            port=settings.port,
            username=settings.user,
            password=settings.password,
            database=settings.db,
            ssl=settings.secure,
            verify_ssl=settings.secure,
        )
        return cls(
            connection,
            database=settings.db,
            measurement=measurement,
            retention_policy=settings.policy,
            tags=tags,
            timestamp_policy=settings.timestamp or PROBE_TIME,
        )

    def health_check(self) -> str:
        try:
            version = self._connection.ping()
        except (InfluxDBClientError, InfluxDBServerError, OSError) as e:
            raise MetricsUnavailableError(f"Unable to ping InfluxDB: {e}") from e
        return f"InfluxDB {version}"

    def ensure_database(self) -> bool:
        """Create the configured database if it does not exist.

        Returns:
            True if the database was created, False if it already existed
        """
        try:
            databases = self._connection.get_list_database()
            if any(db.get("name") == self.database for db in databases):
                return False
            self._connection.create_database(self.database)
        except (InfluxDBClientError, InfluxDBServerError, OSError) as e:
            raise MetricsUnavailableError(
                f"Failed to provision database {self.database}: {e}"
            ) from e

        logger.info("Created new database %s", self.database)
        return True

    def write(self, point: Point) -> None:
        record = build_record(
            point, self.measurement, self.tags, self.timestamp_policy, self._clock
        )
        body = [
            {
                "measurement": record.measurement,
                "tags": record.tags,
                "time": record.time,
                "fields": record.fields,
            }
        ]
        try:
            self._connection.write_points(
                body,
                database=self.database,
                retention_policy=self.retention_policy or None,
            )
        except (InfluxDBClientError, InfluxDBServerError, OSError) as e:
            raise MetricsWriteError(f"InfluxDB rejected point for {point.target_host}: {e}") from e

    def close(self) -> None:
        self._connection.close()


class InfluxV2Client:
    """MetricsClient backed by InfluxDB 2.x.

    Bucket and organisation provisioning happen outside pingflux.
    """

    def __init__(
        self,
        connection: InfluxV2Connection,
        org: str,
        bucket: str,
        measurement: str,
        tags: Mapping[str, str] | None = None,
        timestamp_policy: str = WRITE_TIME,
        mirror_hosts: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._connection = connection
        self._write_api = connection.write_api(write_options=SYNCHRONOUS)
        self.org = org
        self.bucket = bucket
        self.measurement = measurement
        self.tags = dict(tags or {})
        self.timestamp_policy = timestamp_policy
        self.mirror_hosts = mirror_hosts
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: InfluxSettings, measurement: str, tags: Mapping[str, str]
    ) -> "InfluxV2Client":
        connection = InfluxV2Connection(
            url=settings.url,
            token=settings.token,
            org=settings.org,
            verify_ssl=settings.secure,
        )
        return cls(
            connection,
            org=settings.org,
            bucket=settings.bucket,
            measurement=measurement,
            tags=tags,
            timestamp_policy=settings.timestamp or WRITE_TIME,
        )

    def health_check(self) -> str:
        try:
            ok = self._connection.ping()
        except (ApiException, HTTPError, OSError) as e:
            raise MetricsUnavailableError(f"Unable to ping InfluxDB: {e}") from e
        if not ok:
            raise MetricsUnavailableError("InfluxDB ping failed")
        return f"InfluxDB 2.x (org={self.org}, bucket={self.bucket})"

    def to_influx_point(self, point: Point) -> InfluxPoint:
        record = build_record(
            point,
            self.measurement,
            self.tags,
            self.timestamp_policy,
            self._clock,
            mirror_hosts=self.mirror_hosts,
        )
        influx_point = InfluxPoint(record.measurement)
        for key, value in record.tags.items():
            influx_point.tag(key, value)
        for key, value in record.fields.items():
            influx_point.field(key, value)
        return influx_point.time(record.time, WritePrecision.NS)

    def write(self, point: Point) -> None:
        try:
            self._write_api.write(
                bucket=self.bucket, org=self.org, record=self.to_influx_point(point)
            )
        except (ApiException, HTTPError, OSError) as e:
            raise MetricsWriteError(f"InfluxDB rejected point for {point.target_host}: {e}") from e

    def close(self) -> None:
        self._write_api.close()
        self._connection.close()


def create_client(
    settings: InfluxSettings, measurement: str, tags: Mapping[str, str]
) -> MetricsClient:
    """Build the backend selected by ``settings.version``."""
    if settings.version == 1:
        logger.debug("Using InfluxDB 1.x backend: %s:%s db=%s", settings.host, settings.port, settings.db)
        return InfluxQLClient.from_settings(settings, measurement, tags)
    if settings.version == 2:
        logger.debug("Using InfluxDB 2.x backend: %s bucket=%s", settings.url, settings.bucket)
        return InfluxV2Client.from_settings(settings, measurement, tags)
    raise ValueError(f"Unsupported InfluxDB version: {settings.version}")
