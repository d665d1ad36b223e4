"""Tests for the metrics client abstraction and the InfluxDB backends.

The InfluxDB library clients are replaced with small stand-ins injected
through the constructors, so no server is needed.
"""

from datetime import datetime, timezone

import pytest
from influxdb.exceptions import InfluxDBClientError, InfluxDBServerError
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.rest import ApiException

from pingflux.client import (
    PROBE_TIME,
    WRITE_TIME,
    InfluxQLClient,
    InfluxV2Client,
    MetricsUnavailableError,
    MetricsWriteError,
    Provisioning,
    build_record,
    create_client,
)
from pingflux.config import InfluxSettings
from pingflux.models import Point

PROBE_AT = datetime(2026, 10, 19, 10, 0, 1, tzinfo=timezone.utc)
WRITE_AT = datetime(2026, 10, 19, 10, 0, 4, 500000, tzinfo=timezone.utc)


def write_clock():
    return WRITE_AT


def reply_point(**overrides):
    values = dict(
        observed_at=PROBE_AT,
        source_host="probe1",
        target_host="host-a",
        loss_percent=0,
        min_rtt=1.0,
        avg_rtt=2.0,
        max_rtt=3.0,
    )
    values.update(overrides)
    return Point(**values)


def loss_point():
    return Point(observed_at=PROBE_AT, source_host="probe1", target_host="host-b", loss_percent=100)


class StubInfluxQL:
    """Stand-in for influxdb.InfluxDBClient."""

    def __init__(self, databases=(), error=None, version="1.8.10"):
        self.databases = [{"name": name} for name in databases]
        self.error = error
        self.version = version
        self.created = []
        self.writes = []
        self.closed = False

    def ping(self):
        if self.error:
            raise self.error
        return self.version

    def get_list_database(self):
        if self.error:
            raise self.error
        return list(self.databases)

    def create_database(self, name):
        self.created.append(name)

    def write_points(self, points, database=None, retention_policy=None):
        if self.error:
            raise self.error
        self.writes.append({"points": points, "database": database, "policy": retention_policy})
        return True

    def close(self):
        self.closed = True


class StubWriteApi:
    def __init__(self, error=None):
        self.error = error
        self.writes = []
        self.closed = False

    def write(self, bucket, org, record):
        if self.error:
            raise self.error
        self.writes.append({"bucket": bucket, "org": org, "record": record})

    def close(self):
        self.closed = True


class StubInfluxV2:
    """Stand-in for influxdb_client.InfluxDBClient."""

    def __init__(self, ping_ok=True, error=None):
        self.ping_ok = ping_ok
        self.error = error
        self.api = StubWriteApi(error)
        self.write_options = None
        self.closed = False

    def write_api(self, write_options=None):
        self.write_options = write_options
        return self.api

    def ping(self):
        return self.ping_ok

    def close(self):
        self.closed = True


class TestBuildRecord:
    """Test the backend-neutral record layout."""

    def test_reply_fields(self):
        record = build_record(reply_point(), "pingflux", {})

        assert record.measurement == "pingflux"
        assert record.tags == {"tx_host": "probe1", "rx_host": "host-a"}
        assert record.fields == {"loss": 0, "min": 1.0, "avg": 2.0, "max": 3.0}

    def test_total_loss_writes_loss_only(self):
        """Test RTT fields are left out when nothing was measured."""
        record = build_record(loss_point(), "pingflux", {})

        assert record.fields == {"loss": 100}

    def test_static_tags_merged(self):
        record = build_record(reply_point(), "pingflux", {"site": "home", "rack": "r1"})

        assert record.tags == {
            "site": "home",
            "rack": "r1",
            "tx_host": "probe1",
            "rx_host": "host-a",
        }

    def test_host_tags_win_over_static(self):
        record = build_record(reply_point(), "pingflux", {"rx_host": "bogus"})

        assert record.tags["rx_host"] == "host-a"

    def test_static_tags_not_mutated(self):
        static = {"site": "home"}

        build_record(reply_point(), "pingflux", static)

        assert static == {"site": "home"}

    def test_mirror_hosts(self):
        record = build_record(reply_point(), "pingflux", {}, mirror_hosts=True)

        assert record.fields["tx_host"] == "probe1"
        assert record.fields["rx_host"] == "host-a"

    def test_mirror_hosts_only_with_rtt(self):
        record = build_record(loss_point(), "pingflux", {}, mirror_hosts=True)

        assert record.fields == {"loss": 100}

    def test_probe_time_policy(self):
        record = build_record(reply_point(), "pingflux", {}, PROBE_TIME, write_clock)

        assert record.time == PROBE_AT

    def test_write_time_policy(self):
        record = build_record(reply_point(), "pingflux", {}, WRITE_TIME, write_clock)

        assert record.time == WRITE_AT

    def test_unknown_policy(self):
        with pytest.raises(ValueError, match="Unknown timestamp policy"):
            build_record(reply_point(), "pingflux", {}, "server")


class TestInfluxQLClient:
    """Test the InfluxDB 1.x backend."""

    def make_client(self, connection, **kwargs):
        return InfluxQLClient(
            connection, database="pingflux", measurement="ping", clock=write_clock, **kwargs
        )

    def test_write_body(self):
        connection = StubInfluxQL()
        client = self.make_client(connection, tags={"site": "home"})

        client.write(reply_point())

        write = connection.writes[0]
        assert write["database"] == "pingflux"
        assert write["policy"] is None
        assert write["points"] == [
            {
                "measurement": "ping",
                "tags": {"site": "home", "tx_host": "probe1", "rx_host": "host-a"},
                "time": PROBE_AT,
                "fields": {"loss": 0, "min": 1.0, "avg": 2.0, "max": 3.0},
            }
        ]

    def test_write_uses_probe_time_by_default(self):
        connection = StubInfluxQL()

        self.make_client(connection).write(loss_point())

        assert connection.writes[0]["points"][0]["time"] == PROBE_AT

    def test_retention_policy(self):
        connection = StubInfluxQL()

        self.make_client(connection, retention_policy="week").write(loss_point())

        assert connection.writes[0]["policy"] == "week"

    @pytest.mark.parametrize(
        "error",
        [
            InfluxDBClientError("field type conflict", 400),
            InfluxDBServerError("timeout"),
            ConnectionError("connection refused"),
        ],
    )
    def test_write_failure(self, error):
        client = self.make_client(StubInfluxQL(error=error))

        with pytest.raises(MetricsWriteError, match="host-a") as excinfo:
            client.write(reply_point())

        assert excinfo.value.__cause__ is error

    def test_health_check(self):
        assert self.make_client(StubInfluxQL()).health_check() == "InfluxDB 1.8.10"

    def test_health_check_failure(self):
        client = self.make_client(StubInfluxQL(error=ConnectionError("refused")))

        with pytest.raises(MetricsUnavailableError, match="Unable to ping"):
            client.health_check()

    def test_ensure_database_creates_missing(self):
        connection = StubInfluxQL(databases=["_internal"])

        created = self.make_client(connection).ensure_database()

        assert created is True
        assert connection.created == ["pingflux"]

    def test_ensure_database_existing(self):
        connection = StubInfluxQL(databases=["_internal", "pingflux"])

        created = self.make_client(connection).ensure_database()

        assert created is False
        assert connection.created == []

    def test_ensure_database_failure(self):
        client = self.make_client(StubInfluxQL(error=InfluxDBClientError("unauthorized", 401)))

        with pytest.raises(MetricsUnavailableError, match="provision database pingflux"):
            client.ensure_database()

    def test_provisioning_capability(self):
        """Test the 1.x backend advertises database provisioning."""
        assert isinstance(self.make_client(StubInfluxQL()), Provisioning)

    def test_close(self):
        connection = StubInfluxQL()

        self.make_client(connection).close()

        assert connection.closed is True


class TestInfluxV2Client:
    """Test the InfluxDB 2.x backend."""

    def make_client(self, connection, **kwargs):
        return InfluxV2Client(
            connection, org="home", bucket="pings", measurement="ping", clock=write_clock, **kwargs
        )

    def test_synchronous_writes(self):
        connection = StubInfluxV2()

        self.make_client(connection)

        assert connection.write_options is SYNCHRONOUS

    def test_write_target(self):
        connection = StubInfluxV2()

        self.make_client(connection).write(reply_point())

        write = connection.api.writes[0]
        assert write["bucket"] == "pings"
        assert write["org"] == "home"

    def test_write_uses_write_time_by_default(self):
        connection = StubInfluxV2()

        self.make_client(connection).write(reply_point())

        record = connection.api.writes[0]["record"]
        assert record._time == WRITE_AT

    def test_point_contents_with_mirrored_hosts(self):
        client = self.make_client(StubInfluxV2(), tags={"site": "home"})

        influx_point = client.to_influx_point(reply_point())

        assert influx_point._name == "ping"
        assert influx_point._tags == {"site": "home", "tx_host": "probe1", "rx_host": "host-a"}
        assert influx_point._fields == {
            "loss": 0,
            "tx_host": "probe1",
            "rx_host": "host-a",
            "min": 1.0,
            "avg": 2.0,
            "max": 3.0,
        }

    def test_line_protocol_loss_only(self):
        client = self.make_client(StubInfluxV2())

        line = client.to_influx_point(loss_point()).to_line_protocol()

        assert line.startswith("ping,rx_host=host-b,tx_host=probe1 loss=100i ")

    def test_write_failure(self):
        error = ApiException(status=404, reason="bucket not found")
        client = self.make_client(StubInfluxV2(error=error))

        with pytest.raises(MetricsWriteError) as excinfo:
            client.write(reply_point())

        assert excinfo.value.__cause__ is error

    def test_health_check(self):
        assert "bucket=pings" in self.make_client(StubInfluxV2()).health_check()

    def test_health_check_failure(self):
        client = self.make_client(StubInfluxV2(ping_ok=False))

        with pytest.raises(MetricsUnavailableError):
            client.health_check()

    def test_no_database_provisioning(self):
        """Test the 2.x backend leaves bucket provisioning to the operator."""
        assert not isinstance(self.make_client(StubInfluxV2()), Provisioning)

    def test_close(self):
        connection = StubInfluxV2()

        self.make_client(connection).close()

        assert connection.closed is True
        assert connection.api.closed is True


class TestBackendVariants:
    """Test one point written through both backends."""

    def test_same_record_different_timestamp(self):
        """Test identical tags and fields, probe time vs. write time."""
        point = reply_point()
        v1 = StubInfluxQL()
        v2 = StubInfluxV2()

        InfluxQLClient(v1, "pingflux", "ping", tags={"site": "home"}, clock=write_clock).write(point)
        InfluxV2Client(
            v2, "home", "pings", "ping", tags={"site": "home"}, mirror_hosts=False, clock=write_clock
        ).write(point)

        body = v1.writes[0]["points"][0]
        influx_point = v2.api.writes[0]["record"]
        assert body["tags"] == influx_point._tags
        assert body["fields"] == influx_point._fields
        assert body["time"] == PROBE_AT
        assert influx_point._time == WRITE_AT

    def test_timestamp_policy_override(self):
        """Test either backend can be told to use the other time source."""
        v1 = StubInfluxQL()
        v2 = StubInfluxV2()

        InfluxQLClient(v1, "pingflux", "ping", timestamp_policy=WRITE_TIME, clock=write_clock).write(reply_point())
        InfluxV2Client(v2, "home", "pings", "ping", timestamp_policy=PROBE_TIME, clock=write_clock).write(reply_point())

        assert v1.writes[0]["points"][0]["time"] == WRITE_AT
        assert v2.api.writes[0]["record"]._time == PROBE_AT


class TestCreateClient:
    """Test backend selection from settings."""

    def test_version_1(self):
        client = create_client(InfluxSettings(version=1, db="metrics"), "ping", {})

        assert isinstance(client, InfluxQLClient)
        assert client.database == "metrics"
        assert client.timestamp_policy == PROBE_TIME
        client.close()

    def test_version_2(self):
        settings = InfluxSettings(version=2, org="home", bucket="pings", token="t0ken")

        client = create_client(settings, "ping", {"site": "home"})

        assert isinstance(client, InfluxV2Client)
        assert client.bucket == "pings"
        assert client.timestamp_policy == WRITE_TIME
        assert client.tags == {"site": "home"}
        client.close()

    def test_explicit_timestamp_policy(self):
        client = create_client(InfluxSettings(version=2, timestamp="probe"), "ping", {})

        assert client.timestamp_policy == PROBE_TIME
        client.close()

    def test_unsupported_version(self):
        with pytest.raises(ValueError, match="Unsupported InfluxDB version"):
            create_client(InfluxSettings(version=3), "ping", {})
