"""Parser for fping's diagnostic (stderr) output.

fping run with ``-l -D -Q N`` reports, every N probes, a timestamp header
followed by one summary line per target host::

    [10:00:01]
    host-a : xmt/rcv/%loss = 10/10/0%, min/avg/max = 1.0/2.0/3.0
    host-b : xmt/rcv/%loss = 10/0/100%

The header applies to every summary line until the next header arrives.
Field positions are fping's summary format and must not be guessed at.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Iterator

from pingflux.models import Point

logger = logging.getLogger(__name__)

# Field positions in a summary line, split on whitespace.
TARGET_FIELD = 0
LOSS_FIELD = 4
RTT_FIELD = 7

MIN_MEASUREMENT_FIELDS = 5
TIME_OF_DAY_FORMAT = "%H:%M:%S"


class LineKind(Enum):
    """Structural kind of one diagnostic line."""

    TIMESTAMP_HEADER = "timestamp_header"
    MEASUREMENT = "measurement"
    UNRECOGNIZED = "unrecognized"


def classify(line: str) -> LineKind:
    """Classify a diagnostic line by its whitespace-separated fields.

    Examples:
        >>> classify("[10:00:01]")
        <LineKind.TIMESTAMP_HEADER: 'timestamp_header'>
        >>> classify("host-b : xmt/rcv/%loss = 10/0/100%")
        <LineKind.MEASUREMENT: 'measurement'>
        >>> classify("fping: option requires an argument -- 'Q'")
        <LineKind.UNRECOGNIZED: 'unrecognized'>
    """
    fields = line.split()
    if len(fields) == 1 and _is_bracketed(fields[0]):
        return LineKind.TIMESTAMP_HEADER
    if len(fields) >= MIN_MEASUREMENT_FIELDS:
        return LineKind.MEASUREMENT
    return LineKind.UNRECOGNIZED


def _is_bracketed(token: str) -> bool:
    return len(token) >= 2 and token.startswith("[") and token.endswith("]")


def parse_float(value: str, default: float | None = 0.0) -> float | None:
    """Parse a float field, returning ``default`` if it is not one."""
    try:
        return float(value)
    except ValueError:
        return default


def parse_loss_percent(field: str) -> int | None:
    """Extract the loss percentage from a ``sent/received/loss%`` field.

    A trailing comma (present when RTT values follow) is tolerated.

    Returns:
        The loss percentage, or None if the field is malformed
    """
    parts = field.split("/")
    if len(parts) < 3:
        return None
    try:
        return int(parts[2].rstrip("%,"))
    except ValueError:
        return None


def parse_rtt_triple(field: str) -> tuple[float, float, float]:
    """Split a ``min/avg/max`` field into floats.

    Each component parses on its own; malformed or missing components are 0.0.
    """
    parts = field.split("/")
    values = [parse_float(part) for part in parts[:3]]
    values.extend([0.0] * (3 - len(values)))
    return values[0], values[1], values[2]


def parse_measurement_fields(
    fields: list[str], observed_at: datetime, source_host: str
) -> Point:
    """Build a Point from the fields of one summary line.

    Pure function: malformed numeric fields fall back to zero and never raise.

    Args:
        fields: Whitespace-separated fields of a MEASUREMENT line
        observed_at: Report time to stamp the point with
        source_host: Name of the probing host

    Returns:
        Point for the target host named in field 0
    """
    target = fields[TARGET_FIELD]

    loss = parse_loss_percent(fields[LOSS_FIELD])
    if loss is None:
        logger.debug(
            "Malformed loss field, using 0: host=%s, field=%r", target, fields[LOSS_FIELD]
        )
        loss = 0

    min_rtt = avg_rtt = max_rtt = 0.0
    if len(fields) > RTT_FIELD:
        rtt_field = fields[RTT_FIELD]
        min_rtt, avg_rtt, max_rtt = parse_rtt_triple(rtt_field)
        components = rtt_field.split("/")[:3]
        if len(components) < 3 or any(parse_float(c, default=None) is None for c in components):
            logger.debug(
                "Malformed RTT field, using 0.0 for bad values: host=%s, field=%r",
                target,
                rtt_field,
            )
    elif len(fields) > MIN_MEASUREMENT_FIELDS:
        logger.debug("Truncated RTT section: host=%s, fields=%d", target, len(fields))

    return Point(
        observed_at=observed_at,
        source_host=source_host,
        target_host=target,
        loss_percent=loss,
        min_rtt=min_rtt,
        avg_rtt=avg_rtt,
        max_rtt=max_rtt,
    )


def _local_now() -> datetime:
    return datetime.now().astimezone()


class OutputParser:
    """Stateful line parser turning fping output into Points.

    Holds the timestamp anchor: the time of the most recent ``[HH:MM:SS]``
    header, initialised to the current time. Only header lines move it.

    Not thread-safe; feed it from one loop.
    """

    def __init__(self, source_host: str, clock: Callable[[], datetime] = _local_now):
        """Initialize the parser.

        Args:
            source_host: Name of this (probing) host, stamped on every Point
            clock: Returns "now"; supplies the calendar date for headers
        """
        self.source_host = source_host
        self._clock = clock
        self._anchor = clock()

    @property
    def last_known_time(self) -> datetime:
        """Report time applied to measurement lines."""
        return self._anchor

    def on_timestamp_header(self, token: str) -> None:
        """Move the anchor to the time of day in a ``[HH:MM:SS]`` token.

        The date comes from the clock, not from fping. An unparseable time
        is logged and leaves the anchor where it was.
        """
        text = token.lstrip("[").rstrip("]")
        try:
            parsed = datetime.strptime(text, TIME_OF_DAY_FORMAT)
        except ValueError as e:
            logger.warning("Failed to parse time %s: %s", text, e)
            return

        self._anchor = self._clock().replace(
            hour=parsed.hour, minute=parsed.minute, second=parsed.second, microsecond=0
        )

    def on_measurement_line(self, fields: list[str]) -> Point:
        """Build a Point from a summary line, stamped with the anchor."""
        return parse_measurement_fields(fields, self._anchor, self.source_host)

    def feed(self, line: str) -> Point | None:
        """Consume one line, returning a Point if it was a summary line."""
        kind = classify(line)
        if kind is LineKind.TIMESTAMP_HEADER:
            self.on_timestamp_header(line.strip())
            return None
        if kind is LineKind.MEASUREMENT:
            return self.on_measurement_line(line.split())

        if line.strip():
            logger.debug("Ignoring unrecognized line: %r", line)
        return None

    def parse(self, lines: Iterable[str]) -> Iterator[Point]:
        """Lazily yield a Point for every summary line in ``lines``."""
        for line in lines:
            point = self.feed(line)
            if point is not None:
                yield point
