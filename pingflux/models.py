"""Data models for pingflux measurements."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Point:
    """One fping summary report for a single target host.

    RTT values are zero when no probe in the round got a reply; zero means
    "not measured" there, not a zero latency.
    """

    observed_at: datetime
    source_host: str
    target_host: str
    loss_percent: int
    min_rtt: float = 0.0
    avg_rtt: float = 0.0
    max_rtt: float = 0.0

    @property
    def has_rtt(self) -> bool:
        """True when the round produced round-trip times."""
        return self.min_rtt != 0.0 or self.avg_rtt != 0.0 or self.max_rtt != 0.0
