"""The instance identity value object and its header rendering."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

UNKNOWN_IP = "unknown-ip"
UNKNOWN_ZONE = "unknown-zone"
UNKNOWN_INSTANCE = "unknown-instance"
HEADER_DELIMITER = " | "
HEADER_FORMAT = "Zone | IP | Instance-ID"


@dataclass(slots=True, frozen=True)
class InstanceIdentity:
    """Facts about the running host, captured once per invocation.

    ``None`` means the fact could not be resolved. Sentinel strings are only
    substituted by the ``display_*`` accessors and :meth:`header_value`, so a
    metadata service that literally answers ``unknown-ip`` stays
    distinguishable from a missing answer.
    """

    ip: str | None
    zone: str | None
    instance_id: str | None
    resolved_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def display_ip(self) -> str:
        """Return the IP address or its sentinel."""
        return self.ip or UNKNOWN_IP

    @property
    def display_zone(self) -> str:
        """Return the zone or its sentinel."""
        return self.zone or UNKNOWN_ZONE

    @property
    def display_instance_id(self) -> str:
        """Return the instance id or its sentinel."""
        return self.instance_id or UNKNOWN_INSTANCE

    @property
    def degraded(self) -> tuple[str, ...]:
        """Names of the facts that fell back to a sentinel."""
        missing: list[str] = []
        if not self.zone:
            missing.append("zone")
        if not self.ip:
            missing.append("ip")
        if not self.instance_id:
            missing.append("instance_id")
        return tuple(missing)

    def timestamp(self) -> str:
        """Return ``resolved_at`` as an ISO-8601 UTC string."""
        return self.resolved_at.astimezone(UTC).isoformat(timespec="seconds").replace(
            "+00:00", "Z"
        )

    def segments(self, *, include_timestamp: bool = False) -> list[str]:
        """Return the header segments in publication order."""
        parts = [self.display_zone, self.display_ip, self.display_instance_id]
        if include_timestamp:
            parts.append(self.timestamp())
        return parts

    def header_value(self, *, include_timestamp: bool = False) -> str:
        """Join the segments into the published header value."""
        return HEADER_DELIMITER.join(self.segments(include_timestamp=include_timestamp))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (sentinels applied)."""
        return {
            "zone": self.display_zone,
            "ip": self.display_ip,
            "instance_id": self.display_instance_id,
            "resolved_at": self.timestamp(),
            "degraded": list(self.degraded),
        }


def parse_header_value(value: str) -> tuple[str, ...]:
    """Split a published header value back into its trimmed segments."""
    return tuple(part.strip() for part in value.split("|"))


__all__ = [
    "HEADER_DELIMITER",
    "HEADER_FORMAT",
    "InstanceIdentity",
    "UNKNOWN_INSTANCE",
    "UNKNOWN_IP",
    "UNKNOWN_ZONE",
    "parse_header_value",
]
