"""Resolve instance facts from the Tencent Cloud metadata service.

Each fact is looked up through a fixed-priority fallback chain. Network
failures and non-2xx answers are treated exactly like an empty answer: the
resolvers never raise, they only degrade to ``None``.
"""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field

import requests

from .config import DEFAULT_METADATA_URL
from .identity import InstanceIdentity

LOGGER = logging.getLogger(__name__)

PATH_LOCAL_IPV4 = "local-ipv4"
PATH_ZONE = "placement/zone"
PATH_REGION = "placement/region"
PATH_INSTANCE_ID = "instance-id"
DEFAULT_ZONE_SUFFIX = "-1"


@dataclass(slots=True)
class MetadataClient:
    """Minimal HTTP client for the instance-local metadata endpoint."""

    base_url: str = DEFAULT_METADATA_URL
    timeout: float = 10.0
    session: requests.Session = field(default_factory=requests.Session)

    def url_for(self, path: str) -> str:
        """Return the absolute URL for metadata *path*."""
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def get(self, path: str) -> str | None:
        """Return the value stored at *path*, or ``None`` when unavailable."""
        url = self.url_for(path)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            LOGGER.info("Metadata query %s failed: %s", url, exc)
            return None
        if not 200 <= response.status_code < 300:
            LOGGER.info("Metadata query %s returned HTTP %s", url, response.status_code)
            return None
        value = response.text.strip()
        return value or None


def first_local_address(hostname_bin: str = "hostname") -> str | None:
    """Return the first address reported by ``hostname -I``."""
    try:
        result = subprocess.run(  # noqa: S603
            [hostname_bin, "-I"],
            capture_output=True,
            text=True,
            check=False,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        LOGGER.info("Local address lookup failed: %s", exc)
        return None
    if result.returncode != 0:
        return None
    tokens = result.stdout.split()
    return tokens[0] if tokens else None


@dataclass(slots=True)
class IdentityResolver:
    """Resolve IP, zone and instance id with per-fact fallbacks."""

    client: MetadataClient
    local_address: Callable[[], str | None] | None = None
    notes: list[str] = field(default_factory=list)

    def resolve_ip(self) -> str | None:
        """Metadata ``local-ipv4``, else the first local address."""
        value = self.client.get(PATH_LOCAL_IPV4)
        if value:
            return value
        lookup = self.local_address or first_local_address
        value = lookup()
        if value:
            self._note(f"ip resolved from local network configuration ({value})")
            return value
        self._note("ip unavailable; publishing sentinel")
        return None

    def resolve_zone(self) -> str | None:
        """Metadata ``placement/zone``, else ``placement/region`` plus ``-1``."""
        value = self.client.get(PATH_ZONE)
        if value:
            return value
        region = self.client.get(PATH_REGION)
        if region:
            derived = f"{region}{DEFAULT_ZONE_SUFFIX}"
            self._note(f"zone derived from region ({derived})")
            return derived
        self._note("zone unavailable; publishing sentinel")
        return None

    def resolve_instance_id(self) -> str | None:
        """Metadata ``instance-id``."""
        value = self.client.get(PATH_INSTANCE_ID)
        if value:
            return value
        self._note("instance id unavailable; publishing sentinel")
        return None

    def resolve(self) -> InstanceIdentity:
        """Resolve every fact and capture them in an :class:`InstanceIdentity`."""
        self.notes.clear()
        return InstanceIdentity(
            ip=self.resolve_ip(),
            zone=self.resolve_zone(),
            instance_id=self.resolve_instance_id(),
        )

    def _note(self, message: str) -> None:
        LOGGER.info(message)
        self.notes.append(message)


__all__ = ["IdentityResolver", "MetadataClient", "first_local_address"]
