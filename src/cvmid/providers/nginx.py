"""Nginx provider for the generated identification server block."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC
from pathlib import Path

from ..config import HeaderConfig
from ..identity import HEADER_FORMAT, InstanceIdentity
from ..templates import TemplateEngine

IDENTITY_TEMPLATE = "nginx/identity.conf.j2"
GENERATED_AT_FORMAT = "%a %b %d %H:%M:%S UTC %Y"


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class CleanupResult:
    """Stale configuration files examined during cleanup."""

    removed: list[Path]
    absent: list[Path]


@dataclass(slots=True)
class NginxProvider:
    """Render, validate and reload the identification configuration."""

    templates: TemplateEngine
    config_path: Path = Path("/etc/nginx/conf.d/auto-instance.conf")
    nginx_bin: str = "nginx"
    reload_method: str = "systemctl"
    systemctl_bin: str = "systemctl"
    service: str = "nginx"

    def is_installed(self) -> bool:
        """Return ``True`` when the nginx binary can be found."""
        return shutil.which(self.nginx_bin) is not None

    def build_context(
        self,
        identity: InstanceIdentity,
        header: HeaderConfig,
    ) -> dict[str, object]:
        """Return the template context for *identity*."""
        return {
            "generated_at": identity.resolved_at.astimezone(UTC).strftime(GENERATED_AT_FORMAT),
            "header_format": HEADER_FORMAT,
            "header_name": header.name,
            "header_value": identity.header_value(include_timestamp=header.include_timestamp),
            "listen_port": header.listen_port,
            "server_name": header.server_name,
        }

    def write_config(self, context: Mapping[str, object]) -> bool:
        """Render into :attr:`config_path`, replacing whatever was there.

        Returns ``True`` when the on-disk content changed. Nothing is kept
        from a previous file; validation failures leave the new file in place.
        """
        return self.templates.render_to_path(
            IDENTITY_TEMPLATE,
            self.config_path,
            context,
            mode=0o644,
        )

    def cleanup(self, paths: Iterable[Path]) -> CleanupResult:
        """Remove previously generated configuration files.

        Missing files are recorded but are not an error, so running cleanup
        twice leaves the filesystem in the same state.
        """
        removed: list[Path] = []
        absent: list[Path] = []
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                absent.append(path)
                continue
            removed.append(path)
        return CleanupResult(removed=removed, absent=absent)

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` against the whole configuration tree."""
        return self._run_nginx(["-t"])

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Ask the running nginx to reload its configuration."""
        if self.reload_method == "signal":
            return self._run_nginx(["-s", "reload"])
        return self._run([self.systemctl_bin, "reload", self.service])

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return self._run([self.nginx_bin, *args])

    def _run(self, command: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(command),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise NginxError(f"{command[0]} not found: {exc}") from exc
        except OSError as exc:
            raise NginxError(f"Cannot run {command[0]}: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{' '.join(command)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["CleanupResult", "NginxError", "NginxProvider"]
