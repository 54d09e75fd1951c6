"""Install nginx with the package manager matching the host distribution."""
from __future__ import annotations

import shlex
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

OS_RELEASE_PATH = Path("/etc/os-release")

REDHAT_IDS = frozenset({"centos", "rhel", "oraclelinux", "almalinux", "rocky"})
EPEL_RELEASE_URL = "https://dl.fedoraproject.org/pub/epel/epel-release-latest-9.noarch.rpm"
NGINX_SIGNING_KEY_URL = "https://nginx.org/keys/nginx_signing.key"
NGINX_KEYRING = Path("/usr/share/keyrings/nginx-archive-keyring.gpg")
NGINX_APT_SOURCE = Path("/etc/apt/sources.list.d/nginx.list")
NGINX_APT_PIN = Path("/etc/apt/preferences.d/99nginx")
NGINX_APT_PIN_CONTENT = (
    "Package: *\nPin: origin nginx.org\nPin: release o=nginx\nPin-Priority: 900\n"
)

SUPPORTED_DISTRIBUTIONS = (
    "Ubuntu (all LTS versions)",
    "Debian (9, 10, 11, 12)",
    "CentOS/RHEL (7, 8, 9)",
    "Oracle Linux, AlmaLinux, Rocky Linux",
)


class InstallError(RuntimeError):
    """Raised when an installation step fails."""


class UnsupportedDistroError(InstallError):
    """Raised when the distribution has no installation recipe."""


@dataclass(slots=True, frozen=True)
class DistroInfo:
    """Identification fields read from ``/etc/os-release``."""

    id: str
    name: str
    version_id: str | None = None
    version_codename: str | None = None


@dataclass(slots=True, frozen=True)
class InstallStep:
    """One command of an installation plan.

    When ``pipe_to`` is set the command's stdout feeds that second command.
    A step without a command writes ``content`` to ``write_to``.
    """

    description: str
    command: tuple[str, ...] = ()
    pipe_to: tuple[str, ...] = ()
    write_to: Path | None = None
    content: str | None = None

    def render(self) -> str:
        """Return a shell-like rendering of the step for dry runs."""
        if not self.command:
            return f"write {self.write_to}"
        rendered = shlex.join(self.command)
        if self.pipe_to:
            rendered += f" | {shlex.join(self.pipe_to)}"
        return rendered


@dataclass(slots=True, frozen=True)
class VerificationCheck:
    """Outcome of a post-installation check."""

    name: str
    ok: bool
    detail: str
    required: bool = True


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines the way a POSIX shell would source them."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw_value = line.partition("=")
        try:
            parts = shlex.split(raw_value)
        except ValueError:
            parts = [raw_value.strip().strip("\"'")]
        values[key.strip()] = " ".join(parts)
    return values


def read_os_release(path: Path = OS_RELEASE_PATH) -> DistroInfo:
    """Return :class:`DistroInfo` for the host."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise UnsupportedDistroError(
            f"Cannot detect Linux distribution: {path} is missing."
        ) from exc
    values = parse_os_release(text)
    distro_id = values.get("ID", "").lower()
    if not distro_id:
        raise UnsupportedDistroError(f"{path} does not define an ID field.")
    return DistroInfo(
        id=distro_id,
        name=values.get("NAME", distro_id),
        version_id=values.get("VERSION_ID") or None,
        version_codename=values.get("VERSION_CODENAME") or None,
    )


def family_for(distro: DistroInfo) -> str:
    """Map *distro* to an installation family (``redhat``, ``debian`` or ``ubuntu``)."""
    if distro.id in REDHAT_IDS:
        return "redhat"
    if distro.id in {"debian", "ubuntu"}:
        return distro.id
    supported = "; ".join(SUPPORTED_DISTRIBUTIONS)
    raise UnsupportedDistroError(
        f"Unsupported Linux distribution: {distro.id}. Supported: {supported}."
    )


Runner = Callable[[Sequence[str], str | None], subprocess.CompletedProcess[str]]


def _default_runner(
    command: Sequence[str], stdin: str | None = None
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603
        list(command),
        input=stdin,
        capture_output=True,
        text=True,
        check=False,
    )


@dataclass(slots=True)
class NginxInstaller:
    """Plan and run the nginx installation for a distribution family."""

    systemctl_bin: str = "systemctl"
    nginx_bin: str = "nginx"
    runner: Runner = _default_runner
    which: Callable[[str], str | None] = shutil.which
    completed: list[InstallStep] = field(default_factory=list)

    def plan(self, distro: DistroInfo) -> list[InstallStep]:
        """Return the ordered installation steps for *distro*."""
        family = family_for(distro)
        if family == "redhat":
            steps = self._redhat_steps()
        elif family == "debian":
            steps = self._debian_steps(distro)
        else:
            steps = self._ubuntu_steps()
        steps.extend(
            [
                InstallStep("Starting NGINX", (self.systemctl_bin, "start", "nginx")),
                InstallStep(
                    "Enabling NGINX to start on boot",
                    (self.systemctl_bin, "enable", "nginx"),
                ),
            ]
        )
        return steps

    def install(self, distro: DistroInfo, *, dry_run: bool = False) -> list[InstallStep]:
        """Run the plan for *distro*, stopping at the first failure."""
        steps = self.plan(distro)
        self.completed.clear()
        if dry_run:
            return steps
        for step in steps:
            self._execute(step)
            self.completed.append(step)
        return steps

    def verify(
        self,
        *,
        start_inactive: bool = False,
        strict_config: bool = False,
    ) -> list[VerificationCheck]:
        """Return post-installation checks mirroring a manual inspection.

        With ``start_inactive`` a stopped service is started once and checked
        again before it counts as a failure. With ``strict_config`` a failing
        ``nginx -t`` is a required check rather than a warning.
        """
        checks: list[VerificationCheck] = []
        checks.append(self._service_active(start_inactive=start_inactive))

        enabled = self._succeeds([self.systemctl_bin, "is-enabled", "nginx"])
        checks.append(
            VerificationCheck(
                "service-enabled",
                enabled,
                "NGINX is enabled to start on boot"
                if enabled
                else "NGINX is not enabled for boot startup",
                required=False,
            )
        )

        version = self._nginx_version()
        checks.append(
            VerificationCheck(
                "version",
                version is not None,
                f"NGINX version: {version}" if version else "Could not determine NGINX version",
                required=False,
            )
        )

        valid = self._succeeds([self.nginx_bin, "-t"])
        checks.append(
            VerificationCheck(
                "config-valid",
                valid,
                "NGINX configuration is valid"
                if valid
                else "NGINX configuration has issues; run 'nginx -t'",
                required=strict_config,
            )
        )

        listening = self._listening_on(80)
        checks.append(
            VerificationCheck(
                "listening-80",
                listening,
                "NGINX is listening on port 80"
                if listening
                else "NGINX may not be listening on port 80",
                required=False,
            )
        )
        return checks

    # ------------------------------------------------------------------
    def _service_active(self, *, start_inactive: bool) -> VerificationCheck:
        is_active = [self.systemctl_bin, "is-active", "nginx"]
        if self._succeeds(is_active):
            return VerificationCheck("service-active", True, "NGINX service is running")
        if not start_inactive:
            return VerificationCheck("service-active", False, "NGINX service is not running")
        started = self._succeeds([self.systemctl_bin, "start", "nginx"]) and self._succeeds(
            is_active
        )
        if started:
            return VerificationCheck(
                "service-active", True, "NGINX service was not running and has been started"
            )
        return VerificationCheck("service-active", False, "Failed to start NGINX service")

    def _redhat_steps(self) -> list[InstallStep]:
        pkg = "dnf" if self.which("dnf") else "yum"
        steps: list[InstallStep] = []
        if pkg == "dnf":
            steps.append(
                InstallStep(
                    "Installing EPEL repository",
                    ("dnf", "install", EPEL_RELEASE_URL, "-y"),
                )
            )
        steps.extend(
            [
                InstallStep("Installing yum-utils", (pkg, "install", "yum-utils", "-y")),
                InstallStep("Installing epel-release", (pkg, "install", "epel-release", "-y")),
                InstallStep("Updating repository", (pkg, "update", "-y")),
                InstallStep("Installing NGINX", (pkg, "install", "nginx", "-y")),
            ]
        )
        return steps

    def _debian_steps(self, distro: DistroInfo) -> list[InstallStep]:
        codename = distro.version_codename or self._lsb_codename()
        if not codename:
            raise InstallError("Cannot determine the Debian release codename.")
        source_line = (
            f"deb [signed-by={NGINX_KEYRING}] http://nginx.org/packages/debian {codename} nginx\n"
        )
        return [
            InstallStep("Updating repository information", ("apt-get", "update", "-y")),
            InstallStep(
                "Installing prerequisites",
                (
                    "apt-get",
                    "install",
                    "curl",
                    "gnupg2",
                    "ca-certificates",
                    "lsb-release",
                    "debian-archive-keyring",
                    "-y",
                ),
            ),
            InstallStep(
                "Importing NGINX signing key",
                ("curl", "-fsSL", NGINX_SIGNING_KEY_URL),
                pipe_to=("gpg", "--dearmor", "--yes", "-o", str(NGINX_KEYRING)),
            ),
            InstallStep(
                "Setting up the apt repository",
                write_to=NGINX_APT_SOURCE,
                content=source_line,
            ),
            InstallStep(
                "Setting up repository pinning",
                write_to=NGINX_APT_PIN,
                content=NGINX_APT_PIN_CONTENT,
            ),
            InstallStep("Updating repository information", ("apt-get", "update")),
            InstallStep("Installing NGINX", ("apt-get", "install", "nginx", "-y")),
        ]

    @staticmethod
    def _ubuntu_steps() -> list[InstallStep]:
        return [
            InstallStep("Updating repository information", ("apt-get", "update", "-y")),
            InstallStep("Installing NGINX", ("apt-get", "install", "nginx", "-y")),
        ]

    def _execute(self, step: InstallStep) -> None:
        if not step.command:
            self._write(step, step.content or "")
            return
        result = self._run(step.command)
        if result.returncode != 0:
            raise InstallError(f"{step.description} failed: {_output(result)}")
        if step.pipe_to:
            piped = self._run(step.pipe_to, stdin=result.stdout)
            if piped.returncode != 0:
                raise InstallError(f"{step.description} failed: {_output(piped)}")

    @staticmethod
    def _write(step: InstallStep, content: str) -> None:
        if step.write_to is None:
            raise InstallError(f"{step.description} has neither a command nor a target file.")
        try:
            step.write_to.parent.mkdir(parents=True, exist_ok=True)
            step.write_to.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise InstallError(f"{step.description} failed: {exc}") from exc

    def _run(
        self, command: Sequence[str], *, stdin: str | None = None
    ) -> subprocess.CompletedProcess[str]:
        try:
            return self.runner(command, stdin)
        except FileNotFoundError as exc:
            raise InstallError(f"{command[0]} is not available: {exc}") from exc

    def _succeeds(self, command: Sequence[str]) -> bool:
        try:
            return self.runner(command, None).returncode == 0
        except FileNotFoundError:
            return False

    def _nginx_version(self) -> str | None:
        try:
            result = self.runner([self.nginx_bin, "-v"], None)
        except FileNotFoundError:
            return None
        for token in f"{result.stderr or ''} {result.stdout or ''}".split():
            if token.startswith("nginx/"):
                return token
        return None

    def _listening_on(self, port: int) -> bool:
        needle = f":{port} "
        for command in (["ss", "-tlnp"], ["netstat", "-tlnp"]):
            try:
                result = self.runner(command, None)
            except FileNotFoundError:
                continue
            if result.returncode == 0 and needle in result.stdout:
                return True
        return False

    def _lsb_codename(self) -> str | None:
        try:
            result = self.runner(["lsb_release", "-cs"], None)
        except FileNotFoundError:
            return None
        codename = result.stdout.strip() if result.returncode == 0 else ""
        return codename or None


def _output(result: subprocess.CompletedProcess[str]) -> str:
    return (result.stderr or result.stdout or f"exit {result.returncode}").strip()


__all__ = [
    "DistroInfo",
    "InstallError",
    "InstallStep",
    "NginxInstaller",
    "SUPPORTED_DISTRIBUTIONS",
    "UnsupportedDistroError",
    "VerificationCheck",
    "family_for",
    "parse_os_release",
    "read_os_release",
]
