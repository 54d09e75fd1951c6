"""Deployment sequencer for the identification configuration.

The sequence is linear: preconditions are checked, instance facts are
resolved, then ``CLEANUP -> RENDER -> VALIDATE -> APPLY -> REPORT`` run in
order while the deployment lock is held. Every stage produces a
:class:`StepResult`; the first failure ends the run. Nothing is rolled back:
an invalid rendered file stays on disk so the operator can inspect it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from jinja2 import TemplateError

from .config import HeaderConfig
from .identity import InstanceIdentity
from .locking import LockManager, LockTimeoutError
from .metadata import IdentityResolver
from .providers.nginx import NginxError, NginxProvider


class Stage(str, Enum):
    """Ordered deployment stages."""

    PRECONDITIONS = "preconditions"
    RESOLVE = "resolve"
    LOCK = "lock"
    CLEANUP = "cleanup"
    RENDER = "render"
    VALIDATE = "validate"
    APPLY = "apply"
    REPORT = "report"


class FailureKind(str, Enum):
    """Distinct fatal outcomes of a deployment."""

    PRIVILEGE = "privilege"
    MISSING_BINARY = "missing-binary"
    LOCK = "lock"
    CLEANUP = "cleanup"
    RENDER = "render"
    VALIDATION = "validation"
    APPLY = "apply"


FAILURE_HINTS: dict[FailureKind, str] = {
    FailureKind.PRIVILEGE: "nginx configuration requires root privileges (use sudo).",
    FailureKind.MISSING_BINARY: "Install nginx first: cvmid install-nginx",
    FailureKind.LOCK: "Another cvmid deployment appears to be running.",
    FailureKind.VALIDATION: "Configuration not applied; the rendered file was left for inspection.",
    FailureKind.APPLY: "Configuration is valid but nginx did not reload; see journalctl -u nginx.",
}


@dataclass(slots=True, frozen=True)
class DeploySettings:
    """Environment facts and paths the sequencer acts on.

    Callers derive ``is_privileged`` and ``nginx_present`` from the process
    environment; the sequencer itself never inspects it.
    """

    is_privileged: bool
    nginx_present: bool
    stale_paths: tuple[Path, ...] = ()
    header: HeaderConfig = field(default_factory=HeaderConfig)


@dataclass(slots=True, frozen=True)
class StepResult:
    """Outcome of a single stage."""

    stage: Stage
    ok: bool
    detail: str = ""
    failure: FailureKind | None = None

    @classmethod
    def passed(cls, stage: Stage, detail: str = "") -> StepResult:
        """Build a successful step result."""
        return cls(stage=stage, ok=True, detail=detail)

    @classmethod
    def failed(cls, stage: Stage, failure: FailureKind, detail: str) -> StepResult:
        """Build a failed step result."""
        return cls(stage=stage, ok=False, detail=detail, failure=failure)


@dataclass(slots=True)
class DeploymentReport:
    """Everything the caller needs to report a deployment."""

    steps: list[StepResult] = field(default_factory=list)
    identity: InstanceIdentity | None = None
    header_name: str = ""
    header_value: str | None = None
    config_path: Path | None = None
    removed: list[Path] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    lock_wait_ms: int | None = None

    @property
    def failed_step(self) -> StepResult | None:
        """Return the failing step, if any."""
        for step in self.steps:
            if not step.ok:
                return step
        return None

    @property
    def failure(self) -> FailureKind | None:
        """Return the failure kind, if the deployment failed."""
        step = self.failed_step
        return step.failure if step else None

    @property
    def ok(self) -> bool:
        """Return ``True`` when every stage succeeded."""
        return self.failed_step is None

    @property
    def applied(self) -> bool:
        """Return ``True`` when the reload succeeded."""
        return any(step.stage is Stage.APPLY and step.ok for step in self.steps)

    def reached(self, stage: Stage) -> bool:
        """Return ``True`` when *stage* was attempted."""
        return any(step.stage is stage for step in self.steps)


@dataclass(slots=True)
class DeploymentSequencer:
    """Run the resolve/cleanup/render/validate/apply/report sequence."""

    resolver: IdentityResolver
    nginx: NginxProvider
    locks: LockManager
    settings: DeploySettings

    def run(self) -> DeploymentReport:
        """Execute the deployment and return its report."""
        report = DeploymentReport(
            header_name=self.settings.header.name,
            config_path=self.nginx.config_path,
        )

        precondition = self._check_preconditions()
        report.steps.append(precondition)
        if not precondition.ok:
            return report

        identity = self.resolver.resolve()
        report.identity = identity
        report.notes.extend(self.resolver.notes)
        report.header_value = identity.header_value(
            include_timestamp=self.settings.header.include_timestamp
        )
        detail = "degraded: " + ", ".join(identity.degraded) if identity.degraded else "complete"
        report.steps.append(StepResult.passed(Stage.RESOLVE, detail))

        try:
            with self.locks.deploy_lock() as handle:
                report.lock_wait_ms = handle.wait_ms
                self._run_locked(identity, report)
        except LockTimeoutError as exc:
            report.steps.append(StepResult.failed(Stage.LOCK, FailureKind.LOCK, str(exc)))
        except OSError as exc:
            report.steps.append(
                StepResult.failed(Stage.LOCK, FailureKind.LOCK, f"Cannot create lock file: {exc}")
            )
        return report

    def _check_preconditions(self) -> StepResult:
        if not self.settings.is_privileged:
            return StepResult.failed(
                Stage.PRECONDITIONS,
                FailureKind.PRIVILEGE,
                "This command must be run as root.",
            )
        if not self.settings.nginx_present:
            return StepResult.failed(
                Stage.PRECONDITIONS,
                FailureKind.MISSING_BINARY,
                f"nginx binary '{self.nginx.nginx_bin}' is not installed.",
            )
        return StepResult.passed(Stage.PRECONDITIONS, "root privileges and nginx present")

    def _run_locked(self, identity: InstanceIdentity, report: DeploymentReport) -> None:
        stages = (
            lambda: self._cleanup(report),
            lambda: self._render(identity),
            self._validate,
            self._apply,
        )
        for stage in stages:
            result = stage()
            report.steps.append(result)
            if not result.ok:
                return
        report.steps.append(
            StepResult.passed(Stage.REPORT, f"{report.header_name}: {report.header_value}")
        )

    def _cleanup(self, report: DeploymentReport) -> StepResult:
        try:
            outcome = self.nginx.cleanup(self.settings.stale_paths)
        except OSError as exc:
            return StepResult.failed(
                Stage.CLEANUP, FailureKind.CLEANUP, f"Failed to remove stale configuration: {exc}"
            )
        report.removed.extend(outcome.removed)
        return StepResult.passed(
            Stage.CLEANUP, f"removed={len(outcome.removed)} absent={len(outcome.absent)}"
        )

    def _render(self, identity: InstanceIdentity) -> StepResult:
        context = self.nginx.build_context(identity, self.settings.header)
        try:
            self.nginx.write_config(context)
        except OSError as exc:
            return StepResult.failed(
                Stage.RENDER,
                FailureKind.RENDER,
                f"Failed to write {self.nginx.config_path}: {exc}",
            )
        except TemplateError as exc:
            return StepResult.failed(
                Stage.RENDER,
                FailureKind.RENDER,
                f"Failed to render {self.nginx.config_path}: {exc}",
            )
        return StepResult.passed(Stage.RENDER, str(self.nginx.config_path))

    def _validate(self) -> StepResult:
        try:
            self.nginx.test_config()
        except NginxError as exc:
            return StepResult.failed(
                Stage.VALIDATE,
                FailureKind.VALIDATION,
                f"nginx configuration syntax validation failed: {exc}",
            )
        return StepResult.passed(Stage.VALIDATE, "nginx -t succeeded")

    def _apply(self) -> StepResult:
        try:
            self.nginx.reload()
        except NginxError as exc:
            return StepResult.failed(
                Stage.APPLY,
                FailureKind.APPLY,
                f"Failed to reload nginx: {exc}",
            )
        return StepResult.passed(Stage.APPLY, f"reloaded via {self.nginx.reload_method}")


__all__ = [
    "DeploySettings",
    "DeploymentReport",
    "DeploymentSequencer",
    "FAILURE_HINTS",
    "FailureKind",
    "Stage",
    "StepResult",
]
