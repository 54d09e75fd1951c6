"""Typer-powered command line interface for ``cvmid``.

Running ``cvmid`` without a subcommand publishes the instance identity: it
resolves zone, IP and instance id from the metadata service, writes the nginx
server block, validates the full nginx configuration and reloads nginx.
"""
from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import get_version
from .config import AppConfig, ConfigError, load_config
from .deploy import (
    FAILURE_HINTS,
    DeploymentReport,
    DeploymentSequencer,
    DeploySettings,
    Stage,
)
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .metadata import IdentityResolver, MetadataClient
from .providers import (
    InstallError,
    NginxInstaller,
    NginxProvider,
    VerificationCheck,
)
from .providers.installer import read_os_release
from .templates import TemplateEngine
from .verify import (
    DEFAULT_TIMEOUT,
    DEFAULT_URL,
    CheckStatus,
    EndpointVerifier,
    VerificationReport,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to cvmid's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Tencent Cloud CVM identification helper.

        Without a subcommand, resolves this instance's zone, IP and instance id
        and publishes them through an nginx response header.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    nginx_provider: NginxProvider
    metadata: MetadataClient
    installer: NginxInstaller


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    nginx_config = config.nginx
    nginx_provider = NginxProvider(
        templates=templates,
        config_path=nginx_config.config_path,
        nginx_bin=nginx_config.bin,
        reload_method=nginx_config.reload_method,
        systemctl_bin=nginx_config.systemctl_bin,
        service=nginx_config.service,
    )
    metadata = MetadataClient(
        base_url=config.metadata.base_url,
        timeout=config.metadata.timeout,
    )
    installer = NginxInstaller(
        systemctl_bin=nginx_config.systemctl_bin,
        nginx_bin=nginx_config.bin,
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        templates=templates,
        nginx_provider=nginx_provider,
        metadata=metadata,
        installer=installer,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _is_privileged() -> bool:
    """Return ``True`` when running with an effective uid of root."""
    return os.geteuid() == 0


def _log(message: str) -> None:
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    console.print(f"[dim]\\[{stamp}][/dim] {message}")


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
    hint: str | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]ERROR: {escape(message)}[/red]")
    if hint:
        console.print(f"       {escape(hint)}")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the cvmid version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"cvmid {get_version()}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        _publish(_get_runtime(ctx))


@app.command()
def apply(ctx: typer.Context) -> None:
    """Resolve instance identity and publish it through nginx."""
    _publish(_get_runtime(ctx))


def _publish(runtime: RuntimeContext) -> None:
    config = runtime.config
    settings = DeploySettings(
        is_privileged=_is_privileged(),
        nginx_present=runtime.nginx_provider.is_installed(),
        stale_paths=config.nginx.stale_paths,
        header=config.header,
    )
    sequencer = DeploymentSequencer(
        resolver=IdentityResolver(client=runtime.metadata),
        nginx=runtime.nginx_provider,
        locks=runtime.locks,
        settings=settings,
    )
    target = {"kind": "nginx", "path": str(config.nginx.config_path)}
    with runtime.logger.operation("apply", target=target) as op:
        _log("Starting CVM auto-identification process...")
        report = sequencer.run()
        if report.lock_wait_ms is not None:
            op.set_lock_wait_ms(report.lock_wait_ms)
        for step in report.steps:
            op.add_step(
                f"deploy.{step.stage.value}",
                status="success" if step.ok else "error",
                detail=step.detail or None,
            )
        for note in report.notes:
            op.add_step("resolve.degraded", status="info", detail=note)

        _render_progress(report)

        failed = report.failed_step
        if failed is not None:
            hint = FAILURE_HINTS.get(failed.failure) if failed.failure else None
            _command_error(
                op,
                failed.detail,
                errors=[f"{failed.stage.value}: {failed.detail}"],
                hint=hint,
            )

        _render_success(report)
        context: dict[str, object] = {"header": report.header_value}
        if report.identity is not None:
            context["identity"] = report.identity.to_dict()
        if report.notes:
            op.warning(
                "Identity published with degraded facts.",
                warnings=report.notes,
                changed=1,
                context=context,
            )
        else:
            op.success("Identity published.", changed=1, context=context)


def _render_progress(report: DeploymentReport) -> None:
    identity = report.identity
    if identity is not None:
        _log("Querying Tencent Cloud metadata service...")
        _log("CVM Information Detected:")
        _log(f"  IP Address: {escape(identity.display_ip)}")
        _log(f"  Availability Zone: {escape(identity.display_zone)}")
        _log(f"  Instance ID: {escape(identity.display_instance_id)}")
        for note in report.notes:
            _log(f"  [yellow]note[/yellow]: {escape(note)}")
    if report.reached(Stage.CLEANUP):
        _log("Cleaning up old nginx configurations...")
        for path in report.removed:
            _log(f"  removed {escape(str(path))}")
    if report.reached(Stage.RENDER):
        _log("Creating nginx configuration with CVM identification header...")
    if report.reached(Stage.VALIDATE):
        _log("Validating nginx configuration...")
    if report.reached(Stage.APPLY):
        _log("Configuration syntax is valid")
        _log("Reloading nginx with new configuration...")


def _render_success(report: DeploymentReport) -> None:
    header_line = f"{report.header_name}: {report.header_value}"
    _log("[green]SUCCESS! CVM identification configured[/green]")
    _log(f"Header format: {escape(header_line)}")
    _log(f"Configuration: {escape(str(report.config_path))}")
    _log("")
    _log("=== TESTING ===")
    _log("Test the configuration with these commands:")
    _log("  curl -I http://localhost/          # View headers")
    _log("  curl http://localhost/             # View response body")
    _log("  curl http://localhost/health       # Health check")
    _log("  cvmid verify                       # Run the endpoint checks")
    _log("")
    _log(f"Look for the {escape(report.header_name)} header in your testing tool!")


@app.command("install-nginx")
def install_nginx(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Print the installation plan without running it.",
    ),
    os_release: Path = typer.Option(
        Path("/etc/os-release"),
        "--os-release",
        dir_okay=False,
        help="Distribution identification file to read.",
    ),
) -> None:
    """Install nginx with the package manager of this distribution."""
    runtime = _get_runtime(ctx)
    args = {"yes": yes, "dry_run": dry_run, "os_release": str(os_release)}
    with runtime.logger.operation(
        "install-nginx",
        args=args,
        target={"kind": "system", "scope": "nginx"},
    ) as op:
        if not dry_run and not _is_privileged():
            _command_error(
                op,
                "This command must be run as root or with sudo privileges.",
                hint="Usage: sudo cvmid install-nginx",
            )

        try:
            distro = read_os_release(os_release)
            plan = runtime.installer.plan(distro)
        except InstallError as exc:
            _command_error(op, str(exc))

        console.print(f"Detected Linux distribution: {escape(distro.name)}")
        console.print(f"Distribution ID: {escape(distro.id)}")
        console.print(f"Version: {escape(distro.version_id or 'Unknown')}")
        op.add_step("detect", status="success", detail=distro.id)

        if dry_run:
            for step in plan:
                console.print(f"  {escape(step.description)}: {escape(step.render())}")
            console.print(f"[yellow]Dry run[/yellow]: {len(plan)} steps would run.")
            op.success("Dry run complete.", changed=0, context={"steps": len(plan)})
            return

        if not yes and not typer.confirm(
            "Do you wish to continue with NGINX installation?", default=False
        ):
            console.print("Installation cancelled by user.")
            op.success("Installation cancelled by user.", changed=0)
            return

        failure: str | None = None
        try:
            runtime.installer.install(distro)
        except InstallError as exc:
            failure = str(exc)
        for step in runtime.installer.completed:
            op.add_step(f"install.{step.description}", status="success")
        if failure is not None:
            _command_error(op, failure)

        checks = runtime.installer.verify(start_inactive=True)
        console.print("")
        console.print("=== Post-Installation Verification ===")
        warnings: list[str] = []
        for check in checks:
            if check.ok:
                console.print(f"[green]✓[/green] {escape(check.detail)}")
            else:
                console.print(f"[yellow]⚠[/yellow] {escape(check.detail)}")
                warnings.append(check.detail)
        failed_required = [check for check in checks if check.required and not check.ok]
        if failed_required:
            _command_error(
                op,
                failed_required[0].detail,
                errors=[check.detail for check in failed_required],
                hint="Check logs with: journalctl -u nginx",
            )
        console.print("[green]NGINX installation completed successfully[/green]")
        if warnings:
            op.warning("NGINX installed with warnings.", warnings=warnings, changed=1)
        else:
            op.success("NGINX installed.", changed=1)


@app.command()
def verify(
    ctx: typer.Context,
    url: str = typer.Argument(DEFAULT_URL, help="URL to test."),
    timeout: float = typer.Option(
        DEFAULT_TIMEOUT,
        "--timeout",
        min=0.1,
        help="Per-request timeout in seconds.",
    ),
    nginx_checks: bool = typer.Option(
        True,
        "--nginx/--no-nginx",
        help="Also check the local nginx installation.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit the report as JSON."),
) -> None:
    """Check a deployed endpoint for the identification header."""
    runtime = _get_runtime(ctx)
    args = {"url": url, "timeout": timeout, "nginx": nginx_checks}
    target = {"kind": "endpoint", "url": url}
    with runtime.logger.operation("verify", args=args, target=target) as op:
        verifier = EndpointVerifier(
            url=url,
            header_name=runtime.config.header.name,
            timeout=timeout,
        )
        report = verifier.run()
        installation = runtime.installer.verify(strict_config=True) if nginx_checks else []
        broken = [check.detail for check in installation if check.required and not check.ok]
        failed = report.failed or bool(broken)

        if json_output:
            payload = {
                "url": report.url,
                "results": [
                    {
                        "id": result.id,
                        "category": result.category,
                        "status": result.status.value,
                        "message": result.message,
                    }
                    for result in report.results
                ],
                "nginx": [
                    {"name": check.name, "ok": check.ok, "detail": check.detail}
                    for check in installation
                ],
                "failed": failed,
            }
            console.print_json(data=payload)
        else:
            _render_verification(report, installation)

        totals = {status.value: count for status, count in report.totals().items()}
        if failed:
            failures = [r.message for r in report.results if r.status.is_failure]
            op.error("Endpoint verification failed.", errors=failures + broken, context=totals)
            raise typer.Exit(code=ExitCode.FAILURE)
        op.success("Endpoint verification passed.", context=totals)


_STATUS_STYLES = {
    CheckStatus.PASS: "[green]✓ PASSED[/green]",
    CheckStatus.FAIL: "[red]✗ FAILED[/red]",
    CheckStatus.WARN: "[yellow]⚠ WARNING[/yellow]",
    CheckStatus.INFO: "[blue]ℹ INFO[/blue]",
}


def _render_verification(
    report: VerificationReport,
    installation: Sequence[VerificationCheck],
) -> None:
    console.print(f"Testing URL: {escape(report.url)}")
    if installation:
        console.print("")
        console.print("=== NGINX Installation Tests ===")
        for check in installation:
            if check.ok:
                status = CheckStatus.PASS
            else:
                status = CheckStatus.FAIL if check.required else CheckStatus.WARN
            console.print(f"{_STATUS_STYLES[status]}: {escape(check.detail)}")

    table = Table(title="Endpoint checks")
    table.add_column("Category")
    table.add_column("Status")
    table.add_column("Message")
    for result in report.results:
        table.add_row(result.category, _STATUS_STYLES[result.status], escape(result.message))
    console.print(table)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit the configuration as JSON."),
) -> None:
    """Display the resolved configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config show", args={"json": json_output}) as op:
        data = runtime.config.to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            table = Table(title="cvmid configuration")
            table.add_column("Key")
            table.add_column("Value")
            for key, value in data.items():
                shown = json.dumps(value) if isinstance(value, dict) else str(value)
                table.add_row(key, escape(shown))
            console.print(table)
        op.success("Displayed configuration.", changed=0)


def main() -> None:  # pragma: no cover - thin wrapper for console scripts
    """Invoke the Typer application."""
    app()


__all__ = ["app", "main"]
