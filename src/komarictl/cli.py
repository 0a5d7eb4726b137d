"""Typer-powered command line for ``komarictl``.

Running ``komarictl`` without arguments opens the interactive menu. The
``--auto-upgrade``/``--cron`` and ``--install-noninteractive`` flags run the
unattended flows used from cron jobs and provisioning scripts, and every
lifecycle action is also exposed as a subcommand.
"""
from __future__ import annotations

import json
import os
import socket
import textwrap
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupError, BackupsRegistry
from .config import AppConfig, ConfigError, load_config
from .credentials import CredentialHarvester
from .download import ArtifactDownloader
from .errors import HostEnvironmentError, KomariCtlError, UpgradeFailedError
from .exit_codes import ExitCode
from .lifecycle import (
    InstallLayout,
    LifecycleManager,
    LifecycleResult,
    LifecycleStatus,
    ServiceSettings,
)
from .logging import OperationScope, StructuredLogger
from .ports import parse_port
from .providers import PackageManagerProvider, SystemdLogReader, SystemdProvider
from .release import ReleaseFeed, ReleaseResolver
from .templates import TemplateEngine
from .versions import VersionStore

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate configuration file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Komari Monitor lifecycle manager.

        Installs, upgrades (with rollback) and removes the Komari binary and
        its systemd service. Run without arguments for the interactive menu.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    lifecycle: LifecycleManager


def build_runtime(config: AppConfig, *, env: Mapping[str, str] | None = None) -> RuntimeContext:
    """Wire the real host providers for *config*."""
    environ = os.environ if env is None else env
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    supervisor = SystemdProvider(
        templates=templates,
        service_name=config.service.name,
        systemd_dir=config.systemd.unit_dir,
        systemctl_bin=config.systemd.systemctl_bin,
        journalctl_bin=config.systemd.journalctl_bin,
    )
    log_reader = SystemdLogReader(supervisor)
    release = config.release
    resolver = ReleaseResolver(
        feed=ReleaseFeed(
            repository=release.repository,
            asset_prefix=release.asset_prefix,
            api_url=release.api_url,
            web_url=release.web_url,
        ),
        token=environ.get(release.token_env) or None,
        timeout=release.timeout,
    )
    probe = config.version_probe
    lifecycle = LifecycleManager(
        layout=InstallLayout(
            install_dir=config.install_dir,
            data_dir=config.data_dir,
            binary=config.binary_path,
        ),
        service=ServiceSettings(
            name=config.service.name,
            description=config.service.description,
            user=config.service.user,
            listen_host=config.service.listen_host,
            default_port=config.service.default_port,
        ),
        versions=VersionStore(
            binary_path=config.binary_path,
            record_path=config.version_file,
            probe_args=probe.args,
            pattern=probe.pattern,
            probe_timeout=probe.timeout,
        ),
        resolver=resolver,
        downloader=ArtifactDownloader(timeout=release.timeout),
        supervisor=supervisor,
        packages=PackageManagerProvider(managers=config.dependencies.managers),
        backups=BackupsRegistry(config.backups.root, config.backups.index),
        harvester=CredentialHarvester(
            reader=log_reader,
            marker=config.credential.marker,
            since=config.credential.since,
            timeout=config.credential.timeout,
            initial_delay=config.credential.initial_delay,
            max_delay=config.credential.max_delay,
        ),
        log_reader=log_reader,
        requirements=config.dependencies.commands,
        backup_keep=config.backups.keep,
    )
    return RuntimeContext(config=config, logger=logger, templates=templates, lifecycle=lifecycle)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[bold red]ERROR[/bold red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the komarictl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    auto_upgrade: bool = typer.Option(
        False,
        "--auto-upgrade",
        help="Install or upgrade unattended, then exit.",
    ),
    cron: bool = typer.Option(
        False,
        "--cron",
        help="Alias of --auto-upgrade for scheduled runs.",
    ),
    install_noninteractive: bool = typer.Option(
        False,
        "--install-noninteractive",
        help="Install with the default port without prompting, then exit.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"komarictl {__version__}")
        raise typer.Exit(code=0)

    runtime = _ensure_runtime(ctx, config_file)
    unattended = auto_upgrade or cron
    if ctx.invoked_subcommand is not None:
        if unattended or install_noninteractive:
            console.print(
                "[bold red]ERROR[/bold red] Mode flags cannot be combined with a subcommand."
            )
            raise typer.Exit(code=ExitCode.VALIDATION)
        return

    if unattended:
        _run_check(runtime, command="root --auto-upgrade")
    elif install_noninteractive:
        _run_install(runtime, port=None, interactive=False, command="root --install-noninteractive")
    else:
        _interactive_menu(runtime)
    raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    severity: str = "error",
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    if severity == "critical":
        console.print(f"[bold white on red] CRITICAL [/bold white on red] {message}")
    else:
        console.print(f"[bold red]ERROR[/bold red] {message}")
    op.error(message, rc=int(rc), context=dict(context or {}))
    raise typer.Exit(code=int(rc))


def _fail(op: OperationScope, exc: Exception) -> NoReturn:
    """Translate a lifecycle failure into an operator message and exit code."""
    if isinstance(exc, UpgradeFailedError):
        context: dict[str, object] = {"restored": exc.restored, "backup": exc.backup}
        message = str(exc)
        if not exc.restored:
            message += " Check the binary and the service state by hand."
        _command_error(op, message, rc=exc.exit_code, severity=exc.severity, context=context)
    if isinstance(exc, KomariCtlError):
        _command_error(op, str(exc), rc=exc.exit_code, severity=exc.severity)
    _command_error(op, str(exc), rc=ExitCode.FAILURE)


def _target(runtime: RuntimeContext) -> dict[str, object]:
    return {
        "kind": "service",
        "name": runtime.config.service.name,
        "binary": str(runtime.config.binary_path),
    }


def _require_root(runtime: RuntimeContext, op: OperationScope) -> None:
    if not runtime.config.require_root:
        op.add_step("privileges.check", status="skipped", detail="require_root=false")
        return
    if os.geteuid() != 0:
        _fail(
            op,
            HostEnvironmentError(
                "komarictl must run as root (set require_root: false to skip this check)."
            ),
        )
    op.add_step("privileges.check", detail="root")


def _host_address() -> str:
    """Return a best-guess address operators can reach the service on."""
    try:
        address = socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"
    return address or "127.0.0.1"


def _prompt_port(default: int) -> int:
    while True:
        raw = typer.prompt(f"Listen port [default: {default}]", default="", show_default=False)
        try:
            return parse_port(raw, default=default)
        except KomariCtlError as exc:
            console.print(f"[bold red]ERROR[/bold red] {exc}")


# ----------------------------------------------------------------------
# Operations
# ----------------------------------------------------------------------
def _run_install(
    runtime: RuntimeContext,
    *,
    port: int | None,
    interactive: bool,
    command: str,
) -> None:
    default_port = runtime.config.service.default_port
    with runtime.logger.operation(
        command,
        args={"port": port, "interactive": interactive},
        target=_target(runtime),
    ) as op:
        _require_root(runtime, op)
        chooser: Callable[[], int] | None = None
        if port is not None:
            chooser = lambda: port  # noqa: E731
        elif interactive:
            chooser = lambda: _prompt_port(default_port)  # noqa: E731
        try:
            result = runtime.lifecycle.install(choose_port=chooser, op=op)
        except (KomariCtlError, BackupError, OSError) as exc:
            _fail(op, exc)
        _report_install(runtime, result, op)


def _report_install(runtime: RuntimeContext, result: LifecycleResult, op: OperationScope) -> None:
    if result.status is LifecycleStatus.ALREADY_INSTALLED:
        console.print(
            f"[yellow]Komari is already installed at {runtime.config.binary_path}; "
            "use upgrade instead.[/yellow]"
        )
        op.success("Already installed.", changed=0, context=result.to_dict())
        return

    version = result.version or "unknown version"
    if result.status is LifecycleStatus.INSTALLED_MANUAL:
        console.print(f"[green]Installed Komari {version}.[/green]")
        console.print("[yellow]No systemd detected; start the service manually:[/yellow]")
        console.print(f"  {result.manual_command}")
        op.warning(
            "Installed without a service supervisor.",
            warnings=["no supervisor"],
            changed=result.changed,
            context=result.to_dict(),
        )
        return

    _print_access_info(runtime, result)
    op.success("Installed Komari.", changed=result.changed, context=result.to_dict())


def _print_access_info(runtime: RuntimeContext, result: LifecycleResult) -> None:
    name = runtime.config.service.name
    systemctl = runtime.config.systemd.systemctl_bin
    journalctl = runtime.config.systemd.journalctl_bin
    console.print(f"[bold green]Installation complete[/bold green] ({result.version or 'unknown version'})")
    console.print(f"  URL: http://{_host_address()}:{result.port}")
    if result.credential:
        console.print(f"  Initial login (shown only once): [bold]{result.credential}[/bold]")
    else:
        console.print(
            f"[yellow]  No initial credential found yet; check `{journalctl} -u {name}`.[/yellow]"
        )
    table = Table(show_header=True, header_style="bold magenta", title="Service commands")
    table.add_column("Action", style="bold")
    table.add_column("Command")
    table.add_row("status", f"{systemctl} status {name}")
    table.add_row("start", f"{systemctl} start {name}")
    table.add_row("stop", f"{systemctl} stop {name}")
    table.add_row("restart", f"{systemctl} restart {name}")
    table.add_row("logs", f"{journalctl} -u {name} -f")
    console.print(table)


def _report_upgrade(result: LifecycleResult, op: OperationScope) -> None:
    if result.status is LifecycleStatus.UP_TO_DATE:
        console.print(f"[green]Already up to date ({result.version or 'unknown'}).[/green]")
        op.success("Already up to date.", changed=0, context=result.to_dict())
        return
    previous = result.previous_version or "unknown"
    console.print(
        f"[green]Upgraded Komari {previous} -> {result.version or 'latest'}.[/green]"
    )
    if result.backup is not None:
        console.print(f"  Backup: {result.backup}")
    for path in result.pruned:
        console.print(f"  Pruned old backup: {path}")
    op.success(
        "Upgraded Komari.",
        changed=result.changed,
        backups=[str(result.backup)] if result.backup else None,
        context=result.to_dict(),
    )


def _run_upgrade(runtime: RuntimeContext, *, command: str) -> None:
    with runtime.logger.operation(command, target=_target(runtime)) as op:
        _require_root(runtime, op)
        try:
            result = runtime.lifecycle.upgrade(op=op)
        except (KomariCtlError, BackupError, OSError) as exc:
            _fail(op, exc)
        _report_upgrade(result, op)


def _run_check(runtime: RuntimeContext, *, command: str) -> None:
    with runtime.logger.operation(command, args={"unattended": True}, target=_target(runtime)) as op:
        _require_root(runtime, op)
        try:
            result = runtime.lifecycle.auto_upgrade_check(op=op)
        except (KomariCtlError, BackupError, OSError) as exc:
            _fail(op, exc)
        if result.action == "install":
            _report_install(runtime, result, op)
        else:
            _report_upgrade(result, op)


def _run_uninstall(runtime: RuntimeContext, *, assume_yes: bool, command: str) -> None:
    def confirm() -> bool:
        if assume_yes:
            return True
        return typer.confirm("This will remove Komari. Are you sure?", default=True)

    with runtime.logger.operation(
        command,
        args={"yes": assume_yes},
        target=_target(runtime),
    ) as op:
        _require_root(runtime, op)
        try:
            result = runtime.lifecycle.uninstall(confirm=confirm, op=op)
        except (KomariCtlError, BackupError, OSError) as exc:
            _fail(op, exc)

        if result.status is LifecycleStatus.NOT_INSTALLED:
            console.print("[yellow]Komari is not installed.[/yellow]")
            op.success("Nothing to uninstall.", changed=0)
            return
        if result.status is LifecycleStatus.CANCELLED:
            console.print("[yellow]Uninstall cancelled.[/yellow]")
            op.success("Uninstall cancelled.", changed=0)
            return
        console.print("[green]Komari removed.[/green]")
        if not result.install_dir_removed:
            console.print(
                f"  {runtime.config.install_dir} is not empty and was left in place."
            )
        console.print(f"  Data files remain in {runtime.config.data_dir}.")
        op.success("Uninstalled Komari.", changed=result.changed, context=result.to_dict())


def _run_status(runtime: RuntimeContext, *, command: str) -> None:
    with runtime.logger.operation(command, target=_target(runtime)) as op:
        try:
            output = runtime.lifecycle.status()
        except KomariCtlError as exc:
            _fail(op, exc)
        console.print(output, markup=False, highlight=False)
        op.success("Reported service status.", changed=0)


def _run_logs(runtime: RuntimeContext, *, lines: int, follow: bool, command: str) -> None:
    with runtime.logger.operation(
        command,
        args={"lines": lines, "follow": follow},
        target=_target(runtime),
    ) as op:
        try:
            output = runtime.lifecycle.logs(lines=lines, follow=follow)
        except KomariCtlError as exc:
            _fail(op, exc)
        if output:
            console.print(output, markup=False, highlight=False)
        op.success("Displayed service logs.", changed=0)


def _run_restart(runtime: RuntimeContext, *, command: str) -> None:
    with runtime.logger.operation(command, target=_target(runtime)) as op:
        _require_root(runtime, op)
        try:
            runtime.lifecycle.restart()
        except KomariCtlError as exc:
            _fail(op, exc)
        op.add_step("supervisor.restart", detail=runtime.config.service.name)
        console.print("[green]Service restarted.[/green]")
        op.success("Service restarted.", changed=1)


def _run_stop(runtime: RuntimeContext, *, command: str) -> None:
    with runtime.logger.operation(command, target=_target(runtime)) as op:
        _require_root(runtime, op)
        try:
            runtime.lifecycle.stop()
        except KomariCtlError as exc:
            _fail(op, exc)
        op.add_step("supervisor.stop", detail=runtime.config.service.name)
        console.print("[yellow]Service stopped.[/yellow]")
        op.success("Service stopped.", changed=1)


MENU_ITEMS: tuple[tuple[str, str], ...] = (
    ("1", "Install Komari"),
    ("2", "Upgrade Komari"),
    ("3", "Uninstall Komari"),
    ("4", "Show status"),
    ("5", "Show logs"),
    ("6", "Restart service"),
    ("7", "Stop service"),
    ("8", "Exit"),
)


def _interactive_menu(runtime: RuntimeContext) -> None:
    console.print(f"[bold]Komari management[/bold] (komarictl {__version__})")
    for key, label in MENU_ITEMS:
        console.print(f"  {key}) {label}")
    choice = typer.prompt("Select an option [1-8]", default="", show_default=False).strip()

    actions: dict[str, Callable[[], None]] = {
        "1": lambda: _run_install(runtime, port=None, interactive=True, command="menu install"),
        "2": lambda: _run_upgrade(runtime, command="menu upgrade"),
        "3": lambda: _run_uninstall(runtime, assume_yes=False, command="menu uninstall"),
        "4": lambda: _run_status(runtime, command="menu status"),
        "5": lambda: _run_logs(runtime, lines=50, follow=True, command="menu logs"),
        "6": lambda: _run_restart(runtime, command="menu restart"),
        "7": lambda: _run_stop(runtime, command="menu stop"),
    }
    if choice == "8":
        return
    action = actions.get(choice)
    if action is None:
        console.print(f"[bold red]ERROR[/bold red] Invalid option: {choice or '(empty)'}")
        raise typer.Exit(code=ExitCode.VALIDATION)
    action()


# ----------------------------------------------------------------------
# Subcommands
# ----------------------------------------------------------------------
@app.command()
def install(
    ctx: typer.Context,
    port: str | None = typer.Option(
        None,
        "--port",
        help="Listen port for the service (1-65535).",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Use the default port without prompting.",
    ),
) -> None:
    """Download and install Komari as a systemd service."""
    runtime = _get_runtime(ctx)
    chosen: int | None = None
    if port is not None:
        try:
            chosen = parse_port(port, default=runtime.config.service.default_port)
        except KomariCtlError as exc:
            console.print(f"[bold red]ERROR[/bold red] {exc}")
            raise typer.Exit(code=int(exc.exit_code)) from exc
    _run_install(runtime, port=chosen, interactive=not yes, command="install")


@app.command()
def upgrade(ctx: typer.Context) -> None:
    """Upgrade Komari to the latest release, rolling back if the download fails."""
    _run_upgrade(_get_runtime(ctx), command="upgrade")


@app.command()
def check(ctx: typer.Context) -> None:
    """Install when missing or upgrade when a newer tag is published."""
    _run_check(_get_runtime(ctx), command="check")


@app.command()
def uninstall(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Remove the service and binary, keeping data files."""
    _run_uninstall(_get_runtime(ctx), assume_yes=yes, command="uninstall")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the systemd status of the service."""
    _run_status(_get_runtime(ctx), command="status")


@app.command()
def logs(
    ctx: typer.Context,
    lines: int = typer.Option(50, "--lines", "-n", min=1, help="Number of lines to show."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream new log lines."),
) -> None:
    """Show recent service logs."""
    _run_logs(_get_runtime(ctx), lines=lines, follow=follow, command="logs")


@app.command()
def restart(ctx: typer.Context) -> None:
    """Restart the service and verify it is active."""
    _run_restart(_get_runtime(ctx), command="restart")


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop the service."""
    _run_stop(_get_runtime(ctx), command="stop")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
