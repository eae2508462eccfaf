"""pcmd CLI: run an SSH ProxyCommand with locking and graceful shutdown."""

import asyncio
import os
from pathlib import Path

import typer
from rich.console import Console

from .config import (
    BuildInfo,
    RunConfig,
    get_build_info,
    get_pcmd_dir,
    load_settings,
    write_settings_template,
)
from .constants import DEFAULT_SSH_PORT, SETTINGS_FILE
from .core import run_session
from .errors import PcmdError
from .logging import configure_logging
from .models import Identity

BUILD_INFO: BuildInfo = get_build_info()


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"pcmd {BUILD_INFO}")
        raise typer.Exit()


app = typer.Typer(
    name="pcmd",
    help="Wrap an SSH ProxyCommand with locking and graceful shutdown",
    no_args_is_help=True,
)

# stdout belongs to the proxied connection
console = Console(stderr=True)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v, -vv)",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Only report warnings and errors",
    ),
    no_color: bool = typer.Option(
        False,
        "--no-color",
        help="Disable colored output",
    ),
) -> None:
    """pcmd - SSH ProxyCommand supervisor."""
    global console
    console = configure_logging(
        verbosity=verbose,
        quiet=quiet,
        no_color=no_color,
    )


def _prepare_work_dir(workdir: Path) -> Path:
    """Create <workdir>/.pcmd and change into <workdir>."""
    work_dir = workdir.expanduser().resolve()
    try:
        get_pcmd_dir(work_dir).mkdir(parents=True, exist_ok=True)
        os.chdir(work_dir)
    except OSError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None
    return work_dir


# ============================================================================
# pcmd run
# ============================================================================


@app.command(
    "run",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
def run_cmd(
    command: list[str] = typer.Argument(
        ...,
        metavar="PROXY-COMMAND [ARGS]...",
        help="Proxy command to run (put it after --)",
    ),
    workdir: Path = typer.Option(
        Path("."),
        "--workdir",
        help="Working directory for lock files, logs, unix sockets, etc.",
    ),
    grace_period: float | None = typer.Option(
        None,
        "--grace-period",
        min=0,
        help="Seconds to allow for cleanup once proxying is complete [default: 300]",
    ),
    lock: bool = typer.Option(
        False,
        "--lock",
        help="Only allow one instance of the proxy command at a time",
    ),
    wait_for_master: bool = typer.Option(
        False,
        "--wait-for-master",
        help="If not the SSH master connection, wait for the master to come up. Implies --lock",
    ),
    user: str = typer.Option("", "-r", "--user", help="SSH remote user, set to %r"),
    host: str = typer.Option("", "-h", "--host", help="SSH remote host, set to %h"),
    port: int = typer.Option(
        DEFAULT_SSH_PORT, "-p", "--port", min=0, max=65535, help="SSH remote port, set to %p"
    ),
) -> None:
    """Run a proxy command, tearing it down gracefully when the connection ends."""
    identity = Identity(user=user, host=host, port=port)
    if (lock or wait_for_master) and not identity.is_complete():
        console.print(
            "[red]Error: --lock and --wait-for-master also need -r and -h "
            "(and -p if different than 22). pcmd uses them to build a unique "
            "lock file path.[/red]"
        )
        raise typer.Exit(1)

    work_dir = _prepare_work_dir(workdir)
    try:
        settings = load_settings(get_pcmd_dir(work_dir))
        if grace_period is None:
            grace_period = settings.supervisor.grace_period

        config = RunConfig.create(
            work_dir=work_dir,
            command=command,
            identity=identity,
            grace_period=grace_period,
            lock=lock,
            wait_for_master=wait_for_master,
        )
        exit_code = asyncio.run(run_session(config, settings))
    except PcmdError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    raise typer.Exit(exit_code)


# ============================================================================
# pcmd init
# ============================================================================


@app.command()
def init(
    workdir: Path = typer.Option(
        Path("."),
        "--workdir",
        help="Working directory to initialize",
    ),
) -> None:
    """Write a settings template to <workdir>/.pcmd/config.toml."""
    pcmd_dir = get_pcmd_dir(workdir.expanduser().resolve())
    pcmd_dir.mkdir(parents=True, exist_ok=True)

    config_path = pcmd_dir / SETTINGS_FILE
    if config_path.exists():
        console.print(f"[yellow]Config already exists:[/yellow] {config_path}")
        return

    write_settings_template(pcmd_dir)
    console.print(f"[green]Created config template:[/green] {config_path}")
