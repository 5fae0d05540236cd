"""CLI entry point for hpcsession.

Launches an interactive VS Code or RStudio session as an LSF job on the
cluster and forwards it to this machine. Running the same command again
reattaches to the running session instead of submitting a new job.

Commands:
    hpcsession                          # Launch or reattach (VS Code)
    hpcsession --app rstudio --env r44  # RStudio Server in a conda env
    hpcsession -s analysis -c 8         # Named session with 8 cores
    hpcsession --remote-start IP:PORT:TOKEN
    hpcsession --update

Exit codes:
    0: session ready, or reattached
    1: invalid request, submission failure, dead session, busy nodes
    2: no scheduler account available
    N: exit code reported by a failed remote setup step
"""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Any

import click
from click.core import ParameterSource
from rich.console import Console

from hpcsession import __version__
from hpcsession.config_manager import ConfigManager
from hpcsession.errors import HpcSessionError, ValidationError
from hpcsession.models import IsolationLevel, SessionApp
from hpcsession.modules.remote_agent import AgentConfig, RemoteAgent
from hpcsession.session_launcher import RemoteStart, SessionLauncher

logger = logging.getLogger(__name__)

PACKAGE_NAME = "hpcsession"

# CLI option -> SessionRequest field
REQUEST_OPTIONS = {
    "cores": "cores",
    "queue": "queue",
    "time": "time",
    "memory": "memory",
    "resources": "resources",
    "account": "account",
    "session_name": "session_name",
    "env": "env",
    "image": "image",
    "isolation": "isolation",
    "app": "app",
    "long_queue": "long_queue",
}

# CLI option -> LauncherSettings field
SETTINGS_OPTIONS = {
    "poll_interval": "poll_interval",
}


def _explicit_values(ctx: click.Context, mapping: dict[str, str]) -> dict[str, Any]:
    """Values of options the user actually passed."""
    values: dict[str, Any] = {}
    for option, field_name in mapping.items():
        if ctx.get_parameter_source(option) is ParameterSource.COMMANDLINE:
            values[field_name] = ctx.params[option]
    return values


def _run_update() -> int:
    """Upgrade the installed tool with pip."""
    cmd = [sys.executable, "-m", "pip", "install", "--upgrade", PACKAGE_NAME]
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        return subprocess.run(cmd, check=False).returncode
    except OSError as e:
        raise HpcSessionError(f"Failed to run pip: {e}") from e


@click.group(
    invoke_without_command=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)
@click.option("--cores", "-c", type=int, default=1, show_default=True, help="CPU cores (1-64)")
@click.option(
    "--queue",
    "-q",
    default="auto",
    show_default=True,
    help="Queue: express, premium, long, gpu, or auto (chosen from --time)",
)
@click.option("--time", "-t", default="12:00", show_default=True, help="Wall-clock limit, H:MM")
@click.option("--memory", "-m", type=int, default=4000, show_default=True, help="Memory per core in MB")
@click.option("--resources", "-R", multiple=True, help="Extra LSF resource tag (repeatable)")
@click.option("--account", "-P", help="LSF account to charge (default: looked up)")
@click.option("--session-name", "-s", help="Name for a second, independent session")
@click.option("--env", "-e", help="Conda environment name or path")
@click.option("--image", "-i", help="Container image: .sif path or oras:// / docker:// URI")
@click.option(
    "--isolation",
    type=click.Choice([level.value for level in IsolationLevel]),
    default=IsolationLevel.NONE.value,
    show_default=True,
    help="How far the container is cut off from your home and environment",
)
@click.option(
    "--app",
    type=click.Choice([app.value for app in SessionApp]),
    default=SessionApp.VSCODE.value,
    show_default=True,
    help="Server to launch",
)
@click.option("--long", "long_queue", is_flag=True, help="Allow the long queue (over 144 hours)")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Config file (default: ~/.hpcsession/config.toml)",
)
@click.option("--poll-interval", type=int, default=30, show_default=True, help="Seconds between queue checks")
@click.option("--remote-start", help="Tunnel to a server already running, given as IP:PORT:TOKEN")
@click.option("--update", is_flag=True, help="Upgrade hpcsession and exit")
@click.option("--debug", is_flag=True, help="Show debug output")
@click.pass_context
@click.version_option(version=__version__)
def main(ctx: click.Context, **options: Any) -> None:
    """hpcsession - interactive VS Code and RStudio sessions on the HPC cluster.

    Submits an LSF job that starts the server in a container on a compute
    node, waits for it to come up, and opens an SSH tunnel to it.

    \b
    CONFIGURATION:
        Config file: ~/.hpcsession/config.toml
        Any option above, plus login_host, ssh_user, default_account, binds, ...
        Values in the config file take precedence over command-line flags.
    """
    logging.basicConfig(
        level=logging.DEBUG if options["debug"] else logging.INFO, format="%(message)s"
    )

    if ctx.invoked_subcommand is not None:
        return

    console = Console()
    error_console = Console(stderr=True)

    if options["update"]:
        try:
            ctx.exit(_run_update())
        except HpcSessionError as e:
            error_console.print(f"Error: {e}", style="red", highlight=False)
            ctx.exit(e.exit_code)

    try:
        request, settings = ConfigManager.resolve(
            _explicit_values(ctx, REQUEST_OPTIONS),
            _explicit_values(ctx, SETTINGS_OPTIONS),
            options["config_path"],
        )
        launcher = SessionLauncher(settings, console=console)

        if options["remote_start"]:
            launcher.attach(request, RemoteStart.parse(options["remote_start"]))
        else:
            launcher.launch(request)

    except ValidationError as e:
        error_console.print(f"Error: {e}", style="red", highlight=False)
        click.echo(ctx.get_help(), err=True)
        ctx.exit(e.exit_code)

    except HpcSessionError as e:
        error_console.print(f"Error: {e}", style="red", highlight=False)
        ctx.exit(e.exit_code)

    except KeyboardInterrupt:
        error_console.print(
            "Interrupted. Any submitted job keeps running; run the same command to reattach.",
            style="yellow",
            highlight=False,
        )
        ctx.exit(130)


@main.command(name="agent", hidden=True)
@click.option(
    "--app", type=click.Choice([app.value for app in SessionApp]), required=True
)
@click.option("--session-dir", required=True, help="Session directory, relative to home")
@click.option("--image", required=True, help="Container image path or URI")
@click.option("--env-path", help="Conda environment prefix")
@click.option(
    "--isolation",
    type=click.Choice([level.value for level in IsolationLevel]),
    default=IsolationLevel.NONE.value,
)
@click.option("--port-start", type=int, default=50000)
@click.option("--port-end", type=int, default=60000)
@click.option("--lock-root", default="/tmp")  # noqa: S108
@click.option("--image-cache", default="~/.hpcsession/images")
@click.option("--bind", "binds", multiple=True, help="Extra bind path (repeatable)")
def agent(
    app: str,
    session_dir: str,
    image: str,
    env_path: str | None,
    isolation: str,
    port_start: int,
    port_end: int,
    lock_root: str,
    image_cache: str,
    binds: tuple[str, ...],
) -> None:
    """Start the session server inside the batch job (runs on the compute node)."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s", force=True
    )

    directory = Path(session_dir).expanduser()
    if not directory.is_absolute():
        directory = Path.home() / directory
    directory.mkdir(parents=True, exist_ok=True)

    config = AgentConfig(
        app=SessionApp(app),
        session_dir=directory,
        image=image,
        env_path=env_path,
        isolation=IsolationLevel(isolation),
        port_start=port_start,
        port_end=port_end,
        lock_root=Path(lock_root),
        image_cache=Path(image_cache),
        binds=list(binds),
    )
    sys.exit(RemoteAgent(config).run())


if __name__ == "__main__":
    main()
