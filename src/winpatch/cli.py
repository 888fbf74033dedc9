from pathlib import Path
from typing import Annotated, Optional

from rich.console import Console
from rich.panel import Panel
from typer import Exit, Option, Typer

from winpatch import __version__
from winpatch.agents import AgentFactory
from winpatch.config import Configuration
from winpatch.environment import check_preconditions
from winpatch.errors import ConfigurationError, PreconditionError
from winpatch.logsink import LogSink
from winpatch.orchestrator import PatchRun


app = Typer(
    add_completion=False,
    no_args_is_help=False,
)

err_console = Console(stderr=True)

# Update agent backend used for real runs
AGENT = "wua"


def _fatal(message: str) -> None:
    """
    Report a startup error on the console, before logging is available.
    """
    err_console.print(Panel.fit(message, title="Error", style="red"))


def _version_callback(value: bool) -> None:
    if value:
        print(f"winpatch version {__version__}")
        raise Exit()


def load_config(path: Optional[Path]) -> tuple[Configuration, bool]:
    """
    Build the configuration, from ``path`` if one is given.

    A file that does not exist leaves every option at its default.

    :return: Tuple of (configuration, whether a file was loaded)
    :raises ConfigurationError: If the file is unreadable or malformed
    """
    config = Configuration()

    if path is None:
        return config, False

    return config, config.from_path(path, silent=True)


@app.command()
def patch(
    config_path: Annotated[
        Optional[Path],
        Option(
            "--config",
            "-c",
            help="Configuration file (json, yaml or toml)",
            dir_okay=False,
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        Option(
            "--dry-run",
            help="Search and report only, do not download, install or reboot",
        ),
    ] = False,
    version: Annotated[
        bool,
        Option(
            "--version",
            help="Show the version and exit",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = False,
) -> None:
    """
    Search, download and install Windows updates older than a threshold.
    """
    try:
        config, loaded = load_config(config_path)
        options = config.run_options(dry_run=dry_run)
    except ConfigurationError as e:
        _fatal(f"Startup error: {e}")
        raise Exit(code=1)

    try:
        sink = LogSink(config.log_file)
    except OSError as e:
        _fatal(f"Unable to open log file {config.log_file}: {e.strerror}")
        raise Exit(code=1)

    with sink:
        log = sink.logger
        log.info("winpatch %s starting, logging to %s", __version__, sink.target)
        if loaded:
            log.info("Configuration loaded from %s", config_path)
        elif config_path:
            log.warning(
                "Configuration file %s not found, using defaults", config_path
            )
        else:
            log.info("No configuration file given, using defaults")

        try:
            check_preconditions(options, log)
        except PreconditionError as e:
            log.error("Precondition failed: %s", e.message)
            raise Exit(code=1)

        # Run failures are logged by the run itself, exit status stays 0
        agent = AgentFactory.create(AGENT)
        PatchRun(options, agent, log).execute()
