"""eth-migrate command line.

Run migrations against the development network:

.. code-block:: shell

    eth-migrate --network development

Deploy to mainnet, asking for confirmation after the forked rehearsal:

.. code-block:: shell

    export JSON_RPC_MAINNET=...
    eth-migrate --network mainnet --interactive
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from eth_migrate.config import DEFAULT_CONFIG_FILE, load_config
from eth_migrate.environment import Web3Environment
from eth_migrate.forge import compile_contracts
from eth_migrate.migrate import MigrateOptions, MigrationWorkflow
from eth_migrate.migrations import Migrator
from eth_migrate.utils import setup_console_logging

logger = logging.getLogger(__name__)

app = typer.Typer()


@app.command()
def migrate(
    network: str = typer.Option("development", envvar="MIGRATE_NETWORK", help="Network name in the configuration file"),
    config_file: Path = typer.Option(Path(DEFAULT_CONFIG_FILE), "--config", envvar="MIGRATE_CONFIG", help="Project configuration JSON file"),
    reset: bool = typer.Option(False, "--reset", help="Run all migrations from the beginning"),
    compile_all: bool = typer.Option(False, "--compile-all", help="Recompile all contracts"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run migrations against a local fork of the network only"),
    from_migration: Optional[int] = typer.Option(None, "-f", "--from", help="Migration number to run from"),
    interactive: bool = typer.Option(False, "--interactive", help="Manually authorize deployments after seeing a dry run"),
    log_level: str = typer.Option("info", envvar="LOG_LEVEL", help="Python logging level"),
):
    """Run migrations to deploy contracts."""
    setup_console_logging(default_log_level=log_level)

    config = load_config(config_file, network)

    if config.contracts_directory:
        compile_contracts(config.contracts_directory, config.contracts_build_directory, force=compile_all)

    options = MigrateOptions(
        reset=reset,
        dry_run=dry_run,
        from_migration=from_migration,
        interactive=interactive,
    )

    workflow = MigrationWorkflow(Web3Environment(), Migrator(), options)
    asyncio.run(workflow.run(config))
