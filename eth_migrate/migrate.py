"""Migration safety workflow.

Decide how migrations are run against a network:

- Development networks: run migrations once

- ``dry_run`` option: rehearse the migrations on a local fork of the network
  in a disposable copy of the build directory, nothing else

- Production networks: always rehearse first. If the rehearsal succeeds, and
  the operator accepts it in the interactive mode, run the migrations for real.
  A failed rehearsal aborts before any transaction reaches the real network.

A network is production if its chain id is one of the well known public networks
in :py:data:`PRODUCTION_NETWORK_IDS`, or it is flagged ``production`` in the configuration.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from eth_migrate.config import MigrationConfig
from eth_migrate.environment import Web3Environment
from eth_migrate.migrations import Migrator

logger = logging.getLogger(__name__)


#: Chain ids of public networks where a mistake costs real money
PRODUCTION_NETWORK_IDS = {
    1,  # Mainnet (ETH & ETC)
    2,  # Morden (ETC)
    3,  # Ropsten
    4,  # Rinkeby
    8,  # Ubiq
    42,  # Kovan (Parity)
    77,  # Sokol
    99,  # Core
    7762959,  # Musiccoin
    61717561,  # Aquachain
}


#: Prefix of the disposable build directory of a rehearsal
DRY_RUN_DIRECTORY_PREFIX = "migrate-dry-run-"


@dataclass
class MigrateOptions:
    """Command line options of a migration run."""

    #: Run all migrations from the start
    reset: bool = False

    #: Rehearse on a fork only
    dry_run: bool = False

    #: Run from this migration number, completed or not
    from_migration: Optional[int] = None

    #: Ask before the real run after a rehearsal
    interactive: bool = False


def is_production_network(config: MigrationConfig) -> bool:
    return config.network_id in PRODUCTION_NETWORK_IDS or config.production


class MigrationWorkflow:
    """Run migrations with a rehearsal in front of production networks.

    :param environment:
        Detects networks and launches forks

    :param migrator:
        Runs the migration scripts
    """

    def __init__(self, environment: Web3Environment, migrator: Migrator, options: Optional[MigrateOptions] = None):
        self.environment = environment
        self.migrator = migrator
        self.options = options or MigrateOptions()

    async def run(self, config: MigrationConfig):
        """Run the workflow.

        :raise Exception:
            Whatever failed in the rehearsal or the real run
        """
        config = await self.environment.detect(config)

        if self.options.dry_run:
            logger.info("Dry run of network %s, no transactions are sent to the network", config.network)
            await self.rehearse(config)
            return

        if is_production_network(config):
            logger.info("Network %s (chain %s) is a production network, rehearsing on a fork first", config.network, config.network_id)
            await self.rehearse(config)
            await self.run_after_rehearsal(config)
            return

        await self.run_migrations(config)

    async def rehearse(self, config: MigrationConfig):
        """Run migrations on a fork, against a copy of the build directory.

        The fork and the copy are gone when this returns or raises.
        """
        async with self.environment.fork(config) as fork_url:
            with tempfile.TemporaryDirectory(prefix=DRY_RUN_DIRECTORY_PREFIX) as temporary_directory:
                build_directory = Path(temporary_directory)
                if config.contracts_build_directory.exists():
                    shutil.copytree(config.contracts_build_directory, build_directory, dirs_exist_ok=True)
                logger.info("Rehearsing in %s", build_directory)
                await self.run_migrations(config.redirect(fork_url, build_directory))

    async def run_after_rehearsal(self, config: MigrationConfig):
        accept = True
        if self.options.interactive:
            accept = await self.migrator.accept_dry_run()

        if not accept:
            logger.info("Dry run not accepted, network %s untouched", config.network)
            return

        # The rehearsal may have taken a while, connect again
        config = await self.environment.detect(config)
        await self.run_migrations(config)

    async def run_migrations(self, config: MigrationConfig):
        if self.options.from_migration is not None:
            await self.migrator.run_from(self.options.from_migration, config)
        elif await self.migrator.needs_migrating(config, reset=self.options.reset):
            await self.migrator.run(config, reset=self.options.reset)
        else:
            logger.info("Network up to date.")
