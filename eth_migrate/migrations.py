"""Numbered migration scripts.

A project keeps its deployment steps as numbered Python files in the migrations directory:

.. code-block:: text

    migrations/
        1_initial.py
        2_deploy_token.py
        3_deploy_vault.py

Each file defines a coroutine function ``migrate``:

.. code-block:: python

    async def migrate(deployer: Deployer, network: str, accounts: list[str]):
        token = await deployer.deploy("Token", "Cow token", "COWS")
        await deployer.deploy_many([
            ("Vault", token.address),
            ("Oracle", DeploymentOptions(gas=500_000)),
        ])

The number of the last completed migration is recorded per network in
``migrations.json`` in the build directory. A rehearsal works on a copy of the build directory,
so it never changes the record of the real network.
"""

import asyncio
import importlib.util
import inspect
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from web3 import AsyncWeb3

from eth_migrate.artifact import ArtifactResolver, ContractArtifact
from eth_migrate.config import MigrationConfig
from eth_migrate.deployment import Deployment, DeploymentOptions
from eth_migrate.environment import close_web3, create_web3
from eth_migrate.events import EventEmitter
from eth_migrate.reporter import MigrationReporter

logger = logging.getLogger(__name__)


#: Completion record file in the build directory
MIGRATION_RECORD_FILE = "migrations.json"

MIGRATION_FILE_PATTERN = re.compile(r"^(\d+)_.*\.py$")


class MigrationScriptError(Exception):
    """Migration file does not define a ``migrate`` coroutine function."""


@dataclass
class Migration:
    number: int
    path: Path

    @property
    def file_name(self) -> str:
        return self.path.name

    def load(self) -> Callable:
        """Import the migration file and return its ``migrate`` function."""
        spec = importlib.util.spec_from_file_location(f"migration_{self.number}_{self.path.stem}", self.path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        migrate = getattr(module, "migrate", None)
        if not inspect.iscoroutinefunction(migrate):
            raise MigrationScriptError(f"{self.path} must define async def migrate(deployer, network, accounts)")
        return migrate


def find_migrations(migrations_directory: Path) -> list[Migration]:
    """List migration files sorted by their number."""
    assert migrations_directory.is_dir(), f"Migrations directory {migrations_directory} does not exist"
    migrations = []
    for path in migrations_directory.iterdir():
        match = MIGRATION_FILE_PATTERN.match(path.name)
        if match:
            migrations.append(Migration(int(match.group(1)), path))
    return sorted(migrations, key=lambda m: m.number)


def read_last_completed(build_directory: Path, network_id: Optional[int]) -> Optional[int]:
    path = build_directory / MIGRATION_RECORD_FILE
    if not path.exists():
        return None
    record = json.loads(path.read_text(encoding="utf-8"))
    return record.get(str(network_id))


def write_last_completed(build_directory: Path, network_id: Optional[int], number: int):
    path = build_directory / MIGRATION_RECORD_FILE
    record = json.loads(path.read_text(encoding="utf-8")) if path.exists() else {}
    record[str(network_id)] = number
    build_directory.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(record, indent=2), encoding="utf-8")


class Deployer:
    """What a migration script gets to deploy contracts with.

    Contracts can be given as :py:class:`eth_migrate.artifact.ContractArtifact`
    or by their artifact name.
    """

    def __init__(self, deployment: Deployment, resolver: ArtifactResolver, network: str):
        self.deployment = deployment
        self.resolver = resolver
        self.network = network

    @property
    def web3(self) -> AsyncWeb3:
        return self.resolver.web3

    @property
    def emitter(self) -> EventEmitter:
        return self.deployment.emitter

    def require(self, contract_name: str) -> ContractArtifact:
        return self.resolver.require(contract_name)

    def _resolve(self, contract: ContractArtifact | str) -> ContractArtifact:
        if isinstance(contract, str):
            return self.require(contract)
        return contract

    async def deploy(self, contract: ContractArtifact | str, *args, options: Optional[DeploymentOptions] = None) -> Any:
        return await self.deployment.deploy(self._resolve(contract), *args, options=options)

    async def deploy_many(self, entries: list) -> list:
        resolved = []
        for entry in entries:
            if isinstance(entry, (list, tuple)):
                resolved.append((self._resolve(entry[0]), *entry[1:]))
            else:
                resolved.append(self._resolve(entry))
        return await self.deployment.deploy_many(resolved)


class Migrator:
    """Run migration scripts against a network.

    :param web3_factory:
        Create a web3 connection for a JSON-RPC URL
    """

    def __init__(self, web3_factory: Callable[[str], AsyncWeb3] = create_web3):
        self.web3_factory = web3_factory

    async def needs_migrating(self, config: MigrationConfig, reset=False) -> bool:
        migrations = find_migrations(config.migrations_directory)
        if not migrations:
            return False
        if reset:
            return True
        last_completed = read_last_completed(config.contracts_build_directory, config.network_id)
        return last_completed is None or last_completed < migrations[-1].number

    async def run(self, config: MigrationConfig, reset=False):
        """Run migrations not completed on this network yet.

        :param reset:
            Run all migrations from the beginning
        """
        migrations = find_migrations(config.migrations_directory)
        last_completed = None if reset else read_last_completed(config.contracts_build_directory, config.network_id)
        if last_completed is not None:
            migrations = [m for m in migrations if m.number > last_completed]
        await self.run_migrations(config, migrations)

    async def run_from(self, number: int, config: MigrationConfig):
        """Run migrations starting from the given number, completed or not."""
        migrations = [m for m in find_migrations(config.migrations_directory) if m.number >= number]
        await self.run_migrations(config, migrations)

    async def accept_dry_run(self) -> bool:
        """Ask the operator to confirm the real run after a rehearsal."""
        confirm = await asyncio.to_thread(input, "Accept the dry run and run migrations on the live network? [y/n] ")
        return confirm.strip().lower() in ("y", "yes")

    async def run_migrations(self, config: MigrationConfig, migrations: list[Migration]):
        web3 = self.web3_factory(config.json_rpc_url)

        emitter = EventEmitter()
        reporter = MigrationReporter(config.confirmations)
        reporter.listen(emitter)

        deployment = Deployment(
            emitter,
            confirmations=config.confirmations,
            timeout_blocks=config.timeout_blocks,
            polling_interval=config.polling_interval,
        )
        resolver = ArtifactResolver(
            web3,
            config.contracts_build_directory,
            network_id=config.network_id,
            defaults=config.get_tx_defaults(),
            poll_delay=config.polling_interval,
        )
        deployer = Deployer(deployment, resolver, config.network)
        try:
            accounts = await web3.eth.accounts
            for migration in migrations:
                reporter.start_migration(migration.file_name, config.network, config.dry_run)
                migrate = migration.load()
                try:
                    await migrate(deployer, config.network, accounts)
                finally:
                    # Keep the addresses of whatever got deployed
                    resolver.save_all()
                write_last_completed(config.contracts_build_directory, config.network_id, migration.number)
                reporter.finish_migration(migration.file_name)
            reporter.summary()
        finally:
            reporter.close()
            await close_web3(web3)
