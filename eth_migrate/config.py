"""Project configuration.

A project is described by a JSON file, by default ``migrate.json`` in the working directory:

.. code-block:: json

    {
      "contracts_build_directory": "build/contracts",
      "migrations_directory": "migrations",
      "networks": {
        "development": {"json_rpc_url": "http://localhost:8545", "network_id": "*"},
        "ropsten": {
          "network_id": "*",
          "gas": 4700000,
          "gas_price": 20000000000,
          "confirmations": 2,
          "production": true,
          "timeout_blocks": 70
        }
      }
    }

- Relative paths are relative to the configuration file

- If a network has no ``json_rpc_url``, it is read from ``JSON_RPC_<NETWORK NAME>``
  environment variable, so API keys stay out of the repository

- ``network_id`` ``"*"`` accepts whatever chain the node is connected to
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from eth_migrate.utils import get_url_domain

logger = logging.getLogger(__name__)


#: Default configuration file name
DEFAULT_CONFIG_FILE = "migrate.json"


@dataclass(frozen=True)
class MigrationConfig:
    """Resolved configuration of one network.

    Redirect with :py:func:`dataclasses.replace`, e.g. for a rehearsal against a fork.
    """

    #: Network name as it appears in the configuration file
    network: str

    json_rpc_url: str

    #: Build artifact directory
    contracts_build_directory: Path

    #: Where numbered migration scripts live
    migrations_directory: Path

    #: Solidity sources, compiled before migrating if set
    contracts_directory: Optional[Path] = None

    #: Expected chain id. ``None`` accepts the connected chain.
    network_id: Optional[int] = None

    #: Force the rehearsal even if the network id is not known as a public network
    production: bool = False

    #: Blocks to wait after each deployment
    confirmations: int = 0

    #: Blocks to wait for a deployment transaction, zero for the client default
    timeout_blocks: int = 0

    gas: Optional[int] = None

    gas_price: Optional[int] = None

    from_address: Optional[str] = None

    #: Seconds between block number polls
    polling_interval: float = 1.0

    #: This configuration points to a forked rehearsal chain
    dry_run: bool = False

    def get_tx_defaults(self) -> dict:
        """Default transaction parameters for contract artifacts."""
        params = {
            "gas": self.gas,
            "gasPrice": self.gas_price,
            "from": self.from_address,
        }
        return {k: v for k, v in params.items() if v is not None}

    def redirect(self, json_rpc_url: str, contracts_build_directory: Path) -> "MigrationConfig":
        """Point to a rehearsal fork and a disposable build directory."""
        return replace(self, json_rpc_url=json_rpc_url, contracts_build_directory=contracts_build_directory, dry_run=True)


def parse_network_id(value) -> Optional[int]:
    """Parse network id from the configuration.

    ``"*"`` and missing mean any network.
    """
    if value in (None, "*"):
        return None
    return int(value)


def get_json_rpc_url_env_name(network: str) -> str:
    return "JSON_RPC_" + network.upper().replace("-", "_")


def load_config(path: Path, network: str) -> MigrationConfig:
    """Load the configuration file and resolve one network.

    :param path:
        JSON configuration file

    :param network:
        Network name under ``networks``

    :raise ValueError:
        Unknown network, or no JSON-RPC URL configured
    """
    assert isinstance(path, Path), f"Got {type(path)}"

    with open(path, "rt", encoding="utf-8") as f:
        data = json.load(f)

    base = path.parent.absolute()
    networks = data.get("networks", {})

    if network not in networks:
        raise ValueError(f"Network {network} not configured in {path}, we have: {', '.join(networks.keys()) or 'no networks'}")

    settings = networks[network]

    json_rpc_url = settings.get("json_rpc_url")
    if not json_rpc_url:
        env_name = get_json_rpc_url_env_name(network)
        json_rpc_url = os.environ.get(env_name)
        if not json_rpc_url:
            raise ValueError(f"Network {network} has no json_rpc_url in {path} and {env_name} environment variable is not set")

    contracts_directory = data.get("contracts_directory")

    config = MigrationConfig(
        network=network,
        json_rpc_url=json_rpc_url,
        contracts_build_directory=base / data.get("contracts_build_directory", "build/contracts"),
        migrations_directory=base / data.get("migrations_directory", "migrations"),
        contracts_directory=base / contracts_directory if contracts_directory else None,
        network_id=parse_network_id(settings.get("network_id")),
        production=bool(settings.get("production", False)),
        confirmations=int(settings.get("confirmations", 0)),
        timeout_blocks=int(settings.get("timeout_blocks", 0)),
        gas=settings.get("gas"),
        gas_price=settings.get("gas_price"),
        from_address=settings.get("from"),
        polling_interval=float(settings.get("polling_interval", 1.0)),
    )

    logger.debug("Loaded network %s from %s, JSON-RPC at %s", network, path, get_url_domain(json_rpc_url))
    return config
