"""Network environment: connect, detect and fork.

- :py:meth:`Web3Environment.detect` checks the node is on the configured network
  and picks the default deployer account

- :py:meth:`Web3Environment.fork` launches an Anvil fork of the network for rehearsals
"""

import asyncio
import contextlib
import dataclasses
import logging
from typing import AsyncIterator, Callable, Optional

from web3 import AsyncHTTPProvider, AsyncWeb3

from eth_migrate.anvil import AnvilLaunch, fork_network_anvil
from eth_migrate.config import MigrationConfig
from eth_migrate.utils import get_url_domain

logger = logging.getLogger(__name__)


class NetworkMismatch(Exception):
    """The node is connected to a different chain than configured."""


def create_web3(json_rpc_url: str) -> AsyncWeb3:
    """Connect to a JSON-RPC node."""
    return AsyncWeb3(AsyncHTTPProvider(json_rpc_url))


async def close_web3(web3: AsyncWeb3):
    """Release the HTTP session pool of a connection made by :py:func:`create_web3`.

    Other providers are left alone.
    """
    if isinstance(web3.provider, AsyncHTTPProvider):
        await web3.provider.disconnect()


class Web3Environment:
    """Detect and fork EVM networks over JSON-RPC.

    :param web3_factory:
        Create a web3 connection for a JSON-RPC URL. Tests replace this.

    :param anvil_launcher:
        Start a fork of a JSON-RPC URL
    """

    def __init__(
        self,
        web3_factory: Callable[[str], AsyncWeb3] = create_web3,
        anvil_launcher: Callable[..., AnvilLaunch] = fork_network_anvil,
    ):
        self.web3_factory = web3_factory
        self.anvil_launcher = anvil_launcher

    async def detect(self, config: MigrationConfig) -> MigrationConfig:
        """Resolve network id and the deployer account from the node.

        :return:
            Config with ``network_id`` and ``from_address`` filled in

        :raise NetworkMismatch:
            The node reports a different chain id than configured
        """
        web3 = self.web3_factory(config.json_rpc_url)
        try:
            chain_id = await web3.eth.chain_id

            if config.network_id is not None and config.network_id != chain_id:
                raise NetworkMismatch(f"The network id specified in the configuration ({config.network_id}) does not match the one returned by the network ({chain_id}) for network {config.network}")

            from_address = config.from_address
            if from_address is None:
                accounts = await web3.eth.accounts
                if accounts:
                    from_address = accounts[0]
        finally:
            await close_web3(web3)

        logger.info("Network %s at %s, chain id %d, deployer %s", config.network, get_url_domain(config.json_rpc_url), chain_id, from_address)
        return dataclasses.replace(config, network_id=chain_id, from_address=from_address)

    @contextlib.asynccontextmanager
    async def fork(self, config: MigrationConfig) -> AsyncIterator[str]:
        """Fork the network on a local Anvil for the duration of the block.

        The forked chain keeps the chain id of the parent.

        :return:
            JSON-RPC URL of the fork
        """
        launch = await asyncio.to_thread(self.anvil_launcher, config.json_rpc_url)
        try:
            yield launch.json_rpc_url
        finally:
            await asyncio.to_thread(launch.close, logging.DEBUG)
