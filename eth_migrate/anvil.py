"""Anvil forks for rehearsal deployments.

Dry runs deploy against a local fork of the target network, so a broken migration
fails before any transaction reaches the real chain.

- `Anvil <https://book.getfoundry.sh/reference/anvil/>`__ is the local node
  from the `Foundry project <https://github.com/foundry-rs/foundry>`__

- :py:func:`fork_network_anvil` forks a JSON-RPC endpoint at its latest block

- The fork runs with ``--auto-impersonate``, so the real deployer account
  sends the rehearsal transactions without its private key

Installing Anvil:

.. code-block:: shell

    curl -L https://foundry.paradigm.xyz | bash
    PATH=~/.foundry/bin:$PATH
    foundryup
"""

import logging
import os
import shutil
import time
import warnings
from dataclasses import dataclass
from subprocess import DEVNULL, PIPE
from typing import Any, Optional, Union

import psutil
import requests
from eth_typing import HexAddress
from web3 import AsyncWeb3, HTTPProvider, Web3

from eth_migrate.utils import find_free_port, get_url_domain, is_localhost_port_listening, shutdown_hard

logger = logging.getLogger(__name__)


class InvalidArgumentWarning(Warning):
    """Unknown Anvil command line setting."""


class RPCRequestError(Exception):
    """Anvil custom JSON-RPC method failed."""


#: Our argument names to Anvil command line flags
CLI_FLAGS = {
    "port": "--port",
    "fork": "--fork-url",
    "fork_block_number": "--fork-block-number",
    "gas_limit": "--gas-limit",
    "block_time": "--block-time",
    "auto_impersonate": "--auto-impersonate",
}


def build_command(cmd: str, **settings) -> list[str]:
    """Anvil command line for the given settings.

    Unset settings are left out. ``True`` is a bare flag.
    """
    cmd_list = cmd.split(" ")
    for key, value in settings.items():
        if value in (None, False, 0):
            continue
        flag = CLI_FLAGS.get(key)
        if flag is None:
            warnings.warn(f"Ignoring unknown anvil setting {key}={value}", InvalidArgumentWarning)
            continue
        cmd_list.append(flag)
        if value is not True:
            cmd_list.append(str(value))
    return cmd_list


def _launch(cmd_list: list[str]) -> psutil.Popen:
    logger.info("Launching anvil: %s", " ".join(cmd_list))
    env = os.environ.copy()
    env["RUST_BACKTRACE"] = "1"
    return psutil.Popen(cmd_list, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, env=env)


def _wait_ready(url: str, wait_seconds: float, request_timeout: float) -> Optional[tuple[int, int]]:
    """Poll until Anvil answers.

    :return:
        (chain id, block number), or ``None`` if Anvil never answered
    """
    # Short read timeout, a stuck fork would otherwise hang each request for long
    web3 = Web3(HTTPProvider(url, request_kwargs={"timeout": request_timeout}))
    deadline = time.monotonic() + wait_seconds
    while time.monotonic() < deadline:
        try:
            return web3.eth.chain_id, web3.eth.block_number
        except (requests.exceptions.ConnectionError, requests.exceptions.ReadTimeout) as e:
            logger.debug("Anvil at %s not ready: %s", url, e)
            time.sleep(0.1)
    return None


async def make_anvil_custom_rpc_request(web3: AsyncWeb3, method: str, args: Optional[list] = None) -> Any:
    """Call one of the Anvil specific JSON-RPC methods, like ``evm_mine``.

    :raise RPCRequestError:
        Anvil returned an error, or there is no connection
    """
    try:
        response = await web3.provider.make_request(method, list(args or []))
    except (AttributeError, OSError) as e:
        raise RPCRequestError(f"Could not call {method}, web3 is not connected") from e

    if "result" not in response:
        raise RPCRequestError(f"{method} failed: {response['error']['message']}")
    return response["result"]


async def mine(web3: AsyncWeb3, blocks: int = 1):
    for _ in range(blocks):
        await make_anvil_custom_rpc_request(web3, "evm_mine")


@dataclass
class AnvilLaunch:
    """A running Anvil process.

    Call :py:meth:`close` when done with it.
    """

    port: int

    cmd: list[str]

    json_rpc_url: str

    process: psutil.Popen

    #: Same as the forked chain
    chain_id: Optional[int] = None

    def close(self, log_level: Optional[int] = None, block=True, block_timeout=30) -> tuple[bytes, bytes]:
        """Kill Anvil.

        :param log_level:
            Dump Anvil output to logging at this level

        :return:
            stdout, stderr
        """
        output = shutdown_hard(self.process, log_level=log_level, block=block, block_timeout=block_timeout, check_port=self.port)
        logger.info("Anvil at %s shut down", self.json_rpc_url)
        return output


def launch_anvil(
    fork_url: Optional[str] = None,
    unlocked_addresses: Optional[list[Union[HexAddress, str]]] = None,
    cmd="anvil",
    port: int | tuple = (19999, 29999, 25),
    block_time=0,
    launch_wait_seconds=20.0,
    attempts=3,
    gas_limit: Optional[int] = None,
    test_request_timeout=3.0,
    fork_block_number: Optional[int] = None,
    auto_impersonate=True,
) -> AnvilLaunch:
    """Start Anvil on the background, as an empty chain or as a fork.

    Blocks until Anvil answers JSON-RPC.

    .. code-block:: python

        launch = fork_network_anvil(os.environ["JSON_RPC_MAINNET"])
        try:
            web3 = AsyncWeb3(AsyncHTTPProvider(launch.json_rpc_url))
            ...
        finally:
            launch.close(log_level=logging.ERROR)

    A leftover Anvil can be killed by its port:

    .. code-block:: shell

        kill -SIGKILL $(lsof -ti:19999)

    :param fork_url:
        JSON-RPC URL of the network to fork. Empty chain if not given.

    :param unlocked_addresses:
        Accounts to impersonate explicitly

    :param port:
        Port to bind, or (min port, max port, attempts) to pick a free one

    :param block_time:
        Seconds per block. Zero mines a block per transaction.

    :param attempts:
        Launch attempts. Anvil may die silently when the forked node throttles us.

    :param fork_block_number:
        Fork at an earlier block. Needs an archive node.

    :param auto_impersonate:
        Accept transactions from any sender
    """
    assert shutil.which(cmd.split(" ")[0]) is not None, f"{cmd} not in PATH {os.environ.get('PATH')}"
    assert not fork_block_number or fork_url, "fork_block_number needs fork_url"
    assert block_time >= 0, f"Bad block time {block_time}"

    if isinstance(port, tuple):
        port = find_free_port(*port)
    else:
        assert not is_localhost_port_listening(port), f"localhost port {port} occupied, a zombie Anvil? Kill it: kill -SIGKILL $(lsof -ti:{port})"

    url = f"http://localhost:{port}"
    cmd_list = build_command(
        cmd,
        port=port,
        fork=fork_url,
        fork_block_number=fork_block_number,
        gas_limit=gas_limit,
        block_time=block_time,
        auto_impersonate=auto_impersonate,
    )

    for attempt in range(1, attempts + 1):
        process = _launch(cmd_list)
        ready = _wait_ready(url, launch_wait_seconds, test_request_timeout)
        if ready is not None:
            break

        logger.error("Anvil at %s did not answer in %f seconds, attempt %d", url, launch_wait_seconds, attempt)
        stdout, stderr = shutdown_hard(process, log_level=logging.ERROR, check_port=port)
        # Anvil that printed something crashed for real, no point in retrying
        if stdout or attempt == attempts:
            raise AssertionError(f"Anvil did not start: {' '.join(cmd_list)}, stdout is {len(stdout)} bytes, stderr is {len(stderr)} bytes")

    chain_id, block_number = ready
    source = get_url_domain(fork_url) if fork_url else "empty chain"
    logger.info("Anvil forked %s at block %s, chain %d, JSON-RPC at %s", source, f"{block_number:,}", chain_id, url)

    if unlocked_addresses:
        web3 = Web3(HTTPProvider(url))
        for account in unlocked_addresses:
            web3.provider.make_request("anvil_impersonateAccount", [account])

    return AnvilLaunch(port, cmd_list, url, process, chain_id)


fork_network_anvil = launch_anvil
