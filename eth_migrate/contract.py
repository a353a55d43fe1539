"""Contract abstraction interface.

The deployment orchestrator does not talk to a JSON-RPC node directly.
It consumes this narrow interface, implemented by
:py:class:`eth_migrate.artifact.ContractArtifact` for web3.py.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from eth_migrate.handle import TransactionHandle


class NoBytecode(Exception):
    """Contract has no bytecode.

    It is abstract, an interface, or its libraries were not linked.
    """

    def __init__(self, contract_name: str):
        super().__init__(f"{contract_name} contract has no bytecode, it is abstract or unlinked and cannot be deployed")
        self.contract_name = contract_name


class NetworkNotFound(Exception):
    """Contract artifact has no entry for the network we are connected to."""


class ContractNotDeployed(Exception):
    """Asked for a deployed instance of a contract that is not deployed on the current network."""


def has_bytecode(bytecode: Optional[str | bytes]) -> bool:
    """Empty bytecode is ``None``, ``""``, ``"0x"`` or ``b""``."""
    if not bytecode:
        return False
    if isinstance(bytecode, str):
        return bytecode not in ("0x", "0X")
    return True


@runtime_checkable
class DeployedInstance(Protocol):
    """A contract deployed at an address."""

    address: str
    transaction_hash: Optional[str]


@runtime_checkable
class ContractAbstraction(Protocol):
    """What the deployment orchestrator needs from a contract artifact."""

    contract_name: str

    bytecode: str

    #: Network id the artifact currently points to
    network_id: Optional[int]

    #: Network id -> deployment record
    networks: dict

    #: Blocks to wait before giving up on a transaction, 0 for client default
    timeout_blocks: int

    #: Deliver native confirmation notifications after the receipt
    watch_confirmations: bool

    #: ``AsyncWeb3`` compatible connection
    web3: Any

    address: Optional[str]

    transaction_hash: Optional[str]

    def defaults(self) -> dict:
        """Default transaction parameters: ``gas``, ``gasPrice``, ``from``."""

    def is_deployed(self) -> bool:
        """Is there a deployment on the current network."""

    async def detect_network(self) -> None:
        """Match the artifact to the connected network.

        :raise NetworkNotFound:
            The configured network is not known to the artifact
        """

    async def deployed(self) -> DeployedInstance:
        """Instance of the existing deployment on the current network."""

    def new(self, *args, tx_params: Optional[dict] = None) -> TransactionHandle:
        """Submit a deployment transaction."""

    async def estimate_gas(self, *args, tx_params: Optional[dict] = None) -> int:
        """Estimate gas of a deployment with the same arguments as :py:meth:`new`."""

    def decode_logs(self, logs: list) -> list:
        """Decode raw receipt logs into events."""
