"""Contract artifacts backed by web3.py.

- :py:class:`ContractArtifact` implements :py:class:`eth_migrate.contract.ContractAbstraction`
  on top of an ``AsyncWeb3`` connection and a compiler artifact JSON file

- :py:class:`DeployedContract` is a deployed instance, which can send method call transactions

- :py:class:`ArtifactResolver` loads artifacts by contract name from a build directory
  and writes deployment addresses back

Artifact files are solc/Forge style JSON with keys ``contractName``, ``abi``, ``bytecode``
and ``networks``. ``bytecode`` can be a hex string or a Forge ``{"object": ...}`` dict.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from eth_typing import HexAddress
from eth_utils import to_checksum_address
from eth_utils.abi import event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3._utils.events import get_event_data
from web3.exceptions import ContractLogicError

from eth_migrate.confirmation import monitor_transaction
from eth_migrate.contract import ContractNotDeployed, NetworkNotFound
from eth_migrate.events import DeploymentState
from eth_migrate.handle import TransactionHandle
from eth_migrate.revert_reason import extract_revert_reason, fetch_transaction_revert_reason
from eth_migrate.router import CallContext, TransactionEventRouter, TransactionStatusError, is_failed_receipt, normalise_tx_hash

logger = logging.getLogger(__name__)


def read_artifact(path: Path) -> dict:
    """Read a compiler artifact JSON file."""
    with open(path, "rt", encoding="utf-8") as f:
        return json.load(f)


def get_artifact_bytecode(data: dict) -> str:
    bytecode = data.get("bytecode") or ""
    if type(bytecode) == dict:
        # Forge output, contains keys object, sourceMap, linkReferences
        bytecode = bytecode.get("object") or ""
    return bytecode


class DeployedContract:
    """A contract deployed at an address."""

    def __init__(self, artifact: "ContractArtifact", address: HexAddress | str, transaction_hash: Optional[str] = None):
        self.artifact = artifact
        self.address = to_checksum_address(address)
        self.transaction_hash = transaction_hash

        #: web3.py ``AsyncContract`` bound to the address
        self.contract = artifact.web3.eth.contract(address=self.address, abi=artifact.abi)

    def __repr__(self):
        return f"<{self.artifact.contract_name} at {self.address}>"

    async def call(self, method: str, *args, tx_params: Optional[dict] = None) -> Any:
        fn = self.contract.functions[method](*args)
        return await fn.call(tx_params or {})

    def send(self, method: str, *args, tx_params: Optional[dict] = None) -> TransactionHandle:
        """Send a method call transaction.

        Routed events are available on ``handle.events``.

        :return:
            Handle resolving to :py:class:`eth_migrate.router.TransactionResult`
        """
        artifact = self.artifact
        params = {**artifact.defaults(), **(tx_params or {})}

        handle = TransactionHandle(f"{artifact.contract_name}.{method}()")
        context = CallContext(
            contract_name=artifact.contract_name,
            params={"method": method, "args": args, **params},
            timeout_blocks=artifact.timeout_blocks,
            decode_logs=artifact.decode_logs,
        )
        state = DeploymentState(contract_name=artifact.contract_name)
        TransactionEventRouter(handle, context, handle.events, state).attach()

        async def _send():
            fn = self.contract.functions[method](*args)
            if "gas" in params:
                # With an explicit gas limit a reverting call gets mined, find out why beforehand
                try:
                    await fn.call(params)
                except ContractLogicError as e:
                    context.reason = extract_revert_reason(e)
            return await fn.transact(params)

        handle.start(
            monitor_transaction(
                artifact.web3,
                handle,
                _send,
                timeout_blocks=artifact.timeout_blocks,
                poll_delay=artifact.poll_delay,
                watch_confirmations=artifact.watch_confirmations,
            )
        )
        return handle


class ContractArtifact:
    """Deployable contract loaded from a compiler artifact.

    :param web3:
        ``AsyncWeb3`` connection

    :param data:
        Artifact JSON content

    :param network_id:
        Network the artifact points to. Detected from the node if not given.

    :param defaults:
        Default transaction parameters ``gas``, ``gasPrice``, ``from``
    """

    def __init__(
        self,
        web3: AsyncWeb3,
        data: dict,
        network_id: Optional[int] = None,
        defaults: Optional[dict] = None,
        path: Optional[Path] = None,
        poll_delay: float = 1.0,
    ):
        self.web3 = web3
        self.data = data
        self.path = path
        self.contract_name = data.get("contractName") or (path.stem if path else "<unnamed>")
        self.abi = data.get("abi", [])
        self.bytecode = get_artifact_bytecode(data)
        self.network_id = network_id
        self.poll_delay = poll_delay
        self.timeout_blocks = 0
        self.watch_confirmations = False
        self._defaults = {k: v for k, v in (defaults or {}).items() if v is not None}

        # Network id as a string -> {"address", "transactionHash"}, JSON keys
        self.networks: dict[str, dict] = data.setdefault("networks", {})

        self._factory = web3.eth.contract(abi=self.abi, bytecode=self.bytecode or None)
        self._event_abis = {HexBytes(event_abi_to_log_topic(abi)): abi for abi in self.abi if abi.get("type") == "event"}

    def __repr__(self):
        return f"<ContractArtifact {self.contract_name} network:{self.network_id} address:{self.address}>"

    @classmethod
    def from_file(cls, web3: AsyncWeb3, path: Path, **kwargs) -> "ContractArtifact":
        return cls(web3, read_artifact(path), path=path, **kwargs)

    def defaults(self) -> dict:
        return dict(self._defaults)

    def set_defaults(self, **params):
        self._defaults.update({k: v for k, v in params.items() if v is not None})

    def _network_record(self) -> Optional[dict]:
        if self.network_id is None:
            return None
        return self.networks.get(str(self.network_id))

    @property
    def address(self) -> Optional[str]:
        record = self._network_record()
        return record.get("address") if record else None

    @address.setter
    def address(self, value: str):
        assert self.network_id is not None, f"{self.contract_name}: network not detected"
        self.networks.setdefault(str(self.network_id), {})["address"] = value

    @property
    def transaction_hash(self) -> Optional[str]:
        record = self._network_record()
        return record.get("transactionHash") if record else None

    @transaction_hash.setter
    def transaction_hash(self, value: Optional[str]):
        assert self.network_id is not None, f"{self.contract_name}: network not detected"
        self.networks.setdefault(str(self.network_id), {})["transactionHash"] = value

    def is_deployed(self) -> bool:
        return bool(self.address)

    async def detect_network(self):
        """Point the artifact to the connected chain.

        :raise NetworkNotFound:
            The configured network id is neither the connected chain nor in the artifact
        """
        chain_id = await self.web3.eth.chain_id

        if self.network_id is None:
            self.network_id = chain_id

        if self.network_id != chain_id and str(self.network_id) not in self.networks:
            raise NetworkNotFound(f"{self.contract_name} has no network configuration for network id {self.network_id}, connected chain is {chain_id}")

        self.networks.setdefault(str(self.network_id), {})

    async def deployed(self) -> DeployedContract:
        if not self.is_deployed():
            raise ContractNotDeployed(f"{self.contract_name} has not been deployed to detected network (network id: {self.network_id})")
        return DeployedContract(self, self.address, self.transaction_hash)

    def _tx_params(self, tx_params: Optional[dict]) -> dict:
        return {**self._defaults, **(tx_params or {})}

    async def estimate_gas(self, *args, tx_params: Optional[dict] = None) -> int:
        params = self._tx_params(tx_params)
        params.pop("gas", None)
        return await self._factory.constructor(*args).estimate_gas(params)

    def new(self, *args, tx_params: Optional[dict] = None) -> TransactionHandle:
        """Send a contract creation transaction.

        The handle resolves to :py:class:`DeployedContract`, or is rejected with
        :py:class:`eth_migrate.router.TransactionStatusError` if the constructor reverts.
        """
        params = self._tx_params(tx_params)
        handle = TransactionHandle(f"{self.contract_name}.new()")

        async def _send():
            # Argument validation errors reach the caller through the handle
            constructor = self._factory.constructor(*args)
            return await constructor.transact(params)

        async def _settle(receipt: dict):
            tx_hash = normalise_tx_hash(receipt["transactionHash"])
            if is_failed_receipt(receipt):
                try:
                    reason = await fetch_transaction_revert_reason(self.web3, tx_hash)
                except Exception as e:
                    # Revert reason is optional
                    logger.warning("%s: could not fetch the revert reason of %s: %s", self.contract_name, tx_hash, e)
                    reason = None
                handle.reject(TransactionStatusError(params, tx_hash, receipt, reason))
            else:
                handle.resolve(DeployedContract(self, receipt["contractAddress"], tx_hash))

        handle.start(
            monitor_transaction(
                self.web3,
                handle,
                _send,
                timeout_blocks=self.timeout_blocks,
                poll_delay=self.poll_delay,
                on_receipt=_settle,
                watch_confirmations=self.watch_confirmations,
            )
        )
        return handle

    def decode_logs(self, logs: list) -> list:
        """Decode logs of the events in our ABI, skip the rest."""
        decoded = []
        for log in logs:
            topics = log.get("topics") or []
            if not topics:
                continue
            abi = self._event_abis.get(HexBytes(topics[0]))
            if abi is None:
                continue
            decoded.append(get_event_data(self.web3.codec, abi, log))
        return decoded


class ArtifactResolver:
    """Load contract artifacts from a build directory.

    - Artifacts are cached, so every migration sees the same deployment records

    - :py:meth:`save` writes the ``networks`` records back to the artifact file

    :param build_directory:
        Directory with ``<ContractName>.json`` files, searched recursively
    """

    def __init__(self, web3: AsyncWeb3, build_directory: Path, network_id: Optional[int] = None, defaults: Optional[dict] = None, poll_delay: float = 1.0):
        assert isinstance(build_directory, Path), f"Got {type(build_directory)}"
        self.web3 = web3
        self.build_directory = build_directory
        self.network_id = network_id
        self.defaults = defaults
        self.poll_delay = poll_delay
        self.artifacts: dict[str, ContractArtifact] = {}

    def find_artifact_file(self, contract_name: str) -> Path:
        path = self.build_directory / f"{contract_name}.json"
        if path.exists():
            return path
        # Forge layout: out/Name.sol/Name.json
        for candidate in sorted(self.build_directory.rglob(f"{contract_name}.json")):
            return candidate
        raise FileNotFoundError(f"Could not find artifact for {contract_name} in {self.build_directory}")

    def require(self, contract_name: str) -> ContractArtifact:
        if contract_name not in self.artifacts:
            path = self.find_artifact_file(contract_name)
            self.artifacts[contract_name] = ContractArtifact.from_file(
                self.web3,
                path,
                network_id=self.network_id,
                defaults=self.defaults,
                poll_delay=self.poll_delay,
            )
            logger.debug("Loaded artifact %s from %s", contract_name, path)
        return self.artifacts[contract_name]

    def save(self, artifact: ContractArtifact):
        assert artifact.path, f"{artifact} was not loaded from a file"
        with open(artifact.path, "wt", encoding="utf-8") as f:
            json.dump(artifact.data, f, indent=2)

    def save_all(self):
        for artifact in self.artifacts.values():
            self.save(artifact)
