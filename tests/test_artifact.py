"""web3.py contract artifacts against eth-tester.

The contracts are hand assembled EVM bytecode, so no compiler is needed.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from eth_utils import keccak

eth_tester = pytest.importorskip("eth_tester")

from web3 import AsyncWeb3
from web3.providers.eth_tester import AsyncEthereumTesterProvider

from eth_migrate.artifact import ArtifactResolver, ContractArtifact, DeployedContract, get_artifact_bytecode
from eth_migrate.contract import ContractAbstraction, ContractNotDeployed, NetworkNotFound
from eth_migrate.deployment import ContractDeploymentFailed, Deployment, DeploymentOptions
from eth_migrate.events import DeploymentEvent, EventEmitter
from eth_migrate.router import TransactionResult, TransactionStatusError

from .conftest import EventRecorder


def assemble(runtime: str) -> str:
    """Init code returning the given runtime code."""
    size = len(runtime) // 2
    assert size < 256
    # PUSH1 size DUP1 PUSH1 11 PUSH1 0 CODECOPY PUSH1 0 RETURN
    return "0x60" + f"{size:02x}" + "80600b6000396000f3" + runtime


#: Runtime emitting Poked() event on any call
POKED_TOPIC = keccak(text="Poked()")
POKER_RUNTIME = "7f" + POKED_TOPIC.hex() + "60006000a100"

#: Runtime reverting on any call
REVERT_RUNTIME = "60006000fd"

POKER_ABI = [
    {"type": "function", "name": "poke", "inputs": [], "outputs": [], "stateMutability": "nonpayable"},
    {"type": "event", "name": "Poked", "inputs": [], "anonymous": False},
]

MINTED_POKER_ABI = POKER_ABI + [
    {"type": "constructor", "inputs": [{"name": "supply", "type": "uint256"}], "stateMutability": "nonpayable"},
]


@pytest.fixture()
def web3() -> AsyncWeb3:
    return AsyncWeb3(AsyncEthereumTesterProvider())


@pytest_asyncio.fixture()
async def deployer(web3) -> str:
    accounts = await web3.eth.accounts
    return accounts[0]


@pytest_asyncio.fixture()
async def poker(web3, deployer) -> ContractArtifact:
    data = {"contractName": "Poker", "abi": POKER_ABI, "bytecode": assemble(POKER_RUNTIME)}
    return ContractArtifact(web3, data, defaults={"from": deployer}, poll_delay=0.01)


@pytest.fixture()
def build_directory(tmp_path):
    for name, runtime in (("Poker", POKER_RUNTIME), ("Reverter", REVERT_RUNTIME)):
        data = {"contractName": name, "abi": POKER_ABI, "bytecode": assemble(runtime), "networks": {}}
        (tmp_path / f"{name}.json").write_text(json.dumps(data))
    return tmp_path


def test_forge_bytecode_format():
    assert get_artifact_bytecode({"bytecode": {"object": "0x6001", "sourceMap": ""}}) == "0x6001"
    assert get_artifact_bytecode({"bytecode": "0x6001"}) == "0x6001"
    assert get_artifact_bytecode({}) == ""


@pytest.mark.asyncio
async def test_artifact_is_contract_abstraction(poker):
    assert isinstance(poker, ContractAbstraction)


@pytest.mark.asyncio
async def test_detect_network(web3, poker):
    chain_id = await web3.eth.chain_id

    await poker.detect_network()

    assert poker.network_id == chain_id
    assert str(chain_id) in poker.networks
    assert not poker.is_deployed()

    with pytest.raises(ContractNotDeployed):
        await poker.deployed()


@pytest.mark.asyncio
async def test_detect_unknown_network(web3, deployer):
    data = {"contractName": "Poker", "abi": POKER_ABI, "bytecode": assemble(POKER_RUNTIME)}
    artifact = ContractArtifact(web3, data, network_id=999_999)
    with pytest.raises(NetworkNotFound):
        await artifact.detect_network()


@pytest.mark.asyncio
async def test_deploy_and_send(web3, poker):
    """Deploy, then call a method through the routed transaction handle."""
    emitter = EventEmitter()
    recorder = EventRecorder(emitter, list(DeploymentEvent))
    deployment = Deployment(emitter, polling_interval=0.01)

    instance = await deployment.deploy(poker)

    assert isinstance(instance, DeployedContract)
    assert poker.address == instance.address
    assert poker.transaction_hash == instance.transaction_hash
    assert instance.transaction_hash.startswith("0x")
    assert await web3.eth.get_code(instance.address) == bytes.fromhex(POKER_RUNTIME)

    post_deploy = recorder.payloads(DeploymentEvent.post_deploy)[0]
    assert post_deploy.receipt["status"] == 1
    assert recorder.payloads(DeploymentEvent.pre_deploy)[0].estimate > 0

    handle = instance.send("poke")
    call_recorder = EventRecorder(handle.events, [DeploymentEvent.transaction_hash, DeploymentEvent.receipt])
    result = await handle

    assert isinstance(result, TransactionResult)
    assert result.receipt["status"] == 1
    assert len(result.logs) == 1
    assert result.logs[0]["event"] == "Poked"
    assert call_recorder.names() == [DeploymentEvent.transaction_hash, DeploymentEvent.receipt]
    await handle.close()


@pytest.mark.asyncio
async def test_reverting_call(web3, poker, deployer):
    """Method call reverts surface as errors of the handle."""
    data = {"contractName": "Reverter", "abi": POKER_ABI, "bytecode": assemble(REVERT_RUNTIME)}
    reverter = ContractArtifact(web3, data, defaults={"from": deployer}, poll_delay=0.01)
    instance = await Deployment(polling_interval=0.01).deploy(reverter)

    handle = instance.send("poke", tx_params={"gas": 100_000})
    with pytest.raises(Exception):
        await handle
    await handle.close()


@pytest.mark.asyncio
async def test_reverting_constructor(web3, deployer):
    data = {"contractName": "Broken", "abi": [], "bytecode": "0x60006000fd"}
    broken = ContractArtifact(web3, data, defaults={"from": deployer}, poll_delay=0.01)

    emitter = EventEmitter()
    recorder = EventRecorder(emitter, [DeploymentEvent.pre_deploy, DeploymentEvent.deploy_failed, DeploymentEvent.post_deploy])

    with pytest.raises(ContractDeploymentFailed):
        await Deployment(emitter, polling_interval=0.01).deploy(broken, options=DeploymentOptions(gas=100_000))

    assert recorder.payloads(DeploymentEvent.pre_deploy)[0].estimate_error is not None
    assert len(recorder.payloads(DeploymentEvent.deploy_failed)) == 1
    assert recorder.payloads(DeploymentEvent.post_deploy) == []
    assert not broken.is_deployed()


@pytest.fixture()
def minted_poker_data() -> dict:
    """Poker with a typed constructor argument, ignored by the init code."""
    return {"contractName": "MintedPoker", "abi": MINTED_POKER_ABI, "bytecode": assemble(POKER_RUNTIME)}


@pytest.mark.asyncio
async def test_constructor_arguments(web3, deployer, minted_poker_data):
    poker = ContractArtifact(web3, minted_poker_data, defaults={"from": deployer}, poll_delay=0.01)

    instance = await Deployment(polling_interval=0.01).deploy(poker, 1_000)

    assert await web3.eth.get_code(instance.address) == bytes.fromhex(POKER_RUNTIME)


@pytest.mark.asyncio
@pytest.mark.parametrize("args", [("not a number",), (), (1, 2)])
async def test_constructor_argument_validation(web3, deployer, minted_poker_data, args):
    """Bad constructor arguments fail the deployment with the web3.py message."""
    poker = ContractArtifact(web3, minted_poker_data, defaults={"from": deployer}, poll_delay=0.01)

    emitter = EventEmitter()
    recorder = EventRecorder(emitter, [DeploymentEvent.transaction_hash, DeploymentEvent.deploy_failed])

    with pytest.raises(ContractDeploymentFailed) as exc_info:
        await Deployment(emitter, polling_interval=0.01).deploy(poker, *args)

    cause = exc_info.value.__cause__
    assert isinstance(cause, TypeError)
    assert str(cause) in str(exc_info.value)
    assert recorder.payloads(DeploymentEvent.transaction_hash) == []
    assert len(recorder.payloads(DeploymentEvent.deploy_failed)) == 1
    assert not poker.is_deployed()


def fail_receipts(web3):
    """Make every mined receipt report a failed status."""
    get_receipt = web3.eth.get_transaction_receipt

    async def _failed_receipt(tx_hash):
        receipt = dict(await get_receipt(tx_hash))
        receipt["status"] = 0
        return receipt

    return patch.object(web3.eth, "get_transaction_receipt", _failed_receipt)


@pytest.mark.asyncio
async def test_failed_status_carries_reason(web3, poker):
    with fail_receipts(web3), patch("eth_migrate.artifact.fetch_transaction_revert_reason", AsyncMock(return_value="Not allowed")):
        with pytest.raises(ContractDeploymentFailed) as exc_info:
            await Deployment(polling_interval=0.01).deploy(poker)

    cause = exc_info.value.__cause__
    assert isinstance(cause, TransactionStatusError)
    assert cause.reason == "Not allowed"
    assert cause.receipt["status"] == 0
    assert cause.params["from"] == poker.defaults()["from"]
    assert exc_info.value.tx_hash == cause.transaction_hash
    assert not poker.is_deployed()


@pytest.mark.asyncio
async def test_failed_status_without_reason(web3, poker):
    """A failing revert reason lookup still fails the deployment with the status error."""
    lookup = AsyncMock(side_effect=ConnectionError("Connection reset by peer"))
    with fail_receipts(web3), patch("eth_migrate.artifact.fetch_transaction_revert_reason", lookup):
        with pytest.raises(ContractDeploymentFailed) as exc_info:
            await Deployment(polling_interval=0.01).deploy(poker)

    cause = exc_info.value.__cause__
    assert isinstance(cause, TransactionStatusError)
    assert cause.reason is None
    assert cause.transaction_hash.startswith("0x")
    assert cause.receipt["status"] == 0
    lookup.assert_awaited_once()


@pytest.mark.asyncio
async def test_resolver_saves_deployments(web3, deployer, build_directory):
    resolver = ArtifactResolver(web3, build_directory, defaults={"from": deployer}, poll_delay=0.01)

    poker = resolver.require("Poker")
    assert resolver.require("Poker") is poker

    instance = await Deployment(polling_interval=0.01).deploy(poker)
    resolver.save(poker)

    saved = json.loads((build_directory / "Poker.json").read_text())
    record = saved["networks"][str(poker.network_id)]
    assert record["address"] == instance.address
    assert record["transactionHash"] == instance.transaction_hash

    # A fresh resolver sees the deployment
    reloaded = ArtifactResolver(web3, build_directory, network_id=poker.network_id).require("Poker")
    assert reloaded.is_deployed()
    assert (await reloaded.deployed()).address == instance.address


def test_resolver_missing_artifact(web3, tmp_path):
    with pytest.raises(FileNotFoundError):
        ArtifactResolver(web3, tmp_path).require("Nope")


def test_resolver_forge_layout(web3, tmp_path):
    (tmp_path / "Poker.sol").mkdir()
    data = {"abi": POKER_ABI, "bytecode": {"object": assemble(POKER_RUNTIME)}}
    (tmp_path / "Poker.sol" / "Poker.json").write_text(json.dumps(data))

    artifact = ArtifactResolver(web3, tmp_path).require("Poker")
    assert artifact.contract_name == "Poker"
    assert artifact.bytecode == assemble(POKER_RUNTIME)
