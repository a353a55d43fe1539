"""Transaction monitor driving a handle from receipt polling."""

import pytest
from web3.exceptions import TransactionNotFound

from eth_migrate.confirmation import TransactionNotMined, monitor_transaction
from eth_migrate.events import DeploymentEvent, DeploymentState, EventEmitter
from eth_migrate.handle import Notification, TransactionHandle
from eth_migrate.router import CallContext, TransactionEventRouter, TransactionResult

from .conftest import EventRecorder, FakeChain, FakeEth, FakeWeb3

TX_HASH = "0x" + "ab" * 32


class ReceiptEth(FakeEth):
    """Receipt shows up after ``mined_after`` polls, never if ``None``."""

    def __init__(self, chain: FakeChain, mined_after=None):
        super().__init__(chain)
        self.mined_after = mined_after
        self.polls = 0

    async def get_transaction_receipt(self, tx_hash):
        self.polls += 1
        if self.mined_after is None or self.polls <= self.mined_after:
            raise TransactionNotFound(f"Transaction with hash {tx_hash} not found")
        return {"transactionHash": tx_hash, "blockNumber": self.chain.block_number, "status": 1, "logs": []}


def make_web3(mined_after=None) -> FakeWeb3:
    web3 = FakeWeb3(FakeChain())
    web3.eth = ReceiptEth(web3.chain, mined_after)
    return web3


def start(web3, timeout_blocks=0, watch_confirmations=False):
    handle = TransactionHandle("test")
    emitter = EventEmitter()
    recorder = EventRecorder(emitter, list(DeploymentEvent))
    context = CallContext("Token", timeout_blocks=timeout_blocks)
    TransactionEventRouter(handle, context, emitter, DeploymentState("Token")).attach()

    async def send():
        return TX_HASH

    task = handle.start(monitor_transaction(web3, handle, send, timeout_blocks=timeout_blocks, poll_delay=0, watch_confirmations=watch_confirmations))
    return handle, recorder, task


@pytest.mark.asyncio
async def test_receipt_resolves():
    handle, recorder, _ = start(make_web3(mined_after=3))

    result = await handle

    assert isinstance(result, TransactionResult)
    assert result.transaction_hash == TX_HASH
    assert recorder.names() == [DeploymentEvent.transaction_hash, DeploymentEvent.receipt]
    await handle.close()


@pytest.mark.asyncio
async def test_not_mined_default_timeout():
    handle, recorder, _ = start(make_web3())

    with pytest.raises(TransactionNotMined) as exc_info:
        await handle

    assert exc_info.value.blocks == 50
    assert "not mined within 50 blocks" in str(exc_info.value)
    assert len(recorder.payloads(DeploymentEvent.error)) == 1
    await handle.close()


@pytest.mark.asyncio
async def test_not_mined_longer_timeout():
    """The 50 block notice is squashed and the handle fails at the asked timeout."""
    handle, recorder, _ = start(make_web3(), timeout_blocks=70)

    with pytest.raises(TransactionNotMined) as exc_info:
        await handle

    assert exc_info.value.blocks == 70
    errors = recorder.payloads(DeploymentEvent.error)
    assert len(errors) == 1
    assert errors[0].blocks == 70
    await handle.close()


@pytest.mark.asyncio
async def test_send_failure_reaches_handle():
    web3 = make_web3()
    handle = TransactionHandle("test")
    notified = []
    handle.on(Notification.error, notified.append)

    async def send():
        raise ValueError("insufficient funds for gas * price + value")

    handle.start(monitor_transaction(web3, handle, send, poll_delay=0))

    with pytest.raises(ValueError, match="insufficient funds"):
        await handle
    assert len(notified) == 1
    await handle.close()


@pytest.mark.asyncio
async def test_native_confirmations_delivered():
    handle, recorder, task = start(make_web3(mined_after=0), watch_confirmations=True)

    await handle
    # Deliveries stop once the router detaches after the last confirmation
    await task

    nums = [c.num for c in recorder.payloads(DeploymentEvent.confirmation)]
    assert nums == list(range(25))
    await handle.close()
