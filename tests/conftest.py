"""Shared fixtures.

An in-memory chain and contract abstraction, so the deployment orchestration
can be tested without a node.
"""

import asyncio
import itertools
import secrets
from typing import Optional

import pytest
from web3 import AsyncHTTPProvider

from eth_migrate.contract import NetworkNotFound
from eth_migrate.events import EventEmitter
from eth_migrate.handle import Notification, TransactionHandle
from eth_migrate.router import TransactionStatusError


class FakeChain:
    """Block counter.

    With ``auto_mine`` every block number read mines a new block.
    """

    def __init__(self, chain_id=1337, block_number=100, auto_mine=True):
        self.chain_id = chain_id
        self.block_number = block_number
        self.auto_mine = auto_mine
        self.accounts = ["0x" + "11" * 20, "0x" + "22" * 20]
        self.block_number_reads = 0

    async def read_block_number(self) -> int:
        self.block_number_reads += 1
        if self.auto_mine:
            self.block_number += 1
        return self.block_number


class FakeEth:
    def __init__(self, chain: FakeChain):
        self.chain = chain

    @property
    def block_number(self):
        return self.chain.read_block_number()

    @property
    def chain_id(self):
        return self._value(self.chain.chain_id)

    @property
    def accounts(self):
        return self._value(self.chain.accounts)

    async def _value(self, value):
        return value

    async def get_block(self, identifier):
        return {"number": self.chain.block_number, "gasLimit": 30_000_000}


class FakeProvider(AsyncHTTPProvider):
    """HTTP provider that never connects, records the disconnect."""

    def __init__(self):
        super().__init__("http://localhost:8545")
        self.disconnected = False

    async def disconnect(self):
        self.disconnected = True


class FakeWeb3:
    def __init__(self, chain: FakeChain):
        self.chain = chain
        self.eth = FakeEth(chain)
        self.provider = FakeProvider()


class FakeInstance:
    def __init__(self, address: str, transaction_hash: Optional[str]):
        self.address = address
        self.transaction_hash = transaction_hash

    def __repr__(self):
        return f"<FakeInstance {self.address}>"


_addresses = itertools.count(1)


def make_address() -> str:
    return "0x" + f"{next(_addresses):040x}"


class FakeContract:
    """Contract abstraction driving its handle from a script.

    :param outcome:
        ``success``, ``revert``, ``error`` or ``hang``
    """

    def __init__(
        self,
        web3: FakeWeb3,
        contract_name="Token",
        bytecode="0x6001",
        network_id: Optional[int] = None,
        defaults: Optional[dict] = None,
        outcome="success",
        error: Optional[Exception] = None,
        estimate_error: Optional[Exception] = None,
        receipt_delay=0.0,
        confirmations_delivered=0,
    ):
        self.web3 = web3
        self.contract_name = contract_name
        self.bytecode = bytecode
        self.network_id = network_id
        self.networks: dict[str, dict] = {}
        self.timeout_blocks = 0
        self.watch_confirmations = False
        self._defaults = defaults or {}
        self.outcome = outcome
        self.error = error
        self.estimate_error = estimate_error
        self.receipt_delay = receipt_delay
        self.confirmations_delivered = confirmations_delivered

        self.address = None
        self.transaction_hash = None

        #: (args, tx_params) of each new() call
        self.new_calls = []
        self.handles: list[TransactionHandle] = []

    def defaults(self) -> dict:
        return dict(self._defaults)

    def is_deployed(self) -> bool:
        return bool(self.address)

    async def detect_network(self):
        if self.network_id is None:
            self.network_id = self.web3.chain.chain_id
        if self.network_id != self.web3.chain.chain_id and str(self.network_id) not in self.networks:
            raise NetworkNotFound(f"{self.contract_name} has no network {self.network_id}")

    async def deployed(self):
        return FakeInstance(self.address, self.transaction_hash)

    async def estimate_gas(self, *args, tx_params=None) -> int:
        if self.estimate_error:
            raise self.estimate_error
        return 123_456

    def decode_logs(self, logs: list) -> list:
        return list(logs)

    def new(self, *args, tx_params=None) -> TransactionHandle:
        self.new_calls.append((args, tx_params))
        handle = TransactionHandle(f"{self.contract_name}.new()")
        self.handles.append(handle)
        handle.start(self._drive(handle, tx_params or {}))
        return handle

    async def _drive(self, handle: TransactionHandle, params: dict):
        tx_hash = "0x" + secrets.token_hex(32)
        await asyncio.sleep(0)

        if self.outcome == "error":
            await handle.notify(Notification.error, self.error)
            handle.reject(self.error)
            return

        await handle.notify(Notification.transaction_hash, tx_hash)

        if self.outcome == "hang":
            await asyncio.sleep(3600)

        await asyncio.sleep(self.receipt_delay)

        chain = self.web3.chain
        receipt = {
            "transactionHash": tx_hash,
            "blockNumber": chain.block_number,
            "gasUsed": 100_000,
            "contractAddress": make_address(),
            "status": 1 if self.outcome == "success" else 0,
            "logs": [],
        }
        await handle.notify(Notification.receipt, receipt)

        if self.outcome == "revert":
            handle.reject(TransactionStatusError(params, tx_hash, receipt, "Not allowed"))
            return

        handle.resolve(FakeInstance(receipt["contractAddress"], tx_hash))

        for num in range(self.confirmations_delivered):
            await asyncio.sleep(0)
            await handle.notify(Notification.confirmation, num, receipt)


class EventRecorder:
    """Record every event an emitter emits, in order."""

    def __init__(self, emitter: EventEmitter, events):
        self.events = []
        for event in events:
            emitter.on(event, self._make_listener(event))

    def _make_listener(self, event):
        def _listener(*args):
            self.events.append((event, args[0] if len(args) == 1 else args))

        return _listener

    def names(self) -> list:
        return [e for e, _ in self.events]

    def payloads(self, event) -> list:
        return [p for e, p in self.events if e == event]


@pytest.fixture()
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture()
def fake_web3(chain) -> FakeWeb3:
    return FakeWeb3(chain)


@pytest.fixture()
def make_contract(fake_web3):
    """Create fake contracts bound to the fake chain."""

    def _make(**kwargs) -> FakeContract:
        return FakeContract(fake_web3, **kwargs)

    return _make
