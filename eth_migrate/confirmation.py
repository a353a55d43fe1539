"""Transaction broadcast and confirmation monitoring.

:py:func:`monitor_transaction` drives a :py:class:`eth_migrate.handle.TransactionHandle`
from JSON-RPC polling:

- Broadcast the transaction and deliver its hash
- Poll the receipt with a simple poll loop
- Report the client timeout after :py:data:`eth_migrate.router.DEFAULT_TIMEOUT_BLOCKS` blocks,
  but keep waiting if the caller asked for a longer timeout
- Deliver the receipt, then optionally confirmation notifications for the following blocks

Any exception is delivered to the handle as an ``error`` notification,
so the node's original error message reaches the caller.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from web3.exceptions import TransactionNotFound

from eth_migrate.handle import Notification, TransactionHandle
from eth_migrate.router import DEFAULT_TIMEOUT_BLOCKS, MAX_CONFIRMATIONS, normalise_tx_hash

logger = logging.getLogger(__name__)


class TransactionNotMined(Exception):
    """Transaction was not mined within the block timeout."""

    def __init__(self, blocks: int, tx_hash: str):
        super().__init__(f"Transaction {tx_hash} was not mined within {blocks} blocks, please make sure your transaction was properly sent. Be aware that it might still be mined!")
        self.blocks = blocks
        self.tx_hash = tx_hash


async def wait_receipt(
    web3: Any,
    handle: TransactionHandle,
    tx_hash: Any,
    timeout_blocks: int = 0,
    poll_delay: float = 1.0,
) -> Optional[dict]:
    """Poll for a transaction receipt.

    :return:
        The receipt, or ``None`` if we gave up waiting
    """
    start_block = await web3.eth.block_number
    max_blocks = max(timeout_blocks or 0, DEFAULT_TIMEOUT_BLOCKS)
    timeout_reported = False

    while True:
        try:
            receipt = await web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound as e:
            logger.debug("Transaction not found yet: %s", e)
            receipt = None

        if receipt:
            return receipt

        blocks_waited = (await web3.eth.block_number) - start_block

        if blocks_waited >= DEFAULT_TIMEOUT_BLOCKS and not timeout_reported:
            # The router squashes this if the caller waits longer
            timeout_reported = True
            await handle.notify(Notification.error, TransactionNotMined(DEFAULT_TIMEOUT_BLOCKS, normalise_tx_hash(tx_hash)))
            if max_blocks == DEFAULT_TIMEOUT_BLOCKS:
                return None

        if max_blocks > DEFAULT_TIMEOUT_BLOCKS and blocks_waited >= max_blocks:
            await handle.notify(Notification.error, TransactionNotMined(max_blocks, normalise_tx_hash(tx_hash)))
            return None

        await asyncio.sleep(poll_delay)


async def deliver_confirmations(web3: Any, handle: TransactionHandle, receipt: dict, poll_delay: float = 1.0):
    """Deliver confirmation notifications for blocks mined after the receipt.

    Stops after :py:data:`MAX_CONFIRMATIONS` or when nobody listens anymore.
    """
    num = 0
    last_block = receipt["blockNumber"]
    await handle.notify(Notification.confirmation, num, receipt)

    while num < MAX_CONFIRMATIONS and handle.has_listeners(Notification.confirmation):
        await asyncio.sleep(poll_delay)
        block_number = await web3.eth.block_number
        while last_block < block_number and num < MAX_CONFIRMATIONS:
            last_block += 1
            num += 1
            await handle.notify(Notification.confirmation, num, receipt)


async def monitor_transaction(
    web3: Any,
    handle: TransactionHandle,
    send: Callable[[], Awaitable[Any]],
    timeout_blocks: int = 0,
    poll_delay: float = 1.0,
    on_receipt: Optional[Callable[[dict], Awaitable[None]]] = None,
    watch_confirmations: bool = False,
):
    """Broadcast a transaction and drive its handle until the outcome is known.

    :param send:
        Coroutine function broadcasting the transaction and returning its hash

    :param timeout_blocks:
        How many blocks to wait for the receipt. Zero for the client default.

    :param on_receipt:
        Called after the receipt notification. Contract creation uses this to settle the handle.

    :param watch_confirmations:
        Deliver confirmation notifications after the receipt
    """
    try:
        tx_hash = await send()
        await handle.notify(Notification.transaction_hash, tx_hash)

        receipt = await wait_receipt(web3, handle, tx_hash, timeout_blocks, poll_delay)
        if receipt is None:
            handle.reject(TransactionNotMined(max(timeout_blocks, DEFAULT_TIMEOUT_BLOCKS), normalise_tx_hash(tx_hash)))
            return

        await handle.notify(Notification.receipt, receipt)

        if on_receipt is not None:
            await on_receipt(receipt)

        if watch_confirmations:
            await deliver_confirmations(web3, handle, receipt, poll_delay)

    except Exception as e:
        logger.info("%s failed: %s", handle.description, e)
        await handle.notify(Notification.error, e)
        # No router attached, or the router squashed the error
        handle.reject(e)
