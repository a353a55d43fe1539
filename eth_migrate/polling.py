"""Block polling while deployments are pending.

- :py:class:`BlockTicker` polls the node block number at a fixed interval
- :py:func:`block_polling` emits ``block`` events while a transaction is pending
- :py:func:`wait_blocks` blocks until N more blocks have been mined after a deployment

The polling tasks are scoped: leaving the ``async with`` block or cancelling the awaiting
task always stops them.
"""

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncIterator

from eth_migrate.events import BlockEvent, ConfirmationEvent, DeploymentEvent, DeploymentState, EventEmitter

logger = logging.getLogger(__name__)


#: Seconds between block number polls
DEFAULT_POLLING_INTERVAL = 1.0


async def get_block_number(web3: Any) -> int:
    return await web3.eth.block_number


class BlockTicker:
    """Poll the block number and yield block increases.

    Each iteration yields ``(new_block_number, blocks_since_last)``.
    """

    def __init__(self, web3: Any, interval: float = DEFAULT_POLLING_INTERVAL):
        assert interval > 0, f"Bad polling interval {interval}"
        self.web3 = web3
        self.interval = interval
        self.current_block = None

    async def start(self) -> int:
        self.current_block = await get_block_number(self.web3)
        return self.current_block

    async def __aiter__(self) -> AsyncIterator[tuple[int, int]]:
        if self.current_block is None:
            await self.start()

        while True:
            await asyncio.sleep(self.interval)
            try:
                new_block = await get_block_number(self.web3)
            except Exception as e:
                # Block polling is for progress reporting only
                logger.warning("Could not poll the block number: %s", e)
                continue

            if new_block > self.current_block:
                delta = new_block - self.current_block
                self.current_block = new_block
                yield new_block, delta


async def _emit_blocks(ticker: BlockTicker, emitter: EventEmitter):
    started_at = time.monotonic()
    blocks_waited = 0
    async for block_number, delta in ticker:
        blocks_waited += delta
        seconds_waited = int(time.monotonic() - started_at)
        await emitter.emit(DeploymentEvent.block, BlockEvent(block_number, blocks_waited, seconds_waited))


@contextlib.asynccontextmanager
async def block_polling(web3: Any, emitter: EventEmitter, interval: float = DEFAULT_POLLING_INTERVAL) -> AsyncIterator[asyncio.Task]:
    """Emit ``block`` events on every new block while the context is open.

    Example:

    .. code-block:: python

        async with block_polling(web3, emitter):
            instance = await handle
    """
    ticker = BlockTicker(web3, interval)
    await ticker.start()
    task = asyncio.create_task(_emit_blocks(ticker, emitter), name="block polling")
    try:
        yield task
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def wait_blocks(
    web3: Any,
    blocks_to_wait: int,
    state: DeploymentState,
    emitter: EventEmitter,
    interval: float = DEFAULT_POLLING_INTERVAL,
) -> int:
    """Wait until ``blocks_to_wait`` new blocks are mined.

    Emits a ``confirmation`` event for each new block heard.

    :return:
        The block number we stopped at
    """
    assert blocks_to_wait > 0, f"Nothing to wait: {blocks_to_wait}"
    ticker = BlockTicker(web3, interval)
    current_block = await ticker.start()
    blocks_heard = 0

    logger.debug("%s: waiting %d blocks from block %d", state.contract_name, blocks_to_wait, current_block)

    async for current_block, delta in ticker:
        blocks_heard += delta
        await emitter.emit(
            DeploymentEvent.confirmation,
            ConfirmationEvent(state.contract_name, state.receipt, blocks_heard, current_block),
        )
        if blocks_heard >= blocks_to_wait:
            break

    return current_block
