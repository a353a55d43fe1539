"""Transaction handles.

A :py:class:`TransactionHandle` represents one submitted transaction.

- It is awaitable: ``await handle`` gives the single terminal outcome,
  a value or an exception

- It is subscribable: the network client pushes raw notifications
  (:py:class:`Notification`) to it while the transaction progresses

- It owns the background task that monitors the transaction,
  see :py:func:`eth_migrate.confirmation.monitor_transaction`

The policy deciding what the notifications mean lives in :py:mod:`eth_migrate.router`.
"""

import asyncio
import contextlib
import enum
import logging
from typing import Any, Coroutine, Optional

from eth_migrate.events import EventEmitter, Listener

logger = logging.getLogger(__name__)


class Notification(str, enum.Enum):
    """Raw notifications a network client delivers to a handle.

    Delivered in order: hash, receipt, then zero or more confirmations.
    ``error`` may come at any point. A client confirming before the receipt
    is tolerated, see :py:mod:`eth_migrate.router`.
    """

    transaction_hash = "transactionHash"
    confirmation = "confirmation"
    receipt = "receipt"
    error = "error"


class TransactionHandle:
    """One in-flight transaction.

    Must be created inside a running event loop.
    """

    def __init__(self, description: str = ""):
        #: Human readable label for logging
        self.description = description

        #: Raw notifications from the network client
        self.notifications = EventEmitter()

        #: Re-emitted, routed events for observers of method call transactions
        self.events = EventEmitter()

        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._monitor: Optional[asyncio.Task] = None
        self._closed = False

    def __repr__(self):
        return f"<TransactionHandle {self.description} done:{self.done()} closed:{self._closed}>"

    def __await__(self):
        return self._future.__await__()

    def on(self, notification: Notification, listener: Listener) -> "TransactionHandle":
        self.notifications.on(notification, listener)
        return self

    def remove_listener(self, notification: Notification, listener: Listener):
        self.notifications.off(notification, listener)

    def remove_all_listeners(self):
        self.notifications.clear_listeners()
        self.events.clear_listeners()

    def has_listeners(self, notification: Notification) -> bool:
        return self.notifications.listener_count(notification) > 0

    async def notify(self, notification: Notification, *args):
        """Deliver a raw notification to the subscribers."""
        await self.notifications.emit(notification, *args)

    def done(self) -> bool:
        return self._future.done()

    @property
    def closed(self) -> bool:
        return self._closed

    def resolve(self, value: Any) -> bool:
        """Settle with a value.

        :return:
            False if the handle was already settled and the value was dropped
        """
        if self._future.done():
            logger.debug("%s already settled, dropping result %s", self, value)
            return False
        self._future.set_result(value)
        return True

    def reject(self, error: BaseException) -> bool:
        """Settle with an exception.

        :return:
            False if the handle was already settled and the error was dropped
        """
        if self._future.done():
            logger.debug("%s already settled, dropping error %s", self, error)
            return False
        self._future.set_exception(error)
        return True

    def start(self, coro: Coroutine) -> asyncio.Task:
        """Run the monitor coroutine driving this handle in the background."""
        assert self._monitor is None, f"{self} already has a monitor"
        self._monitor = asyncio.create_task(coro, name=f"monitor {self.description}")
        return self._monitor

    async def close(self):
        """Detach every listener and stop monitoring.

        Safe to call multiple times.
        """
        self._closed = True
        self.remove_all_listeners()
        monitor = self._monitor
        if monitor is not None and not monitor.done():
            monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await monitor
