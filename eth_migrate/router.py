"""Transaction event routing.

Turns the raw notifications of one :py:class:`eth_migrate.handle.TransactionHandle`
into a single settled outcome plus re-emitted observer events.

The router is an explicit state machine:

.. code-block:: text

    submitted -> hash_received -> received -> settled_ok
                                           \\-> settled_error

Clients deliver the hash, then the receipt, then the confirmations. Confirmations
after the receipt are counted without a state change. A confirmation arriving
before the receipt moves the router to ``confirming``, and the receipt is still
handled from there.

Each transition runs its side effect once. A second hash, a late confirmation
after an error or a duplicate receipt are ignored instead of being forwarded twice.

Timeout handling: JSON-RPC clients give up waiting for a transaction after
:py:data:`DEFAULT_TIMEOUT_BLOCKS` blocks and report an error containing
:py:data:`TIMEOUT_MESSAGE`. If the caller asked to wait longer than that,
the error is a false positive and is squashed while the real wait continues.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from hexbytes import HexBytes

from eth_migrate.events import DeploymentEvent, DeploymentState, EventEmitter, NativeConfirmationEvent, ReceiptEvent, TransactionHashEvent
from eth_migrate.handle import Notification, TransactionHandle

logger = logging.getLogger(__name__)


#: Maximum number of confirmation notifications a client delivers.
#:
#: The first confirmation index is 0.
MAX_CONFIRMATIONS = 24

#: How many blocks a client waits for a transaction before abandoning it
DEFAULT_TIMEOUT_BLOCKS = 50

#: Substring of the client's abandonment error
TIMEOUT_MESSAGE = "50 blocks"


class TransactionStatusError(Exception):
    """Transaction receipt came back with a failure status."""

    def __init__(self, params: dict, transaction_hash: str, receipt: dict, reason: Optional[str] = None):
        message = f"Transaction: {transaction_hash} exited with an error (status 0)."
        if reason:
            message += f" Reason given: {reason}."
        message += "\nPlease check that the transaction:\n" "    - satisfies all conditions set by Solidity `require` statements.\n" "    - does not trigger a Solidity `revert` statement.\n"
        super().__init__(message)
        self.params = params
        self.transaction_hash = transaction_hash
        self.receipt = receipt
        self.reason = reason


@dataclass
class TransactionResult:
    """Outcome of a successful method call transaction."""

    transaction_hash: str
    receipt: dict

    #: Decoded event logs
    logs: list


@dataclass
class CallContext:
    """What the router needs to know about the call behind a handle."""

    contract_name: str

    #: Transaction parameters, attached to status errors
    params: dict = field(default_factory=dict)

    #: Contract creation: the contract abstraction settles the handle with an instance
    only_emit_receipt: bool = False

    #: How many blocks the caller is willing to wait
    timeout_blocks: int = 0

    #: Decodes receipt logs into events
    decode_logs: Optional[Callable[[list], list]] = None

    #: Revert reason probed before sending, if any
    reason: Optional[str] = None


class RouterState(enum.Enum):
    submitted = "submitted"
    hash_received = "hash_received"
    confirming = "confirming"
    received = "received"
    settled_ok = "settled_ok"
    settled_error = "settled_error"


def normalise_tx_hash(value: Any) -> str:
    """Transaction hashes as 0x prefixed hex strings."""
    if isinstance(value, (bytes, bytearray)):
        return HexBytes(value).to_0x_hex()
    return str(value)


def is_failed_receipt(receipt: dict) -> bool:
    status = receipt.get("status")
    return status is not None and int(status) == 0


def should_ignore_timeout_error(context: CallContext, error: BaseException) -> bool:
    """Is this the client's block wait abandonment, and the caller wants to wait longer?"""
    timed_out = TIMEOUT_MESSAGE in str(error)
    should_wait = bool(context.timeout_blocks) and context.timeout_blocks > DEFAULT_TIMEOUT_BLOCKS
    return timed_out and should_wait


class TransactionEventRouter:
    """Route one handle's notifications.

    :param handle:
        The handle to listen and settle

    :param context:
        The call behind the handle

    :param emitter:
        Where observer events are re-emitted

    :param state:
        Deployment attempt record to update

    :param session:
        Optional :py:class:`eth_migrate.deployment.DeploymentSession` keeping the confirmation counters
    """

    def __init__(
        self,
        handle: TransactionHandle,
        context: CallContext,
        emitter: EventEmitter,
        state: DeploymentState,
        session=None,
    ):
        self.handle = handle
        self.context = context
        self.emitter = emitter
        self.state = state
        self.session = session
        self.router_state = RouterState.submitted
        self._handlers = {
            Notification.transaction_hash: self.on_transaction_hash,
            Notification.confirmation: self.on_confirmation,
            Notification.receipt: self.on_receipt,
            Notification.error: self.on_error,
        }

    def __repr__(self):
        return f"<TransactionEventRouter {self.context.contract_name} {self.router_state.name}>"

    @property
    def settled(self) -> bool:
        return self.router_state in (RouterState.settled_ok, RouterState.settled_error)

    def attach(self) -> "TransactionEventRouter":
        for notification, handler in self._handlers.items():
            self.handle.on(notification, handler)
        return self

    def detach(self, notification: Optional[Notification] = None):
        """Stop listening one notification kind, or all of them."""
        if notification is None:
            for kind, handler in self._handlers.items():
                self.handle.remove_listener(kind, handler)
        else:
            self.handle.remove_listener(notification, self._handlers[notification])

    async def on_transaction_hash(self, tx_hash: Any):
        if self.router_state != RouterState.submitted:
            return
        tx_hash = normalise_tx_hash(tx_hash)
        self.router_state = RouterState.hash_received
        self.state.transaction_hash = tx_hash
        await self.emitter.emit(DeploymentEvent.transaction_hash, TransactionHashEvent(self.state.contract_name, tx_hash))
        self.detach(Notification.transaction_hash)

    async def on_confirmation(self, num: int, receipt: dict):
        if self.router_state == RouterState.settled_error:
            return

        if self.router_state in (RouterState.submitted, RouterState.hash_received):
            self.router_state = RouterState.confirming

        if self.session is not None:
            self.session.record_confirmation(normalise_tx_hash(receipt["transactionHash"]), num)

        await self.emitter.emit(DeploymentEvent.confirmation, NativeConfirmationEvent(self.state.contract_name, num, receipt))

        # Index starts from 0, so this is the 25th and last delivery
        if num >= MAX_CONFIRMATIONS:
            self.detach(Notification.confirmation)

    async def on_receipt(self, receipt: dict):
        if self.router_state == RouterState.received or self.settled:
            return

        if receipt.get("logs") and self.context.decode_logs is not None:
            logs = self.context.decode_logs(receipt["logs"])
        else:
            logs = []

        await self.emitter.emit(DeploymentEvent.receipt, ReceiptEvent(self.state.contract_name, receipt))

        if self.context.only_emit_receipt:
            # The deployment flow settles with a contract instance
            if self.state.receipt is None:
                self.state.receipt = receipt
            self.router_state = RouterState.received
            self.detach(Notification.receipt)
            return

        tx_hash = normalise_tx_hash(receipt["transactionHash"])

        if is_failed_receipt(receipt):
            error = TransactionStatusError(self.context.params, tx_hash, receipt, self.context.reason)
            self.router_state = RouterState.settled_error
            self.handle.reject(error)
        else:
            self.router_state = RouterState.settled_ok
            self.handle.resolve(TransactionResult(tx_hash, receipt, logs))

        self.detach(Notification.receipt)

    async def on_error(self, error: Exception):
        if should_ignore_timeout_error(self.context, error):
            logger.info(
                "%s: ignoring client timeout, waiting up to %d blocks: %s",
                self.context.contract_name,
                self.context.timeout_blocks,
                error,
            )
            return

        if self.router_state == RouterState.settled_error:
            return

        await self.emitter.emit(DeploymentEvent.error, error)
        self.detach(Notification.error)
        self.router_state = RouterState.settled_error

        # The client may have settled the handle already, reject() is a no-op then
        self.handle.reject(error)
