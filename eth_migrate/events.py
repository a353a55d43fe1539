"""Deployment event stream.

- :py:class:`EventEmitter` is a small asyncio event emitter.
  Listeners can be plain functions or coroutine functions.
  :py:meth:`EventEmitter.emit` awaits each listener in the order
  they were registered, so a reporter sees events in the order they happened.

- :py:class:`DeploymentEvent` names the events a :py:class:`eth_migrate.deployment.Deployment` emits.

- The dataclasses in this module are the event payloads.

Example:

.. code-block:: python

    emitter = EventEmitter()

    async def on_pre_deploy(args: DeployEventArgs):
        print(f"Deploying {args.contract.contract_name}, gas limit {args.gas}")

    emitter.on(DeploymentEvent.pre_deploy, on_pre_deploy)
    deployment = Deployment(emitter)
"""

import enum
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


#: Event listener, sync or async
Listener = Callable[..., Any]


class DeploymentEvent(str, enum.Enum):
    """Names of the events emitted during a deployment.

    Values match the event names observers subscribe to.
    """

    pre_deploy = "preDeploy"
    post_deploy = "postDeploy"
    pre_deploy_many = "preDeployMany"
    post_deploy_many = "postDeployMany"
    block = "block"
    confirmation = "confirmation"
    transaction_hash = "transactionHash"
    receipt = "receipt"
    error = "error"
    deploy_failed = "deployFailed"


class EventEmitter:
    """Asyncio event emitter.

    - Listeners are called in registration order

    - Coroutine listeners are awaited before the next listener runs

    - Exceptions raised by a listener propagate to the emitter
    """

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event.

        :return:
            Callable that unsubscribes the listener
        """
        self._listeners[event].append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener):
        """Unsubscribe a listener.

        Unknown listeners are ignored.
        """
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(event, ()))

    def clear_listeners(self, event: Optional[str] = None):
        """Remove all listeners of one event, or of all events."""
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    async def emit(self, event: str, *args):
        # Copy, as listeners may unsubscribe themselves while we iterate
        for listener in list(self._listeners.get(event, ())):
            result = listener(*args)
            if inspect.isawaitable(result):
                await result


@dataclass
class DeploymentState:
    """Transient record of one deployment attempt.

    Owned by the attempt and thrown away when it settles.
    """

    contract_name: str

    #: Set when the node accepts the transaction
    transaction_hash: Optional[str] = None

    #: Set once when the receipt arrives, never replaced
    receipt: Optional[dict] = None


@dataclass
class DeployEventArgs:
    """Payload of ``preDeploy`` and ``deployFailed`` events."""

    state: DeploymentState

    #: :py:class:`eth_migrate.contract.ContractAbstraction`
    contract: Any

    #: Was the contract already deployed on this network
    deployed: bool

    #: Gas limit of the latest block
    block_limit: Optional[int]

    gas: Optional[int]

    gas_price: Optional[int]

    from_address: Optional[str]

    #: Gas estimate of the deployment transaction
    estimate: Optional[int] = None

    #: Set if the gas estimate failed, e.g. the constructor reverts
    estimate_error: Optional[Exception] = None

    #: Set on ``deployFailed``
    error: Optional[Exception] = None


@dataclass
class PostDeployEvent:
    contract: Any
    instance: Any

    #: Did we send a deployment transaction, or reuse an existing deployment
    deployed: bool

    receipt: Optional[dict]


@dataclass
class BlockEvent:
    """A new block was seen while waiting for a deployment transaction."""

    block_number: int

    #: Blocks since the polling started
    blocks_waited: int

    #: Seconds since the polling started
    seconds_waited: int


@dataclass
class ConfirmationEvent:
    """A block was mined after the deployment receipt.

    Synthesized from block polling.
    """

    contract_name: str
    receipt: Optional[dict]

    #: Confirmation number, starting from 1
    num: int

    block: int


@dataclass
class NativeConfirmationEvent:
    """Confirmation notification coming from the transaction handle itself."""

    contract_name: str

    #: Confirmation index, starting from 0
    num: int

    receipt: dict


@dataclass
class TransactionHashEvent:
    contract_name: str
    transaction_hash: str


@dataclass
class ReceiptEvent:
    contract_name: str
    receipt: dict
