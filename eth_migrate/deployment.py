"""Contract deployment orchestration.

:py:class:`Deployment` deploys contract artifacts one by one or in concurrent batches:

- Checks the artifact can be deployed on the current network
- Decides whether an existing deployment is reused or replaced
- Resolves gas parameters and previews a gas estimate
- Submits the deployment transaction and routes its notifications, see :py:mod:`eth_migrate.router`
- Reports progress as events, see :py:mod:`eth_migrate.events`
- Waits the configured number of block confirmations

Example:

.. code-block:: python

    emitter = EventEmitter()
    MigrationReporter(emitter)

    deployment = Deployment(emitter, confirmations=2)
    token = await deployment.deploy(Token, "Cow token", "COWS", options=DeploymentOptions(gas=2_000_000))

    # Deploy two contracts at the same time
    await deployment.deploy_many([Vault, (Oracle, token.address)])

A deployment is never retried. A failed deployment raises :py:class:`ContractDeploymentFailed`.
"""

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from eth_migrate.contract import ContractAbstraction, NoBytecode, has_bytecode
from eth_migrate.events import DeployEventArgs, DeploymentEvent, DeploymentState, EventEmitter, PostDeployEvent
from eth_migrate.handle import TransactionHandle
from eth_migrate.polling import DEFAULT_POLLING_INTERVAL, block_polling, wait_blocks
from eth_migrate.router import MAX_CONFIRMATIONS, CallContext, TransactionEventRouter

logger = logging.getLogger(__name__)


class ContractDeploymentFailed(Exception):
    """Did not get a deployed contract instance.

    The original error is chained as ``__cause__`` and its message is included.
    """

    def __init__(self, contract_name: str, msg: str, tx_hash: Optional[str] = None):
        super().__init__(msg)
        self.contract_name = contract_name
        self.tx_hash = tx_hash


class ConfirmationWaitMethod(enum.Enum):
    """How we wait for block confirmations after a deployment."""

    #: Poll the block number and count new blocks
    block_polling = "block_polling"

    #: Count the confirmation notifications delivered by the transaction handle.
    #:
    #: Not reliable over all JSON-RPC transports.
    notifications = "notifications"


@dataclass
class DeploymentOptions:
    """Per-deployment options.

    Transaction parameters given here override the contract defaults.
    """

    #: Redeploy even if the contract is already deployed on this network
    overwrite: bool = True

    gas: Optional[int] = None

    gas_price: Optional[int] = None

    from_address: Optional[str] = None

    def get_tx_params(self) -> dict:
        """Transaction parameters as web3.py expects them."""
        params = {
            "gas": self.gas,
            "gasPrice": self.gas_price,
            "from": self.from_address,
        }
        return {k: v for k, v in params.items() if v is not None}


class DeploymentSession:
    """Resources of one deployment attempt.

    - Tracks transaction handles so their listeners and monitors can be released
    - Counts native confirmation notifications per transaction hash

    Use as an async context manager. Everything is released on exit.
    """

    def __init__(self):
        self.handles: list[TransactionHandle] = []

        #: Transaction hash -> highest confirmation index seen
        self.confirmations: dict[str, int] = {}

    async def __aenter__(self) -> "DeploymentSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def track(self, handle: TransactionHandle):
        self.handles.append(handle)

    async def release(self, handle: TransactionHandle):
        if handle in self.handles:
            self.handles.remove(handle)
        await handle.close()

    async def close(self):
        """Release all tracked handles."""
        handles, self.handles = self.handles, []
        for handle in handles:
            await handle.close()
        self.confirmations.clear()

    def record_confirmation(self, tx_hash: str, num: int):
        self.confirmations[tx_hash] = max(num, self.confirmations.get(tx_hash, -1))

    async def wait_for_confirmations(self, tx_hash: str, count: int, poll_delay: float = DEFAULT_POLLING_INTERVAL):
        """Wait until the confirmation index of a transaction reaches ``count``."""
        while self.confirmations.get(tx_hash, -1) < count:
            await asyncio.sleep(poll_delay)


def normalise_batch_entry(entry: Any) -> tuple[ContractAbstraction, list, Optional[DeploymentOptions]]:
    """Split a :py:meth:`Deployment.deploy_many` entry to contract, constructor args and options."""
    if isinstance(entry, (list, tuple)):
        assert len(entry) > 0, "Empty deployment entry"
        contract, *args = entry
    else:
        contract, args = entry, []

    options = None
    if args and isinstance(args[-1], DeploymentOptions):
        options = args.pop()

    return contract, args, options


async def resolve_args(args: Sequence) -> list:
    """Await any awaitable constructor arguments, concurrently."""

    async def _resolve(arg):
        if inspect.isawaitable(arg):
            return await arg
        return arg

    return list(await asyncio.gather(*(_resolve(a) for a in args)))


class Deployment:
    """Deploy contracts and report the progress as events.

    :param emitter:
        Where events are emitted. A new emitter is created if not given.

    :param confirmations:
        How many blocks to wait after a deployment before returning the instance

    :param timeout_blocks:
        How many blocks to wait for a deployment transaction before giving up.

        Zero uses the client default.

    :param polling_interval:
        Seconds between block number polls

    :param wait_method:
        How block confirmations are counted
    """

    def __init__(
        self,
        emitter: Optional[EventEmitter] = None,
        confirmations: int = 0,
        timeout_blocks: int = 0,
        polling_interval: float = DEFAULT_POLLING_INTERVAL,
        wait_method: ConfirmationWaitMethod = ConfirmationWaitMethod.block_polling,
    ):
        assert confirmations >= 0, f"Bad confirmations {confirmations}"
        if wait_method == ConfirmationWaitMethod.notifications:
            assert confirmations <= MAX_CONFIRMATIONS, f"Clients deliver at most {MAX_CONFIRMATIONS} confirmation notifications, asked {confirmations}"
        self.emitter = emitter or EventEmitter()
        self.confirmations = confirmations
        self.timeout_blocks = timeout_blocks
        self.polling_interval = polling_interval
        self.wait_method = wait_method

    async def deploy(self, contract: ContractAbstraction, *args, options: Optional[DeploymentOptions] = None) -> Any:
        """Deploy a single contract.

        :param contract:
            Contract artifact

        :param args:
            Constructor arguments. Awaitables are resolved first.

        :param options:
            Transaction parameters and overwrite policy

        :return:
            Deployed contract instance

        :raise NoBytecode:
            The contract cannot be deployed

        :raise eth_migrate.contract.NetworkNotFound:
            The contract does not know the current network

        :raise ContractDeploymentFailed:
            The deployment transaction failed
        """
        async with DeploymentSession() as session:
            return await self._deploy_one(contract, args, options or DeploymentOptions(), session)

    async def deploy_many(self, entries: list) -> list:
        """Deploy a batch of contracts concurrently.

        :param entries:
            List of contracts, or tuples ``(contract, *constructor_args)``.
            The last tuple item can be :py:class:`DeploymentOptions`.

        :return:
            Deployed instances in the order of ``entries``

        :raise ContractDeploymentFailed:
            The first failed deployment. The other deployments still run to the end,
            so contracts already sent get their address recorded.
        """
        normalised = [normalise_batch_entry(e) for e in entries]

        await self.emitter.emit(DeploymentEvent.pre_deploy_many, entries)

        tasks = [asyncio.create_task(self.deploy(contract, *args, options=options), name=f"deploy {contract.contract_name}") for contract, args, options in normalised]

        first_error = None
        try:
            for next_done in asyncio.as_completed(tasks):
                try:
                    await next_done
                except Exception as e:
                    if first_error is None:
                        first_error = e
                    else:
                        logger.error("Another deployment in the batch failed: %s", e)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        if first_error is not None:
            raise first_error

        await self.emitter.emit(DeploymentEvent.post_deploy_many, entries)
        return [task.result() for task in tasks]

    async def _preflight_check(self, contract: ContractAbstraction):
        if not has_bytecode(contract.bytecode):
            error = NoBytecode(contract.contract_name)
            await self.emitter.emit(DeploymentEvent.error, error)
            raise error

        await contract.detect_network()

    async def _deploy_one(
        self,
        contract: ContractAbstraction,
        args: Sequence,
        options: DeploymentOptions,
        session: DeploymentSession,
    ) -> Any:
        await self._preflight_check(contract)

        is_deployed = contract.is_deployed()
        new_args = await resolve_args(args)
        current_block = await contract.web3.eth.get_block("latest")

        should_deploy = options.overwrite or not is_deployed
        state = DeploymentState(contract_name=contract.contract_name)

        if should_deploy:
            instance = await self._submit(contract, new_args, options, is_deployed, current_block, state, session)
        else:
            logger.info("%s already deployed at %s, not overwriting", contract.contract_name, contract.address)
            instance = await contract.deployed()

        await self.emitter.emit(
            DeploymentEvent.post_deploy,
            PostDeployEvent(
                contract=contract,
                instance=instance,
                deployed=should_deploy,
                receipt=state.receipt,
            ),
        )

        if self.confirmations and should_deploy:
            await self._wait_confirmations(contract, state, session)

        contract.address = instance.address
        contract.transaction_hash = instance.transaction_hash
        return instance

    async def _submit(
        self,
        contract: ContractAbstraction,
        args: list,
        options: DeploymentOptions,
        is_deployed: bool,
        current_block: dict,
        state: DeploymentState,
        session: DeploymentSession,
    ) -> Any:
        # Zero defers to the client default
        contract.timeout_blocks = self.timeout_blocks
        contract.watch_confirmations = self.wait_method == ConfirmationWaitMethod.notifications

        defaults = contract.defaults()
        tx_params = options.get_tx_params()

        event_args = DeployEventArgs(
            state=state,
            contract=contract,
            deployed=is_deployed,
            block_limit=current_block.get("gasLimit"),
            gas=options.gas or defaults.get("gas"),
            gas_price=options.gas_price or defaults.get("gasPrice"),
            from_address=options.from_address or defaults.get("from"),
        )

        # Preview, and catch constructor reverts early
        try:
            event_args.estimate = await contract.estimate_gas(*args, tx_params=tx_params)
        except Exception as e:
            logger.info("%s gas estimation failed: %s", contract.contract_name, e)
            event_args.estimate_error = e

        await self.emitter.emit(DeploymentEvent.pre_deploy, event_args)

        handle = contract.new(*args, tx_params=tx_params)
        session.track(handle)

        context = CallContext(
            contract_name=contract.contract_name,
            params=tx_params,
            only_emit_receipt=True,
            timeout_blocks=self.timeout_blocks,
            decode_logs=contract.decode_logs,
        )
        TransactionEventRouter(handle, context, self.emitter, state, session).attach()

        try:
            async with block_polling(contract.web3, self.emitter, self.polling_interval):
                instance = await handle
        except Exception as e:
            event_args.error = e
            await self.emitter.emit(DeploymentEvent.deploy_failed, event_args)
            await session.close()
            raise ContractDeploymentFailed(
                contract.contract_name,
                f"Migrations failure: {contract.contract_name} deployment failed: {e}",
                tx_hash=state.transaction_hash,
            ) from e

        logger.info("%s deployed at %s, tx %s", contract.contract_name, instance.address, state.transaction_hash)
        return instance

    async def _wait_confirmations(self, contract: ContractAbstraction, state: DeploymentState, session: DeploymentSession):
        if self.wait_method == ConfirmationWaitMethod.block_polling:
            await wait_blocks(contract.web3, self.confirmations, state, self.emitter, self.polling_interval)
        else:
            await session.wait_for_confirmations(state.transaction_hash, self.confirmations, self.polling_interval)
