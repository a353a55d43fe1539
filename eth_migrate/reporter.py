"""Human readable migration progress.

:py:class:`MigrationReporter` listens to :py:class:`eth_migrate.deployment.Deployment` events
and writes the progress to the Python logging at ``INFO`` level.

Example output:

.. code-block:: text

    2_deploy_token.py
    =================

       Deploying 'Token'
       -----------------
       > estimated gas:       612,331
       > transaction hash:    0x2a8f...
       > Blocks: 1            Seconds: 12
       > contract address:    0x5Fb...
       > gas used:            612,331
       Pausing for 2 confirmations...
       > confirmation number: 1 (block: 18000001)
       > confirmation number: 2 (block: 18000002)
"""

import logging
from typing import Callable, Optional

from eth_migrate.events import (
    BlockEvent,
    ConfirmationEvent,
    DeployEventArgs,
    DeploymentEvent,
    EventEmitter,
    NativeConfirmationEvent,
    PostDeployEvent,
    ReceiptEvent,
    TransactionHashEvent,
)

logger = logging.getLogger(__name__)


def underline(title: str, char="-") -> str:
    return f"{title}\n{char * len(title)}"


class MigrationReporter:
    """Log deployment events.

    :param confirmations:
        Confirmations the deployments wait, for the pause message
    """

    def __init__(self, confirmations: int = 0, log_level=logging.INFO):
        self.confirmations = confirmations
        self.log_level = log_level
        self.deployments = 0
        self.total_gas_used = 0
        self._unsubscribers: list[Callable] = []

    def log(self, msg: str, *args):
        logger.log(self.log_level, msg, *args)

    def listen(self, emitter: EventEmitter):
        """Subscribe to all deployment events of an emitter."""
        handlers = {
            DeploymentEvent.pre_deploy: self.on_pre_deploy,
            DeploymentEvent.post_deploy: self.on_post_deploy,
            DeploymentEvent.pre_deploy_many: self.on_pre_deploy_many,
            DeploymentEvent.post_deploy_many: self.on_post_deploy_many,
            DeploymentEvent.block: self.on_block,
            DeploymentEvent.confirmation: self.on_confirmation,
            DeploymentEvent.transaction_hash: self.on_transaction_hash,
            DeploymentEvent.receipt: self.on_receipt,
            DeploymentEvent.deploy_failed: self.on_deploy_failed,
            DeploymentEvent.error: self.on_error,
        }
        for event, handler in handlers.items():
            self._unsubscribers.append(emitter.on(event, handler))

    def close(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def start_migration(self, file_name: str, network: str, dry_run: bool):
        suffix = " (dry run)" if dry_run else ""
        self.log("")
        self.log(underline(f"{file_name} on {network}{suffix}", "="))

    def finish_migration(self, file_name: str):
        self.log("   > Saved migration %s", file_name)

    def summary(self):
        self.log("")
        self.log(underline("Summary", "="))
        self.log("> Total deployments:   %d", self.deployments)
        self.log("> Total gas used:      %s", f"{self.total_gas_used:,}")

    def on_pre_deploy(self, args: DeployEventArgs):
        verb = "Replacing" if args.deployed else "Deploying"
        self.log("")
        self.log("   " + underline(f"{verb} '{args.contract.contract_name}'").replace("\n", "\n   "))

        if args.estimate_error is not None:
            logger.warning("   > %s gas estimation failed: %s", args.contract.contract_name, args.estimate_error)
        elif args.estimate is not None:
            self.log("   > estimated gas:       %s", f"{args.estimate:,}")

        if args.block_limit is not None:
            self.log("   > block gas limit:     %s", f"{args.block_limit:,}")
        if args.gas is not None:
            self.log("   > gas limit:           %s", f"{args.gas:,}")
        if args.gas_price is not None:
            self.log("   > gas price:           %s", f"{args.gas_price:,}")
        if args.from_address is not None:
            self.log("   > account:             %s", args.from_address)

    def on_transaction_hash(self, event: TransactionHashEvent):
        self.log("   > transaction hash:    %s", event.transaction_hash)

    def on_block(self, event: BlockEvent):
        self.log("   > Blocks: %-12d Seconds: %d", event.blocks_waited, event.seconds_waited)

    def on_receipt(self, event: ReceiptEvent):
        logger.debug("%s receipt in block %s", event.contract_name, event.receipt.get("blockNumber"))

    def on_post_deploy(self, event: PostDeployEvent):
        name = event.contract.contract_name
        if not event.deployed:
            self.log("   > Reusing '%s' at %s", name, event.instance.address)
            return

        self.deployments += 1
        self.log("   > contract address:    %s", event.instance.address)

        receipt: Optional[dict] = event.receipt
        if receipt:
            gas_used = receipt.get("gasUsed") or 0
            self.total_gas_used += gas_used
            self.log("   > block number:        %s", receipt.get("blockNumber"))
            self.log("   > gas used:            %s", f"{gas_used:,}")

        if self.confirmations:
            self.log("   Pausing for %d confirmations...", self.confirmations)

    def on_confirmation(self, event: ConfirmationEvent | NativeConfirmationEvent):
        if isinstance(event, ConfirmationEvent):
            self.log("   > confirmation number: %d (block: %d)", event.num, event.block)
        else:
            logger.debug("%s native confirmation %d", event.contract_name, event.num)

    def on_pre_deploy_many(self, entries: list):
        self.log("")
        self.log("   Deploying Batch of %d contracts", len(entries))

    def on_post_deploy_many(self, entries: list):
        self.log("   Batch of %d contracts deployed", len(entries))

    def on_deploy_failed(self, args: DeployEventArgs):
        logger.error("*** Deployment Failed ***\n'%s' -- %s", args.contract.contract_name, args.error)

    def on_error(self, error: Exception):
        logger.error("Error: %s", error)
