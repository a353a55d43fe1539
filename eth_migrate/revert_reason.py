"""Revert reason extraction.

Further reading

- `Web3.py Patterns: Revert Reason Lookups <https://snakecharmers.ethereum.org/web3py-revert-reason-parsing/>`_

"""

import logging
from typing import Any, Optional, Union

from eth_abi import decode
from hexbytes import HexBytes
from web3.exceptions import ContractLogicError, Web3RPCError

logger = logging.getLogger(__name__)


#: Solidity ``Error(string)`` selector
ERROR_SELECTOR = HexBytes("0x08c379a0")

#: Solidity ``Panic(uint256)`` selector
PANIC_SELECTOR = HexBytes("0x4e487b71")


def decode_revert_reason(data: Union[bytes, str, None]) -> Optional[str]:
    """Decode Solidity revert data.

    Example:

    .. code-block:: python

        data = "0x08c379a0" + encode(["string"], ["reasonstring"]).hex()
        assert decode_revert_reason(data) == "reasonstring"

    :param data:
        Raw revert payload as returned by ``eth_call``

    :return:
        The reason string, ``Panic(0x11)`` style text for panics,
        or ``None`` if the payload is not a known revert format
    """
    if not data:
        return None

    try:
        data = HexBytes(data)
        selector, payload = data[:4], data[4:]
        if selector == ERROR_SELECTOR:
            (reason,) = decode(["string"], payload)
            return reason
        if selector == PANIC_SELECTOR:
            (code,) = decode(["uint256"], payload)
            return f"Panic({hex(code)})"
    except Exception as e:
        logger.debug("Could not decode revert data %r: %s", data, e)

    return None


def extract_revert_reason(error: BaseException) -> Optional[str]:
    """Get a revert reason out of a web3.py exception.

    - :py:class:`web3.exceptions.ContractLogicError` carries the decoded message and raw data

    - Other JSON-RPC errors carry the node error in ``rpc_response``

    - Some nodes raise ``ValueError`` with a JSON-RPC error dict
    """
    if isinstance(error, ContractLogicError):
        decoded = decode_revert_reason(error.data) if isinstance(error.data, (str, bytes)) else None
        return decoded or error.message

    if isinstance(error, Web3RPCError):
        rpc_error = (error.rpc_response or {}).get("error") or {}
        if isinstance(rpc_error, dict):
            return decode_revert_reason(rpc_error.get("data")) or rpc_error.get("message") or error.message
        return error.message

    if isinstance(error, ValueError) and error.args:
        data = error.args[0]
        if isinstance(data, dict):
            return decode_revert_reason(data.get("data")) or data.get("message")
        if isinstance(data, str):
            return data

    return None


async def fetch_transaction_revert_reason(
    web3: Any,
    tx_hash: Union[HexBytes, str],
    unknown_error_message: str = "<could not extract the revert reason>",
) -> str:
    """Get a transaction revert reason.

    Ethereum nodes do not store the failure reason. We replay the transaction against the current
    state with ``eth_call``, so the reason may differ from the one at the time of mining.

    Works for contract creations, which have no ``to`` address.

    :param web3: ``AsyncWeb3`` connection

    :param tx_hash: Transaction hash of which reason we extract by simulation.

    :param unknown_error_message:
        Return this message if the revert reason extraction fails.

    :return: The revert reason or the placeholder message
    """
    tx = await web3.eth.get_transaction(tx_hash)

    replay_tx = {
        "from": tx["from"],
        "value": tx["value"],
        "data": tx.get("input", tx.get("data")),
        "gas": tx["gas"],
    }
    if tx.get("to"):
        replay_tx["to"] = tx["to"]

    try:
        await web3.eth.call(replay_tx)
    except (ContractLogicError, Web3RPCError, ValueError) as e:
        logger.debug("Revert exception result is: %s", e)
        return extract_revert_reason(e) or unknown_error_message

    logger.warning("Transaction %s did not revert when replayed, could not fetch its revert reason", HexBytes(tx_hash).to_0x_hex())
    return unknown_error_message
