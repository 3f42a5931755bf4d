"""
Ledger client boundary.

The core consumes the ledger through ``LedgerClient``: message signing and
verification, transaction event lookup, and memo-carrying transfers.
``JsonRpcLedgerClient`` implements it over a plain Ethereum JSON-RPC
endpoint for TIP-20 tokens.
"""

from __future__ import annotations

import itertools
import logging
import re
import time
from typing import Any, Optional, Protocol

import httpx
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import keccak, to_checksum_address

from .errors import (
    LedgerError,
    LedgerTransactionFailed,
    NotFoundError,
    StructuralError,
    TransferPendingError,
    TransientLedgerError,
)
from .settlement import TransferEvent, decode_transfer_with_memo

logger = logging.getLogger(__name__)

TRANSFER_WITH_MEMO_SELECTOR = keccak(text="transferWithMemo(address,uint256,bytes32)")[:4]
_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


class LedgerClient(Protocol):
    def sign_message(self, message: str) -> str: ...

    def verify_signature(self, address: str, message: str, signature: str) -> bool: ...

    def get_transaction_events(self, tx_hash: str) -> list[TransferEvent]: ...

    def send_transfer(self, *, token: str, to: str, amount: int, memo: str) -> str: ...


def is_tx_hash(value: Any) -> bool:
    return isinstance(value, str) and _TX_HASH_RE.match(value) is not None


class JsonRpcLedgerClient:
    """Ethereum JSON-RPC ledger client (receipts, logs, signed transfers)."""

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        account: Optional[LocalAccount] = None,
        timeout_seconds: float = 15.0,
        receipt_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        http: Optional[httpx.Client] = None,
    ):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.account = account
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._http = http or httpx.Client(timeout=timeout_seconds)
        self._ids = itertools.count(1)

    @classmethod
    def from_private_key(cls, rpc_url: str, chain_id: int, private_key: str, **kwargs) -> JsonRpcLedgerClient:
        return cls(rpc_url, chain_id, account=Account.from_key(private_key), **kwargs)

    @property
    def address(self) -> str:
        return self._require_account().address

    def sign_message(self, message: str) -> str:
        signed = self._require_account().sign_message(encode_defunct(text=message))
        return "0x" + bytes(signed.signature).hex()

    def verify_signature(self, address: str, message: str, signature: str) -> bool:
        try:
            sig = signature[2:] if signature.lower().startswith("0x") else signature
            recovered = Account.recover_message(encode_defunct(text=message), signature=bytes.fromhex(sig))
        except Exception:
            return False
        return recovered.lower() == address.lower()

    def get_transaction_events(self, tx_hash: str) -> list[TransferEvent]:
        """Decode TransferWithMemo events from a mined, successful transaction."""
        if not is_tx_hash(tx_hash):
            raise StructuralError("txHash must be 0x-prefixed 32-byte hex", "INVALID_TX_HASH")

        receipt = self._rpc("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            tx = self._rpc("eth_getTransactionByHash", [tx_hash])
            if tx is None:
                raise NotFoundError(f"Transaction not found: {tx_hash}", "TRANSACTION_NOT_FOUND")
            raise TransientLedgerError(f"Transaction {tx_hash} is not yet mined")

        if _hex_to_int(receipt.get("status", "0x1")) != 1:
            raise LedgerTransactionFailed(f"Transaction {tx_hash} reverted")

        events = []
        for log in receipt.get("logs") or []:
            event = decode_transfer_with_memo(log)
            if event is not None:
                events.append(event)
        return events

    def send_transfer(self, *, token: str, to: str, amount: int, memo: str) -> str:
        """Submit ``transferWithMemo`` and wait until it is mined."""
        account = self._require_account()
        memo_bytes = bytes.fromhex(memo[2:] if memo.startswith("0x") else memo)
        calldata = TRANSFER_WITH_MEMO_SELECTOR + abi_encode(
            ["address", "uint256", "bytes32"],
            [to_checksum_address(to), int(amount), memo_bytes],
        )
        data = "0x" + calldata.hex()
        token_address = to_checksum_address(token)

        nonce = _hex_to_int(self._rpc("eth_getTransactionCount", [account.address, "pending"]))
        gas_price = _hex_to_int(self._rpc("eth_gasPrice", []))
        gas = _hex_to_int(
            self._rpc("eth_estimateGas", [{"from": account.address, "to": token_address, "data": data}])
        )
        signed = account.sign_transaction(
            {
                "to": token_address,
                "value": 0,
                "data": data,
                "nonce": nonce,
                "gas": gas,
                "gasPrice": gas_price,
                "chainId": self.chain_id,
            }
        )
        tx_hash = self._rpc("eth_sendRawTransaction", ["0x" + bytes(signed.raw_transaction).hex()])
        logger.info("Submitted transfer %s (%d to %s, token %s)", tx_hash, amount, to, token)
        try:
            self._wait_for_receipt(tx_hash)
        except TransferPendingError:
            raise
        except TransientLedgerError as e:
            raise TransferPendingError(tx_hash, f"Receipt of {tx_hash} unavailable: {e.message}") from e
        return tx_hash

    def _wait_for_receipt(self, tx_hash: str) -> dict:
        deadline = time.monotonic() + self.receipt_timeout_seconds
        while True:
            receipt = self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt is not None:
                if _hex_to_int(receipt.get("status", "0x1")) != 1:
                    raise LedgerTransactionFailed(f"Transaction {tx_hash} reverted")
                return receipt
            if time.monotonic() >= deadline:
                raise TransferPendingError(tx_hash, f"Timed out waiting for receipt of {tx_hash}")
            time.sleep(self.poll_interval_seconds)

    def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._http.post(self.rpc_url, json=payload)
        except httpx.TransportError as e:
            raise TransientLedgerError(f"RPC {method} failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientLedgerError(f"RPC {method} unavailable ({response.status_code})")
        if response.status_code != 200:
            raise LedgerError(f"RPC {method} returned HTTP {response.status_code}")

        body = response.json()
        if body.get("error"):
            raise LedgerError(f"RPC {method} error: {body['error']}")
        return body.get("result")

    def _require_account(self) -> LocalAccount:
        if self.account is None:
            raise LedgerError("Ledger client has no signing account")
        return self.account

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)
