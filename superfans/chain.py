"""
USDC transfer verification against a Base JSON-RPC endpoint.

Only the transaction receipt is trusted: the call must have succeeded, must
have been sent to the USDC token contract, and the token's ERC-20
``Transfer`` logs must move exactly the expected amount to the club's
receiving wallet. Anything the client says about the payment besides the
transaction hash is ignored.
"""
from __future__ import annotations
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from . import config
from .errors import Retryable, ServerError, ValidationFailed
from .helpers import TX_HASH_RE
from .infra.timings import timeit

log = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = (
    "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
)

_rpc_ids = itertools.count(1)


@dataclass(frozen=True)
class VerifiedTransfer:
    tx_hash: str
    sender: str
    recipient: str
    amount_units: int
    raw_amount: int
    block_number: Optional[int]


class TransferRejected(ValidationFailed):
    """The transaction exists but does not prove the expected payment."""


def normalize_tx_hash(value: Any, field: str = "tx_hash") -> str:
    if not isinstance(value, str) or not value:
        raise ValidationFailed(f"{field} is required", field=field)
    if not TX_HASH_RE.match(value):
        raise ValidationFailed(
            f"{field} must be a 32-byte hex string (64 hex characters, "
            "optionally prefixed with 0x)", field=field,
        )
    if not value.startswith("0x"):
        value = "0x" + value
    return value.lower()


def _hex_to_int(v: Any, what: str = "quantity") -> int:
    if v is None:
        return 0
    if isinstance(v, int):
        return v
    s = str(v)
    try:
        if s.startswith(("0x", "0X")):
            return int(s[2:], 16)
        return int(s)
    except ValueError:
        # "0x" included: no digits is not a number
        raise TransferRejected(f"Malformed {what} in transaction receipt")


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


class UsdcVerifier:
    def __init__(
        self,
        http: httpx.AsyncClient,
        rpc_url: str = config.CHAIN_RPC_URL,
        token_address: str = config.USDC_CONTRACT_ADDRESS,
        decimals: int = config.USDC_DECIMALS,
        timeout: float = config.CHAIN_RPC_TIMEOUT,
    ) -> None:
        self.http = http
        self.rpc_url = rpc_url
        self.token_address = token_address.lower()
        self.decimals = decimals
        self.timeout = timeout

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(_rpc_ids), "method": method,
                "params": params}
        try:
            async with timeit(f"chain.{method}"):
                r = await self.http.post(self.rpc_url, json=body,
                                         timeout=self.timeout)
        except httpx.TimeoutException:
            log.warning("[Chain] %s timed out", method)
            raise Retryable("Blockchain RPC timed out, retry shortly")
        except httpx.TransportError as e:
            log.warning("[Chain] %s transport error: %s", method, e)
            raise Retryable("Blockchain RPC unreachable, retry shortly")
        if r.status_code >= 500 or r.status_code == 429:
            raise Retryable("Blockchain RPC unavailable, retry shortly")
        if r.status_code != 200:
            raise ServerError(f"Blockchain RPC returned HTTP {r.status_code}")
        try:
            payload = r.json()
        except ValueError:
            raise Retryable("Blockchain RPC returned malformed JSON")
        if payload.get("error"):
            err = payload["error"]
            log.warning("[Chain] %s rpc error: %s", method, err)
            raise Retryable(
                "Blockchain RPC error, retry shortly",
                details=err.get("message") if isinstance(err, dict) else err,
            )
        return payload.get("result")

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._rpc("eth_getTransactionReceipt", [tx_hash])

    def _transfers_to(self, receipt: Dict[str, Any],
                      recipient: str) -> List[Dict[str, Any]]:
        out = []
        for entry in receipt.get("logs") or []:
            if (entry.get("address") or "").lower() != self.token_address:
                continue
            topics = entry.get("topics") or []
            if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
                continue
            if _topic_address(topics[2]) != recipient:
                continue
            out.append({
                "from": _topic_address(topics[1]),
                "to": _topic_address(topics[2]),
                "value": _hex_to_int(entry.get("data") or "0x0",
                                     "Transfer value"),
            })
        return out

    async def verify_transfer(
        self, tx_hash: str, *, recipient: str, amount_units: int,
    ) -> VerifiedTransfer:
        tx_hash = normalize_tx_hash(tx_hash)
        recipient = recipient.lower()

        log.info("[Chain] verifying %s -> %s (%s USDC)", tx_hash, recipient,
                 amount_units)
        receipt = await self.get_receipt(tx_hash)
        if not receipt:
            raise Retryable(
                "Transaction receipt not found yet, retry shortly",
                extra={"tx_hash": tx_hash},
            )

        if _hex_to_int(receipt.get("status"), "status") != 1:
            raise TransferRejected("Transaction failed on blockchain")

        if (receipt.get("to") or "").lower() != self.token_address:
            raise TransferRejected("Transaction not sent to USDC contract")

        transfers = self._transfers_to(receipt, recipient)
        if not transfers:
            raise TransferRejected(
                "Transaction does not transfer USDC to the club wallet"
            )

        raw = sum(t["value"] for t in transfers)
        expected_raw = amount_units * (10 ** self.decimals)
        if raw != expected_raw:
            raise TransferRejected(
                "Transferred amount does not match purchase",
                details={"expected_raw": str(expected_raw),
                         "actual_raw": str(raw)},
            )

        return VerifiedTransfer(
            tx_hash=tx_hash,
            sender=transfers[0]["from"],
            recipient=recipient,
            amount_units=amount_units,
            raw_amount=raw,
            block_number=(
                _hex_to_int(receipt["blockNumber"])
                if receipt.get("blockNumber") else None
            ),
        )
