"""
Client for the Metal token-presale provider.

Metal is both a payment rail (fans buy campaign tokens with USDC through a
presale) and a collaborator for campaign set-up (a presale is created when a
campaign is activated and resolved if the rest of the activation fails).
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from . import config
from .errors import Retryable, ServerError, ValidationFailed
from .infra.timings import timeit

log = logging.getLogger(__name__)

OK_STATUSES = frozenset({"success", "completed"})
MICROS = 1_000_000


class MetalError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None,
                 kind: str = "UNKNOWN_ERROR") -> None:
        self.status_code = status_code
        self.kind = kind
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind in ("NETWORK_ERROR", "RATE_LIMIT", "API_ERROR")


def _error_kind(status: int) -> str:
    if status == 400:
        return "VALIDATION_ERROR"
    if status in (401, 403):
        return "AUTHENTICATION_ERROR"
    if status == 404:
        return "NOT_FOUND"
    if status == 429:
        return "RATE_LIMIT"
    if status >= 500:
        return "API_ERROR"
    return "UNKNOWN_ERROR"


@dataclass(frozen=True)
class Presale:
    id: str
    status: Optional[str] = None


class MetalClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str = config.METAL_API_URL,
        secret_key: str = config.METAL_SECRET_KEY,
        public_key: str = config.METAL_PUBLIC_KEY,
        timeout: float = config.METAL_TIMEOUT,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.public_key = public_key
        self.timeout = timeout

    async def _request(self, method: str, path: str, *,
                       json: Optional[dict] = None,
                       public: bool = False) -> Any:
        key = self.public_key if public else self.secret_key
        if not key:
            raise MetalError("Metal API key not configured",
                             kind="AUTHENTICATION_ERROR")
        try:
            async with timeit(f"metal.{method.lower()}"):
                r = await self.http.request(
                    method, f"{self.base_url}{path}",
                    json=json,
                    headers={"x-api-key": key,
                             "content-type": "application/json"},
                    timeout=self.timeout,
                )
        except httpx.TimeoutException as e:
            raise MetalError(f"Metal API timed out: {e}",
                             kind="NETWORK_ERROR")
        except httpx.TransportError as e:
            raise MetalError(f"Metal API unreachable: {e}",
                             kind="NETWORK_ERROR")

        if r.status_code >= 400:
            try:
                body = r.json()
                msg = body.get("message") or body.get("error")
            except ValueError:
                msg = None
            raise MetalError(msg or f"HTTP {r.status_code}",
                             status_code=r.status_code,
                             kind=_error_kind(r.status_code))
        data = r.json()
        if isinstance(data, dict) and data.get("success") is False:
            raise MetalError("API request failed", status_code=r.status_code,
                             kind="API_ERROR")
        return data

    # ---
    # holders
    # ---
    async def get_or_create_holder(self, user_id: str) -> Dict[str, Any]:
        return await self._request("PUT", f"/holder/{user_id}", public=True)

    async def get_holder_transactions(
            self, holder_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/holder/{holder_id}/transactions")
        if isinstance(data, dict):
            data = data.get("transactions", data.get("data"))
        if not isinstance(data, list):
            raise MetalError("Unexpected holder transactions payload",
                             kind="API_ERROR")
        return data

    # ---
    # presales
    # ---
    async def create_presale(
        self, *, campaign_id: str, token_address: str, price: float,
        total_supply: Optional[int] = None,
        lock_duration: Optional[int] = None,
    ) -> Presale:
        body: Dict[str, Any] = {
            # campaign id doubles as presale id
            "id": campaign_id,
            "tokenAddress": token_address,
            "price": price,
        }
        if total_supply:
            body["totalSupply"] = total_supply
        if lock_duration:
            body["lockDuration"] = lock_duration
        log.info("[Metal Presale] creating presale for campaign %s",
                 campaign_id)
        data = await self._request("POST", "/merchant/presale", json=body)
        if not data or not data.get("id"):
            raise MetalError("Failed to create Metal presale - no presale ID "
                             "returned", kind="API_ERROR")
        return Presale(id=data["id"], status=data.get("status"))

    async def resolve_presale(self, presale_id: str) -> Presale:
        log.info("[Metal Presale] resolving presale %s", presale_id)
        data = await self._request("POST", "/merchant/presale/resolve",
                                   json={"presaleId": presale_id})
        return Presale(id=data.get("id", presale_id),
                       status=data.get("status"))

    async def list_presales(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/merchant/presales")
        if isinstance(data, dict):
            data = data.get("data", [])
        return data or []


def _normalize_hash(tx_hash: str) -> str:
    h = tx_hash if tx_hash.startswith("0x") else f"0x{tx_hash}"
    return h.lower()


def _micros(v: Any) -> int:
    return round(float(v or 0) * MICROS)


async def verify_transaction(
    client: MetalClient,
    *,
    holder_id: str,
    tx_hash: str,
    expected_amount_usdc: float,
    tolerance: float = config.METAL_AMOUNT_TOLERANCE,
) -> Dict[str, Any]:
    """
    Confirm that ``tx_hash`` appears in the holder's Metal history with the
    expected USDC amount and a successful status. Returns the matching
    transaction.
    """
    normalized = _normalize_hash(tx_hash)
    try:
        txs = await client.get_holder_transactions(holder_id)
    except MetalError as e:
        log.error("[Metal Verification] fetching holder %s failed: %s",
                  holder_id, e)
        if e.retryable:
            raise Retryable(
                "Unable to verify transaction with Metal. Please try again."
            )
        if e.kind == "NOT_FOUND":
            raise ValidationFailed("Metal holder not found",
                                   field="metal_holder_id")
        raise ServerError("Failed to verify transaction with Metal API")

    match = next(
        (t for t in txs
         if (t.get("transactionHash") or "").lower() == normalized),
        None,
    )
    if match is None:
        log.warning("[Metal Verification] %s not in %d holder transactions",
                    normalized, len(txs))
        raise ValidationFailed(
            "Transaction not found in Metal records. The transaction may "
            "still be processing or was not completed through Metal.",
            extra={"tx_hash": normalized},
        )

    actual = _micros(match.get("amount"))
    expected = _micros(expected_amount_usdc)
    if abs(actual - expected) > _micros(tolerance):
        raise ValidationFailed(
            f"Transaction amount mismatch: expected {expected_amount_usdc} "
            f"USDC, got {actual / MICROS} USDC"
        )

    status = (match.get("status") or "").lower()
    if status not in OK_STATUSES:
        raise ValidationFailed(
            f"Transaction status is {match.get('status') or 'undefined'}, "
            "not successful"
        )

    log.info("[Metal Verification] verified %s (%s USDC)", normalized,
             actual / MICROS)
    return match
