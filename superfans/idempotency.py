"""
Idempotency keys for payment requests.

A key is derived from the fields that make two requests "the same purchase"
(user, club, items, amounts, redirect targets) and never from timestamps or
per-request randomness, so a client retry or a double click maps onto the
key of the first attempt. The key is handed to the payment provider and/or
stored alongside the purchase.
"""
from __future__ import annotations
import hashlib
import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

_CLIENT_KEY_RE = re.compile(r"^[\x21-\x7e]{1,255}$")


def _sort_token(v: Any) -> str:
    # missing optional values sort as empty strings
    if v is None:
        return ""
    if isinstance(v, (dict, list)):
        return json.dumps(v, sort_keys=True, separators=(",", ":"))
    return str(v)


def canonical_items(
    items: Iterable[Mapping[str, Any]], order_by: Sequence[str]
) -> List[Dict[str, Any]]:
    """
    Stable-sort ``items`` by the ``order_by`` keys, then by every other key
    in alphabetical order as the final tie-break.
    """
    rows = [dict(i) for i in items]
    all_keys = sorted({k for r in rows for k in r})
    tail = [k for k in all_keys if k not in order_by]
    keys = list(order_by) + tail

    def sort_key(row: Mapping[str, Any]):
        return tuple(_sort_token(row.get(k)) for k in keys)

    return sorted(rows, key=sort_key)


def canonical_json(fields: Mapping[str, Any]) -> str:
    return json.dumps(fields, sort_keys=True, separators=(",", ":"),
                      ensure_ascii=True, default=str)


def derive_key(
    prefix: str,
    fields: Mapping[str, Any],
    *,
    list_fields: Optional[Mapping[str, Sequence[str]]] = None,
) -> str:
    """
    ``list_fields`` maps a list-valued field name to its sort keys.
    Returns ``<prefix>_<sha256 hex>``.
    """
    data = dict(fields)
    for name, order_by in (list_fields or {}).items():
        if data.get(name) is not None:
            data[name] = canonical_items(data[name], order_by)
    digest = hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()
    return f"{prefix}_{digest}"


def client_key(raw: Optional[str]) -> Optional[str]:
    """A client-supplied ``Idempotency-Key`` header, if usable."""
    if raw is None:
        return None
    raw = raw.strip()
    if not _CLIENT_KEY_RE.match(raw):
        return None
    return raw


# ----------------------------
# per-rail keys
# ----------------------------
CART_ITEM_FIELDS = ("tier_reward_id", "quantity", "final_price_cents",
                    "original_price_cents", "campaign_id")


def cart_checkout_key(
    *, user_id: str, club_id: str, total_credits: int,
    items: Iterable[Mapping[str, Any]], success_url: str, cancel_url: str,
) -> str:
    return derive_key(
        "cart_checkout",
        {
            "user_id": user_id,
            "club_id": club_id,
            "total_credits": total_credits,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "items": [
                {f: i.get(f) for f in CART_ITEM_FIELDS} for i in items
            ],
        },
        list_fields={"items": ("tier_reward_id", "campaign_id")},
    )


def credit_purchase_key(
    *, user_id: str, club_id: str, campaign_id: str, credit_amount: int,
    success_url: str, cancel_url: str,
) -> str:
    return derive_key("credit_purchase", {
        "user_id": user_id,
        "club_id": club_id,
        "campaign_id": campaign_id,
        "credit_amount": credit_amount,
        "success_url": success_url,
        "cancel_url": cancel_url,
    })


def upgrade_key(
    *, user_id: str, club_id: str, reward_id: str, purchase_type: str,
    amount_cents: int, success_url: str, cancel_url: str,
) -> str:
    return derive_key("tier_upgrade", {
        "user_id": user_id,
        "club_id": club_id,
        "reward_id": reward_id,
        "purchase_type": purchase_type,
        "amount_cents": amount_cents,
        "success_url": success_url,
        "cancel_url": cancel_url,
    })


def refund_key(claim_id: str) -> str:
    return f"refund_{claim_id}"
