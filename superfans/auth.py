"""
Request identity.

Two schemes are accepted on ``Authorization``:

    Bearer <privy access token>       ES256 JWT issued by Privy
    Farcaster farcaster:<fid>         Farcaster mini-app user

Both resolve to an ``Identity`` whose ``user_id`` is the external id
(Privy DID or ``farcaster:<fid>``); the internal ``users`` row is looked up,
or created on first sight, from that.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

import jwt

from . import config
from .errors import Unauthorized
from .helpers import new_id, now_ts
from .infra.sql import GatedAsyncSession
from .model.orm import User
from .model.purchases import insert_or_get

log = logging.getLogger(__name__)

PRIVY_ISSUER = "privy.io"


@dataclass(frozen=True)
class Identity:
    user_id: str
    type: str  # privy | farcaster

    @property
    def column(self) -> str:
        return "farcaster_id" if self.type == "farcaster" else "privy_id"

    @property
    def external_id(self) -> str:
        if self.type == "farcaster":
            return self.user_id.split(":", 1)[1]
        return self.user_id


@dataclass(frozen=True)
class CurrentUser:
    id: str
    identity: Identity
    role: str = "user"
    email: Optional[str] = None


def verify_privy_token(token: str,
                       key: str = config.PRIVY_VERIFICATION_KEY,
                       app_id: str = config.PRIVY_APP_ID) -> str:
    if not key or not app_id:
        log.error("[Auth] Privy verification key or app id not configured")
        raise Unauthorized()
    try:
        claims = jwt.decode(
            token, key, algorithms=["ES256"],
            issuer=PRIVY_ISSUER, audience=app_id,
            options={"require": ["sub", "exp", "iss", "aud"]},
        )
    except jwt.InvalidTokenError as e:
        log.info("[Auth] Privy token rejected: %s", e)
        raise Unauthorized()
    return claims["sub"]


def _farcaster_identity(value: str) -> Identity:
    prefix, _, fid = value.strip().partition(":")
    if prefix != "farcaster" or not fid.isdigit() or int(fid) <= 0:
        raise Unauthorized()
    return Identity(user_id=f"farcaster:{int(fid)}", type="farcaster")


def parse_authorization(header: Optional[str]) -> Identity:
    if not header:
        raise Unauthorized()
    scheme, _, value = header.strip().partition(" ")
    scheme = scheme.lower()
    if scheme == "bearer" and value.strip():
        return Identity(user_id=verify_privy_token(value.strip()),
                        type="privy")
    if scheme == "farcaster" and value.strip():
        return _farcaster_identity(value)
    raise Unauthorized()


async def resolve_user(gs: GatedAsyncSession,
                       identity: Identity) -> CurrentUser:
    user, _ = await insert_or_get(gs, User, {
        "id": new_id(),
        identity.column: identity.external_id,
        "role": "user",
        "created_at": now_ts(),
    }, identity.column)
    return CurrentUser(id=user.id, identity=identity, role=user.role,
                       email=user.email)


def is_admin(user: CurrentUser) -> bool:
    if config.ADMIN_CHECK_BYPASS:
        if config.IS_PRODUCTION:
            log.error("[Auth] ADMIN_CHECK_BYPASS is set in production; "
                      "ignoring it")
        else:
            log.warning("[Auth] admin check bypassed for %s",
                        user.identity.user_id)
            return True
    if user.identity.user_id in config.ADMIN_USER_IDS:
        return True
    return user.role == "admin"
