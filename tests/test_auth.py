import time

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from superfans import auth
from superfans.auth import (
    parse_authorization, resolve_user, verify_privy_token,
)
from superfans.errors import Unauthorized

APP_ID = "privy-app-1"


@pytest.fixture(scope="module")
def keypair():
    private = ec.generate_private_key(ec.SECP256R1())
    public_pem = private.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private, public_pem


def _token(private, **claims):
    now = int(time.time())
    body = {"sub": "did:privy:abc123", "iss": "privy.io", "aud": APP_ID,
            "iat": now, "exp": now + 3600}
    body.update(claims)
    return jwt.encode(body, private, algorithm="ES256")


def test_valid_privy_token(keypair):
    private, public_pem = keypair
    assert verify_privy_token(_token(private), key=public_pem,
                              app_id=APP_ID) == "did:privy:abc123"


@pytest.mark.parametrize("claims", [
    {"aud": "other-app"},
    {"iss": "evil.io"},
    {"exp": 1},
])
def test_rejected_privy_tokens(keypair, claims):
    private, public_pem = keypair
    with pytest.raises(Unauthorized):
        verify_privy_token(_token(private, **claims), key=public_pem,
                           app_id=APP_ID)


def test_token_signed_by_other_key(keypair):
    _, public_pem = keypair
    stranger = ec.generate_private_key(ec.SECP256R1())
    with pytest.raises(Unauthorized):
        verify_privy_token(_token(stranger), key=public_pem, app_id=APP_ID)


def test_privy_not_configured(keypair):
    private, _ = keypair
    with pytest.raises(Unauthorized):
        verify_privy_token(_token(private), key="", app_id=APP_ID)


def test_parse_farcaster():
    ident = parse_authorization("Farcaster farcaster:0042")
    assert ident.user_id == "farcaster:42"
    assert ident.type == "farcaster"
    assert ident.external_id == "42"
    assert ident.column == "farcaster_id"


def test_parse_bearer(monkeypatch):
    monkeypatch.setattr(auth, "verify_privy_token",
                        lambda token: f"did:privy:{token}")
    ident = parse_authorization("Bearer xyz")
    assert ident.user_id == "did:privy:xyz"
    assert ident.column == "privy_id"


@pytest.mark.parametrize("header", [
    None, "", "Farcaster", "Farcaster 42", "Farcaster farcaster:abc",
    "Farcaster farcaster:0", "Basic dXNlcjpwYXNz", "Bearer ",
])
def test_parse_rejects(header):
    with pytest.raises(Unauthorized):
        parse_authorization(header)


async def test_resolve_user_creates_once(gs):
    ident = parse_authorization("Farcaster farcaster:7")
    first = await resolve_user(gs, ident)
    second = await resolve_user(gs, ident)
    assert first.id == second.id
    assert first.role == "user"
