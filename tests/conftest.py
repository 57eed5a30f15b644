"""Shared fixtures: process VAPID keys, subscriber key material, gateway client."""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, replace

import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import b64url
from ece import derive_key_and_nonce
from vapid import generate_key_pair, load_key_pair, public_key_bytes

# The gateway reads its config on import, so keys must exist before main loads.
_PUBLIC, _PRIVATE = generate_key_pair()
os.environ["VAPID_PUBLIC_KEY"] = _PUBLIC
os.environ["VAPID_PRIVATE_KEY"] = _PRIVATE
os.environ["VAPID_SUBJECT"] = "push@example.com"

from fastapi.testclient import TestClient  # noqa: E402

from main import app, get_settings  # noqa: E402


@dataclass
class Subscriber:
    """Browser side of a subscription, able to decrypt what the engine sends."""

    private_key: ec.EllipticCurvePrivateKey
    public_key: bytes
    auth_secret: bytes

    @property
    def p256dh(self) -> str:
        return b64url.encode(self.public_key)

    @property
    def auth(self) -> str:
        return b64url.encode(self.auth_secret)

    def subscription_json(self, endpoint: str, device_id: str = "device-1") -> dict:
        return {
            "endpoint": endpoint,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
            "deviceId": device_id,
            "createdAt": 1700000000000,
        }

    def decrypt(self, body: bytes) -> bytes:
        salt = body[:16]
        record_size, key_length = struct.unpack(">IB", body[16:21])
        sender_public = body[21 : 21 + key_length]
        ciphertext = body[21 + key_length :]
        assert len(ciphertext) <= record_size

        sender_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), sender_public)
        shared = self.private_key.exchange(ec.ECDH(), sender_key)
        cek, nonce = derive_key_and_nonce(shared, self.auth_secret, self.public_key, sender_public, salt)
        padded = AESGCM(cek).decrypt(nonce, ciphertext, None)
        assert padded.endswith(b"\x02")
        return padded[:-1]


def make_subscriber() -> Subscriber:
    key = ec.generate_private_key(ec.SECP256R1())
    return Subscriber(private_key=key, public_key=public_key_bytes(key.public_key()), auth_secret=os.urandom(16))


@pytest.fixture
def subscriber() -> Subscriber:
    return make_subscriber()


@pytest.fixture
def subscriber_factory():
    return make_subscriber


@pytest.fixture(scope="session")
def vapid_keys():
    return load_key_pair(_PUBLIC, _PRIVATE, "push@example.com")


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def unconfigured_client():
    settings = get_settings()
    unconfigured = replace(settings, vapid=None, vapid_error="VAPID not configured")
    app.dependency_overrides[get_settings] = lambda: unconfigured
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
