# Version History
# v1.0 - VAPID (RFC 8292) key loading and ES256 JWT authorization headers.

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlsplit

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

import b64url

# Push services reject tokens valid for more than 24 hours.
VAPID_TOKEN_TTL = 12 * 60 * 60

JWT_HEADER = {"typ": "JWT", "alg": "ES256"}
COORDINATE_SIZE = 32


class VapidError(ValueError):
    """Invalid VAPID key material or an endpoint no audience can be derived from."""


@dataclass(frozen=True)
class VapidHeaders:
    authorization: str
    crypto_key: str


@dataclass(frozen=True)
class VapidKeyPair:
    public_key: bytes
    private_key: ec.EllipticCurvePrivateKey
    subject: str

    @property
    def public_key_b64(self) -> str:
        return b64url.encode(self.public_key)


def normalize_subject(contact: str) -> str:
    contact = contact.strip()
    if contact.startswith(("mailto:", "https:")):
        return contact
    return f"mailto:{contact}"


def public_key_bytes(key: ec.EllipticCurvePublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


def load_key_pair(public_key: str, private_key: str, subject: str) -> VapidKeyPair:
    """Build the process-wide key pair from base64url config values.

    The private scalar must derive the configured public key, so bad key
    material is caught once here instead of on every signature.
    """
    try:
        raw_private = b64url.decode(private_key.strip())
        raw_public = b64url.decode(public_key.strip())
    except ValueError as exc:
        raise VapidError(f"VAPID keys are not valid base64url: {exc}") from exc

    if len(raw_private) != COORDINATE_SIZE:
        raise VapidError(f"VAPID private key must be {COORDINATE_SIZE} bytes, got {len(raw_private)}")

    try:
        key = ec.derive_private_key(int.from_bytes(raw_private, "big"), ec.SECP256R1())
    except ValueError as exc:
        raise VapidError(f"VAPID private key is not a valid P-256 scalar: {exc}") from exc

    derived_public = public_key_bytes(key.public_key())
    if derived_public != raw_public:
        raise VapidError("VAPID public key does not match the private key")

    return VapidKeyPair(public_key=derived_public, private_key=key, subject=normalize_subject(subject))


def audience_for(endpoint: str) -> str:
    try:
        parts = urlsplit(endpoint)
        port = parts.port
    except ValueError as exc:
        raise VapidError(f"Cannot derive VAPID audience from endpoint {endpoint!r}") from exc
    host = parts.hostname
    if not parts.scheme or not host:
        raise VapidError(f"Cannot derive VAPID audience from endpoint {endpoint!r}")
    # userinfo is never part of the origin
    if ":" in host:
        host = f"[{host}]"
    if port is not None:
        host = f"{host}:{port}"
    return f"{parts.scheme}://{host}"


def _json_segment(value: dict) -> str:
    return b64url.encode(json.dumps(value, separators=(",", ":")).encode("utf-8"))


def sign_raw(key: ec.EllipticCurvePrivateKey, data: bytes) -> bytes:
    """ES256 signature in the JOSE r || s form, not DER."""
    der = key.sign(data, ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der)
    return r.to_bytes(COORDINATE_SIZE, "big") + s.to_bytes(COORDINATE_SIZE, "big")


def build_jwt(endpoint: str, keys: VapidKeyPair, clock: Callable[[], float] = time.time) -> str:
    claims = {
        "aud": audience_for(endpoint),
        "exp": int(clock()) + VAPID_TOKEN_TTL,
        "sub": keys.subject,
    }
    signing_input = f"{_json_segment(JWT_HEADER)}.{_json_segment(claims)}"
    signature = sign_raw(keys.private_key, signing_input.encode("ascii"))
    return f"{signing_input}.{b64url.encode(signature)}"


def vapid_headers(endpoint: str, keys: VapidKeyPair, clock: Callable[[], float] = time.time) -> VapidHeaders:
    token = build_jwt(endpoint, keys, clock)
    public = keys.public_key_b64
    return VapidHeaders(
        authorization=f"vapid t={token}, k={public}",
        crypto_key=f"p256ecdsa={public}",
    )


def generate_key_pair() -> tuple[str, str]:
    """Return a fresh ``(public, private)`` pair, both base64url encoded."""
    key = ec.generate_private_key(ec.SECP256R1())
    private = key.private_numbers().private_value.to_bytes(COORDINATE_SIZE, "big")
    return b64url.encode(public_key_bytes(key.public_key())), b64url.encode(private)
