# Version History
# v1.0 - aes128gcm content encoding (RFC 8188) keyed by Web Push ECDH (RFC 8291).

from __future__ import annotations

import os
import struct
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from vapid import public_key_bytes

# Record size advertised in the header. Bodies are always a single record,
# so this does not track the payload length.
RECORD_SIZE = 4096

# Delimiter closing the last (and only) record.
FINAL_RECORD_DELIMITER = b"\x02"

SALT_SIZE = 16
AUTH_SECRET_SIZE = 16
KEY_SIZE = 16
NONCE_SIZE = 12
PUBLIC_KEY_SIZE = 65

WEBPUSH_INFO = b"WebPush: info\x00"
CEK_INFO = b"Content-Encoding: aes128gcm\x00"
NONCE_INFO = b"Content-Encoding: nonce\x00"


@dataclass(frozen=True)
class EncryptedMessage:
    salt: bytes
    local_public_key: bytes
    ciphertext: bytes

    @property
    def body(self) -> bytes:
        return frame(self.salt, self.local_public_key, self.ciphertext)


def hkdf(salt: bytes, ikm: bytes, info: bytes, length: int) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(ikm)


def frame(salt: bytes, local_public_key: bytes, ciphertext: bytes) -> bytes:
    header = salt + struct.pack(">IB", RECORD_SIZE, len(local_public_key)) + local_public_key
    return header + ciphertext


def derive_key_and_nonce(
    shared_secret: bytes,
    auth_secret: bytes,
    receiver_public: bytes,
    sender_public: bytes,
    salt: bytes,
) -> tuple[bytes, bytes]:
    # Receiver key first, then sender key. Swapping them still encrypts but
    # no browser can decrypt the result.
    prk = hkdf(auth_secret, shared_secret, WEBPUSH_INFO + receiver_public + sender_public, 32)
    return hkdf(salt, prk, CEK_INFO, KEY_SIZE), hkdf(salt, prk, NONCE_INFO, NONCE_SIZE)


def encrypt(plaintext: bytes, p256dh: bytes, auth_secret: bytes) -> EncryptedMessage:
    """Encrypt ``plaintext`` for one subscriber.

    A new ephemeral key pair and salt are generated on every call. Raises
    ``ValueError`` when ``p256dh`` is not a P-256 point or the auth secret
    has the wrong length.
    """
    if len(auth_secret) != AUTH_SECRET_SIZE:
        raise ValueError(f"auth secret must be {AUTH_SECRET_SIZE} bytes, got {len(auth_secret)}")
    if len(p256dh) != PUBLIC_KEY_SIZE:
        raise ValueError(f"p256dh key must be {PUBLIC_KEY_SIZE} bytes, got {len(p256dh)}")

    receiver_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), p256dh)

    local_key = ec.generate_private_key(ec.SECP256R1())
    local_public = public_key_bytes(local_key.public_key())
    shared_secret = local_key.exchange(ec.ECDH(), receiver_key)
    salt = os.urandom(SALT_SIZE)

    cek, nonce = derive_key_and_nonce(shared_secret, auth_secret, p256dh, local_public, salt)
    ciphertext = AESGCM(cek).encrypt(nonce, plaintext + FINAL_RECORD_DELIMITER, None)

    return EncryptedMessage(salt=salt, local_public_key=local_public, ciphertext=ciphertext)
