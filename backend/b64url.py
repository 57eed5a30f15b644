# Version History
# v1.0 - Unpadded URL-safe base64 helpers shared by VAPID and payload encryption.

from __future__ import annotations

import base64


def encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def decode(value: str) -> bytes:
    """Decode unpadded base64url; padding is restored before decoding.

    Characters outside the alphabet raise ``binascii.Error``.
    """
    padding = "=" * (-len(value) % 4)
    return base64.b64decode(value + padding, altchars=b"-_", validate=True)
