"""Summary: Encoding utilities for OAuth tokens stored at rest.

Importance: Keeps refresh and access tokens out of the database in plaintext and detects tampering.
Alternatives: Use a dedicated secrets manager or a vetted encryption library.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

from mailharvest.errors import StorageError


_PREFIX = "v1:"
_NONCE_BYTES = 16
_TAG_BYTES = 16


class TokenCodec:
    """Summary: Keyed token encoder/decoder.

    Importance: Each value gets a random nonce so equal tokens never share ciphertext.
    Alternatives: Use AES-GCM from the cryptography package.
    """

    def __init__(self, secret: str) -> None:
        """Summary: Initialize with a deployment secret.

        Importance: Derives separate stream and MAC keys from one configured value.
        Alternatives: Configure the two keys independently.
        """

        raw = secret.encode("utf-8")
        self._stream_key = hashlib.sha256(b"stream:" + raw).digest()
        self._mac_key = hashlib.sha256(b"mac:" + raw).digest()

    def encode(self, plaintext: str) -> str:
        """Summary: Encode plaintext into an opaque, tagged string.

        Importance: Avoids storing raw tokens in SQLite.
        Alternatives: Store tokens in a vault.
        """

        nonce = secrets.token_bytes(_NONCE_BYTES)
        raw = plaintext.encode("utf-8")
        key = _keystream(self._stream_key, nonce, len(raw))
        body = bytes(b ^ k for b, k in zip(raw, key))
        tag = hmac.new(self._mac_key, nonce + body, hashlib.sha256).digest()[:_TAG_BYTES]
        return _PREFIX + base64.urlsafe_b64encode(nonce + tag + body).decode("ascii")

    def decode(self, payload: str) -> str:
        """Summary: Decode a stored value back to plaintext.

        Importance: Allows using stored tokens for provider calls.
        Alternatives: Skip decoding and require re-authentication.
        """

        if not payload.startswith(_PREFIX):
            raise StorageError("Stored token has an unknown encoding")
        try:
            blob = base64.urlsafe_b64decode(payload[len(_PREFIX):].encode("ascii"))
        except ValueError as exc:
            raise StorageError("Stored token is not valid base64") from exc
        if len(blob) < _NONCE_BYTES + _TAG_BYTES:
            raise StorageError("Stored token is truncated")
        nonce = blob[:_NONCE_BYTES]
        tag = blob[_NONCE_BYTES:_NONCE_BYTES + _TAG_BYTES]
        body = blob[_NONCE_BYTES + _TAG_BYTES:]
        expected = hmac.new(self._mac_key, nonce + body, hashlib.sha256).digest()[:_TAG_BYTES]
        if not hmac.compare_digest(tag, expected):
            raise StorageError("Stored token failed integrity check")
        key = _keystream(self._stream_key, nonce, len(body))
        return bytes(b ^ k for b, k in zip(body, key)).decode("utf-8")


def _keystream(key: bytes, nonce: bytes, length: int) -> bytes:
    """Derive a keystream of the requested length from key and nonce."""

    output = b""
    counter = 0
    while len(output) < length:
        output += hashlib.sha256(key + nonce + counter.to_bytes(4, "big")).digest()
        counter += 1
    return output[:length]
