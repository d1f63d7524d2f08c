"""
PulsePoint payload decryption.

The feed answers with ``{"ct": <base64>, "iv": <hex>, "s": <hex>}``.  The
plaintext is recovered the way the PulsePoint web client does it:

Key derivation
--------------
An OpenSSL ``EVP_BytesToKey``-style expansion with MD5::

    block_0 = b""
    block_n = MD5(block_{n-1} + passphrase + salt)
    key     = (block_1 + block_2 + ...)[:32]

The passphrase is a constant of the protocol, assembled character by
character from a seed string exactly as the web client builds it.

Cipher
------
AES-256-CBC with PKCS#7 padding.  There is no MAC: the scheme is
unauthenticated and this module cannot change that.

Unwrapping
----------
The decrypted text is a JSON *string literal* holding the feed JSON, so the
first character and everything from the last double quote on are dropped,
and escaped quotes are restored before parsing.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad
from pydantic import ValidationError

from relay.errors import DecryptionError
from relay.models.feed import DecryptedFeed, RawFeedPayload
from relay.utils.logger import get_logger

logger = get_logger(__name__)

KEY_SIZE = 32
_SEED = "CommonIncidents"


def build_passphrase() -> str:
    seed = _SEED
    return seed[13] + seed[1] + seed[2] + "brady" + "5" + "r" + seed.lower()[6] + seed[5] + "gs"


def derive_key(passphrase: bytes, salt: bytes, key_size: int = KEY_SIZE) -> bytes:
    """Expand *passphrase* and *salt* into a *key_size*-byte key."""
    key = b""
    block = b""
    while len(key) < key_size:
        block = hashlib.md5(block + passphrase + salt).digest()
        key += block
    return key[:key_size]


def unwrap_plaintext(text: str) -> str:
    """Strip the string-literal wrapper around the feed JSON."""
    end = text.rfind('"')
    inner = text[1:end] if end >= 0 else text[1:]
    return inner.replace('\\"', '"')


class PayloadDecryptor:
    """Turns a ``RawFeedPayload`` into a ``DecryptedFeed``.

    Any failure surfaces as a single ``DecryptionError``; no partial result
    is ever returned.
    """

    def __init__(self, passphrase: str | None = None) -> None:
        self._passphrase = (passphrase or build_passphrase()).encode("utf-8")

    def decrypt_text(self, payload: RawFeedPayload) -> str:
        """Return the unwrapped feed JSON text."""
        try:
            ciphertext = base64.b64decode(payload.ct, validate=False)
            iv = bytes.fromhex(payload.iv)
            salt = bytes.fromhex(payload.s)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError(f"Malformed payload encoding: {exc}", cause=exc) from exc

        key = derive_key(self._passphrase, salt)
        try:
            cipher = AES.new(key, AES.MODE_CBC, iv)
            plaintext = unpad(cipher.decrypt(ciphertext), AES.block_size)
            text = plaintext.decode("utf-8")
        except (ValueError, KeyError, UnicodeDecodeError) as exc:
            raise DecryptionError(f"Cipher step failed: {exc}", cause=exc) from exc

        return unwrap_plaintext(text)

    def decrypt(self, payload: RawFeedPayload) -> DecryptedFeed:
        text = self.decrypt_text(payload)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DecryptionError(f"Decrypted payload is not JSON: {exc}", cause=exc) from exc

        if not isinstance(data, dict):
            raise DecryptionError(f"Decrypted payload is a {type(data).__name__}, expected an object")

        try:
            feed = DecryptedFeed.model_validate(data)
        except ValidationError as exc:
            raise DecryptionError(f"Decrypted payload has an unexpected shape: {exc}", cause=exc) from exc

        logger.debug(
            "payload_decrypted",
            active=len(feed.incidents.active),
            recent=len(feed.incidents.recent),
        )
        return feed
