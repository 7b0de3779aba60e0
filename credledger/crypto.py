"""
Crypto primitives: content hashing, AES-256-GCM envelopes, key wrapping
under the process master key, and HMAC.

All functions are deterministic apart from the random key/IV material.
"""

import base64
import hashlib
import hmac
import json
import os
import re
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import IntegrityError, ValidationError

ALGORITHM = "aes-256-gcm"
KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16
PAYLOAD_VERSION = 1
HASH_RE = re.compile(r"0x[0-9a-fA-F]{64}")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


# ----------------------------
# Hashing
# ----------------------------
def content_hash(data: bytes) -> bytes:
    """SHA-256 digest of the plaintext (32 raw bytes)."""
    return hashlib.sha256(data).digest()


def content_hash_hex(data: bytes) -> str:
    return "0x" + hashlib.sha256(data).hexdigest()


def is_document_hash(value) -> bool:
    return isinstance(value, str) and HASH_RE.fullmatch(value) is not None


def normalize_hash(value) -> str:
    """Validate a 0x-prefixed 32-byte hex string and lowercase it."""
    if not is_document_hash(value):
        raise ValidationError("Invalid document hash format", value=str(value)[:80])
    return value.lower()


def hash_to_bytes32(value: str) -> bytes:
    return bytes.fromhex(normalize_hash(value)[2:])


def bytes32_to_hash(raw: bytes) -> str:
    if len(raw) != 32:
        raise ValidationError("Expected 32 bytes", length=len(raw))
    return "0x" + raw.hex()


# ----------------------------
# Envelope encryption
# ----------------------------
@dataclass
class Envelope:
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    key: Optional[bytes] = None
    algorithm: str = ALGORITHM

    def to_payload(self) -> bytes:
        """Serialized form uploaded to the content store. The key is never included."""
        return json.dumps({
            "v": PAYLOAD_VERSION,
            "alg": self.algorithm,
            "iv": _b64(self.iv),
            "tag": _b64(self.auth_tag),
            "ciphertext": _b64(self.ciphertext),
        }, sort_keys=True).encode("utf-8")

    @classmethod
    def from_payload(cls, payload: bytes) -> "Envelope":
        try:
            data = json.loads(payload.decode("utf-8"))
            if data.get("alg") != ALGORITHM:
                raise IntegrityError(f"Unsupported envelope algorithm: {data.get('alg')}")
            return cls(
                ciphertext=_unb64(data["ciphertext"]),
                iv=_unb64(data["iv"]),
                auth_tag=_unb64(data["tag"]),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise IntegrityError("Malformed encrypted payload") from e


def encrypt(data: bytes) -> Envelope:
    """Encrypt with a fresh 256-bit key and a fresh 96-bit IV."""
    key = AESGCM.generate_key(bit_length=256)
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, data, None)
    return Envelope(ciphertext=sealed[:-TAG_BYTES], iv=iv, auth_tag=sealed[-TAG_BYTES:], key=key)


def decrypt(envelope: Envelope, key: Optional[bytes] = None) -> bytes:
    key = key or envelope.key
    if not key or len(key) != KEY_BYTES:
        raise IntegrityError("Missing or invalid decryption key")
    try:
        return AESGCM(key).decrypt(envelope.iv, envelope.ciphertext + envelope.auth_tag, None)
    except (InvalidTag, ValueError) as e:
        raise IntegrityError("Decryption failed") from e


# ----------------------------
# Key wrapping
# ----------------------------
@dataclass
class WrappedKey:
    wrapped: bytes
    iv: bytes

    def serialize(self) -> str:
        return f"{_b64(self.iv)}:{_b64(self.wrapped)}"

    @classmethod
    def deserialize(cls, text: str) -> "WrappedKey":
        try:
            iv, wrapped = text.split(":", 1)
            return cls(wrapped=_unb64(wrapped), iv=_unb64(iv))
        except (ValueError, AttributeError) as e:
            raise IntegrityError("Malformed wrapped key") from e


class KeyWrapper:
    """Wraps per-document keys under SHA-256(master secret)."""

    def __init__(self, master_secret):
        if not master_secret:
            raise ValueError("MASTER_KEY is not configured")
        if isinstance(master_secret, str):
            master_secret = master_secret.encode("utf-8")
        self._kek = AESGCM(hashlib.sha256(master_secret).digest())

    def __repr__(self):
        return "KeyWrapper(<redacted>)"

    def wrap(self, key: bytes) -> WrappedKey:
        iv = os.urandom(IV_BYTES)
        return WrappedKey(wrapped=self._kek.encrypt(iv, key, None), iv=iv)

    def unwrap(self, wrapped: WrappedKey) -> bytes:
        try:
            return self._kek.decrypt(wrapped.iv, wrapped.wrapped, None)
        except (InvalidTag, ValueError) as e:
            raise IntegrityError("Key unwrap failed") from e


# ----------------------------
# HMAC
# ----------------------------
def _to_bytes(value) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def hmac_sign(data, secret) -> str:
    return hmac.new(_to_bytes(secret), _to_bytes(data), hashlib.sha256).hexdigest()


def verify_hmac(data, tag, secret) -> bool:
    return constant_time_equals(hmac_sign(data, secret), tag)


def constant_time_equals(a, b) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(_to_bytes(a), _to_bytes(b))
