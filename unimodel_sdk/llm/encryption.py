# unimodel_sdk/llm/encryption.py
# SPDX-License-Identifier: Apache-2.0
"""
Hybrid (envelope) encryption for providers that require encrypted payloads.

Protocol
--------
Per payload-bearing request:

1. Generate a fresh AES-256 key and 96-bit IV from a CSPRNG.
2. Encrypt the JSON-serialized payload with AES-256-GCM (128-bit tag, no AAD)
   and replace the payload field with the base64 ciphertext.
3. Wrap the AES key with the provider's RSA public key. The RSA plaintext is
   the *base64 text* of the key bytes, not the raw bytes; the service unwraps
   it the same way.
4. Attach the header

       X-DashScope-EncryptionKey: {"public_key_id": "...",
                                   "encrypt_key": "<base64 wrapped key>",
                                   "iv": "<base64 IV>"}

5. Record {key, iv} in an EncryptionContextStore under a per-request
   correlation id.

On response: a *string* output field is ciphertext and is decrypted in place
with the matching context; a non-string output is already plaintext. The
context is released when the exchange ends (a streamed response reuses it for
every chunk).

Every failure in this module is an EncryptionError; callers never see
garbage plaintext.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from unimodel_sdk.llm.errors import EncryptionError, MalformedResponse

LOG = logging.getLogger(__name__)

AES_KEY_BYTES = 32
IV_BYTES = 12
GCM_TAG_BYTES = 16

ENCRYPTION_HEADER = "X-DashScope-EncryptionKey"


# =============================================================================
# Primitives
# =============================================================================

def generate_key() -> bytes:
    """Fresh 256-bit AES key."""
    return secrets.token_bytes(AES_KEY_BYTES)


def generate_iv() -> bytes:
    """Fresh 96-bit GCM nonce."""
    return secrets.token_bytes(IV_BYTES)


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(text: Any, what: str) -> bytes:
    if not isinstance(text, (str, bytes)):
        raise EncryptionError(f"{what} must be base64 text, got {type(text).__name__}")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionError(f"{what} is not valid base64") from e


def _check_key_iv(key: bytes, iv: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != AES_KEY_BYTES:
        raise EncryptionError(f"AES key must be {AES_KEY_BYTES} bytes")
    if not isinstance(iv, (bytes, bytearray)) or len(iv) != IV_BYTES:
        raise EncryptionError(f"IV must be {IV_BYTES} bytes")


def encrypt(key: bytes, iv: bytes, plaintext: str) -> str:
    """AES-256-GCM encrypt `plaintext`; returns base64(ciphertext || tag)."""
    _check_key_iv(key, iv)
    if not isinstance(plaintext, str):
        raise EncryptionError("plaintext must be a string")
    try:
        sealed = AESGCM(bytes(key)).encrypt(bytes(iv), plaintext.encode("utf-8"), None)
    except (ValueError, OverflowError) as e:
        raise EncryptionError(f"AES-GCM encryption failed: {e}") from e
    return _b64encode(sealed)


def decrypt(key: bytes, iv: bytes, ciphertext: str) -> str:
    """
    Inverse of `encrypt`.

    Wrong key, wrong IV, tampered ciphertext or invalid base64 all raise
    EncryptionError (GCM tag verification fails before any plaintext is
    released).
    """
    _check_key_iv(key, iv)
    raw = _b64decode(ciphertext, "ciphertext")
    if len(raw) < GCM_TAG_BYTES:
        raise EncryptionError("ciphertext is shorter than the GCM tag")
    try:
        plain = AESGCM(bytes(key)).decrypt(bytes(iv), raw, None)
    except InvalidTag as e:
        raise EncryptionError("AES-GCM authentication failed") from e
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EncryptionError("decrypted payload is not valid UTF-8") from e


def load_public_key(public_key: str) -> rsa.RSAPublicKey:
    """
    Parse an RSA public key given as base64 DER (SubjectPublicKeyInfo), or PEM.
    """
    if not isinstance(public_key, str) or not public_key.strip():
        raise EncryptionError("RSA public key is empty")
    try:
        if public_key.lstrip().startswith("-----BEGIN"):
            key = serialization.load_pem_public_key(public_key.encode("ascii"))
        else:
            key = serialization.load_der_public_key(_b64decode(public_key.strip(), "RSA public key"))
    except EncryptionError:
        raise
    except (ValueError, TypeError) as e:
        raise EncryptionError(f"malformed RSA public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise EncryptionError(f"public key is not RSA: {type(key).__name__}")
    return key


def wrap_key(aes_key: bytes, rsa_public_key_b64: str) -> str:
    """
    RSA-encrypt (PKCS#1 v1.5) the base64 text of `aes_key`; returns base64.
    """
    if not isinstance(aes_key, (bytes, bytearray)) or len(aes_key) != AES_KEY_BYTES:
        raise EncryptionError(f"AES key must be {AES_KEY_BYTES} bytes")
    public_key = load_public_key(rsa_public_key_b64)
    key_text = base64.b64encode(bytes(aes_key))
    try:
        wrapped = public_key.encrypt(key_text, padding.PKCS1v15())
    except ValueError as e:
        raise EncryptionError(f"RSA key wrap failed: {e}") from e
    return _b64encode(wrapped)


# =============================================================================
# Correlation context
# =============================================================================

@dataclass(frozen=True)
class EncryptionContext:
    """Per-request key material; never logged."""
    aes_key: bytes = field(repr=False)
    iv: bytes = field(repr=False)
    public_key_id: str = ""


class EncryptionContextStore:
    """
    Thread-safe map from correlation id to EncryptionContext.

    Ids are uuid4 hex strings generated per request, so two concurrent
    requests never share one.
    """

    def __init__(self) -> None:
        self._contexts: Dict[str, EncryptionContext] = {}
        self._lock = threading.Lock()

    def put(self, context: EncryptionContext) -> str:
        correlation_id = uuid.uuid4().hex
        with self._lock:
            self._contexts[correlation_id] = context
        return correlation_id

    def get(self, correlation_id: str) -> Optional[EncryptionContext]:
        with self._lock:
            return self._contexts.get(correlation_id)

    def pop(self, correlation_id: str) -> Optional[EncryptionContext]:
        with self._lock:
            return self._contexts.pop(correlation_id, None)

    def discard(self, correlation_id: Optional[str]) -> None:
        if correlation_id is None:
            return
        with self._lock:
            self._contexts.pop(correlation_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def __contains__(self, correlation_id: object) -> bool:
        with self._lock:
            return correlation_id in self._contexts


# =============================================================================
# Public key + cache
# =============================================================================

@dataclass(frozen=True)
class PublicKey:
    public_key: str = field(repr=False)
    public_key_id: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PublicKey":
        """Parse `{"data": {"public_key": ..., "public_key_id": ...}}`."""
        data = payload.get("data") if isinstance(payload, Mapping) else None
        if not isinstance(data, Mapping):
            raise MalformedResponse("public key response has no 'data' object")
        public_key = data.get("public_key")
        public_key_id = data.get("public_key_id")
        if not public_key or public_key_id is None:
            raise MalformedResponse("public key response is missing public_key/public_key_id")
        return cls(public_key=str(public_key), public_key_id=str(public_key_id))


class PublicKeyCache:
    """
    Fetch-once cache for a provider's public key.

    Concurrent first callers share one fetch. A failed fetch is not cached,
    so the next call tries again.
    """

    def __init__(self, fetch: Callable[[], Awaitable[PublicKey]]) -> None:
        self._fetch = fetch
        self._key: Optional[PublicKey] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[PublicKey]:
        return self._key

    async def get(self) -> PublicKey:
        if self._key is not None:
            return self._key
        async with self._lock:
            if self._key is None:
                self._key = await self._fetch()
                LOG.debug("Fetched public key id=%s", self._key.public_key_id)
            return self._key

    def set(self, key: PublicKey) -> None:
        self._key = key

    def invalidate(self) -> None:
        self._key = None


# =============================================================================
# Envelope
# =============================================================================

@dataclass(frozen=True)
class SealedRequest:
    body: Dict[str, Any]
    headers: Dict[str, str]
    correlation_id: Optional[str] = None


class EncryptionEnvelope:
    """
    Seals outbound request bodies and opens inbound responses.

    Parameters
    ----------
    public_key:
        The provider's current RSA public key and its id.
    store:
        Correlation store; share one across envelopes if responses may be
        handled by a different envelope instance than the one that sealed.
    """

    def __init__(
        self,
        public_key: PublicKey,
        store: Optional[EncryptionContextStore] = None,
    ) -> None:
        self._public_key = public_key
        self._store = store if store is not None else EncryptionContextStore()

    @property
    def store(self) -> EncryptionContextStore:
        return self._store

    def seal(self, body: Mapping[str, Any], *, payload_field: str = "input") -> SealedRequest:
        """
        Encrypt `body[payload_field]` in place (on a copy).

        A body without a payload is returned unchanged with no header and no
        context: there is nothing to protect.
        """
        payload = body.get(payload_field)
        if payload is None:
            return SealedRequest(body=dict(body), headers={})

        if isinstance(payload, str):
            plaintext = payload
        else:
            try:
                plaintext = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
            except (TypeError, ValueError) as e:
                raise EncryptionError(f"payload is not JSON-serializable: {e}") from e

        aes_key = generate_key()
        iv = generate_iv()
        ciphertext = encrypt(aes_key, iv, plaintext)
        wrapped_key = wrap_key(aes_key, self._public_key.public_key)

        sealed_body = dict(body)
        sealed_body[payload_field] = ciphertext
        header = json.dumps(
            {
                "public_key_id": self._public_key.public_key_id,
                "encrypt_key": wrapped_key,
                "iv": _b64encode(iv),
            }
        )
        correlation_id = self._store.put(
            EncryptionContext(aes_key=aes_key, iv=iv, public_key_id=self._public_key.public_key_id)
        )
        return SealedRequest(
            body=sealed_body,
            headers={ENCRYPTION_HEADER: header},
            correlation_id=correlation_id,
        )

    def open(
        self,
        response: Mapping[str, Any],
        correlation_id: Optional[str],
        *,
        payload_field: str = "output",
    ) -> Dict[str, Any]:
        """
        Decrypt a string `payload_field` into its JSON structure.

        Non-string fields are returned as-is (already plaintext). An encrypted
        field without a matching context is replaced with None rather than
        raising, since the correlation may legitimately be gone.
        """
        opened = dict(response)
        value = opened.get(payload_field)
        if not isinstance(value, str):
            return opened

        context = self._store.get(correlation_id) if correlation_id else None
        if context is None:
            LOG.warning(
                "Encrypted %r field without a matching encryption context; leaving it undecrypted",
                payload_field,
            )
            opened[payload_field] = None
            return opened

        plaintext = decrypt(context.aes_key, context.iv, value)
        try:
            opened[payload_field] = json.loads(plaintext)
        except ValueError as e:
            raise MalformedResponse(f"decrypted {payload_field!r} is not valid JSON") from e
        return opened

    def release(self, correlation_id: Optional[str]) -> None:
        """Drop the context once the exchange has ended."""
        self._store.discard(correlation_id)


__all__ = [
    "AES_KEY_BYTES",
    "IV_BYTES",
    "ENCRYPTION_HEADER",
    "generate_key",
    "generate_iv",
    "encrypt",
    "decrypt",
    "load_public_key",
    "wrap_key",
    "EncryptionContext",
    "EncryptionContextStore",
    "PublicKey",
    "PublicKeyCache",
    "SealedRequest",
    "EncryptionEnvelope",
]
