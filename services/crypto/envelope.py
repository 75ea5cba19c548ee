"""
Envelope encryption engine: AES-256-GCM over a per-record data-encryption key, binding each ciphertext to the identity of the record it belongs to.

The associated data is the canonical JSON form of ``{tenantId, ownerId, recordId, keyId}`` (sorted keys, no whitespace, UTF-8). Any change to one of those fields, to the ciphertext or to the tag makes decryption fail closed with ``AuthenticationFailure``.

Never log plaintext, key bytes or ciphertext values.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from services.common.errors import AuthenticationFailure

logger = logging.getLogger(__name__)

DEK_SIZE = 32  # AES-256
IV_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit GCM tag

KeyBytes = Union[bytes, bytearray]


@dataclass(frozen=True)
class IdentityTuple:
    tenant_id: str
    owner_id: str
    record_id: str
    key_id: str

    def to_aad(self) -> bytes:
        payload = {
            "keyId": self.key_id,
            "ownerId": self.owner_id,
            "recordId": self.record_id,
            "tenantId": self.tenant_id,
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True)
class EncryptedPayload:
    iv: bytes
    ciphertext: bytes
    tag: bytes


def generate_dek() -> bytearray:
    """Return 32 fresh random bytes in a mutable buffer so callers can zero it."""
    return bytearray(os.urandom(DEK_SIZE))


def zeroize(buf: bytearray | None) -> None:
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


def _cipher(dek: KeyBytes) -> AESGCM:
    if len(dek) != DEK_SIZE:
        raise ValueError(f"data key must be {DEK_SIZE} bytes")
    return AESGCM(bytes(dek))


def encrypt(dek: KeyBytes, plaintext: bytes, aad: IdentityTuple) -> EncryptedPayload:
    """Encrypt ``plaintext`` under ``dek`` with a fresh random IV.

    Args:
        dek: 32-byte data-encryption key, used for this one record only.
        plaintext: Secret payload.
        aad: Identity of the record; bound into the tag.

    Returns:
        EncryptedPayload with the 12-byte IV, the ciphertext and the 16-byte tag.
    """
    cipher = _cipher(dek)
    iv = os.urandom(IV_SIZE)
    sealed = cipher.encrypt(iv, plaintext, aad.to_aad())
    return EncryptedPayload(iv=iv, ciphertext=sealed[:-TAG_SIZE], tag=sealed[-TAG_SIZE:])


def decrypt(dek: KeyBytes, iv: bytes, tag: bytes, ciphertext: bytes, aad: IdentityTuple) -> bytes:
    """Decrypt and authenticate a record.

    Raises:
        AuthenticationFailure: on any size, key, ciphertext, tag or identity mismatch.
    """
    if len(iv) != IV_SIZE or len(tag) != TAG_SIZE:
        logger.debug("envelope_decrypt_rejected reason=size")
        raise AuthenticationFailure()
    try:
        cipher = _cipher(dek)
        return cipher.decrypt(bytes(iv), bytes(ciphertext) + bytes(tag), aad.to_aad())
    except (InvalidTag, ValueError) as exc:
        logger.debug("envelope_decrypt_rejected reason=%s", type(exc).__name__)
        raise AuthenticationFailure() from None
