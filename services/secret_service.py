"""
Secret service orchestrating the store, reveal and metadata operations. Each operation passes the authorization guard before it touches the key service or the repository, generates or recovers exactly one data-encryption key, and zeroes that key before returning, whether the operation succeeded or not. A record is persisted only after its data key has been wrapped, so a key service failure leaves nothing behind.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Protocol, Union

from db_models import SecretRecord
from models.access.auth_models import IdentityContext, Scope
from models.secrets.records import SecretMeta
from services.auth.guard import require_ownership, require_same_tenant, require_scope
from services.common.errors import AuthenticationFailure, NotFound
from services.crypto import envelope
from services.crypto.envelope import IdentityTuple
from services.secrets.repository import SecretRepository
from services.secrets.transit_client import WrappedKey

logger = logging.getLogger(__name__)

DEFAULT_MAX_SECRET_BYTES = 65536


class KeyWrapper(Protocol):
    @property
    def key_id(self) -> str: ...
    def wrap(self, dek: Union[bytes, bytearray]) -> WrappedKey: ...
    def unwrap(self, wrapped: str) -> bytearray: ...


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_meta(record: SecretRecord) -> SecretMeta:
    return SecretMeta(
        id=record.id,
        tenant_id=record.tenant_id,
        owner_id=record.owner_id,
        created_at=_as_utc(record.created_at),
    )


def identity_of(record: SecretRecord) -> IdentityTuple:
    return IdentityTuple(
        tenant_id=record.tenant_id,
        owner_id=record.owner_id,
        record_id=record.id,
        key_id=record.key_id,
    )


class SecretService:
    def __init__(
        self,
        repository: SecretRepository,
        keys: KeyWrapper,
        *,
        max_secret_bytes: int = DEFAULT_MAX_SECRET_BYTES,
    ) -> None:
        self._repository = repository
        self._keys = keys
        self._max_secret_bytes = int(max_secret_bytes)

    def _fetch(self, record_id: str) -> SecretRecord:
        record = self._repository.get(record_id)
        if record is None:
            raise NotFound()
        return record

    def store_secret(
        self,
        ctx: IdentityContext,
        tenant_id: str,
        owner_id: str,
        plaintext: str,
    ) -> SecretMeta:
        require_scope(ctx, Scope.SECRET_WRITE)
        if not tenant_id or not tenant_id.strip():
            raise ValueError("tenantId must not be empty")
        require_same_tenant(ctx, tenant_id)

        if not owner_id or not owner_id.strip():
            raise ValueError("ownerId must not be empty")
        payload = plaintext.encode("utf-8")
        if len(payload) > self._max_secret_bytes:
            raise ValueError(f"Secret exceeds {self._max_secret_bytes} bytes")

        record_id = str(uuid.uuid4())
        key_id = self._keys.key_id
        dek: Optional[bytearray] = envelope.generate_dek()
        try:
            sealed = envelope.encrypt(
                dek,
                payload,
                IdentityTuple(tenant_id=tenant_id, owner_id=owner_id, record_id=record_id, key_id=key_id),
            )
            wrapped = self._keys.wrap(dek)
            record = self._repository.insert(
                SecretRecord(
                    id=record_id,
                    tenant_id=tenant_id,
                    owner_id=owner_id,
                    key_id=key_id,
                    key_version=wrapped.key_version,
                    wrapped_dek=wrapped.wrapped,
                    iv=sealed.iv,
                    tag=sealed.tag,
                    ciphertext=sealed.ciphertext,
                    created_at=datetime.now(timezone.utc),
                )
            )
        finally:
            envelope.zeroize(dek)
            dek = None

        logger.info(
            "secret_stored id=%s tenant=%s owner=%s subject=%s key=%s key_version=%s",
            record.id, record.tenant_id, record.owner_id, ctx.subject, key_id, record.key_version,
        )
        return to_meta(record)

    def reveal_secret(self, ctx: IdentityContext, record_id: str) -> str:
        record = self._fetch(record_id)
        require_ownership(ctx, record)
        require_scope(ctx, Scope.SECRET_READ)

        dek = self._keys.unwrap(record.wrapped_dek)
        try:
            payload = envelope.decrypt(dek, record.iv, record.tag, record.ciphertext, identity_of(record))
        finally:
            envelope.zeroize(dek)

        try:
            plaintext = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise AuthenticationFailure() from None
        logger.info("secret_revealed id=%s tenant=%s subject=%s", record.id, record.tenant_id, ctx.subject)
        return plaintext

    def get_secret_meta(self, ctx: IdentityContext, record_id: str) -> SecretMeta:
        record = self._fetch(record_id)
        require_ownership(ctx, record)
        return to_meta(record)
