"""
SQLAlchemy models for the SecretKeeper service. A secret row holds only opaque material: the KMS-wrapped data key, the AES-GCM IV, tag and ciphertext, and the identity fields the ciphertext is bound to. Rows are written once and never updated.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, LargeBinary, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SecretRecord(Base):
    __tablename__ = "secrets"

    id:          Mapped[str]      = mapped_column(String(36),    primary_key=True, default=_uuid)
    tenant_id:   Mapped[str]      = mapped_column(String(128),   nullable=False, index=True)
    owner_id:    Mapped[str]      = mapped_column(String(128),   nullable=False)
    key_id:      Mapped[str]      = mapped_column(String(128),   nullable=False)
    key_version: Mapped[int]      = mapped_column(Integer,       nullable=False)
    wrapped_dek: Mapped[str]      = mapped_column(Text,          nullable=False)
    iv:          Mapped[bytes]    = mapped_column(LargeBinary(12), nullable=False)
    tag:         Mapped[bytes]    = mapped_column(LargeBinary(16), nullable=False)
    ciphertext:  Mapped[bytes]    = mapped_column(LargeBinary,   nullable=False)
    created_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)

    __table_args__ = (
        Index("idx_secrets_tenant_owner", "tenant_id", "owner_id"),
    )
