"""
Storage for secret records. The repository only inserts and reads: a record's wrapped key, IV, tag and ciphertext are written together in one transaction and are never modified afterwards.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from database import get_db_session
from db_models import SecretRecord

logger = logging.getLogger(__name__)


class SecretRepository(Protocol):
    def insert(self, record: SecretRecord) -> SecretRecord: ...
    def get(self, record_id: str) -> Optional[SecretRecord]: ...


class SqlSecretRepository:
    def insert(self, record: SecretRecord) -> SecretRecord:
        with get_db_session() as db:
            db.add(record)
            db.flush()
            db.refresh(record)
            db.expunge(record)
        logger.debug("secret_row_inserted id=%s tenant=%s", record.id, record.tenant_id)
        return record

    def get(self, record_id: str) -> Optional[SecretRecord]:
        if not record_id:
            return None
        with get_db_session() as db:
            record = db.get(SecretRecord, record_id)
            if record is not None:
                db.expunge(record)
            return record
