"""
Module defines Pydantic models for the secret store API: the store request, the metadata view returned to callers, and the reveal response.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class StoreSecretRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    tenant_id: str = Field(..., alias="tenantId", min_length=1, max_length=128)
    owner_id: str = Field(..., alias="ownerId", min_length=1, max_length=128)
    plaintext: str


class SecretMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    tenant_id: str = Field(..., alias="tenantId")
    owner_id: str = Field(..., alias="ownerId")
    created_at: datetime = Field(..., alias="createdAt")


class RevealSecretResponse(BaseModel):
    plaintext: str
