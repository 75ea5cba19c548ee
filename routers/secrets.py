"""
Secret store API endpoints: store a secret, fetch its metadata, and reveal its plaintext. The three operations form a closed set; each route delegates to the synchronous secret service in the threadpool under a request-scoped timeout.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import logging
from typing import Any, Callable

from fastapi import APIRouter, Depends, status
from fastapi.concurrency import run_in_threadpool

from middleware.dependencies import get_identity, get_secret_service
from middleware.error_handlers import handle_route_errors
from middleware.resilience import with_timeout
from models.access.auth_models import IdentityContext
from models.secrets.records import RevealSecretResponse, SecretMeta, StoreSecretRequest
from services.secret_service import SecretService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["secrets"])


@with_timeout()
async def _run(fn: Callable[..., Any], *args: Any) -> Any:
    return await run_in_threadpool(fn, *args)


@router.get("/ping")
async def ping() -> str:
    return "pong"


@router.post("/secrets", response_model=SecretMeta, status_code=status.HTTP_201_CREATED)
@handle_route_errors()
async def store_secret(
    payload: StoreSecretRequest,
    identity: IdentityContext = Depends(get_identity),
    service: SecretService = Depends(get_secret_service),
):
    return await _run(
        service.store_secret,
        identity,
        payload.tenant_id,
        payload.owner_id,
        payload.plaintext,
    )


@router.get("/secrets/{secret_id}", response_model=SecretMeta)
@handle_route_errors()
async def get_secret_meta(
    secret_id: str,
    identity: IdentityContext = Depends(get_identity),
    service: SecretService = Depends(get_secret_service),
):
    return await _run(service.get_secret_meta, identity, secret_id)


@router.post("/secrets/{secret_id}/reveal", response_model=RevealSecretResponse)
@handle_route_errors()
async def reveal_secret(
    secret_id: str,
    identity: IdentityContext = Depends(get_identity),
    service: SecretService = Depends(get_secret_service),
):
    plaintext = await _run(service.reveal_secret, identity, secret_id)
    return RevealSecretResponse(plaintext=plaintext)
