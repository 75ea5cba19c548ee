"""
Dependency and authentication utilities for the SecretKeeper service: bearer token extraction, verification into an identity context, and construction of the shared token verifier and secret service.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import config
from models.access.auth_models import IdentityContext
from services.auth.token_verifier import TokenVerifier, build_token_verifier
from services.common.errors import TokenInvalid
from services.secret_service import SecretService
from services.secrets.repository import SqlSecretRepository
from services.secrets.transit_client import build_key_client

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)

_build_lock = threading.Lock()
_token_verifier: Optional[TokenVerifier] = None
_secret_service: Optional[SecretService] = None


def get_token_verifier() -> TokenVerifier:
    global _token_verifier
    if _token_verifier is None:
        with _build_lock:
            if _token_verifier is None:
                _token_verifier = build_token_verifier(config)
    return _token_verifier


def get_secret_service() -> SecretService:
    global _secret_service
    if _secret_service is None:
        with _build_lock:
            if _secret_service is None:
                _secret_service = SecretService(
                    SqlSecretRepository(),
                    build_key_client(config),
                    max_secret_bytes=config.MAX_SECRET_BYTES,
                )
    return _secret_service


def _extract_bearer_token(request: Request, credentials: HTTPAuthorizationCredentials | None) -> Optional[str]:
    if credentials and getattr(credentials, "credentials", None):
        return credentials.credentials
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return None


def get_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> IdentityContext:
    token = _extract_bearer_token(request, credentials)
    if not token:
        raise TokenInvalid("Authentication required")
    return verifier.verify(token)
