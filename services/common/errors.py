"""
Error taxonomy for the secret store. Every failure that can end a store, reveal or metadata operation maps to exactly one of these classes, each carrying a stable machine-readable code and the HTTP status the transport layer answers with. Messages are deliberately generic: they never name the claim, field or key that failed, and never embed upstream response bodies.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations


class SecretKeeperError(Exception):
    code: str = "internal_error"
    status_code: int = 500
    default_detail: str = "Internal server error"
    retryable: bool = False

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(SecretKeeperError):
    code = "not_found"
    status_code = 404
    default_detail = "Secret not found"


class CrossTenantDenied(SecretKeeperError):
    code = "cross_tenant_denied"
    status_code = 403
    default_detail = "Cross-tenant access denied"


class InsufficientScope(SecretKeeperError):
    code = "insufficient_scope"
    status_code = 403
    default_detail = "Insufficient scope"

    def __init__(self, required_scope: str | None = None) -> None:
        super().__init__()
        self.required_scope = required_scope


class TokenInvalid(SecretKeeperError):
    code = "token_invalid"
    status_code = 401
    default_detail = "Invalid token"


class KeyServiceUnavailable(SecretKeeperError):
    code = "key_service_unavailable"
    status_code = 503
    default_detail = "Key service unavailable"
    retryable = True


class AuthenticationFailure(SecretKeeperError):
    code = "integrity_check_failed"
    status_code = 500
    default_detail = "Secret integrity check failed"
