"""
Authorization guard for secret operations: tenant isolation and capability scope checks. Pure functions over the verified identity context; identifiers are only ever compared against what the token verifier produced.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import logging

from models.access.auth_models import IdentityContext, Scope
from services.common.errors import CrossTenantDenied, InsufficientScope

logger = logging.getLogger(__name__)


def require_scope(ctx: IdentityContext, scope: Scope | str) -> None:
    value = scope.value if isinstance(scope, Scope) else str(scope)
    if not ctx.has_scope(value):
        logger.info("scope_denied subject=%s tenant=%s required=%s", ctx.subject, ctx.tenant_id, value)
        raise InsufficientScope(value)


def require_same_tenant(ctx: IdentityContext, target_tenant_id: str) -> None:
    if not ctx.tenant_id or ctx.tenant_id != target_tenant_id:
        logger.info("tenant_denied subject=%s tenant=%s", ctx.subject, ctx.tenant_id)
        raise CrossTenantDenied()


def require_ownership(ctx: IdentityContext, record) -> None:
    # Records are owned by their tenant; owner_id scopes within it.
    require_same_tenant(ctx, record.tenant_id)
