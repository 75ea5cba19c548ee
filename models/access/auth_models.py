"""
This module defines Pydantic models for the caller identity established by bearer token verification and the capability scopes the secret operations require.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field


class Scope(str, Enum):
    SECRET_READ = "secret:read"
    SECRET_WRITE = "secret:write"


def parse_scopes(raw: Optional[object]) -> FrozenSet[str]:
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        return frozenset(part for part in raw.split() if part)
    if isinstance(raw, Iterable):
        return frozenset(str(part).strip() for part in raw if str(part).strip())
    return frozenset()


class IdentityContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject: str
    tenant_id: str
    scopes: FrozenSet[str] = Field(default_factory=frozenset)

    def has_scope(self, scope: "Scope | str") -> bool:
        value = scope.value if isinstance(scope, Scope) else str(scope)
        return value in self.scopes
