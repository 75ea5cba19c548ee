"""
Shared HTTP client construction for outbound calls that are not routed through a vendor SDK, currently the token issuer's published key set. Centralizes timeouts and connection pool limits so every caller gets the same bounded behaviour.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import httpx

_MAX_CONNECTIONS = 10
_MAX_KEEPALIVE_CONNECTIONS = 2


def create_client(timeout_seconds: float) -> httpx.Client:
    return httpx.Client(
        timeout=httpx.Timeout(timeout_seconds),
        limits=httpx.Limits(
            max_connections=_MAX_CONNECTIONS,
            max_keepalive_connections=_MAX_KEEPALIVE_CONNECTIONS,
        ),
        headers={"Accept": "application/json"},
    )
