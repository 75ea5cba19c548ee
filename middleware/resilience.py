"""
Request-scoped timeout decorator for route work that calls the key service and the database.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import asyncio
import logging
from functools import wraps
from typing import Awaitable, Callable, Optional, TypeVar, ParamSpec

from config import config

logger = logging.getLogger(__name__)

P = ParamSpec('P')
T = TypeVar('T')


def with_timeout(timeout: Optional[float] = None) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            limit = timeout if timeout is not None else config.REQUEST_TIMEOUT
            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=limit)
            except asyncio.TimeoutError:
                logger.error(f"Timeout after {limit}s for {func.__name__}")
                raise

        return wrapper
    return decorator
