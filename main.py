"""
Entrypoint for the SecretKeeper envelope-encrypted secret store.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import asyncio
import logging

import uvloop
from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import config
from database import connection_test, ensure_database_exists, init_database, init_db
from middleware.error_handlers import (
    general_exception_handler,
    secret_error_handler,
    validation_exception_handler,
)
from middleware.headers import security_headers_middleware
from routers import secrets as secrets_router
from services.common.errors import SecretKeeperError

asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("secretkeeper")

if config.DATABASE_AUTO_CREATE:
    ensure_database_exists(config.DATABASE_URL)
init_database(config.DATABASE_URL, config.LOG_LEVEL == "debug")
init_db()

app = FastAPI(
    title="SecretKeeper",
    description="Tenant-scoped envelope-encrypted secret store",
    version="1.0.0",
    docs_url="/docs" if config.ENABLE_API_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_API_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_API_DOCS else None,
)

app.middleware("http")(security_headers_middleware)
app.add_exception_handler(SecretKeeperError, secret_error_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

if config.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )

app.include_router(secrets_router.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "healthy", "service": "secretkeeper"}


@app.get("/healthz")
async def healthz() -> dict:
    return {"ok": True}


@app.get("/ready")
async def ready():
    checks = {"database": connection_test()}
    ok = all(checks.values())
    payload = {"status": "ready" if ok else "not_ready", "checks": checks}
    if not ok:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)
    return payload


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT, loop="uvloop", log_level=config.LOG_LEVEL)
