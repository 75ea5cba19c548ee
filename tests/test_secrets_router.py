"""
Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.testclient import TestClient
from hvac.exceptions import VaultDown

try:
    from ._env import ensure_test_env
    from ._fakes import AUDIENCE, ISSUER, FakeKeyWrapper, InMemorySecretRepository, TokenFactory
except ImportError:
    from tests._env import ensure_test_env
    from tests._fakes import AUDIENCE, ISSUER, FakeKeyWrapper, InMemorySecretRepository, TokenFactory
ensure_test_env()

from config import config as app_config
from middleware.dependencies import get_secret_service, get_token_verifier
from middleware.error_handlers import (
    general_exception_handler,
    secret_error_handler,
    validation_exception_handler,
)
from middleware.headers import security_headers_middleware
from routers import secrets as secrets_router
from services.auth.token_verifier import StaticKeySet, TokenVerifier
from services.common.errors import SecretKeeperError
from services.secret_service import SecretService
from services.secrets import transit_client


@pytest.fixture(scope="module")
def tokens():
    return TokenFactory(kid="router-key")


@pytest.fixture
def keys():
    return FakeKeyWrapper()


@pytest.fixture
def repo():
    return InMemorySecretRepository()


@pytest.fixture
def client(tokens, keys, repo):
    app = FastAPI()
    app.middleware("http")(security_headers_middleware)
    app.add_exception_handler(SecretKeeperError, secret_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    app.include_router(secrets_router.router)

    verifier = TokenVerifier(StaticKeySet(tokens.jwks()), issuer=ISSUER, audience=AUDIENCE)
    service = SecretService(repo, keys)
    app.dependency_overrides[get_token_verifier] = lambda: verifier
    app.dependency_overrides[get_secret_service] = lambda: service
    return TestClient(app, raise_server_exceptions=False)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _store(client, token, tenant="T1", owner="O1", plaintext="hello"):
    return client.post(
        "/api/v1/secrets",
        json={"tenantId": tenant, "ownerId": owner, "plaintext": plaintext},
        headers=_auth(token),
    )


def test_ping(client):
    resp = client.get("/api/v1/ping")
    assert resp.status_code == 200
    assert resp.json() == "pong"


def test_store_and_reveal(client, tokens):
    token = tokens.mint(tenant_id="T1", sub="O1")
    resp = _store(client, token)
    assert resp.status_code == 201
    body = resp.json()
    assert set(body) == {"id", "tenantId", "ownerId", "createdAt"}
    assert body["tenantId"] == "T1"
    assert resp.headers["Cache-Control"] == "no-store"

    meta = client.get(f"/api/v1/secrets/{body['id']}", headers=_auth(token))
    assert meta.status_code == 200
    assert meta.json()["id"] == body["id"]

    revealed = client.post(f"/api/v1/secrets/{body['id']}/reveal", headers=_auth(token))
    assert revealed.status_code == 200
    assert revealed.json() == {"plaintext": "hello"}
    assert revealed.headers["Cache-Control"] == "no-store"


def test_cross_tenant_reveal_is_forbidden(client, tokens):
    stored = _store(client, tokens.mint(tenant_id="T1")).json()
    resp = client.post(f"/api/v1/secrets/{stored['id']}/reveal", headers=_auth(tokens.mint(tenant_id="T2")))
    assert resp.status_code == 403
    assert resp.json()["code"] == "cross_tenant_denied"


def test_store_without_write_scope(client, tokens, keys, repo):
    resp = _store(client, tokens.mint(scope="secret:read"))
    assert resp.status_code == 403
    assert resp.json()["code"] == "insufficient_scope"
    assert keys.wrap_calls == 0
    assert repo.insert_calls == 0


def test_kms_failure_maps_to_503(client, tokens, keys, repo):
    keys.fail_wrap = True
    resp = _store(client, tokens.mint())
    assert resp.status_code == 503
    assert resp.json() == {"detail": "Key service unavailable", "code": "key_service_unavailable"}
    assert resp.headers["Retry-After"] == "1"
    assert repo.rows == {}


def test_missing_and_invalid_tokens_are_401(client, tokens):
    missing = client.post("/api/v1/secrets", json={"tenantId": "T1", "ownerId": "O1", "plaintext": "x"})
    assert missing.status_code == 401
    assert missing.headers["WWW-Authenticate"].startswith("Bearer")

    forged = _store(client, TokenFactory(kid="router-key").mint())
    assert forged.status_code == 401
    assert forged.json() == {"detail": "Invalid token", "code": "token_invalid"}


def test_unknown_secret_is_404(client, tokens):
    resp = client.get("/api/v1/secrets/does-not-exist", headers=_auth(tokens.mint()))
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


def test_validation_errors_do_not_echo_plaintext(client, tokens):
    resp = client.post(
        "/api/v1/secrets",
        json={"tenantId": "", "ownerId": "O1", "plaintext": "super-secret-value"},
        headers=_auth(tokens.mint()),
    )
    assert resp.status_code == 422
    assert "super-secret-value" not in resp.text


def test_oversized_secret_is_400(client, tokens):
    resp = _store(client, tokens.mint(), plaintext="x" * 70000)
    assert resp.status_code == 400


class _SealedVault:
    def __init__(self):
        self.token = None
        self.login_calls = 0
        self.transit_calls = 0
        self.auth = SimpleNamespace(approle=SimpleNamespace(login=self._login))
        self.secrets = SimpleNamespace(transit=SimpleNamespace(encrypt_data=self._transit, decrypt_data=self._transit))

    def _login(self, role_id, secret_id):
        self.login_calls += 1
        raise VaultDown("sealed")

    def _transit(self, **kwargs):
        self.transit_calls += 1
        raise AssertionError("transit must not be reached without a login")


@pytest.fixture
def sealed_vault(monkeypatch):
    vault = _SealedVault()
    monkeypatch.setattr(transit_client.hvac, "Client", lambda **kwargs: vault)
    monkeypatch.setattr(app_config, "VAULT_TOKEN", None)
    monkeypatch.setattr(app_config, "VAULT_ROLE_ID", "role")
    monkeypatch.setattr(app_config, "VAULT_SECRET_ID", "secret-id")
    return vault


def test_approle_vault_is_untouched_until_guard_passes(tokens, sealed_vault):
    app = FastAPI()
    app.add_exception_handler(SecretKeeperError, secret_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    app.include_router(secrets_router.router)
    verifier = TokenVerifier(StaticKeySet(tokens.jwks()), issuer=ISSUER, audience=AUDIENCE)
    app.dependency_overrides[get_token_verifier] = lambda: verifier
    client = TestClient(app, raise_server_exceptions=False)

    denied = _store(client, tokens.mint(scope="secret:read"))
    assert denied.status_code == 403
    assert sealed_vault.login_calls == 0
    assert sealed_vault.transit_calls == 0

    resp = _store(client, tokens.mint())
    assert resp.status_code == 503
    assert resp.json() == {"detail": "Key service unavailable", "code": "key_service_unavailable"}
    assert sealed_vault.login_calls == 1
    assert sealed_vault.transit_calls == 0
