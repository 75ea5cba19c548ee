"""
Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import base64
from types import SimpleNamespace

import pytest
import requests
from hvac.exceptions import Forbidden, InternalServerError, InvalidRequest, VaultDown

from services.common.errors import KeyServiceUnavailable
from services.secrets import transit_client
from services.secrets.transit_client import TransitKeyClient, VaultClientError, WrappedKey

DEK = bytes(range(32))


class FakeTransit:
    def __init__(self):
        self.encrypt_calls = []
        self.decrypt_calls = []
        self.encrypt_results = []
        self.decrypt_results = []

    @staticmethod
    def _next(results, default):
        if not results:
            return default
        result = results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def encrypt_data(self, name, plaintext, mount_point="transit"):
        self.encrypt_calls.append({"name": name, "plaintext": plaintext, "mount_point": mount_point})
        return self._next(
            self.encrypt_results,
            {"data": {"ciphertext": "vault:v3:opaque", "key_version": 3}},
        )

    def decrypt_data(self, name, ciphertext, mount_point="transit"):
        self.decrypt_calls.append({"name": name, "ciphertext": ciphertext, "mount_point": mount_point})
        return self._next(
            self.decrypt_results,
            {"data": {"plaintext": base64.b64encode(DEK).decode()}},
        )


@pytest.fixture
def transit():
    return FakeTransit()


def _client(transit, **kwargs):
    vault = SimpleNamespace(secrets=SimpleNamespace(transit=transit))
    kwargs.setdefault("backoff", 0)
    kwargs.setdefault("max_backoff", 0)
    return TransitKeyClient(vault, "sek", mount_point="transit", **kwargs)


def test_wrap_sends_base64_dek_and_returns_version(transit):
    client = _client(transit)
    wrapped = client.wrap(bytearray(DEK))
    assert wrapped == WrappedKey(wrapped="vault:v3:opaque", key_version=3)
    call = transit.encrypt_calls[0]
    assert call["name"] == "sek"
    assert base64.b64decode(call["plaintext"]) == DEK
    assert client.key_id == "sek"


def test_wrap_rejects_wrong_dek_size(transit):
    with pytest.raises(ValueError):
        _client(transit).wrap(b"short")
    assert transit.encrypt_calls == []


@pytest.mark.parametrize(
    "data",
    [
        {"ciphertext": "vault:v1:x"},
        {"ciphertext": "vault:v1:x", "key_version": None},
        {"ciphertext": "vault:v1:x", "key_version": "1"},
        {"ciphertext": "vault:v1:x", "key_version": 0},
        {"ciphertext": "vault:v1:x", "key_version": True},
        {"key_version": 1},
        {"ciphertext": "", "key_version": 1},
    ],
)
def test_wrap_malformed_response_is_unavailable(transit, data):
    transit.encrypt_results.append({"data": data})
    with pytest.raises(KeyServiceUnavailable):
        _client(transit).wrap(DEK)


def test_wrap_missing_data_is_unavailable(transit):
    transit.encrypt_results.append({"errors": ["boom"]})
    with pytest.raises(KeyServiceUnavailable):
        _client(transit).wrap(DEK)


def test_wrap_is_not_retried(transit):
    transit.encrypt_results.append(InternalServerError("vault exploded"))
    with pytest.raises(KeyServiceUnavailable) as exc:
        _client(transit).wrap(DEK)
    assert len(transit.encrypt_calls) == 1
    assert "exploded" not in str(exc.value)


def test_wrap_network_error_is_unavailable(transit):
    transit.encrypt_results.append(requests.ConnectionError("refused"))
    with pytest.raises(KeyServiceUnavailable):
        _client(transit).wrap(DEK)
    assert len(transit.encrypt_calls) == 1


def test_unwrap_returns_mutable_dek(transit):
    dek = _client(transit).unwrap("vault:v3:opaque")
    assert isinstance(dek, bytearray)
    assert bytes(dek) == DEK
    assert transit.decrypt_calls[0]["ciphertext"] == "vault:v3:opaque"


def test_unwrap_retries_transient_errors(transit):
    transit.decrypt_results.extend([VaultDown("sealed"), requests.Timeout("slow")])
    dek = _client(transit, max_retries=3).unwrap("vault:v3:opaque")
    assert bytes(dek) == DEK
    assert len(transit.decrypt_calls) == 3


def test_unwrap_gives_up_after_bounded_attempts(transit):
    transit.decrypt_results.extend([requests.ConnectionError("down")] * 5)
    with pytest.raises(KeyServiceUnavailable):
        _client(transit, max_retries=2).unwrap("vault:v3:opaque")
    assert len(transit.decrypt_calls) == 2


def test_unwrap_does_not_retry_client_errors(transit):
    transit.decrypt_results.append(InvalidRequest("bad ciphertext"))
    with pytest.raises(KeyServiceUnavailable):
        _client(transit, max_retries=3).unwrap("vault:v3:opaque")
    assert len(transit.decrypt_calls) == 1


@pytest.mark.parametrize(
    "data",
    [{}, {"plaintext": None}, {"plaintext": "%%%not-base64"}, {"plaintext": base64.b64encode(b"short").decode()}],
)
def test_unwrap_malformed_plaintext_is_unavailable(transit, data):
    transit.decrypt_results.append({"data": data})
    with pytest.raises(KeyServiceUnavailable):
        _client(transit).unwrap("vault:v3:opaque")


def test_unwrap_empty_blob_is_unavailable(transit):
    with pytest.raises(KeyServiceUnavailable):
        _client(transit).unwrap("")
    assert transit.decrypt_calls == []


def test_forbidden_triggers_single_reauthentication(transit):
    logins = []
    transit.decrypt_results.append(Forbidden("token expired"))
    client = _client(transit, reauthenticate=lambda: logins.append(1))
    assert bytes(client.unwrap("vault:v3:opaque")) == DEK
    assert logins == [1]


def test_forbidden_without_reauthentication_is_unavailable(transit):
    transit.encrypt_results.append(Forbidden("denied"))
    with pytest.raises(KeyServiceUnavailable):
        _client(transit).wrap(DEK)


def _cfg(**overrides):
    values = dict(
        VAULT_ADDR="http://vault.test:8200",
        VAULT_TIMEOUT=1.0,
        VAULT_CACERT=None,
        VAULT_TOKEN=None,
        VAULT_ROLE_ID=None,
        VAULT_SECRET_ID=None,
        VAULT_SECRET_ID_FILE=None,
        VAULT_TRANSIT_MOUNT="transit",
        TRANSIT_KEY_NAME="sek",
        KMS_MAX_RETRIES=3,
        RETRY_BACKOFF=0,
        RETRY_MAX_BACKOFF=0,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_build_key_client_with_token():
    client = transit_client.build_key_client(_cfg(VAULT_TOKEN="s.test"))
    assert client.key_id == "sek"


def test_build_key_client_requires_secret_id_for_approle():
    with pytest.raises(VaultClientError):
        transit_client.build_key_client(_cfg(VAULT_ROLE_ID="role"))


def test_secret_id_file_is_read_lazily(tmp_path):
    path = tmp_path / "secret-id"
    path.write_text("from-file\n")
    fn = transit_client._secret_id_fn(_cfg(VAULT_SECRET_ID_FILE=str(path)))
    path.write_text("rotated\n")
    assert fn() == "rotated"


class FakeApproleVault:
    def __init__(self, login_error=None):
        self.token = None
        self.login_calls = 0
        self.login_error = login_error
        self.transit = FakeTransit()
        self.auth = SimpleNamespace(approle=SimpleNamespace(login=self._login))
        self.secrets = SimpleNamespace(transit=self.transit)

    def _login(self, role_id, secret_id):
        self.login_calls += 1
        if self.login_error is not None:
            raise self.login_error
        return {"auth": {"client_token": "s.approle"}}


def test_approle_login_is_deferred_to_first_call(monkeypatch):
    vault = FakeApproleVault()
    monkeypatch.setattr(transit_client.hvac, "Client", lambda **kwargs: vault)
    client = transit_client.build_key_client(_cfg(VAULT_ROLE_ID="role", VAULT_SECRET_ID="sid"))
    assert vault.login_calls == 0

    client.wrap(DEK)
    client.wrap(DEK)
    assert vault.login_calls == 1
    assert vault.token == "s.approle"


@pytest.mark.parametrize("error", [VaultDown("sealed"), requests.ConnectionError("refused")])
def test_approle_login_failure_is_unavailable_and_retried_next_call(monkeypatch, error):
    vault = FakeApproleVault(login_error=error)
    monkeypatch.setattr(transit_client.hvac, "Client", lambda **kwargs: vault)
    client = transit_client.build_key_client(_cfg(VAULT_ROLE_ID="role", VAULT_SECRET_ID="sid"))

    with pytest.raises(KeyServiceUnavailable):
        client.wrap(DEK)
    with pytest.raises(KeyServiceUnavailable):
        client.unwrap("vault:v3:opaque")
    assert vault.login_calls == 2
    assert vault.transit.encrypt_calls == []
    assert vault.transit.decrypt_calls == []


def test_static_token_never_logs_in(monkeypatch):
    vault = FakeApproleVault()
    monkeypatch.setattr(transit_client.hvac, "Client", lambda **kwargs: vault)
    client = transit_client.build_key_client(_cfg(VAULT_TOKEN="s.static", VAULT_ROLE_ID="role", VAULT_SECRET_ID="sid"))
    client.wrap(DEK)
    assert vault.login_calls == 0
    assert vault.token == "s.static"
