"""
Key wrapping client for HashiCorp Vault's transit engine, used to wrap and unwrap per-record data-encryption keys under a named, centrally managed key. Supports both token-based and AppRole authentication; the AppRole login happens on the first transit call rather than at construction, and is repeated when a token expires. Every failure at this boundary (network errors, non-success statuses, responses without a usable ciphertext, key version or plaintext) surfaces as ``KeyServiceUnavailable``; raw Vault bodies are never propagated. Unwrapping is idempotent and retried with bounded exponential backoff, wrapping is attempted exactly once.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""


from __future__ import annotations

import base64
import binascii
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

import hvac
import requests
from hvac.exceptions import (
    BadGateway,
    Forbidden,
    InternalServerError,
    RateLimitExceeded,
    VaultDown,
    VaultError,
)
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from services.common.errors import KeyServiceUnavailable
from services.crypto.envelope import DEK_SIZE

logger = logging.getLogger(__name__)

_TRANSIENT_VAULT_ERRORS = (VaultDown, InternalServerError, BadGateway, RateLimitExceeded)


class VaultClientError(RuntimeError):
    pass


@dataclass(frozen=True)
class WrappedKey:
    wrapped: str
    key_version: int


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    return isinstance(exc, _TRANSIENT_VAULT_ERRORS)


def _response_data(resp: Any) -> Mapping[str, Any]:
    if isinstance(resp, requests.Response):
        if not resp.ok:
            raise KeyServiceUnavailable()
        try:
            resp = resp.json()
        except ValueError:
            raise KeyServiceUnavailable() from None
    if not isinstance(resp, Mapping):
        raise KeyServiceUnavailable()
    data = resp.get("data")
    if not isinstance(data, Mapping):
        raise KeyServiceUnavailable()
    return data


def _parse_key_version(raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise KeyServiceUnavailable()
    return raw


class TransitKeyClient:
    def __init__(
        self,
        client: Any,
        key_name: str,
        *,
        mount_point: str = "transit",
        max_retries: int = 3,
        backoff: float = 0.2,
        max_backoff: float = 2.0,
        reauthenticate: Optional[Callable[[], None]] = None,
        login_on_first_use: bool = False,
    ) -> None:
        if not key_name:
            raise VaultClientError("Transit key name is required")
        self._client = client
        self._key_name = key_name
        self._mount_point = mount_point
        self._max_retries = max(1, int(max_retries))
        self._backoff = float(backoff)
        self._max_backoff = float(max_backoff)
        self._reauthenticate = reauthenticate
        self._needs_login = bool(login_on_first_use and reauthenticate is not None)
        self._login_lock = threading.Lock()

    @property
    def key_id(self) -> str:
        return self._key_name

    def _ensure_logged_in(self, op: str) -> None:
        if not self._needs_login:
            return
        with self._login_lock:
            if self._needs_login:
                logger.info("vault_login op=%s key=%s", op, self._key_name)
                self._reauthenticate()
                self._needs_login = False

    def _call(self, op: str, fn: Callable[[], Any]) -> Any:
        try:
            self._ensure_logged_in(op)
            try:
                return fn()
            except Forbidden:
                if self._reauthenticate is None:
                    raise
                logger.info("vault_reauthenticate op=%s key=%s", op, self._key_name)
                self._reauthenticate()
                return fn()
        except _TRANSIENT_VAULT_ERRORS + (requests.ConnectionError, requests.Timeout):
            raise
        except (VaultError, requests.RequestException, VaultClientError) as exc:
            logger.warning("vault_transit_failed op=%s key=%s error=%s", op, self._key_name, type(exc).__name__)
            raise KeyServiceUnavailable() from None

    def wrap(self, dek: Union[bytes, bytearray]) -> WrappedKey:
        if len(dek) != DEK_SIZE:
            raise ValueError(f"data key must be {DEK_SIZE} bytes")
        encoded = base64.b64encode(bytes(dek)).decode("ascii")
        try:
            resp = self._call(
                "encrypt",
                lambda: self._client.secrets.transit.encrypt_data(
                    name=self._key_name,
                    plaintext=encoded,
                    mount_point=self._mount_point,
                ),
            )
        except KeyServiceUnavailable:
            raise
        except Exception as exc:
            if _is_transient(exc):
                logger.warning("vault_transit_failed op=encrypt key=%s error=%s", self._key_name, type(exc).__name__)
                raise KeyServiceUnavailable() from None
            raise

        data = _response_data(resp)
        wrapped = data.get("ciphertext")
        if not isinstance(wrapped, str) or not wrapped:
            logger.warning("vault_transit_malformed op=encrypt key=%s field=ciphertext", self._key_name)
            raise KeyServiceUnavailable()
        try:
            key_version = _parse_key_version(data.get("key_version"))
        except KeyServiceUnavailable:
            logger.warning("vault_transit_malformed op=encrypt key=%s field=key_version", self._key_name)
            raise
        return WrappedKey(wrapped=wrapped, key_version=key_version)

    def unwrap(self, wrapped: str) -> bytearray:
        if not wrapped:
            raise KeyServiceUnavailable()

        retryer = Retrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._backoff, max=self._max_backoff),
            reraise=True,
        )
        try:
            resp = retryer(
                self._call,
                "decrypt",
                lambda: self._client.secrets.transit.decrypt_data(
                    name=self._key_name,
                    ciphertext=wrapped,
                    mount_point=self._mount_point,
                ),
            )
        except KeyServiceUnavailable:
            raise
        except Exception as exc:
            if _is_transient(exc):
                logger.warning(
                    "vault_transit_failed op=decrypt key=%s attempts=%d error=%s",
                    self._key_name, self._max_retries, type(exc).__name__,
                )
                raise KeyServiceUnavailable() from None
            raise

        data = _response_data(resp)
        encoded = data.get("plaintext")
        if not isinstance(encoded, str):
            raise KeyServiceUnavailable()
        try:
            dek = bytearray(base64.b64decode(encoded, validate=True))
        except (binascii.Error, ValueError):
            raise KeyServiceUnavailable() from None
        if len(dek) != DEK_SIZE:
            logger.warning("vault_transit_malformed op=decrypt key=%s field=plaintext", self._key_name)
            raise KeyServiceUnavailable()
        return dek


def _secret_id_fn(cfg) -> Optional[Callable[[], str]]:
    if cfg.VAULT_SECRET_ID_FILE:
        path = cfg.VAULT_SECRET_ID_FILE

        def read_secret_id() -> str:
            with open(path) as f:
                return f.read().strip()

        return read_secret_id
    if cfg.VAULT_SECRET_ID:
        secret_id = cfg.VAULT_SECRET_ID
        return lambda: secret_id
    return None


def build_key_client(cfg) -> TransitKeyClient:
    client = hvac.Client(url=cfg.VAULT_ADDR, timeout=cfg.VAULT_TIMEOUT, verify=cfg.VAULT_CACERT or True)
    role_id = cfg.VAULT_ROLE_ID
    secret_id_fn = _secret_id_fn(cfg)
    if role_id and secret_id_fn is None:
        raise VaultClientError(
            "VAULT_ROLE_ID set but neither VAULT_SECRET_ID nor VAULT_SECRET_ID_FILE provided"
        )

    reauthenticate = None
    if role_id and secret_id_fn is not None:

        def reauthenticate() -> None:
            try:
                auth = client.auth.approle.login(role_id=role_id, secret_id=secret_id_fn())
                client.token = auth["auth"]["client_token"]
            except (VaultError, requests.RequestException, OSError, KeyError, TypeError) as exc:
                raise VaultClientError("Vault AppRole login failed") from exc

    if cfg.VAULT_TOKEN:
        client.token = cfg.VAULT_TOKEN
    elif reauthenticate is None:
        logger.warning("Vault auth not configured (provide VAULT_TOKEN or VAULT_ROLE_ID + secret id)")

    return TransitKeyClient(
        client,
        cfg.TRANSIT_KEY_NAME,
        mount_point=cfg.VAULT_TRANSIT_MOUNT,
        max_retries=cfg.KMS_MAX_RETRIES,
        backoff=cfg.RETRY_BACKOFF,
        max_backoff=cfg.RETRY_MAX_BACKOFF,
        reauthenticate=reauthenticate,
        login_on_first_use=not cfg.VAULT_TOKEN,
    )
