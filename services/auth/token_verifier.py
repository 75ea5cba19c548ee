"""
Bearer token verification against the issuer's published, rotating JSON Web Key Set.

The key set is explicit state with a defined lifecycle: it starts empty, is populated on first use, and is re-fetched when a token names a key id that is not cached. Each unknown key id triggers at most one fetch while it is remembered as missing, and refreshes are spaced by a cooldown during which unknown key ids are rejected without a fetch. The memo of missing key ids is bounded in size and age, so a flood of forged key ids turns into neither a flood of upstream requests nor unbounded memory. Readers never take the lock; refreshes are serialized behind a single writer lock.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

import httpx
import jwt
from jwt import PyJWK, PyJWKSet

from models.access.auth_models import IdentityContext, parse_scopes
from services.common.errors import TokenInvalid
from services.common.http_client import create_client

logger = logging.getLogger(__name__)


class KeySetUnavailable(RuntimeError):
    pass


class KeySetProvider(Protocol):
    def get_keys(self, kid: Optional[str]) -> List[PyJWK]: ...


def _index_keys(jwks: Mapping[str, Any]) -> tuple[Dict[str, PyJWK], List[PyJWK]]:
    by_kid: Dict[str, PyJWK] = {}
    anonymous: List[PyJWK] = []
    for key in PyJWKSet.from_dict(dict(jwks)).keys:
        if key.key_id:
            by_kid[key.key_id] = key
        else:
            anonymous.append(key)
    return by_kid, anonymous


class StaticKeySet:
    """Fixed key set, for pinned deployments and tests."""

    def __init__(self, jwks: Mapping[str, Any]) -> None:
        self._by_kid, self._anonymous = _index_keys(jwks)

    def get_keys(self, kid: Optional[str]) -> List[PyJWK]:
        if kid is None:
            return list(self._by_kid.values()) + list(self._anonymous)
        key = self._by_kid.get(kid)
        return [key] if key is not None else []


class RemoteKeySet:
    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client_factory: Optional[Callable[[float], httpx.Client]] = None,
        *,
        refresh_cooldown: float = 30.0,
        missed_kid_ttl: float = 300.0,
        max_missed_kids: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not url:
            raise ValueError("JWKS url is required")
        self._url = url
        self._timeout = timeout
        self._client_factory = client_factory or create_client
        self._refresh_cooldown = max(0.0, float(refresh_cooldown))
        self._missed_kid_ttl = max(0.0, float(missed_kid_ttl))
        self._max_missed_kids = max(1, int(max_missed_kids))
        self._clock = clock
        self._by_kid: Dict[str, PyJWK] = {}
        self._anonymous: List[PyJWK] = []
        self._loaded = False
        self._last_refresh: Optional[float] = None
        # kid -> time of the refresh that did not find it, oldest first
        self._missed: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()
        self.fetch_count = 0

    def _fetch(self) -> Mapping[str, Any]:
        self.fetch_count += 1
        try:
            with self._client_factory(self._timeout) as client:
                resp = client.get(self._url)
                resp.raise_for_status()
                payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("jwks_fetch_failed url=%s error=%s", self._url, type(exc).__name__)
            raise KeySetUnavailable("Unable to fetch verification keys") from exc
        if not isinstance(payload, Mapping) or not isinstance(payload.get("keys"), list):
            logger.warning("jwks_fetch_failed url=%s error=malformed_payload", self._url)
            raise KeySetUnavailable("Malformed verification key set")
        return payload

    def _refresh_locked(self) -> None:
        # a failed attempt also starts the cooldown so a dead endpoint is not hammered
        self._last_refresh = self._clock()
        payload = self._fetch()
        try:
            by_kid, anonymous = _index_keys(payload)
        except jwt.PyJWTError as exc:
            logger.warning("jwks_parse_failed url=%s error=%s", self._url, exc)
            raise KeySetUnavailable("Unusable verification key set") from exc
        self._by_kid = by_kid
        self._anonymous = anonymous
        self._loaded = True
        # keys that were missing before may exist now
        for kid in [kid for kid in self._missed if kid in by_kid]:
            del self._missed[kid]
        logger.info("jwks_refreshed url=%s keys=%d", self._url, len(by_kid) + len(anonymous))

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        with self._lock:
            if not self._loaded:
                self._refresh_locked()

    def _cooling_down(self) -> bool:
        if self._last_refresh is None:
            return False
        return self._clock() - self._last_refresh < self._refresh_cooldown

    def _recently_missed_locked(self, kid: str) -> bool:
        seen = self._missed.get(kid)
        if seen is None:
            return False
        if self._clock() - seen >= self._missed_kid_ttl:
            del self._missed[kid]
            return False
        return True

    def _remember_miss_locked(self, kid: str) -> None:
        self._missed[kid] = self._clock()
        self._missed.move_to_end(kid)
        while len(self._missed) > self._max_missed_kids:
            self._missed.popitem(last=False)

    def get_keys(self, kid: Optional[str]) -> List[PyJWK]:
        self._ensure_loaded()
        if kid is None:
            return list(self._by_kid.values()) + list(self._anonymous)

        key = self._by_kid.get(kid)
        if key is not None:
            return [key]
        if self._cooling_down():
            return []

        with self._lock:
            key = self._by_kid.get(kid)
            if key is not None:
                return [key]
            if self._recently_missed_locked(kid) or self._cooling_down():
                return []
            self._refresh_locked()
            key = self._by_kid.get(kid)
            if key is None:
                self._remember_miss_locked(kid)
                return []
            return [key]

    def invalidate(self) -> None:
        with self._lock:
            self._by_kid = {}
            self._anonymous = []
            self._loaded = False
            self._last_refresh = None
            self._missed.clear()


class TokenVerifier:
    def __init__(
        self,
        keys: KeySetProvider,
        *,
        issuer: str,
        audience: str,
        algorithms: Iterable[str] = ("RS256", "ES256"),
        leeway_seconds: int = 30,
        tenant_claim: str = "tenantId",
    ) -> None:
        self._keys = keys
        self._issuer = issuer
        self._audience = audience
        self._algorithms = [alg.upper() for alg in algorithms]
        self._leeway = int(leeway_seconds)
        self._tenant_claim = tenant_claim

    def _reject(self, reason: str, exc: Optional[BaseException] = None) -> TokenInvalid:
        logger.debug("token_rejected reason=%s error=%s", reason, type(exc).__name__ if exc else "-")
        return TokenInvalid()

    def _decode(self, token: str, candidates: List[PyJWK], algorithm: str) -> Dict[str, Any]:
        last_exc: Optional[Exception] = None
        for candidate in candidates:
            try:
                return jwt.decode(
                    token,
                    candidate.key,
                    algorithms=[algorithm],
                    audience=self._audience,
                    issuer=self._issuer,
                    options={
                        "require": ["exp", "iss", "aud"],
                        "verify_exp": False,
                        "verify_nbf": False,
                        "verify_iat": False,
                    },
                )
            except jwt.PyJWTError as exc:
                last_exc = exc
        raise self._reject("signature_or_claims", last_exc)

    def _check_window(self, payload: Mapping[str, Any], now_ts: float) -> None:
        try:
            exp = float(payload["exp"])
            nbf = float(payload["nbf"]) if payload.get("nbf") is not None else None
        except (KeyError, TypeError, ValueError) as exc:
            raise self._reject("window_claims", exc)
        if now_ts >= exp + self._leeway:
            raise self._reject("expired")
        if nbf is not None and now_ts < nbf - self._leeway:
            raise self._reject("not_yet_valid")

    def verify(self, token: str, now: Optional[datetime] = None) -> IdentityContext:
        if not token or not isinstance(token, str):
            raise self._reject("missing")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise self._reject("malformed", exc)

        algorithm = str(header.get("alg") or "").upper()
        if algorithm not in self._algorithms:
            raise self._reject("algorithm")
        kid = header.get("kid")
        if kid is not None and not isinstance(kid, str):
            raise self._reject("kid")

        try:
            candidates = self._keys.get_keys(kid)
        except KeySetUnavailable as exc:
            raise self._reject("key_set_unavailable", exc)
        if not candidates:
            raise self._reject("unknown_key")

        payload = self._decode(token, candidates, algorithm)
        now_ts = (now or datetime.now(timezone.utc)).timestamp()
        self._check_window(payload, now_ts)

        subject = str(payload.get("sub") or payload.get("subject") or "").strip()
        tenant_id = str(payload.get(self._tenant_claim) or "").strip()
        if not subject or not tenant_id:
            raise self._reject("identity_claims")

        raw_scope = payload.get("scope")
        if raw_scope is None:
            raw_scope = payload.get("scp")
        return IdentityContext(subject=subject, tenant_id=tenant_id, scopes=parse_scopes(raw_scope))


def build_token_verifier(cfg) -> TokenVerifier:
    return TokenVerifier(
        RemoteKeySet(
            cfg.JWKS_URL,
            timeout=cfg.JWKS_TIMEOUT,
            refresh_cooldown=cfg.JWKS_REFRESH_COOLDOWN,
            missed_kid_ttl=cfg.JWKS_MISSED_KID_TTL,
            max_missed_kids=cfg.JWKS_MAX_MISSED_KIDS,
        ),
        issuer=cfg.AUTH_ISSUER,
        audience=cfg.AUTH_AUDIENCE,
        algorithms=cfg.TOKEN_ALGORITHMS,
        leeway_seconds=cfg.TOKEN_LEEWAY_SECONDS,
        tenant_claim=cfg.TOKEN_TENANT_CLAIM,
    )
