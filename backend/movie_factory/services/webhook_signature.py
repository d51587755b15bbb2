"""
fal.ai webhook signature verification.

fal signs every webhook with ED25519. The signed message is

    request_id \\n user_id \\n timestamp \\n sha256(body).hex()

taken from the ``x-fal-webhook-*`` headers and the raw request body. Public
keys come from fal's JWKS endpoint and are cached for a day.
"""
from __future__ import annotations

import base64
import hashlib
import logging
import time
from typing import Any, Mapping

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from movie_factory.settings import Settings, get_settings

logger = logging.getLogger(__name__)

JWKS_TTL_SEC = 24 * 3600

HEADER_REQUEST_ID = "x-fal-webhook-request-id"
HEADER_USER_ID = "x-fal-webhook-user-id"
HEADER_TIMESTAMP = "x-fal-webhook-timestamp"
HEADER_SIGNATURE = "x-fal-webhook-signature"


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def signed_message(request_id: str, user_id: str, timestamp: str, body: bytes) -> bytes:
    body_hash = hashlib.sha256(body).hexdigest()
    return "\n".join([request_id, user_id, timestamp, body_hash]).encode("utf-8")


def ed25519_keys(jwks: list[dict[str, Any]]) -> list[Ed25519PublicKey]:
    keys = []
    for jwk in jwks:
        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519" or not jwk.get("x"):
            continue
        try:
            keys.append(Ed25519PublicKey.from_public_bytes(_b64url_decode(jwk["x"])))
        except ValueError:
            logger.warning(f"[webhook] Skipping malformed JWKS key {jwk.get('kid')}")
    return keys


def verify_signature(
    headers: Mapping[str, str],
    body: bytes,
    keys: list[Ed25519PublicKey],
    *,
    now: float | None = None,
    max_skew_sec: int = 300,
) -> bool:
    request_id = headers.get(HEADER_REQUEST_ID)
    user_id = headers.get(HEADER_USER_ID)
    timestamp = headers.get(HEADER_TIMESTAMP)
    signature = headers.get(HEADER_SIGNATURE)
    if not (request_id and user_id and timestamp and signature):
        return False

    try:
        ts = int(timestamp)
    except ValueError:
        return False
    now = time.time() if now is None else now
    if abs(int(now) - ts) > max_skew_sec:
        return False

    try:
        sig = bytes.fromhex(signature)
    except ValueError:
        return False
    if len(sig) != 64:
        return False

    message = signed_message(request_id, user_id, timestamp, body)
    for key in keys:
        try:
            key.verify(sig, message)
            return True
        except InvalidSignature:
            continue
    return False


class JwksCache:
    """fal public keys, refetched once the cached copy is older than a day."""

    def __init__(self, settings: Settings | None = None, *, client: httpx.AsyncClient | None = None):
        self.settings = settings or get_settings()
        self._client = client
        self._keys: list[Ed25519PublicKey] = []
        self._fetched_at = 0.0

    async def _fetch(self) -> list[dict[str, Any]]:
        url = self.settings.fal_jwks_url
        if self._client is not None:
            resp = await self._client.get(url)
        else:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(url)
        resp.raise_for_status()
        return resp.json().get("keys") or []

    async def keys(self, *, now: float | None = None) -> list[Ed25519PublicKey]:
        now = time.monotonic() if now is None else now
        if self._keys and now - self._fetched_at < JWKS_TTL_SEC:
            return self._keys
        try:
            jwks = await self._fetch()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[webhook] JWKS fetch failed: {e}")
            return self._keys
        self._keys = ed25519_keys(jwks)
        self._fetched_at = now
        logger.info(f"[webhook] Loaded {len(self._keys)} fal signing keys")
        return self._keys


_jwks_cache: JwksCache | None = None


def get_jwks_cache() -> JwksCache:
    global _jwks_cache
    if _jwks_cache is None:
        _jwks_cache = JwksCache()
    return _jwks_cache
