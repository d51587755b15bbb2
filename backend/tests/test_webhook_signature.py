import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from conftest import fal_headers, jwk_for
from movie_factory.services.webhook_signature import JWKS_TTL_SEC, JwksCache, ed25519_keys, verify_signature

BODY = b'{"request_id":"req-1","status":"OK","payload":{"video":{"url":"https://cdn.test/v.mp4"}}}'


@pytest.fixture
def signer():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def keys(signer):
    return ed25519_keys([jwk_for(signer)])


class TestVerifySignature:
    def test_valid_signature(self, signer, keys):
        assert verify_signature(fal_headers(signer, BODY), BODY, keys) is True

    def test_tampered_body(self, signer, keys):
        headers = fal_headers(signer, BODY)
        forged = BODY.replace(b"cdn.test", b"attacker.example")
        assert verify_signature(headers, forged, keys) is False

    def test_signed_by_another_key(self, keys):
        assert verify_signature(fal_headers(Ed25519PrivateKey.generate(), BODY), BODY, keys) is False

    def test_missing_headers(self, signer, keys):
        headers = fal_headers(signer, BODY)
        del headers["x-fal-webhook-user-id"]
        assert verify_signature(headers, BODY, keys) is False
        assert verify_signature({}, BODY, keys) is False

    def test_stale_timestamp(self, signer, keys):
        now = 1_760_000_000
        old = fal_headers(signer, BODY, timestamp=now - 301)
        recent = fal_headers(signer, BODY, timestamp=now - 299)

        assert verify_signature(old, BODY, keys, now=now) is False
        assert verify_signature(recent, BODY, keys, now=now) is True

    def test_malformed_signature(self, signer, keys):
        headers = fal_headers(signer, BODY)
        assert verify_signature({**headers, "x-fal-webhook-signature": "zz"}, BODY, keys) is False
        assert verify_signature({**headers, "x-fal-webhook-signature": "ab" * 32}, BODY, keys) is False

    def test_no_keys(self, signer):
        assert verify_signature(fal_headers(signer, BODY), BODY, []) is False


def test_only_ed25519_keys_are_used(signer):
    jwks = [
        {"kty": "RSA", "n": "abc", "e": "AQAB"},
        {"kty": "OKP", "crv": "X25519", "x": jwk_for(signer)["x"]},
        {"kty": "OKP", "crv": "Ed25519", "x": "c2hvcnQ"},
        jwk_for(signer),
    ]
    assert len(ed25519_keys(jwks)) == 1


class TestJwksCache:
    @pytest.mark.asyncio
    async def test_keys_are_cached_for_a_day(self, settings, signer):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(200, json={"keys": [jwk_for(signer)]})

        cache = JwksCache(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        assert len(await cache.keys(now=1000.0)) == 1
        assert len(await cache.keys(now=1000.0 + JWKS_TTL_SEC - 1)) == 1
        assert calls == [settings.fal_jwks_url]

        await cache.keys(now=1000.0 + JWKS_TTL_SEC + 1)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_fetch_failure_yields_no_keys(self, settings):
        cache = JwksCache(
            settings, client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))),
        )
        assert await cache.keys(now=1000.0) == []
