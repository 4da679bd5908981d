import json
import threading
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from datadrop.core import identity

ISSUER = "https://issuer.example.com"
AUDIENCE = "datadrop-web"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _jwks(private_key, kid="key-1"):
    public_jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    public_jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return {"keys": [public_jwk]}


def _session_token(private_key, kid="key-1", **overrides):
    now = int(time.time())
    claims = {
        "sub": "user-42",
        "email": "user@example.com",
        "roles": ["fileUser"],
        "iss": ISSUER,
        "aud": AUDIENCE,
        "iat": now,
        "exp": now + 300,
    }
    claims.update(overrides)
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": kid})


class _CountingFetcher:
    def __init__(self, payload):
        self.payload = payload
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, url):
        with self._lock:
            self.calls += 1
        return self.payload


def test_valid_session_token_is_accepted(signing_key):
    cache = identity.JwksCache("https://issuer.test/jwks", fetcher=_CountingFetcher(_jwks(signing_key)))
    claims = identity.verify_session_token(
        _session_token(signing_key), cache=cache, issuer=ISSUER, audience=AUDIENCE
    )
    assert claims["sub"] == "user-42"


def test_wrong_audience_is_rejected(signing_key):
    cache = identity.JwksCache("https://issuer.test/jwks", fetcher=_CountingFetcher(_jwks(signing_key)))
    token = _session_token(signing_key, aud="someone-else")
    with pytest.raises(identity.IdentityError):
        identity.verify_session_token(token, cache=cache, issuer=ISSUER, audience=AUDIENCE)


def test_expired_session_token_is_rejected(signing_key):
    cache = identity.JwksCache("https://issuer.test/jwks", fetcher=_CountingFetcher(_jwks(signing_key)))
    token = _session_token(signing_key, exp=int(time.time()) - 10)
    with pytest.raises(identity.IdentityError):
        identity.verify_session_token(token, cache=cache, issuer=ISSUER, audience=AUDIENCE)


def test_unknown_kid_is_rejected(signing_key):
    cache = identity.JwksCache("https://issuer.test/jwks", fetcher=_CountingFetcher(_jwks(signing_key)))
    token = _session_token(signing_key, kid="rotated-away")
    with pytest.raises(identity.IdentityError):
        identity.verify_session_token(token, cache=cache, issuer=ISSUER, audience=AUDIENCE)


def test_keys_are_cached_until_ttl_passes(signing_key):
    clock = [1000.0]
    fetcher = _CountingFetcher(_jwks(signing_key))
    cache = identity.JwksCache("https://issuer.test/jwks", ttl_seconds=3600, fetcher=fetcher, clock=lambda: clock[0])

    cache.keys()
    cache.keys()
    assert fetcher.calls == 1

    clock[0] += 3601
    cache.keys()
    assert fetcher.calls == 2


def test_concurrent_first_use_fetches_once(signing_key):
    fetcher = _CountingFetcher(_jwks(signing_key))
    cache = identity.JwksCache("https://issuer.test/jwks", fetcher=fetcher)

    threads = [threading.Thread(target=cache.keys) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert fetcher.calls == 1


def test_unconfigured_issuer_is_an_identity_error(signing_key):
    with pytest.raises(identity.IdentityError):
        identity.verify_session_token(_session_token(signing_key), issuer="")
