import time
from unittest.mock import MagicMock, patch

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

from threadly.auth import JWKSClient, decode_session_token
from threadly.config import Settings
from threadly.errors import AuthorizationError, DependencyError


@pytest.fixture(scope="module")
def rsa_keys():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _token(private_pem, kid="key_1", **claims):
    now = int(time.time())
    body = {"sub": "user_2abc", "iss": "https://clerk.example.com", "iat": now, "exp": now + 300}
    body.update(claims)
    return jwt.encode(body, private_pem, algorithm="RS256", headers={"kid": kid})


def _settings(**overrides) -> Settings:
    settings = Settings()
    settings.clerk_jwt_key = ""
    settings.clerk_jwks_url = ""
    settings.clerk_issuer = "https://clerk.example.com"
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def test_decode_with_pem_key(rsa_keys):
    private_pem, public_pem = rsa_keys
    claims = decode_session_token(_token(private_pem), _settings(clerk_jwt_key=public_pem))
    assert claims["sub"] == "user_2abc"


def test_expired_token_is_unauthenticated(rsa_keys):
    private_pem, public_pem = rsa_keys
    token = _token(private_pem, exp=int(time.time()) - 10)
    with pytest.raises(AuthorizationError) as excinfo:
        decode_session_token(token, _settings(clerk_jwt_key=public_pem))
    assert excinfo.value.status_code == 401


def test_wrong_issuer_rejected(rsa_keys):
    private_pem, public_pem = rsa_keys
    token = _token(private_pem, iss="https://evil.example.com")
    with pytest.raises(AuthorizationError):
        decode_session_token(token, _settings(clerk_jwt_key=public_pem))


def test_garbage_token_rejected():
    with pytest.raises(AuthorizationError):
        decode_session_token("not-a-jwt", _settings(clerk_jwt_key="irrelevant"))


def test_unconfigured_provider(rsa_keys):
    private_pem, _ = rsa_keys
    with pytest.raises(DependencyError):
        decode_session_token(_token(private_pem), _settings())


def test_jwks_keys_are_fetched_and_cached(rsa_keys):
    _, public_pem = rsa_keys
    key = jwk.construct(public_pem, "RS256").to_dict()
    key["kid"] = "key_1"
    response = MagicMock()
    response.json.return_value = {"keys": [key]}

    client = JWKSClient("https://clerk.example.com/.well-known/jwks.json")
    with patch("threadly.auth.requests.get", return_value=response) as get:
        assert client.get_key("key_1")["kid"] == "key_1"
        assert client.get_key("key_1")["kid"] == "key_1"
        assert get.call_count == 1

        with pytest.raises(AuthorizationError):
            client.get_key("rotated_away")
        assert get.call_count == 2


def test_jwks_outage_is_dependency_error():
    client = JWKSClient("https://clerk.example.com/.well-known/jwks.json")
    with patch("threadly.auth.requests.get", side_effect=requests.exceptions.ConnectionError("down")):
        with pytest.raises(DependencyError):
            client.get_key("key_1")


def test_decode_with_jwks(rsa_keys):
    private_pem, public_pem = rsa_keys
    key = jwk.construct(public_pem, "RS256").to_dict()
    key["kid"] = "key_1"
    response = MagicMock()
    response.json.return_value = {"keys": [key]}

    settings = _settings(clerk_jwks_url="https://clerk.example.com/.well-known/jwks-test.json")
    with patch("threadly.auth.requests.get", return_value=response):
        claims = decode_session_token(_token(private_pem), settings)
    assert claims["sub"] == "user_2abc"
