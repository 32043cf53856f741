import re

import pytest
from jose import JWTError

from chronos_auth.config import Settings
from chronos_auth.core.security import (
    DEV_FALLBACK_SECRET,
    decode_token,
    derive_secret_key,
    encode_token,
    generate_device_id,
    generate_session_id,
    hash_pin,
    verify_pin,
)


def test_derived_key_is_stable_and_differs_from_raw_secret():
    config = Settings(JWT_SECRET="a" * 40, JWT_KDF_ITERATIONS=1000)
    key = derive_secret_key(config)
    assert key == derive_secret_key(config)
    assert len(key) == 32
    assert key != ("a" * 40).encode()


def test_derived_key_depends_on_salt():
    a = derive_secret_key(Settings(JWT_SECRET="s" * 40, JWT_SALT="one", JWT_KDF_ITERATIONS=1000))
    b = derive_secret_key(Settings(JWT_SECRET="s" * 40, JWT_SALT="two", JWT_KDF_ITERATIONS=1000))
    assert a != b


def test_missing_secret_falls_back_outside_production(caplog):
    key = derive_secret_key(Settings(JWT_SECRET=None, ENVIRONMENT="development"))
    assert key == DEV_FALLBACK_SECRET.encode()
    assert "NOT SECURE" in caplog.text


def test_missing_secret_raises_in_production():
    with pytest.raises(RuntimeError, match="JWT_SECRET is required in production"):
        derive_secret_key(Settings(JWT_SECRET=None, ENVIRONMENT="production"))


def test_token_round_trip_checks_issuer_and_audience():
    key = b"k" * 32
    token = encode_token({"sub": "7", "iss": "astral-chronos", "aud": "astral-chronos-users"}, key)
    claims = decode_token(token, key, issuer="astral-chronos", audience="astral-chronos-users")
    assert claims["sub"] == "7"

    with pytest.raises(JWTError):
        decode_token(token, key, issuer="someone-else", audience="astral-chronos-users")
    with pytest.raises(JWTError):
        decode_token(token, key, issuer="astral-chronos", audience="other-audience")


def test_token_signed_with_other_key_is_rejected():
    token = encode_token({"iss": "i", "aud": "a"}, b"x" * 32)
    with pytest.raises(JWTError):
        decode_token(token, b"y" * 32, issuer="i", audience="a")


def test_session_id_is_256_bit_hex():
    session_id = generate_session_id()
    assert re.fullmatch(r"[0-9a-f]{64}", session_id)
    assert session_id != generate_session_id()


def test_device_id_is_16_hex_chars():
    assert re.fullmatch(r"[0-9a-f]{16}", generate_device_id("Mozilla/5.0", "10.0.0.1"))
    assert re.fullmatch(r"[0-9a-f]{16}", generate_device_id(None, None))


def test_pin_hash_verifies_only_the_right_pin():
    hashed = hash_pin("0000")
    assert hashed != "0000"
    assert verify_pin("0000", hashed)
    assert not verify_pin("9999", hashed)


def test_verify_pin_with_malformed_hash_is_false():
    assert verify_pin("0000", "not-a-bcrypt-hash") is False
