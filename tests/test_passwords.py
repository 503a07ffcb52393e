"""Unit tests for auth/passwords.py -- hashing and matching.

Pure functions over strings, so no fixtures are needed.

Covers:
- Salted SHA hashes for every supported SHA size, tagged with their scheme
- Fresh salt per hash
- bcrypt via encryption_algorithm "bcrypt"
- Unsalted {SHA} values and plaintext legacy values still match
- Unsupported algorithms, unknown schemes and malformed hashes
"""

import base64
import hashlib

import pytest

from auth.exceptions import ConfigurationError
from auth.passwords import DUMMY_HASH, SUPPORTED_ALGORITHMS, PasswordHasher

hasher = PasswordHasher()


@pytest.mark.parametrize(
    "algorithm, prefix",
    [("SHA-1", "{SSHA}"), ("SHA-256", "{SSHA256}"), ("SHA-384", "{SSHA384}"), ("SHA-512", "{SSHA512}")],
)
def test_salted_sha_round_trip(algorithm, prefix):
    hashed = hasher.encrypt_password("correct horse", algorithm)
    assert hashed.startswith(prefix)
    assert hasher.match_password("correct horse", hashed) is True
    assert hasher.match_password("battery staple", hashed) is False


def test_default_algorithm_is_sha512():
    assert hasher.encrypt_password("pw").startswith("{SSHA512}")


def test_each_hash_gets_a_new_salt():
    assert hasher.encrypt_password("pw") != hasher.encrypt_password("pw")


def test_bcrypt():
    hashed = hasher.encrypt_password("pw", "bcrypt")
    assert hashed.startswith("$2")
    assert hasher.match_password("pw", hashed) is True
    assert hasher.match_password("nope", hashed) is False


def test_unsalted_sha_matches():
    stored = "{SHA}" + base64.b64encode(hashlib.sha1(b"secret").digest()).decode()
    assert hasher.match_password("secret", stored) is True
    assert hasher.match_password("Secret", stored) is False


def test_unsalted_sha_rejects_trailing_bytes():
    digest = hashlib.sha1(b"secret").digest()
    stored = "{SHA}" + base64.b64encode(digest + b"extra").decode()
    assert hasher.match_password("secret", stored) is False


def test_plaintext_fallback():
    assert hasher.match_password("legacy", "legacy") is True
    assert hasher.match_password("legacy", "legacy2") is False


def test_none_never_matches():
    assert hasher.match_password("pw", None) is False


def test_unknown_scheme_does_not_match():
    assert hasher.match_password("pw", "{MD5}abcd") is False


def test_malformed_base64_does_not_match():
    assert hasher.match_password("pw", "{SSHA512}not base64!") is False


def test_unsupported_algorithm_raises():
    with pytest.raises(ConfigurationError, match="MD5"):
        hasher.encrypt_password("pw", "MD5")


def test_supported_algorithms():
    assert SUPPORTED_ALGORITHMS == {"SHA-1", "SHA-256", "SHA-384", "SHA-512", "bcrypt"}


def test_dummy_hash_is_a_real_hash():
    assert DUMMY_HASH.startswith("{SSHA512}")
    assert hasher.match_password("anything", DUMMY_HASH) is False
