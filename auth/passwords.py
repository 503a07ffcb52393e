"""
auth/passwords.py -- Shared password hashing and matching.

Formats:
  Salted SHA (default): RFC 2307 style "{SSHA512}" + base64(digest || salt),
       where digest = SHA-512(password || salt). The scheme tag carries the
       algorithm, so rows hashed under an older encryption_algorithm keep
       verifying after a realm switches to a new one.

  bcrypt: selected with encryption_algorithm "bcrypt". Used directly rather
       than through passlib; bcrypt 4.x rejects passlib's wrap-bug probe.

  Plaintext: stored values with no recognised prefix are compared as
       plaintext (constant-time). This keeps legacy rows usable until
       set_user_password() rewrites them.

Timing equalization: authenticate() in auth/store.py calls
match_password() against DUMMY_HASH when the username does not exist, so an
unknown user costs the same as a wrong password.

Layer rule: no imports from core/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from typing import Optional

import bcrypt

from auth.exceptions import ConfigurationError

logger = logging.getLogger("realmauth.passwords")

# encryption_algorithm option -> (hashlib name, RFC 2307 scheme)
_SALTED_ALGORITHMS: dict[str, tuple[str, str]] = {
    "SHA-1": ("sha1", "SSHA"),
    "SHA-256": ("sha256", "SSHA256"),
    "SHA-384": ("sha384", "SSHA384"),
    "SHA-512": ("sha512", "SSHA512"),
}

# Scheme tag -> hashlib name, for both salted and unsalted variants
_SCHEMES: dict[str, str] = {scheme: name for name, scheme in _SALTED_ALGORITHMS.values()}
_SCHEMES.update({scheme[1:]: name for scheme, name in list(_SCHEMES.items())})

BCRYPT = "bcrypt"
SUPPORTED_ALGORITHMS = frozenset(_SALTED_ALGORITHMS) | {BCRYPT}

_SALT_BYTES = 16


def _salted_digest(hash_name: str, plain: str, salt: bytes) -> bytes:
    digest = hashlib.new(hash_name)
    digest.update(plain.encode("utf-8"))
    digest.update(salt)
    return digest.digest()


class PasswordHasher:
    """Hash new passwords and check candidates against stored values."""

    def encrypt_password(self, plain: str, algorithm: str = "SHA-512") -> str:
        """Return a storable hash of `plain` using the named algorithm.

        Raises ConfigurationError for algorithms outside SUPPORTED_ALGORITHMS.
        """
        if algorithm.lower() == BCRYPT:
            return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        try:
            hash_name, scheme = _SALTED_ALGORITHMS[algorithm.upper()]
        except KeyError:
            raise ConfigurationError(
                f"Unsupported encryption_algorithm {algorithm!r}; "
                f"expected one of {', '.join(sorted(SUPPORTED_ALGORITHMS))}"
            ) from None
        salt = secrets.token_bytes(_SALT_BYTES)
        encoded = base64.b64encode(_salted_digest(hash_name, plain, salt) + salt).decode("ascii")
        return f"{{{scheme}}}{encoded}"

    def match_password(self, plain: str, stored: Optional[str]) -> bool:
        """Return True if `plain` matches the stored hash (or stored plaintext)."""
        if stored is None or plain is None:
            return False
        if stored.startswith("{"):
            return self._match_rfc2307(plain, stored)
        if stored.startswith("$2"):
            try:
                return bcrypt.checkpw(plain.encode("utf-8"), stored.encode("utf-8"))
            except ValueError:
                return False
        return hmac.compare_digest(plain.encode("utf-8"), stored.encode("utf-8"))

    def _match_rfc2307(self, plain: str, stored: str) -> bool:
        scheme, _, encoded = stored[1:].partition("}")
        hash_name = _SCHEMES.get(scheme.upper())
        if hash_name is None:
            logger.debug("Unknown password scheme {%s}", scheme)
            return False
        try:
            raw = base64.b64decode(encoded, validate=True)
        except ValueError:
            return False
        size = hashlib.new(hash_name).digest_size
        digest, salt = raw[:size], raw[size:]
        if salt and not scheme.upper().startswith("SSHA"):
            # unsalted values are the bare digest
            return False
        return hmac.compare_digest(digest, _salted_digest(hash_name, plain, salt))


# Computed once at import so the first unknown-user login is not measurably
# slower than later ones.
DUMMY_HASH: str = PasswordHasher().encrypt_password("realmauth_timing_dummy")
