"""
auth/tokens.py -- Token codec, password hashing and random secret helpers.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are self-contained: subject id,
       username, role, branch id, main-branch flag, permission list, kind,
       issuer, audience, expiry. Refresh tokens carry the subject, kind,
       device fingerprint and a random jti so two logins never mint the same
       string. Verification needs no store lookup; the refresh path adds its
       own Session-row check in auth/sessions.py.

       jose rejects a non-string "sub", so the user id is encoded as a string
       and parsed back by subject_id().

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH lets the login
       path run bcrypt even when the user does not exist, so response time does
       not reveal whether a username exists [C1].

  Refresh tokens at rest: HMAC-SHA256(SECRET_KEY, raw_token). A leaked
       sessions table cannot be replayed without also knowing SECRET_KEY, and
       the deterministic hash keeps lookup O(1).

Layer rule: no imports from api/ or audit/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Any

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid
from auth.models import Identity
from core.config import Settings, get_settings
from core.time_utils import utcnow

logger = logging.getLogger("coopportal.auth.tokens")

_ALGORITHM = "HS256"
_BCRYPT_ROUNDS = 12

ACCESS = "access"
REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps password
    fields at 128 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# Timing equalization dummy hash [C1]. Computed once at import so the first
# login is not measurably slower than the rest.
_DUMMY_HASH: str = hash_password("coopportal_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Random secrets
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    """256-bit hex token for password reset links."""
    return secrets.token_hex(32)


def generate_verification_code() -> str:
    """Six-digit numeric code, zero padded."""
    return f"{secrets.randbelow(1_000_000):06d}"


def hash_token(raw_token: str, secret_key: str | None = None) -> str:
    key = secret_key or get_settings().secret_key
    return hmac.new(key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# JWT codec
# ---------------------------------------------------------------------------


def subject_id(claims: dict[str, Any]) -> int:
    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenInvalid() from exc


class TokenCodec:
    """Signs and verifies access and refresh tokens. Pure CPU, no I/O."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._secret = settings.secret_key
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self.access_ttl = timedelta(seconds=settings.access_token_expire_seconds)
        self.refresh_ttl = timedelta(days=settings.refresh_token_expire_days)

    def _encode(self, claims: dict[str, Any], ttl: timedelta) -> str:
        now = utcnow()
        claims.update({"iat": now, "exp": now + ttl, "iss": self._issuer, "aud": self._audience})
        return jwt.encode(claims, self._secret, algorithm=_ALGORITHM)

    def issue_access_token(self, identity: Identity, ttl: timedelta | None = None) -> str:
        user = identity.user
        claims = {
            "sub": str(user.id),
            "username": user.username,
            "role": user.role_name,
            "branch_id": user.branch_id,
            "is_main_branch": user.is_main_branch,
            "permissions": list(identity.permissions),
            "type": ACCESS,
        }
        return self._encode(claims, ttl if ttl is not None else self.access_ttl)

    def issue_refresh_token(self, user_id: int, device_info: str | None = None, ttl: timedelta | None = None) -> str:
        claims = {
            "sub": str(user_id),
            "type": REFRESH,
            "device": device_info,
            "jti": secrets.token_hex(16),
        }
        return self._encode(claims, ttl if ttl is not None else self.refresh_ttl)

    def verify(self, token: str, expected_kind: str) -> dict[str, Any]:
        """Verify signature, issuer, audience, expiry and kind.

        Raises TokenExpired past the exp instant and TokenInvalid for every
        other failure, including a refresh token presented as an access token.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenInvalid() from exc
        if claims.get("type") != expected_kind:
            raise TokenInvalid()
        return claims

    def decode_unsafe(self, token: str) -> dict[str, Any]:
        """Read claims without checking the signature. Diagnostics only."""
        try:
            return jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenInvalid() from exc
