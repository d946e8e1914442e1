"""
auth/sessions.py -- Login, token refresh and logout.

Login order [C1]:
  1. Throttle check for the client key (TooManyAttempts).
  2. Look the user up by username OR email. Unknown user: bcrypt still runs
     against the dummy hash, then InvalidCredentials.
  3. Verify the password. Wrong password: InvalidCredentials, whatever the
     account's active flag says.
  4. Only now check is_active. A deactivated account with the right password
     gets AccountDeactivated(identity_verified=True); the caller has proven
     who they are, so the UI may offer reactivation without this becoming a
     username oracle.
  5. Stamp last_login, resolve permissions, issue tokens, persist the refresh
     token's HMAC as a session row.

Refresh needs a valid refresh JWT, a matching unexpired session row and an
active user. The refresh token itself is not rotated; only a new access
token is issued. Logout deletes the session row and is idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.errors import (
    AccountDeactivated,
    AccountInactive,
    InvalidCredentials,
    InvalidRefreshToken,
    RefreshTokenExpiredOrRevoked,
    TokenExpired,
    TokenInvalid,
    TooManyAttempts,
)
from auth.models import Identity, User, UserSession
from auth.ratelimit import LoginRateLimiter
from auth.store import CredentialStore
from auth.tokens import REFRESH, TokenCodec, burn_password_check, hash_token, subject_id, verify_password
from core.config import Settings, get_settings
from core.time_utils import Clock, to_iso, utcnow

logger = logging.getLogger("coopportal.auth.sessions")


@dataclass
class LoginResult:
    identity: Identity
    access_token: str
    refresh_token: str
    expires_in: int


class SessionManager:
    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        limiter: LoginRateLimiter,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.limiter = limiter
        self.settings = settings or get_settings()
        self.clock = clock

    def resolve_identity(self, user: User) -> Identity:
        return Identity(user=user, permissions=self.store.permissions_for_role(user.role_id))

    def _hash(self, refresh_token: str) -> str:
        return hash_token(refresh_token, self.settings.secret_key)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        identifier: str,
        password: str,
        device_info: str | None = None,
        ip: str | None = None,
    ) -> LoginResult:
        key = ip or "unknown"
        if not self.limiter.allow(key):
            raise TooManyAttempts(self.limiter.retry_after(key))

        user = self.store.get_user_by_login(identifier)
        if user is None:
            burn_password_check(password)
            self.limiter.record_failure(key)
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            self.limiter.record_failure(key)
            raise InvalidCredentials()
        if not user.is_active:
            logger.info("Login refused for deactivated account user_id=%s", user.id)
            raise AccountDeactivated(identity_verified=True, username=user.username, user_id=user.id)

        self.limiter.reset(key)
        now = self.clock()
        self.store.update_last_login(user.id, now)
        user.last_login = to_iso(now)

        identity = self.resolve_identity(user)
        access_token = self.codec.issue_access_token(identity)
        refresh_token = self.codec.issue_refresh_token(user.id, device_info)
        self.store.create_session(
            UserSession(
                user_id=user.id,
                token_hash=self._hash(refresh_token),
                expires_at=to_iso(now + self.codec.refresh_ttl),
                device_info=device_info,
                ip_address=ip,
                created_at=to_iso(now),
            )
        )
        logger.info("Login succeeded user_id=%s role=%s", user.id, user.role_name)
        return LoginResult(
            identity=identity,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.codec.access_ttl.total_seconds()),
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> tuple[str, int]:
        """Return (new_access_token, expires_in)."""
        try:
            claims = self.codec.verify(refresh_token, REFRESH)
        except TokenExpired as exc:
            raise RefreshTokenExpiredOrRevoked() from exc
        except TokenInvalid as exc:
            raise InvalidRefreshToken() from exc
        try:
            user_id = subject_id(claims)
        except TokenInvalid as exc:
            raise InvalidRefreshToken() from exc

        session = self.store.get_live_session(self._hash(refresh_token), self.clock())
        if session is None:
            raise RefreshTokenExpiredOrRevoked()
        if session.user_id != user_id:
            raise InvalidRefreshToken()

        user = self.store.get_user_by_id(user_id)
        if user is None or not user.is_active:
            raise AccountInactive()

        access_token = self.codec.issue_access_token(self.resolve_identity(user))
        return access_token, int(self.codec.access_ttl.total_seconds())

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, user_id: int, refresh_token: str | None) -> bool:
        """Delete the caller's session row. Absence is not an error."""
        if not refresh_token:
            return False
        removed = self.store.delete_session(self._hash(refresh_token), user_id)
        logger.info("Logout user_id=%s session_removed=%s", user_id, removed)
        return removed
