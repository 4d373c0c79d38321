from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, List, Optional, Protocol

from dunnoauth.config import Settings
from dunnoauth.logging import get_logger, log_auth_failure
from dunnoauth.service.errors import (
    ConflictError,
    InvalidCredentials,
    InvalidToken,
    InvalidTwoFactorCode,
    NotFoundError,
    PolicyViolation,
    RateLimited,
)
from dunnoauth.service.passwords import PasswordVerifier
from dunnoauth.service.policy import (
    ensure_cooldown_elapsed,
    validate_email,
    validate_username,
)
from dunnoauth.service.rate_limit import RateLimiter
from dunnoauth.service.tokens import TokenService
from dunnoauth.service.two_factor import TwoFactorManager
from dunnoauth.storage.errors import ConstraintViolation
from dunnoauth.storage.models import TokenPair, UserProfile, UserRecord, utcnow

ACTION_LOGIN = "login"
ACTION_TWO_FACTOR = "two_factor"
ACTION_CHANGE_PASSWORD = "change_password"
ACTION_DELETE_ACCOUNT = "delete_account"


class UserStore(Protocol):
    def create_user(self, username: str, email: str, password_hash: str) -> UserRecord: ...

    def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    def get_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    def get_user_by_username(self, username: str) -> Optional[UserRecord]: ...

    def update_password(self, user_id: str, password_hash: str, changed_at: datetime) -> bool: ...

    def update_email(self, user_id: str, email: str, changed_at: datetime) -> bool: ...

    def update_username(self, user_id: str, username: str, changed_at: datetime) -> UserRecord: ...

    def set_two_factor(
        self, user_id: str, secret: str, recovery_codes: List[str], enabled: bool = False
    ) -> None: ...

    def update_recovery_codes(self, user_id: str, recovery_codes: List[str]) -> None: ...

    def consume_recovery_code(self, user_id: str, code: str) -> bool: ...

    def clear_two_factor(self, user_id: str) -> None: ...

    def delete_user(self, user_id: str) -> bool: ...


class LoginStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMITED = "rate_limited"


@dataclass
class LoginResult:
    """Outcome of a password login.

    Exactly one of ``tokens`` (AUTHENTICATED) or ``temp_token``
    (TWO_FACTOR_REQUIRED) is set on success; both stay None otherwise.
    """

    status: LoginStatus
    user: Optional[UserRecord] = None
    tokens: Optional[TokenPair] = None
    temp_token: Optional[str] = None
    recovery_available: bool = False

    @property
    def authenticated(self) -> bool:
        return self.status is LoginStatus.AUTHENTICATED


class AuthService:
    """Credential flows built from the token, limiter and second-factor parts.

    Expected negatives of a login come back as a ``LoginResult``; every other
    operation raises from ``dunnoauth.service.errors``. Store and cache faults
    propagate unchanged.
    """

    def __init__(
        self,
        settings: Settings,
        store: UserStore,
        passwords: PasswordVerifier,
        tokens: TokenService,
        rate_limiter: RateLimiter,
        two_factor: TwoFactorManager,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.passwords = passwords
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.two_factor = two_factor
        self._now = now
        self.logger = get_logger(__name__)

    @property
    def cooldown_period(self) -> timedelta:
        return timedelta(days=self.settings.field_change_cooldown_days)

    def _require_user(self, user_id: str) -> UserRecord:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _find_login_user(self, identifier: str) -> Optional[UserRecord]:
        if "@" in identifier:
            return self.store.get_user_by_email(identifier)
        return self.store.get_user_by_username(identifier)

    async def _guard(self, origin: str, identity: str, action: str) -> None:
        if await self.rate_limiter.is_rate_limited(origin, identity, action=action):
            retry_after = await self.rate_limiter.remaining_block_seconds(
                origin, identity, action=action
            )
            self.logger.warning("rate_limited", action=action, retry_after=retry_after)
            raise RateLimited(retry_after=retry_after)

    async def register(self, username: str, email: str, password: str) -> UserRecord:
        username = validate_username(username)
        email = validate_email(email)
        password_hash = self.passwords.hash(password)
        if self.store.get_user_by_username(username):
            raise ConflictError("username already exists", detail={"field": "username"})
        if self.store.get_user_by_email(email):
            raise ConflictError("email already in use", detail={"field": "email"})
        try:
            user = self.store.create_user(username, email, password_hash)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(self, origin: str, identifier: str, password: str) -> LoginResult:
        identifier = (identifier or "").strip()
        if await self.rate_limiter.is_rate_limited(origin, identifier, action=ACTION_LOGIN):
            self.logger.warning("login_rate_limited")
            return LoginResult(status=LoginStatus.RATE_LIMITED)

        user = self._find_login_user(identifier) if identifier else None
        if user is None or not self.passwords.verify(user.password_hash, password):
            await self.rate_limiter.track_attempt(origin, identifier, action=ACTION_LOGIN)
            log_auth_failure("login", self.logger, reason="invalid_credentials")
            return LoginResult(status=LoginStatus.INVALID_CREDENTIALS)

        await self.rate_limiter.reset_attempts(origin, identifier, action=ACTION_LOGIN)
        if user.two_factor_enabled:
            temp_token = self.tokens.issue_temp_token(
                user.id, recovery_available=user.recovery_available
            )
            self.logger.info("login_pending_two_factor", user_id=user.id)
            return LoginResult(
                status=LoginStatus.TWO_FACTOR_REQUIRED,
                user=user,
                temp_token=temp_token,
                recovery_available=user.recovery_available,
            )
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            status=LoginStatus.AUTHENTICATED,
            user=user,
            tokens=self.tokens.issue_session_tokens(user),
        )

    async def _pending_user(self, temp_token: str) -> UserRecord:
        payload = await self.tokens.verify_temp_token(temp_token)
        user = self.store.get_user(str(payload.get("sub")))
        if user is None:
            raise InvalidToken()
        # A password change voids any login that was waiting on its second factor.
        # iat has whole-second resolution, so a token from the same second is void too.
        if user.last_password_change is not None:
            changed_at = int(user.last_password_change.timestamp())
            if int(payload.get("iat", 0)) <= changed_at:
                raise InvalidToken()
        return user

    async def complete_two_factor(self, origin: str, temp_token: str, code: str) -> TokenPair:
        user = await self._pending_user(temp_token)
        await self._guard(origin, user.id, ACTION_TWO_FACTOR)
        if not await self.two_factor.check_code(user.id, code):
            await self.rate_limiter.track_attempt(origin, user.id, action=ACTION_TWO_FACTOR)
            log_auth_failure("complete_two_factor", self.logger, user_id=user.id)
            raise InvalidTwoFactorCode()
        await self.rate_limiter.reset_attempts(origin, user.id, action=ACTION_TWO_FACTOR)
        await self.tokens.revoke([temp_token])
        self.logger.info("login_succeeded", user_id=user.id, method="totp")
        return self.tokens.issue_session_tokens(user)

    async def complete_recovery(
        self, origin: str, temp_token: str, recovery_code: str
    ) -> TokenPair:
        user = await self._pending_user(temp_token)
        await self._guard(origin, user.id, ACTION_TWO_FACTOR)
        if not await self.two_factor.use_recovery_code(user.id, recovery_code):
            await self.rate_limiter.track_attempt(origin, user.id, action=ACTION_TWO_FACTOR)
            log_auth_failure("complete_recovery", self.logger, user_id=user.id)
            raise InvalidTwoFactorCode("invalid recovery code")
        await self.rate_limiter.reset_attempts(origin, user.id, action=ACTION_TWO_FACTOR)
        await self.tokens.revoke([temp_token])
        self.logger.info("login_succeeded", user_id=user.id, method="recovery_code")
        return self.tokens.issue_session_tokens(user)

    async def refresh(self, refresh_token: str) -> str:
        return await self.tokens.refresh(refresh_token)

    async def logout(self, tokens: Iterable[Optional[str]]) -> int:
        revoked = await self.tokens.revoke(tokens)
        self.logger.info("logout", revoked=revoked)
        return revoked

    async def authenticate(self, access_token: str) -> UserRecord:
        """Resolve the user behind a full-session access token."""
        payload = await self.tokens.verify_access_token(access_token)
        user = self.store.get_user(str(payload.get("sub")))
        if user is None:
            raise InvalidToken()
        return user

    async def get_profile(self, user_id: str) -> UserProfile:
        return UserProfile.from_record(self._require_user(user_id))

    async def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        *,
        origin: str,
        current_tokens: Iterable[Optional[str]] = (),
    ) -> None:
        """Replace the password and revoke the caller's current tokens.

        Raises:
            RateLimited: too many wrong old passwords from this origin.
            CooldownActive: the password changed within the cooldown period.
            InvalidCredentials: ``old_password`` is wrong.
            PolicyViolation: ``new_password`` is too weak.
        """
        user = self._require_user(user_id)
        await self._guard(origin, user_id, ACTION_CHANGE_PASSWORD)
        now = self._now()
        ensure_cooldown_elapsed("password", user.last_password_change, now, self.cooldown_period)
        if not self.passwords.verify(user.password_hash, old_password):
            await self.rate_limiter.track_attempt(origin, user_id, action=ACTION_CHANGE_PASSWORD)
            log_auth_failure("change_password", self.logger, user_id=user_id)
            raise InvalidCredentials("old password is incorrect")
        password_hash = self.passwords.hash(new_password)
        self.store.update_password(user_id, password_hash, now)
        await self.rate_limiter.reset_attempts(origin, user_id, action=ACTION_CHANGE_PASSWORD)
        await self.tokens.revoke(current_tokens)
        self.logger.info("password_changed", user_id=user_id)

    async def change_email(self, user_id: str, new_email: str) -> None:
        user = self._require_user(user_id)
        now = self._now()
        ensure_cooldown_elapsed("email", user.last_email_change, now, self.cooldown_period)
        if (new_email or "").strip() == user.email.strip():
            raise PolicyViolation("you are already using this email", detail={"field": "email"})
        email = validate_email(new_email)
        if self.store.get_user_by_email(email):
            raise ConflictError("email already in use", detail={"field": "email"})
        try:
            self.store.update_email(user_id, email, now)
        except ConstraintViolation as exc:
            raise ConflictError("email already in use", detail=exc.detail) from exc
        self.logger.info("email_changed", user_id=user_id)

    async def change_username(self, user_id: str, new_username: str) -> UserRecord:
        user = self._require_user(user_id)
        candidate = (new_username or "").strip()
        if not candidate:
            raise PolicyViolation("must provide a new username", detail={"field": "username"})
        if candidate == user.username.strip():
            raise PolicyViolation(
                "you are already using this username", detail={"field": "username"}
            )
        now = self._now()
        ensure_cooldown_elapsed("username", user.last_username_change, now, self.cooldown_period)
        username = validate_username(candidate)
        if self.store.get_user_by_username(username):
            raise ConflictError("username already in use", detail={"field": "username"})
        try:
            updated = self.store.update_username(user_id, username, now)
        except ConstraintViolation as exc:
            raise ConflictError("username already in use", detail=exc.detail) from exc
        self.logger.info("username_changed", user_id=user_id)
        return updated

    async def delete_account(
        self,
        user_id: str,
        password: str,
        *,
        origin: str,
        current_tokens: Iterable[Optional[str]] = (),
    ) -> None:
        user = self._require_user(user_id)
        await self._guard(origin, user_id, ACTION_DELETE_ACCOUNT)
        if not self.passwords.verify(user.password_hash, password):
            await self.rate_limiter.track_attempt(origin, user_id, action=ACTION_DELETE_ACCOUNT)
            log_auth_failure("delete_account", self.logger, user_id=user_id)
            raise InvalidCredentials()
        await self.rate_limiter.reset_attempts(origin, user_id, action=ACTION_DELETE_ACCOUNT)
        await self.tokens.revoke(current_tokens)
        self.store.delete_user(user_id)
        self.logger.info("account_deleted", user_id=user_id)
