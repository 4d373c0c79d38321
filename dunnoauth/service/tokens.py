from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

import jwt

from dunnoauth.config import Settings
from dunnoauth.logging import get_logger
from dunnoauth.service.errors import (
    InvalidToken,
    InvalidTokenType,
    ServerError,
    TokenExpired,
)
from dunnoauth.service.revocation import RevocationStore
from dunnoauth.storage.models import TokenPair, UserRecord

logger = get_logger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_TEMP = "temp"

# Claims minted per token; never copied from an old token into a new one.
_REGISTERED_CLAIMS = ("iat", "exp", "jti", "iss", "aud", "type")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issues, verifies, refreshes and revokes signed session credentials.

    Access tokens carry no ``type`` claim; refresh and pending-2FA tokens are
    marked with ``type`` so neither can stand in for the other.
    """

    def __init__(
        self,
        settings: Settings,
        revocations: RevocationStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.revocations = revocations
        self._clock = clock

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _encode(self, claims: dict[str, Any], ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        try:
            return jwt.encode(payload, self.settings.jwt_secret, algorithm=ALGORITHM)
        except (TypeError, ValueError, jwt.PyJWTError) as exc:
            logger.error("token_sign_failed", error_type=type(exc).__name__)
            raise ServerError("failed to generate tokens") from exc

    def issue_session_tokens(self, user: UserRecord) -> TokenPair:
        claims = {"sub": user.id, "username": user.username}
        access_token = self._encode(claims, self.access_ttl)
        refresh_token = self._encode(
            {**claims, "type": TOKEN_TYPE_REFRESH}, self.refresh_ttl
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def issue_temp_token(
        self,
        user_id: str,
        ttl_seconds: Optional[int] = None,
        recovery_available: bool = False,
    ) -> str:
        ttl = timedelta(seconds=ttl_seconds or self.settings.temp_token_ttl_seconds)
        return self._encode(
            {
                "sub": user_id,
                "type": TOKEN_TYPE_TEMP,
                "recoveryAvailable": bool(recovery_available),
            },
            ttl,
        )

    async def verify(self, token: str) -> dict[str, Any]:
        """Decode and validate ``token``.

        Raises:
            InvalidToken: revoked, bad signature, wrong issuer/audience, malformed.
            TokenExpired: past its ``exp``.
        """
        if not token:
            raise InvalidToken()
        if await self.revocations.contains(token):
            logger.info("token_revoked_rejected")
            raise InvalidToken("token has been revoked")
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[ALGORITHM],
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
                options={
                    "require": ["exp", "iat", "iss", "aud", "sub"],
                    # Expiry is checked against the injected clock below.
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.PyJWTError as exc:
            logger.info("token_rejected", reason=type(exc).__name__)
            raise InvalidToken() from exc
        try:
            exp = float(payload["exp"])
        except (TypeError, ValueError) as exc:
            raise InvalidToken() from exc
        if exp <= self._clock().timestamp():
            raise TokenExpired()
        return payload

    async def verify_access_token(self, token: str) -> dict[str, Any]:
        payload = await self.verify(token)
        if payload.get("type") is not None:
            raise InvalidTokenType()
        return payload

    async def verify_temp_token(self, token: str) -> dict[str, Any]:
        payload = await self.verify(token)
        if payload.get("type") != TOKEN_TYPE_TEMP:
            raise InvalidTokenType("invalid temporary token")
        return payload

    async def refresh(self, refresh_token: str) -> str:
        """Mint a fresh access token from a valid refresh token.

        The refresh token itself is not rotated.
        """
        payload = await self.verify(refresh_token)
        if payload.get("type") != TOKEN_TYPE_REFRESH:
            raise InvalidTokenType()
        claims = {k: v for k, v in payload.items() if k not in _REGISTERED_CLAIMS}
        return self._encode(claims, self.access_ttl)

    def remaining_lifetime(self, token: str) -> Optional[int]:
        """Seconds until ``token`` expires, read without checking the signature.

        Returns None when the token cannot be decoded or has no ``exp``.
        """
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            return None
        # Whole seconds against the floored clock, so any validity left counts as one.
        return int(exp - math.floor(self._clock().timestamp()))

    async def revoke(self, tokens: Iterable[Optional[str]]) -> int:
        """Blacklist each token for exactly its remaining lifetime.

        Undecodable and already-expired tokens are skipped. Cache faults on one
        token do not stop the rest of the batch, but are re-raised afterwards.
        Returns the number of entries written.
        """
        written = 0
        failure: Optional[BaseException] = None
        for token in tokens:
            if not token:
                continue
            remaining = self.remaining_lifetime(token)
            if remaining is None:
                logger.warning("token_revoke_skipped_malformed")
                continue
            if remaining <= 0:
                continue
            try:
                if await self.revocations.add(token, remaining):
                    written += 1
            except Exception as exc:
                logger.error(
                    "token_revoke_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                failure = failure or exc
        if failure is not None:
            raise ServerError("failed to revoke tokens") from failure
        return written

    async def is_revoked(self, token: str) -> bool:
        return await self.revocations.contains(token)
