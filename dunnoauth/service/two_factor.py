from __future__ import annotations

import base64
import hashlib
import secrets
import string
import time
from dataclasses import dataclass
from io import BytesIO
from typing import TYPE_CHECKING, Callable, List

import pyotp
import qrcode
import qrcode.image.svg

from dunnoauth.config import Settings
from dunnoauth.logging import get_logger, log_auth_failure
from dunnoauth.service.errors import (
    InvalidCredentials,
    InvalidTwoFactorCode,
    NotFoundError,
    RecoveryCodesUnavailable,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
    TwoFactorSetupNotStarted,
)
from dunnoauth.service.passwords import PasswordVerifier
from dunnoauth.storage.models import UserRecord

if TYPE_CHECKING:
    from dunnoauth.service.auth import UserStore

logger = get_logger(__name__)

SECRET_BYTES = 32
RECOVERY_CODE_LENGTH = 10
_RECOVERY_ALPHABET = string.ascii_uppercase + string.digits
_DIGESTS = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}


@dataclass
class TwoFactorEnrollment:
    secret: str
    uri: str
    qr_code_svg: str


@dataclass
class TwoFactorStatus:
    enabled: bool
    configured: bool
    recovery_codes_remaining: int


def generate_secret() -> str:
    """256 random bits as unpadded base32."""
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def generate_recovery_codes(count: int) -> List[str]:
    return [
        "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH))
        for _ in range(count)
    ]


def render_qr_svg(data: str) -> str:
    image = qrcode.make(data, image_factory=qrcode.image.svg.SvgPathImage)
    buffer = BytesIO()
    image.save(buffer)
    return buffer.getvalue().decode("utf-8")


class TwoFactorManager:
    """TOTP enrollment, verification and single-use recovery codes.

    The TOTP parameters (issuer, label, algorithm, digits, period) come from
    settings and must not change between enrollment and verification, or
    previously enrolled authenticator apps stop producing valid codes.
    """

    def __init__(
        self,
        store: "UserStore",
        passwords: PasswordVerifier,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.settings = settings
        self._clock = clock

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret,
            digits=self.settings.totp_digits,
            digest=_DIGESTS[self.settings.totp_algorithm],
            name=self.settings.totp_label,
            issuer=self.settings.totp_issuer,
            interval=self.settings.totp_period,
        )

    def _require_user(self, user_id: str) -> UserRecord:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _code_matches(self, secret: str, code: str) -> bool:
        candidate = (code or "").strip()
        if not candidate:
            return False
        # Only the current time step is accepted.
        return self._totp(secret).verify(candidate, for_time=int(self._clock()), valid_window=0)

    async def enable(self, user_id: str) -> TwoFactorEnrollment:
        """Start enrollment: store a fresh secret with 2FA still disabled."""
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise TwoFactorAlreadyEnabled()
        secret = generate_secret()
        uri = self._totp(secret).provisioning_uri()
        self.store.set_two_factor(user_id, secret, [], enabled=False)
        logger.info("two_factor_enrollment_started", user_id=user_id)
        return TwoFactorEnrollment(secret=secret, uri=uri, qr_code_svg=render_qr_svg(uri))

    async def verify(self, user_id: str, code: str) -> List[str]:
        """Confirm enrollment with a current code and issue recovery codes.

        Any earlier recovery codes are replaced. A wrong code changes nothing.
        """
        user = self._require_user(user_id)
        if not user.two_factor_secret:
            raise TwoFactorSetupNotStarted()
        if not self._code_matches(user.two_factor_secret, code):
            log_auth_failure("verify_two_factor", logger, user_id=user_id)
            raise InvalidTwoFactorCode()
        codes = generate_recovery_codes(self.settings.recovery_code_count)
        self.store.set_two_factor(user_id, user.two_factor_secret, codes, enabled=True)
        logger.info("two_factor_enabled", user_id=user_id)
        return codes

    async def disable(self, user_id: str, code: str, password: str) -> None:
        user = self._require_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise TwoFactorNotEnabled()
        if not self.passwords.verify(user.password_hash, password):
            log_auth_failure("disable_two_factor", logger, user_id=user_id, reason="password")
            raise InvalidCredentials()
        if not self._code_matches(user.two_factor_secret, code):
            log_auth_failure("disable_two_factor", logger, user_id=user_id, reason="code")
            raise InvalidTwoFactorCode()
        self.store.clear_two_factor(user_id)
        logger.info("two_factor_disabled", user_id=user_id)

    async def check_code(self, user_id: str, code: str) -> bool:
        user = self._require_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            return False
        return self._code_matches(user.two_factor_secret, code)

    async def use_recovery_code(self, user_id: str, code: str) -> bool:
        """Consume one recovery code.

        Returns False, leaving the set untouched, when the code is unknown.

        Raises:
            RecoveryCodesUnavailable: the user has no codes left.
        """
        user = self._require_user(user_id)
        if not user.recovery_codes:
            raise RecoveryCodesUnavailable()
        candidate = (code or "").strip()
        if not candidate or candidate not in user.recovery_codes:
            log_auth_failure("use_recovery_code", logger, user_id=user_id)
            return False
        used = self.store.consume_recovery_code(user_id, candidate)
        if used:
            logger.info(
                "recovery_code_used",
                user_id=user_id,
                remaining=len(user.recovery_codes) - 1,
            )
        return used

    async def status(self, user_id: str) -> TwoFactorStatus:
        user = self._require_user(user_id)
        return TwoFactorStatus(
            enabled=user.two_factor_enabled,
            configured=bool(user.two_factor_secret),
            recovery_codes_remaining=len(user.recovery_codes),
        )
