from __future__ import annotations

import base64
import hashlib
import json
import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from dunnoauth.logging import get_logger
from dunnoauth.storage.errors import ConstraintViolation
from dunnoauth.storage.models import UserRecord


class MemoryCache:
    """In-process stand-in for the shared TTL cache.

    Mirrors the ``RedisCache`` surface. Entries expire lazily against the
    injected clock, which lets tests move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    def verify_connection(self) -> None:
        return None

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl must be positive, got {ttl_seconds}")
        with self._lock:
            self._entries[key] = (value, self._clock() + int(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return max(0, int(entry[1] - self._clock()))

    async def get_json(self, key: str) -> Optional[dict]:
        raw = await self.get(key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None

    async def set_json(self, key: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        await self.set_with_ttl(key, json.dumps(payload, separators=(",", ":")), ttl_seconds)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return [key for key in list(self._entries) if self._live(key) is not None]


class MemoryStore:
    """In-memory user credential store used for tests and local development."""

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserRecord] = {}
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        try:
            return Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored two-factor secret cannot be decrypted") from exc

    def _public(self, record: UserRecord) -> UserRecord:
        return replace(
            record,
            two_factor_secret=self._decrypt_secret(record.two_factor_secret),
            recovery_codes=list(record.recovery_codes),
        )

    def _require(self, user_id: str) -> UserRecord:
        record = self.users.get(user_id)
        if record is None:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return record

    def _ensure_unique(self, *, username: str | None = None, email: str | None = None, exclude: str | None = None) -> None:
        for existing in self.users.values():
            if existing.id == exclude:
                continue
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def create_user(self, username: str, email: str, password_hash: str) -> UserRecord:
        with self._data_lock:
            self._ensure_unique(username=username, email=email)
            record = UserRecord.new(username, email, password_hash)
            self.users[record.id] = record
            return self._public(record)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._data_lock:
            record = self.users.get(user_id)
            return self._public(record) if record else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._data_lock:
            record = next((u for u in self.users.values() if u.email == email), None)
            return self._public(record) if record else None

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        with self._data_lock:
            record = next((u for u in self.users.values() if u.username == username), None)
            return self._public(record) if record else None

    def update_password(self, user_id: str, password_hash: str, changed_at: datetime) -> bool:
        with self._data_lock:
            record = self._require(user_id)
            record.password_hash = password_hash
            record.last_password_change = changed_at
            return True

    def update_email(self, user_id: str, email: str, changed_at: datetime) -> bool:
        with self._data_lock:
            record = self._require(user_id)
            self._ensure_unique(email=email, exclude=user_id)
            record.email = email
            record.last_email_change = changed_at
            return True

    def update_username(self, user_id: str, username: str, changed_at: datetime) -> UserRecord:
        with self._data_lock:
            record = self._require(user_id)
            self._ensure_unique(username=username, exclude=user_id)
            record.username = username
            record.last_username_change = changed_at
            return self._public(record)

    def set_two_factor(
        self,
        user_id: str,
        secret: str,
        recovery_codes: List[str],
        enabled: bool = False,
    ) -> None:
        with self._data_lock:
            record = self._require(user_id)
            record.two_factor_secret = self._encrypt_secret(secret)
            record.recovery_codes = list(recovery_codes)
            record.two_factor_enabled = enabled

    def update_recovery_codes(self, user_id: str, recovery_codes: List[str]) -> None:
        with self._data_lock:
            record = self._require(user_id)
            record.recovery_codes = list(recovery_codes)

    def consume_recovery_code(self, user_id: str, code: str) -> bool:
        """Remove one occurrence of ``code``; False when it is not present."""
        with self._data_lock:
            record = self._require(user_id)
            if code not in record.recovery_codes:
                return False
            record.recovery_codes.remove(code)
            return True

    def clear_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            record = self._require(user_id)
            record.two_factor_secret = None
            record.two_factor_enabled = False
            record.recovery_codes = []

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            return self.users.pop(user_id, None) is not None
