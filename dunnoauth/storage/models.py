from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserRecord:
    """Credential record owned by the user store.

    ``two_factor_secret`` is set once enrollment starts; ``two_factor_enabled``
    flips only after the first code is verified.
    """

    id: str
    username: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    recovery_codes: List[str] = field(default_factory=list)
    last_password_change: Optional[datetime] = None
    last_email_change: Optional[datetime] = None
    last_username_change: Optional[datetime] = None

    @classmethod
    def new(cls, username: str, email: str, password_hash: str) -> "UserRecord":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
        )

    @property
    def recovery_available(self) -> bool:
        return bool(self.recovery_codes)


@dataclass
class UserProfile:
    username: str
    email: str
    created_at: datetime

    @classmethod
    def from_record(cls, record: UserRecord) -> "UserProfile":
        return cls(
            username=record.username,
            email=record.email,
            created_at=record.created_at,
        )


@dataclass
class RateLimitInfo:
    attempts: int
    first_attempt: float
    last_attempt: float
    blocked: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "RateLimitInfo":
        return cls(
            attempts=int(data.get("attempts", 0)),
            first_attempt=float(data.get("first_attempt", 0.0)),
            last_attempt=float(data.get("last_attempt", 0.0)),
            blocked=bool(data.get("blocked", False)),
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_list(self) -> List[str]:
        return [self.access_token, self.refresh_token]
