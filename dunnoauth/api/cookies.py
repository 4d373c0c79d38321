from __future__ import annotations

from fastapi import Response

from dunnoauth.config import Settings
from dunnoauth.storage.models import TokenPair

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def set_access_cookie(response: Response, access_token: str, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )


def set_session_cookies(response: Response, pair: TokenPair, settings: Settings) -> None:
    """Attach both session cookies; only call once the session is fully authenticated."""
    set_access_cookie(response, pair.access_token, settings)
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def clear_session_cookies(response: Response, settings: Settings | None = None) -> None:
    secure = settings.cookie_secure if settings is not None else True
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.set_cookie(
            name,
            "",
            httponly=True,
            secure=secure,
            samesite="lax",
            max_age=-1,
            path="/",
        )
