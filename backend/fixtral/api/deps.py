import uuid
from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from fixtral.core.security import decode_access_token
from fixtral.schemas import AuthUser
from fixtral.services.credits import CreditLedger
from fixtral.services.gemini import GeminiService
from fixtral.services.history import HistoryCascade
from fixtral.services.posts import PostArchive
from fixtral.services.reddit import RedditClient

bearer = HTTPBearer(auto_error=False)

DEVICE_COOKIE = "fixtral_device"
DEVICE_COOKIE_MAX_AGE = 365 * 24 * 60 * 60


async def get_optional_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Optional[AuthUser]:
    if not creds:
        return None
    try:
        return decode_access_token(creds.credentials)
    except (JWTError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(user: Optional[AuthUser] = Depends(get_optional_user)) -> AuthUser:
    if user is None:
        raise HTTPException(status_code=401, detail="Please sign in to generate images!")
    return user


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_history(request: Request) -> HistoryCascade:
    return request.app.state.history


def get_archive(request: Request) -> PostArchive:
    return request.app.state.posts


def get_reddit(request: Request) -> RedditClient:
    return request.app.state.reddit


def get_gemini(request: Request) -> GeminiService:
    return request.app.state.gemini


async def get_device_id(
    response: Response,
    x_device_id: Optional[str] = Header(default=None, max_length=64),
    fixtral_device: Optional[str] = Cookie(default=None, max_length=64),
) -> str:
    """Identify the browser that owns anonymous history.

    Clients may send `X-Device-Id`; otherwise a random id is issued as a cookie
    on the first request.
    """
    device_id = x_device_id or fixtral_device
    if not device_id:
        device_id = uuid.uuid4().hex
        response.set_cookie(
            DEVICE_COOKIE,
            device_id,
            max_age=DEVICE_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
        )
    return device_id
