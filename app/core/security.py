from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from app.core.config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24


@dataclass(frozen=True)
class Actor:
    """The authenticated member and the company (tenant) the call runs under."""

    company_id: str
    member_id: str


def create_access_token(
    member_id: str,
    company_id: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {
        "sub": member_id,
        "company": company_id or settings.DEFAULT_COMPANY_ID,
        "exp": expire,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=ALGORITHM)


def _extract_token(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if header:
        scheme, _, param = header.partition(" ")
        if scheme.lower() == "bearer" and param:
            return param

    cookie = request.cookies.get("access_token")
    if cookie:
        scheme, _, param = cookie.partition(" ")
        return param or scheme
    return None


def decode_actor(token: str) -> Actor | None:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None

    member_id = payload.get("sub")
    if not member_id:
        return None
    company_id = payload.get("company") or settings.DEFAULT_COMPANY_ID
    return Actor(company_id=str(company_id), member_id=str(member_id))


async def get_current_actor(request: Request) -> Actor:
    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    actor = decode_actor(token)
    if actor is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return actor
