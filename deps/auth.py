# deps/auth.py
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from uuid import UUID

from security import decode_token

bearer = HTTPBearer(auto_error=False)

class CurrentUser:
    def __init__(self, user_id: UUID):
        self.user_id = user_id


def _user_from(creds: Optional[HTTPAuthorizationCredentials]) -> Optional[CurrentUser]:
    if not creds or (creds.scheme or "").lower() != "bearer":
        return None
    payload = decode_token(creds.credentials)
    sub = payload.get("sub")
    if not sub:
        return None
    try:
        return CurrentUser(user_id=UUID(sub))
    except ValueError:
        return None


def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> CurrentUser:
    user = _user_from(creds)
    if user is None:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")
    return user


def get_optional_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> Optional[CurrentUser]:
    # buyers pay and dispute without an account
    return _user_from(creds)
