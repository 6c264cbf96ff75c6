# deps/admin.py
from fastapi import Depends, HTTPException, status
from deps.auth import get_current_user, CurrentUser
from db import get_conn


def _is_admin(user_id) -> bool:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT role FROM app.users WHERE id = %s", (user_id,))
            row = cur.fetchone()
    return bool(row) and row[0] == "admin"


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not _is_admin(user.user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_REQUIRED",
        )
    return user
