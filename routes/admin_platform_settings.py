# routes/admin_platform_settings.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from deps.admin import require_admin
from deps.auth import CurrentUser
from schemas import PlatformSettingsIn, PlatformSettingsOut
from services.platform_settings import DEFAULTS, get_settings_cache, set_setting

router = APIRouter(prefix="/admin/platform-settings", tags=["admin"])


def _current() -> dict[str, bool]:
    cache = get_settings_cache()
    return {key: cache.flag(key) for key in DEFAULTS}


@router.get("", response_model=PlatformSettingsOut)
def get_platform_settings(_admin: CurrentUser = Depends(require_admin)):
    return _current()


@router.put("", response_model=PlatformSettingsOut)
def put_platform_setting(body: PlatformSettingsIn, _admin: CurrentUser = Depends(require_admin)):
    set_setting(body.key, body.value)
    return _current()
