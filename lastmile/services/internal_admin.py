import hmac

from fastapi import Header, HTTPException

from lastmile.core.config import settings


async def require_internal_admin(x_internal_admin_key: str | None = Header(default=None)) -> str:
    if not x_internal_admin_key or not hmac.compare_digest(x_internal_admin_key, settings.internal_admin_key):
        raise HTTPException(status_code=403, detail="Internal admin key required")
    # recorded as created_by/updated_by on operator writes
    return "internal"
