import hmac

from fastapi import HTTPException, Header

from config import config
from observability import structured_logger, metrics


def verify_admin_key(admin_key: str) -> bool:
    expected_key = config.get_admin_key() or "admin"
    return hmac.compare_digest(admin_key.encode(), expected_key.encode())


async def require_admin(x_admin: str | None = Header(None)) -> bool:
    """
    Dependency guarding every API route with the X-Admin header.
    The dashboard proxy injects it; there is no per-user login.
    """
    if not x_admin:
        metrics.inc_counter("auth_failures_total", {"reason": "missing"})
        raise HTTPException(status_code=401, detail="Missing X-Admin header")

    if not verify_admin_key(x_admin):
        metrics.inc_counter("auth_failures_total", {"reason": "invalid"})
        structured_logger.log_event("auth.admin_key.invalid", level="WARN")
        raise HTTPException(status_code=401, detail="Invalid admin key")

    return True
