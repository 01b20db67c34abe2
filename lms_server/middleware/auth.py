from fastapi import Header, HTTPException
from typing import Optional
import hmac

from lms_server.config import get_settings
from lms_server.utils.logger import get_logger

logger = get_logger(__name__)


async def require_api_secret(
    authorization: Optional[str] = Header(None),
) -> None:
    """
    Validate the shared bearer secret sent by the Hotmart integration and the
    admin queue dashboard.

    Expects Authorization header: Bearer <HOTMART_API_SECRET>

    Usage:
        @router.post("/endpoint", dependencies=[Depends(require_api_secret)])
    """
    secret = get_settings().hotmart_api_secret
    if not secret:
        # Refuse everything rather than accept an empty token
        logger.error("[Auth] HOTMART_API_SECRET is not configured")
        raise HTTPException(
            status_code=500,
            detail="Server misconfiguration: API secret not set",
        )

    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(parts[1].encode(), secret.encode()):
        logger.warning("[Auth] Rejected request with invalid bearer token")
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
