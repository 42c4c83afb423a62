"""Shared API dependencies: single import point for all routers.

Re-exports database session, authentication and scheduler-trigger
dependencies so that router modules can import everything they need from
one place::

    from app.api.deps import get_db, get_current_active_user
"""

import hmac
import logging

from fastapi import Request

from app.auth.dependencies import get_current_active_user, get_current_user
from app.billing.exceptions import AuthenticationError
from app.config import settings
from app.database import get_db

logger = logging.getLogger(__name__)


async def verify_cron_caller(request: Request) -> None:
    """Admit the scheduler trigger: shared-secret Bearer token or trusted platform header.

    Fails closed when neither is configured.
    """
    if settings.cron_trust_platform_header and request.headers.get(settings.cron_platform_header):
        return

    auth_header = request.headers.get("authorization", "")
    if settings.cron_secret and hmac.compare_digest(
        auth_header.encode("utf-8"), f"Bearer {settings.cron_secret}".encode("utf-8")
    ):
        return

    logger.warning("Rejected scheduler trigger from %s", request.client.host if request.client else "unknown")
    raise AuthenticationError("Unauthorized scheduler trigger.")


__all__ = [
    "get_db",
    "get_current_user",
    "get_current_active_user",
    "verify_cron_caller",
]
