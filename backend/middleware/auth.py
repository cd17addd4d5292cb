"""
Shared-secret authentication for machine callers.

The stuck order sweep endpoint is invoked by a scheduler (platform cron,
GitHub Actions, etc.), not by users. It must present:

    X-Cron-Secret: <CRON_SECRET>

In development, an unset CRON_SECRET leaves the endpoint open (with a startup
warning from config.validate_production_settings()). In production the app
refuses to start without it.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header

from config import settings
from domain.constants import CRON_SECRET_HEADER
from domain.errors import UnauthorizedError

logger = logging.getLogger(__name__)


def secrets_match(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison that treats a missing value as a mismatch."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_cron_secret(
    x_cron_secret: Optional[str] = Header(None, alias=CRON_SECRET_HEADER),
) -> None:
    """FastAPI dependency guarding scheduler-only endpoints."""
    expected = settings.cron_secret
    if not expected:
        if settings.is_production:
            raise UnauthorizedError("Cron endpoint disabled: CRON_SECRET not configured")
        return

    if not secrets_match(x_cron_secret, expected):
        logger.warning("Rejected cron call with missing or invalid secret")
        raise UnauthorizedError("Invalid cron secret")
