import hmac
from typing import Optional

from fastapi import HTTPException, Request, status

from .config import settings
from .logging import get_logger

logger = get_logger(__name__)


def api_key_matches(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison of the webhook api key."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def verify_webhook_api_key(request: Request) -> None:
    """
    FastAPI dependency guarding the provider webhook.

    When ``EVOLUTION_WEBHOOK_SECRET`` is configured the request must carry it
    in the ``apikey`` header. Without a secret every request is accepted.
    """
    expected = getattr(request.app.state, "settings", settings).EVOLUTION_WEBHOOK_SECRET
    if not expected:
        return

    if not api_key_matches(request.headers.get("apikey"), expected):
        logger.warning("Webhook rejected: invalid api key", client=request.client.host if request.client else None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook api key"
        )
