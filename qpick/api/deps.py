"""FastAPI dependencies."""

import hashlib
import hmac
import logging

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from qpick import metrics
from qpick.config import settings
from qpick.db.session import AsyncSessionLocal, get_db
from qpick.notify.dispatcher import NotificationDispatcher
from qpick.notify.push import push_sender
from qpick.registry.subscriptions import subscription_registry
from qpick.search.service import search_service

logger = logging.getLogger(__name__)

_dispatcher: NotificationDispatcher | None = None


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def get_dispatcher() -> NotificationDispatcher:
    """Dependency for the notification dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher(
            AsyncSessionLocal, push_sender, registry=subscription_registry
        )
    return _dispatcher


def get_search_service():
    """Dependency for the search service."""
    return search_service


def _fingerprint(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:8]


async def require_webhook_secret(
    authorization: str | None = Header(None),
) -> None:
    """
    Dependency to require the shared-secret bearer token on the notify webhook.

    Raises:
        HTTPException: 500 if no secret is configured, 401 if the token is
            missing or wrong
    """
    expected = (settings.webhook_shared_secret or "").strip()
    if not expected:
        metrics.webhook_requests_total.labels(status="misconfigured").inc()
        logger.error("Webhook shared secret is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    raw = (authorization or "").strip()
    token = raw[7:].strip() if raw.lower().startswith("bearer ") else ""

    if not hmac.compare_digest(token.encode(), expected.encode()):
        metrics.webhook_requests_total.labels(status="unauthorized").inc()
        logger.warning(
            f"Webhook unauthorized: token_len={len(token)} expected_len={len(expected)} "
            f"token_fp={_fingerprint(token) if token else None} expected_fp={_fingerprint(expected)}"
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
