"""Web Push delivery.

The default sender signs each message with the VAPID key pair and posts the
encrypted payload straight to the browser's push service (``pywebpush``).
A 404 or 410 from the push service means the browser subscription no longer
exists. ``HttpPushSender`` is kept for deployments that hand messages to an
HTTP relay that does the signing itself.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx
import requests
from pywebpush import WebPushException, webpush

from qpick import metrics
from qpick.config import settings
from qpick.registry.subscriptions import PushTarget

logger = logging.getLogger(__name__)

GONE_STATUS_CODES = (404, 410)


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt."""

    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def gone(self) -> bool:
        """The endpoint is permanently gone and should be disabled."""
        return not self.ok and self.status_code in GONE_STATUS_CODES


class PushSender:
    """Base class for push transports."""

    async def send(self, target: PushTarget, payload: dict) -> DeliveryOutcome:
        raise NotImplementedError

    async def close(self):
        """Release transport resources."""
        return None


def _subscription_info(target: PushTarget) -> dict:
    return {
        "endpoint": target.endpoint,
        "keys": {"p256dh": target.p256dh_key, "auth": target.auth_key},
    }


class WebPushSender(PushSender):
    """Sends VAPID-signed Web Push messages directly to push services."""

    def __init__(
        self,
        vapid_private_key: str | None = None,
        vapid_subject: str | None = None,
        timeout: float | None = None,
        message_ttl: int | None = None,
    ):
        self.vapid_private_key = (
            vapid_private_key if vapid_private_key is not None else settings.vapid_private_key
        )
        self.vapid_subject = vapid_subject or settings.vapid_subject
        self.timeout = timeout or settings.push_timeout_seconds
        self.message_ttl = message_ttl or settings.push_message_ttl_seconds

    @property
    def configured(self) -> bool:
        return bool(self.vapid_private_key)

    def _send_sync(self, target: PushTarget, data: str) -> requests.Response:
        # pywebpush adds aud/exp to the claims dict, so build a fresh one per call
        return webpush(
            subscription_info=_subscription_info(target),
            data=data,
            vapid_private_key=self.vapid_private_key,
            vapid_claims={"sub": self.vapid_subject},
            ttl=self.message_ttl,
            timeout=self.timeout,
        )

    async def send(self, target: PushTarget, payload: dict) -> DeliveryOutcome:
        """
        Deliver one payload to one browser subscription.

        The blocking ``webpush`` call runs in a worker thread. Network errors
        and non-gone push service errors are returned as a failed outcome
        without a gone status, so they never disable the registration.

        Args:
            target: Push registration to deliver to
            payload: JSON-serializable notification payload

        Returns:
            DeliveryOutcome describing what happened
        """
        if not self.configured:
            logger.warning("VAPID private key is not set; push delivery skipped")
            metrics.record_delivery("failed", 0.0)
            return DeliveryOutcome(ok=False, error="VAPID keys are not configured")

        data = json.dumps(payload, ensure_ascii=False)
        start_time = time.monotonic()
        try:
            response = await asyncio.to_thread(self._send_sync, target, data)
        except WebPushException as e:
            duration = time.monotonic() - start_time
            status_code = e.response.status_code if e.response is not None else None
            outcome = DeliveryOutcome(ok=False, status_code=status_code, error=str(e)[:200])
            metrics.record_delivery("gone" if outcome.gone else "failed", duration)
            if not outcome.gone:
                logger.warning(f"Push delivery failed: {status_code}")
            return outcome
        except (requests.RequestException, ValueError) as e:
            metrics.record_delivery("failed", time.monotonic() - start_time)
            logger.warning(f"Push delivery error ({type(e).__name__}): {e}")
            return DeliveryOutcome(ok=False, error=str(e))

        metrics.record_delivery("sent", time.monotonic() - start_time)
        return DeliveryOutcome(ok=True, status_code=response.status_code)


class HttpPushSender(PushSender):
    """Delivers push messages through an HTTP Web Push relay."""

    def __init__(
        self,
        gateway_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        message_ttl: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.gateway_url = gateway_url or settings.push_gateway_url
        self.token = token if token is not None else settings.push_gateway_token
        self.timeout = timeout or settings.push_timeout_seconds
        self.message_ttl = message_ttl or settings.push_message_ttl_seconds
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send(self, target: PushTarget, payload: dict) -> DeliveryOutcome:
        """Post ``{subscription, payload, ttl}`` to the relay."""
        body = {
            "subscription": _subscription_info(target),
            "payload": payload,
            "ttl": self.message_ttl,
        }

        start_time = time.monotonic()
        try:
            client = await self._get_client()
            response = await client.post(self.gateway_url, json=body)
        except httpx.HTTPError as e:
            metrics.record_delivery("failed", time.monotonic() - start_time)
            logger.warning(f"Push delivery error ({type(e).__name__}): {e}")
            return DeliveryOutcome(ok=False, error=str(e))

        duration = time.monotonic() - start_time
        status_code = self._push_status(response)

        if 200 <= status_code < 300:
            metrics.record_delivery("sent", duration)
            return DeliveryOutcome(ok=True, status_code=status_code)

        outcome = DeliveryOutcome(ok=False, status_code=status_code, error=response.text[:200])
        metrics.record_delivery("gone" if outcome.gone else "failed", duration)
        if not outcome.gone:
            logger.warning(f"Push delivery failed: {status_code}")
        return outcome

    @staticmethod
    def _push_status(response: httpx.Response) -> int:
        """
        Status code reported by the push service.

        The relay echoes it as ``status_code`` in its JSON body; fall back to
        the relay's own HTTP status.
        """
        try:
            data = response.json()
        except ValueError:
            return response.status_code
        if isinstance(data, dict) and isinstance(data.get("status_code"), int):
            return data["status_code"]
        return response.status_code


def build_push_sender(config=settings) -> PushSender:
    """Sender for the configured ``push_backend``."""
    if config.push_backend.strip().lower() == "relay":
        return HttpPushSender(
            gateway_url=config.push_gateway_url,
            token=config.push_gateway_token,
            timeout=config.push_timeout_seconds,
            message_ttl=config.push_message_ttl_seconds,
        )
    return WebPushSender(
        vapid_private_key=config.vapid_private_key,
        vapid_subject=config.vapid_subject,
        timeout=config.push_timeout_seconds,
        message_ttl=config.push_message_ttl_seconds,
    )


# Global push sender
push_sender = build_push_sender()
