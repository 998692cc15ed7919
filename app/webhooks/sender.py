import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from app.api.v1.metrics import WEBHOOK_DELIVERY_DURATION
from app.db.models import Webhook
from app.domain.signing import encode_body, sign_payload
from app.domain.states import HttpMethod
from app.settings import settings
from app.utils.clock import utcnow
from app.webhooks.event_types import TEST_EVENT

logger = logging.getLogger(__name__)

# Client errors worth another attempt
RETRYABLE_CLIENT_ERRORS = {408, 429}

@dataclass
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: Optional[str] = None
    retryable: bool = False

def build_payload(webhook: Webhook, event_type: str, data: Any) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "data": data,
        "timestamp": utcnow().isoformat(),
        "webhook": {"id": str(webhook.id), "name": webhook.name},
    }

def build_headers(
    webhook: Webhook,
    event_type: str,
    body: bytes,
    delivery_id: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict[str, str]:
    """Custom headers may override Content-Type and User-Agent but not the X-Webhook-* ones."""
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent or settings.WEBHOOK_USER_AGENT,
        **{str(k): str(v) for k, v in (webhook.headers or {}).items()},
        "X-Webhook-Event": event_type,
    }
    if delivery_id:
        headers["X-Webhook-Delivery"] = delivery_id
    if webhook.secret_token:
        headers[settings.WEBHOOK_SIGNATURE_HEADER] = sign_payload(webhook.secret_token, body)
    return headers

def is_retryable_status(status_code: int) -> bool:
    if 400 <= status_code < 500:
        return status_code in RETRYABLE_CLIENT_ERRORS
    return True

async def deliver(
    webhook: Webhook,
    event_type: str,
    data: Any,
    delivery_id: Optional[str] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    user_agent: Optional[str] = None,
    body_limit: Optional[int] = None,
) -> DeliveryResult:
    """
    Sends one webhook request and classifies the outcome.

    2xx is success. Timeouts and 4xx responses (other than 408 and 429) are
    final; connection errors, 5xx, 408 and 429 are worth retrying.
    GET requests carry no body; the signature then covers the empty body.
    """
    limit = body_limit if body_limit is not None else settings.WEBHOOK_RESPONSE_BODY_LIMIT
    payload = build_payload(webhook, event_type, data)
    method = HttpMethod(webhook.method)

    body = b"" if method == HttpMethod.GET else encode_body(payload)
    headers = build_headers(webhook, event_type, body, delivery_id, user_agent)
    request_body = body.decode("utf-8") if body else None

    result = DeliveryResult(success=False, request_headers=headers, request_body=request_body)

    start = time.perf_counter()
    try:
        async with httpx.AsyncClient(transport=transport, timeout=webhook.timeout_seconds) as client:
            response = await client.request(method.value, webhook.url, headers=headers, content=body or None)
        result.status_code = response.status_code
        result.response_body = response.text[:limit]
        result.success = response.is_success
        if not result.success:
            result.error = f"HTTP {response.status_code}"
            result.retryable = is_retryable_status(response.status_code)
    except httpx.TimeoutException:
        result.error = f"Request timeout after {webhook.timeout_seconds}s"
        result.retryable = False
    except httpx.HTTPError as e:
        result.error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
        result.retryable = True
    finally:
        elapsed = time.perf_counter() - start
        result.duration_ms = int(elapsed * 1000)
        WEBHOOK_DELIVERY_DURATION.observe(elapsed)

    if not result.success:
        logger.warning(f"Webhook {webhook.id} delivery of {event_type} failed: {result.error}")
    return result

async def send_test(webhook: Webhook, transport: Optional[httpx.AsyncBaseTransport] = None) -> DeliveryResult:
    """Synchronous test delivery; nothing is persisted."""
    data = {
        "message": "This is a test delivery for this webhook",
        "timestamp": utcnow().isoformat(),
    }
    return await deliver(
        webhook,
        TEST_EVENT,
        data,
        transport=transport,
        user_agent=settings.WEBHOOK_TEST_USER_AGENT,
        body_limit=settings.WEBHOOK_TEST_RESPONSE_BODY_LIMIT,
    )
