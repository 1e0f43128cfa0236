import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.config import settings
from bizinsights.database import get_db
from bizinsights.models.enums import Platform
from bizinsights.schemas.webhook import WebhookAck
from bizinsights.services import webhook_service
from bizinsights.services.crypto_service import sha256_hex

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _parse_json(body: bytes) -> dict:
    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    return payload if isinstance(payload, dict) else {"data": payload}


@router.post("/shopify", response_model=WebhookAck)
async def shopify_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Shopify webhook receiver. The body is verified before it is parsed."""
    body = await request.body()
    if not webhook_service.verify_shopify_webhook(
        body, request.headers.get("X-Shopify-Hmac-Sha256")
    ):
        logger.warning("Rejected Shopify webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    topic = request.headers.get("X-Shopify-Topic", "unknown")
    event, is_new = await webhook_service.record_webhook_event(
        db,
        Platform.SHOPIFY,
        topic=topic,
        external_id=request.headers.get("X-Shopify-Webhook-Id"),
        payload=_parse_json(body),
        shop_domain=webhook_service.shop_from_domain(
            request.headers.get("X-Shopify-Shop-Domain")
        ),
    )
    if is_new:
        await webhook_service.process_shopify_event(db, event)
    return WebhookAck(received=True, duplicate=not is_new)


@router.get("/facebook", response_class=PlainTextResponse)
async def facebook_verify(
    mode: str | None = Query(default=None, alias="hub.mode"),
    verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    """Answer the Graph API subscription handshake."""
    expected = settings.FACEBOOK_WEBHOOK_VERIFY_TOKEN
    if (
        mode != "subscribe"
        or not expected
        or not verify_token
        or not hmac.compare_digest(verify_token, expected)
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return challenge or ""


@router.post("/facebook", response_model=WebhookAck)
async def facebook_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    body = await request.body()
    if not webhook_service.verify_facebook_signature(
        body, request.headers.get("X-Hub-Signature-256")
    ):
        logger.warning("Rejected Facebook webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    payload = _parse_json(body)
    # Graph deliveries carry no id header; the body digest stands in for one
    event, is_new = await webhook_service.record_webhook_event(
        db,
        Platform.FACEBOOK_ADS,
        topic=str(payload.get("object", "unknown")),
        external_id=sha256_hex(body.decode("utf-8", errors="replace")),
        payload=payload,
    )
    return WebhookAck(received=True, duplicate=not is_new)
