import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from marketplace.api.deps import Services, get_services
from marketplace.core.config import settings
from marketplace.schemas.payment import WebhookHealthOut

log = logging.getLogger(__name__)
router = APIRouter()

WEBHOOK_VERSION = "2.0.0"


@router.post("/webhooks/payments")
async def payment_events(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    """
    Payment gateway events. Only misconfiguration (500) and signature
    failures (401) are protocol errors; every business outcome is a 200.
    """
    raw = await request.body()
    outcome = await services.webhook.handle(raw)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.get("/webhooks/payments", response_model=WebhookHealthOut)
async def payment_events_health() -> WebhookHealthOut:
    return WebhookHealthOut(service=f"{settings.service_name}:payments-webhook", status="active", version=WEBHOOK_VERSION)
