import json
import logging

from fastapi import APIRouter, Depends, Header, Request

from coursepay.config import get_settings
from coursepay.errors import ValidationError
from coursepay.gateways import parse_checkout_notification, parse_redirect_notification
from coursepay.routes import get_orchestrator, notification_response
from coursepay.signatures import SignatureVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications")


async def _read_form(request: Request) -> dict:
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            payload = json.loads(await request.body())
        except ValueError as err:
            raise ValidationError("Invalid notification data") from err
        if not isinstance(payload, dict):
            raise ValidationError("Invalid notification data")
        return payload
    form = await request.form()
    return {key: value for key, value in form.items()}


async def _read_body(request: Request) -> bytes:
    return await request.body()


# Handlers are sync so ledger and vendor calls run in the threadpool
@router.post("/redirect")
def redirect_notification(form: dict = Depends(_read_form), orchestrator=Depends(get_orchestrator)):
    event = parse_redirect_notification(form)
    logger.info(f"Redirect notification for intent {event.intent_id} (status {event.outcome_code})")
    return notification_response(orchestrator.handle_notification(event))


@router.post("/checkout")
def checkout_notification(
    payload: bytes = Depends(_read_body),
    stripe_signature: str = Header(None),
    orchestrator=Depends(get_orchestrator)
):
    settings = get_settings()
    # Verified before anything reads the ledger
    event = parse_checkout_notification(
        payload,
        stripe_signature,
        SignatureVerifier(settings.redirect, settings.checkout),
    )
    if event is None:
        return {"ok": True, "ignored": True}
    logger.info(f"Checkout notification for intent {event.intent_id} ({event.outcome_code})")
    return notification_response(orchestrator.handle_notification(event))
