"""Per-gateway adapters.

Inbound: translate vendor notification payloads into ``NotificationEvent``
so nothing past this module looks at vendor field names.
Outbound: build the launch parameters handed to the buyer's browser.
"""
import logging
from typing import Any, Mapping, Optional

from coursepay import stripe_service
from coursepay.config import Settings
from coursepay.currency import format_major, parse_major
from coursepay.errors import GatewayError, ValidationError
from coursepay.signatures import SignatureVerifier
from coursepay.types import CourseRecord, Gateway, IntentRecord, LaunchParams, NotificationEvent, Outcome

logger = logging.getLogger(__name__)

REDIRECT_STATUS_CODES = {
    "2": Outcome.SUCCESS,
    "0": Outcome.PENDING,
    "-1": Outcome.FAILED,   # cancelled
    "-2": Outcome.FAILED,   # failed
    "-3": Outcome.FAILED,   # charged back
}

CHECKOUT_EVENT_OUTCOMES = {
    "checkout.session.async_payment_succeeded": Outcome.SUCCESS,
    "checkout.session.async_payment_failed": Outcome.FAILED,
    "checkout.session.expired": Outcome.FAILED,
}


def _get_stripe_value(obj: Any, key: str, default=None):
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if hasattr(obj, key):
        value = getattr(obj, key, default)
        if value is not None:
            return value
    if isinstance(obj, dict):
        return obj.get(key, default)
    return default


def parse_redirect_notification(form: Mapping[str, Any]) -> NotificationEvent:
    missing = [
        name for name in ("order_id", "payhere_amount", "payhere_currency", "status_code", "md5sig")
        if not form.get(name)
    ]
    if missing:
        raise ValidationError("Invalid notification data", {"missing": missing})

    status_code = str(form["status_code"]).strip()
    outcome = REDIRECT_STATUS_CODES.get(status_code)
    if outcome is None:
        raise ValidationError("Unknown status code", {"status_code": status_code})

    return NotificationEvent(
        gateway=Gateway.REDIRECT,
        intent_id=str(form["order_id"]).strip(),
        external_reference=form.get("payment_id") or None,
        reported_amount=parse_major(form["payhere_amount"]),
        reported_currency=str(form["payhere_currency"]).strip().upper(),
        outcome=outcome,
        outcome_code=status_code,
        raw_token=str(form["md5sig"]).strip(),
    )


def parse_checkout_notification(
    payload: bytes, signature: str, verifier: SignatureVerifier
) -> Optional[NotificationEvent]:
    """Verify and translate a checkout webhook.

    Returns ``None`` for event types that do not affect an intent.
    """
    event = verifier.construct_checkout_event(payload, signature)
    event_type = event["type"]
    session = event["data"]["object"]

    if event_type == "checkout.session.completed":
        paid = _get_stripe_value(session, "payment_status") == "paid"
        outcome = Outcome.SUCCESS if paid else Outcome.PENDING
    else:
        outcome = CHECKOUT_EVENT_OUTCOMES.get(event_type)
    if outcome is None:
        logger.info(f"Ignoring checkout event type {event_type}")
        return None

    metadata = _get_stripe_value(session, "metadata", {}) or {}
    intent_id = _get_stripe_value(metadata, "intent_id") or _get_stripe_value(session, "client_reference_id")
    if not intent_id:
        raise ValidationError("Webhook missing intent reference", {"event_type": event_type})

    amount = _get_stripe_value(session, "amount_total")
    currency = _get_stripe_value(session, "currency")
    if amount is None or not currency:
        raise ValidationError("Webhook missing amount", {"event_type": event_type})

    return NotificationEvent(
        gateway=Gateway.CHECKOUT,
        intent_id=str(intent_id),
        external_reference=_get_stripe_value(session, "payment_intent") or _get_stripe_value(session, "id"),
        reported_amount=int(amount),
        reported_currency=str(currency).upper(),
        outcome=outcome,
        outcome_code=event_type,
        raw_token=signature,
        raw_payload=payload,
    )


class GatewayLauncher:
    """Builds what the buyer needs to start paying through each gateway."""

    def __init__(self, settings: Settings, verifier: SignatureVerifier):
        self._settings = settings
        self._verifier = verifier

    def launch(self, intent: IntentRecord, course: CourseRecord) -> LaunchParams:
        if intent.gateway is Gateway.REDIRECT:
            return self._redirect(intent, course)
        if intent.gateway is Gateway.CHECKOUT:
            return self._checkout(intent, course)
        return self._bank(intent)

    def _redirect(self, intent: IntentRecord, course: CourseRecord) -> LaunchParams:
        config = self._settings.redirect
        return LaunchParams(
            gateway=Gateway.REDIRECT,
            url=config.checkout_url,
            fields={
                "merchant_id": config.merchant_id,
                "return_url": config.return_url,
                "cancel_url": config.cancel_url,
                "notify_url": config.notify_url,
                "order_id": intent.id,
                "items": course.title,
                "currency": intent.settlement_currency,
                "amount": format_major(intent.settlement_amount),
                "hash": self._verifier.sign_outbound(
                    intent.id, intent.settlement_amount, intent.settlement_currency
                ),
            },
        )

    def _checkout(self, intent: IntentRecord, course: CourseRecord) -> LaunchParams:
        try:
            session = stripe_service.create_checkout_session(
                self._settings.checkout,
                intent.id,
                intent.settlement_amount,
                intent.settlement_currency,
                course.title,
            )
        except Exception as err:
            raise GatewayError("Checkout session creation failed", str(err)) from err
        return LaunchParams(
            gateway=Gateway.CHECKOUT,
            url=session.url,
            fields={"session_id": session.id},
        )

    def _bank(self, intent: IntentRecord) -> LaunchParams:
        config = self._settings.bank
        return LaunchParams(
            gateway=Gateway.BANK,
            fields={
                "account_name": config.account_name,
                "account_number": config.account_number,
                "bank_name": config.bank_name,
                "branch": config.branch,
                "reference": intent.id,
                "currency": intent.settlement_currency,
                "amount": format_major(intent.settlement_amount),
            },
        )
