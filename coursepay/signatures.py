import hashlib
import hmac
import logging

import stripe

from coursepay.config import CheckoutGatewayConfig, RedirectGatewayConfig
from coursepay.currency import format_major
from coursepay.errors import AmountMismatch, SignatureInvalid, ValidationError
from coursepay.types import Gateway, IntentRecord, NotificationEvent

logger = logging.getLogger(__name__)


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def redirect_digest(merchant_id: str, merchant_secret: str, *parts: str) -> str:
    """Double-hash digest used by the hosted-redirect gateway.

    ``UPPER(MD5(merchant_id + parts... + UPPER(MD5(secret))))``
    """
    hashed_secret = _md5_upper(merchant_secret)
    return _md5_upper(merchant_id + "".join(parts) + hashed_secret)


class SignatureVerifier:
    def __init__(self, redirect: RedirectGatewayConfig, checkout: CheckoutGatewayConfig) -> None:
        self._redirect = redirect
        self._checkout = checkout

    def sign_outbound(self, intent_id: str, amount: int, currency: str) -> str:
        return redirect_digest(
            self._redirect.merchant_id,
            self._redirect.merchant_secret,
            intent_id,
            format_major(amount),
            currency.upper(),
        )

    def verify(self, event: NotificationEvent) -> bool:
        if event.gateway is Gateway.REDIRECT:
            return self._verify_redirect(event)
        if event.gateway is Gateway.CHECKOUT:
            self.construct_checkout_event(event.raw_payload, event.raw_token)
            return True
        raise ValidationError("Bank transfers carry no signature", {"intent_id": event.intent_id})

    def _verify_redirect(self, event: NotificationEvent) -> bool:
        expected = redirect_digest(
            self._redirect.merchant_id,
            self._redirect.merchant_secret,
            event.intent_id,
            format_major(event.reported_amount),
            event.reported_currency.upper(),
            event.outcome_code,
        )
        supplied = (event.raw_token or "").upper()
        return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))

    def construct_checkout_event(self, payload: bytes, signature: str):
        """Verify the webhook signature over the raw body and return the parsed event.

        Any failure is a hard rejection, never a negative result.
        """
        if not signature or not self._checkout.webhook_secret:
            raise SignatureInvalid("Missing webhook signature")
        try:
            return stripe.Webhook.construct_event(payload, signature, self._checkout.webhook_secret)
        except ValueError as err:
            raise SignatureInvalid("Invalid payload", str(err)) from err
        except stripe.SignatureVerificationError as err:
            raise SignatureInvalid("Invalid signature", str(err)) from err
        except Exception as err:
            logger.error(f"Unexpected webhook verification failure: {err}")
            raise SignatureInvalid("Signature verification failed", str(err)) from err

    @staticmethod
    def check_consistency(intent: IntentRecord, event: NotificationEvent) -> None:
        if (
            event.reported_amount != intent.settlement_amount
            or event.reported_currency.upper() != intent.settlement_currency.upper()
        ):
            raise AmountMismatch(
                "Reported amount does not match the payment intent",
                {
                    "intent_id": intent.id,
                    "expected_amount": intent.settlement_amount,
                    "expected_currency": intent.settlement_currency,
                    "reported_amount": event.reported_amount,
                    "reported_currency": event.reported_currency,
                },
            )
