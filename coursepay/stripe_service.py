import stripe

from coursepay.config import CheckoutGatewayConfig


def create_checkout_session(config: CheckoutGatewayConfig, intent_id: str, amount: int, currency: str, title: str):
    return stripe.checkout.Session.create(
        mode="payment",
        line_items=[{
            "price_data": {
                "currency": currency.lower(),
                "unit_amount": amount,
                "product_data": {"name": title},
            },
            "quantity": 1,
        }],
        client_reference_id=intent_id,
        metadata={"intent_id": intent_id},
        payment_intent_data={"metadata": {"intent_id": intent_id}},
        success_url=config.success_url,
        cancel_url=config.cancel_url,
        api_key=config.secret_key,
        idempotency_key=intent_id
    )
