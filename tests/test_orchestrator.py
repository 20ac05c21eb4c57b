from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from coursepay.errors import (
    AlreadyOwned,
    AmountMismatch,
    ConcurrencyError,
    CourseUnavailable,
    GatewayError,
    SignatureInvalid,
    StorageConflict,
    UnknownIntent,
    ValidationError,
)
from coursepay.gateways import parse_checkout_notification, parse_redirect_notification
from coursepay.ledger import GrantStore, PaymentLedger
from coursepay.models import AccessGrant, Invoice, PaymentIntent, SideEffectFailure
from coursepay.orchestrator import build_orchestrator
from coursepay.signatures import SignatureVerifier
from coursepay.types import Gateway, IntentStatus

from conftest import TEST_SETTINGS, TestingSessionLocal


def _count(model, **filters):
    db = TestingSessionLocal()
    try:
        return db.query(model).filter_by(**filters).count()
    finally:
        db.close()


def _notify(orchestrator, redirect_form, intent_id, **kwargs):
    return orchestrator.handle_notification(parse_redirect_notification(redirect_form(intent_id, **kwargs)))


def test_redirect_success_grants_access(orchestrator, redirect_form):
    intent, launch = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)

    assert intent.status is IntentStatus.PENDING
    assert (intent.amount, intent.currency) == (500000, "LKR")
    assert launch.fields["amount"] == "5000.00"
    assert launch.fields["hash"]

    result = _notify(orchestrator, redirect_form, intent.id)

    assert result.intent.status is IntentStatus.CONFIRMED
    assert result.intent.external_reference == "320025071278"
    assert result.granted is True
    assert _count(AccessGrant, buyer_id="u1", course_id="c1") == 1


def test_duplicate_notification_is_a_no_op(orchestrator, redirect_form):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    _notify(orchestrator, redirect_form, intent.id)

    for _ in range(3):
        result = _notify(orchestrator, redirect_form, intent.id)
        assert result.duplicate is True
        assert result.granted is False
        assert result.intent.status is IntentStatus.CONFIRMED

    assert _count(AccessGrant, buyer_id="u1", course_id="c1") == 1
    assert _count(Invoice, payment_intent_id=intent.id) == 1


def test_unknown_intent_touches_nothing(orchestrator, redirect_form):
    with pytest.raises(UnknownIntent):
        _notify(orchestrator, redirect_form, "never-created")

    assert _count(PaymentIntent) == 0
    assert _count(AccessGrant) == 0


def test_already_owned_inserts_no_intent(orchestrator, redirect_form):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    _notify(orchestrator, redirect_form, intent.id)

    with pytest.raises(AlreadyOwned):
        orchestrator.create_intent("u1", "c1", Gateway.BANK)

    assert _count(PaymentIntent) == 1


@pytest.mark.parametrize("course_id", ["draft", "free", "missing"])
def test_unpurchasable_courses_are_rejected(orchestrator, course_id):
    with pytest.raises(CourseUnavailable):
        orchestrator.create_intent("u1", course_id, Gateway.REDIRECT)
    assert _count(PaymentIntent) == 0


def test_invalid_signature_fails_intent_without_grant(orchestrator, redirect_form):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)

    with pytest.raises(SignatureInvalid):
        _notify(orchestrator, redirect_form, intent.id, md5sig="0" * 32)

    assert orchestrator.get_intent(intent.id).status is IntentStatus.FAILED
    assert _count(AccessGrant) == 0


def test_amount_mismatch_is_rejected_even_with_valid_signature(orchestrator, redirect_form):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)

    # Signed correctly by the sender, but for a different amount
    with pytest.raises(AmountMismatch):
        _notify(orchestrator, redirect_form, intent.id, amount="50.00")

    assert orchestrator.get_intent(intent.id).status is IntentStatus.FAILED
    assert _count(AccessGrant) == 0


def test_signature_is_rechecked_on_duplicate_delivery(orchestrator, redirect_form):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    _notify(orchestrator, redirect_form, intent.id)

    with pytest.raises(SignatureInvalid):
        _notify(orchestrator, redirect_form, intent.id, md5sig="F" * 32)
    assert orchestrator.get_intent(intent.id).status is IntentStatus.CONFIRMED


def test_failed_outcome_marks_intent_failed(orchestrator, redirect_form):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)

    result = _notify(orchestrator, redirect_form, intent.id, status_code="-2")

    assert result.intent.status is IntentStatus.FAILED
    assert _count(AccessGrant) == 0
    # A later success for the same intent cannot revive it
    late = _notify(orchestrator, redirect_form, intent.id)
    assert late.duplicate is True
    assert late.intent.status is IntentStatus.FAILED


def test_pending_outcome_leaves_intent_pending(orchestrator, redirect_form):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)

    result = _notify(orchestrator, redirect_form, intent.id, status_code="0")

    assert result.intent.status is IntentStatus.PENDING


def test_notification_from_wrong_gateway_is_rejected(orchestrator, redirect_form):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.BANK)

    with pytest.raises(ValidationError):
        _notify(orchestrator, redirect_form, intent.id)
    assert orchestrator.get_intent(intent.id).status is IntentStatus.PENDING


def test_two_confirmed_intents_yield_one_grant(orchestrator, redirect_form):
    first, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    second, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)

    assert _notify(orchestrator, redirect_form, first.id).granted is True
    result = _notify(orchestrator, redirect_form, second.id)

    assert result.intent.status is IntentStatus.CONFIRMED
    assert result.granted is False
    assert _count(AccessGrant, buyer_id="u1", course_id="c1") == 1


def test_delivery_that_loses_the_race_is_a_no_op(orchestrator, redirect_form, mocker):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    stale_snapshot = orchestrator.get_intent(intent.id)
    _notify(orchestrator, redirect_form, intent.id)

    # Second delivery read the intent while it was still pending
    mocker.patch("coursepay.ledger.PaymentLedger.get_by_id", return_value=stale_snapshot)
    result = _notify(orchestrator, redirect_form, intent.id)

    assert result.duplicate is True
    assert result.granted is False
    mocker.stopall()
    assert orchestrator.get_intent(intent.id).status is IntentStatus.CONFIRMED
    assert _count(AccessGrant, buyer_id="u1", course_id="c1") == 1


def test_storage_conflict_is_retried_once(orchestrator, redirect_form, mocker):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    real = PaymentLedger.compare_and_transition
    calls = []

    def flaky(self, *args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StorageConflict("database is locked")
        return real(self, *args, **kwargs)

    mocker.patch("coursepay.ledger.PaymentLedger.compare_and_transition", flaky)

    result = _notify(orchestrator, redirect_form, intent.id)

    assert len(calls) == 2
    assert result.granted is True


def test_persistent_storage_conflict_surfaces_as_concurrency_error(orchestrator, redirect_form, mocker):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    mocker.patch(
        "coursepay.ledger.PaymentLedger.compare_and_transition",
        side_effect=StorageConflict("database is locked"),
    )

    with pytest.raises(ConcurrencyError):
        _notify(orchestrator, redirect_form, intent.id)
    assert _count(AccessGrant) == 0


def test_checkout_intent_uses_settlement_currency(orchestrator, mocker):
    session = mocker.Mock()
    session.id = "cs_test_123"
    session.url = "https://checkout.stripe.com/c/pay/cs_test_123"
    create = mocker.patch("coursepay.stripe_service.create_checkout_session", return_value=session)

    intent, launch = orchestrator.create_intent("u1", "c1", Gateway.CHECKOUT)

    assert (intent.settlement_amount, intent.settlement_currency) == (1667, "USD")
    assert launch.url == session.url
    assert launch.fields == {"session_id": "cs_test_123"}
    create.assert_called_once_with(TEST_SETTINGS.checkout, intent.id, 1667, "USD", "Python Basics")


def test_checkout_launch_failure_fails_the_intent(orchestrator, mocker):
    mocker.patch(
        "coursepay.stripe_service.create_checkout_session",
        side_effect=Exception("Stripe Service Unavailable"),
    )

    with pytest.raises(GatewayError):
        orchestrator.create_intent("u1", "c1", Gateway.CHECKOUT)

    db = TestingSessionLocal()
    intent = db.query(PaymentIntent).one()
    assert intent.status == "failed"
    db.close()


def test_bank_transfer_confirmation_is_idempotent(orchestrator):
    intent, launch = orchestrator.create_intent("u1", "c1", Gateway.BANK, bank_reference="SLIP-42")

    assert launch.fields["reference"] == intent.id
    assert launch.fields["account_number"] == "0011223344"

    first = orchestrator.confirm_bank_transfer(intent.id, "admin-1", "slip checked")
    second = orchestrator.confirm_bank_transfer(intent.id, "admin-1")

    assert first.granted is True
    assert first.intent.admin_id == "admin-1"
    assert first.intent.external_reference == "SLIP-42"
    assert second.duplicate is True
    assert _count(AccessGrant, buyer_id="u1", course_id="c1") == 1


def test_bank_transfer_rejection(orchestrator):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.BANK)

    result = orchestrator.reject_bank_transfer(intent.id, "admin-1", "no funds received")

    assert result.intent.status is IntentStatus.FAILED
    assert result.intent.admin_notes == "no funds received"
    assert orchestrator.confirm_bank_transfer(intent.id, "admin-1").duplicate is True
    assert _count(AccessGrant) == 0


def test_bank_actions_refuse_other_gateways(orchestrator):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)

    with pytest.raises(ValidationError):
        orchestrator.confirm_bank_transfer(intent.id, "admin-1")


def test_expire_intent_only_touches_pending(orchestrator, redirect_form):
    stale, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    paid, _ = orchestrator.create_intent("u1", "c2", Gateway.REDIRECT)
    _notify(orchestrator, redirect_form, paid.id, amount="3000.00")

    assert orchestrator.expire_intent(stale.id).status is IntentStatus.EXPIRED
    assert orchestrator.expire_intent(paid.id).status is IntentStatus.CONFIRMED
    # A notification arriving after expiry cannot grant access
    assert _notify(orchestrator, redirect_form, stale.id).duplicate is True
    assert _count(AccessGrant, course_id="c1") == 0


def test_expire_stale(orchestrator):
    old, _ = orchestrator.create_intent("u1", "c1", Gateway.BANK)

    assert orchestrator.expire_stale(timedelta(hours=1)) == []
    expired = orchestrator.expire_stale(timedelta(seconds=0))

    assert [i.id for i in expired] == [old.id]
    assert [i.id for i in orchestrator.list_audit()] == [old.id]


def test_side_effect_failure_is_recorded_and_grant_stands(courses, redirect_form, mocker):
    mocker.patch(
        "coursepay.side_effects.InvoiceGenerator.generate",
        side_effect=RuntimeError("invoice store offline"),
    )
    orchestrator = build_orchestrator(TestingSessionLocal, TEST_SETTINGS)
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)

    result = _notify(orchestrator, redirect_form, intent.id)

    assert result.granted is True
    assert _count(AccessGrant) == 1
    assert _count(SideEffectFailure, payment_intent_id=intent.id, step="invoice") == 1


def test_email_is_sent_with_invoice_number(courses, redirect_form, mocker):
    settings = replace(TEST_SETTINGS, resend_api_key="re_test")
    send = mocker.patch("resend.Emails.send", return_value={"id": "email-1"})
    orchestrator = build_orchestrator(TestingSessionLocal, settings)
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT, buyer_email="u1@example.com")

    _notify(orchestrator, redirect_form, intent.id)

    send.assert_called_once()
    message = send.call_args.args[0]
    assert message["to"] == "u1@example.com"
    db = TestingSessionLocal()
    invoice = db.query(Invoice).filter_by(payment_intent_id=intent.id).one()
    assert invoice.invoice_number in message["html"]
    db.close()


def _grant_insert_fails_once(mocker):
    real = GrantStore.insert_grant_if_absent
    calls = []

    def locked_once(self, *args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise OperationalError("INSERT INTO access_grants", {}, Exception("database is locked"))
        return real(self, *args, **kwargs)

    mocker.patch("coursepay.ledger.GrantStore.insert_grant_if_absent", locked_once)
    return calls


def test_redelivery_grants_when_earlier_grant_insert_failed(orchestrator, redirect_form, mocker):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    _grant_insert_fails_once(mocker)

    with pytest.raises(OperationalError):
        _notify(orchestrator, redirect_form, intent.id)
    assert orchestrator.get_intent(intent.id).status is IntentStatus.CONFIRMED
    assert _count(AccessGrant) == 0

    result = _notify(orchestrator, redirect_form, intent.id)

    assert result.duplicate is True
    assert result.granted is True
    assert _count(AccessGrant, buyer_id="u1", course_id="c1") == 1
    assert _count(Invoice, payment_intent_id=intent.id) == 1

    again = _notify(orchestrator, redirect_form, intent.id)
    assert again.granted is False
    assert _count(AccessGrant) == 1
    assert _count(Invoice) == 1


def test_repeated_bank_approval_grants_when_earlier_grant_insert_failed(orchestrator, mocker):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.BANK)
    _grant_insert_fails_once(mocker)

    with pytest.raises(OperationalError):
        orchestrator.confirm_bank_transfer(intent.id, "admin-1")

    result = orchestrator.confirm_bank_transfer(intent.id, "admin-1")

    assert result.duplicate is True
    assert result.granted is True
    assert _count(AccessGrant, buyer_id="u1", course_id="c1") == 1


def test_losing_delivery_grants_when_winner_failed_to(orchestrator, redirect_form, mocker):
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.REDIRECT)
    stale_snapshot = orchestrator.get_intent(intent.id)
    _grant_insert_fails_once(mocker)
    with pytest.raises(OperationalError):
        _notify(orchestrator, redirect_form, intent.id)

    # The concurrent delivery read the intent while it was still pending
    mocker.patch("coursepay.ledger.PaymentLedger.get_by_id", return_value=stale_snapshot)
    result = _notify(orchestrator, redirect_form, intent.id)

    assert result.duplicate is True
    assert result.granted is True
    assert _count(AccessGrant, buyer_id="u1", course_id="c1") == 1


def test_receipt_states_the_settled_amount(courses, mocker, checkout_event):
    settings = replace(TEST_SETTINGS, resend_api_key="re_test")
    send = mocker.patch("resend.Emails.send", return_value={"id": "email-1"})
    session = mocker.Mock()
    session.id = "cs_test_123"
    session.url = "https://checkout.stripe.com/c/pay/cs_test_123"
    mocker.patch("coursepay.stripe_service.create_checkout_session", return_value=session)
    orchestrator = build_orchestrator(TestingSessionLocal, settings)
    intent, _ = orchestrator.create_intent("u1", "c1", Gateway.CHECKOUT, buyer_email="u1@example.com")

    mocker.patch("stripe.Webhook.construct_event", return_value=checkout_event(intent.id, 1667))
    verifier = SignatureVerifier(settings.redirect, settings.checkout)
    orchestrator.handle_notification(parse_checkout_notification(b"raw_stripe_payload", "t=1,v1=abc", verifier))

    db = TestingSessionLocal()
    invoice = db.query(Invoice).filter_by(payment_intent_id=intent.id).one()
    assert (invoice.amount, invoice.currency) == (1667, "USD")
    db.close()
    assert "USD 16.67 (listed at LKR 5000.00)" in send.call_args.args[0]["html"]
