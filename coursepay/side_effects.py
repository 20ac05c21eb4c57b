"""Post-grant conveniences: invoice records and confirmation emails.

Nothing here decides entitlement. Every step may fail; failures are logged
and recorded in ``side_effect_failures`` for a manual retry.
"""
import logging
import secrets
from typing import List, Optional

import resend
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from coursepay.currency import format_major
from coursepay.errors import UnknownIntent, ValidationError
from coursepay.models import Invoice, SideEffectFailure, utcnow
from coursepay.types import IntentRecord

logger = logging.getLogger(__name__)

STEP_INVOICE = "invoice"
STEP_EMAIL = "email"


class InvoiceGenerator:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def generate(self, intent: IntentRecord) -> str:
        """Create the invoice for an intent, or return the existing one's number."""
        db = self._session_factory()
        try:
            existing = db.scalars(select(Invoice).filter_by(payment_intent_id=intent.id)).first()
            if existing is not None:
                return existing.invoice_number

            number = f"INV-{utcnow():%Y%m%d}-{secrets.token_hex(4).upper()}"
            db.add(Invoice(
                invoice_number=number,
                payment_intent_id=intent.id,
                buyer_id=intent.buyer_id,
                course_id=intent.course_id,
                amount=intent.settlement_amount,
                currency=intent.settlement_currency,
            ))
            try:
                db.commit()
            except IntegrityError:
                # A concurrent retry created it first
                db.rollback()
                existing = db.scalars(select(Invoice).filter_by(payment_intent_id=intent.id)).one()
                return existing.invoice_number
            logger.info(f"Invoice {number} created for intent {intent.id}")
            return number
        finally:
            db.close()


class EmailSender:
    def __init__(self, api_key: Optional[str], from_email: str):
        self._api_key = api_key
        self._from_email = from_email

    def skip_reason(self, to: Optional[str]) -> Optional[str]:
        if not self._api_key:
            return "RESEND_API_KEY is not set"
        if not to:
            return "No buyer email address"
        return None

    def send_confirmation(self, to: Optional[str], course_title: str, intent: IntentRecord, invoice_ref: str) -> bool:
        """Send the receipt; ``False`` when it was skipped, see ``skip_reason``."""
        reason = self.skip_reason(to)
        if reason is not None:
            logger.warning(f"{reason}; skipping confirmation email for intent {intent.id}")
            return False

        charged = f"{intent.settlement_currency} {format_major(intent.settlement_amount)}"
        if intent.settlement_currency != intent.currency:
            charged += f" (listed at {intent.currency} {format_major(intent.amount)})"

        resend.api_key = self._api_key
        resend.Emails.send({
            "from": self._from_email,
            "to": to,
            "subject": "Payment Confirmed - Course Access Granted",
            "html": (
                f"<p>Your payment for <strong>{course_title}</strong> has been confirmed.</p>"
                f"<p>Amount: {charged}<br>"
                f"Invoice: {invoice_ref}<br>"
                f"Reference: {intent.id}</p>"
            ),
        })
        logger.info(f"Confirmation email sent for intent {intent.id}")
        return True


class SideEffectLog:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def record(self, intent_id: str, step: str, error: str) -> None:
        db = self._session_factory()
        try:
            db.add(SideEffectFailure(payment_intent_id=intent_id, step=step, error=error))
            db.commit()
        finally:
            db.close()

    def pending(self) -> List[SideEffectFailure]:
        db = self._session_factory()
        try:
            rows = db.scalars(
                select(SideEffectFailure)
                .where(SideEffectFailure.resolved_at.is_(None))
                .order_by(SideEffectFailure.created_at)
            ).all()
            db.expunge_all()
            return list(rows)
        finally:
            db.close()

    def get(self, failure_id: int) -> Optional[SideEffectFailure]:
        db = self._session_factory()
        try:
            row = db.get(SideEffectFailure, failure_id)
            if row is not None:
                db.expunge(row)
            return row
        finally:
            db.close()

    def resolve(self, failure_id: int) -> None:
        db = self._session_factory()
        try:
            row = db.get(SideEffectFailure, failure_id)
            if row is not None:
                row.resolved_at = utcnow()
                db.commit()
        finally:
            db.close()


class FulfillmentEffects:
    """Runs the invoice and email steps after a grant was created."""

    def __init__(self, invoices: InvoiceGenerator, mailer: EmailSender, failures: SideEffectLog, catalog, ledger):
        self._invoices = invoices
        self._mailer = mailer
        self._failures = failures
        self._catalog = catalog
        self._ledger = ledger

    def run(self, intent: IntentRecord) -> None:
        try:
            invoice_ref = self._invoices.generate(intent)
        except Exception as err:
            logger.error(f"Invoice generation failed for intent {intent.id}: {err}")
            self._failures.record(intent.id, STEP_INVOICE, str(err))
            return
        self._send_email(intent, invoice_ref)

    def _send_email(self, intent: IntentRecord, invoice_ref: str) -> bool:
        course = self._catalog.get(intent.course_id)
        title = course.title if course is not None else intent.course_id
        try:
            sent = self._mailer.send_confirmation(intent.buyer_email, title, intent, invoice_ref)
        except Exception as err:
            logger.error(f"Confirmation email failed for intent {intent.id}: {err}")
            self._failures.record(intent.id, STEP_EMAIL, str(err))
            return False
        if not sent:
            self._failures.record(intent.id, STEP_EMAIL, f"Skipped: {self._mailer.skip_reason(intent.buyer_email)}")
        return sent

    def retry(self, failure_id: int) -> bool:
        failure = self._failures.get(failure_id)
        if failure is None:
            raise ValidationError("Side-effect failure not found", {"failure_id": failure_id})
        if failure.resolved_at is not None:
            return True

        intent = self._ledger.get_by_id(failure.payment_intent_id)
        if intent is None:
            raise UnknownIntent(failure.payment_intent_id)

        # An invoice failure also skipped the email, so both steps re-run
        try:
            invoice_ref = self._invoices.generate(intent)
            course = self._catalog.get(intent.course_id)
            title = course.title if course is not None else intent.course_id
            sent = self._mailer.send_confirmation(intent.buyer_email, title, intent, invoice_ref)
        except Exception as err:
            logger.error(f"Retry of {failure.step} failed for intent {intent.id}: {err}")
            return False
        if not sent:
            logger.warning(f"Retry of {failure.step} for intent {intent.id} skipped the email; still unresolved")
            return False

        self._failures.resolve(failure_id)
        logger.info(f"Side-effect failure {failure_id} resolved for intent {intent.id}")
        return True
