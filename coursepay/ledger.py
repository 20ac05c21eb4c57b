import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from coursepay.errors import AlreadyTerminal, StorageConflict, UnknownIntent
from coursepay.models import AccessGrant, Course, PaymentIntent, utcnow
from coursepay.types import CourseRecord, Gateway, GrantRecord, IntentRecord, IntentStatus

logger = logging.getLogger(__name__)


def _to_record(row: PaymentIntent) -> IntentRecord:
    return IntentRecord(
        id=row.id,
        buyer_id=row.buyer_id,
        buyer_email=row.buyer_email,
        course_id=row.course_id,
        amount=row.amount,
        currency=row.currency,
        settlement_amount=row.settlement_amount,
        settlement_currency=row.settlement_currency,
        gateway=Gateway(row.gateway),
        status=IntentStatus(row.status),
        external_reference=row.external_reference,
        bank_reference=row.bank_reference,
        admin_id=row.admin_id,
        admin_notes=row.admin_notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class PaymentLedger:
    """Authoritative store of payment intents.

    Status changes only ever go through ``compare_and_transition``, a single
    conditional UPDATE, so concurrent deliveries cannot both win.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def insert(self, intent: IntentRecord) -> IntentRecord:
        db = self._session_factory()
        try:
            db.add(PaymentIntent(
                id=intent.id,
                buyer_id=intent.buyer_id,
                buyer_email=intent.buyer_email,
                course_id=intent.course_id,
                amount=intent.amount,
                currency=intent.currency,
                settlement_amount=intent.settlement_amount,
                settlement_currency=intent.settlement_currency,
                gateway=intent.gateway.value,
                status=intent.status.value,
                bank_reference=intent.bank_reference,
                created_at=intent.created_at,
                updated_at=intent.updated_at,
            ))
            db.commit()
        finally:
            db.close()
        return intent

    def get_by_id(self, intent_id: str) -> Optional[IntentRecord]:
        db = self._session_factory()
        try:
            row = db.get(PaymentIntent, intent_id)
            return _to_record(row) if row is not None else None
        finally:
            db.close()

    def compare_and_transition(
        self,
        intent_id: str,
        from_status: IntentStatus,
        to_status: IntentStatus,
        external_reference: Optional[str] = None,
        admin_id: Optional[str] = None,
        admin_notes: Optional[str] = None,
    ) -> IntentRecord:
        values = {"status": to_status.value, "updated_at": utcnow()}
        if external_reference is not None:
            values["external_reference"] = external_reference
        if admin_id is not None:
            values["admin_id"] = admin_id
        if admin_notes is not None:
            values["admin_notes"] = admin_notes

        db = self._session_factory()
        try:
            try:
                result = db.execute(
                    update(PaymentIntent)
                    .where(PaymentIntent.id == intent_id, PaymentIntent.status == from_status.value)
                    .values(**values)
                )
                db.commit()
            except OperationalError as err:
                db.rollback()
                raise StorageConflict("Transition could not be applied", {"intent_id": intent_id}) from err

            row = db.get(PaymentIntent, intent_id)
            if row is None:
                raise UnknownIntent(intent_id)
            current = _to_record(row)
        finally:
            db.close()

        if result.rowcount == 1:
            logger.info(f"Intent {intent_id}: {from_status.value} -> {to_status.value}")
            return current
        if current.status.is_terminal:
            raise AlreadyTerminal(current)
        raise StorageConflict(
            "Intent is not in the expected state",
            {"intent_id": intent_id, "expected": from_status.value, "actual": current.status.value},
        )

    def list_by_status(self, statuses: Iterable[IntentStatus]) -> List[IntentRecord]:
        db = self._session_factory()
        try:
            rows = db.scalars(
                select(PaymentIntent)
                .where(PaymentIntent.status.in_([status.value for status in statuses]))
                .order_by(PaymentIntent.updated_at.desc())
            ).all()
            return [_to_record(row) for row in rows]
        finally:
            db.close()

    def list_stale(self, created_before: datetime) -> List[IntentRecord]:
        db = self._session_factory()
        try:
            rows = db.scalars(
                select(PaymentIntent).where(
                    PaymentIntent.status == IntentStatus.PENDING.value,
                    PaymentIntent.created_at < created_before,
                )
            ).all()
            return [_to_record(row) for row in rows]
        finally:
            db.close()


class GrantStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def get_grant(self, buyer_id: str, course_id: str) -> Optional[GrantRecord]:
        db = self._session_factory()
        try:
            row = db.scalars(
                select(AccessGrant).filter_by(buyer_id=buyer_id, course_id=course_id)
            ).first()
            if row is None:
                return None
            return GrantRecord(
                buyer_id=row.buyer_id,
                course_id=row.course_id,
                payment_intent_id=row.payment_intent_id,
                granted_at=row.granted_at,
            )
        finally:
            db.close()

    def insert_grant_if_absent(self, buyer_id: str, course_id: str, intent_id: str) -> bool:
        """Insert the grant; ``False`` when the (buyer, course) pair already has one."""
        db = self._session_factory()
        try:
            db.add(AccessGrant(buyer_id=buyer_id, course_id=course_id, payment_intent_id=intent_id))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
        finally:
            db.close()


class CourseCatalog:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def get(self, course_id: str) -> Optional[CourseRecord]:
        db = self._session_factory()
        try:
            row = db.get(Course, course_id)
            if row is None:
                return None
            return CourseRecord(
                id=row.id,
                title=row.title,
                price=row.price,
                currency=row.currency,
                published=row.published,
            )
        finally:
            db.close()
