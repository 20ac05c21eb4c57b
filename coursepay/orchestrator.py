"""Payment fulfillment state machine.

pending -> confirmed | failed | expired. The right-hand states are terminal.
Every transition is a compare-and-transition against the ledger, so a
duplicate delivery that loses a race observes the terminal state and becomes
a no-op instead of a second grant.
"""
import logging
import uuid
from datetime import timedelta
from typing import Iterable, List, Optional, Tuple

from coursepay.currency import CurrencyNormalizer
from coursepay.errors import (
    AlreadyOwned,
    AlreadyTerminal,
    ConcurrencyError,
    CourseUnavailable,
    SignatureInvalid,
    StorageConflict,
    UnknownIntent,
    ValidationError,
)
from coursepay.gateways import GatewayLauncher
from coursepay.granter import AccessGranter
from coursepay.ledger import CourseCatalog, GrantStore, PaymentLedger
from coursepay.models import utcnow
from coursepay.side_effects import EmailSender, FulfillmentEffects, InvoiceGenerator, SideEffectLog
from coursepay.signatures import SignatureVerifier
from coursepay.types import (
    Gateway,
    IntentRecord,
    IntentStatus,
    LaunchParams,
    NotificationEvent,
    NotificationResult,
    Outcome,
)

logger = logging.getLogger(__name__)

AUDIT_STATUSES = (IntentStatus.FAILED, IntentStatus.EXPIRED)


class FulfillmentOrchestrator:
    def __init__(
        self,
        ledger: PaymentLedger,
        grants: GrantStore,
        catalog: CourseCatalog,
        granter: AccessGranter,
        verifier: SignatureVerifier,
        normalizer: CurrencyNormalizer,
        launcher: GatewayLauncher,
        gateway_currency,
    ):
        self._ledger = ledger
        self._grants = grants
        self._catalog = catalog
        self._granter = granter
        self._verifier = verifier
        self._normalizer = normalizer
        self._launcher = launcher
        self._gateway_currency = gateway_currency

    # -- intents -----------------------------------------------------------

    def create_intent(
        self,
        buyer_id: str,
        course_id: str,
        gateway: Gateway,
        buyer_email: Optional[str] = None,
        bank_reference: Optional[str] = None,
    ) -> Tuple[IntentRecord, LaunchParams]:
        course = self._catalog.get(course_id)
        if course is None or not course.purchasable:
            raise CourseUnavailable("Course is not available for purchase", {"course_id": course_id})

        if self._grants.get_grant(buyer_id, course_id) is not None:
            raise AlreadyOwned("Course already owned", {"buyer_id": buyer_id, "course_id": course_id})

        settlement_currency = self._gateway_currency(gateway.value)
        settlement_amount = self._normalizer.convert(course.price, course.currency, settlement_currency)
        if settlement_amount <= 0:
            raise ValidationError("Settlement amount must be positive", {"course_id": course_id})

        now = utcnow()
        intent = self._ledger.insert(IntentRecord(
            id=str(uuid.uuid4()),
            buyer_id=buyer_id,
            buyer_email=buyer_email,
            course_id=course_id,
            amount=course.price,
            currency=course.currency,
            settlement_amount=settlement_amount,
            settlement_currency=settlement_currency,
            gateway=gateway,
            status=IntentStatus.PENDING,
            bank_reference=bank_reference if gateway is Gateway.BANK else None,
            created_at=now,
            updated_at=now,
        ))
        logger.info(
            f"Intent {intent.id} created: buyer {buyer_id}, course {course_id}, "
            f"{gateway.value} {settlement_currency} {settlement_amount}"
        )

        try:
            launch = self._launcher.launch(intent, course)
        except Exception:
            logger.error(f"Launch failed for intent {intent.id}; marking failed")
            self._settle(intent.id, IntentStatus.FAILED)
            raise
        return intent, launch

    def get_intent(self, intent_id: str) -> IntentRecord:
        intent = self._ledger.get_by_id(intent_id)
        if intent is None:
            raise UnknownIntent(intent_id)
        return intent

    def list_audit(self, statuses: Optional[Iterable[IntentStatus]] = None) -> List[IntentRecord]:
        return self._ledger.list_by_status(statuses or AUDIT_STATUSES)

    # -- notifications -----------------------------------------------------

    def handle_notification(self, event: NotificationEvent) -> NotificationResult:
        intent = self._ledger.get_by_id(event.intent_id)
        if intent is None:
            logger.warning(f"Notification for unknown intent {event.intent_id}")
            raise UnknownIntent(event.intent_id)
        if intent.gateway is not event.gateway:
            raise ValidationError(
                "Notification gateway does not match intent",
                {"intent_id": intent.id, "gateway": event.gateway.value},
            )

        if intent.status.is_terminal:
            if not self._verifier.verify(event):
                raise SignatureInvalid("Invalid payment signature", {"intent_id": intent.id})
            logger.info(f"Duplicate notification for intent {intent.id} ({intent.status.value})")
            return self._duplicate(intent)

        if not self._verifier.verify(event):
            logger.warning(f"Invalid signature for intent {intent.id}")
            self._settle(intent.id, IntentStatus.FAILED, event.external_reference)
            raise SignatureInvalid("Invalid payment signature", {"intent_id": intent.id})
        try:
            self._verifier.check_consistency(intent, event)
        except SignatureInvalid:
            logger.warning(f"Amount mismatch for intent {intent.id}")
            self._settle(intent.id, IntentStatus.FAILED, event.external_reference)
            raise

        if event.outcome is Outcome.PENDING:
            logger.info(f"Intent {intent.id} still pending at the gateway")
            return NotificationResult(intent=intent)
        if event.outcome is Outcome.FAILED:
            return self._fail(intent, event.external_reference)
        return self._confirm(intent, event.external_reference)

    # -- bank transfers ----------------------------------------------------

    def confirm_bank_transfer(self, intent_id: str, admin_id: str, notes: Optional[str] = None) -> NotificationResult:
        intent = self._bank_intent(intent_id)
        if intent.status.is_terminal:
            logger.info(f"Bank intent {intent_id} already {intent.status.value}; ignoring approval")
            return self._duplicate(intent)
        return self._confirm(intent, intent.bank_reference, admin_id=admin_id, admin_notes=notes)

    def reject_bank_transfer(self, intent_id: str, admin_id: str, notes: Optional[str] = None) -> NotificationResult:
        intent = self._bank_intent(intent_id)
        if intent.status.is_terminal:
            logger.info(f"Bank intent {intent_id} already {intent.status.value}; ignoring rejection")
            return NotificationResult(intent=intent, duplicate=True)
        return self._fail(intent, None, admin_id=admin_id, admin_notes=notes)

    def _bank_intent(self, intent_id: str) -> IntentRecord:
        intent = self.get_intent(intent_id)
        if intent.gateway is not Gateway.BANK:
            raise ValidationError("Not a bank transfer intent", {"intent_id": intent_id})
        return intent

    # -- expiry ------------------------------------------------------------

    def expire_intent(self, intent_id: str) -> IntentRecord:
        self.get_intent(intent_id)
        transitioned, current = self._settle(intent_id, IntentStatus.EXPIRED)
        if not transitioned:
            logger.info(f"Intent {intent_id} already {current.status.value}; not expired")
        return current

    def expire_stale(self, older_than: timedelta) -> List[IntentRecord]:
        expired = []
        for intent in self._ledger.list_stale(utcnow() - older_than):
            transitioned, current = self._settle(intent.id, IntentStatus.EXPIRED)
            if transitioned:
                expired.append(current)
        logger.info(f"Expired {len(expired)} stale intents")
        return expired

    # -- transitions -------------------------------------------------------

    def _confirm(self, intent: IntentRecord, external_reference: Optional[str], **admin) -> NotificationResult:
        transitioned, current = self._settle(intent.id, IntentStatus.CONFIRMED, external_reference, **admin)
        if not transitioned:
            return self._duplicate(current)
        result = self._granter.grant(current)
        if not result.created:
            logger.warning(
                f"Intent {current.id} confirmed but buyer {current.buyer_id} already owned "
                f"course {current.course_id}; review for refund"
            )
        return NotificationResult(intent=current, granted=result.created)

    def _duplicate(self, intent: IntentRecord) -> NotificationResult:
        """Acknowledge a repeat delivery for a settled intent.

        A confirmed intent may still lack its grant when an earlier delivery
        failed between the transition and the grant insert, so the grant is
        re-attempted; the insert is a no-op when the grant exists.
        """
        if intent.status is not IntentStatus.CONFIRMED:
            return NotificationResult(intent=intent, duplicate=True)
        result = self._granter.grant(intent)
        if result.created:
            logger.warning(f"Intent {intent.id} was confirmed without a grant; granted on redelivery")
        return NotificationResult(intent=intent, duplicate=True, granted=result.created)

    def _fail(self, intent: IntentRecord, external_reference: Optional[str], **admin) -> NotificationResult:
        transitioned, current = self._settle(intent.id, IntentStatus.FAILED, external_reference, **admin)
        return NotificationResult(intent=current, duplicate=not transitioned)

    def _settle(self, intent_id: str, to_status: IntentStatus, external_reference: Optional[str] = None, **admin):
        """Move a pending intent to ``to_status``.

        Returns ``(transitioned, current)``; ``transitioned`` is False when
        another delivery settled the intent first.
        """
        for attempt in (1, 2):
            try:
                current = self._ledger.compare_and_transition(
                    intent_id, IntentStatus.PENDING, to_status, external_reference, **admin
                )
                return True, current
            except AlreadyTerminal as signal:
                logger.info(f"Intent {intent_id} already {signal.status}; transition to {to_status.value} skipped")
                return False, signal.intent
            except StorageConflict as err:
                if attempt == 2:
                    raise ConcurrencyError("Could not settle payment intent", err.details) from err
                logger.warning(f"Storage conflict settling intent {intent_id}; retrying once")


def build_effects(session_factory, settings) -> FulfillmentEffects:
    return FulfillmentEffects(
        InvoiceGenerator(session_factory),
        EmailSender(settings.resend_api_key, settings.resend_from_email),
        SideEffectLog(session_factory),
        CourseCatalog(session_factory),
        PaymentLedger(session_factory),
    )


def build_orchestrator(session_factory, settings, dispatch=None) -> FulfillmentOrchestrator:
    """Wire the orchestrator and its collaborators over one session factory."""
    grants = GrantStore(session_factory)
    verifier = SignatureVerifier(settings.redirect, settings.checkout)
    effects = build_effects(session_factory, settings)
    return FulfillmentOrchestrator(
        ledger=PaymentLedger(session_factory),
        grants=grants,
        catalog=CourseCatalog(session_factory),
        granter=AccessGranter(grants, effects, dispatch=dispatch),
        verifier=verifier,
        normalizer=CurrencyNormalizer(settings.currency_rates, strict=settings.currency_strict),
        launcher=GatewayLauncher(settings, verifier),
        gateway_currency=settings.gateway_currency,
    )
