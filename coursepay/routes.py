from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field

from coursepay.auth import Principal, require_admin, verify_token
from coursepay.config import get_settings
from coursepay.database import SessionLocal
from coursepay.errors import PermissionDenied
from coursepay.orchestrator import build_effects, build_orchestrator
from coursepay.side_effects import SideEffectLog
from coursepay.types import Gateway, IntentStatus, NotificationResult

router = APIRouter()
admin_router = APIRouter(prefix="/admin")


class IntentRequest(BaseModel):
    course_id: str = Field(min_length=1)
    gateway: Gateway
    bank_reference: Optional[str] = Field(default=None, max_length=100)


class AdminDecision(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class ExpireStaleRequest(BaseModel):
    max_age_minutes: int = Field(gt=0)


def get_orchestrator(background_tasks: BackgroundTasks):
    return build_orchestrator(SessionLocal, get_settings(), dispatch=background_tasks.add_task)


def notification_response(result: NotificationResult) -> dict:
    return {
        "ok": True,
        "intent_id": result.intent.id,
        "status": result.intent.status.value,
        "duplicate": result.duplicate,
        "granted": result.granted,
    }


@router.post("/intents", status_code=201)
def create_intent_api(
    request: IntentRequest,
    principal: Principal = Depends(verify_token),
    orchestrator=Depends(get_orchestrator)
):
    intent, launch = orchestrator.create_intent(
        buyer_id=principal.user_id,
        course_id=request.course_id,
        gateway=request.gateway,
        buyer_email=principal.email,
        bank_reference=request.bank_reference,
    )
    return {
        "intent": intent.to_dict(),
        "launch": {"gateway": launch.gateway.value, "url": launch.url, "fields": launch.fields},
    }


@router.get("/intents/{intent_id}")
def get_intent_api(
    intent_id: str,
    principal: Principal = Depends(verify_token),
    orchestrator=Depends(get_orchestrator)
):
    intent = orchestrator.get_intent(intent_id)
    if intent.buyer_id != principal.user_id and not principal.is_admin:
        raise PermissionDenied("Not your payment intent", {"intent_id": intent_id})
    return intent.to_dict()


@admin_router.get("/intents")
def audit_list(
    status: Optional[List[IntentStatus]] = Query(default=None),
    admin: Principal = Depends(require_admin),
    orchestrator=Depends(get_orchestrator)
):
    return [intent.to_dict() for intent in orchestrator.list_audit(status)]


@admin_router.post("/intents/{intent_id}/confirm-bank")
def confirm_bank(
    intent_id: str,
    decision: AdminDecision,
    admin: Principal = Depends(require_admin),
    orchestrator=Depends(get_orchestrator)
):
    result = orchestrator.confirm_bank_transfer(intent_id, admin.user_id, decision.notes)
    return notification_response(result)


@admin_router.post("/intents/{intent_id}/reject-bank")
def reject_bank(
    intent_id: str,
    decision: AdminDecision,
    admin: Principal = Depends(require_admin),
    orchestrator=Depends(get_orchestrator)
):
    result = orchestrator.reject_bank_transfer(intent_id, admin.user_id, decision.notes)
    return notification_response(result)


@admin_router.post("/intents/{intent_id}/expire")
def expire_intent(
    intent_id: str,
    admin: Principal = Depends(require_admin),
    orchestrator=Depends(get_orchestrator)
):
    return orchestrator.expire_intent(intent_id).to_dict()


@admin_router.post("/intents/expire-stale")
def expire_stale(
    request: ExpireStaleRequest,
    admin: Principal = Depends(require_admin),
    orchestrator=Depends(get_orchestrator)
):
    expired = orchestrator.expire_stale(timedelta(minutes=request.max_age_minutes))
    return {"expired": [intent.id for intent in expired]}


@admin_router.get("/side-effects")
def side_effect_failures(admin: Principal = Depends(require_admin)):
    return [
        {
            "id": failure.id,
            "intent_id": failure.payment_intent_id,
            "step": failure.step,
            "error": failure.error,
            "created_at": failure.created_at.isoformat(),
        }
        for failure in SideEffectLog(SessionLocal).pending()
    ]


@admin_router.post("/side-effects/{failure_id}/retry")
def retry_side_effect(failure_id: int, admin: Principal = Depends(require_admin)):
    resolved = build_effects(SessionLocal, get_settings()).retry(failure_id)
    return {"id": failure_id, "resolved": resolved}
