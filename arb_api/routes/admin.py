"""
Админские маршруты (доступ по X-Admin-Token)
"""
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import UserStatus, FraudAlertStatus
from shared.money import to_nano
from shared.errors import ValidationError
from arb_api.deps import get_db, require_admin
from arb_api.services.admin_service import AdminService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class ApproveRequest(BaseModel):
    tx_hash: Optional[str] = None
    notes: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class UserStatusRequest(BaseModel):
    status: UserStatus
    reason: Optional[str] = None


class AdjustRequest(BaseModel):
    amount: str  # в TON, со знаком: "-1.5"
    reason: str


class AlertUpdateRequest(BaseModel):
    status: FraudAlertStatus
    notes: Optional[str] = None


def _withdrawal_payload(withdrawal) -> dict:
    return {
        "id": str(withdrawal.id),
        "user_id": withdrawal.user_id,
        "amount_nano": str(withdrawal.amount_nano),
        "status": withdrawal.status.value,
        "tx_hash": withdrawal.tx_hash,
    }


def _alert_payload(alert) -> dict:
    # админам можно видеть сигналы
    return {
        "id": alert.id,
        "user_id": alert.user_id,
        "alert_type": alert.alert_type,
        "risk_score": alert.risk_score,
        "flags": alert.flags or [],
        "status": alert.status.value,
        "notes": alert.notes,
    }


# ========== Выводы ==========

@router.post("/withdrawals/{withdrawal_id}/processing")
async def withdrawal_processing(
    withdrawal_id: UUID,
    request: Request,
    admin_id: Optional[int] = Depends(require_admin),
    session: AsyncSession = Depends(get_db)
):
    withdrawal = await request.app.state.withdrawal_service.mark_processing(session, withdrawal_id, admin_id)
    return {"success": True, "data": _withdrawal_payload(withdrawal)}


@router.post("/withdrawals/{withdrawal_id}/approve")
async def withdrawal_approve(
    withdrawal_id: UUID,
    request: Request,
    body: Optional[ApproveRequest] = None,
    admin_id: Optional[int] = Depends(require_admin),
    session: AsyncSession = Depends(get_db)
):
    body = body or ApproveRequest()
    withdrawal = await request.app.state.withdrawal_service.approve(
        session, withdrawal_id, admin_id, tx_hash=body.tx_hash, notes=body.notes
    )
    return {"success": True, "data": _withdrawal_payload(withdrawal)}


@router.post("/withdrawals/{withdrawal_id}/reject")
async def withdrawal_reject(
    withdrawal_id: UUID,
    request: Request,
    body: Optional[ReasonRequest] = None,
    admin_id: Optional[int] = Depends(require_admin),
    session: AsyncSession = Depends(get_db)
):
    withdrawal = await request.app.state.withdrawal_service.reject(
        session, withdrawal_id, admin_id, reason=body.reason if body else None
    )
    return {"success": True, "data": _withdrawal_payload(withdrawal)}


@router.post("/withdrawals/{withdrawal_id}/fail")
async def withdrawal_fail(
    withdrawal_id: UUID,
    request: Request,
    body: Optional[ReasonRequest] = None,
    admin_id: Optional[int] = Depends(require_admin),
    session: AsyncSession = Depends(get_db)
):
    withdrawal = await request.app.state.withdrawal_service.fail(
        session, withdrawal_id, admin_id, reason=body.reason if body else None
    )
    return {"success": True, "data": _withdrawal_payload(withdrawal)}


# ========== Пользователи ==========

@router.post("/users/{user_id}/status")
async def user_status(
    user_id: int,
    body: UserStatusRequest,
    admin_id: Optional[int] = Depends(require_admin),
    session: AsyncSession = Depends(get_db)
):
    user = await AdminService.set_user_status(session, user_id, body.status, admin_id, reason=body.reason)
    return {"success": True, "data": {"user_id": user.id, "status": user.status.value}}


@router.post("/users/{user_id}/adjust")
async def user_adjust(
    user_id: int,
    body: AdjustRequest,
    admin_id: Optional[int] = Depends(require_admin),
    session: AsyncSession = Depends(get_db)
):
    amount = body.amount.strip()
    negative = amount.startswith("-")
    amount_nano = to_nano(amount.lstrip("+-"))
    if amount_nano == 0:
        raise ValidationError("Adjustment amount must be non-zero")

    transaction = await AdminService.adjust_balance(
        session, user_id, -amount_nano if negative else amount_nano, admin_id, body.reason
    )
    return {
        "success": True,
        "data": {
            "transaction_id": transaction.id,
            "amount_nano": str(transaction.amount_nano),
            "balance_after_nano": str(transaction.balance_after_nano),
        }
    }


# ========== Антифрод ==========

@router.get("/fraud-alerts")
async def fraud_alerts(
    admin_id: Optional[int] = Depends(require_admin),
    session: AsyncSession = Depends(get_db)
):
    alerts = await AdminService.list_open_alerts(session)
    return {"success": True, "data": [_alert_payload(a) for a in alerts]}


@router.patch("/fraud-alerts/{alert_id}")
async def fraud_alert_update(
    alert_id: int,
    body: AlertUpdateRequest,
    admin_id: Optional[int] = Depends(require_admin),
    session: AsyncSession = Depends(get_db)
):
    alert = await AdminService.update_fraud_alert(session, alert_id, body.status, admin_id, notes=body.notes)
    return {"success": True, "data": _alert_payload(alert)}


@router.post("/fraud-alerts/{alert_id}/block-user")
async def fraud_alert_block_user(
    alert_id: int,
    body: Optional[ReasonRequest] = None,
    admin_id: Optional[int] = Depends(require_admin),
    session: AsyncSession = Depends(get_db)
):
    alert = await AdminService.block_user_from_alert(session, alert_id, admin_id, notes=body.reason if body else None)
    return {"success": True, "data": _alert_payload(alert)}


# ========== CPA ==========

@router.get("/cpa/config")
async def cpa_config(request: Request, admin_id: Optional[int] = Depends(require_admin)):
    """Маржа платформы, курс и состояние сетей"""
    registry = request.app.state.registry
    return {
        "success": True,
        "data": {
            **registry.margin_config(),
            "networks": [
                {"network": name, "configured": registry.get(name).is_configured()}
                for name in registry.networks()
            ],
        }
    }
