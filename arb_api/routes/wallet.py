"""
Маршруты кошелька: баланс, история, вывод, рефералы
"""
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shared.money import to_nano, format_units
from arb_api.deps import active_user_id, get_db, request_context, risk_guard, stored_risk_rate_limit
from arb_api.services.ledger_service import LedgerService
from arb_api.services.policy import Operation
from arb_api.services.referral_service import ReferralService
from arb_api.services.risk_signals import RequestContext

logger = logging.getLogger(__name__)

router = APIRouter(tags=["wallet"])


class WithdrawRequest(BaseModel):
    amount: str  # в TON, строкой: "5" или "0.25"
    address: str


@router.get("/wallet/balance", dependencies=[Depends(risk_guard(Operation.GENERAL_API))])
async def get_balance(
    user_id: int = Depends(active_user_id),
    session: AsyncSession = Depends(get_db)
):
    balance = await LedgerService.get_balance(session, user_id)
    return {
        "success": True,
        "data": {
            "balance": format_units(balance["balance_nano"], 4),
            "balance_nano": str(balance["balance_nano"]),
            "total_earned": format_units(balance["total_earned_nano"], 4),
            "total_earned_nano": str(balance["total_earned_nano"]),
        }
    }


@router.get("/wallet/transactions", dependencies=[Depends(risk_guard(Operation.GENERAL_API))])
async def get_transactions(
    limit: int = 50,
    user_id: int = Depends(active_user_id),
    session: AsyncSession = Depends(get_db)
):
    transactions = await LedgerService.get_history(session, user_id, limit=max(1, min(limit, 100)))
    return {
        "success": True,
        "data": [
            {
                "id": tx.id,
                "type": tx.transaction_type.value,
                "amount_nano": str(tx.amount_nano),
                "balance_after_nano": str(tx.balance_after_nano),
                "description": tx.description,
                "created_at": tx.created_at.isoformat(),
            }
            for tx in transactions
        ]
    }


@router.post("/wallet/withdraw")
async def withdraw(
    body: WithdrawRequest,
    request: Request,
    user_id: int = Depends(stored_risk_rate_limit),
    context: RequestContext = Depends(request_context),
    session: AsyncSession = Depends(get_db)
):
    """
    Заявка на вывод: антифрод-гейт выполняется внутри сервиса последним шагом
    """
    amount_nano = to_nano(body.amount)
    withdrawal = await request.app.state.withdrawal_service.request_withdrawal(
        session, user_id, amount_nano, body.address, context
    )
    return {
        "success": True,
        "data": {
            "withdrawal_id": str(withdrawal.id),
            "amount": format_units(withdrawal.amount_nano, 4),
            "amount_nano": str(withdrawal.amount_nano),
            "status": withdrawal.status.value,
        }
    }


@router.get("/referrals/stats", dependencies=[Depends(risk_guard(Operation.GENERAL_API))])
async def referral_stats(
    user_id: int = Depends(active_user_id),
    session: AsyncSession = Depends(get_db)
):
    stats = await ReferralService.get_referral_stats(session, user_id)
    return {"success": True, "data": stats}
