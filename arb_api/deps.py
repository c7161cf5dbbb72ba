"""
Зависимости FastAPI: сессия БД, идентификация, антифрод и rate limit

Аутентификация внешняя: личность пользователя приходит в X-User-Id.
"""
import hmac
import logging
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, Request, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import ADMIN_API_TOKEN
from shared.database import User, UserStatus
from shared.errors import (
    AccountRestrictedError, AuthenticationError, ForbiddenError, NotFoundError, RateLimitedError
)
from shared.validation import sanitize_fingerprint
from arb_api.services.policy import Operation
from arb_api.services.risk_scorer import RiskLevel, risk_level
from arb_api.services.risk_service import GateResult
from arb_api.services.risk_signals import RequestContext

logger = logging.getLogger(__name__)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Сессия БД на запрос"""
    async with request.app.state.session_factory() as session:
        yield session


def _parse_id(value: Optional[str]) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


async def current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    user_id = _parse_id(x_user_id)
    if user_id is None:
        raise AuthenticationError()
    return user_id


async def active_user_id(
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(get_db)
) -> int:
    """
    Пользователь из X-User-Id, допущенный к пользовательским маршрутам

    SUSPENDED и BANNED получают 403 ACCOUNT_RESTRICTED.
    """
    result = await session.execute(select(User.status).where(User.id == user_id))
    status = result.scalar_one_or_none()
    if status is None:
        raise NotFoundError("User")
    if status != UserStatus.ACTIVE:
        logger.warning(f"Restricted user {user_id} ({status.value}) rejected")
        raise AccountRestrictedError()
    return user_id


async def require_admin(
    x_admin_token: Optional[str] = Header(None),
    x_admin_id: Optional[str] = Header(None)
) -> Optional[int]:
    """
    Проверка админского токена

    Returns:
        ID админа для аудита (из X-Admin-Id, если передан)
    """
    if not ADMIN_API_TOKEN or not x_admin_token:
        raise ForbiddenError()
    if not hmac.compare_digest(x_admin_token.encode(), ADMIN_API_TOKEN.encode()):
        logger.warning("Admin request with invalid token")
        raise ForbiddenError()
    return _parse_id(x_admin_id)


def client_ip(request: Request) -> str:
    """Первый адрес X-Forwarded-For, иначе адрес сокета"""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else ""


async def request_context(request: Request) -> RequestContext:
    return RequestContext(
        fingerprint=sanitize_fingerprint(request.headers.get("x-device-fingerprint", "")),
        ip_address=client_ip(request)
    )


async def _apply_rate_limit(request: Request, response: Response, user_id: int, level: RiskLevel):
    status = await request.app.state.rate_limiter.hit(user_id, level)
    for name, value in status.headers().items():
        response.headers[name] = value
    if not status.allowed:
        raise RateLimitedError(status.retry_after, status.limit)


def risk_guard(operation: Operation):
    """
    Антифрод-гейт и адаптивный rate limit для маршрута
    """
    async def dependency(
        request: Request,
        response: Response,
        user_id: int = Depends(active_user_id),
        context: RequestContext = Depends(request_context)
    ) -> GateResult:
        gate = await request.app.state.risk_service.gate(user_id, operation, context)
        gate.decision.raise_if_blocked()
        await _apply_rate_limit(request, response, user_id, gate.level)
        return gate

    return dependency


async def stored_risk_rate_limit(
    request: Request,
    response: Response,
    user_id: int = Depends(active_user_id),
    session: AsyncSession = Depends(get_db)
) -> int:
    """
    Rate limit по сохранённому score без новой оценки
    (для маршрутов, где гейт выполняется внутри сервиса)
    """
    result = await session.execute(select(User.risk_score).where(User.id == user_id))
    score = result.scalar_one_or_none()
    level = risk_level(score) if score is not None else RiskLevel.CRITICAL
    await _apply_rate_limit(request, response, user_id, level)
    return user_id
