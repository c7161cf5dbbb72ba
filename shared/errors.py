"""
Таксономия ошибок платформы

Каждая ошибка несёт стабильный машинный код и человекочитаемое сообщение.
Поле details предназначено для админки и никогда не показывается пользователю.
"""
from typing import Optional


class ArbError(Exception):
    """Базовая бизнес-ошибка"""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, include_details: bool = False) -> dict:
        error = {"code": self.code, "message": self.message}
        if include_details and self.details:
            error["details"] = self.details
        return error


class ValidationError(ArbError):
    """Некорректные входные данные"""
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(ArbError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str = "Resource", details: Optional[dict] = None):
        super().__init__(f"{resource} not found", details=details)


class ConflictError(ArbError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Conflict"


class InvalidTransitionError(ConflictError):
    """Недопустимый переход статуса (для админских действий)"""
    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, current: str, attempted: str):
        super().__init__(
            f"Cannot move {entity} from {current} to {attempted}",
            details={"entity": entity, "current": current, "attempted": attempted},
        )


class InsufficientBalanceError(ArbError):
    """Недостаточно средств: списание не выполнено"""
    code = "INSUFFICIENT_BALANCE"
    status_code = 400
    default_message = "Insufficient balance"


class FraudBlockedError(ArbError):
    """Запрос заблокирован антифродом"""
    code = "FRAUD_DETECTED"
    status_code = 403
    default_message = "Your request has been flagged for review. Please contact support."


class AccountRestrictedError(FraudBlockedError):
    """Аккаунт SUSPENDED или BANNED"""
    code = "ACCOUNT_RESTRICTED"
    default_message = "Your account is restricted. Please contact support."


class RateLimitedError(ArbError):
    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many requests"

    def __init__(self, retry_after: int, limit: int):
        super().__init__(details={"retry_after": retry_after, "limit": limit})
        self.retry_after = retry_after
        self.limit = limit


class ExternalUnavailableError(ArbError):
    """Внешний сервис (IP intel, TON, CPA) недоступен"""
    code = "EXTERNAL_UNAVAILABLE"
    status_code = 503
    default_message = "External service unavailable"


class RiskUnavailableError(ArbError):
    """Оценка риска недоступна: вывод блокируется до восстановления"""
    code = "RISK_UNAVAILABLE"
    status_code = 503
    default_message = "Withdrawals are temporarily unavailable. Please try again later."


class AuthenticationError(ArbError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class ForbiddenError(ArbError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Access denied"
