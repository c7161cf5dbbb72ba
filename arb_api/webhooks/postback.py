"""
Webhook постбэков CPA сетей
Идемпотентная обработка подтверждений конверсий
"""
import logging
from typing import Any, Dict
from urllib.parse import parse_qsl

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from arb_api.services.postback_service import SettlementStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["postback"])


async def _collect_params(request: Request) -> Dict[str, Any]:
    """Параметры постбэка: query string плюс тело (form или JSON)"""
    params: Dict[str, Any] = dict(request.query_params)

    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        try:
            if "application/json" in content_type:
                body = await request.json()
                if isinstance(body, dict):
                    params.update({k: v for k, v in body.items() if v is not None})
            elif "application/x-www-form-urlencoded" in content_type:
                body = (await request.body()).decode()
                params.update(parse_qsl(body, keep_blank_values=True))
        except ValueError as e:
            logger.warning(f"Unparseable postback body: {e}")

    return params


@router.api_route("/postback/{network}", methods=["GET", "POST"])
async def postback_webhook(network: str, request: Request):
    """
    Обработка постбэка

    Неизвестная сессия и повтор отвечают 200, чтобы сеть не ретраила.
    Неверная подпись 403. Инфраструктурная ошибка 500 (сеть повторит,
    повтор безопасен).
    """
    params = await _collect_params(request)
    result = await request.app.state.settlement_service.handle_postback(network, params)

    if result.status == SettlementStatus.INVALID_SIGNATURE:
        return JSONResponse(status_code=403, content={"status": "error", "message": "invalid signature"})

    if result.status == SettlementStatus.ALREADY_PROCESSED:
        return {"status": "ok", "message": "already processed"}

    # NOT_FOUND тоже подтверждаем, не раскрывая внутреннее состояние
    return {"status": "ok"}
