"""
上游回调路由：异步通知 /api/pay/notify/{trade_no}，同步跳转 /api/pay/return/{trade_no}。

异步通知只返回插件约定的应答字符串，上游据此决定是否重发。
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from app.routes.payment import read_params
from app.services.callback_service import CallbackService
from app.services.platform_config import ConfigSnapshot, get_snapshot
from app.services.settlement_service import (
    FAIL_ACK,
    TRANSPORT_NOTIFY,
    TRANSPORT_RETURN,
    handle_callback,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pay")


@router.api_route("/notify/{trade_no}", methods=["GET", "POST"])
async def upstream_notify(
    trade_no: str, request: Request, snapshot: ConfigSnapshot = Depends(get_snapshot)
):
    params = await read_params(request)
    try:
        outcome = await run_in_threadpool(
            handle_callback, trade_no, params, TRANSPORT_NOTIFY, snapshot
        )
    except Exception:
        logger.exception("异步通知处理异常 (trade_no=%s)", trade_no)
        return PlainTextResponse(FAIL_ACK)
    return PlainTextResponse(outcome.ack)


@router.api_route("/return/{trade_no}", methods=["GET", "POST"])
async def upstream_return(
    trade_no: str, request: Request, snapshot: ConfigSnapshot = Depends(get_snapshot)
):
    """浏览器同步跳转：验签结算后跳回商户 return_url，没有 return_url 时返回 JSON。"""
    params = await read_params(request)
    try:
        outcome = await run_in_threadpool(
            handle_callback, trade_no, params, TRANSPORT_RETURN, snapshot
        )
    except Exception:
        logger.exception("同步跳转处理异常 (trade_no=%s)", trade_no)
        return JSONResponse(content={"code": -1, "msg": "系统错误"})

    if not outcome.success:
        return JSONResponse(content={"code": -1, "msg": outcome.msg or "支付验证失败"})

    url = CallbackService().build_return_url(outcome.order.id)
    if url:
        return RedirectResponse(url=url, status_code=302)
    return JSONResponse(content={"code": 0, "msg": "支付成功", "trade_no": outcome.order.trade_no})
