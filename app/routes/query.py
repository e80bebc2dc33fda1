"""
订单查询路由：/api/pay/query 与兼容路径 /api.php?act=order。

旧版协议可使用 pid + key 直接查询，也可按下单规则签名；
新版协议（携带 timestamp）必须签名，响应附带 RSA 签名。
"""

import hmac
import logging

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from app.models.schemas import ORDER_PAID, Merchant, Order
from app.routes.payment import GATEWAY_ERRORS, error_response, read_params
from app.services.merchant_service import MerchantError, MerchantService
from app.services.order_service import OrderService, OrderStateError
from app.services.request_guard import ParamError
from app.services.sign import is_v2_request
from app.services.submission_service import authenticate_request, sign_v2_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pay")
legacy_router = APIRouter()


def _authenticate(params: dict) -> Merchant:
    """
    旧版 pid + key 或签名认证。

    Raises:
        ParamError / MerchantError / SignatureError
    """
    if not params.get("pid"):
        raise ParamError("缺少必要参数: pid")
    key = params.get("key")
    if key and not params.get("sign") and not is_v2_request(params):
        merchant = MerchantService().get_active_by_pid(params["pid"])
        if not merchant.api_key or not hmac.compare_digest(merchant.api_key, key):
            raise MerchantError("商户密钥错误")
        return merchant
    if not params.get("sign"):
        raise ParamError("缺少必要参数: sign")
    merchant, _ = authenticate_request(params)
    return merchant


def _order_fields(order: Order, merchant: Merchant) -> dict:
    return {
        "trade_no": order.trade_no,
        "out_trade_no": order.out_trade_no,
        "api_trade_no": order.api_trade_no or "",
        "type": order.pay_type,
        "pid": merchant.pid,
        "addtime": order.created_at or "",
        "endtime": order.paid_at or "",
        "name": order.name,
        "money": str(order.money),
        "status": 1 if order.status == ORDER_PAID else 0,
        "param": order.param or "",
        "buyer": order.buyer or "",
    }


def _query(params: dict) -> tuple[Order, Merchant]:
    merchant = _authenticate(params)
    trade_no = params.get("trade_no")
    out_trade_no = params.get("out_trade_no")
    if not trade_no and not out_trade_no:
        raise ParamError("缺少必要参数: trade_no 或 out_trade_no")

    order = OrderService().find_merchant_order(merchant.id, trade_no, out_trade_no)
    if order is None:
        raise OrderStateError("订单不存在")
    return order, merchant


async def _handle_query(params: dict) -> JSONResponse:
    v2 = is_v2_request(params)
    try:
        order, merchant = await run_in_threadpool(_query, params)
    except GATEWAY_ERRORS as e:
        return error_response(e.msg, e.code, v2)

    if not v2:
        return JSONResponse(content={"code": 1, "msg": "success", **_order_fields(order, merchant)})
    payload = {"code": 0, "msg": "success", **_order_fields(order, merchant)}
    return JSONResponse(content=sign_v2_response(payload, merchant))


@router.api_route("/query", methods=["GET", "POST"])
async def query_order(request: Request):
    """订单查询（trade_no 优先，其次 out_trade_no 的最新一笔）。"""
    return await _handle_query(await read_params(request))


@legacy_router.api_route("/api.php", methods=["GET", "POST"])
async def query_api(request: Request):
    """兼容接口入口，目前只支持 act=order。"""
    params = await read_params(request)
    act = params.get("act")
    if not act:
        return JSONResponse(content={"code": -1, "msg": "缺少act参数"})
    if act != "order":
        return JSONResponse(content={"code": -1, "msg": f"不支持的操作: {act}"})
    return await _handle_query(params)
