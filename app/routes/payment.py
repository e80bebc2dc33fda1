"""
支付接口路由：商户下单、收银台、发起支付、状态轮询、密钥生成。

- /api/pay/submit、/submit.php：页面跳转下单，302 到收银台
- /api/pay/mapi、/mapi.php：API 下单，直接返回支付信息
- /api/pay/create：新版协议下单（必须携带 timestamp）

旧版协议（无 timestamp）错误码固定为 -1；新版协议使用数字错误码，响应带 RSA 签名。
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from app.models.schemas import ORDER_PAID
from app.plugins.base import CAP_SUBMIT, PluginError
from app.services import channel_service
from app.services.callback_service import CallbackService
from app.services.channel_selector import ChannelUnavailableError
from app.services.dispatch_service import default_method, dispatch, legacy_pay_fields, pay_info
from app.services.merchant_service import MerchantError
from app.services.order_service import OrderCreateError, OrderService, OrderStateError
from app.services.pay_types import all_pay_types, get_pay_type
from app.services.platform_config import ConfigSnapshot, get_snapshot
from app.services.request_guard import ParamError
from app.services.sign import SignatureError, generate_rsa_keypair, is_v2_request
from app.services.submission_service import sign_v2_response, submit_order

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pay")

# 兼容彩虹易支付的根路径
legacy_router = APIRouter()

# 业务异常都带有 msg 和 code
GATEWAY_ERRORS = (
    ParamError,
    SignatureError,
    MerchantError,
    ChannelUnavailableError,
    OrderStateError,
    OrderCreateError,
    PluginError,
)

SYSTEM_ERROR_CODE = 9999


async def read_params(request: Request) -> dict:
    """合并 query string 与表单参数（表单优先）。"""
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def error_response(msg: str, code: int, v2: bool) -> JSONResponse:
    return JSONResponse(content={"code": code if v2 else -1, "msg": msg})


# ── 商户下单 ──────────────────────────────────────────────


@router.api_route("/submit", methods=["GET", "POST"])
@legacy_router.api_route("/submit.php", methods=["GET", "POST"])
async def submit(request: Request, snapshot: ConfigSnapshot = Depends(get_snapshot)):
    """页面跳转下单：创建订单后跳转到收银台，由买家选择支付方式。"""
    params = await read_params(request)
    try:
        submission = await run_in_threadpool(
            submit_order, params, snapshot, client_ip=client_ip(request)
        )
    except GATEWAY_ERRORS as e:
        return PlainTextResponse(e.msg, status_code=400)
    except Exception:
        logger.exception("页面下单异常 (pid=%s)", params.get("pid"))
        return PlainTextResponse("系统错误", status_code=500)

    return RedirectResponse(
        url=f"/api/pay/cashier?trade_no={submission.created.trade_no}", status_code=302
    )


async def _api_submit(request: Request, snapshot: ConfigSnapshot, require_v2: bool):
    params = await read_params(request)
    v2 = require_v2 or is_v2_request(params)
    try:
        submission = await run_in_threadpool(
            submit_order, params, snapshot, require_v2, client_ip(request)
        )
        order = submission.created.order
        method = params.get("method") or default_method(order.device)
        dispatched = await run_in_threadpool(
            dispatch, order.trade_no, snapshot, str(request.base_url), method
        )
    except GATEWAY_ERRORS as e:
        return error_response(e.msg, e.code, v2)
    except Exception:
        logger.exception(
            "API 下单异常 (pid=%s, out_trade_no=%s)", params.get("pid"), params.get("out_trade_no")
        )
        return error_response("系统错误", SYSTEM_ERROR_CODE, v2)

    result = dispatched.result
    if not v2:
        return JSONResponse(content={
            "code": 1,
            "msg": "success",
            "trade_no": order.trade_no,
            **legacy_pay_fields(result),
        })

    info = pay_info(result)
    payload = {
        "code": 0,
        "msg": "success",
        "trade_no": order.trade_no,
        "pay_type": result.type,
        "pay_info": result.url or json.dumps(info, ensure_ascii=False),
    }
    return JSONResponse(content=sign_v2_response(payload, submission.merchant))


@router.api_route("/mapi", methods=["GET", "POST"])
@legacy_router.api_route("/mapi.php", methods=["GET", "POST"])
async def mapi(request: Request, snapshot: ConfigSnapshot = Depends(get_snapshot)):
    """API 下单，兼容新旧两版协议。"""
    return await _api_submit(request, snapshot, require_v2=False)


@router.api_route("/create", methods=["GET", "POST"])
async def create(request: Request, snapshot: ConfigSnapshot = Depends(get_snapshot)):
    """新版协议下单（必须携带 timestamp）。"""
    return await _api_submit(request, snapshot, require_v2=True)


# ── 收银台 ────────────────────────────────────────────────


def available_pay_types(snapshot: ConfigSnapshot) -> list[dict]:
    """默认支付组中未关闭且至少有一个启用通道的支付类型。"""
    group = snapshot.default_pay_group()
    result = []
    for pt in all_pay_types():
        entry = group.type_config(pt.id) if group else None
        if entry is not None and str(entry.get("channel_mode", -1)) == "0":
            continue
        if not channel_service.has_enabled_channel(pt.name):
            continue
        result.append({"name": pt.name, "showname": pt.showname})
    return result


@router.get("/cashier")
async def cashier(trade_no: str, snapshot: ConfigSnapshot = Depends(get_snapshot)):
    """收银台数据：订单摘要、锁定信息、可选支付类型。"""
    order = OrderService().get_order(trade_no)
    if order is None:
        return JSONResponse(content={"code": -1, "msg": "订单不存在"})

    return JSONResponse(content={
        "code": 0,
        "site_name": snapshot.get("site_name") or "",
        "order": {
            "trade_no": order.trade_no,
            "name": order.name,
            "money": str(order.money),
            "real_money": str(order.real_money),
            "fee_money": str(order.fee_money),
            "pay_type": order.pay_type,
            "status": order.status,
            "created_at": order.created_at,
        },
        "locked": order.channel_id is not None,
        "pay_types": available_pay_types(snapshot),
    })


@router.post("/select_channel")
async def select_channel(request: Request, snapshot: ConfigSnapshot = Depends(get_snapshot)):
    """收银台选择支付类型（不锁定通道）。"""
    params = await read_params(request)
    trade_no = params.get("trade_no") or ""
    pay_type = params.get("type") or ""
    if get_pay_type(pay_type) is None:
        return JSONResponse(content={"code": -1, "msg": "支付类型无效"})
    if pay_type not in {pt["name"] for pt in available_pay_types(snapshot)}:
        return JSONResponse(content={"code": -1, "msg": "该支付类型暂不可用"})

    try:
        order = OrderService().select_pay_type(trade_no, pay_type)
    except OrderStateError as e:
        return JSONResponse(content={"code": -1, "msg": e.msg})
    return JSONResponse(content={"code": 0, "trade_no": order.trade_no, "pay_type": order.pay_type})


@router.post("/dopay")
async def dopay(request: Request, snapshot: ConfigSnapshot = Depends(get_snapshot)):
    """发起支付：首次调用锁定通道，随后调用插件。"""
    params = await read_params(request)
    trade_no = params.get("trade_no") or ""
    method = params.get("method") or CAP_SUBMIT
    try:
        dispatched = await run_in_threadpool(
            dispatch, trade_no, snapshot, str(request.base_url), method
        )
    except GATEWAY_ERRORS as e:
        return JSONResponse(content={"code": -1, "msg": e.msg, "errcode": e.code})
    except Exception:
        logger.exception("发起支付异常 (trade_no=%s)", trade_no)
        return JSONResponse(content={"code": -1, "msg": "系统错误", "errcode": SYSTEM_ERROR_CODE})

    return JSONResponse(content={
        "code": 0,
        "trade_no": dispatched.order.trade_no,
        **pay_info(dispatched.result),
    })


@router.get("/check_status")
async def check_status(trade_no: str):
    """订单状态轮询；已支付时附带商户同步跳转地址。"""
    order = OrderService().get_order(trade_no)
    if order is None:
        return JSONResponse(content={"code": -1, "msg": "订单不存在"})

    paid = order.status == ORDER_PAID
    content = {"code": 0, "status": order.status, "paid": paid}
    if paid and order.return_url:
        content["return_url"] = CallbackService().build_return_url(order.id)
    return JSONResponse(content=content)


@router.post("/generate_keys")
async def generate_keys():
    """生成一对 RSA 2048 密钥（Base64 DER）。"""
    public_key, private_key = await run_in_threadpool(generate_rsa_keypair)
    return JSONResponse(content={"code": 0, "public_key": public_key, "private_key": private_key})
