"""
商户下单流水线：参数校验 → 商户 → 验签 → 金额 / 身份限制 / 回调域名 → 通道 → 手续费 → 创建或复用订单。

校验与解析阶段的任何失败都在写库之前抛出，不会产生订单。
"""

import logging
import time
from dataclasses import dataclass

from app.models.schemas import Merchant
from app.services import channel_service
from app.services.channel_selector import ChannelUnavailableError, check_amount, select_channel
from app.services.fee import resolve_fee_rate
from app.services.merchant_service import MerchantService
from app.services.order_service import CreateResult, OrderService
from app.services.pay_types import get_pay_type
from app.services.request_guard import (
    SUBMIT_REQUIRED,
    ParamError,
    build_cert_info,
    parse_money,
    require_params,
    validate_callback_domain,
)
from app.services.sign import (
    SIGN_TYPE_RSA,
    is_v2_request,
    rsa_sign,
    validate_timestamp,
    verify_request,
)

logger = logging.getLogger(__name__)


@dataclass
class Submission:
    merchant: Merchant
    created: CreateResult
    is_v2: bool
    sign_type: str


def authenticate_request(params: dict, require_v2: bool = False) -> tuple[Merchant, str]:
    """
    校验时间戳（新版协议）、商户状态和签名。

    Returns:
        (商户, 签名类型)。

    Raises:
        ParamError: code 1001 缺少时间戳，1002 时间戳过期。
        MerchantError: 商户不存在或已禁止。
        SignatureError: 签名错误。
    """
    v2 = is_v2_request(params)
    if require_v2 and not v2:
        raise ParamError("缺少必要参数: timestamp")
    if v2 and not validate_timestamp(params.get("timestamp")):
        raise ParamError("时间戳已过期", code=1002)

    merchant = MerchantService().get_active_by_pid(params.get("pid"))
    sign_type = verify_request(params, merchant.api_key, merchant.rsa_public_key)
    return merchant, sign_type


def _resolve_channel(params: dict, pay_type: str, merchant: Merchant, snapshot, min_age):
    """返回 (通道, 是否为商户指定通道)。"""
    pinned = str(params.get("channel_id") or "").strip()
    if pinned:
        channel = channel_service.get_channel(pinned)
        if channel is None or channel.status != 1 or not channel.supports(pay_type):
            logger.info("商户指定通道不可用 (merchant_id=%d, channel_id=%s)", merchant.id, pinned)
            raise ChannelUnavailableError("指定的支付通道不存在或已关闭")
        return channel, True

    channel = select_channel(pay_type, snapshot, merchant.pay_group_id, min_age)
    if channel is None:
        raise ChannelUnavailableError("没有可用的支付通道")
    return channel, False


def submit_order(
    params: dict, snapshot, require_v2: bool = False, client_ip: str | None = None
) -> Submission:
    """
    处理一次商户下单请求，返回订单（新建或复用）。

    Args:
        params: 商户提交的全部参数。
        snapshot: ConfigSnapshot。
        require_v2: 仅接受新版协议（/api/pay/create）。
    """
    require_params(params, SUBMIT_REQUIRED)
    merchant, sign_type = authenticate_request(params, require_v2=require_v2)

    pay_type = str(params.get("type") or "").strip()
    if get_pay_type(pay_type) is None:
        raise ParamError(f"不支持的支付类型: {pay_type}")
    money = parse_money(params.get("money"))
    cert_info = build_cert_info(params)
    validate_callback_domain(merchant.id, params["notify_url"], snapshot)

    channel, pinned = _resolve_channel(
        params, pay_type, merchant, snapshot, cert_info.min_age if cert_info else None,
    )
    check_amount(channel, money)
    fee_rate = resolve_fee_rate(merchant, pay_type, snapshot)

    created = OrderService().create_or_reuse_order(
        merchant=merchant,
        out_trade_no=str(params["out_trade_no"]).strip(),
        pay_type=pay_type,
        name=str(params["name"]).strip(),
        money=money,
        fee_rate=fee_rate,
        channel=channel if pinned else None,
        notify_url=params.get("notify_url"),
        return_url=params.get("return_url") or None,
        param=params.get("param") or None,
        clientip=params.get("clientip") or client_ip,
        device=params.get("device") or "pc",
        cert_info=cert_info,
    )
    return Submission(
        merchant=merchant,
        created=created,
        is_v2=is_v2_request(params),
        sign_type=sign_type,
    )


def sign_v2_response(payload: dict, merchant: Merchant) -> dict:
    """新版协议响应：附加 timestamp、sign_type=RSA 和 RSA 签名（商户有私钥时）。"""
    signed = dict(payload)
    signed["timestamp"] = str(int(time.time()))
    signed["sign_type"] = SIGN_TYPE_RSA
    private_key = MerchantService().get_private_key(merchant)
    if private_key:
        signed["sign"] = rsa_sign(signed, private_key)
    return signed
