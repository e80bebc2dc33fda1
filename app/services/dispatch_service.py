"""
发起支付：为待支付订单锁定通道并调用插件。

订单首次发起支付时锁定通道；之后的请求一律使用已锁定的通道。
插件报错会交给通道健康监控，命中关键词的通道被自动关闭。
"""

import logging
from dataclasses import dataclass

from app.models.schemas import Channel, Order
from app.plugins.base import (
    CAP_APP,
    CAP_JSAPI,
    CAP_QRCODE,
    CAP_SUBMIT,
    OrderInfo,
    PayResult,
    PluginError,
    plugin_config,
)
from app.plugins.registry import get_plugin
from app.services import channel_service, health_monitor
from app.services.channel_selector import ChannelUnavailableError, check_amount, select_channel
from app.services.fee import resolve_fee_rate
from app.services.merchant_service import MerchantError, MerchantService
from app.services.order_service import OrderService, OrderStateError
from app.services.request_guard import ParamError

logger = logging.getLogger(__name__)

PAY_METHODS = (CAP_SUBMIT, CAP_QRCODE, CAP_JSAPI, CAP_APP)


@dataclass
class DispatchResult:
    order: Order
    channel: Channel
    result: PayResult


def default_method(device: str | None) -> str:
    """API 下单未指定方式时：电脑端扫码，其它设备跳转。"""
    return CAP_QRCODE if (device or "pc") == "pc" else CAP_SUBMIT


def _locked_channel(order: Order) -> Channel:
    channel = channel_service.get_channel(order.channel_id)
    if channel is None or channel.status != 1:
        raise OrderStateError("支付通道已失效")
    return channel


def _lock(order: Order, snapshot) -> tuple[Order, Channel]:
    """为未锁定的订单选择并锁定通道。"""
    if not order.pay_type:
        raise ParamError("请选择支付方式")
    merchant = MerchantService().get_merchant(order.merchant_id)
    if not merchant.is_active:
        raise MerchantError("商户不存在或已禁止")

    min_age = order.cert_info.min_age if order.cert_info else None
    channel = select_channel(order.pay_type, snapshot, merchant.pay_group_id, min_age)
    if channel is None:
        raise ChannelUnavailableError("没有可用的支付通道")
    check_amount(channel, order.money)

    fee_rate = resolve_fee_rate(merchant, order.pay_type, snapshot)
    order, locked = OrderService().lock_channel(
        order, channel, order.pay_type, fee_rate, merchant.fee_payer,
    )
    if not locked:
        # 并发请求先锁定了通道
        channel = _locked_channel(order)
    return order, channel


def build_order_info(order: Order, site_url: str) -> OrderInfo:
    base = site_url.rstrip("/")
    cert = order.cert_info
    return OrderInfo(
        trade_no=order.trade_no,
        out_trade_no=order.out_trade_no,
        money=str(order.real_money),
        name=order.name,
        pay_type=order.pay_type,
        notify_url=f"{base}/api/pay/notify/{order.trade_no}",
        return_url=f"{base}/api/pay/return/{order.trade_no}",
        clientip=order.clientip or "127.0.0.1",
        device=order.device or "pc",
        cert_no=cert.cert_no if cert else None,
        cert_name=cert.cert_name if cert else None,
        min_age=cert.min_age if cert else None,
    )


def dispatch(trade_no: str, snapshot, site_url: str, method: str = CAP_SUBMIT) -> DispatchResult:
    """
    发起支付。

    Raises:
        OrderStateError: 订单不存在、不是待支付或锁定的通道已失效。
        ChannelUnavailableError: 没有可用通道或金额超出限额。
        PluginError: 插件不存在或上游返回错误。
    """
    if method not in PAY_METHODS:
        raise ParamError(f"不支持的支付方式: {method}")

    order = OrderService().require_pending(trade_no)
    if order.channel_id is not None:
        channel = _locked_channel(order)
    else:
        order, channel = _lock(order, snapshot)

    plugin = get_plugin(channel.plugin_name)
    info = build_order_info(order, site_url)
    try:
        result = plugin.pay(method, plugin_config(channel), info)
    except PluginError as e:
        logger.warning("插件下单失败 (trade_no=%s, channel_id=%d): %s", trade_no, channel.id, e.msg)
        health_monitor.on_plugin_error(e.msg, channel, snapshot)
        raise
    except Exception as e:
        logger.exception("插件下单异常 (trade_no=%s, channel_id=%d)", trade_no, channel.id)
        health_monitor.on_plugin_error(str(e), channel, snapshot)
        raise PluginError("支付通道异常，请稍后重试") from e

    if result.is_error:
        logger.warning("插件返回错误 (trade_no=%s, channel_id=%d): %s", trade_no, channel.id, result.msg)
        health_monitor.on_plugin_error(result.msg, channel, snapshot)
        raise PluginError(result.msg or "支付通道返回错误")

    return DispatchResult(order=order, channel=channel, result=result)


def pay_info(result: PayResult) -> dict:
    """插件结果转为接口返回的 JSON 片段。"""
    info = {"type": result.type}
    if result.url:
        info["url"] = result.url
    if result.data:
        info["data"] = result.data
    if result.page:
        info["page"] = result.page
    return info


def legacy_pay_fields(result: PayResult) -> dict:
    """旧版 mapi 返回字段：payurl / qrcode / urlscheme。"""
    if result.type == "qrcode":
        return {"qrcode": result.url}
    if result.type == "scheme":
        return {"urlscheme": result.url}
    if result.url:
        return {"payurl": result.url}
    return {}
