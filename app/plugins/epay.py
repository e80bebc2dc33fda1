"""
易支付兼容插件：对接上游 epay 协议网关（MD5 签名）。

通道参数（channel.config.params）：
- apiurl: 上游网关地址，如 https://pay.example.com/
- pid: 上游商户号
- key: 上游商户密钥
"""

import logging
from decimal import Decimal, InvalidOperation
from urllib.parse import urlencode

import httpx

from app.models.schemas import Order
from app.plugins.base import (
    CAP_QRCODE,
    CAP_SUBMIT,
    CallbackResult,
    OrderInfo,
    PayResult,
    PaymentPlugin,
    PluginError,
)
from app.services.sign import generate_sign, verify_sign

logger = logging.getLogger(__name__)


class EpayPlugin(PaymentPlugin):
    name = "epay"
    title = "彩虹易支付"
    capabilities = frozenset({CAP_SUBMIT, CAP_QRCODE})

    @staticmethod
    def _api_url(config: dict) -> str:
        url = (config.get("apiurl") or "").strip()
        if not url:
            raise PluginError("易支付通道未配置 apiurl")
        return url if url.endswith("/") else url + "/"

    @staticmethod
    def _signed_params(config: dict, order: OrderInfo, **extra) -> dict:
        if not config.get("pid") or not config.get("key"):
            raise PluginError("易支付通道未配置 pid 或 key")
        params = {
            "pid": config["pid"],
            "type": order.pay_type,
            "out_trade_no": order.trade_no,
            "notify_url": order.notify_url,
            "return_url": order.return_url,
            "name": order.name,
            "money": order.money,
            **extra,
        }
        params["sign"] = generate_sign(params, config["key"])
        params["sign_type"] = "MD5"
        return params

    def submit(self, config: dict, order: OrderInfo) -> PayResult:
        params = self._signed_params(config, order)
        return PayResult(type="jump", url=f"{self._api_url(config)}submit.php?{urlencode(params)}")

    def qrcode(self, config: dict, order: OrderInfo) -> PayResult:
        """调用上游 mapi.php 接口获取支付链接或二维码。"""
        params = self._signed_params(
            config, order, clientip=order.clientip, device=order.device
        )

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(f"{self._api_url(config)}mapi.php", data=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise PluginError(f"请求易支付接口失败: {e}")
        except ValueError as e:
            raise PluginError(f"解析易支付响应失败: {e}")

        if str(data.get("code")) != "1":
            return PayResult(type="error", msg=data.get("msg") or "上游下单失败")
        if data.get("qrcode"):
            return PayResult(type="qrcode", url=data["qrcode"])
        if data.get("urlscheme"):
            return PayResult(type="scheme", url=data["urlscheme"])
        if data.get("payurl"):
            return PayResult(type="jump", url=data["payurl"])
        return PayResult(type="error", msg="上游未返回支付链接")

    def notify(self, config: dict, params: dict, order: Order) -> CallbackResult:
        """校验上游 MD5 签名、交易状态、订单号与金额。"""
        if not verify_sign(params, config.get("key") or "", params.get("sign") or ""):
            return CallbackResult(success=False, msg="易支付回调验签失败")
        if params.get("out_trade_no") != order.trade_no:
            return CallbackResult(success=False, msg="订单号不匹配")
        if params.get("trade_status") != "TRADE_SUCCESS":
            return CallbackResult(success=False, msg=f"交易状态: {params.get('trade_status')}")
        try:
            paid = Decimal(str(params.get("money"))).quantize(Decimal("0.01"))
        except InvalidOperation:
            return CallbackResult(success=False, msg="金额格式无效")
        if paid != order.real_money:
            return CallbackResult(success=False, msg="金额不匹配")
        return CallbackResult(
            success=True,
            api_trade_no=params.get("trade_no"),
            buyer=params.get("buyer") or None,
        )
