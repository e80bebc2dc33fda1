"""
支付宝插件：使用 RSA2 签名调用支付宝开放平台接口。

通道参数（channel.config.params）：
- app_id: 支付宝应用 ID
- private_key: 应用私钥（PEM 格式或裸 Base64）
- alipay_public_key: 支付宝公钥（PEM 格式或裸 Base64）
- gateway: 可选，默认正式环境网关
"""

import base64
import binascii
import json
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from urllib.parse import urlencode

import httpx
from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

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

logger = logging.getLogger(__name__)

ALIPAY_GATEWAY = "https://openapi.alipay.com/gateway.do"

PAID_STATUSES = ("TRADE_SUCCESS", "TRADE_FINISHED")


def _load_key(key_str: str, kind: str) -> RSA.RsaKey:
    """加载 RSA 密钥，支持 PEM 格式和裸 Base64。kind 为 PRIVATE 或 PUBLIC。"""
    key_str = (key_str or "").strip()
    if not key_str:
        raise PluginError(f"支付宝通道缺少{'应用私钥' if kind == 'PRIVATE' else '支付宝公钥'}")
    if not key_str.startswith("-----"):
        key_str = f"-----BEGIN {kind} KEY-----\n{key_str}\n-----END {kind} KEY-----"
    try:
        return RSA.import_key(key_str)
    except (ValueError, IndexError) as e:
        raise PluginError(f"无法加载支付宝密钥: {e}")


def _sign_content(params: dict, exclude: tuple) -> str:
    filtered = {
        k: v for k, v in params.items()
        if v is not None and v != "" and k not in exclude
    }
    return "&".join(f"{k}={filtered[k]}" for k in sorted(filtered))


class AlipayPlugin(PaymentPlugin):
    """支付宝开放平台，RSA2 (SHA256withRSA) 签名。"""

    name = "alipay"
    title = "支付宝官方支付"
    capabilities = frozenset({CAP_SUBMIT, CAP_QRCODE})

    def _sign(self, params: dict, private_key: str) -> str:
        """请求签名：排除 sign，保留 sign_type。"""
        key = _load_key(private_key, "PRIVATE")
        h = SHA256.new(_sign_content(params, ("sign",)).encode("utf-8"))
        signature = pkcs1_15.new(key).sign(h)
        return base64.b64encode(signature).decode("utf-8")

    def _verify(self, params: dict, public_key: str) -> bool:
        """异步通知验签：排除 sign 和 sign_type。"""
        sign = params.get("sign")
        if not sign:
            return False
        key = _load_key(public_key, "PUBLIC")
        h = SHA256.new(_sign_content(params, ("sign", "sign_type")).encode("utf-8"))
        try:
            pkcs1_15.new(key).verify(h, base64.b64decode(sign))
            return True
        except (ValueError, TypeError, binascii.Error):
            return False

    def _build_request(self, config: dict, method: str, order: OrderInfo, biz: dict) -> dict:
        """构建带签名的支付宝 API 请求参数。"""
        if not config.get("app_id"):
            raise PluginError("支付宝通道未配置 app_id")
        params = {
            "app_id": config["app_id"],
            "method": method,
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            "version": "1.0",
            "notify_url": order.notify_url,
            "biz_content": json.dumps(biz, separators=(",", ":"), ensure_ascii=False),
        }
        if method != "alipay.trade.precreate":
            params["return_url"] = order.return_url
        params["sign"] = self._sign(params, config.get("private_key", ""))
        return params

    @staticmethod
    def _biz_content(order: OrderInfo, product_code: str | None) -> dict:
        biz = {
            "out_trade_no": order.trade_no,
            "total_amount": order.money,
            "subject": order.name,
        }
        if product_code:
            biz["product_code"] = product_code
        if order.cert_no:
            # 实名限制：仅允许指定身份证号的买家付款
            biz["ext_user_info"] = {
                "cert_type": "IDENTITY_CARD",
                "cert_no": order.cert_no,
                **({"name": order.cert_name} if order.cert_name else {}),
                **({"min_age": str(order.min_age)} if order.min_age is not None else {}),
            }
        return biz

    def submit(self, config: dict, order: OrderInfo) -> PayResult:
        """电脑网站 / 手机网站支付：返回网关跳转链接。"""
        if order.device == "mobile":
            method, product_code = "alipay.trade.wap.pay", "QUICK_WAP_WAY"
        else:
            method, product_code = "alipay.trade.page.pay", "FAST_INSTANT_TRADE_PAY"
        params = self._build_request(config, method, order, self._biz_content(order, product_code))
        gateway = config.get("gateway") or ALIPAY_GATEWAY
        return PayResult(type="jump", url=f"{gateway}?{urlencode(params)}")

    def qrcode(self, config: dict, order: OrderInfo) -> PayResult:
        """当面付预下单：调用 alipay.trade.precreate 获取二维码。"""
        method = "alipay.trade.precreate"
        params = self._build_request(config, method, order, self._biz_content(order, None))
        gateway = config.get("gateway") or ALIPAY_GATEWAY

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(gateway, data=params)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise PluginError(f"请求支付宝接口失败: {e}")

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise PluginError(f"解析支付宝响应失败: {e}")

        response_key = method.replace(".", "_") + "_response"
        result = data.get(response_key)
        if not result:
            raise PluginError(f"支付宝响应缺少 {response_key} 字段")

        code = result.get("code")
        if code != "10000":
            sub_msg = result.get("sub_msg", result.get("msg", "未知错误"))
            return PayResult(type="error", msg=f"[{code}] {sub_msg}")
        return PayResult(type="qrcode", url=result.get("qr_code"))

    def notify(self, config: dict, params: dict, order: Order) -> CallbackResult:
        """校验支付宝异步通知：验签、交易状态、订单号与金额。"""
        try:
            verified = self._verify(params, config.get("alipay_public_key", ""))
        except PluginError as e:
            return CallbackResult(success=False, msg=e.msg)
        if not verified:
            return CallbackResult(success=False, msg="支付宝回调验签失败")

        if params.get("out_trade_no") != order.trade_no:
            return CallbackResult(success=False, msg="订单号不匹配")
        if config.get("app_id") and params.get("app_id") not in (None, config["app_id"]):
            return CallbackResult(success=False, msg="app_id 不匹配")
        if params.get("trade_status") not in PAID_STATUSES:
            return CallbackResult(success=False, msg=f"交易状态: {params.get('trade_status')}")

        try:
            paid = Decimal(str(params.get("total_amount"))).quantize(Decimal("0.01"))
        except InvalidOperation:
            return CallbackResult(success=False, msg="金额格式无效")
        if paid != order.real_money:
            return CallbackResult(success=False, msg="金额不匹配")

        return CallbackResult(
            success=True,
            api_trade_no=params.get("trade_no"),
            buyer=params.get("buyer_id") or params.get("buyer_logon_id"),
        )

    def return_callback(self, config: dict, params: dict, order: Order) -> CallbackResult:
        """同步跳转不带 trade_status，验签通过即视为支付完成。"""
        try:
            verified = self._verify(params, config.get("alipay_public_key", ""))
        except PluginError as e:
            return CallbackResult(success=False, msg=e.msg)
        if not verified or params.get("out_trade_no") != order.trade_no:
            return CallbackResult(success=False, msg="支付宝同步回调验签失败")
        try:
            paid = Decimal(str(params.get("total_amount"))).quantize(Decimal("0.01"))
        except InvalidOperation:
            return CallbackResult(success=False, msg="金额格式无效")
        if paid != order.real_money:
            return CallbackResult(success=False, msg="金额不匹配")
        return CallbackResult(success=True, api_trade_no=params.get("trade_no"))
