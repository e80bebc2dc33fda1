"""
支付插件接口：每种上游通道实现一个 PaymentPlugin，按名称注册。

插件只负责与上游交互（发起支付、校验回调），不读写数据库。
"""

import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Optional

from app.models.schemas import Channel, Order

PLUGIN_TIMEOUT = float(os.getenv("PLUGIN_TIMEOUT", "10"))

# 插件能力
CAP_SUBMIT = "submit"
CAP_QRCODE = "qrcode"
CAP_JSAPI = "jsapi"
CAP_APP = "app"

# PayResult.type 取值
RESULT_TYPES = ("jump", "qrcode", "html", "scheme", "page", "app", "error")


class PluginError(Exception):
    """插件不存在、不支持该能力、上游拒绝或请求超时。"""

    def __init__(self, msg: str, code: int = 1005):
        super().__init__(msg)
        self.msg = msg
        self.code = code


@dataclass
class OrderInfo:
    """传递给插件的订单信息。money 为实际收款金额。"""
    trade_no: str
    out_trade_no: str
    money: str
    name: str
    pay_type: str
    notify_url: str
    return_url: str
    clientip: str = "127.0.0.1"
    device: str = "pc"
    cert_no: Optional[str] = None
    cert_name: Optional[str] = None
    min_age: Optional[int] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class PayResult:
    type: str
    url: Optional[str] = None
    data: Optional[dict] = None
    msg: Optional[str] = None
    page: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.type == "error"


@dataclass
class CallbackResult:
    success: bool
    api_trade_no: Optional[str] = None
    buyer: Optional[str] = None
    msg: Optional[str] = None


def plugin_config(channel: Channel) -> dict:
    """通道配置中的插件参数，附带通道 ID 与名称。"""
    config = dict(channel.params)
    config.setdefault("id", channel.id)
    config.setdefault("name", channel.channel_name)
    return config


class PaymentPlugin(ABC):
    """支付插件基类。"""

    name: str = ""
    title: str = ""
    capabilities: frozenset = frozenset({CAP_SUBMIT})
    timeout: float = PLUGIN_TIMEOUT

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    @abstractmethod
    def submit(self, config: dict, order: OrderInfo) -> PayResult:
        """发起支付，通常返回跳转链接。"""

    def qrcode(self, config: dict, order: OrderInfo) -> PayResult:
        raise PluginError(f"插件 {self.name} 不支持扫码支付")

    def jsapi(self, config: dict, order: OrderInfo) -> PayResult:
        raise PluginError(f"插件 {self.name} 不支持 JSAPI 支付")

    def app(self, config: dict, order: OrderInfo) -> PayResult:
        raise PluginError(f"插件 {self.name} 不支持 APP 支付")

    def pay(self, method: str, config: dict, order: OrderInfo) -> PayResult:
        """按支付方式调用对应能力；不支持的方式回退到 submit。"""
        if method != CAP_SUBMIT and self.supports(method):
            return getattr(self, method)(config, order)
        return self.submit(config, order)

    @abstractmethod
    def notify(self, config: dict, params: dict, order: Order) -> CallbackResult:
        """校验上游异步通知。"""

    def return_callback(self, config: dict, params: dict, order: Order) -> CallbackResult:
        """校验浏览器同步跳转参数，默认与异步通知相同。"""
        return self.notify(config, params, order)

    def notify_response(self, success: bool) -> str:
        """返回给上游的应答字符串。"""
        return "success" if success else "fail"
