"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

CENT = Decimal("0.01")

# 订单状态
ORDER_PENDING = 0
ORDER_PAID = 1
ORDER_CLOSED = 2

# 可交易的商户状态
ACTIVE_MERCHANT_STATUSES = ("active", "approved")

FEE_PAYER_MERCHANT = "merchant"
FEE_PAYER_BUYER = "buyer"


def to_money(value) -> Decimal:
    """将数据库中的金额值转换为两位小数的 Decimal。"""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(CENT)
    except InvalidOperation:
        return Decimal("0.00")


def _load_json(raw, default):
    """解析 JSON 字段，解析失败返回默认值。"""
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


@dataclass
class Admin:
    id: int
    username: str
    password_hash: str
    login_fail_count: int = 0
    locked_until: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Merchant:
    id: int  # 即 user_id，orders.merchant_id 引用此值
    username: str
    email: str
    pid: Optional[str] = None  # 12 位对外商户号，激活时生成
    api_key: Optional[str] = None
    rsa_public_key: Optional[str] = None
    rsa_private_key: Optional[str] = None  # Fernet 密文
    status: str = "pending"
    fee_rate: Optional[str] = None
    fee_rates: Optional[dict] = None
    fee_payer: str = FEE_PAYER_MERCHANT
    pay_group_id: Optional[int] = None
    balance: Decimal = Decimal("0")
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_MERCHANT_STATUSES

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Merchant":
        return cls(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            pid=row["pid"],
            api_key=row["api_key"],
            rsa_public_key=row["rsa_public_key"],
            rsa_private_key=row["rsa_private_key"],
            status=row["status"],
            fee_rate=row["fee_rate"],
            fee_rates=_load_json(row["fee_rates"], None),
            fee_payer=row["fee_payer"] or FEE_PAYER_MERCHANT,
            pay_group_id=row["pay_group_id"],
            balance=to_money(row["balance"]),
            approved_at=row["approved_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Channel:
    id: int
    channel_name: str
    plugin_name: str
    pay_type: str  # 逗号分隔的支付类型集合
    min_amount: Decimal = Decimal("0")
    max_amount: Decimal = Decimal("0")
    status: int = 1
    priority: int = 0
    config: dict = field(default_factory=dict)
    is_deleted: int = 0
    created_at: Optional[datetime] = None

    @property
    def pay_types(self) -> list[str]:
        return [t.strip() for t in (self.pay_type or "").split(",") if t.strip()]

    def supports(self, pay_type: str) -> bool:
        return pay_type in self.pay_types

    @property
    def params(self) -> dict:
        """插件参数（appid、密钥、force_min_age 等）。"""
        params = self.config.get("params") if isinstance(self.config, dict) else None
        return params if isinstance(params, dict) else {}

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Channel":
        return cls(
            id=row["id"],
            channel_name=row["channel_name"],
            plugin_name=row["plugin_name"],
            pay_type=row["pay_type"],
            min_amount=to_money(row["min_amount"]),
            max_amount=to_money(row["max_amount"]),
            status=row["status"],
            priority=row["priority"],
            config=_load_json(row["config"], {}),
            is_deleted=row["is_deleted"],
            created_at=row["created_at"],
        )


@dataclass
class PayGroup:
    """支付组：pay_type_id(str) -> {channel_mode, group_id?, rate?}。"""
    id: int
    name: str
    config: dict = field(default_factory=dict)
    is_default: int = 0
    created_at: Optional[datetime] = None

    def type_config(self, pay_type_id: int) -> Optional[dict]:
        entry = self.config.get(str(pay_type_id))
        return entry if isinstance(entry, dict) else None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PayGroup":
        config = _load_json(row["config"], {})
        return cls(
            id=row["id"],
            name=row["name"],
            config=config if isinstance(config, dict) else {},
            is_default=row["is_default"],
            created_at=row["created_at"],
        )


@dataclass
class PollingEntry:
    channel_id: int
    weight: int = 1


@dataclass
class PollingGroup:
    id: int
    name: str
    entries: list[PollingEntry] = field(default_factory=list)
    mode: int = 0  # 0=顺序 1=加权随机 2=首个可用
    status: int = 1
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PollingGroup":
        raw = _load_json(row["channels"], [])
        entries = []
        for item in raw if isinstance(raw, list) else []:
            if not isinstance(item, dict) or item.get("id") is None:
                continue
            try:
                channel_id = int(item["id"])
                weight = int(item.get("weight") or 1)
            except (TypeError, ValueError):
                continue
            entries.append(PollingEntry(channel_id=channel_id, weight=weight or 1))
        return cls(
            id=row["id"],
            name=row["name"],
            entries=entries,
            mode=row["mode"],
            status=row["status"],
            created_at=row["created_at"],
        )


@dataclass
class CertInfo:
    """买家身份限制：身份证号、姓名、最低年龄。"""
    cert_no: Optional[str] = None
    cert_name: Optional[str] = None
    min_age: Optional[int] = None

    def to_json(self) -> str:
        return json.dumps(
            {"cert_no": self.cert_no, "cert_name": self.cert_name, "min_age": self.min_age},
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw) -> Optional["CertInfo"]:
        data = _load_json(raw, None)
        if not isinstance(data, dict):
            return None
        min_age = data.get("min_age")
        try:
            min_age = int(min_age) if min_age not in (None, "") else None
        except (TypeError, ValueError):
            min_age = None
        return cls(
            cert_no=data.get("cert_no") or None,
            cert_name=data.get("cert_name") or None,
            min_age=min_age,
        )


@dataclass
class Order:
    id: int
    trade_no: str
    out_trade_no: str
    merchant_id: int
    name: str
    money: Decimal
    real_money: Decimal
    fee_money: Decimal = Decimal("0")
    fee_payer: str = FEE_PAYER_MERCHANT
    pay_type: str = ""
    channel_id: Optional[int] = None
    plugin_name: Optional[str] = None
    api_trade_no: Optional[str] = None
    status: int = ORDER_PENDING
    notify_url: Optional[str] = None
    return_url: Optional[str] = None
    param: Optional[str] = None
    clientip: Optional[str] = None
    device: str = "pc"
    cert_info: Optional[CertInfo] = None
    buyer: Optional[str] = None
    balance_added: int = 0
    notify_status: int = 0
    notify_count: int = 0
    notify_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Order":
        return cls(
            id=row["id"],
            trade_no=row["trade_no"],
            out_trade_no=row["out_trade_no"],
            merchant_id=row["merchant_id"],
            name=row["name"],
            money=to_money(row["money"]),
            real_money=to_money(row["real_money"]),
            fee_money=to_money(row["fee_money"]),
            fee_payer=row["fee_payer"] or FEE_PAYER_MERCHANT,
            pay_type=row["pay_type"] or "",
            channel_id=row["channel_id"],
            plugin_name=row["plugin_name"],
            api_trade_no=row["api_trade_no"],
            status=row["status"],
            notify_url=row["notify_url"],
            return_url=row["return_url"],
            param=row["param"],
            clientip=row["clientip"],
            device=row["device"] or "pc",
            cert_info=CertInfo.from_json(row["cert_info"]),
            buyer=row["buyer"],
            balance_added=row["balance_added"],
            notify_status=row["notify_status"],
            notify_count=row["notify_count"],
            notify_time=row["notify_time"],
            created_at=row["created_at"],
            paid_at=row["paid_at"],
        )


@dataclass
class NotifyLog:
    id: int
    order_id: int
    attempt: int
    url: str
    method: str = "POST"
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    created_at: Optional[datetime] = None
