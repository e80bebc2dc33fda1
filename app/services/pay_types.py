"""支付类型目录：类型编码与支付组配置中数字 ID 的对应关系。"""

from dataclasses import dataclass


@dataclass(frozen=True)
class PayType:
    id: int
    name: str
    showname: str
    sort: int


PAY_TYPES = (
    PayType(1, "alipay", "支付宝", 1),
    PayType(2, "wxpay", "微信支付", 2),
    PayType(3, "qqpay", "QQ钱包", 3),
    PayType(4, "bank", "网银支付", 4),
    PayType(5, "jdpay", "京东支付", 5),
    PayType(6, "paypal", "PayPal", 6),
    PayType(7, "ecny", "数字人民币", 7),
)

_BY_NAME = {pt.name: pt for pt in PAY_TYPES}
_BY_ID = {pt.id: pt for pt in PAY_TYPES}


def get_pay_type(name: str | None) -> PayType | None:
    return _BY_NAME.get((name or "").strip())


def get_pay_type_by_id(pay_type_id) -> PayType | None:
    try:
        return _BY_ID.get(int(pay_type_id))
    except (TypeError, ValueError):
        return None


def all_pay_types() -> list[PayType]:
    return sorted(PAY_TYPES, key=lambda pt: pt.sort)
