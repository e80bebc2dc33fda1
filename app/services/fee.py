"""
手续费解析：为 (商户, 支付类型) 确定费率并计算订单手续费。

费率优先级：商户分类型费率 > 商户统一费率 > 支付组费率 > 0。
"""

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from app.models.schemas import CENT, FEE_PAYER_BUYER, Merchant
from app.services.pay_types import get_pay_type

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def _to_decimal(raw) -> Decimal | None:
    if raw is None or raw == "":
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


def normalize_rate(raw) -> Decimal:
    """
    将费率统一为小数形式。

    >= 1 视为百分比（6 表示 6%），需要除以 100；< 1 视为已是小数。
    结果落在 [0, 1) 之外时记录日志并按 0 处理。
    """
    value = _to_decimal(raw)
    if value is None:
        return ZERO
    if value >= 1:
        value = value / HUNDRED
    if value < 0 or value >= 1:
        logger.warning("费率超出有效范围，按 0 处理: %s", raw)
        return ZERO
    return value


def _group_rate(group, pay_type: str) -> Decimal | None:
    """支付组配置中的费率恒为百分比。"""
    if group is None:
        return None
    info = get_pay_type(pay_type)
    if info is None:
        return None
    entry = group.type_config(info.id)
    if not entry:
        return None
    value = _to_decimal(entry.get("rate"))
    if value is None:
        return None
    rate = value / HUNDRED
    if rate < 0 or rate >= 1:
        logger.warning("支付组费率超出有效范围，按 0 处理 (group_id=%d): %s", group.id, entry.get("rate"))
        return ZERO
    return rate


def resolve_fee_rate(merchant: Merchant, pay_type: str, snapshot=None) -> Decimal:
    """
    解析商户在指定支付类型下的费率（小数，[0, 1)）。

    Args:
        merchant: 商户。
        pay_type: 支付类型编码（如 alipay）。
        snapshot: ConfigSnapshot，用于解析支付组；为空时跳过支付组。
    """
    rates = merchant.fee_rates
    if isinstance(rates, dict) and rates.get(pay_type) not in (None, ""):
        return normalize_rate(rates[pay_type])

    if merchant.fee_rate not in (None, ""):
        return normalize_rate(merchant.fee_rate)

    if snapshot is not None:
        group = snapshot.resolve_pay_group(merchant.pay_group_id)
        rate = _group_rate(group, pay_type)
        if rate is not None:
            return rate

    return ZERO


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_fee(money: Decimal, rate: Decimal, fee_payer: str) -> tuple[Decimal, Decimal]:
    """
    计算手续费和实际收款金额。

    Returns:
        (fee_money, real_money)；买家承担手续费时 real_money = money + fee_money。
    """
    money = round2(Decimal(money))
    fee_money = round2(money * rate)
    if fee_payer == FEE_PAYER_BUYER:
        return fee_money, round2(money + fee_money)
    return fee_money, money
