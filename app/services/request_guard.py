"""
下单请求参数校验：必填参数、金额、买家身份限制、回调域名白名单。
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from urllib.parse import urlparse

from app.database import get_db
from app.models.schemas import CENT, CertInfo

logger = logging.getLogger(__name__)

SUBMIT_REQUIRED = ("pid", "type", "out_trade_no", "notify_url", "name", "money", "sign")

_ID_CARD_RE = re.compile(
    r"^[1-9]\d{5}(19|20)\d{2}(0[1-9]|1[0-2])(0[1-9]|[12]\d|3[01])\d{3}[\dXx]$"
)
_ID_WEIGHTS = (7, 9, 10, 5, 8, 4, 2, 1, 6, 3, 7, 9, 10, 5, 8, 4, 2)
_ID_CHECK_CODES = "10X98765432"

MAX_MONEY = Decimal("1000000")


class ParamError(Exception):
    """请求参数缺失或格式错误。"""

    def __init__(self, msg: str, code: int = 1001):
        super().__init__(msg)
        self.msg = msg
        self.code = code


def require_params(params: dict, names=SUBMIT_REQUIRED) -> None:
    missing = [n for n in names if not str(params.get(n) or "").strip()]
    if missing:
        raise ParamError(f"缺少必要参数: {', '.join(missing)}")


def parse_money(raw) -> Decimal:
    """解析订单金额，必须为大于 0 的数字，保留两位小数。"""
    try:
        money = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ParamError("金额格式无效")
    if not money.is_finite() or money <= 0:
        raise ParamError("金额必须大于 0")
    if money > MAX_MONEY:
        raise ParamError("金额超出上限")
    return money.quantize(CENT)


def is_valid_id_card(cert_no: str | None) -> bool:
    """18 位身份证号：格式 + ISO 7064 MOD 11-2 校验码。"""
    if not cert_no or not _ID_CARD_RE.match(cert_no):
        return False
    total = sum(int(cert_no[i]) * _ID_WEIGHTS[i] for i in range(17))
    return cert_no[17].upper() == _ID_CHECK_CODES[total % 11]


def build_cert_info(params: dict) -> CertInfo | None:
    """
    解析买家身份限制参数 cert_no / cert_name / min_age。

    Returns:
        CertInfo，全部为空时返回 None。

    Raises:
        ParamError: code 1008，身份证号或最低年龄格式不正确。
    """
    cert_no = str(params.get("cert_no") or "").strip()
    cert_name = str(params.get("cert_name") or "").strip()
    raw_age = params.get("min_age")
    raw_age = "" if raw_age is None else str(raw_age).strip()

    if cert_no and not is_valid_id_card(cert_no):
        raise ParamError("身份证号码格式不正确", code=1008)

    min_age = None
    if raw_age != "":
        if not raw_age.isdigit():
            raise ParamError("最低年龄格式不正确", code=1008)
        min_age = int(raw_age)

    if not cert_no and not cert_name and min_age is None:
        return None
    return CertInfo(cert_no=cert_no or None, cert_name=cert_name or None, min_age=min_age)


def domain_matches(host: str, approved: str) -> bool:
    """精确匹配，或 *.example.com 泛域名匹配子域名。"""
    approved = approved.strip().lower()
    if host == approved:
        return True
    if approved.startswith("*."):
        return host.endswith("." + approved[2:])
    return False


def validate_callback_domain(merchant_id: int, notify_url: str, snapshot) -> None:
    """
    校验 notify_url 的域名是否在商户已审核的白名单中。

    仅在 domain_whitelist_enabled 为 1/true 时生效。

    Raises:
        ParamError: code 1005，地址格式无效或域名不在白名单。
    """
    try:
        host = (urlparse(notify_url).hostname or "").lower()
    except ValueError:
        host = ""
    if not host:
        raise ParamError("回调地址格式无效", code=1005)

    if not snapshot.flag("domain_whitelist_enabled"):
        return

    db = get_db()
    try:
        rows = db.execute(
            "SELECT domain FROM merchant_domains WHERE merchant_id = ? AND status = 'approved'",
            (merchant_id,),
        ).fetchall()
    finally:
        db.close()

    if not rows:
        raise ParamError("商户未配置已审核的回调域名，请先添加域名白名单", code=1005)
    if not any(domain_matches(host, r["domain"]) for r in rows):
        logger.info("回调域名不在白名单 (merchant_id=%d, host=%s)", merchant_id, host)
        raise ParamError(f"回调域名 {host} 不在白名单中", code=1005)
