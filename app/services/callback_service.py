"""
回调通知服务：向商户发送支付结果异步通知，构建 return_url。

核心功能：
- send_notify: POST 通知到商户 notify_url，商户返回 "success" 则标记成功
- build_return_url: 将通知参数以 GET 方式拼接到 return_url
- 每次通知记录到 notify_logs 表，并更新 notify_status / notify_count / notify_time

通知失败不回滚已支付、已结算的订单，只做记录，重发由外部处理。
"""

import logging
import os
from datetime import datetime
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import httpx

from app.database import get_db
from app.models.schemas import to_money
from app.services.sign import generate_sign

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", "10"))

NOTIFY_PENDING = 0
NOTIFY_OK = 1
NOTIFY_FAILED = 2


class CallbackService:
    """商户回调通知服务。"""

    def _get_order_with_merchant(self, order_id: int) -> dict | None:
        """获取订单及其商户信息。"""
        db = get_db()
        try:
            row = db.execute(
                """SELECT o.id, o.trade_no, o.out_trade_no, o.merchant_id,
                          o.pay_type, o.name, o.money, o.param, o.status,
                          o.notify_url, o.return_url, o.notify_count,
                          m.api_key AS merchant_key, m.pid AS pid
                   FROM orders o
                   JOIN merchants m ON o.merchant_id = m.id
                   WHERE o.id = ?""",
                (order_id,),
            ).fetchone()
            return dict(row) if row else None
        finally:
            db.close()

    def _build_notify_params(self, order: dict, mask_name: bool = False) -> dict:
        """构建回调通知参数（不含 sign）。"""
        return {
            "pid": order["pid"],
            "trade_no": order["trade_no"],
            "out_trade_no": order["out_trade_no"],
            "type": order["pay_type"],
            "name": "product" if mask_name else order["name"],
            "money": str(to_money(order["money"])),
            "trade_status": "TRADE_SUCCESS",
            "param": order["param"] or "",
            "sign_type": "MD5",
        }

    def _sign_params(self, params: dict, merchant_key: str) -> dict:
        """对参数进行签名，返回包含 sign 的完整参数字典。"""
        signed = dict(params)
        signed["sign"] = generate_sign(params, merchant_key or "")
        return signed

    def _log_notify(
        self,
        order_id: int,
        attempt: int,
        url: str,
        method: str = "POST",
        http_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        """记录通知日志到 notify_logs 表。"""
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                """INSERT INTO notify_logs
                   (order_id, attempt, url, method, http_status, response_body, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (order_id, attempt, url, method, http_status, (response_body or "")[:2000], now),
            )
            db.commit()
        finally:
            db.close()

    def _record_result(self, order_id: int, success: bool) -> int:
        """更新通知状态，notify_count 加 1，返回新的通知次数。"""
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                """UPDATE orders
                   SET notify_status = ?, notify_count = notify_count + 1, notify_time = ?
                   WHERE id = ?""",
                (NOTIFY_OK if success else NOTIFY_FAILED, now, order_id),
            )
            db.commit()
            row = db.execute("SELECT notify_count FROM orders WHERE id = ?", (order_id,)).fetchone()
            return row["notify_count"]
        finally:
            db.close()

    def send_notify(self, order_id: int, snapshot=None) -> bool:
        """
        向商户 notify_url 发送异步通知（POST）。

        构建通知参数（pid, trade_no, out_trade_no, type, name, money,
        trade_status, param, sign, sign_type）→ POST 到 notify_url →
        检查响应是否为 "success"。

        Args:
            order_id: 订单 ID。
            snapshot: ConfigSnapshot，notify_order_name = "1" 时隐藏商品名称。

        Returns:
            True 表示商户返回 "success"，通知成功。
        """
        order = self._get_order_with_merchant(order_id)
        if not order:
            logger.warning("回调通知失败：订单不存在 (order_id=%d)", order_id)
            return False

        notify_url = order.get("notify_url")
        if not notify_url:
            logger.info("订单无 notify_url，跳过回调 (order_id=%d)", order_id)
            return False

        mask_name = snapshot is not None and snapshot.get("notify_order_name") == "1"
        params = self._build_notify_params(order, mask_name=mask_name)
        signed_params = self._sign_params(params, order["merchant_key"])

        http_status = None
        response_body = None
        success = False

        try:
            with httpx.Client(timeout=NOTIFY_TIMEOUT) as client:
                resp = client.post(notify_url, data=signed_params)
                http_status = resp.status_code
                response_body = resp.text.strip()
                success = response_body.lower() == "success"
        except httpx.HTTPError as e:
            response_body = str(e)
            logger.warning(
                "回调通知请求异常 (order_id=%d, url=%s): %s",
                order_id, notify_url, e,
            )

        attempt = self._record_result(order_id, success)
        self._log_notify(order_id, attempt, notify_url, "POST", http_status, response_body)

        if success:
            logger.info("商户通知成功 (order_id=%d, attempt=%d)", order_id, attempt)
        else:
            logger.warning(
                "商户通知失败 (order_id=%d, attempt=%d, http_status=%s)",
                order_id, attempt, http_status,
            )
        return success

    def build_return_url(self, order_id: int) -> str:
        """
        构建 return_url 跳转链接，将通知参数以 GET 方式拼接到 return_url。

        Returns:
            拼接了通知参数的完整 return_url，若无 return_url 则返回空字符串。
        """
        order = self._get_order_with_merchant(order_id)
        if not order:
            return ""

        return_url = order.get("return_url")
        if not return_url:
            return ""

        params = self._build_notify_params(order)
        signed_params = self._sign_params(params, order["merchant_key"])

        parsed = urlparse(return_url)
        existing_params = parse_qs(parsed.query, keep_blank_values=True)
        flat_existing = {k: v[0] for k, v in existing_params.items()}
        # 通知参数覆盖同名的原有参数
        merged = {**flat_existing, **signed_params}
        return urlunparse(parsed._replace(query=urlencode(merged)))
