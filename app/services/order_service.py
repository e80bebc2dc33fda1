"""
订单服务模块：创建或复用订单、锁定通道、订单状态校验。

同一商户的同一 out_trade_no 同时最多存在一笔待支付订单（部分唯一索引保证），
重复提交复用该订单。通道一旦写入订单即视为锁定，之后不可更改。
"""

import logging
import random
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from app.database import get_db
from app.models.schemas import ORDER_PENDING, CertInfo, Channel, Merchant, Order
from app.services.fee import compute_fee

logger = logging.getLogger(__name__)


class OrderCreateError(Exception):
    """订单创建失败通用异常。"""

    def __init__(self, msg: str, code: int = 9999):
        super().__init__(msg)
        self.msg = msg
        self.code = code


class OrderStateError(Exception):
    """订单不存在、状态不是待支付，或锁定的通道已失效。"""

    def __init__(self, msg: str = "订单状态异常", code: int = 1009):
        super().__init__(msg)
        self.msg = msg
        self.code = code


@dataclass
class CreateResult:
    order: Order
    is_existing: bool

    @property
    def trade_no(self) -> str:
        return self.order.trade_no


class OrderService:
    """订单服务：创建/复用、锁定通道、查询。"""

    def generate_trade_no(self) -> str:
        """
        生成唯一平台订单号：YYYYMMDDHHMMSS + 6 位随机数字。
        """
        db = get_db()
        try:
            for _ in range(10):
                ts = datetime.now().strftime("%Y%m%d%H%M%S")
                trade_no = ts + f"{random.randint(0, 999999):06d}"
                row = db.execute(
                    "SELECT 1 FROM orders WHERE trade_no = ?", (trade_no,)
                ).fetchone()
                if not row:
                    return trade_no
            raise OrderCreateError("无法生成唯一订单号，请重试")
        finally:
            db.close()

    # ── 查询 ──────────────────────────────────────────────

    def get_order(self, trade_no: str) -> Order | None:
        db = get_db()
        try:
            row = db.execute("SELECT * FROM orders WHERE trade_no = ?", (trade_no,)).fetchone()
            return Order.from_row(row) if row else None
        finally:
            db.close()

    def get_order_by_id(self, order_id: int) -> Order | None:
        db = get_db()
        try:
            row = db.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
            return Order.from_row(row) if row else None
        finally:
            db.close()

    def find_merchant_order(
        self, merchant_id: int, trade_no: str | None = None, out_trade_no: str | None = None
    ) -> Order | None:
        """按平台订单号或商户订单号查询商户自己的订单（后者取最新一笔）。"""
        db = get_db()
        try:
            if trade_no:
                row = db.execute(
                    "SELECT * FROM orders WHERE merchant_id = ? AND trade_no = ?",
                    (merchant_id, trade_no),
                ).fetchone()
            elif out_trade_no:
                row = db.execute(
                    """SELECT * FROM orders WHERE merchant_id = ? AND out_trade_no = ?
                       ORDER BY id DESC LIMIT 1""",
                    (merchant_id, out_trade_no),
                ).fetchone()
            else:
                return None
            return Order.from_row(row) if row else None
        finally:
            db.close()

    def require_pending(self, trade_no: str) -> Order:
        """
        重新读取订单并确认仍为待支付。

        Raises:
            OrderStateError: 订单不存在或状态异常。
        """
        order = self.get_order(trade_no)
        if order is None:
            raise OrderStateError("订单不存在")
        if order.status != ORDER_PENDING:
            raise OrderStateError("订单状态异常")
        return order

    # ── 创建 / 复用 ────────────────────────────────────────

    def create_or_reuse_order(
        self,
        merchant: Merchant,
        out_trade_no: str,
        pay_type: str,
        name: str,
        money: Decimal,
        fee_rate: Decimal,
        channel: Channel | None = None,
        notify_url: str | None = None,
        return_url: str | None = None,
        param: str | None = None,
        clientip: str | None = None,
        device: str = "pc",
        cert_info: CertInfo | None = None,
    ) -> CreateResult:
        """
        创建订单，或复用同一 (merchant_id, out_trade_no) 的待支付订单。

        复用时更新回调地址、身份限制信息；订单尚未锁定通道时
        同时更新通道、支付类型和手续费。订单金额保持首次提交的值。
        """
        cert_json = cert_info.to_json() if cert_info else None
        fee_payer = merchant.fee_payer

        for _ in range(3):
            existing = self._find_pending(merchant.id, out_trade_no)
            if existing is not None:
                reused = self._refresh_pending(
                    existing, pay_type, fee_rate, fee_payer, channel,
                    notify_url, return_url, param, clientip, device, cert_json,
                )
                if reused is not None:
                    logger.info(
                        "复用已存在订单 (trade_no=%s, out_trade_no=%s)",
                        reused.trade_no, out_trade_no,
                    )
                    return CreateResult(order=reused, is_existing=True)
                # 刚被支付或关闭，按新订单处理
                continue

            fee_money, real_money = compute_fee(money, fee_rate, fee_payer)
            trade_no = self.generate_trade_no()
            db = get_db()
            try:
                cursor = db.execute(
                    """INSERT INTO orders
                       (trade_no, out_trade_no, merchant_id, channel_id, plugin_name,
                        pay_type, name, money, fee_money, real_money, fee_payer,
                        status, notify_url, return_url, param, clientip, device,
                        cert_info, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        trade_no, out_trade_no, merchant.id,
                        channel.id if channel else None,
                        channel.plugin_name if channel else None,
                        pay_type, name, str(money), str(fee_money), str(real_money),
                        fee_payer, notify_url, return_url, param, clientip,
                        device or "pc", cert_json,
                        datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
                    ),
                )
                db.commit()
                order_id = cursor.lastrowid
            except sqlite3.IntegrityError:
                # 并发提交已插入同一待支付订单，重新读取后复用
                db.rollback()
                logger.info("并发创建订单冲突，改为复用 (out_trade_no=%s)", out_trade_no)
                continue
            finally:
                db.close()

            order = self.get_order_by_id(order_id)
            logger.info(
                "订单已创建 (trade_no=%s, merchant_id=%d, money=%s, fee=%s, real=%s)",
                trade_no, merchant.id, money, fee_money, real_money,
            )
            return CreateResult(order=order, is_existing=False)

        raise OrderCreateError("订单创建冲突，请重试")

    def _find_pending(self, merchant_id: int, out_trade_no: str) -> Order | None:
        db = get_db()
        try:
            row = db.execute(
                """SELECT * FROM orders
                   WHERE merchant_id = ? AND out_trade_no = ? AND status = 0
                   ORDER BY id DESC LIMIT 1""",
                (merchant_id, out_trade_no),
            ).fetchone()
            return Order.from_row(row) if row else None
        finally:
            db.close()

    def _refresh_pending(
        self, order: Order, pay_type, fee_rate, fee_payer, channel,
        notify_url, return_url, param, clientip, device, cert_json,
    ) -> Order | None:
        """更新待支付订单；订单已不是待支付时返回 None。"""
        db = get_db()
        try:
            if order.channel_id is not None:
                cursor = db.execute(
                    """UPDATE orders
                       SET notify_url = ?, return_url = ?, param = ?, cert_info = ?
                       WHERE id = ? AND status = 0""",
                    (notify_url, return_url, param, cert_json, order.id),
                )
            else:
                fee_money, real_money = compute_fee(order.money, fee_rate, fee_payer)
                cursor = db.execute(
                    """UPDATE orders
                       SET channel_id = ?, plugin_name = ?, pay_type = ?,
                           notify_url = ?, return_url = ?, param = ?,
                           fee_money = ?, real_money = ?, fee_payer = ?,
                           clientip = ?, device = ?, cert_info = ?
                       WHERE id = ? AND status = 0 AND channel_id IS NULL""",
                    (
                        channel.id if channel else None,
                        channel.plugin_name if channel else None,
                        pay_type, notify_url, return_url, param,
                        str(fee_money), str(real_money), fee_payer,
                        clientip, device or "pc", cert_json, order.id,
                    ),
                )
            db.commit()
            if cursor.rowcount == 0:
                row = db.execute("SELECT * FROM orders WHERE id = ?", (order.id,)).fetchone()
                current = Order.from_row(row)
                if current.status != ORDER_PENDING:
                    return None
                # 并发锁定了通道，只刷新回调信息
                return self._refresh_pending(
                    current, pay_type, fee_rate, fee_payer, channel,
                    notify_url, return_url, param, clientip, device, cert_json,
                )
            row = db.execute("SELECT * FROM orders WHERE id = ?", (order.id,)).fetchone()
            return Order.from_row(row)
        finally:
            db.close()

    # ── 收银台 ─────────────────────────────────────────────

    def select_pay_type(self, trade_no: str, pay_type: str) -> Order:
        """收银台选择支付类型：只修改未锁定订单的 pay_type。"""
        order = self.require_pending(trade_no)
        if order.channel_id is not None:
            raise OrderStateError("订单已锁定支付通道，不能更换支付方式")
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE orders SET pay_type = ? WHERE id = ? AND status = 0 AND channel_id IS NULL",
                (pay_type, order.id),
            )
            db.commit()
        finally:
            db.close()
        if cursor.rowcount == 0:
            raise OrderStateError("订单状态异常")
        order.pay_type = pay_type
        return order

    def lock_channel(
        self,
        order: Order,
        channel: Channel,
        pay_type: str,
        fee_rate: Decimal,
        fee_payer: str,
    ) -> tuple[Order, bool]:
        """
        首次发起支付时把通道写入订单并重算手续费。

        Returns:
            (订单, 是否由本次调用锁定)。订单已被并发锁定时返回已锁定的订单。

        Raises:
            OrderStateError: 订单已不是待支付。
        """
        fee_money, real_money = compute_fee(order.money, fee_rate, fee_payer)
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE orders
                   SET channel_id = ?, plugin_name = ?, pay_type = ?,
                       fee_money = ?, real_money = ?, fee_payer = ?
                   WHERE id = ? AND status = 0 AND channel_id IS NULL""",
                (
                    channel.id, channel.plugin_name, pay_type,
                    str(fee_money), str(real_money), fee_payer, order.id,
                ),
            )
            db.commit()
            row = db.execute("SELECT * FROM orders WHERE id = ?", (order.id,)).fetchone()
        finally:
            db.close()

        current = Order.from_row(row)
        if current.status != ORDER_PENDING:
            raise OrderStateError("订单状态异常")
        locked = cursor.rowcount == 1
        if locked:
            logger.info(
                "订单锁定通道 (trade_no=%s, channel_id=%d, pay_type=%s, fee=%s)",
                current.trade_no, channel.id, pay_type, fee_money,
            )
        return current, locked
