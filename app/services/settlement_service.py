"""
回调结算流水线：上游异步通知 / 浏览器同步跳转 → 插件验签 → 标记已支付 → 入账 → 通知商户。

状态变更（status 0→1）与余额入账（balance_added）是两个独立的幂等标记，
在同一个 BEGIN IMMEDIATE 事务中以两条带条件的语句完成：
SQLite 的写锁在读取 balance_added 之前取得，其它写入方阻塞等待提交或回滚。
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from app.database import get_db
from app.models.schemas import ORDER_PAID, Order, to_money
from app.plugins.base import CallbackResult, PluginError, plugin_config
from app.plugins.registry import get_plugin
from app.services import channel_service, health_monitor
from app.services.callback_service import CallbackService
from app.services.order_service import OrderService

logger = logging.getLogger(__name__)

TRANSPORT_NOTIFY = "notify"
TRANSPORT_RETURN = "return"

FAIL_ACK = "fail"


class SettlementError(Exception):
    """结算事务失败，已整体回滚。"""
    pass


@dataclass
class SettleOutcome:
    transitioned: bool
    credited: Decimal | None = None


@dataclass
class CallbackOutcome:
    success: bool
    ack: str
    order: Order | None = None
    transitioned: bool = False
    credited: Decimal | None = None
    msg: str | None = None


def settle(order_id: int, result: CallbackResult) -> SettleOutcome:
    """
    在一个事务内完成：待支付订单标记为已支付；已支付且未入账的订单入账。

    两步各自带条件，重复或并发调用只有一次生效。

    Raises:
        SettlementError: 任一步失败，事务已回滚。
    """
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute("BEGIN IMMEDIATE")
        cursor = db.execute(
            """UPDATE orders
               SET status = 1, paid_at = ?,
                   api_trade_no = COALESCE(?, api_trade_no),
                   buyer = COALESCE(?, buyer)
               WHERE id = ? AND status = 0""",
            (now, result.api_trade_no, result.buyer, order_id),
        )
        transitioned = cursor.rowcount == 1

        row = db.execute(
            "SELECT status, balance_added, money, fee_money, merchant_id FROM orders WHERE id = ?",
            (order_id,),
        ).fetchone()

        credited = None
        if row and row["status"] == ORDER_PAID and not row["balance_added"]:
            amount = to_money(row["money"]) - to_money(row["fee_money"])
            merchant = db.execute(
                "SELECT balance FROM merchants WHERE id = ?", (row["merchant_id"],)
            ).fetchone()
            if merchant is None:
                raise SettlementError(f"商户 {row['merchant_id']} 不存在")
            new_balance = to_money(merchant["balance"]) + amount
            db.execute(
                "UPDATE merchants SET balance = ?, updated_at = ? WHERE id = ?",
                (str(new_balance), now, row["merchant_id"]),
            )
            db.execute(
                "UPDATE orders SET balance_added = 1 WHERE id = ? AND balance_added = 0",
                (order_id,),
            )
            credited = amount
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("结算事务失败，已回滚 (order_id=%d)", order_id)
        if isinstance(e, SettlementError):
            raise
        raise SettlementError(str(e)) from e
    finally:
        db.close()

    if transitioned:
        logger.info("订单已标记为已支付 (order_id=%d)", order_id)
    if credited is not None:
        logger.info("商户余额已入账 (merchant_id=%d, amount=%s)", row["merchant_id"], credited)
    elif row and row["balance_added"]:
        logger.info("订单已入账，跳过 (order_id=%d)", order_id)
    return SettleOutcome(transitioned=transitioned, credited=credited)


def handle_callback(trade_no: str, params: dict, transport: str, snapshot) -> CallbackOutcome:
    """
    处理上游回调（异步通知或同步跳转）。

    订单、通道、插件缺失时按失败处理；验签失败不修改任何状态，也不触发通道健康监控。
    只有完成 0→1 状态变更的那次回调会通知商户。
    """
    order = OrderService().get_order(trade_no)
    if order is None:
        logger.warning("回调订单不存在 (trade_no=%s)", trade_no)
        return CallbackOutcome(success=False, ack=FAIL_ACK, msg="订单不存在")
    if order.channel_id is None:
        logger.warning("回调订单未锁定通道 (trade_no=%s)", trade_no)
        return CallbackOutcome(success=False, ack=FAIL_ACK, order=order, msg="订单无支付通道")

    channel = channel_service.get_channel(order.channel_id, include_deleted=True)
    if channel is None:
        logger.warning("回调通道不存在 (trade_no=%s, channel_id=%d)", trade_no, order.channel_id)
        return CallbackOutcome(success=False, ack=FAIL_ACK, order=order, msg="支付通道不存在")

    try:
        plugin = get_plugin(channel.plugin_name or order.plugin_name)
    except PluginError as e:
        logger.warning("回调插件不存在 (trade_no=%s): %s", trade_no, e.msg)
        return CallbackOutcome(success=False, ack=FAIL_ACK, order=order, msg=e.msg)

    config = plugin_config(channel)
    try:
        if transport == TRANSPORT_RETURN:
            result = plugin.return_callback(config, params, order)
        else:
            result = plugin.notify(config, params, order)
    except Exception as e:
        logger.exception("插件回调校验异常 (trade_no=%s, channel_id=%d)", trade_no, channel.id)
        health_monitor.on_plugin_error(str(e), channel, snapshot)
        return CallbackOutcome(
            success=False, ack=plugin.notify_response(False), order=order, msg="回调校验异常",
        )

    if not result.success:
        logger.info("回调验签失败 (trade_no=%s, transport=%s): %s", trade_no, transport, result.msg)
        return CallbackOutcome(
            success=False, ack=plugin.notify_response(False), order=order, msg=result.msg,
        )

    try:
        outcome = settle(order.id, result)
    except SettlementError:
        return CallbackOutcome(
            success=False, ack=plugin.notify_response(False), order=order, msg="结算失败",
        )

    if outcome.transitioned:
        CallbackService().send_notify(order.id, snapshot)

    return CallbackOutcome(
        success=True,
        ack=plugin.notify_response(True),
        order=OrderService().get_order_by_id(order.id),
        transitioned=outcome.transitioned,
        credited=outcome.credited,
    )
