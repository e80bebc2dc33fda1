"""支付通道读写。通道状态随时可能被自动关闭，因此每次都直接查询数据库。"""

import json
import logging
from decimal import Decimal, InvalidOperation

from app.database import get_db
from app.models.schemas import Channel
from app.plugins.registry import get_plugin
from app.services.platform_config import invalidate_snapshot

logger = logging.getLogger(__name__)


class ChannelConfigError(Exception):
    """通道配置无效。"""
    pass


def get_channel(channel_id, include_deleted: bool = False) -> Channel | None:
    """按 ID 获取通道（不判断启用状态）。"""
    try:
        channel_id = int(channel_id)
    except (TypeError, ValueError):
        return None
    sql = "SELECT * FROM channels WHERE id = ?"
    if not include_deleted:
        sql += " AND is_deleted = 0"
    db = get_db()
    try:
        row = db.execute(sql, (channel_id,)).fetchone()
        return Channel.from_row(row) if row else None
    finally:
        db.close()


def list_enabled_channels(pay_type: str) -> list[Channel]:
    """支持指定支付类型的全部启用通道，按 ID 升序。"""
    db = get_db()
    try:
        rows = db.execute(
            """SELECT * FROM channels
               WHERE status = 1 AND is_deleted = 0
                 AND (',' || REPLACE(pay_type, ' ', '') || ',') LIKE ?
               ORDER BY id""",
            (f"%,{pay_type},%",),
        ).fetchall()
        return [Channel.from_row(r) for r in rows]
    finally:
        db.close()


def get_enabled_channels_by_ids(channel_ids: list[int]) -> dict[int, Channel]:
    """按 ID 批量获取启用通道，返回 {id: Channel}。"""
    if not channel_ids:
        return {}
    placeholders = ",".join("?" for _ in channel_ids)
    db = get_db()
    try:
        rows = db.execute(
            f"""SELECT * FROM channels
                WHERE id IN ({placeholders}) AND status = 1 AND is_deleted = 0""",
            tuple(channel_ids),
        ).fetchall()
        return {r["id"]: Channel.from_row(r) for r in rows}
    finally:
        db.close()


def has_enabled_channel(pay_type: str) -> bool:
    return bool(list_enabled_channels(pay_type))


def _money(value, label: str) -> str:
    try:
        amount = Decimal(str(value if value not in (None, "") else "0")).quantize(Decimal("0.01"))
    except InvalidOperation as e:
        raise ChannelConfigError(f"{label}格式无效") from e
    if amount < 0:
        raise ChannelConfigError(f"{label}不能为负数")
    return str(amount)


def save_channel(
    channel_name: str,
    plugin_name: str,
    pay_type: str,
    min_amount=0,
    max_amount=0,
    status: int = 1,
    priority: int = 0,
    config: dict | None = None,
    channel_id: int | None = None,
) -> int:
    """新增或更新通道，返回通道 ID。插件名必须已注册。"""
    if not channel_name or not pay_type:
        raise ChannelConfigError("通道名称和支付类型不能为空")
    get_plugin(plugin_name)
    values = (
        channel_name,
        plugin_name,
        ",".join(t.strip() for t in pay_type.split(",") if t.strip()),
        _money(min_amount, "最小金额"),
        _money(max_amount, "最大金额"),
        1 if status else 0,
        int(priority or 0),
        json.dumps(config or {}, ensure_ascii=False),
    )

    db = get_db()
    try:
        if channel_id:
            cursor = db.execute(
                """UPDATE channels
                   SET channel_name = ?, plugin_name = ?, pay_type = ?, min_amount = ?,
                       max_amount = ?, status = ?, priority = ?, config = ?
                   WHERE id = ? AND is_deleted = 0""",
                values + (channel_id,),
            )
            if cursor.rowcount == 0:
                db.rollback()
                raise ChannelConfigError(f"通道 {channel_id} 不存在")
        else:
            cursor = db.execute(
                """INSERT INTO channels
                   (channel_name, plugin_name, pay_type, min_amount, max_amount,
                    status, priority, config)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                values,
            )
            channel_id = cursor.lastrowid
        db.commit()
    finally:
        db.close()

    invalidate_snapshot()
    logger.info("通道已保存 (channel_id=%d, plugin=%s)", channel_id, plugin_name)
    return channel_id


def set_channel_status(channel_id: int, status: int) -> bool:
    """启用或关闭通道，返回是否有记录被修改。"""
    db = get_db()
    try:
        cursor = db.execute(
            "UPDATE channels SET status = ? WHERE id = ? AND is_deleted = 0",
            (1 if status else 0, channel_id),
        )
        db.commit()
        return cursor.rowcount > 0
    finally:
        db.close()


def list_channels() -> list[Channel]:
    """全部未删除通道，供管理后台展示。"""
    db = get_db()
    try:
        rows = db.execute("SELECT * FROM channels WHERE is_deleted = 0 ORDER BY id").fetchall()
        return [Channel.from_row(r) for r in rows]
    finally:
        db.close()
