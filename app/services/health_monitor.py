"""
通道健康监控：插件返回的错误信息命中运营方配置的关键词时自动关闭通道。

关键词来自 system_config.check_paymsg（| 分隔）；
check_paymsg_notice = "1" 时通过 Telegram Bot 通知管理员。
"""

import logging
import os
from datetime import datetime

import httpx

from app.database import get_db
from app.models.schemas import Channel

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


def _admin_chat_ids() -> list[str]:
    raw = os.getenv("TELEGRAM_ADMIN_CHAT_IDS", "")
    return [c.strip() for c in raw.split(",") if c.strip()]


def send_admin_alert(text: str) -> int:
    """
    通过 Telegram Bot sendMessage 通知所有管理员，返回成功发送的数量。

    未配置 TELEGRAM_BOT_TOKEN 或管理员列表时直接跳过。
    """
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    chat_ids = _admin_chat_ids()
    if not token or not chat_ids:
        logger.info("未配置 Telegram 管理员通知，跳过")
        return 0

    sent = 0
    url = f"{TELEGRAM_API}/bot{token}/sendMessage"
    with httpx.Client(timeout=10.0) as client:
        for chat_id in chat_ids:
            try:
                resp = client.post(url, json={"chat_id": chat_id, "text": text})
                if resp.status_code == 200:
                    sent += 1
                else:
                    logger.warning("Telegram 通知失败 (chat_id=%s, status=%d)", chat_id, resp.status_code)
            except httpx.HTTPError as e:
                logger.warning("Telegram 通知异常 (chat_id=%s): %s", chat_id, e)
    return sent


def match_keyword(message: str | None, keywords: list[str]) -> str | None:
    """返回错误信息中命中的第一个关键词。"""
    if not message:
        return None
    for keyword in keywords:
        if keyword and keyword in message:
            return keyword
    return None


def on_plugin_error(message: str | None, channel: Channel | None, snapshot) -> str | None:
    """
    检查插件错误信息，命中关键词则关闭通道（status=0）。

    监控自身的失败（数据库、告警发送）只记录日志，不影响调用方原有的错误处理。

    Returns:
        命中的关键词；未命中或处理失败返回 None。
    """
    if channel is None:
        return None
    try:
        return _disable_on_keyword(message, channel, snapshot)
    except Exception:
        logger.exception("通道健康检查失败 (channel_id=%s)", channel.id)
        return None


def _disable_on_keyword(message: str | None, channel: Channel, snapshot) -> str | None:
    keyword = match_keyword(message, snapshot.keywords())
    if keyword is None:
        return None

    db = get_db()
    try:
        db.execute("UPDATE channels SET status = 0 WHERE id = ?", (channel.id,))
        db.commit()
    finally:
        db.close()

    logger.warning(
        "通道自动关闭 (channel_id=%d, name=%s, keyword=%s)",
        channel.id, channel.channel_name, keyword,
    )

    if snapshot.get("check_paymsg_notice") == "1":
        site_name = snapshot.get("site_name") or "聚合支付"
        text = (
            f"{site_name} - 支付通道自动关闭提醒\n\n"
            f"支付通道「{channel.channel_name or channel.id}」因下单时出现异常提示「{message}」，"
            f"已被系统自动关闭！\n\n"
            f"匹配关键词：{keyword}\n"
            f"通道插件：{channel.plugin_name or '-'}\n\n"
            f"{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        )
        send_admin_alert(text)

    return keyword
