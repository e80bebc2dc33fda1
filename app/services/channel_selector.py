"""
通道选择：根据支付组配置把支付类型解析为一个具体的上游通道。

channel_mode 取值：
  0   关闭该支付类型
  -1  随机（默认）
  -3  使用轮询组（group_id 指向 polling_groups）
  -4  顺序轮询（无状态，按随机处理）
  -5  首个可用
  >0  指定通道 ID

轮询组 mode：0=顺序（随机处理） 1=加权随机 2=首个可用
"""

import logging
import random

from app.models.schemas import Channel, PollingGroup
from app.services import channel_service
from app.services.pay_types import get_pay_type

logger = logging.getLogger(__name__)

MODE_DISABLED = 0
MODE_RANDOM = -1
MODE_POLLING_GROUP = -3
MODE_SEQUENTIAL = -4
MODE_FIRST = -5

POLL_SEQUENTIAL = 0
POLL_WEIGHTED = 1
POLL_FIRST = 2


class ChannelUnavailableError(Exception):
    """没有可用通道，或金额超出通道限额。"""

    def __init__(self, msg: str, code: int = 1005):
        super().__init__(msg)
        self.msg = msg
        self.code = code


def _force_min_age(channel: Channel):
    """通道强制的最低年龄；未设置返回 None，无法解析返回 False。"""
    raw = channel.params.get("force_min_age")
    if raw is None or raw == "":
        return None
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return False


def is_eligible(channel: Channel, min_age) -> bool:
    """未设置 force_min_age，或 force_min_age <= 商户要求的最低年龄。"""
    if min_age is None:
        return True
    forced = _force_min_age(channel)
    if forced is None:
        return True
    if forced is False:
        return False
    return forced <= min_age


def filter_eligible(channels: list[Channel], min_age) -> list[Channel]:
    if min_age is None:
        return list(channels)
    eligible = [c for c in channels if is_eligible(c, min_age)]
    logger.info(
        "最低年龄过滤: 要求 %d 岁, 原 %d 个通道, 过滤后 %d 个",
        min_age, len(channels), len(eligible),
    )
    return eligible


def _pick_from_polling_group(group: PollingGroup, min_age, rng) -> Channel | None:
    """在轮询组内按组的 mode 选择通道；无符合条件的成员返回 None。"""
    members = channel_service.get_enabled_channels_by_ids([e.channel_id for e in group.entries])
    entries = [
        e for e in group.entries
        if e.channel_id in members and is_eligible(members[e.channel_id], min_age)
    ]
    if not entries:
        return None

    if group.mode == POLL_FIRST:
        chosen = entries[0]
    elif group.mode == POLL_WEIGHTED:
        total = sum(e.weight or 1 for e in entries)
        point = rng.random() * total
        chosen = entries[0]
        for entry in entries:
            point -= entry.weight or 1
            if point <= 0:
                chosen = entry
                break
    else:
        chosen = rng.choice(entries)

    return members[chosen.channel_id]


def _apply_mode(channels: list[Channel], mode: int, rng) -> Channel:
    if mode > 0:
        for channel in channels:
            if channel.id == mode:
                return channel
        return channels[0]
    if mode == MODE_FIRST:
        return channels[0]
    # -4 与默认随机相同
    return rng.choice(channels)


def _parse_min_age(min_age):
    if min_age is None or min_age == "":
        return None
    try:
        return int(min_age)
    except (TypeError, ValueError):
        return None


def select_channel(pay_type: str, snapshot, pay_group_id=None, min_age=None, rng=None) -> Channel | None:
    """
    为支付类型选择一个通道。

    Args:
        pay_type: 支付类型编码。
        snapshot: ConfigSnapshot（支付组、轮询组）。
        pay_group_id: 指定的支付组，为空时使用默认组或首个组。
        min_age: 商户要求的买家最低年龄，用于过滤通道。
        rng: 随机数生成器，默认使用 random 模块。

    Returns:
        选中的通道；该支付类型被关闭或无可用通道时返回 None。
    """
    rng = rng or random
    min_age = _parse_min_age(min_age)

    group = snapshot.resolve_pay_group(pay_group_id)
    info = get_pay_type(pay_type)
    type_config = group.type_config(info.id) if (group and info) else None

    mode = MODE_RANDOM
    if type_config is not None:
        try:
            mode = int(type_config.get("channel_mode", MODE_RANDOM))
        except (TypeError, ValueError):
            mode = MODE_RANDOM
        if mode == MODE_DISABLED:
            logger.info("支付类型已在支付组中关闭 (pay_type=%s, group_id=%d)", pay_type, group.id)
            return None

    if mode == MODE_POLLING_GROUP and type_config.get("group_id"):
        polling = snapshot.polling_group(type_config.get("group_id"))
        if polling is not None and polling.status == 1:
            chosen = _pick_from_polling_group(polling, min_age, rng)
            if chosen is not None:
                logger.info(
                    "轮询组选中通道 (polling_group=%d, channel_id=%d, plugin=%s)",
                    polling.id, chosen.id, chosen.plugin_name,
                )
                return chosen
        # 轮询组无效或没有符合条件的通道，按支付类型继续选择

    channels = filter_eligible(channel_service.list_enabled_channels(pay_type), min_age)
    if not channels:
        return None
    if len(channels) == 1:
        return channels[0]
    return _apply_mode(channels, mode, rng)


def check_amount(channel: Channel, money) -> None:
    """
    校验金额是否在通道限额内（0 表示不限）。

    Raises:
        ChannelUnavailableError: code 1006 低于下限，1007 超过上限。
    """
    if channel.min_amount and money < channel.min_amount:
        raise ChannelUnavailableError(f"支付金额不能小于 {channel.min_amount} 元", code=1006)
    if channel.max_amount and money > channel.max_amount:
        raise ChannelUnavailableError(f"支付金额不能大于 {channel.max_amount} 元", code=1007)
