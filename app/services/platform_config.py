"""
平台配置服务：管理 system_config 表的读写、支付组与轮询组配置。

使用 Fernet 对称加密保护敏感凭证，密钥由 JWT_SECRET 通过 PBKDF2 派生。
请求处理使用不可变的 ConfigSnapshot，按 CONFIG_CACHE_TTL 缓存，
管理端写入后调用 invalidate_snapshot() 立即失效。
"""

import base64
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.database import get_db
from app.models.schemas import PayGroup, PollingGroup
from app.services.pay_types import get_pay_type_by_id

logger = logging.getLogger(__name__)

CONFIG_CACHE_TTL = float(os.getenv("CONFIG_CACHE_TTL", "30"))

# 运营方可配置的系统参数
SETTING_KEYS = (
    "check_paymsg",
    "check_paymsg_notice",
    "notify_order_name",
    "domain_whitelist_enabled",
    "site_name",
)


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥。"""
    secret = os.getenv("JWT_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"aggpay-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def encrypt_secret(plaintext: str) -> str:
    """加密明文字符串，返回密文。"""
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str) -> str:
    """
    解密密文字符串，返回明文。

    Raises:
        PlatformConfigError: 密文无效或 JWT_SECRET 已变更。
    """
    try:
        return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise PlatformConfigError("解密失败，密钥可能已变更") from e


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute(
            """INSERT INTO system_config (config_key, config_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(config_key) DO UPDATE
               SET config_value = excluded.config_value, updated_at = excluded.updated_at""",
            (key, value, now),
        )
        db.commit()
    finally:
        db.close()
    invalidate_snapshot()


# ── 配置快照 ──────────────────────────────────────────────


@dataclass(frozen=True)
class ConfigSnapshot:
    """某一时刻的只读配置：系统参数、支付组、轮询组。"""

    settings: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    pay_groups: tuple[PayGroup, ...] = ()
    polling_groups: Mapping[int, PollingGroup] = field(default_factory=lambda: MappingProxyType({}))
    loaded_at: float = 0.0

    def get(self, key: str, default: str | None = None) -> str | None:
        value = self.settings.get(key)
        return default if value is None else value

    def flag(self, key: str) -> bool:
        return (self.get(key) or "").strip().lower() in ("1", "true")

    def keywords(self) -> list[str]:
        """check_paymsg 关键词列表（| 分隔）。"""
        raw = self.get("check_paymsg") or ""
        return [k.strip() for k in raw.split("|") if k.strip()]

    def default_pay_group(self) -> Optional[PayGroup]:
        """默认支付组；没有默认组时取最早创建的一个。"""
        for group in self.pay_groups:
            if group.is_default:
                return group
        return self.pay_groups[0] if self.pay_groups else None

    def resolve_pay_group(self, pay_group_id=None) -> Optional[PayGroup]:
        """按 指定 ID → 默认组 → 首个可用组 的顺序解析支付组。"""
        if pay_group_id not in (None, "", 0, "0"):
            try:
                wanted = int(pay_group_id)
            except (TypeError, ValueError):
                wanted = None
            for group in self.pay_groups:
                if group.id == wanted:
                    return group
        return self.default_pay_group()

    def polling_group(self, group_id) -> Optional[PollingGroup]:
        try:
            return self.polling_groups.get(int(group_id))
        except (TypeError, ValueError):
            return None


_snapshot: ConfigSnapshot | None = None
_snapshot_lock = threading.Lock()


def load_snapshot() -> ConfigSnapshot:
    """从数据库读取全部配置，构建新的快照。"""
    db = get_db()
    try:
        settings = {
            row["config_key"]: row["config_value"]
            for row in db.execute("SELECT config_key, config_value FROM system_config").fetchall()
        }
        pay_groups = tuple(
            PayGroup.from_row(row)
            for row in db.execute("SELECT * FROM pay_groups ORDER BY id").fetchall()
        )
        polling_groups = {
            row["id"]: PollingGroup.from_row(row)
            for row in db.execute("SELECT * FROM polling_groups ORDER BY id").fetchall()
        }
    finally:
        db.close()

    return ConfigSnapshot(
        settings=MappingProxyType(settings),
        pay_groups=pay_groups,
        polling_groups=MappingProxyType(polling_groups),
        loaded_at=time.monotonic(),
    )


def current_snapshot() -> ConfigSnapshot:
    """返回缓存中的快照，过期则重新加载。"""
    global _snapshot
    with _snapshot_lock:
        snap = _snapshot
        if snap is None or time.monotonic() - snap.loaded_at >= CONFIG_CACHE_TTL:
            snap = load_snapshot()
            _snapshot = snap
        return snap


def invalidate_snapshot() -> None:
    """丢弃缓存的快照，下次读取时重新加载。"""
    global _snapshot
    with _snapshot_lock:
        _snapshot = None


def get_snapshot() -> ConfigSnapshot:
    """FastAPI 依赖：为当前请求提供配置快照。"""
    return current_snapshot()


# ── 支付组 / 轮询组 ───────────────────────────────────────


def _validate_pay_group_config(config: dict) -> dict:
    """校验支付组配置：键为支付类型 ID，值包含整数 channel_mode。"""
    if not isinstance(config, dict):
        raise PlatformConfigError("支付组配置必须是对象")
    cleaned = {}
    for type_id, entry in config.items():
        if get_pay_type_by_id(type_id) is None:
            raise PlatformConfigError(f"未知的支付类型 ID: {type_id}")
        if not isinstance(entry, dict):
            raise PlatformConfigError(f"支付类型 {type_id} 的配置无效")
        try:
            item = {"channel_mode": int(entry.get("channel_mode", -1))}
            if entry.get("group_id") not in (None, ""):
                item["group_id"] = int(entry["group_id"])
            if entry.get("rate") not in (None, ""):
                item["rate"] = float(entry["rate"])
        except (TypeError, ValueError) as e:
            raise PlatformConfigError(f"支付类型 {type_id} 的配置无效: {e}") from e
        cleaned[str(int(type_id))] = item
    return cleaned


def save_pay_group(
    name: str,
    config: dict,
    is_default: bool = False,
    group_id: int | None = None,
) -> int:
    """
    新增或更新支付组，返回支付组 ID。

    设置为默认组时，其它组的默认标记会被清除。
    """
    if not name:
        raise PlatformConfigError("支付组名称不能为空")
    payload = json.dumps(_validate_pay_group_config(config), ensure_ascii=False)

    db = get_db()
    try:
        if is_default:
            db.execute("UPDATE pay_groups SET is_default = 0")
        if group_id:
            cursor = db.execute(
                "UPDATE pay_groups SET name = ?, config = ?, is_default = ? WHERE id = ?",
                (name, payload, 1 if is_default else 0, group_id),
            )
            if cursor.rowcount == 0:
                db.rollback()
                raise PlatformConfigError(f"支付组 {group_id} 不存在")
        else:
            cursor = db.execute(
                "INSERT INTO pay_groups (name, config, is_default) VALUES (?, ?, ?)",
                (name, payload, 1 if is_default else 0),
            )
            group_id = cursor.lastrowid
        db.commit()
    finally:
        db.close()

    invalidate_snapshot()
    logger.info("支付组已保存 (group_id=%d, name=%s)", group_id, name)
    return group_id


def save_polling_group(
    name: str,
    channels: list[dict],
    mode: int = 0,
    status: int = 1,
    group_id: int | None = None,
) -> int:
    """新增或更新轮询组，channels 为 [{"id": 通道ID, "weight": 权重}]。"""
    if not name:
        raise PlatformConfigError("轮询组名称不能为空")
    if mode not in (0, 1, 2):
        raise PlatformConfigError("轮询模式无效")
    entries = []
    for item in channels or []:
        try:
            entries.append({"id": int(item["id"]), "weight": int(item.get("weight") or 1)})
        except (KeyError, TypeError, ValueError) as e:
            raise PlatformConfigError(f"轮询组通道配置无效: {item}") from e
    payload = json.dumps(entries)

    db = get_db()
    try:
        if group_id:
            cursor = db.execute(
                "UPDATE polling_groups SET name = ?, channels = ?, mode = ?, status = ? WHERE id = ?",
                (name, payload, mode, status, group_id),
            )
            if cursor.rowcount == 0:
                db.rollback()
                raise PlatformConfigError(f"轮询组 {group_id} 不存在")
        else:
            cursor = db.execute(
                "INSERT INTO polling_groups (name, channels, mode, status) VALUES (?, ?, ?, ?)",
                (name, payload, mode, status),
            )
            group_id = cursor.lastrowid
        db.commit()
    finally:
        db.close()

    invalidate_snapshot()
    logger.info("轮询组已保存 (group_id=%d, mode=%d)", group_id, mode)
    return group_id
