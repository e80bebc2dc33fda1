"""商户管理服务模块。"""

import json
import logging
import secrets
import sqlite3
import string
from datetime import datetime

from app.database import get_db
from app.models.schemas import ACTIVE_MERCHANT_STATUSES, Merchant
from app.services.platform_config import decrypt_secret, encrypt_secret
from app.services.sign import generate_rsa_keypair

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"

_KEY_ALPHABET = string.ascii_letters + string.digits


class MerchantError(Exception):
    """商户不存在、未激活或状态不允许该操作。"""

    def __init__(self, msg: str, code: int = 1003):
        super().__init__(msg)
        self.msg = msg
        self.code = code


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class MerchantService:
    """商户管理服务：注册、激活、暂停/恢复、重置密钥、查询。"""

    @staticmethod
    def _generate_key() -> str:
        """生成 32 位大小写字母与数字混合的随机密钥。"""
        return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(32))

    @staticmethod
    def _generate_pid(db: sqlite3.Connection) -> str:
        """生成不重复的 12 位数字商户号。"""
        while True:
            pid = str(secrets.randbelow(900_000_000_000) + 100_000_000_000)
            if not db.execute("SELECT 1 FROM merchants WHERE pid = ?", (pid,)).fetchone():
                return pid

    def _get(self, db: sqlite3.Connection, merchant_id: int) -> Merchant:
        row = db.execute("SELECT * FROM merchants WHERE id = ?", (merchant_id,)).fetchone()
        if not row:
            raise MerchantError(f"商户 {merchant_id} 不存在")
        return Merchant.from_row(row)

    def create_merchant(
        self,
        username: str,
        email: str,
        fee_rate: str | None = None,
        fee_rates: dict | None = None,
        fee_payer: str = "merchant",
        pay_group_id: int | None = None,
    ) -> Merchant:
        """
        注册商户，初始状态为 pending，尚未分配 pid 和密钥。

        Raises:
            ValueError: 用户名已存在。
        """
        now = _now()
        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO merchants
                   (username, email, status, fee_rate, fee_rates, fee_payer,
                    pay_group_id, created_at, updated_at)
                   VALUES (?, ?, 'pending', ?, ?, ?, ?, ?, ?)""",
                (
                    username, email, fee_rate,
                    json.dumps(fee_rates) if fee_rates else None,
                    fee_payer or "merchant", pay_group_id, now, now,
                ),
            )
            db.commit()
            return self._get(db, cursor.lastrowid)
        except sqlite3.IntegrityError as e:
            db.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise ValueError(f"用户名 '{username}' 已存在") from e
            raise
        finally:
            db.close()

    def activate(self, merchant_id: int) -> Merchant:
        """
        激活商户：生成 12 位 pid、32 位 api_key 和 RSA 2048 密钥对。

        已有 pid 的商户只恢复状态，不重新生成凭证。
        """
        db = get_db()
        try:
            merchant = self._get(db, merchant_id)
            now = _now()
            if merchant.pid:
                db.execute(
                    "UPDATE merchants SET status = 'active', updated_at = ? WHERE id = ?",
                    (now, merchant_id),
                )
            else:
                public_key, private_key = generate_rsa_keypair()
                db.execute(
                    """UPDATE merchants
                       SET pid = ?, api_key = ?, rsa_public_key = ?, rsa_private_key = ?,
                           status = 'active', approved_at = ?, updated_at = ?
                       WHERE id = ?""",
                    (
                        self._generate_pid(db), self._generate_key(),
                        public_key, encrypt_secret(private_key),
                        now, now, merchant_id,
                    ),
                )
            db.commit()
            merchant = self._get(db, merchant_id)
        finally:
            db.close()
        logger.info("商户已激活 (merchant_id=%d, pid=%s)", merchant.id, merchant.pid)
        return merchant

    def set_status(self, merchant_id: int, status: str) -> None:
        """暂停（paused）或恢复（active）商户。"""
        if status not in (STATUS_ACTIVE, STATUS_PAUSED):
            raise MerchantError(f"不支持的商户状态: {status}")
        db = get_db()
        try:
            merchant = self._get(db, merchant_id)
            if status == STATUS_ACTIVE and not merchant.pid:
                raise MerchantError("商户尚未激活")
            db.execute(
                "UPDATE merchants SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), merchant_id),
            )
            db.commit()
        finally:
            db.close()
        logger.info("商户状态变更 (merchant_id=%d, status=%s)", merchant_id, status)

    def pause(self, merchant_id: int) -> None:
        self.set_status(merchant_id, STATUS_PAUSED)

    def restore(self, merchant_id: int) -> None:
        self.set_status(merchant_id, STATUS_ACTIVE)

    def reset_key(self, merchant_id: int) -> str:
        """重置商户 MD5 密钥，返回新密钥。"""
        new_key = self._generate_key()
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE merchants SET api_key = ?, updated_at = ? WHERE id = ? AND pid IS NOT NULL",
                (new_key, _now(), merchant_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise MerchantError(f"商户 {merchant_id} 不存在或尚未激活")
            return new_key
        finally:
            db.close()

    def get_merchant(self, merchant_id: int) -> Merchant:
        db = get_db()
        try:
            return self._get(db, merchant_id)
        finally:
            db.close()

    def get_active_by_pid(self, pid) -> Merchant:
        """
        按 pid 获取可交易商户（active / approved）。

        Raises:
            MerchantError: 商户不存在或已禁止。
        """
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM merchants WHERE pid = ?", (str(pid or "").strip(),)
            ).fetchone()
        finally:
            db.close()
        if not row or row["status"] not in ACTIVE_MERCHANT_STATUSES:
            raise MerchantError("商户不存在或已禁止")
        return Merchant.from_row(row)

    def get_private_key(self, merchant: Merchant) -> str | None:
        """解密商户 RSA 私钥，用于响应签名。"""
        if not merchant.rsa_private_key:
            return None
        return decrypt_secret(merchant.rsa_private_key)

    def add_domain(self, merchant_id: int, domain: str, status: str = "approved") -> int:
        """添加回调域名白名单记录。"""
        domain = (domain or "").strip().lower()
        if not domain:
            raise MerchantError("域名不能为空")
        db = get_db()
        try:
            self._get(db, merchant_id)
            cursor = db.execute(
                "INSERT INTO merchant_domains (merchant_id, domain, status) VALUES (?, ?, ?)",
                (merchant_id, domain, status),
            )
            db.commit()
            return cursor.lastrowid
        finally:
            db.close()

    def list_merchants(self) -> list[dict]:
        """获取所有商户列表（不含密钥）。"""
        db = get_db()
        try:
            rows = db.execute("SELECT * FROM merchants ORDER BY id ASC").fetchall()
        finally:
            db.close()
        return [
            {
                "id": r["id"],
                "pid": r["pid"],
                "username": r["username"],
                "email": r["email"],
                "status": r["status"],
                "balance": str(Merchant.from_row(r).balance),
                "pay_group_id": r["pay_group_id"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]
