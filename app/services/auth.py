"""
运营后台认证：bcrypt 密码哈希、HS256 JWT、连续失败锁定、FastAPI 依赖项。

后台令牌带 scope=admin，与商户侧的签名体系互不通用；
每次请求都会回查 admin 表，账号被删除或处于锁定期时令牌立即失效。
"""

import logging
import os
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import HTTPException, Request
from jose import JWTError, jwt

from app.database import get_db

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
TOKEN_SCOPE = "admin"

MAX_LOGIN_FAILURES = 5
LOCKOUT_MINUTES = 15

_TIME_FMT = "%Y-%m-%d %H:%M:%S"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(username: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    claims = {"sub": username, "scope": TOKEN_SCOPE, "exp": expire}
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并验证后台 JWT。

    Raises:
        ValueError: 令牌无效、已过期、缺少 sub 或不是后台令牌。
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"令牌无效: {e}") from e
    if "sub" not in payload:
        raise ValueError("令牌缺少用户信息")
    if payload.get("scope") != TOKEN_SCOPE:
        raise ValueError("令牌权限范围不符")
    return payload


def _is_locked(locked_until: str | None) -> bool:
    if not locked_until:
        return False
    return datetime.now() < datetime.strptime(locked_until, _TIME_FMT)


def authenticate(username: str, password: str) -> dict:
    """
    校验运营账号密码，成功返回 {"code": 1, "token": ...}。

    连续失败 5 次锁定 15 分钟；锁定到期后失败计数清零。

    Raises:
        ValueError: 用户名或密码错误、账号锁定中。
    """
    db = get_db()
    try:
        admin = db.execute("SELECT * FROM admin WHERE username = ?", (username,)).fetchone()
        if not admin:
            logger.warning("后台登录失败：账号不存在 (username=%s)", username)
            raise ValueError("用户名或密码错误")
        if _is_locked(admin["locked_until"]):
            logger.warning("后台登录被拒绝：账号锁定中 (username=%s)", username)
            raise ValueError("账号已锁定，请稍后再试")

        fail_count = 0 if admin["locked_until"] else admin["login_fail_count"]

        if not verify_password(password, admin["password_hash"]):
            fail_count += 1
            locked_until = None
            if fail_count >= MAX_LOGIN_FAILURES:
                locked_until = (datetime.now() + timedelta(minutes=LOCKOUT_MINUTES)).strftime(_TIME_FMT)
                logger.warning(
                    "后台账号连续 %d 次登录失败，锁定至 %s (username=%s)",
                    fail_count, locked_until, username,
                )
            else:
                logger.warning("后台登录失败：密码错误 (username=%s, count=%d)", username, fail_count)
            db.execute(
                "UPDATE admin SET login_fail_count = ?, locked_until = ? WHERE id = ?",
                (fail_count, locked_until, admin["id"]),
            )
            db.commit()
            raise ValueError("用户名或密码错误")

        db.execute(
            "UPDATE admin SET login_fail_count = 0, locked_until = NULL WHERE id = ?",
            (admin["id"],),
        )
        db.commit()
        logger.info("后台登录成功 (username=%s)", username)
        return {"code": 1, "token": create_token(username)}
    finally:
        db.close()


def _admin_usable(username: str) -> bool:
    db = get_db()
    try:
        admin = db.execute(
            "SELECT locked_until FROM admin WHERE username = ?", (username,)
        ).fetchone()
    finally:
        db.close()
    return admin is not None and not _is_locked(admin["locked_until"])


def get_current_admin(request: Request) -> dict:
    """
    FastAPI 依赖项：从 Authorization: Bearer 或 cookie token 中取出 JWT 并校验。

    Raises:
        HTTPException(401): 令牌缺失或无效，或账号已删除、锁定中。
    """
    token = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]
    if not token:
        token = request.cookies.get("token")
    if not token:
        raise HTTPException(status_code=401, detail="未提供认证令牌")

    try:
        payload = verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")

    if not _admin_usable(payload["sub"]):
        logger.warning("后台令牌对应账号不可用 (username=%s)", payload["sub"])
        raise HTTPException(status_code=401, detail="账号不存在或已锁定")
    return payload
