"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

import bcrypt
from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/gateway.db")

# 等待写锁的最长时间（秒），结算事务依赖它串行化
BUSY_TIMEOUT = float(os.getenv("DB_BUSY_TIMEOUT", "15"))


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS admin (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        VARCHAR(64)  NOT NULL UNIQUE,
    password_hash   VARCHAR(128) NOT NULL,
    login_fail_count INTEGER     DEFAULT 0,
    locked_until    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS merchants (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        VARCHAR(64)  NOT NULL UNIQUE,
    email           VARCHAR(128) NOT NULL,
    pid             VARCHAR(12)  UNIQUE,
    api_key         VARCHAR(32),
    rsa_public_key  TEXT,
    rsa_private_key TEXT,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    fee_rate        VARCHAR(16),
    fee_rates       TEXT,
    fee_payer       VARCHAR(16)  NOT NULL DEFAULT 'merchant',
    pay_group_id    INTEGER      REFERENCES pay_groups(id),
    balance         DECIMAL(12,2) NOT NULL DEFAULT 0,
    approved_at     DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS merchant_domains (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id     INTEGER      NOT NULL REFERENCES merchants(id),
    domain          VARCHAR(255) NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS channels (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_name    VARCHAR(64)  NOT NULL,
    plugin_name     VARCHAR(64)  NOT NULL,
    pay_type        VARCHAR(128) NOT NULL,
    min_amount      DECIMAL(10,2) DEFAULT 0,
    max_amount      DECIMAL(10,2) DEFAULT 0,
    status          INTEGER      NOT NULL DEFAULT 1,
    priority        INTEGER      NOT NULL DEFAULT 0,
    config          TEXT,
    is_deleted      INTEGER      NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS pay_groups (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            VARCHAR(64)  NOT NULL,
    config          TEXT,
    is_default      INTEGER      NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS polling_groups (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            VARCHAR(64)  NOT NULL,
    channels        TEXT         NOT NULL DEFAULT '[]',
    mode            INTEGER      NOT NULL DEFAULT 0,
    status          INTEGER      NOT NULL DEFAULT 1,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    trade_no        VARCHAR(32)  NOT NULL UNIQUE,
    out_trade_no    VARCHAR(64)  NOT NULL,
    api_trade_no    VARCHAR(64),
    merchant_id     INTEGER      NOT NULL REFERENCES merchants(id),
    channel_id      INTEGER      REFERENCES channels(id),
    plugin_name     VARCHAR(64),
    pay_type        VARCHAR(16)  NOT NULL DEFAULT '',
    name            VARCHAR(256) NOT NULL,
    money           DECIMAL(10,2) NOT NULL,
    fee_money       DECIMAL(10,2) NOT NULL DEFAULT 0,
    real_money      DECIMAL(10,2) NOT NULL,
    fee_payer       VARCHAR(16)  NOT NULL DEFAULT 'merchant',
    status          INTEGER      NOT NULL DEFAULT 0,
    notify_url      TEXT,
    return_url      TEXT,
    param           TEXT,
    clientip        VARCHAR(64),
    device          VARCHAR(16)  DEFAULT 'pc',
    cert_info       TEXT,
    buyer           VARCHAR(128),
    balance_added   INTEGER      NOT NULL DEFAULT 0,
    notify_status   INTEGER      NOT NULL DEFAULT 0,
    notify_count    INTEGER      NOT NULL DEFAULT 0,
    notify_time     DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    paid_at         DATETIME
);

CREATE TABLE IF NOT EXISTS notify_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES orders(id),
    attempt         INTEGER      NOT NULL,
    url             TEXT         NOT NULL,
    method          VARCHAR(8)   DEFAULT 'POST',
    http_status     INTEGER,
    response_body   TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_orders_status
    ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_merchant_status
    ON orders(merchant_id, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_trade_no
    ON orders(trade_no);
CREATE INDEX IF NOT EXISTS idx_orders_out_trade_no
    ON orders(merchant_id, out_trade_no);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_pending_out_trade_no
    ON orders(merchant_id, out_trade_no) WHERE status = 0;
CREATE INDEX IF NOT EXISTS idx_orders_created_at
    ON orders(created_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_merchants_username
    ON merchants(username);
CREATE UNIQUE INDEX IF NOT EXISTS idx_merchants_pid
    ON merchants(pid);
CREATE INDEX IF NOT EXISTS idx_merchant_domains_merchant
    ON merchant_domains(merchant_id, status);
CREATE INDEX IF NOT EXISTS idx_channels_status
    ON channels(status, is_deleted);
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
CREATE INDEX IF NOT EXISTS idx_notify_logs_order_id
    ON notify_logs(order_id);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并在首次启动时创建默认管理员。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)

        # 迁移需在索引之前执行，部分索引依赖新增列
        _migrate_schema(conn)

        conn.executescript(_CREATE_INDEXES)

        # 首次启动：通过环境变量创建默认管理员
        _create_default_admin(conn)

        conn.commit()
    finally:
        conn.close()


# 已有数据库缺失的列：(表, 列, 定义)
_COLUMN_MIGRATIONS = [
    ("orders", "cert_info", "TEXT"),
    ("orders", "balance_added", "INTEGER NOT NULL DEFAULT 0"),
    ("orders", "plugin_name", "VARCHAR(64)"),
    ("merchants", "pay_group_id", "INTEGER REFERENCES pay_groups(id)"),
]


def _migrate_schema(conn: sqlite3.Connection) -> None:
    """为已有数据库添加新列（幂等操作）。"""
    for table, column, definition in _COLUMN_MIGRATIONS:
        try:
            conn.execute(f"SELECT {column} FROM {table} LIMIT 1")
        except sqlite3.OperationalError:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果 admin 表为空，则根据环境变量创建默认管理员账号。"""
    row = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()
    if row["cnt"] > 0:
        return

    username = os.getenv("ADMIN_USERNAME", "admin")
    password = os.getenv("ADMIN_PASSWORD", "admin123")

    password_hash = bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")

    conn.execute(
        "INSERT INTO admin (username, password_hash) VALUES (?, ?)",
        (username, password_hash),
    )
