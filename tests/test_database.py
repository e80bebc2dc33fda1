"""app/database.py 的单元测试。"""

import os
import sqlite3

import bcrypt
import pytest

import app.database as _db_mod
from app.database import get_db, init_db


def _names(kind: str) -> set[str]:
    conn = get_db()
    try:
        return {
            row["name"]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = ?", (kind,)
            ).fetchall()
        }
    finally:
        conn.close()


class TestInitDB:

    def test_creates_all_tables(self):
        expected = {
            "admin", "system_config", "merchants", "merchant_domains", "channels",
            "pay_groups", "polling_groups", "orders", "notify_logs",
        }
        assert expected.issubset(_names("table"))

    def test_creates_indexes(self):
        expected = {
            "idx_orders_status",
            "idx_orders_trade_no",
            "idx_orders_pending_out_trade_no",
            "idx_merchants_pid",
            "idx_channels_status",
            "idx_notify_logs_order_id",
        }
        assert expected.issubset(_names("index"))

    def test_one_pending_order_per_out_trade_no(self):
        conn = get_db()
        try:
            conn.execute(
                "INSERT INTO merchants (username, email) VALUES ('m', 'm@example.com')"
            )
            insert = """INSERT INTO orders
                        (trade_no, out_trade_no, merchant_id, name, money, real_money, status)
                        VALUES (?, 'OT1', 1, 'x', 1, 1, ?)"""
            conn.execute(insert, ("T1", 1))
            conn.execute(insert, ("T2", 0))
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(insert, ("T3", 0))
        finally:
            conn.close()

    def test_default_admin_created(self):
        conn = get_db()
        try:
            row = conn.execute("SELECT username, password_hash FROM admin").fetchone()
        finally:
            conn.close()
        assert row["username"] == os.environ["ADMIN_USERNAME"]
        assert bcrypt.checkpw(
            os.environ["ADMIN_PASSWORD"].encode("utf-8"), row["password_hash"].encode("utf-8")
        )

    def test_idempotent_init(self):
        init_db()
        init_db()
        conn = get_db()
        try:
            count = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()["cnt"]
        finally:
            conn.close()
        assert count == 1

    def test_foreign_keys_and_wal(self):
        conn = get_db()
        try:
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        finally:
            conn.close()


def test_migration_adds_missing_columns(tmp_path):
    """旧库缺少的列在 init_db 时补齐。"""
    old_path = str(tmp_path / "old.db")
    conn = sqlite3.connect(old_path)
    conn.executescript("""
        CREATE TABLE orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            trade_no VARCHAR(32) NOT NULL UNIQUE,
            out_trade_no VARCHAR(64) NOT NULL,
            merchant_id INTEGER NOT NULL,
            name VARCHAR(256) NOT NULL,
            money DECIMAL(10,2) NOT NULL,
            real_money DECIMAL(10,2) NOT NULL,
            status INTEGER NOT NULL DEFAULT 0,
            created_at DATETIME
        );
    """)
    conn.close()

    saved = _db_mod.DB_PATH
    _db_mod.DB_PATH = old_path
    try:
        init_db()
        conn = get_db()
        try:
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(orders)").fetchall()}
        finally:
            conn.close()
    finally:
        _db_mod.DB_PATH = saved
    assert {"cert_info", "balance_added", "plugin_name"}.issubset(columns)
