"""全局测试配置：测试模式、临时数据库、常用数据构造。"""

import os
import sqlite3
import tempfile

# 在任何 app 模块导入之前设置环境变量
os.environ["TESTING"] = "1"
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="aggpay_test_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-gateway-tests")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "admin123")

import pytest

import app.database as _db_mod
from app.database import init_db
from app.services import channel_service
from app.services.merchant_service import MerchantService
from app.services.platform_config import invalidate_snapshot, load_snapshot

TEST_DB_PATH = _tmp.name

_TABLES = (
    "notify_logs",
    "orders",
    "merchant_domains",
    "merchants",
    "channels",
    "polling_groups",
    "pay_groups",
    "system_config",
    "admin",
)


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库并丢弃配置快照。"""
    os.environ["DB_PATH"] = TEST_DB_PATH
    _db_mod.DB_PATH = TEST_DB_PATH
    conn = sqlite3.connect(TEST_DB_PATH)
    conn.executescript("".join(f"DROP TABLE IF EXISTS {t};\n" for t in _TABLES))
    conn.close()
    init_db()
    invalidate_snapshot()
    yield
    invalidate_snapshot()


@pytest.fixture
def make_merchant():
    """创建并激活商户，返回 Merchant。"""

    def _make(username="shop", **kwargs):
        svc = MerchantService()
        m = svc.create_merchant(username, f"{username}@example.com", **kwargs)
        return svc.activate(m.id)

    return _make


@pytest.fixture
def merchant(make_merchant):
    return make_merchant()


@pytest.fixture
def make_channel():
    """创建通道，返回通道 ID。"""

    def _make(name="epay-1", plugin="epay", pay_type="alipay", params=None, **kwargs):
        config = {"params": params if params is not None else {
            "apiurl": "https://upstream.example.com/",
            "pid": "1001",
            "key": "upstream-key",
        }}
        return channel_service.save_channel(name, plugin, pay_type, config=config, **kwargs)

    return _make


@pytest.fixture
def snapshot():
    """读取当前数据库的配置快照（不走缓存）。"""
    return load_snapshot()
