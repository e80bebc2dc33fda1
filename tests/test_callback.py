"""商户回调通知服务单元测试。"""

from datetime import datetime
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.database import get_db
from app.services.callback_service import NOTIFY_FAILED, NOTIFY_OK, CallbackService
from app.services.platform_config import load_snapshot, set_config
from app.services.sign import verify_sign


@pytest.fixture
def svc():
    return CallbackService()


def _insert_paid_order(merchant, **overrides):
    """插入一笔已支付订单，返回 order_id。"""
    defaults = {
        "trade_no": "20250101000000000001",
        "out_trade_no": "OT001",
        "pay_type": "alipay",
        "name": "测试商品",
        "money": "10.00",
        "real_money": "10.00",
        "notify_url": "https://merchant.example.com/notify",
        "return_url": "https://merchant.example.com/return?from=shop",
        "param": "extra_data",
    }
    defaults.update(overrides)
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        cursor = db.execute(
            """INSERT INTO orders
               (trade_no, out_trade_no, merchant_id, pay_type, name, money, real_money,
                status, notify_url, return_url, param, created_at, paid_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)""",
            (
                defaults["trade_no"], defaults["out_trade_no"], merchant.id,
                defaults["pay_type"], defaults["name"], defaults["money"],
                defaults["real_money"], defaults["notify_url"], defaults["return_url"],
                defaults["param"], now, now,
            ),
        )
        db.commit()
        return cursor.lastrowid
    finally:
        db.close()


def _mock_client(mock_client_cls, text="success", status_code=200):
    mock_resp = MagicMock()
    mock_resp.status_code = status_code
    mock_resp.text = text
    mock_client = MagicMock()
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    mock_client.post.return_value = mock_resp
    mock_client_cls.return_value = mock_client
    return mock_client


def _order_row(order_id):
    db = get_db()
    try:
        return db.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
    finally:
        db.close()


class TestSendNotify:

    @patch("app.services.callback_service.httpx.Client")
    def test_success(self, mock_client_cls, svc, merchant):
        order_id = _insert_paid_order(merchant)
        mock_client = _mock_client(mock_client_cls)

        assert svc.send_notify(order_id) is True
        row = _order_row(order_id)
        assert row["notify_status"] == NOTIFY_OK
        assert row["notify_count"] == 1

        url, kwargs = mock_client.post.call_args[0][0], mock_client.post.call_args[1]
        assert url == "https://merchant.example.com/notify"
        data = kwargs["data"]
        assert data["pid"] == merchant.pid
        assert data["trade_status"] == "TRADE_SUCCESS"
        assert data["money"] == "10.00"
        assert verify_sign(data, merchant.api_key, data["sign"])

    @patch("app.services.callback_service.httpx.Client")
    def test_non_success_body(self, mock_client_cls, svc, merchant):
        order_id = _insert_paid_order(merchant)
        _mock_client(mock_client_cls, text="fail")

        assert svc.send_notify(order_id) is False
        row = _order_row(order_id)
        assert row["notify_status"] == NOTIFY_FAILED
        assert row["notify_count"] == 1

    @patch("app.services.callback_service.httpx.Client")
    def test_http_exception_recorded(self, mock_client_cls, svc, merchant):
        order_id = _insert_paid_order(merchant)
        mock_client = _mock_client(mock_client_cls)
        mock_client.post.side_effect = httpx.ConnectError("Connection refused")

        assert svc.send_notify(order_id) is False
        # 通知失败不影响已支付状态
        assert _order_row(order_id)["status"] == 1

    def test_nonexistent_order(self, svc):
        assert svc.send_notify(99999) is False

    def test_no_notify_url(self, svc, merchant):
        order_id = _insert_paid_order(merchant, notify_url=None)
        assert svc.send_notify(order_id) is False

    @patch("app.services.callback_service.httpx.Client")
    def test_attempts_logged(self, mock_client_cls, svc, merchant):
        order_id = _insert_paid_order(merchant)
        _mock_client(mock_client_cls, text="fail", status_code=500)
        svc.send_notify(order_id)
        _mock_client(mock_client_cls, text="success")
        svc.send_notify(order_id)

        db = get_db()
        try:
            logs = db.execute(
                "SELECT attempt, http_status, response_body FROM notify_logs WHERE order_id = ? ORDER BY id",
                (order_id,),
            ).fetchall()
        finally:
            db.close()
        assert [(r["attempt"], r["http_status"], r["response_body"]) for r in logs] == [
            (1, 500, "fail"),
            (2, 200, "success"),
        ]

    @patch("app.services.callback_service.httpx.Client")
    def test_product_name_masked(self, mock_client_cls, svc, merchant):
        order_id = _insert_paid_order(merchant)
        mock_client = _mock_client(mock_client_cls)
        set_config("notify_order_name", "1")

        svc.send_notify(order_id, load_snapshot())
        assert mock_client.post.call_args[1]["data"]["name"] == "product"


class TestBuildReturnUrl:

    def test_merges_signed_params(self, svc, merchant):
        order_id = _insert_paid_order(merchant)
        url = svc.build_return_url(order_id)
        parsed = urlparse(url)
        assert parsed.netloc == "merchant.example.com"
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert query.pop("from") == "shop"
        assert query["out_trade_no"] == "OT001"
        assert verify_sign(query, merchant.api_key, query["sign"])

    def test_no_return_url(self, svc, merchant):
        order_id = _insert_paid_order(merchant, return_url=None)
        assert svc.build_return_url(order_id) == ""
