"""订单查询接口单元测试：/api/pay/query 与 /api.php?act=order。"""

import time
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.services.merchant_service import MerchantService
from app.services.order_service import OrderService
from app.services.sign import generate_sign, rsa_sign, rsa_verify


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def order(merchant):
    return OrderService().create_or_reuse_order(
        merchant=merchant,
        out_trade_no="OT300",
        pay_type="alipay",
        name="查询商品",
        money=Decimal("12.50"),
        fee_rate=Decimal("0"),
        notify_url="https://shop.example.com/notify",
        param="extra",
    ).order


def _mark_paid(order):
    db = get_db()
    try:
        db.execute(
            "UPDATE orders SET status = 1, api_trade_no = 'UP300', paid_at = '2025-01-01 12:00:00' "
            "WHERE id = ?",
            (order.id,),
        )
        db.commit()
    finally:
        db.close()


class TestLegacyQuery:

    def test_pid_key_by_trade_no(self, client, merchant, order):
        resp = client.get("/api.php", params={
            "act": "order", "pid": merchant.pid, "key": merchant.api_key, "trade_no": order.trade_no,
        })
        data = resp.json()
        assert data["code"] == 1
        assert data["trade_no"] == order.trade_no
        assert data["out_trade_no"] == "OT300"
        assert data["money"] == "12.50"
        assert data["status"] == 0
        assert data["param"] == "extra"

    def test_paid_order(self, client, merchant, order):
        _mark_paid(order)
        data = client.get("/api.php", params={
            "act": "order", "pid": merchant.pid, "key": merchant.api_key, "out_trade_no": "OT300",
        }).json()
        assert data["status"] == 1
        assert data["api_trade_no"] == "UP300"
        assert data["endtime"] == "2025-01-01 12:00:00"

    def test_wrong_key(self, client, merchant, order):
        data = client.get("/api.php", params={
            "act": "order", "pid": merchant.pid, "key": "wrong", "trade_no": order.trade_no,
        }).json()
        assert data == {"code": -1, "msg": "商户密钥错误"}

    def test_signed_query(self, client, merchant, order):
        params = {"pid": merchant.pid, "trade_no": order.trade_no}
        params["sign"] = generate_sign(params, merchant.api_key)
        data = client.post("/api/pay/query", data=params).json()
        assert data["code"] == 1

    def test_missing_act(self, client):
        assert client.get("/api.php").json() == {"code": -1, "msg": "缺少act参数"}

    def test_unsupported_act(self, client, merchant):
        data = client.get("/api.php", params={"act": "refund", "pid": merchant.pid}).json()
        assert data["code"] == -1

    def test_missing_order_identifier(self, client, merchant):
        data = client.get("/api.php", params={
            "act": "order", "pid": merchant.pid, "key": merchant.api_key,
        }).json()
        assert data["code"] == -1

    def test_other_merchant_order_hidden(self, client, make_merchant, order):
        other = make_merchant("other")
        data = client.get("/api.php", params={
            "act": "order", "pid": other.pid, "key": other.api_key, "trade_no": order.trade_no,
        }).json()
        assert data == {"code": -1, "msg": "订单不存在"}

    def test_paused_merchant(self, client, merchant, order):
        MerchantService().pause(merchant.id)
        data = client.get("/api.php", params={
            "act": "order", "pid": merchant.pid, "key": merchant.api_key, "trade_no": order.trade_no,
        }).json()
        assert data["code"] == -1


class TestV2Query:

    def _params(self, merchant, **overrides):
        params = {"pid": merchant.pid, "out_trade_no": "OT300", "timestamp": str(int(time.time()))}
        params.update(overrides)
        params["sign"] = rsa_sign(params, MerchantService().get_private_key(merchant))
        return params

    def test_signed_response(self, client, merchant, order):
        data = client.post("/api/pay/query", data=self._params(merchant)).json()
        assert data["code"] == 0
        assert data["trade_no"] == order.trade_no
        assert data["sign_type"] == "RSA"
        assert rsa_verify(data, data["sign"], merchant.rsa_public_key)

    def test_key_not_accepted(self, client, merchant, order):
        data = client.post("/api/pay/query", data={
            "pid": merchant.pid, "key": merchant.api_key, "out_trade_no": "OT300",
            "timestamp": str(int(time.time())),
        }).json()
        assert data["code"] == 1001

    def test_expired_timestamp(self, client, merchant, order):
        params = self._params(merchant, timestamp=str(int(time.time()) - 400))
        assert client.post("/api/pay/query", data=params).json()["code"] == 1002

    def test_order_not_found(self, client, merchant, order):
        params = self._params(merchant, out_trade_no="NOPE")
        assert client.post("/api/pay/query", data=params).json()["code"] == 1009
