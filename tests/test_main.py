"""app/main.py 启动配置和路由注册测试。"""

import pytest
from fastapi.testclient import TestClient

from app.main import app


@pytest.fixture
def client():
    return TestClient(app)


class TestHealthEndpoint:
    """健康检查端点测试。"""

    def test_health_returns_ok(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestRouteRegistration:
    """路由注册验证测试。"""

    @pytest.mark.parametrize(
        "path, code",
        [("/mapi.php", -1), ("/api/pay/mapi", -1), ("/api/pay/create", 1001)],
    )
    def test_api_submit_routes(self, client, path, code):
        # 参数缺失错误，而非 404
        resp = client.post(path, data={})
        assert resp.status_code == 200
        assert resp.json()["code"] == code

    @pytest.mark.parametrize("path", ["/submit.php", "/api/pay/submit"])
    def test_page_submit_routes(self, client, path):
        resp = client.post(path, data={}, follow_redirects=False)
        assert resp.status_code == 400

    def test_query_routes(self, client):
        assert client.get("/api.php").json()["code"] == -1
        assert client.get("/api/pay/query").json()["code"] == -1

    def test_notify_route(self, client):
        resp = client.post("/api/pay/notify/unknown", data={})
        assert resp.status_code == 200
        assert resp.text == "fail"

    def test_admin_login_route(self, client):
        resp = client.post("/v1/admin/auth/login", json={"username": "admin", "password": "wrong"})
        assert resp.status_code == 200
        assert resp.json()["code"] == -1

    def test_unknown_route_404(self, client):
        assert client.get("/api/pay/unknown").status_code == 404


def test_lifespan_initializes():
    with TestClient(app) as started:
        assert started.get("/health").status_code == 200
