"""通道健康监控单元测试。"""

import sqlite3
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from app.plugins.base import CAP_QRCODE, PluginError
from app.services import channel_service
from app.services.dispatch_service import dispatch
from app.services.health_monitor import match_keyword, on_plugin_error, send_admin_alert
from app.services.order_service import OrderService
from app.services.platform_config import load_snapshot, set_config


@pytest.fixture
def channel(make_channel):
    return channel_service.get_channel(make_channel(name="主通道"))


def _mock_client(mock_client_cls, status_code=200):
    mock_resp = MagicMock()
    mock_resp.status_code = status_code
    mock_client = MagicMock()
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    mock_client.post.return_value = mock_resp
    mock_client_cls.return_value = mock_client
    return mock_client


class TestMatchKeyword:

    def test_first_match(self):
        assert match_keyword("商户已被风控，请联系客服", ["限额", "风控"]) == "风控"

    def test_no_match(self):
        assert match_keyword("网络超时", ["风控"]) is None

    def test_empty_message(self):
        assert match_keyword(None, ["风控"]) is None


class TestOnPluginError:

    def test_keyword_disables_channel(self, channel):
        set_config("check_paymsg", "风控|封禁")
        keyword = on_plugin_error("该商户已被封禁", channel, load_snapshot())
        assert keyword == "封禁"
        assert channel_service.get_channel(channel.id).status == 0
        assert channel_service.list_enabled_channels("alipay") == []

    def test_unmatched_message_keeps_channel(self, channel):
        set_config("check_paymsg", "风控")
        assert on_plugin_error("网络超时", channel, load_snapshot()) is None
        assert channel_service.get_channel(channel.id).status == 1

    def test_no_keywords_configured(self, channel):
        assert on_plugin_error("风控", channel, load_snapshot()) is None

    @patch("app.services.health_monitor.httpx.Client")
    def test_alert_sent_when_enabled(self, mock_client_cls, channel, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        monkeypatch.setenv("TELEGRAM_ADMIN_CHAT_IDS", "11, 22")
        mock_client = _mock_client(mock_client_cls)
        set_config("check_paymsg", "风控")
        set_config("check_paymsg_notice", "1")

        on_plugin_error("触发风控", channel, load_snapshot())

        assert mock_client.post.call_count == 2
        url = mock_client.post.call_args_list[0][0][0]
        assert url == "https://api.telegram.org/bot123:abc/sendMessage"
        body = mock_client.post.call_args_list[0][1]["json"]
        assert body["chat_id"] == "11"
        assert "主通道" in body["text"]

    @patch("app.services.health_monitor.httpx.Client")
    def test_alert_skipped_when_notice_off(self, mock_client_cls, channel, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        monkeypatch.setenv("TELEGRAM_ADMIN_CHAT_IDS", "11")
        set_config("check_paymsg", "风控")
        on_plugin_error("触发风控", channel, load_snapshot())
        mock_client_cls.assert_not_called()

    def test_database_failure_is_logged_not_raised(self, channel, caplog):
        set_config("check_paymsg", "风控")
        with patch(
            "app.services.health_monitor.get_db",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            assert on_plugin_error("触发风控", channel, load_snapshot()) is None
        assert "通道健康检查失败" in caplog.text
        assert channel_service.get_channel(channel.id).status == 1

    @patch("app.services.health_monitor.send_admin_alert", side_effect=RuntimeError("bot down"))
    def test_alert_failure_is_logged_not_raised(self, mock_alert, channel):
        set_config("check_paymsg", "风控")
        set_config("check_paymsg_notice", "1")
        assert on_plugin_error("触发风控", channel, load_snapshot()) is None
        assert channel_service.get_channel(channel.id).status == 0


def test_send_admin_alert_without_config(monkeypatch):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    assert send_admin_alert("hello") == 0


@patch("app.plugins.epay.httpx.Client")
def test_dispatch_keeps_plugin_error_when_monitor_fails(mock_client_cls, merchant, channel):
    mock_resp = MagicMock()
    mock_resp.json.return_value = {"code": -1, "msg": "通道维护"}
    _mock_client(mock_client_cls).post.return_value = mock_resp
    set_config("check_paymsg", "维护")
    order = OrderService().create_or_reuse_order(
        merchant=merchant,
        out_trade_no="OT300",
        pay_type="alipay",
        name="测试商品",
        money=Decimal("10.00"),
        fee_rate=Decimal("0"),
        notify_url="https://shop.example.com/notify",
    ).order

    with patch(
        "app.services.health_monitor.get_db",
        side_effect=sqlite3.OperationalError("database is locked"),
    ):
        with pytest.raises(PluginError) as exc_info:
            dispatch(order.trade_no, load_snapshot(), "http://gateway.example.com", CAP_QRCODE)
    assert exc_info.value.msg == "通道维护"
