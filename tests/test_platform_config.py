"""平台配置服务单元测试：system_config 读写、Fernet 加密、配置快照、支付组/轮询组。"""

import pytest

from app.services import platform_config
from app.services.platform_config import (
    PlatformConfigError,
    current_snapshot,
    decrypt_secret,
    encrypt_secret,
    get_config,
    invalidate_snapshot,
    load_snapshot,
    save_pay_group,
    save_polling_group,
    set_config,
)


class TestConfigReadWrite:

    def test_get_nonexistent_key_returns_none(self):
        assert get_config("nonexistent_key") is None

    def test_set_and_get_config(self):
        set_config("site_name", "测试站")
        assert get_config("site_name") == "测试站"

    def test_update_existing_config(self):
        set_config("site_name", "a")
        set_config("site_name", "b")
        assert get_config("site_name") == "b"

    def test_set_none_value(self):
        set_config("site_name", "a")
        set_config("site_name", None)
        assert get_config("site_name") is None


class TestEncryption:

    def test_encrypt_decrypt_roundtrip(self):
        assert decrypt_secret(encrypt_secret("MIIEvQIBADANBg")) == "MIIEvQIBADANBg"

    def test_encrypted_value_differs_from_plaintext(self):
        assert encrypt_secret("secret") != "secret"

    def test_bad_ciphertext_raises(self):
        with pytest.raises(PlatformConfigError):
            decrypt_secret("not-a-token")


class TestSnapshot:

    def test_keywords_split_on_pipe(self):
        set_config("check_paymsg", "风控| 关闭 ||限额")
        assert load_snapshot().keywords() == ["风控", "关闭", "限额"]

    def test_flag(self):
        set_config("domain_whitelist_enabled", "true")
        assert load_snapshot().flag("domain_whitelist_enabled") is True
        set_config("domain_whitelist_enabled", "0")
        assert load_snapshot().flag("domain_whitelist_enabled") is False

    def test_snapshot_is_cached_until_invalidated(self, monkeypatch):
        monkeypatch.setattr(platform_config, "CONFIG_CACHE_TTL", 3600)
        first = current_snapshot()
        assert current_snapshot() is first
        invalidate_snapshot()
        assert current_snapshot() is not first

    def test_set_config_invalidates(self, monkeypatch):
        monkeypatch.setattr(platform_config, "CONFIG_CACHE_TTL", 3600)
        current_snapshot()
        set_config("site_name", "新名字")
        assert current_snapshot().get("site_name") == "新名字"

    def test_snapshot_is_read_only(self):
        snap = load_snapshot()
        with pytest.raises(TypeError):
            snap.settings["site_name"] = "x"


class TestPayGroups:

    def test_default_group_resolution(self):
        a = save_pay_group("A", {"1": {"channel_mode": -1}})
        b = save_pay_group("B", {"1": {"channel_mode": -5}}, is_default=True)
        snap = load_snapshot()
        assert snap.default_pay_group().id == b
        assert snap.resolve_pay_group(a).id == a
        assert snap.resolve_pay_group(None).id == b
        assert snap.resolve_pay_group(999).id == b

    def test_first_group_when_no_default(self):
        a = save_pay_group("A", {})
        save_pay_group("B", {})
        assert load_snapshot().default_pay_group().id == a

    def test_only_one_default(self):
        save_pay_group("A", {}, is_default=True)
        b = save_pay_group("B", {}, is_default=True)
        groups = load_snapshot().pay_groups
        assert [g.id for g in groups if g.is_default] == [b]

    def test_unknown_pay_type_rejected(self):
        with pytest.raises(PlatformConfigError):
            save_pay_group("A", {"99": {"channel_mode": -1}})

    def test_polling_group_saved(self):
        group_id = save_polling_group("g", [{"id": 3, "weight": 5}, {"id": "4"}], mode=1)
        group = load_snapshot().polling_group(group_id)
        assert group.mode == 1
        assert [(e.channel_id, e.weight) for e in group.entries] == [(3, 5), (4, 1)]

    def test_polling_group_bad_mode(self):
        with pytest.raises(PlatformConfigError):
            save_polling_group("g", [], mode=7)
