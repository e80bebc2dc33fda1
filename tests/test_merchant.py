"""商户管理服务单元测试。"""

import re

import pytest

from app.services.merchant_service import MerchantError, MerchantService
from app.services.sign import rsa_sign, rsa_verify


@pytest.fixture
def svc():
    return MerchantService()


class TestCreateMerchant:

    def test_created_pending_without_credentials(self, svc):
        m = svc.create_merchant("shop1", "shop1@example.com")
        assert m.status == "pending"
        assert m.pid is None
        assert m.api_key is None
        assert m.is_active is False

    def test_fee_settings_persisted(self, svc):
        m = svc.create_merchant(
            "shop2", "s2@example.com", fee_rate="3", fee_rates={"wxpay": "1"}, fee_payer="buyer",
        )
        assert m.fee_rate == "3"
        assert m.fee_rates == {"wxpay": "1"}
        assert m.fee_payer == "buyer"

    def test_duplicate_username_raises(self, svc):
        svc.create_merchant("dup", "a@example.com")
        with pytest.raises(ValueError):
            svc.create_merchant("dup", "b@example.com")


class TestActivate:

    def test_generates_credentials(self, svc):
        m = svc.activate(svc.create_merchant("shop", "s@example.com").id)
        assert m.status == "active"
        assert re.fullmatch(r"\d{12}", m.pid)
        assert re.fullmatch(r"[A-Za-z0-9]{32}", m.api_key)
        assert m.rsa_public_key

    def test_private_key_stored_encrypted(self, svc):
        m = svc.activate(svc.create_merchant("shop", "s@example.com").id)
        private_key = svc.get_private_key(m)
        assert private_key != m.rsa_private_key
        sign = rsa_sign({"a": "1"}, private_key)
        assert rsa_verify({"a": "1"}, sign, m.rsa_public_key)

    def test_reactivate_keeps_pid(self, svc):
        m = svc.activate(svc.create_merchant("shop", "s@example.com").id)
        svc.pause(m.id)
        again = svc.activate(m.id)
        assert again.pid == m.pid
        assert again.api_key == m.api_key

    def test_unique_pids(self, svc):
        pids = {
            svc.activate(svc.create_merchant(f"shop{i}", f"s{i}@example.com").id).pid
            for i in range(5)
        }
        assert len(pids) == 5

    def test_missing_merchant(self, svc):
        with pytest.raises(MerchantError):
            svc.activate(999)


class TestStatus:

    def test_pause_blocks_transactions(self, svc, merchant):
        svc.pause(merchant.id)
        with pytest.raises(MerchantError) as exc:
            svc.get_active_by_pid(merchant.pid)
        assert exc.value.code == 1003

    def test_restore(self, svc, merchant):
        svc.pause(merchant.id)
        svc.restore(merchant.id)
        assert svc.get_active_by_pid(merchant.pid).id == merchant.id

    def test_restore_requires_activation(self, svc):
        m = svc.create_merchant("shop", "s@example.com")
        with pytest.raises(MerchantError):
            svc.restore(m.id)

    def test_unknown_pid(self, svc):
        with pytest.raises(MerchantError):
            svc.get_active_by_pid("000000000000")


class TestResetKey:

    def test_new_key_persisted(self, svc, merchant):
        new_key = svc.reset_key(merchant.id)
        assert new_key != merchant.api_key
        assert svc.get_merchant(merchant.id).api_key == new_key

    def test_pending_merchant_rejected(self, svc):
        m = svc.create_merchant("shop", "s@example.com")
        with pytest.raises(MerchantError):
            svc.reset_key(m.id)


class TestListAndDomains:

    def test_list_excludes_secrets(self, svc, merchant):
        rows = svc.list_merchants()
        assert rows[0]["pid"] == merchant.pid
        assert "api_key" not in rows[0]
        assert rows[0]["balance"] == "0.00"

    def test_add_domain_normalized(self, svc, merchant):
        svc.add_domain(merchant.id, "  Shop.COM ")
        from app.database import get_db
        db = get_db()
        try:
            row = db.execute("SELECT domain, status FROM merchant_domains").fetchone()
        finally:
            db.close()
        assert row["domain"] == "shop.com"
        assert row["status"] == "approved"

    def test_empty_domain_rejected(self, svc, merchant):
        with pytest.raises(MerchantError):
            svc.add_domain(merchant.id, " ")
