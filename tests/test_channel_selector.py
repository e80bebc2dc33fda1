"""通道选择与最低年龄过滤单元测试。"""

import random
from decimal import Decimal

import pytest

from app.models.schemas import Channel
from app.services import channel_service
from app.services.channel_selector import (
    ChannelUnavailableError,
    check_amount,
    is_eligible,
    select_channel,
)
from app.services.platform_config import load_snapshot, save_pay_group, save_polling_group


def _channel(force_min_age=None, **kwargs):
    params = {} if force_min_age is None else {"force_min_age": force_min_age}
    return Channel(
        id=kwargs.pop("id", 1), channel_name="c", plugin_name="epay", pay_type="alipay",
        config={"params": params}, **kwargs,
    )


class TestEligibility:

    def test_forced_age_above_requirement_excluded(self):
        assert is_eligible(_channel(force_min_age=18), 16) is False

    def test_forced_age_equal_requirement_allowed(self):
        assert is_eligible(_channel(force_min_age=18), 18) is True

    def test_channel_without_forced_age_allowed(self):
        assert is_eligible(_channel(), 16) is True

    def test_no_requirement_allows_everything(self):
        assert is_eligible(_channel(force_min_age=18), None) is True

    def test_unparseable_forced_age_excluded(self):
        assert is_eligible(_channel(force_min_age="adult"), 20) is False


class TestSelectChannel:

    def test_no_channels_returns_none(self):
        assert select_channel("alipay", load_snapshot()) is None

    def test_single_channel_returned(self, make_channel):
        cid = make_channel()
        assert select_channel("alipay", load_snapshot()).id == cid

    def test_disabled_pay_type(self, make_channel):
        make_channel()
        save_pay_group("默认", {"1": {"channel_mode": 0}}, is_default=True)
        assert select_channel("alipay", load_snapshot()) is None

    def test_disabled_channel_skipped(self, make_channel):
        make_channel(status=0)
        assert select_channel("alipay", load_snapshot()) is None

    def test_pay_type_must_match(self, make_channel):
        make_channel(pay_type="wxpay")
        assert select_channel("alipay", load_snapshot()) is None

    def test_first_mode(self, make_channel):
        first = make_channel(name="a")
        make_channel(name="b")
        save_pay_group("默认", {"1": {"channel_mode": -5}}, is_default=True)
        for _ in range(5):
            assert select_channel("alipay", load_snapshot()).id == first

    def test_specific_channel_mode(self, make_channel):
        make_channel(name="a")
        second = make_channel(name="b")
        save_pay_group("默认", {"1": {"channel_mode": second}}, is_default=True)
        assert select_channel("alipay", load_snapshot()).id == second

    def test_specific_channel_missing_falls_back_to_first(self, make_channel):
        first = make_channel(name="a")
        make_channel(name="b")
        save_pay_group("默认", {"1": {"channel_mode": 999}}, is_default=True)
        assert select_channel("alipay", load_snapshot()).id == first

    def test_random_mode_uses_rng(self, make_channel):
        ids = {make_channel(name="a"), make_channel(name="b")}
        rng = random.Random(7)
        picked = {select_channel("alipay", load_snapshot(), rng=rng).id for _ in range(30)}
        assert picked == ids

    def test_min_age_filter(self, make_channel):
        make_channel(name="strict", params={"force_min_age": "18"})
        loose = make_channel(name="loose", params={})
        for _ in range(5):
            assert select_channel("alipay", load_snapshot(), min_age=16).id == loose


class TestPollingGroup:

    def _use_group(self, entries, mode):
        group_id = save_polling_group("g", entries, mode=mode)
        save_pay_group("默认", {"1": {"channel_mode": -3, "group_id": group_id}}, is_default=True)

    def test_first_in_group_order(self, make_channel):
        a = make_channel(name="a")
        b = make_channel(name="b")
        self._use_group([{"id": b}, {"id": a}], mode=2)
        assert select_channel("alipay", load_snapshot()).id == b

    def test_weighted_respects_zero_point(self, make_channel):
        a = make_channel(name="a")
        b = make_channel(name="b")
        self._use_group([{"id": a, "weight": 1}, {"id": b, "weight": 99}], mode=1)

        class _Rng:
            def random(self):
                return 0.5

        # 0.5 * 100 = 50，减去 a 的权重 1 后仍为正，落在 b
        assert select_channel("alipay", load_snapshot(), rng=_Rng()).id == b

    def test_disabled_member_skipped(self, make_channel):
        a = make_channel(name="a", status=0)
        b = make_channel(name="b")
        self._use_group([{"id": a}, {"id": b}], mode=2)
        assert select_channel("alipay", load_snapshot()).id == b

    def test_empty_group_falls_through_to_direct_query(self, make_channel):
        only = make_channel(name="a")
        self._use_group([{"id": 999}], mode=2)
        assert select_channel("alipay", load_snapshot()).id == only

    def test_group_members_filtered_by_min_age(self, make_channel):
        strict = make_channel(name="strict", params={"force_min_age": 21})
        loose = make_channel(name="loose", params={})
        self._use_group([{"id": strict}, {"id": loose}], mode=2)
        assert select_channel("alipay", load_snapshot(), min_age=18).id == loose


class TestCheckAmount:

    def test_within_bounds(self):
        check_amount(_channel(min_amount=Decimal("1"), max_amount=Decimal("10000")), Decimal("10.00"))

    def test_below_min(self):
        with pytest.raises(ChannelUnavailableError) as exc:
            check_amount(_channel(min_amount=Decimal("1")), Decimal("0.50"))
        assert exc.value.code == 1006

    def test_above_max(self):
        with pytest.raises(ChannelUnavailableError) as exc:
            check_amount(_channel(max_amount=Decimal("100")), Decimal("100.01"))
        assert exc.value.code == 1007

    def test_zero_means_unbounded(self):
        check_amount(_channel(), Decimal("999999"))


def test_list_enabled_channels_matches_comma_set(make_channel):
    cid = make_channel(pay_type="wxpay, alipay")
    make_channel(name="other", pay_type="alipay2")
    assert [c.id for c in channel_service.list_enabled_channels("alipay")] == [cid]
