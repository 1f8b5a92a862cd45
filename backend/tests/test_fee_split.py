from decimal import Decimal

import pytest

from booking_core.core.config import settings
from booking_core.services.fee_split import (
    FeeConfig,
    FeeSplit,
    ZERO_SPLIT,
    compute_fee_split,
    fee_config_from_settings,
)
from booking_core.services.pricing import (
    InternalPricing,
    ManualPricing,
    PaidPricing,
    build_commercial_fields,
    minor_to_money,
    money_to_minor,
    to_money,
)
from booking_core.utils.errors import BookingError, CommercialFieldsError, ValidationError


def test_flat_fee_split_matches_published_example():
    split = compute_fee_split(FeeConfig(platform_fee_minor=338, gateway_cost_minor=38, provider_share_percent=40))
    assert split == FeeSplit(gross_provider_share=120, net_platform_share=180)
    assert split.total == 300


def test_zero_fee_account_gets_nothing():
    split = compute_fee_split(FeeConfig(338, 38, 40), zero_fee=True)
    assert split is ZERO_SPLIT
    assert split.total == 0


def test_half_unit_ties_still_sum_to_net():
    # 101 * 50% = 50.5 on both sides; both round up, the platform gives one back
    split = compute_fee_split(FeeConfig(platform_fee_minor=101, gateway_cost_minor=0, provider_share_percent=50))
    assert split.gross_provider_share == 51
    assert split.net_platform_share == 50
    assert split.total == 101


@pytest.mark.parametrize("fee,cost,share", [(338, 38, 0), (338, 38, 100), (1000, 1, 33), (7, 7, 40)])
def test_shares_always_conserve_net(fee, cost, share):
    split = compute_fee_split(FeeConfig(fee, cost, share))
    assert split.total == fee - cost
    assert split.gross_provider_share >= 0
    assert split.net_platform_share >= 0


@pytest.mark.parametrize(
    "config,field",
    [
        (FeeConfig(338, 400, 40), "gateway_cost_minor"),
        (FeeConfig(-1, 0, 40), "platform_fee_minor"),
        (FeeConfig(338, 38, 101), "provider_share_percent"),
        (FeeConfig(338, -5, 40), "gateway_cost_minor"),
    ],
)
def test_invalid_configuration_is_rejected(config, field):
    with pytest.raises(ValidationError) as exc:
        compute_fee_split(config)
    assert field in exc.value.field_errors


def test_config_built_from_settings():
    config = fee_config_from_settings(settings)
    assert config == FeeConfig(338, 38, 40)
    assert config.net_minor == 300


def test_paid_pricing_conserves_the_charged_fee():
    fields = build_commercial_fields(PaidPricing(FeeConfig(338, 38, 40)), Decimal("40.00"), Decimal("15.50"))
    assert fields.price == Decimal("3.38")
    assert fields.platform_fee == Decimal("1.80")
    assert fields.provider_payout == Decimal("1.58")
    assert fields.is_conserved
    # The service is settled at the appointment; its price is only a snapshot
    assert fields.service_price == Decimal("40.00")
    assert fields.addon_total == Decimal("15.50")


def test_internal_pricing_is_full_price_without_fee():
    fields = build_commercial_fields(InternalPricing(FeeConfig(338, 38, 40)), "25", Decimal("7.25"))
    assert fields.price == Decimal("32.25")
    assert fields.provider_payout == Decimal("32.25")
    assert fields.platform_fee == Decimal("0.00")
    assert fields.fee_split == ZERO_SPLIT


def test_manual_pricing_keeps_caller_amounts():
    policy = ManualPricing(price=Decimal("50"), platform_fee=Decimal("5"), provider_payout=Decimal("40"))
    fields = build_commercial_fields(policy, Decimal("40.00"), Decimal("0.00"))
    # Manual entries are not required to conserve
    assert not fields.is_conserved
    assert fields.price == Decimal("50.00")


def test_missing_service_price_is_never_zero():
    with pytest.raises(CommercialFieldsError) as exc:
        build_commercial_fields(PaidPricing(FeeConfig(338, 38, 40)), None, Decimal("0.00"))
    assert exc.value.field_errors == {"service_price": "required"}
    assert exc.value.status_code == 400


def test_non_conserving_policy_refuses_to_persist():
    class BrokenPolicy(PaidPricing):
        def commercial_fields(self, service_price, addon_total):
            fields = super().commercial_fields(service_price, addon_total)
            return fields.__class__(
                service_price=fields.service_price,
                addon_total=fields.addon_total,
                platform_fee=fields.platform_fee,
                provider_payout=fields.provider_payout + Decimal("0.01"),
                price=fields.price,
                fee_split=fields.fee_split,
            )

    with pytest.raises(BookingError) as exc:
        build_commercial_fields(BrokenPolicy(FeeConfig(338, 38, 40)), Decimal("40.00"), Decimal("0.00"))
    assert exc.value.status_code == 500


def test_money_helpers():
    assert to_money("12.345") == Decimal("12.35")
    assert minor_to_money(338) == Decimal("3.38")
    assert money_to_minor(Decimal("1.58")) == 158
    with pytest.raises(CommercialFieldsError):
        to_money("twelve", "price")
