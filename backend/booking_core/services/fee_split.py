from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from ..utils.errors import ValidationError

_UNIT = Decimal("1")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeConfig:
    """Flat platform-fee constants, all in minor currency units except the share."""

    platform_fee_minor: int
    gateway_cost_minor: int
    provider_share_percent: int

    def validate(self) -> None:
        errors: dict[str, str] = {}
        if self.platform_fee_minor < 0:
            errors["platform_fee_minor"] = "must be non-negative"
        if self.gateway_cost_minor < 0:
            errors["gateway_cost_minor"] = "must be non-negative"
        elif self.gateway_cost_minor > self.platform_fee_minor:
            errors["gateway_cost_minor"] = "cannot exceed the platform fee"
        if not 0 <= self.provider_share_percent <= 100:
            errors["provider_share_percent"] = "must be between 0 and 100"
        if errors:
            raise ValidationError("Invalid fee configuration", errors)

    @property
    def net_minor(self) -> int:
        return self.platform_fee_minor - self.gateway_cost_minor


@dataclass(frozen=True)
class FeeSplit:
    gross_provider_share: int
    net_platform_share: int

    @property
    def total(self) -> int:
        return self.gross_provider_share + self.net_platform_share


ZERO_SPLIT = FeeSplit(gross_provider_share=0, net_platform_share=0)


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(_UNIT, rounding=ROUND_HALF_UP))


def compute_fee_split(config: FeeConfig, zero_fee: bool = False) -> FeeSplit:
    """Split the flat platform fee between provider and platform.

    The gateway cost comes off the fee first; each share of the remaining net
    is rounded half-up on its own. The two shares always add up to the net:
    if both land on an exact .5 and round up together, the extra unit is
    taken back from the platform share.
    """
    config.validate()
    if zero_fee:
        return ZERO_SPLIT

    net = Decimal(config.net_minor)
    share = Decimal(config.provider_share_percent)
    provider = _round_half_up(net * share / _HUNDRED)
    platform = _round_half_up(net * (_HUNDRED - share) / _HUNDRED)
    residual = config.net_minor - (provider + platform)
    if residual:
        platform += residual
    return FeeSplit(gross_provider_share=provider, net_platform_share=platform)


def fee_config_from_settings(settings) -> FeeConfig:
    """Build the calculator input from application settings."""
    return FeeConfig(
        platform_fee_minor=int(settings.PLATFORM_FEE_MINOR),
        gateway_cost_minor=int(settings.GATEWAY_COST_MINOR),
        provider_share_percent=int(settings.PROVIDER_SHARE_PERCENT),
    )
