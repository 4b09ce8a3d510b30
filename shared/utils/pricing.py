"""
shared/utils/pricing.py
Money math for bookings and the ledger. Everything is Decimal,
quantized to the cent with ROUND_HALF_UP.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from config.settings import settings
from shared.exceptions import ValidationError
from shared.models.models import PricingType

CENT = Decimal("0.01")


def quantize(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    service_fee: Decimal
    platform_fee: Decimal
    total_price: Decimal


def compute_service_fee(
    pricing_type: PricingType,
    duration_minutes: int,
    hourly_rate: Optional[Decimal] = None,
    package_price: Optional[Decimal] = None,
) -> Decimal:
    if duration_minutes <= 0:
        raise ValidationError("Booking duration must be positive")

    if pricing_type == PricingType.HOURLY:
        if hourly_rate is None:
            raise ValidationError("This service has no hourly rate")
        return quantize(Decimal(str(hourly_rate)) * Decimal(duration_minutes) / Decimal(60))

    if package_price is None:
        raise ValidationError("This service has no package price")
    return quantize(package_price)


def compute_price(
    pricing_type: PricingType,
    duration_minutes: int,
    hourly_rate: Optional[Decimal] = None,
    package_price: Optional[Decimal] = None,
    fee_rate: Decimal = None,
) -> PriceBreakdown:
    """total = service_fee + service_fee × fee_rate (0.15 by default)."""
    rate = settings.PLATFORM_FEE_RATE if fee_rate is None else Decimal(str(fee_rate))
    service_fee = compute_service_fee(pricing_type, duration_minutes, hourly_rate, package_price)
    platform_fee = quantize(service_fee * rate)
    return PriceBreakdown(
        service_fee=service_fee,
        platform_fee=platform_fee,
        total_price=service_fee + platform_fee,
    )


def split_refund(total_price: Decimal, provider_net: Decimal, refund_percentage: int) -> dict:
    """
    Dispute split. The client gets p% of what they paid; the provider
    loses p% of their net and keeps the rest. The two provider amounts
    always sum to the net exactly.
    """
    if not 0 <= refund_percentage <= 100:
        raise ValidationError("refund_percentage must be between 0 and 100")

    pct = Decimal(refund_percentage) / Decimal(100)
    provider_refund = quantize(provider_net * pct)
    return {
        "client_refund_amount": quantize(total_price * pct),
        "provider_refund_amount": provider_refund,
        "provider_release_amount": quantize(provider_net) - provider_refund,
    }
