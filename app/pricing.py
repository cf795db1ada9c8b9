"""Rental pricing with a guaranteed minimum profit margin.

Pure functions: the catalog supplies ``base_price`` (what the user pays for a
single standard rental) and ``cost_price`` (what the number costs us).
"""

import math
from typing import Optional

from pydantic import BaseModel

from app.config import settings
from app.models import RentalType

MULTI_SERVICE_DISCOUNTS = ((3, 0.25), (2, 0.18), (1, 0.10))

# duration_hours -> (multiplier, discount)
LONG_TERM_PLANS = {
    4: (1, 0.05),
    24: (4, 0.20),
    168: (24, 0.30),
}


class PricingResult(BaseModel):
    original_price: float
    discount: float
    discount_percentage: float
    final_price: float
    admin_profit: float
    admin_profit_percentage: float
    multiplier: int


class PricingValidation(BaseModel):
    valid: bool
    error: Optional[str] = None
    calculated_price: Optional[float] = None


def _multiplier_and_discount(
    rental_type: RentalType, extra_services_count: int, duration_hours: int
) -> tuple[int, float]:
    if rental_type == "multi-service":
        multiplier = 1 + extra_services_count
        for threshold, discount in MULTI_SERVICE_DISCOUNTS:
            if extra_services_count >= threshold:
                return multiplier, discount
        return multiplier, 0.0
    if rental_type == "long-term":
        return LONG_TERM_PLANS.get(duration_hours, (1, 0.0))
    return 1, 0.0


def calculate_rental_pricing(
    base_price: float,
    cost_price: float,
    rental_type: RentalType = "standard",
    extra_services_count: int = 0,
    duration_hours: int = 0,
    min_profit_margin: float = settings.min_profit_margin,
) -> PricingResult:
    multiplier, discount_rate = _multiplier_and_discount(
        rental_type, extra_services_count, duration_hours
    )

    original_price = base_price * multiplier
    final_price = round(original_price - original_price * discount_rate)

    total_cost = cost_price * multiplier
    profit = final_price - total_cost
    profit_pct = profit / total_cost * 100 if total_cost > 0 else 0.0

    if total_cost > 0 and profit_pct < min_profit_margin * 100:
        # strip float noise before ceil()
        final_price = math.ceil(round(total_cost * (1 + min_profit_margin), 6))
        profit = final_price - total_cost
        profit_pct = profit / total_cost * 100
        discount_rate = (original_price - final_price) / original_price if original_price else 0.0

    return PricingResult(
        original_price=original_price,
        discount=round(original_price - final_price),
        discount_percentage=round(discount_rate * 100, 2),
        final_price=final_price,
        admin_profit=profit,
        admin_profit_percentage=profit_pct,
        multiplier=multiplier,
    )


def validate_pricing_request(
    expected_price: float,
    base_price: float,
    cost_price: float,
    rental_type: RentalType = "standard",
    extra_services_count: int = 0,
    duration_hours: int = 0,
    tolerance: float = settings.price_tolerance,
    min_profit_margin: float = settings.min_profit_margin,
) -> PricingValidation:
    """Reject a client-declared price that drifted from the current catalog."""
    calculated = calculate_rental_pricing(
        base_price, cost_price, rental_type, extra_services_count, duration_hours, min_profit_margin
    )
    if abs(expected_price - calculated.final_price) > tolerance:
        return PricingValidation(
            valid=False,
            error=f"Price mismatch: client sent {expected_price} but current price is {calculated.final_price}",
            calculated_price=calculated.final_price,
        )
    return PricingValidation(valid=True, calculated_price=calculated.final_price)
