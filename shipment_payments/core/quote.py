"""
Quote calculation for vehicle transport.

Deterministic pricing pipeline. The step order is fixed so that totals are
reproducible for the same inputs and tariff version:

1. Base price: per-mile band rate x billable miles (min-miles floor)
2. Bulk discount for multi-vehicle bookings (when enabled)
3. Service level multiplier (expedited / standard / flexible)
4. Fuel adjustment from current vs. base fuel price
5. Surge multiplier (when enabled)
6. Minimum quote floor
7. Rounding to integer cents (half-up)
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Tuple, Union

from .distance_band import DistanceBand, per_mile_rate, resolve_band
from .errors import ValidationError
from .pricing_config import PricingConfig

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
FLEXIBLE_AFTER_DAYS = 7


class ServiceLevel(Enum):
    """Delivery urgency, derived from the requested dates."""
    EXPEDITED = "expedited"
    STANDARD = "standard"
    FLEXIBLE = "flexible"


@dataclass(frozen=True)
class QuoteRequest:
    """Inputs for a single-vehicle quote."""
    vehicle_type: str
    distance_miles: Union[Decimal, int, float]
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None
    is_accident_recovery: bool = False
    vehicle_count: int = 1

    def __post_init__(self):
        """Validate request shape."""
        if not self.vehicle_type or not str(self.vehicle_type).strip():
            raise ValidationError("vehicle_type is required")
        if isinstance(self.distance_miles, bool) or not isinstance(
                self.distance_miles, (int, float, Decimal)):
            raise ValidationError("distance_miles must be a number")
        if self.vehicle_count < 1:
            raise ValidationError("vehicle_count must be >= 1")


@dataclass(frozen=True)
class Quote:
    """Priced, auditable breakdown of a quote.

    Money values are dollars except ``total_cents``.
    """
    vehicle_type: str
    distance_miles: Decimal
    billable_miles: Decimal
    distance_band: DistanceBand
    rate_per_mile: Decimal
    raw_base_price: Decimal
    bulk_discount_percent: int
    service_level: ServiceLevel
    applied_multiplier: Decimal
    subtotal_before_fuel: Decimal
    fuel_adjustment_percent: Decimal
    surge_applied: bool
    surge_multiplier: Decimal
    minimum_applied: bool
    is_accident_recovery: bool
    total_cents: int
    config_version: Optional[int] = None

    @property
    def total(self) -> Decimal:
        """Total in dollars."""
        return Decimal(self.total_cents) / 100

    def breakdown(self) -> dict:
        """JSON-safe breakdown, copied onto the payment record for audit."""
        return {
            "vehicle_type": self.vehicle_type,
            "distance_miles": str(self.distance_miles),
            "billable_miles": str(self.billable_miles),
            "distance_band": self.distance_band.value,
            "rate_per_mile": str(self.rate_per_mile),
            "raw_base_price": str(self.raw_base_price),
            "bulk_discount_percent": self.bulk_discount_percent,
            "service_level": self.service_level.value,
            "applied_multiplier": str(self.applied_multiplier),
            "subtotal_before_fuel": str(self.subtotal_before_fuel),
            "fuel_adjustment_percent": str(self.fuel_adjustment_percent),
            "surge_applied": self.surge_applied,
            "surge_multiplier": str(self.surge_multiplier),
            "minimum_applied": self.minimum_applied,
            "is_accident_recovery": self.is_accident_recovery,
            "total_cents": self.total_cents,
            "config_version": self.config_version,
        }


def to_cents(amount: Decimal) -> int:
    """Round a dollar amount to integer cents, half-up."""
    return int((amount / CENT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def bulk_discount_percent(vehicle_count: int) -> int:
    """Discount tier for multi-vehicle bookings."""
    if vehicle_count <= 2:
        return 0
    if vehicle_count <= 5:
        return 10
    if vehicle_count <= 9:
        return 15
    return 20


def determine_service_level(
    pickup_date: Optional[date],
    delivery_date: Optional[date],
    today: Optional[date] = None
) -> ServiceLevel:
    """Derive the service level from requested dates.

    No delivery date means as-soon-as-possible. A delivery window longer
    than a week is flexible. Pickup defaults to the quote date.

    Raises:
        ValidationError: If delivery is before pickup
    """
    if delivery_date is None:
        return ServiceLevel.EXPEDITED

    start = pickup_date or today or date.today()
    window_days = (delivery_date - start).days
    if window_days < 0:
        raise ValidationError("delivery_date cannot be before pickup_date")
    if window_days > FLEXIBLE_AFTER_DAYS:
        return ServiceLevel.FLEXIBLE
    return ServiceLevel.STANDARD


def service_multiplier(level: ServiceLevel, config: PricingConfig) -> Tuple[ServiceLevel, Decimal]:
    """Resolve the multiplier for a level; disabled services price as standard.

    Returns:
        (effective ServiceLevel, multiplier)
    """
    if level == ServiceLevel.EXPEDITED and config.expedited_service_enabled:
        return level, config.expedited_multiplier
    if level == ServiceLevel.FLEXIBLE and config.flexible_service_enabled:
        return level, config.flexible_multiplier
    return ServiceLevel.STANDARD, config.standard_multiplier


def fuel_adjustment_percent(config: PricingConfig) -> Decimal:
    """Percent surcharge (or discount, if negative) from fuel price drift."""
    return (config.current_fuel_price - config.base_fuel_price) * config.fuel_adjustment_per_dollar


def calculate_quote(
    request: QuoteRequest,
    config: PricingConfig,
    today: Optional[date] = None,
    config_version: Optional[int] = None
) -> Quote:
    """Price a shipment against a tariff version.

    Args:
        request: Quote inputs
        config: Active pricing configuration
        today: Quote date, used when no pickup date is given
        config_version: Version id of ``config``, recorded for audit

    Returns:
        Quote with the full breakdown and integer-cent total

    Raises:
        ValidationError: For non-positive distance, unknown vehicle type or bad dates
    """
    distance = Decimal(str(request.distance_miles))
    band = resolve_band(distance, config)
    rate = per_mile_rate(request.vehicle_type, distance, config, request.is_accident_recovery)

    # 1-2. Base price on billable miles
    billable_miles = max(distance, config.min_miles)
    raw_base = rate * billable_miles

    discount = bulk_discount_percent(request.vehicle_count) if config.bulk_discount_enabled else 0
    price = raw_base * (Decimal(100 - discount) / 100)

    # 3. Service level
    requested_level = determine_service_level(request.pickup_date, request.delivery_date, today)
    level, multiplier = service_multiplier(requested_level, config)
    price = price * multiplier
    subtotal_before_fuel = price

    # 4. Fuel
    fuel_pct = fuel_adjustment_percent(config)
    price = price * (1 + fuel_pct / 100)

    # 5. Surge
    if config.surge_enabled:
        price = price * config.surge_multiplier

    # 6. Floor
    floor = config.accident_min_quote if request.is_accident_recovery else config.min_quote
    minimum_applied = price < floor
    if minimum_applied:
        price = floor

    # 7. Cents
    total_cents = max(0, to_cents(price))

    quote = Quote(
        vehicle_type=request.vehicle_type,
        distance_miles=distance,
        billable_miles=billable_miles,
        distance_band=band,
        rate_per_mile=rate,
        raw_base_price=raw_base.quantize(CENT, rounding=ROUND_HALF_UP),
        bulk_discount_percent=discount,
        service_level=level,
        applied_multiplier=multiplier,
        subtotal_before_fuel=subtotal_before_fuel.quantize(CENT, rounding=ROUND_HALF_UP),
        fuel_adjustment_percent=fuel_pct,
        surge_applied=config.surge_enabled,
        surge_multiplier=config.surge_multiplier if config.surge_enabled else Decimal("1"),
        minimum_applied=minimum_applied,
        is_accident_recovery=request.is_accident_recovery,
        total_cents=total_cents,
        config_version=config_version,
    )

    logger.debug(
        "Calculated quote vehicle=%s miles=%s band=%s level=%s total_cents=%d",
        request.vehicle_type, distance, band.value, level.value, total_cents
    )
    return quote
