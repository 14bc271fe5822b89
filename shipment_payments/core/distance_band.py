"""
Distance band resolution.

Maps a route distance to a tiered per-mile rate.
"""

from decimal import Decimal
from enum import Enum
from typing import Union

from .errors import ValidationError
from .pricing_config import PricingConfig


class DistanceBand(Enum):
    """Per-mile rate brackets, cheaper per mile as distance grows."""
    SHORT = "short"
    MID = "mid"
    LONG = "long"


def resolve_band(distance_miles: Union[Decimal, int, float], config: PricingConfig) -> DistanceBand:
    """Select the distance band for a route.

    Args:
        distance_miles: Route distance, must be > 0
        config: Active pricing configuration (band thresholds)

    Returns:
        SHORT up to short_distance_max, MID up to mid_distance_max, LONG beyond

    Raises:
        ValidationError: If distance is not positive
    """
    distance = Decimal(str(distance_miles))
    if not distance.is_finite() or distance <= 0:
        raise ValidationError(f"distance_miles must be > 0, got {distance_miles}")

    if distance <= config.short_distance_max:
        return DistanceBand.SHORT
    if distance <= config.mid_distance_max:
        return DistanceBand.MID
    return DistanceBand.LONG


def per_mile_rate(
    vehicle_type: str,
    distance_miles: Union[Decimal, int, float],
    config: PricingConfig,
    is_accident_recovery: bool = False
) -> Decimal:
    """Per-mile rate for a vehicle over a distance.

    Accident recovery bills the vehicle's flat accident rate regardless of band.
    """
    band = resolve_band(distance_miles, config)
    rates = config.rates_for(vehicle_type)
    if is_accident_recovery:
        return rates.accident
    return getattr(rates, band.value)
