"""
Tariff parameters for shipment quoting.

A PricingConfig is an immutable snapshot of one version of the tariff.
Changes produce a new snapshot; the store keeps the history.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from decimal import Decimal
from typing import Any, Dict, Optional

from .errors import ValidationError


@dataclass(frozen=True)
class VehicleRates:
    """Per-mile rates for one vehicle type, by distance band."""
    short: Decimal
    mid: Decimal
    long: Decimal
    accident: Decimal

    def __post_init__(self):
        """Validate every rate is positive."""
        for name in ("short", "mid", "long", "accident"):
            if getattr(self, name) <= 0:
                raise ValidationError(f"vehicle rate '{name}' must be > 0")


DEFAULT_VEHICLE_RATES: Dict[str, VehicleRates] = {
    "sedan": VehicleRates(Decimal("1.80"), Decimal("0.95"), Decimal("0.60"), Decimal("2.50")),
    "suv": VehicleRates(Decimal("2.00"), Decimal("1.05"), Decimal("0.70"), Decimal("2.75")),
    "pickup": VehicleRates(Decimal("2.20"), Decimal("1.15"), Decimal("0.75"), Decimal("3.00")),
    "luxury": VehicleRates(Decimal("3.00"), Decimal("1.80"), Decimal("1.25"), Decimal("4.00")),
    "motorcycle": VehicleRates(Decimal("1.50"), Decimal("0.85"), Decimal("0.55"), Decimal("2.00")),
    "heavy": VehicleRates(Decimal("3.50"), Decimal("2.25"), Decimal("1.80"), Decimal("4.50")),
}

# Upper bounds the admin tariff editor accepts
MULTIPLIER_LIMITS = {
    "surge_multiplier": Decimal("10"),
    "expedited_multiplier": Decimal("5"),
    "flexible_multiplier": Decimal("2"),
}

DECIMAL_FIELDS = (
    "min_quote",
    "accident_min_quote",
    "min_miles",
    "base_fuel_price",
    "current_fuel_price",
    "fuel_adjustment_per_dollar",
    "surge_multiplier",
    "expedited_multiplier",
    "standard_multiplier",
    "flexible_multiplier",
    "short_distance_max",
    "mid_distance_max",
)

BOOL_FIELDS = (
    "surge_enabled",
    "bulk_discount_enabled",
    "expedited_service_enabled",
    "flexible_service_enabled",
)


@dataclass(frozen=True)
class PricingConfig:
    """One version of the tariff.

    Money values are dollars. ``min_quote`` and ``accident_min_quote`` are
    independent floors; the accident floor may be the lower of the two.
    """
    min_quote: Decimal = Decimal("150.00")
    accident_min_quote: Decimal = Decimal("80.00")
    min_miles: Decimal = Decimal("100")
    base_fuel_price: Decimal = Decimal("3.70")
    current_fuel_price: Decimal = Decimal("3.70")
    fuel_adjustment_per_dollar: Decimal = Decimal("5.00")
    surge_enabled: bool = False
    surge_multiplier: Decimal = Decimal("1.00")
    expedited_multiplier: Decimal = Decimal("1.25")
    standard_multiplier: Decimal = Decimal("1.00")
    flexible_multiplier: Decimal = Decimal("0.95")
    short_distance_max: Decimal = Decimal("500")
    mid_distance_max: Decimal = Decimal("1500")
    bulk_discount_enabled: bool = True
    expedited_service_enabled: bool = True
    flexible_service_enabled: bool = True
    vehicle_rates: Dict[str, VehicleRates] = field(default_factory=lambda: dict(DEFAULT_VEHICLE_RATES))
    notes: Optional[str] = None

    def __post_init__(self):
        """Validate tariff invariants."""
        for name, limit in MULTIPLIER_LIMITS.items():
            value = getattr(self, name)
            if value <= 0 or value > limit:
                raise ValidationError(f"{name} must be > 0 and <= {limit}")
        if self.standard_multiplier <= 0:
            raise ValidationError("standard_multiplier must be > 0")

        for name in ("min_quote", "accident_min_quote", "min_miles",
                     "base_fuel_price", "current_fuel_price"):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} cannot be negative")

        if self.short_distance_max <= 0:
            raise ValidationError("short_distance_max must be > 0")
        if self.mid_distance_max <= self.short_distance_max:
            raise ValidationError("mid_distance_max must be greater than short_distance_max")

        if not self.vehicle_rates:
            raise ValidationError("at least one vehicle type must be configured")

    def rates_for(self, vehicle_type: str) -> VehicleRates:
        """Get the rate card for a vehicle type.

        Raises:
            ValidationError: If the vehicle type is not configured
        """
        if vehicle_type not in self.vehicle_rates:
            raise ValidationError(f"Unknown vehicle type: {vehicle_type}")
        return self.vehicle_rates[vehicle_type]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-safe primitives (decimals as strings)."""
        data = asdict(self)
        for name in DECIMAL_FIELDS:
            data[name] = str(data[name])
        data["vehicle_rates"] = {
            vehicle: {band: str(rate) for band, rate in rates.items()}
            for vehicle, rates in data["vehicle_rates"].items()
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingConfig":
        """Build a config from primitives, as produced by ``to_dict`` or YAML."""
        return cls(**_parse_fields(data))


def apply_patch(config: PricingConfig, patch: Dict[str, Any]) -> PricingConfig:
    """Return a new config with ``patch`` applied; the input is not modified.

    Raises:
        ValidationError: On unknown keys or if the result violates invariants
    """
    if not patch:
        raise ValidationError("Pricing config patch is empty")
    return replace(config, **_parse_fields(patch))


def changed_fields(old: PricingConfig, new: PricingConfig) -> Dict[str, Any]:
    """Field names whose values differ between two versions."""
    old_data = old.to_dict()
    new_data = new.to_dict()
    return {name: new_data[name] for name in new_data if old_data.get(name) != new_data[name]}


def _parse_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    allowed = {f.name for f in fields(PricingConfig)}
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValidationError(f"Unknown pricing config keys: {sorted(unknown)}")

    kwargs: Dict[str, Any] = {}
    for name, value in data.items():
        if name in DECIMAL_FIELDS:
            kwargs[name] = _to_decimal(value, name)
        elif name in BOOL_FIELDS:
            if not isinstance(value, bool):
                raise ValidationError(f"'{name}' must be a boolean")
            kwargs[name] = value
        elif name == "vehicle_rates":
            kwargs[name] = _parse_vehicle_rates(value)
        elif name == "notes":
            if value is not None and not isinstance(value, str):
                raise ValidationError("'notes' must be a string")
            kwargs[name] = value
    return kwargs


def _to_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValidationError(f"'{name}' must be a number")
    try:
        # str() first so YAML floats like 3.7 do not pick up binary noise
        return Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"'{name}' must be a number")


def _parse_vehicle_rates(data: Any) -> Dict[str, VehicleRates]:
    if not isinstance(data, dict):
        raise ValidationError("'vehicle_rates' must be a dictionary")
    rates = {}
    for vehicle, bands in data.items():
        if not isinstance(bands, dict):
            raise ValidationError(f"vehicle_rates.{vehicle} must be a dictionary")
        expected = {"short", "mid", "long", "accident"}
        if set(bands.keys()) != expected:
            raise ValidationError(
                f"vehicle_rates.{vehicle} must define exactly {sorted(expected)}"
            )
        rates[vehicle] = VehicleRates(**{
            band: _to_decimal(rate, f"vehicle_rates.{vehicle}.{band}")
            for band, rate in bands.items()
        })
    return rates
