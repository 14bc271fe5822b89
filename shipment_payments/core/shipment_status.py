"""
Shipment lifecycle statuses relevant to payments.

The lifecycle itself is owned by an external service; this module only
knows how far a shipment has progressed and which statuses unlock the
final charge.
"""

from typing import Iterable, List, Optional, Protocol

from ..storage.models import ShipmentStatusEntry

# Lifecycle order; later statuses mean the shipment has progressed further
STATUS_PROGRESSION = (
    "pending",
    "accepted",
    "assigned",
    "driver_en_route",
    "driver_arrived",
    "pickup_verified",
    "picked_up",
    "in_transit",
    "delivered",
    "completed",
)

# First status at which the vehicle is in the carrier's hands
PICKUP_STATUS = "picked_up"

DELIVERY_ELIGIBLE_STATUSES = frozenset({"delivered", "completed"})


class ShipmentStatusProvider(Protocol):
    """Read-only access to the shipment lifecycle service."""

    def get_status(self, shipment_id: str) -> Optional[str]:
        ...

    def get_status_history(self, shipment_id: str) -> List[ShipmentStatusEntry]:
        ...


def progress_rank(status: str) -> int:
    """Position of a status in the lifecycle, -1 for statuses that do not advance it."""
    try:
        return STATUS_PROGRESSION.index(status)
    except ValueError:
        return -1


def furthest_status(history: Iterable[ShipmentStatusEntry]) -> Optional[str]:
    """Furthest lifecycle status ever reached.

    A shipment that was picked up and later cancelled still counts as
    picked up; ``cancelled`` itself never advances progress.
    """
    furthest = None
    best_rank = -1
    for entry in history:
        rank = progress_rank(entry.status)
        if rank > best_rank:
            furthest, best_rank = entry.status, rank
    return furthest


def is_delivery_eligible(status: Optional[str]) -> bool:
    return status in DELIVERY_ELIGIBLE_STATUSES
