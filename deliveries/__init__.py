from .driver_flow import (
    AcceptResult,
    DeliveryStateException,
    DriverDeliveryFlow,
    can_transition_delivery,
    next_delivery_status,
)
from .snapshot import DeliverySnapshotStore

__all__ = [
    "AcceptResult",
    "DeliveryStateException",
    "DriverDeliveryFlow",
    "can_transition_delivery",
    "next_delivery_status",
    "DeliverySnapshotStore",
]
