# src/shared/models/__init__.py
"""
Общие Pydantic-модели ядра диспетчеризации.
"""

from src.shared.models.common import ErrorResponse, HealthStatus, Principal
from src.shared.models.geo import BoundingBox, GeoPoint, validate_coordinates
from src.shared.models.presence import (
    MechanicPresence,
    MechanicProfile,
    NearbyMechanic,
    PresenceFilter,
)
from src.shared.models.request import (
    Cancellation,
    DispatchPlan,
    Offer,
    PickupLocation,
    Rating,
    ServiceRequest,
    ServiceRequestCreate,
    TimelineEntry,
)

__all__ = [
    # Common
    "ErrorResponse",
    "HealthStatus",
    "Principal",
    # Geo
    "BoundingBox",
    "GeoPoint",
    "validate_coordinates",
    # Presence
    "MechanicPresence",
    "MechanicProfile",
    "NearbyMechanic",
    "PresenceFilter",
    # Request
    "Cancellation",
    "DispatchPlan",
    "Offer",
    "PickupLocation",
    "Rating",
    "ServiceRequest",
    "ServiceRequestCreate",
    "TimelineEntry",
]
