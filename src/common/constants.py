# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Role(str, Enum):
    """Роли аутентифицированных участников."""
    USER = "user"
    MECHANIC = "mechanic"
    ADMIN = "admin"


class Actor(str, Enum):
    """Инициатор события в журнале заявки."""
    USER = "user"
    MECHANIC = "mechanic"
    ADMIN = "admin"
    SYSTEM = "system"


class RequestState(str, Enum):
    """Состояния заявки на помощь."""
    OPEN = "OPEN"
    OFFERED = "OFFERED"
    ACCEPTED = "ACCEPTED"
    EN_ROUTE = "EN_ROUTE"
    ARRIVED = "ARRIVED"
    WORKING = "WORKING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


TERMINAL_STATES: frozenset[RequestState] = frozenset({
    RequestState.COMPLETED,
    RequestState.CANCELLED,
    RequestState.EXPIRED,
    RequestState.FAILED,
})

# Состояния, в которых механик обязательно назначен
ASSIGNED_STATES: frozenset[RequestState] = frozenset({
    RequestState.ACCEPTED,
    RequestState.EN_ROUTE,
    RequestState.ARRIVED,
    RequestState.WORKING,
    RequestState.COMPLETED,
})

# Состояния, в которых идёт поиск механика
DISPATCHING_STATES: frozenset[RequestState] = frozenset({
    RequestState.OPEN,
    RequestState.OFFERED,
})


class Priority(str, Enum):
    """Приоритет заявки."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class OfferStatus(str, Enum):
    """Статус предложения механику."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    TIMED_OUT = "TIMED_OUT"
    SUPERSEDED = "SUPERSEDED"


class VehicleType(str, Enum):
    """Типы транспорта, которые обслуживает механик."""
    BIKE = "bike"
    CAR = "car"
    TRUCK = "truck"
    BUS = "bus"
    CNG = "cng"
    RICKSHAW = "rickshaw"


class ProblemType(str, Enum):
    """Закрытый набор типов неисправностей."""
    ENGINE_REPAIR = "engine_repair"
    TIRE_CHANGE = "tire_change"
    BATTERY_JUMP = "battery_jump"
    ELECTRICAL_REPAIR = "electrical_repair"
    BRAKE_REPAIR = "brake_repair"
    OIL_CHANGE = "oil_change"
    FUEL_DELIVERY = "fuel_delivery"
    LOCKOUT_SERVICE = "lockout_service"
    TOWING = "towing"
    GENERAL_REPAIR = "general_repair"
    EMERGENCY_SERVICE = "emergency_service"
    OTHER = "other"


class Skill(str, Enum):
    """Навыки механика."""
    ENGINE_REPAIR = "engine_repair"
    TIRE_CHANGE = "tire_change"
    BATTERY_JUMP = "battery_jump"
    ELECTRICAL_REPAIR = "electrical_repair"
    BRAKE_REPAIR = "brake_repair"
    OIL_CHANGE = "oil_change"
    FUEL_DELIVERY = "fuel_delivery"
    LOCKOUT_SERVICE = "lockout_service"
    TOWING = "towing"
    GENERAL_REPAIR = "general_repair"
    EMERGENCY_SERVICE = "emergency_service"
    AC_REPAIR = "ac_repair"
    GENERAL_MAINTENANCE = "general_maintenance"


def required_skill(problem_type: ProblemType) -> Skill | None:
    """Навык, необходимый для типа неисправности (для OTHER — любой)."""
    if problem_type == ProblemType.OTHER:
        return None
    return Skill(problem_type.value)


# Множители стоимости по типу транспорта
VEHICLE_COST_MULTIPLIERS: dict[VehicleType, float] = {
    VehicleType.TRUCK: 1.5,
    VehicleType.BUS: 1.8,
}

BASE_SERVICE_COST: float = 500.0
