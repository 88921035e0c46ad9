"""
Order lifecycle rules: status machine, authorization predicates,
courier selection and time estimates.

Everything here is a pure function of its arguments; rows, payloads and
plain test objects with the same attribute names are all accepted.
"""
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Sequence


DEFAULT_PREP_TIME_MINUTES = 15
MINUTES_PER_100_METERS = 2


class UserRole(str, Enum):
    CUSTOMER = "customer"
    OWNER = "owner"
    DELIVERY = "delivery"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


INITIAL_STATUS = OrderStatus.PENDING
TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# (from, to) -> role allowed to perform it, for delivery orders
DELIVERY_TRANSITIONS = {
    (OrderStatus.PENDING, OrderStatus.CONFIRMED): UserRole.OWNER,
    (OrderStatus.CONFIRMED, OrderStatus.PREPARING): UserRole.OWNER,
    (OrderStatus.PREPARING, OrderStatus.READY): UserRole.OWNER,
    (OrderStatus.READY, OrderStatus.PICKED_UP): UserRole.DELIVERY,
    (OrderStatus.PICKED_UP, OrderStatus.DELIVERED): UserRole.DELIVERY,
}

# Pickup orders never reach a courier: the counter hands them over.
PICKUP_TRANSITIONS = {
    **DELIVERY_TRANSITIONS,
    (OrderStatus.READY, OrderStatus.PICKED_UP): UserRole.OWNER,
    (OrderStatus.PICKED_UP, OrderStatus.DELIVERED): UserRole.OWNER,
}

_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PREPARING: 2,
    OrderStatus.READY: 3,
    OrderStatus.PICKED_UP: 4,
    OrderStatus.DELIVERED: 5,
}


# ========== Errors ==========

class OrderError(Exception):
    """Base class for every failure the order rules can report."""

    status_code = 400
    kind = "order_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(OrderError):
    status_code = 400
    kind = "validation_error"


class Unauthorized(OrderError):
    status_code = 403
    kind = "unauthorized"


class NotFound(OrderError):
    status_code = 404
    kind = "not_found"


class InvalidTransition(OrderError):
    status_code = 409
    kind = "invalid_transition"


class StaleClaim(OrderError):
    status_code = 409
    kind = "stale_claim"

    def __init__(self, detail: str = "Order is no longer available"):
        super().__init__(detail)


class AlreadyRated(OrderError):
    status_code = 409
    kind = "already_rated"


class NotDelivered(OrderError):
    status_code = 409
    kind = "not_delivered"


class DeleteBlocked(OrderError):
    """Hard delete refused because order lines still reference the item."""

    status_code = 409
    kind = "delete_blocked"


# ========== State machine ==========

def transitions_for(order_type) -> dict:
    if OrderType(order_type) == OrderType.PICKUP:
        return PICKUP_TRANSITIONS
    return DELIVERY_TRANSITIONS


def is_terminal(status) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def has_reached(status, milestone) -> bool:
    """True when ``status`` is ``milestone`` or later on the happy path."""
    status = OrderStatus(status)
    if status == OrderStatus.CANCELLED:
        return False
    return _STATUS_RANK[status] >= _STATUS_RANK[OrderStatus(milestone)]


def next_statuses(order_type, status) -> list:
    status = OrderStatus(status)
    return [to for (frm, to) in transitions_for(order_type) if frm == status]


def check_transition(order, actor_id: str, actor_role, target) -> OrderStatus:
    """Validate ``order.status -> target`` for the acting profile.

    Raises InvalidTransition when the edge is not in the table and
    Unauthorized when the actor may not take it. Returns the target status.
    """
    try:
        target = OrderStatus(target)
    except ValueError:
        raise InvalidTransition(f"Unknown status '{target}'")

    current = OrderStatus(order.status)
    table = transitions_for(order.order_type)
    required_role = table.get((current, target))
    if required_role is None:
        raise InvalidTransition(f"Cannot move order from '{current.value}' to '{target.value}'")

    if UserRole(actor_role) != required_role:
        raise Unauthorized(f"Only {required_role.value} can move an order to '{target.value}'")

    if required_role == UserRole.DELIVERY and order.delivery_boy_id is not None and order.delivery_boy_id != actor_id:
        raise Unauthorized("Order is assigned to another courier")

    if target == OrderStatus.DELIVERED and required_role == UserRole.DELIVERY and order.delivery_boy_id is None:
        raise Unauthorized("Order has no assigned courier")

    return target


def needs_courier(order) -> bool:
    return (
        OrderType(order.order_type) == OrderType.DELIVERY
        and OrderStatus(order.status) == OrderStatus.READY
        and order.delivery_boy_id is None
    )


# ========== Authorization predicates ==========

def in_available_pool(order) -> bool:
    return needs_courier(order)


def can_view_order(actor_role, actor_id: str, order) -> bool:
    role = UserRole(actor_role)
    if role == UserRole.OWNER:
        return True
    if order.customer_id == actor_id:
        return True
    if order.delivery_boy_id is not None and order.delivery_boy_id == actor_id:
        return True
    return role == UserRole.DELIVERY and in_available_pool(order)


def can_write_menu(actor_role) -> bool:
    return UserRole(actor_role) == UserRole.OWNER


def can_update_profile(actor_id: str, profile_id: str) -> bool:
    return actor_id == profile_id


def can_view_rating(actor_role, actor_id: str, rating) -> bool:
    return UserRole(actor_role) == UserRole.OWNER or rating.customer_id == actor_id


def can_rate_order(actor_id: str, order) -> None:
    if order.customer_id != actor_id:
        raise Unauthorized("Only the customer who placed the order can rate it")
    if OrderStatus(order.status) != OrderStatus.DELIVERED:
        raise NotDelivered("Only delivered orders can be rated")


# ========== Courier selection ==========

def _created_key(value: Optional[datetime]):
    if value is None:
        return datetime.max.replace(tzinfo=timezone.utc)
    return as_utc(value)


def select_courier(candidates: Iterable):
    """Pick the courier to push a ready order to.

    Online couriers win over offline ones, then the oldest account. Proximity
    is not considered. Returns None when there is no candidate.
    """
    couriers = [c for c in candidates if UserRole(c.role) == UserRole.DELIVERY]
    if not couriers:
        return None
    couriers.sort(key=lambda c: (not bool(c.is_online), _created_key(c.created_at), str(c.id)))
    return couriers[0]


# ========== Time estimates ==========

def estimate_prep_time(prep_times: Sequence[Optional[int]]) -> int:
    """Longest preparation time in the cart; items without one count as 15."""
    if not prep_times:
        raise ValidationError("Cart is empty")
    return max(DEFAULT_PREP_TIME_MINUTES if t is None else int(t) for t in prep_times)


def estimate_delivery_time(distance_meters: float) -> int:
    """Two minutes per 100 meters of route, rounded up."""
    if distance_meters is None or distance_meters < 0:
        raise ValidationError("Route distance must be a non-negative number")
    # round before ceil: route distances arrive as km * 1000 floats
    return math.ceil(round(distance_meters / 100 * MINUTES_PER_100_METERS, 6))


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_minutes(created_at: datetime, now: Optional[datetime] = None) -> int:
    now = as_utc(now or datetime.now(timezone.utc))
    seconds = (now - as_utc(created_at)).total_seconds()
    return max(0, int(seconds // 60))


def remaining_minutes(estimate: Optional[int], created_at: datetime, now: Optional[datetime] = None) -> Optional[int]:
    if estimate is None or created_at is None:
        return None
    return max(0, estimate - elapsed_minutes(created_at, now))
