"""
Order, menu, rating and profile operations over a SQLAlchemy session.

Functions raise the errors from ``order_lifecycle``; callers translate them
into HTTP responses. Every write commits before returning.
"""
import logging
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
import routing
from auth import role_for_email
from order_lifecycle import (
    AlreadyRated,
    DeleteBlocked,
    InvalidTransition,
    NotFound,
    OrderStatus,
    OrderType,
    StaleClaim,
    Unauthorized,
    UserRole,
    ValidationError,
    can_rate_order,
    can_update_profile,
    can_view_order,
    can_write_menu,
    check_transition,
    estimate_delivery_time,
    estimate_prep_time,
    has_reached,
    needs_courier,
    select_courier,
)
from redis_client import redis_client

logger = logging.getLogger(__name__)

RouteProvider = Callable[[float, float], routing.Route]


# ========== Profiles ==========

def ensure_profile(db: Session, user: models.User, full_name: Optional[str] = None,
                   phone: Optional[str] = None) -> models.Profile:
    """Return the profile of ``user``, creating it on first call."""
    profile = db.query(models.Profile).filter(models.Profile.id == user.id).first()
    if profile:
        return profile

    profile = models.Profile(
        id=user.id,
        full_name=(full_name or "").strip() or user.email.split("@")[0],
        role=role_for_email(user.email).value,
        phone=phone,
        is_online=True,
    )
    db.add(profile)
    try:
        db.commit()
    except IntegrityError:
        # another request created it first
        db.rollback()
        profile = db.query(models.Profile).filter(models.Profile.id == user.id).one()
        return profile

    db.refresh(profile)
    logger.info(f"Created {profile.role} profile for user {user.id}")
    return profile


def get_profile(db: Session, profile_id: str) -> models.Profile:
    profile = db.query(models.Profile).filter(models.Profile.id == profile_id).first()
    if not profile:
        raise NotFound("Profile not found")
    return profile


def update_location(db: Session, actor: models.Profile, profile_id: str, lat: float, lon: float) -> models.Profile:
    if not can_update_profile(actor.id, profile_id):
        raise Unauthorized("You can only update your own location")
    profile = get_profile(db, profile_id)
    profile.lat = lat
    profile.lon = lon
    db.commit()
    db.refresh(profile)
    return profile


def set_online(db: Session, actor: models.Profile, profile_id: str, is_online: bool) -> models.Profile:
    if not can_update_profile(actor.id, profile_id):
        raise Unauthorized("You can only change your own online status")
    profile = get_profile(db, profile_id)
    profile.is_online = is_online
    db.commit()
    db.refresh(profile)
    logger.info(f"Profile {profile.id} is now {'online' if is_online else 'offline'}")
    return profile


def change_role(db: Session, actor: models.Profile, profile_id: str, role) -> models.Profile:
    if UserRole(actor.role) != UserRole.OWNER:
        raise Unauthorized("Only the owner can change roles")
    role = UserRole(role)
    profile = get_profile(db, profile_id)

    if UserRole(profile.role) == UserRole.OWNER and role != UserRole.OWNER:
        owner_count = db.query(models.Profile).filter(models.Profile.role == UserRole.OWNER.value).count()
        if owner_count <= 1:
            raise ValidationError("Cannot change the role of the last owner")

    profile.role = role.value
    db.commit()
    db.refresh(profile)
    logger.info(f"Profile {profile.id} role changed to {role.value} by {actor.id}")
    return profile


# ========== Menu ==========

def list_menu(db: Session, include_unavailable: bool = False) -> List[models.MenuItem]:
    query = db.query(models.MenuItem).filter(models.MenuItem.is_deleted == False)  # noqa: E712
    if not include_unavailable:
        query = query.filter(models.MenuItem.is_available == True)  # noqa: E712
    return query.order_by(models.MenuItem.category, models.MenuItem.name).all()


def get_menu_item(db: Session, item_id: int) -> models.MenuItem:
    item = db.query(models.MenuItem).filter(models.MenuItem.id == item_id).first()
    if not item or item.is_deleted:
        raise NotFound("Menu item not found")
    return item


def _require_menu_writer(actor: models.Profile) -> None:
    if not can_write_menu(actor.role):
        raise Unauthorized("Only the owner can change the menu")


def _menu_changed(event: str, item_id: int) -> None:
    redis_client.invalidate_menu_cache()
    redis_client.publish_menu_event(event, item_id)


def create_menu_item(db: Session, actor: models.Profile, data: dict) -> models.MenuItem:
    _require_menu_writer(actor)
    if data.get("price") is None or Decimal(str(data["price"])) < 0:
        raise ValidationError("Price cannot be negative")

    item = models.MenuItem(**{**data, "price": Decimal(str(data["price"]))})
    db.add(item)
    db.commit()
    db.refresh(item)
    _menu_changed("created", item.id)
    return item


def update_menu_item(db: Session, actor: models.Profile, item_id: int, data: dict) -> models.MenuItem:
    _require_menu_writer(actor)
    item = get_menu_item(db, item_id)
    for key, value in data.items():
        if key == "price":
            value = Decimal(str(value))
            if value < 0:
                raise ValidationError("Price cannot be negative")
        setattr(item, key, value)
    db.commit()
    db.refresh(item)
    _menu_changed("updated", item.id)
    return item


def set_availability(db: Session, actor: models.Profile, item_id: int, is_available: bool) -> models.MenuItem:
    return update_menu_item(db, actor, item_id, {"is_available": is_available})


def _hard_delete_menu_item(db: Session, item: models.MenuItem) -> None:
    referenced = db.query(models.OrderItem.id).filter(models.OrderItem.menu_item_id == item.id).first()
    if referenced:
        raise DeleteBlocked(f"Menu item {item.id} has been ordered before")
    db.delete(item)


def delete_menu_item(db: Session, actor: models.Profile, item_id: int) -> bool:
    """Delete an item, soft-deleting it when orders reference it.

    Returns True for a hard delete and False for a soft delete.
    """
    _require_menu_writer(actor)
    item = get_menu_item(db, item_id)

    try:
        _hard_delete_menu_item(db, item)
        hard_deleted = True
    except DeleteBlocked as e:
        logger.info(f"{e.detail}, soft-deleting instead")
        item.is_deleted = True
        item.is_available = False
        hard_deleted = False

    db.commit()
    _menu_changed("deleted", item_id)
    return hard_deleted


# ========== Orders ==========

def get_order(db: Session, order_id: int) -> models.Order:
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if not order:
        raise NotFound("Order not found")
    return order


def get_order_for(db: Session, actor: models.Profile, order_id: int) -> models.Order:
    order = get_order(db, order_id)
    if not can_view_order(actor.role, actor.id, order):
        raise Unauthorized("You cannot view this order")
    return order


def visible_orders(db: Session, actor: models.Profile) -> List[models.Order]:
    query = db.query(models.Order)
    role = UserRole(actor.role)

    if role == UserRole.CUSTOMER:
        query = query.filter(models.Order.customer_id == actor.id)
    elif role == UserRole.DELIVERY:
        query = query.filter(or_(
            models.Order.delivery_boy_id == actor.id,
            models.Order.customer_id == actor.id,
            _available_pool_filter(),
        ))

    return query.order_by(models.Order.created_at.desc(), models.Order.id.desc()).all()


def _available_pool_filter():
    return and_(
        models.Order.status == OrderStatus.READY.value,
        models.Order.order_type == OrderType.DELIVERY.value,
        models.Order.delivery_boy_id.is_(None),
    )


def available_orders(db: Session, courier: models.Profile) -> List[models.Order]:
    """Ready delivery orders a courier can accept: the pool plus those pushed to them."""
    if UserRole(courier.role) != UserRole.DELIVERY:
        raise Unauthorized("Only couriers can see the available orders")
    return (
        db.query(models.Order)
        .filter(
            models.Order.status == OrderStatus.READY.value,
            models.Order.order_type == OrderType.DELIVERY.value,
            or_(models.Order.delivery_boy_id.is_(None), models.Order.delivery_boy_id == courier.id),
        )
        .order_by(models.Order.created_at.asc(), models.Order.id.asc())
        .all()
    )


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def create_order(db: Session, customer: models.Profile, payload,
                 route_provider: RouteProvider = routing.route_from_shop,
                 delivery_radius_km: Optional[float] = None) -> models.Order:
    """Validate a cart and persist it as a pending order with its lines.

    ``payload`` carries ``items`` (menu_item_id, quantity), ``order_type``,
    the address fields and the customer coordinates.
    """
    if UserRole(customer.role) != UserRole.CUSTOMER:
        raise Unauthorized("Only customers can place orders")

    if not payload.items:
        raise ValidationError("Cart is empty")
    for line in payload.items:
        if line.quantity is None or line.quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

    try:
        order_type = OrderType(payload.order_type)
    except ValueError:
        raise ValidationError(f"Unknown order type '{payload.order_type}'")

    item_ids = {line.menu_item_id for line in payload.items}
    menu_items = {
        item.id: item
        for item in db.query(models.MenuItem).filter(models.MenuItem.id.in_(item_ids)).all()
    }
    for item_id in item_ids:
        item = menu_items.get(item_id)
        if item is None or item.is_deleted:
            raise ValidationError(f"Menu item {item_id} does not exist")
        if not item.is_available:
            raise ValidationError(f"'{item.name}' is not available right now")
        if item.price is None or Decimal(item.price) < 0:
            raise ValidationError(f"'{item.name}' has an invalid price")

    house_no = _clean(payload.house_no)
    phone = _clean(payload.customer_phone)
    delivery_time = None

    if order_type == OrderType.DELIVERY:
        if not house_no or not phone:
            raise ValidationError("House number and phone number are required for delivery")
        if payload.customer_lat is None or payload.customer_lon is None:
            raise ValidationError("Customer location is required for delivery")

        route = route_provider(payload.customer_lat, payload.customer_lon)
        radius = routing.DELIVERY_RADIUS_KM if delivery_radius_km is None else delivery_radius_km
        if route.distance_km > radius:
            raise ValidationError(
                f"Delivery is available within {radius:g} km, you are {route.distance_km:.1f} km away"
            )
        delivery_time = estimate_delivery_time(route.distance_meters)

    prep_time = estimate_prep_time([menu_items[line.menu_item_id].preparation_time_minutes for line in payload.items])
    total = sum(
        (Decimal(menu_items[line.menu_item_id].price) * line.quantity for line in payload.items),
        Decimal("0"),
    )

    order = models.Order(
        customer_id=customer.id,
        status=OrderStatus.PENDING.value,
        order_type=order_type.value,
        total_price=total,
        house_no=(house_no or "") if order_type == OrderType.DELIVERY else "",
        building_no=_clean(payload.building_no) if order_type == OrderType.DELIVERY else None,
        landmark=_clean(payload.landmark) if order_type == OrderType.DELIVERY else None,
        customer_phone=phone or "",
        customer_lat=payload.customer_lat,
        customer_lon=payload.customer_lon,
        estimated_prep_time=prep_time,
        estimated_delivery_time=delivery_time,
    )
    for line in payload.items:
        order.items.append(models.OrderItem(
            menu_item_id=line.menu_item_id,
            quantity=line.quantity,
            price=Decimal(menu_items[line.menu_item_id].price),
        ))

    try:
        db.add(order)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)

    logger.info(f"Order #{order.id} placed by {customer.id}: {order_type.value}, total {order.total_price}")
    redis_client.publish_order_event(order, "created")
    return order


def auto_assign_courier(db: Session, order: models.Order) -> Optional[models.Profile]:
    """Push a ready delivery order to a courier. No-op once one is assigned.

    Does not commit; the caller commits together with the status change.
    """
    if not needs_courier(order):
        return None

    couriers = db.query(models.Profile).filter(models.Profile.role == UserRole.DELIVERY.value).all()
    courier = select_courier(couriers)
    if courier is None:
        logger.info(f"No courier for order #{order.id}, leaving it in the available pool")
        return None

    order.delivery_boy_id = courier.id
    logger.info(f"Auto-assigned courier {courier.id} to order #{order.id}")
    return courier


def advance_status(db: Session, order_id: int, actor: models.Profile, target) -> models.Order:
    order = get_order(db, order_id)
    target = check_transition(order, actor.id, actor.role, target)

    if target == OrderStatus.PICKED_UP and OrderType(order.order_type) == OrderType.DELIVERY:
        return claim_order(db, order_id, actor.id)

    previous = order.status
    order.status = target.value
    if target == OrderStatus.READY:
        auto_assign_courier(db, order)

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)

    logger.info(f"Order #{order.id}: {previous} -> {order.status} by {actor.role} {actor.id}")
    redis_client.publish_order_event(order, "status_changed")
    return order


def claim_order(db: Session, order_id: int, courier_id: str) -> models.Order:
    """Move a ready delivery order to picked_up for ``courier_id``.

    A single conditional UPDATE: it only matches while the order is still
    ready and unassigned (or already pushed to this courier), so of two
    concurrent claims exactly one changes the row.
    """
    courier = get_profile(db, courier_id)
    if UserRole(courier.role) != UserRole.DELIVERY:
        raise Unauthorized("Only couriers can claim orders")

    updated = (
        db.query(models.Order)
        .filter(
            models.Order.id == order_id,
            models.Order.status == OrderStatus.READY.value,
            models.Order.order_type == OrderType.DELIVERY.value,
            or_(models.Order.delivery_boy_id.is_(None), models.Order.delivery_boy_id == courier_id),
        )
        .update(
            {
                models.Order.status: OrderStatus.PICKED_UP.value,
                models.Order.delivery_boy_id: courier_id,
                models.Order.updated_at: func.now(),
            },
            synchronize_session=False,
        )
    )
    db.commit()

    order = get_order(db, order_id)
    db.refresh(order)

    if updated == 1:
        logger.info(f"Order #{order.id} picked up by courier {courier_id}")
        redis_client.publish_order_event(order, "status_changed")
        return order

    status = OrderStatus(order.status)
    if OrderType(order.order_type) != OrderType.DELIVERY:
        raise Unauthorized("Pickup orders are handed over by the restaurant")
    if status == OrderStatus.READY:
        raise Unauthorized("Order is assigned to another courier")
    if status == OrderStatus.CANCELLED or (has_reached(status, OrderStatus.PICKED_UP) and order.delivery_boy_id != courier_id):
        logger.info(f"Courier {courier_id} lost the claim on order #{order.id}")
        raise StaleClaim()
    raise InvalidTransition(f"Cannot move order from '{status.value}' to '{OrderStatus.PICKED_UP.value}'")


# ========== Ratings ==========

def submit_rating(db: Session, order_id: int, customer_id: str, stars: int,
                  review: Optional[str] = None, suggestion: Optional[str] = None) -> models.OrderRating:
    order = get_order(db, order_id)
    can_rate_order(customer_id, order)
    if stars is None or stars < 1 or stars > 5:
        raise ValidationError("Rating must be between 1 and 5")

    existing = db.query(models.OrderRating).filter(models.OrderRating.order_id == order_id).first()
    if existing:
        raise AlreadyRated("This order has already been rated")

    rating = models.OrderRating(
        order_id=order_id,
        customer_id=customer_id,
        rating=stars,
        review_message=_clean(review),
        improvement_suggestion=_clean(suggestion),
    )
    db.add(rating)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AlreadyRated("This order has already been rated")
    db.refresh(rating)
    logger.info(f"Order #{order_id} rated {stars} by {customer_id}")
    return rating


def update_rating(db: Session, order_id: int, customer_id: str, stars: int,
                  review: Optional[str] = None, suggestion: Optional[str] = None) -> models.OrderRating:
    rating = db.query(models.OrderRating).filter(models.OrderRating.order_id == order_id).first()
    if not rating:
        raise NotFound("This order has not been rated yet")
    if rating.customer_id != customer_id:
        raise Unauthorized("You can only edit your own rating")
    if stars is None or stars < 1 or stars > 5:
        raise ValidationError("Rating must be between 1 and 5")

    rating.rating = stars
    rating.review_message = _clean(review)
    rating.improvement_suggestion = _clean(suggestion)
    db.commit()
    db.refresh(rating)
    return rating


def list_ratings(db: Session, actor: models.Profile) -> List[models.OrderRating]:
    query = db.query(models.OrderRating)
    if UserRole(actor.role) != UserRole.OWNER:
        query = query.filter(models.OrderRating.customer_id == actor.id)
    return query.order_by(models.OrderRating.created_at.desc(), models.OrderRating.id.desc()).all()


def rating_stats(db: Session, actor: models.Profile) -> dict:
    if UserRole(actor.role) != UserRole.OWNER:
        raise Unauthorized("Only the owner can view rating statistics")

    counts = dict(
        db.query(models.OrderRating.rating, func.count(models.OrderRating.id))
        .group_by(models.OrderRating.rating)
        .all()
    )
    total = sum(counts.values())
    average = sum(stars * n for stars, n in counts.items()) / total if total else 0
    return {
        "total_ratings": total,
        "average_rating": round(average, 2),
        "five_star": counts.get(5, 0),
        "four_star": counts.get(4, 0),
        "three_star": counts.get(3, 0),
        "two_star": counts.get(2, 0),
        "one_star": counts.get(1, 0),
    }


# ========== Suggestions ==========

def create_suggestion(db: Session, customer: models.Profile, text: str) -> models.CustomerSuggestion:
    if UserRole(customer.role) != UserRole.CUSTOMER:
        raise Unauthorized("Only customers can send suggestions")
    text = _clean(text)
    if not text:
        raise ValidationError("Suggestion cannot be empty")

    suggestion = models.CustomerSuggestion(
        customer_id=customer.id,
        suggestion_text=text,
        customer_name=customer.full_name,
    )
    db.add(suggestion)
    db.commit()
    db.refresh(suggestion)
    return suggestion


def list_suggestions(db: Session, actor: models.Profile, unread_only: bool = False) -> List[models.CustomerSuggestion]:
    query = db.query(models.CustomerSuggestion)
    if UserRole(actor.role) != UserRole.OWNER:
        query = query.filter(models.CustomerSuggestion.customer_id == actor.id)
    if unread_only:
        query = query.filter(models.CustomerSuggestion.is_read == False)  # noqa: E712
    return query.order_by(models.CustomerSuggestion.created_at.desc(), models.CustomerSuggestion.id.desc()).all()


def mark_suggestion_read(db: Session, actor: models.Profile, suggestion_id: int) -> models.CustomerSuggestion:
    if UserRole(actor.role) != UserRole.OWNER:
        raise Unauthorized("Only the owner can mark suggestions as read")
    suggestion = db.query(models.CustomerSuggestion).filter(models.CustomerSuggestion.id == suggestion_id).first()
    if not suggestion:
        raise NotFound("Suggestion not found")
    suggestion.is_read = True
    db.commit()
    db.refresh(suggestion)
    return suggestion
